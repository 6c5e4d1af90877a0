"""FastAPI application for the Auth Manager service."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from .admin_routes import router as admin_router
from .auth import admin_auth_router
from .clients import get_engine_registry
from .config import API_HOST, API_PORT
from .db import init_database
from .errors import AuthManagerError
from .gate import cors_headers_for_path
from .logging_config import configure_logging
from .routes import router as tenant_router
from .routes import vault_router

configure_logging()
LOGGER = logging.getLogger(__name__)
LOGGER.info("Creating Auth Manager FastAPI application")

app = FastAPI(
    title="Auth Manager API",
    version="1.0.0",
    description="Central email verification, magic link and password reset service for connected apps.",
)

app.include_router(tenant_router)
app.include_router(vault_router)
app.include_router(admin_auth_router)
app.include_router(admin_router)


def _error_response(request: Request, status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": message},
        headers=cors_headers_for_path(request.url.path),
    )


@app.exception_handler(AuthManagerError)
def handle_auth_manager_error(request: Request, exc: AuthManagerError) -> JSONResponse:
    if exc.status_code >= 500:
        LOGGER.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return _error_response(request, exc.status_code, exc.message)


@app.exception_handler(HTTPException)
def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    response = _error_response(request, exc.status_code, str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(RequestValidationError)
def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "Invalid request body"
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    return _error_response(request, status.HTTP_400_BAD_REQUEST, message)


@app.exception_handler(Exception)
def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    LOGGER.exception("Unhandled error on %s", request.url.path)
    message = str(getattr(exc, "orig", None) or exc) or "Internal server error"
    return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, message)


@app.on_event("startup")
def prepare_store() -> None:
    """Create missing tables before the first request is served."""
    LOGGER.info("Auth Manager startup hook triggered; initialising store")
    try:
        init_database()
    except Exception:  # pylint: disable=broad-except
        LOGGER.exception("Store initialisation failed during startup")
        raise


@app.on_event("shutdown")
def release_tenant_engines() -> None:
    get_engine_registry().dispose_all()
    LOGGER.info("Disposed tenant database engines")


@app.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    """Report a simple OK status used for readiness checks."""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    LOGGER.info("Launching Uvicorn development server on %s:%s", API_HOST, API_PORT)
    uvicorn.run("authmanager.app:app", host=API_HOST, port=API_PORT, reload=True)
