"""Pydantic schemas for admin authentication routes."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class AdminUserOut(BaseModel):
    id: str
    email: EmailStr
    name: str


class AdminSessionEnvelope(_CamelModel):
    user: AdminUserOut
    expires_at: datetime = Field(..., alias="expiresAt")


class AuthStatusResponse(_CamelModel):
    has_users: bool = Field(..., alias="hasUsers")


class BootstrapRequest(BaseModel):
    email: EmailStr
    password: str
    name: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class LogoutResponse(BaseModel):
    success: bool = True
