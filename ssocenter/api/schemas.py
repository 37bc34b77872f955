from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class OAuthErrorBody(BaseModel):
    error: str
    error_description: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    scope: Optional[str] = None


class UserInfoResponse(BaseModel):
    sub: str
    username: str
    email: str
    first_name: str = ""
    last_name: str = ""
    roles: List[str] = Field(default_factory=list)
    created_at: datetime


class RevokeResponse(BaseModel):
    revoked: bool


class LoginResponse(BaseModel):
    user_id: str
    session_id: str
    expires_at: datetime


class LoginRequiredResponse(BaseModel):
    login_required: bool = True
    return_url: Optional[str] = None


class LogoutResponse(BaseModel):
    logged_out: bool = True


class SessionResponse(BaseModel):
    user_id: str
    session_id: str
    username: Optional[str] = None
    expires_at: Optional[datetime] = None
