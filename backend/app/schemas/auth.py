"""Authentication and session schemas"""

from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Optional, List
from datetime import datetime
from enum import Enum


def _normalize_email(value: str) -> str:
    # Accounts are looked up case-insensitively; the column holds 255 characters.
    v = value.lower()
    if len(v) > 255:
        raise ValueError("Email address is too long")
    return v


class UserRole(str, Enum):
    """User role enumeration"""
    ADMIN = "admin"
    EMPLOYEE = "employee"


class LoginRequest(BaseModel):
    """Login schema"""
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=255)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v):
        return _normalize_email(v)


class SignupRequest(BaseModel):
    """Company signup schema (creates the company and its first admin)"""
    owner_name: str = Field(..., min_length=2, max_length=255)
    owner_email: EmailStr
    company_name: str = Field(..., min_length=2, max_length=255)
    password: str = Field(..., min_length=8, max_length=255)

    @field_validator("owner_email")
    @classmethod
    def normalize_email(cls, v):
        return _normalize_email(v)

    @field_validator("owner_name", "company_name")
    @classmethod
    def strip_names(cls, v):
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Must be at least 2 characters")
        return v


class RefreshTokenRequest(BaseModel):
    """Refresh token body; the refresh cookie is used when omitted"""
    refresh_token: Optional[str] = Field(default=None, min_length=1)


class LogoutRequest(BaseModel):
    """Logout body; without a refresh token every session of the caller is revoked"""
    refresh_token: Optional[str] = None


class UserResponse(BaseModel):
    """User response schema"""
    id: int
    company_id: int
    name: str
    email: str
    role: UserRole
    is_active: bool
    created_at: Optional[datetime]
    last_login: Optional[datetime]

    class Config:
        from_attributes = True


class TokenResponse(BaseModel):
    """Token pair response"""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    expires_at: datetime
    refresh_expires_at: datetime
    user: UserResponse


class SessionResponse(BaseModel):
    """One active device session (refresh credential)"""
    id: int
    issued_at: Optional[datetime]
    expires_at: datetime
    rotated_at: Optional[datetime]
    last_used_at: Optional[datetime]
    ip_address: Optional[str]
    user_agent: Optional[str]
    current: bool = False

    class Config:
        from_attributes = True


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]
