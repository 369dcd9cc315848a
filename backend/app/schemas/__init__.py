"""Pydantic schemas for API validation"""

from app.schemas.auth import (
    UserRole,
    LoginRequest,
    SignupRequest,
    RefreshTokenRequest,
    LogoutRequest,
    UserResponse,
    TokenResponse,
    SessionResponse,
    SessionListResponse,
)
from app.schemas.response import APIResponse, ErrorResponse, HealthResponse

__all__ = [
    "UserRole", "LoginRequest", "SignupRequest", "RefreshTokenRequest", "LogoutRequest",
    "UserResponse", "TokenResponse", "SessionResponse", "SessionListResponse",
    "APIResponse", "ErrorResponse", "HealthResponse",
]
