"""Custom exception classes for the application"""

from typing import Optional, Dict, Any


class BaseAPIException(Exception):
    """Base exception for all API errors"""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


# Authentication Errors
class AuthenticationError(BaseAPIException):
    """Base authentication error"""
    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=401, details=details)


class InvalidCredentialsError(AuthenticationError):
    """Invalid email or password"""
    def __init__(self):
        super().__init__("Invalid credentials")


class AccountLockedError(AuthenticationError):
    """Account is locked due to failed login attempts"""
    def __init__(self, locked_until: str):
        super().__init__(
            f"Account is locked until {locked_until}",
            details={"locked_until": locked_until}
        )


# Token-level failures share one public message so clients cannot tell
# a bad signature from a malformed or expired token.
TOKEN_ERROR_MESSAGE = "Invalid or expired token"


class TokenError(AuthenticationError):
    """Bearer token could not be accepted"""

    reason = "invalid"

    def __init__(self, reason: Optional[str] = None):
        super().__init__(TOKEN_ERROR_MESSAGE)
        if reason:
            self.reason = reason


class TokenMalformedError(TokenError):
    """Token is not a well-formed signed token or carries unusable claims"""
    reason = "malformed"


class TokenSignatureError(TokenError):
    """Token signature or algorithm did not verify"""
    reason = "signature_invalid"


class TokenExpiredError(TokenError):
    """Token has expired"""
    reason = "expired"


class UnauthenticatedError(AuthenticationError):
    """No valid session could be established"""
    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class SessionInvalidatedError(AuthenticationError):
    """Refresh credential reuse detected; every session of the owner was revoked"""
    def __init__(self, owner_id: Optional[int] = None):
        super().__init__("Session invalidated. Please log in again.")
        self.owner_id = owner_id


# Authorization Errors
class AuthorizationError(BaseAPIException):
    """Insufficient permissions"""
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message, status_code=403)


# Resource Errors
class ResourceNotFoundError(BaseAPIException):
    """Resource not found"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} not found", status_code=404)


class ResourceAlreadyExistsError(BaseAPIException):
    """Resource already exists"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} already exists", status_code=409)


class DuplicateCredentialError(BaseAPIException):
    """Credential digest collides with an existing record"""
    def __init__(self):
        super().__init__("Credential could not be issued", status_code=409)


# System Errors
class StorageUnavailableError(BaseAPIException):
    """Credential or account storage failed"""
    def __init__(self, message: str = "Session storage unavailable. Please try again later."):
        super().__init__(message, status_code=503)
