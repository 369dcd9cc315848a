"""API dependencies - session wiring, authentication and authorization"""

from fastapi import Depends, Request, Response
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import Optional

from app.config import settings
from app.core.clock import Clock, utc_now
from app.core.database import get_db
from app.core.exceptions import AuthorizationError, UnauthenticatedError
from app.core.token_codec import TokenCodec
from app.models.user import User
from app.services.credential_store import CredentialStore, RequestMeta
from app.services.session_manager import SessionConfig, SessionManager
from app.services.user_service import UserService

ROTATION_HEADER = "X-Token-Rotation-Required"

# HTTP Bearer token scheme; missing header falls back to the access cookie
security = HTTPBearer(auto_error=False)


def get_clock() -> Clock:
    return utc_now


def get_user_service(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> UserService:
    return UserService(db, clock=clock)


def get_session_manager(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> SessionManager:
    """
    Build a SessionManager for this request

    All collaborators are request-scoped; nothing is shared between requests
    except configuration.
    """
    return SessionManager(
        store=CredentialStore(db, clock=clock),
        codec=TokenCodec(settings.SECRET_KEY, settings.ALGORITHM, clock=clock),
        users=UserService(db, clock=clock),
        config=SessionConfig.from_settings(settings),
        clock=clock,
    )


def get_request_meta(request: Request) -> RequestMeta:
    return RequestMeta(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def extract_access_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials],
) -> Optional[str]:
    """
    Pick the presented access token

    The Authorization header wins over the access cookie when both are sent.
    """
    if credentials and credentials.credentials:
        return credentials.credentials.strip()
    cookie = request.cookies.get(settings.ACCESS_COOKIE_NAME)
    if cookie and cookie.strip():
        return cookie.strip()
    return None


def get_current_user(
    request: Request,
    response: Response,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    manager: SessionManager = Depends(get_session_manager),
) -> User:
    """
    Get current authenticated user from the access token

    Args:
        request: Incoming request; the account is attached to request.state
        response: Outgoing response; receives the rotation advisory header
        credentials: HTTP Bearer credentials, if any
        manager: Session manager

    Returns:
        Current user

    Raises:
        UnauthenticatedError: If no usable token is presented
    """
    token = extract_access_token(request, credentials)
    if not token:
        raise UnauthenticatedError()

    user = manager.authenticate(token)
    request.state.user = user
    request.state.access_token = token

    if manager.needs_rotation_hint(token):
        response.headers[ROTATION_HEADER] = "true"

    return user


def get_current_admin_user(
    current_user: User = Depends(get_current_user)
) -> User:
    """
    Get current admin user (authorization check)

    Raises:
        AuthorizationError: If user is not admin
    """
    if not current_user.is_admin():
        raise AuthorizationError("Admin access required")
    return current_user
