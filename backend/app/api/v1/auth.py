"""Authentication and session routes"""

import logging
from datetime import datetime
from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.security import HTTPAuthorizationCredentials
from typing import Optional

from app.api.deps import (
    extract_access_token,
    get_clock,
    get_current_admin_user,
    get_current_user,
    get_request_meta,
    get_session_manager,
    get_user_service,
    security,
)
from app.api.errors import api_error_response
from app.config import settings
from app.core.clock import Clock
from app.core.database import get_db
from app.core.exceptions import (
    AuthenticationError,
    InvalidCredentialsError,
    ResourceNotFoundError,
    SessionInvalidatedError,
    UnauthenticatedError,
)
from app.models.user import User
from app.schemas.auth import (
    LoginRequest,
    LogoutRequest,
    RefreshTokenRequest,
    SessionListResponse,
    SessionResponse,
    SignupRequest,
    TokenResponse,
    UserResponse,
)
from app.schemas.response import APIResponse
from app.services.audit_service import AuditService
from app.services.credential_store import RequestMeta
from app.services.session_manager import IssuedSession, SessionManager
from app.services.user_service import UserService
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

router = APIRouter()


def _set_auth_cookies(response: Response, issued: IssuedSession, now: datetime) -> None:
    common = dict(
        httponly=True,
        secure=settings.is_production,
        samesite=settings.COOKIE_SAMESITE,
        path=settings.COOKIE_PATH,
    )
    response.set_cookie(
        key=settings.ACCESS_COOKIE_NAME,
        value=issued.access_token,
        max_age=issued.expires_in(now),
        **common,
    )
    response.set_cookie(
        key=settings.REFRESH_COOKIE_NAME,
        value=issued.refresh_token,
        max_age=max(0, int((issued.refresh_expires_at - now).total_seconds())),
        **common,
    )


def _clear_auth_cookies(response: Response) -> None:
    response.delete_cookie(key=settings.ACCESS_COOKIE_NAME, path=settings.COOKIE_PATH)
    response.delete_cookie(key=settings.REFRESH_COOKIE_NAME, path=settings.COOKIE_PATH)


def _token_response(issued: IssuedSession, user: User, now: datetime) -> TokenResponse:
    return TokenResponse(
        access_token=issued.access_token,
        refresh_token=issued.refresh_token,
        token_type="bearer",
        expires_in=issued.expires_in(now),
        expires_at=issued.expires_at,
        refresh_expires_at=issued.refresh_expires_at,
        user=UserResponse.model_validate(user),
    )


def _presented_refresh_token(request: Request, body_token: Optional[str]) -> Optional[str]:
    if body_token and body_token.strip():
        return body_token.strip()
    cookie = request.cookies.get(settings.REFRESH_COOKIE_NAME)
    if cookie and cookie.strip():
        return cookie.strip()
    return None


@router.post("/signup", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def signup(
    data: SignupRequest,
    response: Response,
    meta: RequestMeta = Depends(get_request_meta),
    users: UserService = Depends(get_user_service),
    manager: SessionManager = Depends(get_session_manager),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
):
    """
    Register a new company with its admin account and start a session

    Returns:
        Token pair and the new admin
    """
    user = users.create_company_admin(
        company_name=data.company_name,
        owner_name=data.owner_name,
        owner_email=data.owner_email,
        password=data.password,
    )
    issued = manager.issue(user, meta)
    AuditService(db).record(AuditService.SIGNUP, user=user, ip_address=meta.ip_address)

    _set_auth_cookies(response, issued, clock())
    return _token_response(issued, user, clock())


@router.post("/login", response_model=TokenResponse, status_code=status.HTTP_200_OK)
def login(
    credentials: LoginRequest,
    response: Response,
    meta: RequestMeta = Depends(get_request_meta),
    users: UserService = Depends(get_user_service),
    manager: SessionManager = Depends(get_session_manager),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
):
    """
    Login endpoint - verify email/password and issue a token pair

    Returns:
        Token pair and user info
    """
    user = users.verify_credentials(credentials.email, credentials.password)
    if user is None:
        raise InvalidCredentialsError()

    issued = manager.issue(user, meta)
    AuditService(db).record(
        AuditService.LOGIN,
        user=user,
        target_type="auth_credential",
        target_id=str(issued.refresh_credential_id),
        ip_address=meta.ip_address,
        metadata={"user_agent": meta.user_agent},
    )

    _set_auth_cookies(response, issued, clock())
    return _token_response(issued, user, clock())


@router.post("/refresh", response_model=TokenResponse)
def refresh_token(
    request: Request,
    response: Response,
    body: Optional[RefreshTokenRequest] = None,
    meta: RequestMeta = Depends(get_request_meta),
    users: UserService = Depends(get_user_service),
    manager: SessionManager = Depends(get_session_manager),
    clock: Clock = Depends(get_clock),
    db: Session = Depends(get_db),
):
    """
    Rotate the refresh credential and return a fresh pair

    The refresh token is read from the JSON body, else from the refresh
    cookie. Any authentication failure clears both auth cookies.
    """
    presented = _presented_refresh_token(request, body.refresh_token if body else None)
    try:
        if not presented:
            raise UnauthenticatedError("Refresh token not found")
        issued = manager.rotate(presented, meta)
        user = users.find_by_id(issued.owner_id)
    except SessionInvalidatedError as exc:
        AuditService(db).record(
            AuditService.REUSE_DETECTED,
            user_id=exc.owner_id,
            ip_address=meta.ip_address,
            metadata={"user_agent": meta.user_agent},
        )
        error = api_error_response(request, exc)
        _clear_auth_cookies(error)
        return error
    except AuthenticationError as exc:
        error = api_error_response(request, exc)
        _clear_auth_cookies(error)
        return error

    _set_auth_cookies(response, issued, clock())
    return _token_response(issued, user, clock())


@router.post("/logout", response_model=APIResponse)
def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    manager: SessionManager = Depends(get_session_manager),
):
    """
    Logout endpoint

    With a refresh token (body or cookie) only that device is logged out.
    Without one, the caller must be authenticated and every session of the
    caller is revoked. Logging out twice is not an error.
    """
    presented = _presented_refresh_token(request, body.refresh_token if body else None)
    if presented:
        manager.logout(presented)
    else:
        access_token = extract_access_token(request, credentials)
        if not access_token:
            raise UnauthenticatedError()
        user = manager.authenticate(access_token)
        manager.logout(owner_id=user.id)

    _clear_auth_cookies(response)
    return APIResponse(message="Logged out successfully")


@router.post("/logout-all", response_model=APIResponse)
def logout_all(
    request: Request,
    response: Response,
    current_user: User = Depends(get_current_user),
    manager: SessionManager = Depends(get_session_manager),
    db: Session = Depends(get_db),
):
    """Revoke every session of the current user on every device"""
    count = manager.logout_all(current_user.id)
    AuditService(db).record(
        AuditService.LOGOUT_ALL,
        user=current_user,
        ip_address=request.client.host if request.client else None,
        metadata={"revoked": count},
    )
    _clear_auth_cookies(response)
    return APIResponse(message="Logged out from all devices", data={"revoked": count})


@router.get("/me", response_model=UserResponse)
def get_current_user_info(
    current_user: User = Depends(get_current_user)
):
    """Get current user information"""
    return UserResponse.model_validate(current_user)


@router.get("/sessions", response_model=SessionListResponse)
def list_sessions(
    request: Request,
    current_user: User = Depends(get_current_user),
    manager: SessionManager = Depends(get_session_manager),
):
    """List the current user's active device sessions, newest first"""
    # Display only: marks which row belongs to the presenting device.
    claims = manager.codec.peek(request.state.access_token)
    current_id = claims.session_id if claims else None

    sessions = []
    for credential in manager.list_sessions(current_user.id):
        item = SessionResponse.model_validate(credential)
        item.current = credential.id == current_id
        sessions.append(item)
    return SessionListResponse(sessions=sessions)


@router.delete("/sessions/{credential_id}", response_model=APIResponse)
def revoke_session(
    credential_id: int,
    current_user: User = Depends(get_current_user),
    manager: SessionManager = Depends(get_session_manager),
):
    """Log out one of the current user's devices"""
    if not manager.revoke_session(current_user.id, credential_id):
        raise ResourceNotFoundError("Session")
    return APIResponse(message="Session revoked")


@router.post("/users/{user_id}/logout-all", response_model=APIResponse)
def admin_logout_user(
    user_id: int,
    request: Request,
    current_user: User = Depends(get_current_admin_user),
    users: UserService = Depends(get_user_service),
    manager: SessionManager = Depends(get_session_manager),
    db: Session = Depends(get_db),
):
    """Revoke every session of an account in the admin's company (admin only)"""
    target = users.find_by_id(user_id)
    if target is None or target.company_id != current_user.company_id:
        raise ResourceNotFoundError("User")

    count = manager.logout_all(target.id)
    AuditService(db).record(
        AuditService.ADMIN_REVOKE,
        user=current_user,
        target_type="user",
        target_id=str(target.id),
        ip_address=request.client.host if request.client else None,
        metadata={"revoked": count},
    )
    logger.info(f"Admin {current_user.id} revoked {count} sessions of user {target.id}")
    return APIResponse(message="User sessions revoked", data={"revoked": count})
