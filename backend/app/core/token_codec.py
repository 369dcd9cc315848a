"""Signed bearer token encoding and verification.

The codec is stateless and performs no I/O. It signs tokens with one fixed
HMAC algorithm; tokens announcing any other algorithm in their header are
rejected before signature verification, so there is no algorithm negotiation.

Purpose (access vs refresh) is carried as a claim but deliberately not
enforced here. Callers compare ``TokenClaims.purpose`` with what their
context expects.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional

from jose import JWTError, jwt
from jose.exceptions import JWTClaimsError

from app.core.clock import Clock, utc_now
from app.core.exceptions import TokenExpiredError, TokenMalformedError, TokenSignatureError


class TokenPurpose(str, Enum):
    """What a token may be used for"""
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    """Decoded, typed token claims"""

    owner_id: int
    role: str
    tenant_id: Optional[int]
    purpose: TokenPurpose
    issued_at: int
    expires_at: int
    token_id: str
    session_id: Optional[int] = None

    @property
    def expires_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "sub": str(self.owner_id),
            "role": self.role,
            "tid": self.tenant_id,
            "typ": self.purpose.value,
            "iat": self.issued_at,
            "exp": self.expires_at,
            "jti": self.token_id,
        }
        if self.session_id is not None:
            payload["sid"] = self.session_id
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TokenClaims":
        """
        Build claims from a decoded payload.

        Raises:
            ValueError, KeyError, TypeError: payload is missing or has mistyped claims
        """
        exp = payload["exp"]
        iat = payload["iat"]
        if not isinstance(exp, int) or not isinstance(iat, int):
            raise TypeError("iat/exp must be integer epoch seconds")
        tenant = payload.get("tid")
        session = payload.get("sid")
        return cls(
            owner_id=int(payload["sub"]),
            role=str(payload["role"]),
            tenant_id=int(tenant) if tenant is not None else None,
            purpose=TokenPurpose(payload["typ"]),
            issued_at=iat,
            expires_at=exp,
            token_id=str(payload["jti"]),
            session_id=int(session) if session is not None else None,
        )


class IssuedToken(NamedTuple):
    token: str
    claims: TokenClaims


class TokenCodec:
    """Issue, verify and peek at HMAC-signed JWTs"""

    def __init__(self, secret: str, algorithm: str = "HS256", clock: Clock = utc_now):
        if not secret:
            raise ValueError("Token signing secret must be set")
        if not algorithm.startswith("HS"):
            raise ValueError(f"Only HMAC algorithms are supported, got {algorithm}")
        self._secret = secret
        self._algorithm = algorithm
        self._clock = clock

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def now_epoch(self) -> int:
        return int(self._clock().timestamp())

    def issue(
        self,
        *,
        owner_id: int,
        role: str,
        tenant_id: Optional[int],
        purpose: TokenPurpose,
        ttl: timedelta,
        session_id: Optional[int] = None,
    ) -> IssuedToken:
        """
        Sign a new token.

        Args:
            owner_id: Account id placed in ``sub``
            role: Account role at issuance
            tenant_id: Company id at issuance
            purpose: access or refresh
            ttl: Lifetime; must be positive
            session_id: Refresh credential id an access token is paired with

        Returns:
            IssuedToken with the encoded token and the exact claims signed
        """
        ttl_seconds = int(ttl.total_seconds())
        if ttl_seconds <= 0:
            raise ValueError("Token ttl must be positive")

        issued_at = self.now_epoch()
        claims = TokenClaims(
            owner_id=owner_id,
            role=role,
            tenant_id=tenant_id,
            purpose=purpose,
            issued_at=issued_at,
            expires_at=issued_at + ttl_seconds,
            token_id=secrets.token_urlsafe(24),
            session_id=session_id,
        )
        token = jwt.encode(claims.to_payload(), self._secret, algorithm=self._algorithm)
        return IssuedToken(token=token, claims=claims)

    def verify(self, token: str) -> TokenClaims:
        """
        Verify signature and expiry.

        Raises:
            TokenMalformedError: not a JWT, or claims missing/mistyped
            TokenSignatureError: wrong algorithm or signature mismatch
            TokenExpiredError: codec clock is at or past ``exp``
        """
        if not token or not isinstance(token, str):
            raise TokenMalformedError()

        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise TokenMalformedError() from exc

        if header.get("alg") != self._algorithm:
            raise TokenSignatureError("algorithm_mismatch")

        try:
            # Expiry is checked below against our own clock.
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"verify_exp": False, "verify_aud": False},
            )
        except JWTClaimsError as exc:
            raise TokenMalformedError() from exc
        except JWTError as exc:
            raise TokenSignatureError() from exc

        try:
            claims = TokenClaims.from_payload(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenMalformedError() from exc

        if self.now_epoch() >= claims.expires_at:
            raise TokenExpiredError()
        return claims

    def peek(self, token: str) -> Optional[TokenClaims]:
        """Decode claims WITHOUT verifying the signature. Never use to authorize."""
        try:
            return TokenClaims.from_payload(jwt.get_unverified_claims(token))
        except (JWTError, KeyError, TypeError, ValueError, AttributeError):
            return None
