"""Identity provider port and a PyJWT implementation.

TokenGuard only needs three things from the identity provider: who a
token belongs to and when it expires, a fresh token in exchange for one
nearing expiry, and a token pair for a refresh token.
"""

import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import jwt
from jwt.exceptions import PyJWTError

from sessionguard.core.clock import Clock
from sessionguard.core.exceptions import InvalidTokenError, TokenExpiredError


@dataclass(frozen=True)
class Principal:
    """Authenticated identity behind a token."""

    user_id: str
    expires_at: datetime
    token_type: str = "access"
    jti: str | None = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime


class IdentityProvider(Protocol):
    """Upstream identity/auth collaborator."""

    async def get_principal(self, token: str, allow_expired: bool = False) -> Principal:
        """Resolve an access token.

        Raises:
            TokenExpiredError: token is past its expiry (unless ``allow_expired``)
            InvalidTokenError: token is malformed, forged or of the wrong type
        """
        ...

    async def exchange(self, token: str) -> TokenPair:
        """Issue a new token pair for a still-valid access token."""
        ...

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Issue a new token pair for a refresh token."""
        ...


class JWTIdentityProvider:
    """Issues and verifies HS256 JWTs.

    Expiry is checked against the injected clock instead of the wall clock
    so token lifetimes are testable.
    """

    def __init__(
        self,
        secret_key: str,
        clock: Clock,
        algorithm: str = "HS256",
        access_token_ttl: timedelta = timedelta(minutes=15),
        refresh_token_ttl: timedelta = timedelta(days=7),
    ):
        self._secret_key = secret_key
        self._clock = clock
        self._algorithm = algorithm
        self._access_ttl = access_token_ttl
        self._refresh_ttl = refresh_token_ttl

    def _encode(self, user_id: str, token_type: str, ttl: timedelta) -> tuple[str, datetime]:
        now = self._clock.now()
        expire = now + ttl
        payload = {
            "sub": user_id,
            "exp": int(expire.timestamp()),
            "type": token_type,
            # jti keeps tokens issued within the same second distinct
            "jti": secrets.token_hex(16),
        }
        token = jwt.encode(payload, self._secret_key, algorithm=self._algorithm)
        return str(token), expire

    def create_access_token(self, user_id: str, ttl: timedelta | None = None) -> str:
        """Create a short-lived access token."""
        token, _ = self._encode(user_id, "access", ttl or self._access_ttl)
        return token

    def create_refresh_token(self, user_id: str) -> str:
        """Create a long-lived refresh token."""
        token, _ = self._encode(user_id, "refresh", self._refresh_ttl)
        return token

    def issue_tokens(self, user_id: str) -> TokenPair:
        """Create an access/refresh token pair."""
        access, access_expires = self._encode(user_id, "access", self._access_ttl)
        refresh, _ = self._encode(user_id, "refresh", self._refresh_ttl)
        return TokenPair(access_token=access, refresh_token=refresh, access_expires_at=access_expires)

    def decode_token(self, token: str, allow_expired: bool = False) -> dict[str, Any]:
        """Decode and validate a JWT token."""
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "require": ["exp", "sub", "type"],
                },
            )
        except PyJWTError as e:
            raise InvalidTokenError(f"Invalid token: {e}") from e

        if not allow_expired and self._clock.now().timestamp() >= payload["exp"]:
            raise TokenExpiredError("Token has expired")
        return payload

    def _principal(self, payload: dict[str, Any]) -> Principal:
        return Principal(
            user_id=str(payload["sub"]),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=UTC),
            token_type=payload["type"],
            jti=payload.get("jti"),
        )

    async def get_principal(self, token: str, allow_expired: bool = False) -> Principal:
        payload = self.decode_token(token, allow_expired=allow_expired)
        if payload.get("type") != "access":
            raise InvalidTokenError("Not an access token")
        return self._principal(payload)

    async def exchange(self, token: str) -> TokenPair:
        principal = await self.get_principal(token)
        return self.issue_tokens(principal.user_id)

    async def refresh(self, refresh_token: str) -> TokenPair:
        payload = self.decode_token(refresh_token)
        if payload.get("type") != "refresh":
            raise InvalidTokenError("Not a refresh token")
        return self.issue_tokens(str(payload["sub"]))
