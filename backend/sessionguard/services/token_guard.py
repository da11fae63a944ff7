"""Token lifecycle: blacklist, rotation, refresh and compromise handling.

Per-token state machine::

    active -> rotation_pending -> rotated | blacklisted -> purged

Tokens are stored and cached by SHA-256 digest only. Blacklist lookups
fail closed: if the store cannot answer, the token is treated as revoked.
"""

import asyncio
import hashlib
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sessionguard.core import metrics
from sessionguard.core.clock import Clock
from sessionguard.core.exceptions import (
    FailurePolicy,
    StoreUnavailableError,
    TokenError,
    TokenExpiredError,
)
from sessionguard.core.logging import get_logger
from sessionguard.domain.entities import BlacklistEntry, SecurityEventType, Severity
from sessionguard.repositories.base import SecurityStore
from sessionguard.services.event_sink import SecurityEventSink
from sessionguard.services.identity import IdentityProvider, Principal, TokenPair

logger = get_logger("token_guard")

ROTATED_REASON = "rotated"
COMPROMISED_REASON = "compromised"


class TokenState(str, Enum):
    ACTIVE = "active"
    ROTATION_PENDING = "rotation_pending"
    ROTATED = "rotated"
    BLACKLISTED = "blacklisted"
    PURGED = "purged"
    EXPIRED = "expired"
    INVALID = "invalid"


@dataclass
class TokenGuardConfig:
    blacklist_ttl: timedelta = timedelta(hours=24)
    rotation_threshold: timedelta = timedelta(minutes=5)
    refresh_max_attempts: int = 3
    refresh_attempt_window: timedelta = timedelta(seconds=60)
    concurrent_ip_limit: int = 2
    concurrent_ip_window: timedelta = timedelta(minutes=5)


@dataclass(frozen=True)
class RotationResult:
    rotated: bool
    new_token: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class RefreshResult:
    success: bool
    tokens: TokenPair | None = None
    error: str | None = None


@dataclass(frozen=True)
class TokenValidationResult:
    valid: bool
    principal: Principal | None = None
    reason: str | None = None


def token_digest(token: str) -> str:
    """SHA-256 hex digest used to store and index tokens."""
    return hashlib.sha256(token.encode()).hexdigest()


class TokenGuard:
    """Guards token use on every access check."""

    def __init__(
        self,
        store: SecurityStore,
        event_sink: SecurityEventSink,
        identity: IdentityProvider,
        clock: Clock,
        config: TokenGuardConfig | None = None,
        failure_policy: FailurePolicy = FailurePolicy.CLOSED,
    ):
        self._store = store
        self._events = event_sink
        self._identity = identity
        self._clock = clock
        self._config = config or TokenGuardConfig()
        self._failure_policy = failure_policy

        self._blacklist_cache: dict[str, BlacklistEntry] = {}
        self._purged: dict[str, datetime] = {}
        self._rotation_locks: dict[str, asyncio.Lock] = {}
        self._rotations: dict[str, RotationResult] = {}
        self._refresh_attempts: dict[str, deque[datetime]] = defaultdict(deque)
        self._token_ips: dict[str, dict[str, datetime]] = defaultdict(dict)
        self._state_lock = asyncio.Lock()

    # Blacklist

    async def blacklist(self, token: str, reason: str, user_id: str | None = None) -> BlacklistEntry:
        """Revoke a token for the blacklist TTL.

        For every reason other than rotation, all sessions of the token's
        principal are deleted in the same call so no other session keeps
        working with stale credentials.

        Raises:
            StoreUnavailableError: the revocation could not be persisted
        """
        digest = token_digest(token)
        now = self._clock.now()
        if user_id is None:
            user_id = await self._resolve_user(token)

        entry = BlacklistEntry(
            token=digest,
            reason=reason,
            blacklisted_at=now,
            expires_at=now + self._config.blacklist_ttl,
            user_id=user_id,
        )
        await self._store.add_blacklist_entry(entry)
        self._blacklist_cache[digest] = entry
        self._purged.pop(digest, None)

        await self._events.record(
            SecurityEventType.TOKEN_BLACKLISTED,
            Severity.MEDIUM,
            {"reason": reason, "expires_at": entry.expires_at.isoformat()},
            user_id=user_id,
        )

        if reason != ROTATED_REASON and user_id is not None:
            removed = await self._store.delete_user_sessions(user_id)
            await self._events.record(
                SecurityEventType.FORCED_SESSION_INVALIDATION,
                Severity.MEDIUM,
                {"reason": reason, "sessions_invalidated": removed},
                user_id=user_id,
            )
        return entry

    async def _resolve_user(self, token: str) -> str | None:
        try:
            principal = await self._identity.get_principal(token, allow_expired=True)
            return principal.user_id
        except TokenError:
            return None

    async def _lookup(self, digest: str) -> BlacklistEntry | None:
        """Active blacklist entry for a digest (cache, then store). Raises on store failure."""
        now = self._clock.now()
        cached = self._blacklist_cache.get(digest)
        if cached is not None:
            if cached.is_active(now):
                return cached
            self._blacklist_cache.pop(digest, None)

        entry = await self._store.get_blacklist_entry(digest)
        # Presence alone is not enough: an unpurged but expired entry no longer applies
        if entry is None or not entry.is_active(now):
            return None
        self._blacklist_cache[digest] = entry
        return entry

    async def is_blacklisted(self, token: str) -> bool:
        """True if the token is revoked, or if revocation cannot be ruled out."""
        try:
            return await self._lookup(token_digest(token)) is not None
        except StoreUnavailableError as e:
            await self._events.report_infrastructure_error("token_guard", "is_blacklisted", e)
            return self._failure_policy == FailurePolicy.CLOSED

    async def purge_expired(self) -> int:
        """Remove blacklist entries whose TTL has elapsed.

        Returns:
            Number of entries purged from the store
        """
        now = self._clock.now()
        digests = await self._store.delete_expired_blacklist_entries(now)

        async with self._state_lock:
            for digest in [d for d, e in self._blacklist_cache.items() if not e.is_active(now)]:
                self._blacklist_cache.pop(digest, None)
            for digest in digests:
                self._blacklist_cache.pop(digest, None)
                self._rotations.pop(digest, None)
                self._rotation_locks.pop(digest, None)
                self._purged[digest] = now

            # Forget purge markers and tracking state older than one TTL
            horizon = now - self._config.blacklist_ttl
            for digest in [d for d, at in self._purged.items() if at < horizon]:
                del self._purged[digest]
            self._prune_tracking(now)

        if digests:
            logger.info(f"Purged {len(digests)} expired blacklist entries")
        metrics.record_maintenance("blacklist_purge", len(digests))
        return len(digests)

    def _prune_tracking(self, now: datetime) -> None:
        refresh_horizon = now - self._config.refresh_attempt_window
        for digest in list(self._refresh_attempts):
            attempts = self._refresh_attempts[digest]
            while attempts and attempts[0] < refresh_horizon:
                attempts.popleft()
            if not attempts:
                del self._refresh_attempts[digest]

        ip_horizon = now - self._config.concurrent_ip_window
        for digest in list(self._token_ips):
            ips = self._token_ips[digest]
            for ip in [addr for addr, seen in ips.items() if seen < ip_horizon]:
                del ips[ip]
            if not ips:
                del self._token_ips[digest]

    # State

    async def get_token_state(self, token: str) -> TokenState:
        """Where ``token`` currently sits in its lifecycle."""
        digest = token_digest(token)
        try:
            entry = await self._lookup(digest)
        except StoreUnavailableError as e:
            await self._events.report_infrastructure_error("token_guard", "get_token_state", e)
            return TokenState.BLACKLISTED
        if entry is not None:
            return TokenState.ROTATED if entry.reason == ROTATED_REASON else TokenState.BLACKLISTED
        if digest in self._purged:
            return TokenState.PURGED

        try:
            principal = await self._identity.get_principal(token)
        except TokenExpiredError:
            return TokenState.EXPIRED
        except TokenError:
            return TokenState.INVALID
        if principal.expires_at - self._clock.now() <= self._config.rotation_threshold:
            return TokenState.ROTATION_PENDING
        return TokenState.ACTIVE

    # Rotation

    async def rotate_if_needed(self, token: str) -> RotationResult:
        """Exchange a token that is within the rotation threshold of expiry.

        Concurrent calls for the same token perform a single exchange and all
        receive the same new token.
        """
        digest = token_digest(token)
        lock = self._rotation_locks.setdefault(digest, asyncio.Lock())
        async with lock:
            previous = self._rotations.get(digest)
            if previous is not None:
                return previous

            if await self.is_blacklisted(token):
                return RotationResult(rotated=False, error="token_blacklisted")

            try:
                principal = await self._identity.get_principal(token)
            except TokenError as e:
                return RotationResult(rotated=False, error=str(e))

            remaining = principal.expires_at - self._clock.now()
            if remaining > self._config.rotation_threshold:
                return RotationResult(rotated=False)

            try:
                pair = await self._identity.exchange(token)
            except TokenError as e:
                return RotationResult(rotated=False, error=str(e))
            except Exception as e:
                await self._events.report_infrastructure_error("token_guard", "exchange", e)
                return RotationResult(rotated=False, error="identity_provider_unavailable")

            try:
                await self.blacklist(token, ROTATED_REASON, user_id=principal.user_id)
            except StoreUnavailableError as e:
                await self._events.report_infrastructure_error("token_guard", "rotate", e)
                return RotationResult(rotated=False, error="blacklist_unavailable")

            result = RotationResult(rotated=True, new_token=pair.access_token)
            self._rotations[digest] = result
            logger.info(f"Rotated token for user {principal.user_id}")
            return result

    # Refresh

    async def refresh(self, refresh_token: str) -> RefreshResult:
        """Exchange a refresh token, enforcing the per-token attempt cap.

        Once the cap is exceeded within the window, further attempts are
        refused regardless of whether the credential is valid.
        """
        digest = token_digest(refresh_token)
        now = self._clock.now()

        async with self._state_lock:
            attempts = self._refresh_attempts[digest]
            horizon = now - self._config.refresh_attempt_window
            while attempts and attempts[0] < horizon:
                attempts.popleft()
            over_cap = len(attempts) >= self._config.refresh_max_attempts
            if not over_cap:
                attempts.append(now)
            attempt_count = len(attempts) + (1 if over_cap else 0)

        if over_cap:
            await self._events.record(
                SecurityEventType.SUSPICIOUS_REFRESH_ATTEMPTS,
                Severity.HIGH,
                {
                    "attempts": attempt_count,
                    "max_attempts": self._config.refresh_max_attempts,
                    "window_seconds": int(self._config.refresh_attempt_window.total_seconds()),
                },
            )
            return RefreshResult(success=False, error="too_many_refresh_attempts")

        if await self.is_blacklisted(refresh_token):
            await self._events.record(
                SecurityEventType.SUSPICIOUS_ACTIVITY,
                Severity.HIGH,
                {"reason": "blacklisted_token_used", "token_type": "refresh"},
            )
            return RefreshResult(success=False, error="token_blacklisted")

        try:
            pair = await self._identity.refresh(refresh_token)
        except TokenError as e:
            await self._events.record(
                SecurityEventType.INVALID_REFRESH_TOKEN,
                Severity.HIGH,
                {"error": str(e)},
            )
            return RefreshResult(success=False, error="invalid_refresh_token")
        except Exception as e:
            await self._events.report_infrastructure_error("token_guard", "refresh", e)
            return RefreshResult(success=False, error="identity_provider_unavailable")

        return RefreshResult(success=True, tokens=pair)

    async def handle_compromised_refresh_token(self, refresh_token: str, user_id: str) -> None:
        """Revoke a refresh token believed stolen and sign the user out everywhere."""
        await self.blacklist(refresh_token, COMPROMISED_REASON, user_id=user_id)
        await self._events.record(
            SecurityEventType.REFRESH_TOKEN_COMPROMISED,
            Severity.HIGH,
            {"action": "blacklisted_and_sessions_invalidated"},
            user_id=user_id,
        )
        async with self._state_lock:
            self._refresh_attempts.pop(token_digest(refresh_token), None)

    # Validation

    async def validate_token(
        self,
        token: str,
        ip: str | None = None,
        endpoint: str | None = None,
    ) -> TokenValidationResult:
        """Validate an access token presented from ``ip``.

        Order: blacklist, token validity, concurrent-IP usage.
        """
        digest = token_digest(token)

        try:
            entry = await self._lookup(digest)
        except StoreUnavailableError as e:
            await self._events.report_infrastructure_error("token_guard", "validate_token", e)
            if self._failure_policy == FailurePolicy.CLOSED:
                return TokenValidationResult(valid=False, reason="blacklist_unavailable")
            entry = None

        if entry is not None:
            if entry.reason == ROTATED_REASON:
                await self._events.record(
                    SecurityEventType.TOKEN_REUSE_ATTEMPT,
                    Severity.HIGH,
                    {"endpoint": endpoint},
                    user_id=entry.user_id,
                    ip=ip,
                )
                return TokenValidationResult(valid=False, reason="token_reused")
            await self._events.record(
                SecurityEventType.SUSPICIOUS_ACTIVITY,
                Severity.HIGH,
                {"reason": "blacklisted_token_used", "endpoint": endpoint},
                user_id=entry.user_id,
                ip=ip,
            )
            return TokenValidationResult(valid=False, reason="token_blacklisted")

        try:
            principal = await self._identity.get_principal(token)
        except TokenExpiredError:
            await self._events.record(
                SecurityEventType.EXPIRED_TOKEN_USED,
                Severity.MEDIUM,
                {"endpoint": endpoint},
                ip=ip,
            )
            return TokenValidationResult(valid=False, reason="token_expired")
        except TokenError as e:
            await self._events.record(
                SecurityEventType.INVALID_TOKEN,
                Severity.MEDIUM,
                {"endpoint": endpoint, "error": str(e)},
                ip=ip,
            )
            return TokenValidationResult(valid=False, reason="token_invalid")
        except Exception as e:
            await self._events.report_infrastructure_error("token_guard", "get_principal", e)
            return TokenValidationResult(valid=False, reason="identity_provider_unavailable")

        if ip:
            ip_count = await self._track_ip(digest, ip)
            if ip_count > self._config.concurrent_ip_limit:
                await self._events.record(
                    SecurityEventType.CONCURRENT_TOKEN_USAGE,
                    Severity.HIGH,
                    {"ip_count": ip_count, "endpoint": endpoint},
                    user_id=principal.user_id,
                    ip=ip,
                )
                return TokenValidationResult(
                    valid=False, principal=principal, reason="concurrent_token_usage"
                )

        return TokenValidationResult(valid=True, principal=principal)

    async def _track_ip(self, digest: str, ip: str) -> int:
        now = self._clock.now()
        horizon = now - self._config.concurrent_ip_window
        async with self._state_lock:
            ips = self._token_ips[digest]
            ips[ip] = now
            for stale in [addr for addr, seen in ips.items() if seen < horizon]:
                del ips[stale]
            return len(ips)

    async def authenticate(
        self,
        token: str,
        ip: str | None = None,
        endpoint: str | None = None,
    ) -> Principal | None:
        """Principal for a usable token, or None."""
        result = await self.validate_token(token, ip=ip, endpoint=endpoint)
        return result.principal if result.valid else None
