"""Single entry point composing the security components for callers."""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from sessionguard.core import metrics
from sessionguard.core.exceptions import StoreUnavailableError
from sessionguard.core.logging import get_logger
from sessionguard.domain.entities import SecurityEventType, Severity
from sessionguard.repositories.base import SecurityStore
from sessionguard.services.event_sink import SecurityEventSink
from sessionguard.services.identity import Principal
from sessionguard.services.rate_limiter import RateLimiter, RateLimitScope
from sessionguard.services.request_validator import (
    RequestValidator,
    ValidationResult,
    ValidationRule,
)
from sessionguard.services.threat_monitor import ThreatMonitor
from sessionguard.services.token_guard import TokenGuard

logger = get_logger("security_facade")


class AccessDenialReason(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    RATE_LIMITED = "rate_limited"
    FORBIDDEN = "forbidden"
    ERROR = "error"


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    principal: Principal | None = None
    reason: AccessDenialReason | None = None


class RoleLookupError(Exception):
    """No role data for a user that a role check needs."""

    pass


class SecurityFacade:
    """Composes TokenGuard, RateLimiter, RequestValidator and the role store.

    Access checks fail closed: any unexpected error denies the request.
    """

    def __init__(
        self,
        store: SecurityStore,
        event_sink: SecurityEventSink,
        token_guard: TokenGuard,
        rate_limiter: RateLimiter,
        request_validator: RequestValidator,
        threat_monitor: ThreatMonitor | None = None,
    ):
        self._store = store
        self._events = event_sink
        self._token_guard = token_guard
        self._rate_limiter = rate_limiter
        self._validator = request_validator
        self._threat_monitor = threat_monitor

    async def check_access(
        self,
        endpoint: str,
        token: str,
        required_role: str | None = None,
        ip_address: str | None = None,
    ) -> bool:
        """True if ``token`` may access ``endpoint``."""
        decision = await self.evaluate_access(endpoint, token, required_role, ip_address)
        return decision.allowed

    async def evaluate_access(
        self,
        endpoint: str,
        token: str,
        required_role: str | None = None,
        ip_address: str | None = None,
    ) -> AccessDecision:
        """Like ``check_access`` but reports why access was denied.

        Order: IP rate limit (when the IP is known), token (blacklist first),
        user rate limits, role. Unauthenticated requests still spend IP quota.
        """
        try:
            decision = await self._evaluate(endpoint, token, required_role, ip_address)
        except Exception:
            logger.exception(f"Access check failed for {endpoint}")
            decision = AccessDecision(allowed=False, reason=AccessDenialReason.ERROR)

        metrics.record_access_decision(decision.allowed)
        return decision

    async def _evaluate(
        self,
        endpoint: str,
        token: str,
        required_role: str | None,
        ip_address: str | None,
    ) -> AccessDecision:
        if ip_address and not await self._rate_limiter.check(
            RateLimitScope.IP, ip_address, endpoint, ip=ip_address
        ):
            return AccessDecision(allowed=False, reason=AccessDenialReason.RATE_LIMITED)

        principal = await self._token_guard.authenticate(token, ip=ip_address, endpoint=endpoint)
        if principal is None:
            if ip_address and self._threat_monitor is not None:
                await self._threat_monitor.record_failed_auth(ip_address, endpoint=endpoint)
            return AccessDecision(allowed=False, reason=AccessDenialReason.UNAUTHENTICATED)

        if ip_address:
            within_limit = await self._rate_limiter.check_combined(
                ip_address, principal.user_id, endpoint, include_ip=False
            )
        else:
            within_limit = await self._rate_limiter.check(
                RateLimitScope.USER, principal.user_id, endpoint, user_id=principal.user_id
            )
        if not within_limit:
            return AccessDecision(
                allowed=False, principal=principal, reason=AccessDenialReason.RATE_LIMITED
            )

        if required_role is not None and not await self._has_role(
            principal.user_id, required_role, endpoint, ip_address
        ):
            return AccessDecision(
                allowed=False, principal=principal, reason=AccessDenialReason.FORBIDDEN
            )

        return AccessDecision(allowed=True, principal=principal)

    async def _has_role(
        self,
        user_id: str,
        required_role: str,
        endpoint: str,
        ip_address: str | None,
    ) -> bool:
        try:
            role = await self._store.get_user_role(user_id)
            if role is None:
                raise RoleLookupError(f"No role assigned to user {user_id}")
        except (StoreUnavailableError, RoleLookupError) as e:
            await self._events.report_infrastructure_error("security_facade", "role_lookup_failed", e)
            return False

        if role.grants(required_role):
            return True

        await self._events.record(
            SecurityEventType.PERMISSION_DENIED,
            Severity.HIGH,
            {
                "endpoint": endpoint,
                "required_role": required_role,
                "role": role.role,
                "parent_role": role.parent_role,
            },
            user_id=user_id,
            ip=ip_address,
        )
        return False

    async def validate_request(
        self,
        endpoint: str,
        method: str,
        payload: dict[str, Any] | None,
        rules: dict[str, ValidationRule | dict[str, Any]],
        user_id: str | None = None,
        ip_address: str | None = None,
    ) -> ValidationResult:
        """Validate a request payload; suspicious input is reported, never rejected."""
        return await self._validator.validate(
            endpoint, method, payload, rules, user_id=user_id, ip=ip_address
        )

    def sanitize_input(self, value: Any) -> Any:
        """HTML-escape every string in ``value``, preserving structure."""
        return self._validator.sanitize(value)
