"""Fixed-window rate limiting with adaptive strictness and bypass detection.

Counters live in the SecurityStore under canonical keys of the form
``scope:identifier[:endpoint]`` and are advanced atomically through
``SecurityStore.update_rate_limit_entry``. Every stored entry carries an
HMAC over its key and window state; an entry whose signature does not
verify was not written by this limiter and is treated as tampering.
"""

import asyncio
import hashlib
import hmac
from collections import defaultdict, deque
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from sessionguard.core import metrics
from sessionguard.core.clock import Clock, to_epoch_ms
from sessionguard.core.exceptions import FailurePolicy, StoreUnavailableError
from sessionguard.core.logging import get_logger
from sessionguard.domain.entities import RateLimitEntry, RuleClass, SecurityEventType, Severity
from sessionguard.repositories.base import SecurityStore
from sessionguard.services.event_sink import SecurityEventSink

logger = get_logger("rate_limiter")


class RateLimitScope(str, Enum):
    IP = "ip"
    USER = "user"
    IP_USER = "ip_user"


# IP-level limits protect the whole service, so exceeding them is more severe
SCOPE_SEVERITY = {
    RateLimitScope.IP: Severity.HIGH,
    RateLimitScope.USER: Severity.MEDIUM,
    RateLimitScope.IP_USER: Severity.MEDIUM,
}


@dataclass(frozen=True)
class RateLimitRule:
    """Requests allowed per fixed window."""

    max_requests: int
    window_ms: int

    def __post_init__(self) -> None:
        if self.max_requests < 1 or self.window_ms < 1:
            raise ValueError("max_requests and window_ms must be positive")


DEFAULT_RULE = RateLimitRule(max_requests=60, window_ms=60_000)

DEFAULT_ENDPOINT_RULES: dict[str, RateLimitRule] = {
    "/api/auth": RateLimitRule(max_requests=5, window_ms=60_000),
    "/api/public": RateLimitRule(max_requests=120, window_ms=60_000),
}


@dataclass
class RateLimiterConfig:
    """Tunables for the adaptive and detection behavior."""

    burst_threshold: int = 10
    burst_window_ms: int = 1000
    strict_divisor: int = 4
    tamper_max_requests: int = 1
    ip_rotation_threshold: int = 5
    ip_rotation_window_seconds: int = 600
    distributed_pair_threshold: int = 10
    distributed_window_seconds: int = 10


@dataclass
class _Outcome:
    """What happened inside one atomic counter update."""

    allowed: bool = False
    tampered: bool = False
    previous_class: RuleClass | None = None
    entry: RateLimitEntry | None = None


def build_key(scope: RateLimitScope, identifier: str, endpoint: str | None = None) -> str:
    """Canonical rate-limit key."""
    key = f"{scope.value}:{identifier}"
    if endpoint:
        key += f":{endpoint}"
    return key


class RateLimiter:
    """Fixed-window rate limiter backed by the security store.

    Each check runs under a per-key asyncio.Lock in this process and an
    atomic store update across processes, so ``count`` is never read and
    incremented non-atomically. Store failures follow ``failure_policy``
    (open by default: an outage must not block all traffic).
    """

    def __init__(
        self,
        store: SecurityStore,
        event_sink: SecurityEventSink,
        clock: Clock,
        signing_key: str,
        config: RateLimiterConfig | None = None,
        default_rule: RateLimitRule = DEFAULT_RULE,
        endpoint_rules: dict[str, RateLimitRule] | None = None,
        failure_policy: FailurePolicy = FailurePolicy.OPEN,
    ):
        self._store = store
        self._events = event_sink
        self._clock = clock
        self._signing_key = signing_key.encode()
        self._config = config or RateLimiterConfig()
        self._default_rule = default_rule
        self._endpoint_rules: dict[str, RateLimitRule] = dict(
            DEFAULT_ENDPOINT_RULES if endpoint_rules is None else endpoint_rules
        )
        self._failure_policy = failure_policy

        self._key_locks: dict[str, asyncio.Lock] = {}
        # Last entry seen per key; never trusted over a higher store count
        self._cache: dict[str, RateLimitEntry] = {}
        self._recent_hits: dict[str, deque[datetime]] = defaultdict(deque)

        self._user_ips: dict[str, dict[str, datetime]] = defaultdict(dict)
        self._rotation_flagged: set[str] = set()
        self._recent_pairs: deque[tuple[datetime, str, str]] = deque()
        self._distributed_flagged = False
        self._detector_lock = asyncio.Lock()

    # Rules

    def set_rule(self, endpoint: str, rule: RateLimitRule) -> None:
        """Set the rule for an endpoint prefix."""
        self._endpoint_rules[endpoint] = rule
        logger.info(
            f"Rate limit rule for {endpoint}: {rule.max_requests} requests / {rule.window_ms}ms"
        )

    def get_rule(self, endpoint: str | None) -> RateLimitRule:
        """Resolve the rule for an endpoint by longest matching prefix."""
        if endpoint:
            matches = [prefix for prefix in self._endpoint_rules if endpoint.startswith(prefix)]
            if matches:
                return self._endpoint_rules[max(matches, key=len)]
        return self._default_rule

    def _strict_max(self, rule: RateLimitRule) -> int:
        return max(1, rule.max_requests // max(1, self._config.strict_divisor))

    def _limit_for(self, rule: RateLimitRule, rule_class: RuleClass) -> int:
        return rule.max_requests if rule_class == RuleClass.NORMAL else self._strict_max(rule)

    # Signing

    def _sign(self, entry: RateLimitEntry) -> str:
        message = "|".join(
            [
                entry.key,
                str(entry.count),
                str(to_epoch_ms(entry.window_start)),
                str(entry.window_ms),
                str(entry.max_requests),
                entry.rule_class.value,
            ]
        )
        return hmac.new(self._signing_key, message.encode(), hashlib.sha256).hexdigest()

    def _verify(self, entry: RateLimitEntry, key: str) -> bool:
        if entry.key != key or not entry.signature:
            return False
        return hmac.compare_digest(entry.signature, self._sign(entry))

    def _signed(self, entry: RateLimitEntry) -> RateLimitEntry:
        return replace(entry, signature=self._sign(entry))

    # Checks

    async def check(
        self,
        scope: RateLimitScope | str,
        identifier: str,
        endpoint: str | None = None,
        user_id: str | None = None,
        ip: str | None = None,
    ) -> bool:
        """Count one request against ``scope:identifier[:endpoint]``.

        Returns:
            True if the request is within the limit
        """
        scope = RateLimitScope(scope)
        key = build_key(scope, identifier, endpoint)
        rule = self.get_rule(endpoint)

        lock = self._key_locks.setdefault(key, asyncio.Lock())
        async with lock:
            now = self._clock.now()
            promote, demote = self._track_burst(key, now)
            outcome = _Outcome()

            def _advance(current: RateLimitEntry | None) -> RateLimitEntry:
                return self._advance(key, rule, current, now, promote, demote, outcome)

            try:
                entry = await self._store.update_rate_limit_entry(key, _advance)
            except StoreUnavailableError as e:
                await self._events.report_infrastructure_error("rate_limiter", "check", e)
                allowed = self._failure_policy == FailurePolicy.OPEN
                logger.warning(
                    f"Rate limit store unavailable for {scope.value}; "
                    f"failing {'open' if allowed else 'closed'}"
                )
                return allowed

            allowed = outcome.allowed
            cached = self._cache.get(key)
            if (
                allowed
                and cached is not None
                and cached.window_start == entry.window_start
                and cached.count >= entry.max_requests
            ):
                # Store went backwards relative to what this process already saw
                logger.warning(f"Rate limit cache ahead of store for {scope.value}; rejecting")
                allowed = False
            if cached is None or cached.window_start != entry.window_start:
                self._cache[key] = entry
            else:
                self._cache[key] = replace(entry, count=max(entry.count, cached.count))

        if outcome.previous_class is not None and outcome.previous_class != entry.rule_class:
            logger.info(
                f"Rate limit rule class for {scope.value} key changed "
                f"{outcome.previous_class.value} -> {entry.rule_class.value}"
            )
            metrics.record_rule_transition(entry.rule_class.value)
        metrics.record_rate_limit_decision(scope.value, allowed, entry.rule_class.value)

        if outcome.tampered:
            await self._events.record(
                SecurityEventType.RATE_LIMIT_KEY_TAMPERING,
                Severity.HIGH,
                {
                    "scope": scope.value,
                    "identifier": identifier,
                    "endpoint": endpoint,
                    "fallback_max_requests": entry.max_requests,
                },
                user_id=user_id,
                ip=ip,
            )
        elif not allowed:
            await self._events.record(
                SecurityEventType.RATE_LIMIT_EXCEEDED,
                SCOPE_SEVERITY[scope],
                {
                    "scope": scope.value,
                    "identifier": identifier,
                    "endpoint": endpoint,
                    "count": entry.count,
                    "max_requests": entry.max_requests,
                    "window_ms": entry.window_ms,
                    "rule_class": entry.rule_class.value,
                },
                user_id=user_id,
                ip=ip,
            )
        return allowed

    def _track_burst(self, key: str, now: datetime) -> tuple[bool, bool]:
        """Record a hit in the burst sub-window; returns (promote, demote)."""
        hits = self._recent_hits[key]
        hits.append(now)
        horizon = now - timedelta(milliseconds=self._config.burst_window_ms)
        while hits and hits[0] < horizon:
            hits.popleft()
        promote = len(hits) > self._config.burst_threshold
        demote = len(hits) < max(1, self._config.burst_threshold // 2)
        return promote, demote

    def _advance(
        self,
        key: str,
        rule: RateLimitRule,
        current: RateLimitEntry | None,
        now: datetime,
        promote: bool,
        demote: bool,
        outcome: _Outcome,
    ) -> RateLimitEntry:
        if current is not None and not self._verify(current, key):
            # Out-of-band state: lock the key with the strictest rule for one window
            fallback = max(1, self._config.tamper_max_requests)
            outcome.tampered = True
            outcome.allowed = False
            outcome.previous_class = RuleClass(current.rule_class)
            entry = RateLimitEntry(
                key=key,
                count=fallback,
                window_start=now,
                window_ms=rule.window_ms,
                max_requests=fallback,
                rule_class=RuleClass.STRICT,
            )
            outcome.entry = self._signed(entry)
            return outcome.entry

        previous_class = current.rule_class if current is not None else RuleClass.NORMAL
        outcome.previous_class = previous_class
        rule_class = previous_class
        if promote:
            rule_class = RuleClass.STRICT
        elif demote:
            rule_class = RuleClass.NORMAL
        limit = self._limit_for(rule, rule_class)

        if current is None or current.is_window_elapsed(now):
            entry = RateLimitEntry(
                key=key,
                count=0,
                window_start=now,
                window_ms=rule.window_ms,
                max_requests=limit,
                rule_class=rule_class,
            )
        else:
            # Within a window the limit can only tighten
            entry = replace(
                current,
                max_requests=min(current.max_requests, limit),
                rule_class=rule_class,
            )

        if entry.count >= entry.max_requests:
            outcome.allowed = False
        else:
            entry = replace(entry, count=entry.count + 1)
            outcome.allowed = True

        outcome.entry = self._signed(entry)
        return outcome.entry

    async def check_combined(
        self,
        ip: str | None,
        user_id: str | None,
        endpoint: str | None = None,
        include_ip: bool = True,
    ) -> bool:
        """True only if every applicable sub-check passes (IP, user, and joint key).

        Stops at the first failing sub-check so a rejected request does not
        consume quota in the remaining scopes. Pass ``include_ip=False`` when
        the IP scope was already counted for this request.
        """
        if ip and user_id:
            await self._track_identity(ip, user_id)

        checks: list[tuple[RateLimitScope, str]] = []
        if ip and include_ip:
            checks.append((RateLimitScope.IP, ip))
        if user_id:
            checks.append((RateLimitScope.USER, user_id))
        if ip and user_id:
            checks.append((RateLimitScope.IP_USER, f"{ip}|{user_id}"))

        for scope, identifier in checks:
            if not await self.check(scope, identifier, endpoint, user_id=user_id, ip=ip):
                return False
        return True

    # Bypass detection

    async def _track_identity(self, ip: str, user_id: str) -> None:
        now = self._clock.now()
        rotation_event: dict[str, Any] | None = None
        distributed_event: dict[str, Any] | None = None

        async with self._detector_lock:
            rotation_horizon = now - timedelta(seconds=self._config.ip_rotation_window_seconds)
            ips = self._user_ips[user_id]
            ips[ip] = now
            for stale in [addr for addr, seen in ips.items() if seen < rotation_horizon]:
                del ips[stale]
            if len(ips) >= self._config.ip_rotation_threshold:
                if user_id not in self._rotation_flagged:
                    self._rotation_flagged.add(user_id)
                    rotation_event = {
                        "user_id": user_id,
                        "ip_count": len(ips),
                        "ips": sorted(ips),
                        "window_seconds": self._config.ip_rotation_window_seconds,
                    }
            else:
                self._rotation_flagged.discard(user_id)

            pair_horizon = now - timedelta(seconds=self._config.distributed_window_seconds)
            self._recent_pairs.append((now, ip, user_id))
            while self._recent_pairs and self._recent_pairs[0][0] < pair_horizon:
                self._recent_pairs.popleft()
            pairs = {(p_ip, p_user) for _, p_ip, p_user in self._recent_pairs}
            if len(pairs) >= self._config.distributed_pair_threshold:
                if not self._distributed_flagged:
                    self._distributed_flagged = True
                    distributed_event = {
                        "pair_count": len(pairs),
                        "distinct_ips": len({p[0] for p in pairs}),
                        "distinct_users": len({p[1] for p in pairs}),
                        "window_seconds": self._config.distributed_window_seconds,
                    }
            else:
                self._distributed_flagged = False

        if rotation_event is not None:
            await self._events.record(
                SecurityEventType.SUSPICIOUS_IP_ROTATION,
                Severity.HIGH,
                rotation_event,
                user_id=user_id,
                ip=ip,
            )
        if distributed_event is not None:
            await self._events.record(
                SecurityEventType.DISTRIBUTED_BYPASS_ATTEMPT,
                Severity.HIGH,
                distributed_event,
                ip=ip,
            )

    # Maintenance

    async def get_stats(self) -> dict[str, dict[str, Any]]:
        """Current in-process view of every key seen by this limiter."""
        return {
            key: {
                "count": entry.count,
                "max_requests": entry.max_requests,
                "window_start": entry.window_start.isoformat(),
                "rule_class": entry.rule_class.value,
            }
            for key, entry in self._cache.items()
        }

    async def reset(self, identifier: str | None = None) -> int:
        """Clear counters for every scope of ``identifier``, or everything."""
        if identifier is None:
            self._cache.clear()
            self._recent_hits.clear()
            self._user_ips.clear()
            self._rotation_flagged.clear()
            self._recent_pairs.clear()
            self._distributed_flagged = False
            return await self._store.delete_rate_limit_entries()

        removed = 0
        for scope in RateLimitScope:
            prefix = f"{scope.value}:{identifier}"
            for key in [k for k in self._cache if k == prefix or k.startswith(prefix + ":")]:
                self._cache.pop(key, None)
                self._recent_hits.pop(key, None)
            removed += await self._store.delete_rate_limit_entries(prefix)
        return removed

    async def cleanup_inactive_entries(self, inactive_seconds: int = 3600) -> int:
        """Drop counters whose window started more than ``inactive_seconds`` ago.

        Returns:
            Number of store entries removed
        """
        now = self._clock.now()
        cutoff = now - timedelta(seconds=inactive_seconds)
        removed = await self._store.delete_rate_limit_entries_before(cutoff)

        for key in [k for k, e in self._cache.items() if e.window_start < cutoff]:
            self._cache.pop(key, None)
            self._recent_hits.pop(key, None)
            lock = self._key_locks.get(key)
            if lock is not None and not lock.locked():
                del self._key_locks[key]

        async with self._detector_lock:
            for user_id in list(self._user_ips):
                ips = self._user_ips[user_id]
                for stale in [addr for addr, seen in ips.items() if seen < cutoff]:
                    del ips[stale]
                if not ips:
                    del self._user_ips[user_id]
                    self._rotation_flagged.discard(user_id)

        if removed > 0:
            logger.info(f"Cleaned up {removed} inactive rate limit entries")
        metrics.record_maintenance("rate_limit_cleanup", removed)
        return removed
