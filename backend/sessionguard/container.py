"""Explicit wiring of the security service graph from settings."""

from dataclasses import dataclass, field
from datetime import timedelta

from sessionguard.core.clock import Clock, SystemClock
from sessionguard.core.config import Settings, get_settings
from sessionguard.core.database import get_session_maker
from sessionguard.core.exceptions import FailurePolicy
from sessionguard.repositories.base import SecurityStore
from sessionguard.repositories.sqlalchemy_store import SqlAlchemySecurityStore
from sessionguard.services.audit_log import AuditLog
from sessionguard.services.event_sink import SecurityEventSink
from sessionguard.services.identity import IdentityProvider, JWTIdentityProvider
from sessionguard.services.maintenance import MaintenanceIntervals, MaintenanceScheduler
from sessionguard.services.rate_limiter import RateLimiter, RateLimiterConfig, RateLimitRule
from sessionguard.services.request_validator import RequestValidator
from sessionguard.services.security_facade import SecurityFacade
from sessionguard.services.session_manager import (
    SessionCapPolicy,
    SessionManager,
    SessionManagerConfig,
)
from sessionguard.services.threat_monitor import ThreatMonitor, ThreatMonitorConfig
from sessionguard.services.token_guard import TokenGuard, TokenGuardConfig
from sessionguard.services.webhook_alerting import SecurityAlertSubscriber


@dataclass
class SecurityComponents:
    """Every component of one engine instance, sharing one store and clock."""

    settings: Settings
    store: SecurityStore
    clock: Clock
    identity: IdentityProvider
    event_sink: SecurityEventSink
    request_validator: RequestValidator
    rate_limiter: RateLimiter
    token_guard: TokenGuard
    session_manager: SessionManager
    audit_log: AuditLog
    threat_monitor: ThreatMonitor
    facade: SecurityFacade
    maintenance: MaintenanceScheduler
    alert_subscriber: SecurityAlertSubscriber | None = field(default=None)


def build_security_components(
    settings: Settings | None = None,
    store: SecurityStore | None = None,
    clock: Clock | None = None,
    identity: IdentityProvider | None = None,
) -> SecurityComponents:
    """Build the engine. Defaults: application settings, SQL store, system clock, JWT identity."""
    settings = settings or get_settings()
    clock = clock or SystemClock()
    store = store or SqlAlchemySecurityStore(get_session_maker())
    identity = identity or JWTIdentityProvider(
        settings.jwt_secret_key,
        clock,
        algorithm=settings.jwt_algorithm,
        access_token_ttl=timedelta(minutes=settings.jwt_access_token_expire_minutes),
        refresh_token_ttl=timedelta(days=settings.jwt_refresh_token_expire_days),
    )

    event_sink = SecurityEventSink(
        store,
        clock,
        infra_error_threshold=settings.infra_error_threshold,
        infra_error_window_seconds=settings.infra_error_window_seconds,
    )

    alert_subscriber = None
    if settings.alert_webhook_url:
        alert_subscriber = SecurityAlertSubscriber(settings.alert_webhook_url)
        event_sink.subscribe(alert_subscriber)

    threat_monitor = ThreatMonitor(
        event_sink,
        clock,
        config=ThreatMonitorConfig(
            failed_auth_threshold=settings.failed_auth_threshold,
            failed_auth_window=timedelta(hours=settings.failed_auth_window_hours),
            suspicious_ip_threshold=settings.suspicious_ip_threshold,
            suspicious_ip_window=timedelta(hours=settings.suspicious_ip_window_hours),
            data_access_threshold=settings.data_access_threshold,
            data_access_window=timedelta(seconds=settings.data_access_window_seconds),
        ),
    )
    event_sink.subscribe(threat_monitor.handle_event)

    request_validator = RequestValidator(event_sink)

    rate_limiter = RateLimiter(
        store,
        event_sink,
        clock,
        signing_key=settings.rate_limit_signing_key,
        config=RateLimiterConfig(
            burst_threshold=settings.rate_limit_burst_threshold,
            burst_window_ms=settings.rate_limit_burst_window_ms,
            strict_divisor=settings.rate_limit_strict_divisor,
            tamper_max_requests=settings.rate_limit_tamper_max_requests,
            ip_rotation_threshold=settings.rate_limit_ip_rotation_threshold,
            ip_rotation_window_seconds=settings.rate_limit_ip_rotation_window_seconds,
            distributed_pair_threshold=settings.rate_limit_distributed_pair_threshold,
            distributed_window_seconds=settings.rate_limit_distributed_window_seconds,
        ),
        default_rule=RateLimitRule(
            max_requests=settings.rate_limit_default_max_requests,
            window_ms=settings.rate_limit_default_window_seconds * 1000,
        ),
        failure_policy=FailurePolicy(settings.rate_limit_failure_policy),
    )

    token_guard = TokenGuard(
        store,
        event_sink,
        identity,
        clock,
        config=TokenGuardConfig(
            blacklist_ttl=timedelta(hours=settings.blacklist_ttl_hours),
            rotation_threshold=timedelta(seconds=settings.token_rotation_threshold_seconds),
            refresh_max_attempts=settings.refresh_max_attempts,
            refresh_attempt_window=timedelta(seconds=settings.refresh_attempt_window_seconds),
            concurrent_ip_limit=settings.concurrent_ip_limit,
            concurrent_ip_window=timedelta(seconds=settings.concurrent_ip_window_seconds),
        ),
        failure_policy=FailurePolicy(settings.token_failure_policy),
    )

    session_manager = SessionManager(
        store,
        event_sink,
        clock,
        config=SessionManagerConfig(
            session_timeout=timedelta(minutes=settings.session_timeout_minutes),
            max_sessions_per_user=settings.max_sessions_per_user,
            cap_policy=SessionCapPolicy(settings.session_cap_policy),
            rapid_creation_threshold=settings.rapid_session_threshold,
            rapid_creation_window=timedelta(seconds=settings.rapid_session_window_seconds),
            ip_change_threshold=settings.session_ip_change_threshold,
        ),
        failure_policy=FailurePolicy(settings.session_failure_policy),
    )

    audit_log = AuditLog(
        store,
        event_sink,
        clock,
        retention_days=settings.audit_retention_days,
        threat_monitor=threat_monitor,
    )

    facade = SecurityFacade(
        store,
        event_sink,
        token_guard,
        rate_limiter,
        request_validator,
        threat_monitor=threat_monitor,
    )

    maintenance = MaintenanceScheduler(
        session_manager,
        token_guard,
        audit_log,
        event_sink,
        rate_limiter,
        intervals=MaintenanceIntervals(
            session_cleanup=settings.session_cleanup_interval_seconds,
            blacklist_purge=settings.blacklist_purge_interval_seconds,
            retention=settings.retention_interval_seconds,
            rate_limit_cleanup=settings.rate_limit_cleanup_interval_seconds,
        ),
        security_event_retention_days=settings.security_event_retention_days,
        rate_limit_inactive_seconds=settings.rate_limit_inactive_seconds,
        threat_monitor=threat_monitor,
    )

    return SecurityComponents(
        settings=settings,
        store=store,
        clock=clock,
        identity=identity,
        event_sink=event_sink,
        request_validator=request_validator,
        rate_limiter=rate_limiter,
        token_guard=token_guard,
        session_manager=session_manager,
        audit_log=audit_log,
        threat_monitor=threat_monitor,
        facade=facade,
        maintenance=maintenance,
        alert_subscriber=alert_subscriber,
    )
