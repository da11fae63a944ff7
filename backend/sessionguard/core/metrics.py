"""Prometheus counters for operational (non-security-event) telemetry.

All collectors live in a dedicated registry so the application can expose
them next to the HTTP metrics without clashing with the default registry.
Labels are kept low-cardinality: no user ids, tokens or raw paths.
"""

from prometheus_client import CollectorRegistry, Counter, generate_latest

registry = CollectorRegistry()

security_events_total = Counter(
    "sessionguard_security_events_total",
    "Security events recorded",
    ["event_type", "severity"],
    registry=registry,
)

rate_limit_decisions_total = Counter(
    "sessionguard_rate_limit_decisions_total",
    "Rate limit decisions",
    ["scope", "decision", "rule_class"],
    registry=registry,
)

rate_limit_rule_transitions_total = Counter(
    "sessionguard_rate_limit_rule_transitions_total",
    "Adaptive rule class transitions",
    ["rule_class"],
    registry=registry,
)

infrastructure_errors_total = Counter(
    "sessionguard_infrastructure_errors_total",
    "Backing store and collaborator failures",
    ["component", "operation"],
    registry=registry,
)

maintenance_removed_total = Counter(
    "sessionguard_maintenance_removed_total",
    "Records removed by periodic maintenance",
    ["job"],
    registry=registry,
)

access_checks_total = Counter(
    "sessionguard_access_checks_total",
    "Facade access decisions",
    ["decision"],
    registry=registry,
)


def record_security_event(event_type: str, severity: str) -> None:
    security_events_total.labels(event_type=event_type, severity=severity).inc()


def record_rate_limit_decision(scope: str, allowed: bool, rule_class: str) -> None:
    rate_limit_decisions_total.labels(
        scope=scope, decision="allowed" if allowed else "rejected", rule_class=rule_class
    ).inc()


def record_rule_transition(rule_class: str) -> None:
    rate_limit_rule_transitions_total.labels(rule_class=rule_class).inc()


def record_infrastructure_error(component: str, operation: str) -> None:
    infrastructure_errors_total.labels(component=component, operation=operation).inc()


def record_maintenance(job: str, removed: int) -> None:
    if removed > 0:
        maintenance_removed_total.labels(job=job).inc(removed)


def record_access_decision(allowed: bool) -> None:
    access_checks_total.labels(decision="allowed" if allowed else "denied").inc()


def render_latest() -> bytes:
    """Serialize the registry in the Prometheus text format."""
    return generate_latest(registry)
