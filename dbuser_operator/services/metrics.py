"""
Prometheus metrics for reconciliation passes and cleanup.

Exposed on the health server under ``/metrics``.
"""
from prometheus_client import Counter, Gauge, Histogram

from dbuser_operator.core.decision import Action
from dbuser_operator.models.database import DatabasePhase
from dbuser_operator.utils.retry import ErrorKind

# Failed passes are recorded with action "failed"
RECORDED_ACTIONS = [action.value for action in Action] + ["failed"]

# Reconciliation metrics
reconciliation_total = Counter(
    "dbuser_reconciliation_total",
    "Total number of Database reconciliation passes",
    ["namespace", "name", "result", "action"],
)

reconciliation_duration_seconds = Histogram(
    "dbuser_reconciliation_duration_seconds",
    "Duration of Database reconciliation passes",
    ["namespace", "name"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60),
)

reconciliation_errors_total = Counter(
    "dbuser_reconciliation_errors_total",
    "Failed reconciliation passes by error kind",
    ["namespace", "name", "kind"],
)

# Deletion metrics
cleanup_total = Counter(
    "dbuser_cleanup_total",
    "Deletion cleanup attempts per resource",
    ["resource", "result"],
)

# Resource info
database_phase = Gauge(
    "dbuser_database_phase",
    "Phase of Database resources (1 for the current phase)",
    ["namespace", "name", "phase"],
)


def record_reconciliation(namespace: str, name: str, result: str, action: str, duration_seconds: float):
    """Record a finished reconciliation pass."""
    reconciliation_total.labels(namespace=namespace, name=name, result=result, action=action).inc()
    reconciliation_duration_seconds.labels(namespace=namespace, name=name).observe(duration_seconds)


def record_error(namespace: str, name: str, kind: str):
    reconciliation_errors_total.labels(namespace=namespace, name=name, kind=kind).inc()


def record_cleanup(resource: str, success: bool):
    cleanup_total.labels(resource=resource, result="success" if success else "failure").inc()


def record_phase(namespace: str, name: str, phase: str):
    """Set the phase gauge so exactly one phase reads 1."""
    for candidate in DatabasePhase:
        database_phase.labels(namespace=namespace, name=name, phase=candidate.value).set(
            1 if candidate.value == phase else 0
        )


def _remove(metric, *labelvalues):
    try:
        metric.remove(*labelvalues)
    except KeyError:
        pass


def forget_database(namespace: str, name: str):
    """Drop every per-object series of a removed Database."""
    _remove(reconciliation_duration_seconds, namespace, name)
    for phase in DatabasePhase:
        _remove(database_phase, namespace, name, phase.value)
    for kind in ErrorKind:
        _remove(reconciliation_errors_total, namespace, name, kind.value)
    for action in RECORDED_ACTIONS:
        for result in ("success", "error"):
            _remove(reconciliation_total, namespace, name, result, action)
