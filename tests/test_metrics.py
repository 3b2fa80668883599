"""
Tests for operator metrics.
"""
from prometheus_client import REGISTRY

from dbuser_operator.services import metrics


def sample(name, /, **labels):
    return REGISTRY.get_sample_value(name, labels)


def test_phase_gauge_marks_one_phase():
    metrics.record_phase("apps", "gauge-db", "Error")

    assert sample("dbuser_database_phase", namespace="apps", name="gauge-db", phase="Error") == 1
    assert sample("dbuser_database_phase", namespace="apps", name="gauge-db", phase="Ready") == 0


def test_forget_database_drops_every_series():
    metrics.record_reconciliation("apps", "gone-db", "success", "create", 0.2)
    metrics.record_reconciliation("apps", "gone-db", "error", "failed", 0.1)
    metrics.record_error("apps", "gone-db", "transient")
    metrics.record_phase("apps", "gone-db", "Ready")
    metrics.record_reconciliation("apps", "kept-db", "success", "create", 0.2)

    metrics.forget_database("apps", "gone-db")

    assert sample(
        "dbuser_reconciliation_total", namespace="apps", name="gone-db", result="success", action="create"
    ) is None
    assert sample(
        "dbuser_reconciliation_total", namespace="apps", name="gone-db", result="error", action="failed"
    ) is None
    assert sample("dbuser_reconciliation_errors_total", namespace="apps", name="gone-db", kind="transient") is None
    assert sample("dbuser_reconciliation_duration_seconds_count", namespace="apps", name="gone-db") is None
    assert sample("dbuser_database_phase", namespace="apps", name="gone-db", phase="Ready") is None
    assert sample(
        "dbuser_reconciliation_total", namespace="apps", name="kept-db", result="success", action="create"
    ) == 1


def test_forget_unknown_database_is_harmless():
    metrics.forget_database("apps", "never-seen")
