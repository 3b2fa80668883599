"""
Tests for mapping pass outcomes to status, events and retry delays.
"""
import pytest

from dbuser_operator.exceptions import ConfigurationError, NotFoundError, TransientError
from dbuser_operator.models.database import DatabaseStatus
from dbuser_operator.services.status_projection import (
    READY_MESSAGE,
    project_deleting,
    project_failure,
    project_success,
)
from dbuser_operator.utils.retry import BackoffPolicy, ErrorKind


@pytest.fixture
def policy():
    return BackoffPolicy()


def test_success_records_generation_and_ready():
    working = DatabaseStatus(user_created=True, database_created=True, secret_created=True)

    projection = project_success(DatabaseStatus(), working, generation=2)

    assert projection.changed is True
    assert projection.status.phase == "Ready"
    assert projection.status.message == READY_MESSAGE
    assert projection.status.observed_generation == 2
    assert projection.event is None


def test_repeated_success_is_unchanged():
    previous = project_success(DatabaseStatus(), DatabaseStatus(secret_created=True), 2).status

    assert project_success(previous, previous, 2).changed is False


def test_failure_keeps_observed_generation_and_flags(policy):
    previous = DatabaseStatus(phase="Ready", observed_generation=4, message=READY_MESSAGE)
    working = previous.model_copy(update={"user_created": True})

    projection = project_failure(previous, working, TransientError("connection refused"), policy)

    assert projection.status.phase == "Error"
    assert projection.status.observed_generation == 4
    assert projection.status.user_created is True
    assert projection.kind is ErrorKind.TRANSIENT
    assert projection.delay == 15
    assert projection.event.type == "Warning"
    assert projection.event.reason == "ReconciliationError"


def test_repeated_failure_posts_no_second_event(policy):
    error = TransientError("connection refused")
    first = project_failure(DatabaseStatus(), DatabaseStatus(), error, policy)

    second = project_failure(first.status, first.status, error, policy, attempt=1)

    assert second.event is None
    assert second.changed is False
    assert second.delay == 30


def test_volatile_request_ids_do_not_count_as_new_messages(policy):
    first = project_failure(
        DatabaseStatus(), DatabaseStatus(), TransientError("throttled, request id: 1a2b-3c4d"), policy
    )
    second = project_failure(
        first.status, first.status, TransientError("throttled, request id: 9f8e-7d6c"), policy
    )

    assert first.status.message == "throttled"
    assert second.event is None


def test_terminal_failure_has_no_delay(policy):
    projection = project_failure(DatabaseStatus(), DatabaseStatus(), ConfigurationError("bad spec"), policy)

    assert projection.kind is ErrorKind.CONFIGURATION
    assert projection.delay is None
    assert projection.event.reason == "ConfigurationError"


def test_not_found_event_carries_guidance(policy):
    projection = project_failure(
        DatabaseStatus(), DatabaseStatus(), NotFoundError("Secret", "apps/admin-conn"), policy
    )

    assert projection.delay == 300
    assert projection.event.message.startswith("Referenced resource not found.")
    assert "apps/admin-conn" in projection.event.message
    assert projection.status.message == "Secret 'apps/admin-conn' not found"


def test_deleting_is_written_once():
    first = project_deleting(DatabaseStatus(phase="Ready"))
    assert first.changed is True
    assert first.status.phase == "Deleting"

    assert project_deleting(first.status).changed is False
