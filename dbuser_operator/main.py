"""
Operator entry point.

Registers the kopf handlers for ``databases.dbaas.io/v1alpha1`` and runs
the health and metrics server next to them in one process:

1. Create, update, resume and the periodic timer run the same pass
2. Delete runs best-effort cleanup behind the finalizer
3. Passes for one object are serialized by a per-object lock
"""
import asyncio
import contextlib
import time
from typing import Any, Optional

import kopf
import sentry_sdk
import uvicorn

from dbuser_operator.api import create_app
from dbuser_operator.api.health import operator_state
from dbuser_operator.config.logging import (
    bind_resource_context,
    clear_resource_context,
    configure_logging,
    get_logger,
)
from dbuser_operator.config.settings import settings as app_settings
from dbuser_operator.core.decision import Decision
from dbuser_operator.core.lock_manager import lock_manager
from dbuser_operator.exceptions import OperatorError
from dbuser_operator.models.database import DatabaseSpec, DatabaseStatus
from dbuser_operator.services import metrics
from dbuser_operator.services.kubernetes_service import kubernetes_service
from dbuser_operator.services.reconciler import DatabaseReconciler
from dbuser_operator.services.status_projection import (
    Projection,
    project_deleting,
    project_failure,
    project_success,
)
from dbuser_operator.utils.retry import BackoffPolicy

# Configure logging
configure_logging()
logger = get_logger(__name__)

GROUP = app_settings.api_group
VERSION = app_settings.api_version
PLURAL = app_settings.api_plural

reconciler = DatabaseReconciler()
backoff_policy = BackoffPolicy.from_settings(app_settings)


class HealthServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to kopf."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


_health_server: Optional[HealthServer] = None
_health_task: Optional[asyncio.Task] = None


@kopf.on.startup()
async def configure(settings: kopf.OperatorSettings, **_: Any) -> None:
    """Configure kopf, connect to Kubernetes and start the health server."""
    global _health_server, _health_task

    logger.info(
        "operator_starting",
        version=app_settings.app_version,
        environment=app_settings.environment,
        resource=f"{PLURAL}.{GROUP}/{VERSION}",
    )

    # Initialize Sentry for error tracking (production)
    if app_settings.sentry_dsn and app_settings.is_production:
        sentry_sdk.init(
            dsn=app_settings.sentry_dsn,
            traces_sample_rate=app_settings.sentry_traces_sample_rate,
            environment=app_settings.environment,
            release=app_settings.app_version,
        )

    settings.persistence.finalizer = app_settings.finalizer
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(prefix=GROUP)
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(prefix=GROUP)
    settings.peering.name = app_settings.peering_name
    settings.peering.mandatory = False
    settings.posting.level = 0

    await kubernetes_service.initialize()

    config = uvicorn.Config(
        create_app(),
        host=app_settings.health_host,
        port=app_settings.health_port,
        log_config=None,
        lifespan="off",
    )
    _health_server = HealthServer(config)
    _health_task = asyncio.create_task(_health_server.serve())

    operator_state.mark_ready()
    logger.info("operator_started", health_port=app_settings.health_port)


@kopf.on.cleanup()
async def shutdown(**_: Any) -> None:
    """Stop the health server and release the Kubernetes client."""
    logger.info("operator_shutting_down")
    operator_state.mark_stopping()

    if _health_server is not None:
        _health_server.should_exit = True
    if _health_task is not None:
        await _health_task

    await kubernetes_service.close()
    logger.info("operator_shutdown_complete")


def _apply(projection: Projection, patch: kopf.Patch, body: kopf.Body) -> None:
    if projection.changed:
        patch.status.update(projection.status.to_patch())
    if projection.event is not None:
        kopf.event(
            body,
            type=projection.event.type,
            reason=projection.event.reason,
            message=projection.event.message,
        )


async def reconcile_database(
    body: kopf.Body,
    meta: kopf.Meta,
    spec: kopf.Spec,
    status: kopf.Status,
    patch: kopf.Patch,
    retry: int,
) -> Decision:
    """
    Run one reconciliation pass and project its outcome.

    Returns:
        The decision that was carried out

    Raises:
        kopf.TemporaryError: For retryable failures, with the backoff delay
        kopf.PermanentError: For failures that need a spec edit
    """
    namespace = meta.get("namespace", "")
    name = meta.get("name", "")
    uid = meta.get("uid", f"{namespace}/{name}")
    generation = meta.get("generation", 0)
    previous = DatabaseStatus.from_body(status)
    working = previous.model_copy(deep=True)
    started = time.monotonic()

    bind_resource_context(namespace, name, uid)
    try:
        async with lock_manager.hold(uid):
            try:
                desired = DatabaseSpec.from_body(spec)
                decision = await reconciler.reconcile(desired, namespace, name, generation, working)
            except Exception as e:
                projection = project_failure(previous, working, e, backoff_policy, attempt=retry)
                _apply(projection, patch, body)

                duration = time.monotonic() - started
                metrics.record_reconciliation(namespace, name, "error", "failed", duration)
                metrics.record_error(namespace, name, projection.kind.value)
                metrics.record_phase(namespace, name, projection.status.phase)

                logger.error(
                    "reconciliation_failed",
                    kind=projection.kind.value,
                    error=projection.status.message,
                    retry=retry,
                    delay=projection.delay,
                )
                if not isinstance(e, OperatorError):
                    sentry_sdk.capture_exception(e)

                if projection.delay is None:
                    raise kopf.PermanentError(projection.status.message) from e
                raise kopf.TemporaryError(projection.status.message, delay=projection.delay) from e

        projection = project_success(previous, working, generation)
        _apply(projection, patch, body)

        duration = time.monotonic() - started
        metrics.record_reconciliation(namespace, name, "success", decision.action.value, duration)
        metrics.record_phase(namespace, name, projection.status.phase)
        if projection.changed:
            logger.info(
                "reconciliation_completed",
                action=decision.action.value,
                duration_seconds=round(duration, 3),
            )
        return decision
    finally:
        clear_resource_context()


@kopf.on.create(GROUP, VERSION, PLURAL)
async def create_fn(body, meta, spec, status, patch, retry, **_: Any):
    previous = DatabaseStatus.from_body(status)
    if retry == 0 and previous.observed_generation == 0:
        kopf.event(
            body,
            type="Normal",
            reason="Created",
            message=f"Database resource created for database {spec.get('databaseName', '')}",
        )
    await reconcile_database(body, meta, spec, status, patch, retry)


@kopf.on.update(GROUP, VERSION, PLURAL, field="spec")
async def update_fn(body, meta, spec, status, patch, retry, **_: Any):
    await reconcile_database(body, meta, spec, status, patch, retry)


@kopf.on.resume(GROUP, VERSION, PLURAL)
async def resume_fn(body, meta, spec, status, patch, retry, **_: Any):
    await reconcile_database(body, meta, spec, status, patch, retry)


@kopf.timer(GROUP, VERSION, PLURAL, interval=app_settings.requeue_after_success, initial_delay=60.0)
async def resync_fn(body, meta, spec, status, patch, retry, **_: Any):
    if meta.get("deletionTimestamp"):
        return
    await reconcile_database(body, meta, spec, status, patch, retry)


@kopf.on.delete(GROUP, VERSION, PLURAL)
async def delete_fn(body, meta, spec, status, patch, **_: Any) -> None:
    """
    Mark the object Deleting and remove what it owns unless retained.

    Cleanup failures are logged and never block finalizer removal.
    """
    namespace = meta.get("namespace", "")
    name = meta.get("name", "")
    uid = meta.get("uid", f"{namespace}/{name}")
    previous = DatabaseStatus.from_body(status)

    bind_resource_context(namespace, name, uid)
    try:
        _apply(project_deleting(previous), patch, body)
        logger.info("database_deletion_started")

        try:
            desired = DatabaseSpec.from_body(spec)
        except OperatorError as e:
            logger.error("cleanup_skipped_invalid_spec", error=str(e))
            desired = None

        if desired is not None:
            async with lock_manager.hold(uid):
                await reconciler.delete(desired, namespace, name, previous)

        lock_manager.forget(uid)
        metrics.forget_database(namespace, name)
    finally:
        clear_resource_context()


def run() -> None:
    """Console entry point."""
    kopf.run(clusterwide=True)


if __name__ == "__main__":
    run()
