"""
Reconciliation of a Database resource against the engine and the secret store.

One pass:

1. Short-circuit when nothing can have changed (``needs_reconciliation``).
2. Reject an invalid secret template or privilege list before touching
   anything.
3. Resolve the admin connection string and open one engine connection.
4. Observe user, database and secret existence (and the previous region's
   secret when the region moved).
5. ``decide`` the action and find the password: generated only for a full
   create, otherwise read from the store.
6. Create what is missing (user, then database), grant privileges, write
   the secret, sync its description and tags, and drop the previous
   region's copy once the new one is written.

Steps 3 to 6 mutate the ``working`` status in place so that partial
progress is visible to the caller even when the pass fails.
"""
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional

from dbuser_operator.config.logging import get_logger
from dbuser_operator.config.settings import settings
from dbuser_operator.core.decision import (
    CURRENT_SECRET_FORMAT_VERSION,
    Action,
    Decision,
    ObservedState,
    decide,
    needs_old_region_lookup,
    needs_reconciliation,
    region_changed,
)
from dbuser_operator.exceptions import (
    SecretMarkedForDeletionError,
    SecretNotFoundError,
    UnrecoverablePasswordError,
)
from dbuser_operator.models.database import ConnectionInfo, DatabaseSpec, DatabaseStatus
from dbuser_operator.services import metrics
from dbuser_operator.services.connection_resolver import ConnectionStringResolver
from dbuser_operator.services.engines import EngineClient, new_client, validate_privileges
from dbuser_operator.services.secret_payload import DatabaseSecret, validate_template
from dbuser_operator.services.secrets_manager import (
    SecretDescription,
    SecretsManagerClient,
    validate_region,
)
from dbuser_operator.utils.security import generate_password

logger = get_logger(__name__)


@dataclass
class CleanupReport:
    """Outcome of the deletion path. Failures are recorded, never raised."""

    retained: bool = False
    database_deleted: bool = False
    user_deleted: bool = False
    secret_deleted: bool = False
    errors: List[str] = field(default_factory=list)


@dataclass
class _PassContext:
    spec: DatabaseSpec
    namespace: str
    name: str
    username: str
    secret_name: str
    store: SecretsManagerClient
    region: str
    old_store: Optional[SecretsManagerClient] = None
    description: Optional[SecretDescription] = None
    stored_payload: Optional[str] = None


class DatabaseReconciler:
    """
    Drives one Database through the decision table.

    Args:
        resolver: Resolves the admin connection string
        engine_factory: Builds an engine client from (engine, connection string)
        store_factory: Builds a secret store client for a region
        password_generator: Produces new passwords
    """

    def __init__(
        self,
        resolver: Optional[ConnectionStringResolver] = None,
        engine_factory: Callable[..., EngineClient] = new_client,
        store_factory: Callable[[str], SecretsManagerClient] = SecretsManagerClient,
        password_generator: Callable[[], str] = generate_password,
    ):
        self.store_factory = store_factory
        self.resolver = resolver or ConnectionStringResolver(store_factory=store_factory)
        self.engine_factory = engine_factory
        self.password_generator = password_generator

    async def reconcile(
        self,
        spec: DatabaseSpec,
        namespace: str,
        name: str,
        generation: int,
        working: DatabaseStatus,
    ) -> Decision:
        """
        Run one pass.

        Args:
            spec: Desired state
            namespace: Namespace of the resource
            name: Name of the resource
            generation: Current metadata.generation
            working: Copy of the persisted status, updated in place

        Returns:
            The decision that was carried out

        Raises:
            OperatorError: Any failure; the caller classifies it
        """
        if not needs_reconciliation(working, generation):
            logger.debug(
                "reconciliation_skipped",
                namespace=namespace,
                name=name,
                database=spec.database_name,
                generation=generation,
            )
            return Decision(Action.NOOP, "resources exist and spec unchanged")

        validate_template(spec.secret_template, spec.engine)
        privileges = validate_privileges(spec.engine, spec.resolved_privileges)

        target_region = spec.target_region
        validate_region(target_region)

        connection_string = await self.resolver.resolve(spec, namespace)
        store = self.store_factory(target_region)
        ctx = _PassContext(
            spec=spec,
            namespace=namespace,
            name=name,
            username=spec.resolved_username,
            secret_name=spec.secret_path(settings.secret_path_prefix),
            store=store,
            region=store.region,
        )

        async with self.engine_factory(spec.engine, connection_string) as engine:
            observed = await self._observe(ctx, engine, working)
            decision = decide(observed, working, ctx.region)
            logger.info(
                "reconciliation_decided",
                namespace=namespace,
                name=name,
                action=decision.action.value,
                reason=decision.reason,
                user_exists=observed.user_exists,
                database_exists=observed.database_exists,
                secret_exists=observed.secret_exists,
                region=ctx.region,
            )

            password = await self._resolve_password(ctx, decision, observed, working)
            await self._ensure_engine_side(ctx, engine, decision, observed, password, working)

            await engine.grant_privileges(spec.database_name, ctx.username, privileges)

            secret = DatabaseSecret.build(
                spec.engine, engine.host, engine.port, spec.database_name, ctx.username, password
            )

        await self._write_secret(ctx, secret, working)
        await self._retire_old_region(ctx, working)

        working.secret_created = True
        working.secret_format_version = CURRENT_SECRET_FORMAT_VERSION
        working.secret_region = ctx.region
        working.actual_secret_name = ctx.secret_name
        working.connection_info = ConnectionInfo(
            host=secret.host,
            port=secret.port,
            database=spec.database_name,
            username=ctx.username,
            engine=spec.engine.value,
        )
        return decision

    async def _observe(self, ctx: _PassContext, engine: EngineClient, status: DatabaseStatus) -> ObservedState:
        user_exists = await engine.user_exists(ctx.username)
        database_exists = await engine.database_exists(ctx.spec.database_name)
        ctx.description = await ctx.store.describe_secret(ctx.secret_name)

        observed = ObservedState(
            user_exists=user_exists,
            database_exists=database_exists,
            secret_exists=ctx.description is not None,
        )
        if needs_old_region_lookup(observed, status, ctx.region):
            logger.info(
                "region_change_detected",
                name=ctx.name,
                old_region=status.secret_region,
                new_region=ctx.region,
                secret_name=status.actual_secret_name,
            )
            ctx.old_store = self.store_factory(status.secret_region)
            observed = replace(
                observed,
                old_region_secret_exists=await ctx.old_store.secret_exists(status.actual_secret_name),
            )
        return observed

    async def _resolve_password(
        self,
        ctx: _PassContext,
        decision: Decision,
        observed: ObservedState,
        status: DatabaseStatus,
    ) -> str:
        if decision.action is Action.UNRECOVERABLE:
            reason = decision.reason if region_changed(status, ctx.region) else None
            raise UnrecoverablePasswordError(
                user_exists=observed.user_exists,
                database_exists=observed.database_exists,
                secret_exists=observed.secret_exists,
                reason=reason,
            )

        if decision.action.generates_password:
            return self.password_generator()

        if decision.action is Action.MIGRATE_REGION:
            stored = await ctx.old_store.get_secret(status.actual_secret_name)
            logger.info(
                "password_retrieved_from_old_region",
                name=ctx.name,
                old_region=status.secret_region,
                secret_name=status.actual_secret_name,
            )
            return stored.password

        try:
            ctx.stored_payload = await ctx.store.get_secret_string(ctx.secret_name)
        except SecretMarkedForDeletionError:
            await ctx.store.restore_secret(ctx.secret_name)
            ctx.stored_payload = await ctx.store.get_secret_string(ctx.secret_name)
        return DatabaseSecret.from_json(ctx.stored_payload).password

    async def _ensure_engine_side(
        self,
        ctx: _PassContext,
        engine: EngineClient,
        decision: Decision,
        observed: ObservedState,
        password: str,
        status: DatabaseStatus,
    ) -> None:
        """Create the user, then the database, where the decision allows it."""
        if decision.action in (Action.CREATE, Action.REPAIR):
            if not observed.user_exists:
                logger.info("creating_database_user", name=ctx.name, username=ctx.username, host=engine.host)
                await engine.create_user(ctx.username, password)
            status.user_created = True
            status.actual_username = ctx.username

            if not observed.database_exists:
                logger.info(
                    "creating_database",
                    name=ctx.name,
                    database=ctx.spec.database_name,
                    owner=ctx.username,
                    host=engine.host,
                )
                await engine.create_database(ctx.spec.database_name, ctx.username)
            status.database_created = True
            return

        status.user_created = status.user_created or observed.user_exists
        status.database_created = status.database_created or observed.database_exists
        status.actual_username = ctx.username

    async def _write_secret(self, ctx: _PassContext, secret: DatabaseSecret, status: DatabaseStatus) -> None:
        spec = ctx.spec
        template = spec.secret_template
        description = spec.secret_description()
        desired_tags = spec.desired_tags(settings.managed_by_tags)
        payload = secret.to_json(template)

        created = False
        if ctx.description is not None:
            if ctx.stored_payload == payload:
                logger.debug("secret_value_unchanged", name=ctx.name, secret_name=ctx.secret_name)
                status.secret_arn = ctx.description.arn
            else:
                try:
                    status.secret_version = await ctx.store.update_secret(ctx.secret_name, secret, template)
                    status.secret_arn = ctx.description.arn
                    logger.info(
                        "secret_updated",
                        name=ctx.name,
                        secret_name=ctx.secret_name,
                        region=ctx.region,
                        version_id=status.secret_version,
                    )
                except (SecretNotFoundError, SecretMarkedForDeletionError) as e:
                    logger.info("secret_gone_recreating", name=ctx.name, secret_name=ctx.secret_name, reason=str(e))
                    created = True
        else:
            created = True

        if created:
            status.secret_arn, status.secret_version = await ctx.store.create_secret(
                ctx.secret_name, description, secret, desired_tags, template
            )
            logger.info(
                "secret_created",
                name=ctx.name,
                secret_name=ctx.secret_name,
                region=ctx.region,
                secret_arn=status.secret_arn,
            )
            return

        if ctx.description.description != description:
            await ctx.store.update_description(ctx.secret_name, description)
        await ctx.store.reconcile_tags(ctx.secret_name, desired_tags, current=ctx.description.tags)

    async def _retire_old_region(self, ctx: _PassContext, status: DatabaseStatus) -> None:
        """Delete the previous region's secret once the new one is confirmed written."""
        if not region_changed(status, ctx.region) or not status.actual_secret_name:
            return
        if not status.secret_arn:
            logger.error(
                "region_migration_incomplete_keeping_old_secret",
                name=ctx.name,
                old_region=status.secret_region,
                new_region=ctx.region,
            )
            return
        old_store = ctx.old_store or self.store_factory(status.secret_region)
        try:
            await old_store.delete_secret(status.actual_secret_name, force=True)
            logger.info(
                "old_region_secret_deleted",
                name=ctx.name,
                secret_name=status.actual_secret_name,
                old_region=status.secret_region,
                new_region=ctx.region,
            )
        except Exception as e:
            logger.error(
                "old_region_secret_delete_failed",
                name=ctx.name,
                secret_name=status.actual_secret_name,
                old_region=status.secret_region,
                error=str(e),
                warning="secret may still exist in the old region and should be deleted manually",
            )

    async def delete(self, spec: DatabaseSpec, namespace: str, name: str, status: DatabaseStatus) -> CleanupReport:
        """
        Deletion path. Never raises for a single resource's cleanup failure.

        Args:
            spec: Desired state at deletion time
            namespace: Namespace of the resource
            name: Name of the resource
            status: Persisted status

        Returns:
            What was removed
        """
        if spec.retain_on_delete:
            logger.info(
                "retaining_database_resources",
                namespace=namespace,
                name=name,
                database=spec.database_name,
                username=status.actual_username,
                secret_name=status.actual_secret_name,
            )
            return CleanupReport(retained=True)

        report = CleanupReport()
        username = status.actual_username or spec.resolved_username

        if status.database_created or status.user_created:
            await self._drop_engine_side(spec, namespace, name, status, username, report)

        if status.secret_created:
            secret_name = status.actual_secret_name or spec.secret_path(settings.secret_path_prefix)
            region = status.secret_region or spec.target_region
            try:
                store = self.store_factory(region)
                await store.delete_secret(secret_name, force=True)
                report.secret_deleted = True
            except Exception as e:
                report.errors.append(f"delete secret: {e}")
                logger.error("secret_cleanup_failed", name=name, secret_name=secret_name, region=region, error=str(e))
            metrics.record_cleanup("secret", report.secret_deleted)

        logger.info(
            "cleanup_completed",
            namespace=namespace,
            name=name,
            database_deleted=report.database_deleted,
            user_deleted=report.user_deleted,
            secret_deleted=report.secret_deleted,
            errors=len(report.errors),
        )
        return report

    async def _drop_engine_side(
        self,
        spec: DatabaseSpec,
        namespace: str,
        name: str,
        status: DatabaseStatus,
        username: str,
        report: CleanupReport,
    ) -> None:
        try:
            connection_string = await self.resolver.resolve(spec, namespace)
            engine = self.engine_factory(spec.engine, connection_string)
            await engine.connect()
        except Exception as e:
            report.errors.append(f"connect: {e}")
            logger.error("cleanup_connection_failed", name=name, error=str(e))
            return

        try:
            if status.database_created:
                try:
                    await engine.drop_database(spec.database_name)
                    report.database_deleted = True
                except Exception as e:
                    report.errors.append(f"drop database: {e}")
                    logger.error("database_cleanup_failed", name=name, database=spec.database_name, error=str(e))
                metrics.record_cleanup("database", report.database_deleted)

            if status.user_created:
                try:
                    await engine.drop_user(username)
                    report.user_deleted = True
                except Exception as e:
                    report.errors.append(f"drop user: {e}")
                    logger.error("user_cleanup_failed", name=name, username=username, error=str(e))
                metrics.record_cleanup("user", report.user_deleted)
        finally:
            try:
                await engine.close()
            except Exception as e:
                logger.warning("cleanup_connection_close_failed", name=name, error=str(e))
