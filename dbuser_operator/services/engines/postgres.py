"""
PostgreSQL engine client built on asyncpg.

DDL and DCL statements cannot take bind parameters for identifiers, so
names and passwords are embedded with ``quote_identifier`` and
``quote_literal``. Existence checks use bind parameters.
"""
import asyncio
from typing import List, Optional
from urllib.parse import parse_qsl, unquote, urlsplit

import asyncpg

from dbuser_operator.config.logging import get_logger
from dbuser_operator.config.settings import settings
from dbuser_operator.exceptions import (
    ConfigurationError,
    EngineError,
    PermissionDeniedError,
    TransientError,
)
from dbuser_operator.services.engines.base import (
    ConnectionParams,
    EngineClient,
    normalize_privileges,
)

logger = get_logger(__name__)

DEFAULT_PORT = 5432
DEFAULT_SSL_MODE = "require"
URL_SCHEMES = ("postgres", "postgresql")

ALL_PRIVILEGES = {"ALL", "ALL PRIVILEGES"}
DATABASE_PRIVILEGES = {"CONNECT", "CREATE", "TEMPORARY", "TEMP"}
TABLE_PRIVILEGES = {"SELECT", "INSERT", "UPDATE", "DELETE", "TRUNCATE", "REFERENCES", "TRIGGER"}
POSTGRES_PRIVILEGES = ALL_PRIVILEGES | DATABASE_PRIVILEGES | TABLE_PRIVILEGES

DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


def quote_identifier(name: str) -> str:
    """Quote an identifier, doubling embedded double quotes."""
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Quote a string literal, doubling embedded single quotes."""
    return "'" + value.replace("'", "''") + "'"


def parse_connection_string(connection_string: str) -> ConnectionParams:
    """
    Parse a ``postgres://`` or ``postgresql://`` URL.

    Port defaults to 5432 and ``sslmode`` to ``require``. An empty path is
    accepted and leaves the database empty.

    Raises:
        ConfigurationError: If the string is not a PostgreSQL URL
    """
    parts = urlsplit(connection_string)
    if parts.scheme not in URL_SCHEMES or not parts.netloc:
        raise ConfigurationError(
            "unsupported connection string format, expected postgres:// or postgresql:// URL"
        )
    try:
        raw_port = parts.port
    except ValueError:
        raise ConfigurationError("invalid port in connection string")

    options = dict(parse_qsl(parts.query))
    options.setdefault("sslmode", DEFAULT_SSL_MODE)

    return ConnectionParams(
        host=parts.hostname or "",
        port=raw_port or DEFAULT_PORT,
        username=unquote(parts.username or ""),
        password=unquote(parts.password or ""),
        database=unquote(parts.path.lstrip("/")),
        options=options,
    )


class PostgresClient(EngineClient):
    """Engine client for the postgres family."""

    family = "postgres"
    allowed_privileges = frozenset(POSTGRES_PRIVILEGES)

    def __init__(self, params: ConnectionParams, **kwargs):
        super().__init__(params, **kwargs)
        self._conn: Optional[asyncpg.Connection] = None

    @classmethod
    def from_connection_string(cls, connection_string: str, **kwargs) -> "PostgresClient":
        return cls(parse_connection_string(connection_string), **kwargs)

    async def _open(self, database: str) -> asyncpg.Connection:
        try:
            return await asyncpg.connect(
                host=self.params.host,
                port=self.params.port,
                user=self.params.username,
                password=self.params.password,
                database=database or None,
                ssl=self.params.ssl_mode or DEFAULT_SSL_MODE,
                timeout=self.connect_timeout,
                command_timeout=self.command_timeout,
            )
        except asyncpg.InvalidAuthorizationSpecificationError as e:
            raise PermissionDeniedError(
                f"failed to connect to database: {e}",
                details={"host": self.params.host, "database": database},
            ) from e
        except (OSError, asyncio.TimeoutError) as e:
            raise TransientError(
                f"failed to connect to database: {e or type(e).__name__}",
                details={"host": self.params.host, "database": database},
            ) from e
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise EngineError("connect to database", str(e)) from e

    async def connect(self) -> None:
        self._conn = await self._open(self.params.database)
        logger.debug("postgres_connected", host=self.params.host, port=self.params.port)

    async def close(self) -> None:
        if self._conn is not None:
            conn, self._conn = self._conn, None
            await conn.close()

    def _connection(self) -> asyncpg.Connection:
        if self._conn is None:
            raise EngineError("use connection", "client is not connected")
        return self._conn

    async def _execute(self, operation: str, query: str, *args) -> None:
        try:
            await self._connection().execute(query, *args)
        except DRIVER_ERRORS as e:
            raise EngineError(operation, str(e)) from e

    async def _fetchval(self, operation: str, query: str, *args):
        try:
            return await self._connection().fetchval(query, *args)
        except DRIVER_ERRORS as e:
            raise EngineError(operation, str(e)) from e

    async def user_exists(self, username: str) -> bool:
        return bool(
            await self._fetchval(
                "check if user exists",
                "SELECT EXISTS(SELECT 1 FROM pg_roles WHERE rolname = $1)",
                username,
            )
        )

    async def create_user(self, username: str, password: str) -> None:
        if await self.user_exists(username):
            logger.info("postgres_user_exists_updating_password", username=username)
            await self.set_password(username, password)
        else:
            await self._execute(
                "create user",
                f"CREATE USER {quote_identifier(username)} WITH PASSWORD {quote_literal(password)}",
            )
        await self._execute(
            "comment on user",
            f"COMMENT ON ROLE {quote_identifier(username)} IS {quote_literal(settings.managed_comment)}",
        )

    async def drop_user(self, username: str) -> None:
        try:
            await self._execute(
                "revoke privileges",
                f"REVOKE ALL PRIVILEGES ON ALL TABLES IN SCHEMA public FROM {quote_identifier(username)}",
            )
        except EngineError as e:
            logger.warning("postgres_revoke_before_drop_failed", username=username, error=str(e))
        await self._execute("drop user", f"DROP USER IF EXISTS {quote_identifier(username)}")

    async def database_exists(self, database: str) -> bool:
        return bool(
            await self._fetchval(
                "check if database exists",
                "SELECT EXISTS(SELECT 1 FROM pg_database WHERE datname = $1)",
                database,
            )
        )

    async def create_database(self, database: str, owner: str) -> None:
        if await self.database_exists(database):
            return
        await self._execute(
            "create database",
            f"CREATE DATABASE {quote_identifier(database)} OWNER {quote_identifier(owner)}",
        )
        await self._execute(
            "comment on database",
            f"COMMENT ON DATABASE {quote_identifier(database)} IS {quote_literal(settings.managed_comment)}",
        )

    async def drop_database(self, database: str) -> None:
        # DROP DATABASE fails while other sessions are connected
        await self._execute(
            "terminate connections",
            "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
            "WHERE datname = $1 AND pid <> pg_backend_pid()",
            database,
        )
        await self._execute("drop database", f"DROP DATABASE IF EXISTS {quote_identifier(database)}")

    async def grant_privileges(self, database: str, username: str, privileges: List[str]) -> None:
        """
        Grant privileges at database, schema and table scope.

        ALL grants everything at every scope, including default privileges
        for tables created later. A narrower list always includes CONNECT
        and USAGE on the public schema, and table privileges apply to
        existing and future tables.

        Args:
            database: Target database
            username: Grantee
            privileges: Privilege keywords, e.g. ["ALL"] or ["CONNECT", "SELECT"]

        Raises:
            ConfigurationError: If a privilege is not a PostgreSQL keyword
            EngineError: If a grant fails
        """
        requested = normalize_privileges(privileges, self.allowed_privileges)
        user = quote_identifier(username)

        if ALL_PRIVILEGES & set(requested):
            database_privileges = schema_privileges = table_privileges = "ALL"
        else:
            database_privileges = ", ".join(
                ["CONNECT"] + [p for p in requested if p in DATABASE_PRIVILEGES and p != "CONNECT"]
            )
            schema_privileges = "USAGE, CREATE" if "CREATE" in requested else "USAGE"
            table_privileges = ", ".join(p for p in requested if p in TABLE_PRIVILEGES)

        await self._execute(
            "grant database privileges",
            f"GRANT {database_privileges} ON DATABASE {quote_identifier(database)} TO {user}",
        )

        # Schema and table grants only take effect inside the target database
        target = await self._open(database)
        try:
            statements = [
                ("grant schema privileges", f"GRANT {schema_privileges} ON SCHEMA public TO {user}"),
            ]
            if table_privileges:
                statements += [
                    (
                        "grant table privileges",
                        f"GRANT {table_privileges} ON ALL TABLES IN SCHEMA public TO {user}",
                    ),
                    (
                        "grant default privileges",
                        f"ALTER DEFAULT PRIVILEGES IN SCHEMA public GRANT {table_privileges} ON TABLES TO {user}",
                    ),
                ]
            for operation, statement in statements:
                try:
                    await target.execute(statement)
                except DRIVER_ERRORS as e:
                    raise EngineError(operation, str(e)) from e
        finally:
            await target.close()

        logger.info(
            "postgres_privileges_granted",
            database=database,
            username=username,
            privileges=requested,
        )

    async def set_password(self, username: str, password: str) -> None:
        await self._execute(
            "set password",
            f"ALTER USER {quote_identifier(username)} WITH PASSWORD {quote_literal(password)}",
        )
