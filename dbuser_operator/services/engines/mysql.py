"""
MySQL and MariaDB engine client built on aiomysql.

Users are created for every host (``'%'``). Identifiers are quoted with
backticks and literals with single quotes; backslashes in literals are
doubled because MySQL treats them as escapes.
"""
import asyncio
from typing import List, Optional, Sequence
from urllib.parse import parse_qsl, unquote, urlsplit

import aiomysql
import pymysql

from dbuser_operator.config.logging import get_logger
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
    parse_port,
)

logger = get_logger(__name__)

DEFAULT_PORT = 3306
URL_SCHEMES = ("mysql", "mariadb")
USER_HOST = "'%'"

# Server error codes for rejected credentials
ACCESS_DENIED_ERRNOS = {1044, 1045}

MYSQL_PRIVILEGES = {
    "ALL",
    "ALL PRIVILEGES",
    "ALTER",
    "ALTER ROUTINE",
    "CREATE",
    "CREATE ROUTINE",
    "CREATE TEMPORARY TABLES",
    "CREATE VIEW",
    "DELETE",
    "DROP",
    "EVENT",
    "EXECUTE",
    "INDEX",
    "INSERT",
    "LOCK TABLES",
    "REFERENCES",
    "SELECT",
    "SHOW VIEW",
    "TRIGGER",
    "UPDATE",
}

DRIVER_ERRORS = (pymysql.err.MySQLError, OSError, asyncio.TimeoutError)


def quote_identifier(name: str) -> str:
    """Quote an identifier with backticks, doubling embedded backticks."""
    return "`" + name.replace("`", "``") + "`"


def quote_literal(value: str) -> str:
    """Quote a string literal, doubling backslashes first and then single quotes."""
    escaped = value.replace("\\", "\\\\").replace("'", "''")
    return "'" + escaped + "'"


def _account(username: str) -> str:
    return f"{quote_identifier(username)}@{USER_HOST}"


def _parse_url(connection_string: str) -> ConnectionParams:
    parts = urlsplit(connection_string)
    if not parts.netloc:
        raise ConfigurationError("unsupported MySQL connection string format")
    try:
        raw_port = parts.port
    except ValueError:
        raise ConfigurationError("invalid port in connection string")
    return ConnectionParams(
        host=parts.hostname or "",
        port=raw_port or DEFAULT_PORT,
        username=unquote(parts.username or ""),
        password=unquote(parts.password or ""),
        database=unquote(parts.path.lstrip("/")),
        options=dict(parse_qsl(parts.query)),
    )


def _parse_dsn(dsn: str) -> ConnectionParams:
    """Parse ``user:pass@tcp(host:port)/database?params``."""
    marker = dsn.rfind("@tcp(")
    credentials, rest = dsn[:marker], dsn[marker + len("@tcp("):]
    username, _, password = credentials.partition(":")

    address, sep, tail = rest.partition(")")
    if not sep:
        raise ConfigurationError("unsupported MySQL connection string format")
    host, _, port = address.rpartition(":") if ":" in address else (address, "", "")

    path, _, query = tail.partition("?")
    return ConnectionParams(
        host=host,
        port=parse_port(port, DEFAULT_PORT),
        username=username,
        password=password,
        database=path.lstrip("/"),
        options=dict(parse_qsl(query)),
    )


def parse_connection_string(connection_string: str) -> ConnectionParams:
    """
    Parse a ``mysql://`` URL or a ``user:pass@tcp(host:port)/db`` DSN.

    Port defaults to 3306. An empty database is accepted.

    Raises:
        ConfigurationError: If the string matches neither form
    """
    scheme = connection_string.split("://", 1)[0].lower() if "://" in connection_string else ""
    if scheme in URL_SCHEMES:
        return _parse_url(connection_string)
    if not scheme and "@tcp(" in connection_string:
        return _parse_dsn(connection_string)
    raise ConfigurationError("unsupported MySQL connection string format")


class MySQLClient(EngineClient):
    """Engine client for the mysql family (MySQL and MariaDB)."""

    family = "mysql"
    allowed_privileges = frozenset(MYSQL_PRIVILEGES)

    def __init__(self, params: ConnectionParams, **kwargs):
        super().__init__(params, **kwargs)
        self._conn: Optional[aiomysql.Connection] = None

    @classmethod
    def from_connection_string(cls, connection_string: str, **kwargs) -> "MySQLClient":
        return cls(parse_connection_string(connection_string), **kwargs)

    async def connect(self) -> None:
        try:
            self._conn = await aiomysql.connect(
                host=self.params.host,
                port=self.params.port,
                user=self.params.username,
                password=self.params.password,
                db=self.params.database or None,
                connect_timeout=self.connect_timeout,
                autocommit=True,
            )
        except pymysql.err.OperationalError as e:
            if e.args and e.args[0] in ACCESS_DENIED_ERRNOS:
                raise PermissionDeniedError(
                    f"failed to connect to database: {e}",
                    details={"host": self.params.host},
                ) from e
            raise TransientError(
                f"failed to connect to database: {e}",
                details={"host": self.params.host},
            ) from e
        except (OSError, asyncio.TimeoutError) as e:
            raise TransientError(
                f"failed to connect to database: {e or type(e).__name__}",
                details={"host": self.params.host},
            ) from e
        except pymysql.err.MySQLError as e:
            raise EngineError("connect to database", str(e)) from e
        logger.debug("mysql_connected", host=self.params.host, port=self.params.port)

    async def close(self) -> None:
        if self._conn is not None:
            conn, self._conn = self._conn, None
            conn.close()

    async def _run(self, operation: str, query: str, args: Optional[Sequence] = None):
        """Run one statement and return its first row, if any."""
        if self._conn is None:
            raise EngineError("use connection", "client is not connected")
        try:
            async with self._conn.cursor() as cursor:
                await asyncio.wait_for(cursor.execute(query, args), timeout=self.command_timeout)
                return await cursor.fetchone()
        except DRIVER_ERRORS as e:
            raise EngineError(operation, str(e)) from e

    async def _flush_privileges(self) -> None:
        await self._run("flush privileges", "FLUSH PRIVILEGES")

    async def user_exists(self, username: str) -> bool:
        row = await self._run(
            "check if user exists",
            "SELECT COUNT(*) FROM mysql.user WHERE user = %s",
            (username,),
        )
        return bool(row and row[0])

    async def create_user(self, username: str, password: str) -> None:
        if await self.user_exists(username):
            logger.info("mysql_user_exists_updating_password", username=username)
            await self.set_password(username, password)
            return
        await self._run(
            "create user",
            f"CREATE USER IF NOT EXISTS {_account(username)} IDENTIFIED BY {quote_literal(password)}",
        )

    async def drop_user(self, username: str) -> None:
        try:
            await self._run("revoke privileges", f"REVOKE ALL PRIVILEGES, GRANT OPTION FROM {_account(username)}")
        except EngineError as e:
            logger.warning("mysql_revoke_before_drop_failed", username=username, error=str(e))
        await self._run("drop user", f"DROP USER IF EXISTS {_account(username)}")

    async def database_exists(self, database: str) -> bool:
        row = await self._run(
            "check if database exists",
            "SELECT COUNT(*) FROM information_schema.SCHEMATA WHERE SCHEMA_NAME = %s",
            (database,),
        )
        return bool(row and row[0])

    async def create_database(self, database: str, owner: str) -> None:
        # MySQL has no database owner
        await self._run(
            "create database",
            f"CREATE DATABASE IF NOT EXISTS {quote_identifier(database)} "
            "CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci",
        )

    async def drop_database(self, database: str) -> None:
        await self._run("drop database", f"DROP DATABASE IF EXISTS {quote_identifier(database)}")

    async def grant_privileges(self, database: str, username: str, privileges: List[str]) -> None:
        requested = normalize_privileges(privileges, self.allowed_privileges)
        if "ALL" in requested or "ALL PRIVILEGES" in requested:
            granted = "ALL PRIVILEGES"
        else:
            granted = ", ".join(requested)
        await self._run(
            "grant privileges",
            f"GRANT {granted} ON {quote_identifier(database)}.* TO {_account(username)}",
        )
        await self._flush_privileges()
        logger.info("mysql_privileges_granted", database=database, username=username, privileges=requested)

    async def set_password(self, username: str, password: str) -> None:
        await self._run("set password", f"ALTER USER {_account(username)} IDENTIFIED BY {quote_literal(password)}")
        await self._flush_privileges()
