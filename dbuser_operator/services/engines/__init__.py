"""
Engine clients and the factory selecting one by engine kind.
"""
from typing import Iterable, List, Type, Union

from dbuser_operator.exceptions import ConfigurationError
from dbuser_operator.models.database import DatabaseEngine
from dbuser_operator.services.engines.base import ConnectionParams, EngineClient, normalize_privileges
from dbuser_operator.services.engines.mysql import MySQLClient
from dbuser_operator.services.engines.postgres import PostgresClient

ENGINE_CLIENTS = {
    "postgres": PostgresClient,
    "postgresql": PostgresClient,
    "mysql": MySQLClient,
    "mariadb": MySQLClient,
}


def client_class_for(engine: Union[str, DatabaseEngine]) -> Type[EngineClient]:
    kind = engine.value if isinstance(engine, DatabaseEngine) else str(engine).lower()
    client_class = ENGINE_CLIENTS.get(kind)
    if client_class is None:
        raise ConfigurationError(f"unsupported database engine: {engine}")
    return client_class


def new_client(engine: Union[str, DatabaseEngine], connection_string: str, **kwargs) -> EngineClient:
    """
    Build an unconnected client for the engine.

    Args:
        engine: Engine kind, case-insensitive
        connection_string: Admin connection string
        **kwargs: Timeouts forwarded to the client

    Returns:
        Client to be used as an async context manager

    Raises:
        ConfigurationError: If the engine is unsupported or the string cannot be parsed
    """
    return client_class_for(engine).from_connection_string(connection_string, **kwargs)


def validate_privileges(engine: Union[str, DatabaseEngine], privileges: Iterable[str]) -> List[str]:
    """
    Check a privilege list against the engine's keywords without connecting.

    Raises:
        ConfigurationError: If the engine is unsupported or a privilege is unknown
    """
    return normalize_privileges(privileges, client_class_for(engine).allowed_privileges)


__all__ = [
    "ConnectionParams",
    "EngineClient",
    "MySQLClient",
    "PostgresClient",
    "client_class_for",
    "new_client",
    "validate_privileges",
]
