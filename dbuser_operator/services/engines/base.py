"""
Engine client contract shared by the PostgreSQL and MySQL families.

A client is opened once per reconciliation pass from the admin connection
string and closed when the pass ends:

    async with new_client(engine, connection_string) as client:
        if not await client.user_exists("app"):
            ...

Connecting happens in ``__aenter__``; a client that failed to connect is
never handed out.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from dbuser_operator.config.settings import settings
from dbuser_operator.exceptions import ConfigurationError


@dataclass
class ConnectionParams:
    """Parsed admin connection string. The password never leaves this object."""

    host: str
    port: int
    username: str
    password: str = field(repr=False)
    database: str = ""
    options: Dict[str, str] = field(default_factory=dict)

    @property
    def ssl_mode(self) -> Optional[str]:
        return self.options.get("sslmode")


def parse_port(value: Optional[str], default: int) -> int:
    if not value:
        return default
    try:
        port = int(value)
    except ValueError:
        raise ConfigurationError(f"invalid port in connection string: {value!r}")
    if not 0 < port < 65536:
        raise ConfigurationError(f"invalid port in connection string: {value!r}")
    return port


def normalize_privileges(privileges: Iterable[str], allowed: Iterable[str]) -> List[str]:
    """
    Upper-case and validate a privilege list against an engine keyword set.

    Privileges are SQL keywords, not identifiers, so they cannot be quoted.
    Anything outside the allowed set is rejected.

    Raises:
        ConfigurationError: If a privilege is not a known keyword
    """
    allowed_set = set(allowed)
    normalized = []
    for privilege in privileges:
        keyword = " ".join(str(privilege).upper().split())
        if keyword not in allowed_set:
            raise ConfigurationError(
                f"unsupported privilege {privilege!r}",
                details={"allowed": sorted(allowed_set)},
            )
        if keyword not in normalized:
            normalized.append(keyword)
    if not normalized:
        raise ConfigurationError("privilege list must not be empty")
    return normalized


class EngineClient(ABC):
    """
    User, database and privilege primitives of one relational engine.

    Every method issues its statements sequentially on the admin connection.
    Statement failures are raised as ``EngineError`` naming the operation.
    """

    family: str = ""
    allowed_privileges: frozenset = frozenset()

    def __init__(
        self,
        params: ConnectionParams,
        connect_timeout: Optional[float] = None,
        command_timeout: Optional[float] = None,
    ):
        self.params = params
        self.connect_timeout = connect_timeout or settings.sql_connect_timeout
        self.command_timeout = command_timeout or settings.sql_command_timeout

    @property
    def host(self) -> str:
        return self.params.host

    @property
    def port(self) -> int:
        return self.params.port

    async def __aenter__(self) -> "EngineClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @abstractmethod
    async def connect(self) -> None:
        """Open the admin connection. Raises TransientError when unreachable."""

    @abstractmethod
    async def close(self) -> None:
        """Close the admin connection. Safe to call more than once."""

    @abstractmethod
    async def user_exists(self, username: str) -> bool:
        ...

    @abstractmethod
    async def create_user(self, username: str, password: str) -> None:
        """Create the user, or set its password when it already exists."""

    @abstractmethod
    async def drop_user(self, username: str) -> None:
        """Revoke the user's privileges (best-effort) and drop it if present."""

    @abstractmethod
    async def database_exists(self, database: str) -> bool:
        ...

    @abstractmethod
    async def create_database(self, database: str, owner: str) -> None:
        """Create the database unless it already exists."""

    @abstractmethod
    async def drop_database(self, database: str) -> None:
        """Drop the database if present."""

    @abstractmethod
    async def grant_privileges(self, database: str, username: str, privileges: List[str]) -> None:
        """Grant the privileges on the database. Re-granting is harmless."""

    @abstractmethod
    async def set_password(self, username: str, password: str) -> None:
        ...

    async def grant_all_privileges(self, database: str, username: str) -> None:
        await self.grant_privileges(database, username, ["ALL"])
