"""
Credential payload written to the secret store.

The default payload is a flat JSON object::

    {"DB_HOST": ..., "DB_PORT": 5432, "DB_NAME": ..., "DB_USERNAME": ...,
     "DB_PASSWORD": ..., "POSTGRES_URL": "postgresql://..."}

A Database may instead supply a jinja2 template. Templates render in a
sandbox with a fixed variable set and must produce a JSON object; anything
else is rejected before the store is touched.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union
from urllib.parse import quote_plus, unquote_plus, urlsplit

from jinja2 import StrictUndefined, TemplateSyntaxError, UndefinedError, meta
from jinja2.exceptions import SecurityError
from jinja2.sandbox import SandboxedEnvironment

from dbuser_operator.exceptions import FormatError, TemplateError
from dbuser_operator.models.database import DatabaseEngine

ALLOWED_TEMPLATE_VARIABLES = frozenset(
    {
        "db_host",
        "db_port",
        "db_name",
        "db_username",
        "db_password",
        "database_url",
        "engine",
    }
)

# Flat keys written before the DB_* layout
LEGACY_KEYS = {
    "host": "host",
    "port": "port",
    "dbname": "name",
    "username": "username",
}

_environment = SandboxedEnvironment(
    undefined=StrictUndefined,
    autoescape=False,
    keep_trailing_newline=False,
)


def build_database_url(engine: DatabaseEngine, host: str, port: int, database: str, username: str, password: str) -> str:
    return (
        f"{engine.url_scheme}://{quote_plus(username)}:{quote_plus(password)}"
        f"@{host}:{port}/{database}"
    )


@dataclass
class DatabaseSecret:
    """Connection details of one provisioned user."""

    host: str
    port: int
    name: str
    username: str
    password: str = field(repr=False)
    database_url: str = field(default="", repr=False)
    engine: str = ""

    @classmethod
    def build(
        cls,
        engine: Union[str, DatabaseEngine],
        host: str,
        port: int,
        database: str,
        username: str,
        password: str,
    ) -> "DatabaseSecret":
        engine = DatabaseEngine(engine)
        return cls(
            host=host,
            port=port,
            name=database,
            username=username,
            password=password,
            database_url=build_database_url(engine, host, port, database, username, password),
            engine=engine.value,
        )

    def template_context(self) -> Dict[str, Any]:
        return {
            "db_host": self.host,
            "db_port": self.port,
            "db_name": self.name,
            "db_username": self.username,
            "db_password": self.password,
            "database_url": self.database_url,
            "engine": self.engine,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Default payload layout."""
        payload: Dict[str, Any] = {
            "DB_HOST": self.host,
            "DB_PORT": self.port,
            "DB_NAME": self.name,
            "DB_USERNAME": self.username,
            "DB_PASSWORD": self.password,
        }
        if self.database_url and self.engine:
            payload[DatabaseEngine(self.engine).url_field] = self.database_url
        return payload

    def to_json(self, template: Optional[str] = None) -> str:
        """
        Serialize for the secret store.

        Args:
            template: Optional jinja2 template; the default layout is used when empty

        Returns:
            JSON text

        Raises:
            TemplateError: If the template is invalid or renders anything but a JSON object
        """
        if not template:
            return json.dumps(self.to_dict())
        return render_template(template, self.template_context())

    @classmethod
    def from_json(cls, text: str) -> "DatabaseSecret":
        """
        Parse a stored payload.

        Reads the DB_* layout first, then the legacy flat keys. A payload
        written from a template is searched for a ``password`` key or a
        connection URL carrying one.

        Raises:
            FormatError: If the payload is not a JSON object or holds no password
        """
        try:
            data = json.loads(text)
        except (TypeError, ValueError) as e:
            raise FormatError(f"stored secret is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise FormatError("stored secret is not a JSON object")

        secret = cls(
            host=str(data.get("DB_HOST") or ""),
            port=_as_port(data.get("DB_PORT")),
            name=str(data.get("DB_NAME") or ""),
            username=str(data.get("DB_USERNAME") or ""),
            password=str(data.get("DB_PASSWORD") or ""),
        )

        if not secret.password:
            legacy_password = data.get("password")
            if isinstance(legacy_password, str):
                secret.password = legacy_password
            for key, attribute in LEGACY_KEYS.items():
                if key in data and not getattr(secret, attribute):
                    value = _as_port(data[key]) if attribute == "port" else str(data[key])
                    setattr(secret, attribute, value)

        if not secret.password:
            secret.password = _password_from_values(data)

        if not secret.password:
            raise FormatError("could not extract password from existing secret")
        return secret


def _as_port(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _password_from_values(data: Dict[str, Any]) -> str:
    for key, value in data.items():
        if isinstance(value, str) and key.lower() in ("password", "db_password", "pass"):
            return value
    for value in data.values():
        if isinstance(value, str) and "://" in value:
            try:
                password = urlsplit(value).password
            except ValueError:
                continue
            if password:
                return unquote_plus(password)
    return ""


def compile_template(template: str):
    """
    Parse a template and check its variables.

    Raises:
        TemplateError: On syntax errors or variables outside the allowed set
    """
    try:
        ast = _environment.parse(template)
    except TemplateSyntaxError as e:
        raise TemplateError(f"failed to parse secret template: {e.message} (line {e.lineno})") from e

    unknown = meta.find_undeclared_variables(ast) - ALLOWED_TEMPLATE_VARIABLES
    if unknown:
        raise TemplateError(
            f"secret template references unknown variables: {', '.join(sorted(unknown))}",
            details={"allowed": sorted(ALLOWED_TEMPLATE_VARIABLES)},
        )
    return _environment.from_string(template)


def render_template(template: str, context: Dict[str, Any]) -> str:
    """
    Render a template and check the output is a JSON object.

    Raises:
        TemplateError: If rendering fails or the output is not a JSON object
    """
    compiled = compile_template(template)
    try:
        rendered = compiled.render(**context)
    except (UndefinedError, SecurityError) as e:
        raise TemplateError(f"failed to execute secret template: {e}") from e
    except (TypeError, ValueError, ArithmeticError, AttributeError) as e:
        raise TemplateError(f"failed to execute secret template: {e}") from e

    try:
        parsed = json.loads(rendered)
    except ValueError as e:
        raise TemplateError(f"template output is not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise TemplateError("template output must be a JSON object")
    return rendered


def validate_template(template: Optional[str], engine: Union[str, DatabaseEngine] = DatabaseEngine.POSTGRES) -> None:
    """
    Reject a bad template before any write happens.

    Renders against sample values, so a template that only fails on the
    real password (for example an unescaped quote) is still caught when the
    payload is rendered for real, before the store call.
    """
    if not template:
        return
    sample = DatabaseSecret.build(engine, "db.example.internal", 5432, "sample_db", "sample_user", "sample-password")
    render_template(template, sample.template_context())
