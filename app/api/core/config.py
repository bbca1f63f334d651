import os
from pathlib import Path
from typing import Any, Optional

import yaml
from decouple import AutoConfig, Config, RepositoryEnv
from pydantic import BaseModel, ConfigDict, SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL

from app.api.core.exceptions import ConfigError

PROJECT_ROOT = next(
    (p for p in Path(__file__).resolve().parents if (p / "configuration" / "base.yaml").exists()),
    Path.cwd(),
)
CONFIGURATION_DIR = PROJECT_ROOT / "configuration"

ENVIRONMENTS = ("local", "production")
DEFAULT_ENVIRONMENT = "local"


def _environment_config():
    """Return a decouple config reading the env file when present, else os.environ."""
    env_path = PROJECT_ROOT / os.getenv("ENV_FILE", ".env")
    if env_path.exists():
        return Config(RepositoryEnv(env_path))
    return AutoConfig(search_path=None)


class ApplicationSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str
    port: int


class DatabaseSettings(BaseModel):
    """Connection parameters for the PostgreSQL store.

    The password is held as a ``SecretStr`` and every URL built from these
    settings hides it when rendered. ``expose_connection_string`` is the only
    place the raw credential leaves this object.
    """

    model_config = ConfigDict(frozen=True)

    host: str
    port: int
    username: str
    password: SecretStr
    database_name: str
    require_ssl: bool = False

    @property
    def ssl_mode(self) -> str:
        return "require" if self.require_ssl else "prefer"

    def connection_url_without_db(self) -> URL:
        """URL for the server-level maintenance connection (no database selected)."""
        return URL.create(
            "postgresql+asyncpg",
            username=self.username,
            password=self.password.get_secret_value(),
            host=self.host,
            port=self.port,
            query={"ssl": self.ssl_mode},
        )

    def connection_url(self) -> URL:
        return self.connection_url_without_db().set(database=self.database_name)

    def expose_connection_string(self) -> str:
        return self.connection_url().render_as_string(hide_password=False)


class Settings(BaseSettings):
    """Layered configuration: base file, environment overlay, then APP_* variables."""

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_nested_delimiter="__",
        frozen=True,
        extra="ignore",
    )

    application: ApplicationSettings
    database: DatabaseSettings

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment variables win over the merged YAML passed as init kwargs.
        return (env_settings, init_settings)

    def with_database_name(self, database_name: str) -> "Settings":
        database = self.database.model_copy(update={"database_name": database_name})
        return self.model_copy(update={"database": database})


def deep_merge(base: dict, overlay: dict) -> dict:
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse configuration file {path.name}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {path.name} must contain a mapping")
    return data


def get_environment() -> str:
    environment = _environment_config()("APP_ENVIRONMENT", default=DEFAULT_ENVIRONMENT)
    environment = environment.strip().lower()
    if environment not in ENVIRONMENTS:
        raise ConfigError(
            f"{environment!r} is not a supported environment. "
            f"Use either {' or '.join(repr(e) for e in ENVIRONMENTS)}."
        )
    return environment


def get_configuration(
    configuration_dir: Optional[Path] = None,
    environment: Optional[str] = None,
) -> Settings:
    """Load settings from ``base.yaml`` and the ``<environment>.yaml`` overlay.

    Args:
        configuration_dir: Directory holding the YAML files. Defaults to the
            project's ``configuration`` directory.
        environment: Overlay to apply. Defaults to ``APP_ENVIRONMENT``
            (``local`` when unset).

    Returns:
        Settings: Immutable settings snapshot.

    Raises:
        ConfigError: If the base file is missing or unreadable, the environment
            is unknown, a required field is absent or a value has the wrong type.
    """
    configuration_dir = Path(configuration_dir or CONFIGURATION_DIR)
    environment = environment or get_environment()

    base_path = configuration_dir / "base.yaml"
    if not base_path.exists():
        raise ConfigError(f"Base configuration file not found in {configuration_dir}")

    merged = _read_yaml(base_path)
    overlay_path = configuration_dir / f"{environment}.yaml"
    if overlay_path.exists():
        merged = deep_merge(merged, _read_yaml(overlay_path))

    try:
        return Settings(**merged)
    except ValidationError as exc:
        # Only field paths and messages: input values may hold credentials.
        problems = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
        ]
        raise ConfigError("Invalid configuration: " + "; ".join(problems)) from None
