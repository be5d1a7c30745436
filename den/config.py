import os
from pathlib import Path
from typing import Annotated, Optional
from urllib.parse import urlparse

from pydantic import field_validator
from pydantic_settings import (
    BaseSettings,
    NoDecode,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from .origin import normalize_origin as canonical_origin

DEFAULT_PORT = 3000
DEFAULT_LOG_LEVEL = "info"
DEFAULT_RP_ID = "localhost"
DEFAULT_ORIGIN = "http://localhost:3000"


def _xdg_home(env_var: str, fallback: str) -> Path:
    value = (os.environ.get(env_var) or "").strip()
    if value:
        return Path(value)
    return Path.home() / fallback


def config_file_path() -> Path:
    """Location of the TOML config file ($DEN_CONFIG_FILE or XDG config home)."""
    explicit = (os.environ.get("DEN_CONFIG_FILE") or "").strip()
    if explicit:
        return Path(explicit)
    return _xdg_home("XDG_CONFIG_HOME", ".config") / "den" / "config.toml"


def default_database_path() -> Path:
    return _xdg_home("XDG_DATA_HOME", ".local/share") / "den" / "den.db"


def default_config_contents() -> str:
    # database_path is left out on purpose so the XDG default keeps applying
    return (
        f"port = {DEFAULT_PORT}\n"
        f'log_level = "{DEFAULT_LOG_LEVEL}"\n'
        f'rp_id = "{DEFAULT_RP_ID}"\n'
        f'origin = "{DEFAULT_ORIGIN}"\n'
        "allowed_hosts = []\n"
    )


def ensure_config_file(path: Optional[Path] = None) -> Path:
    """Write the default config file if none exists yet. Returns its path."""
    path = path or config_file_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    if not path.exists():
        path.write_text(default_config_contents(), encoding="utf-8")
    return path


class _TomlFileSource(TomlConfigSettingsSource):
    # config.toml uses lowercase keys; fields are upper-case like env vars
    def __call__(self):
        return {str(k).upper(): v for k, v in super().__call__().items()}


class Settings(BaseSettings):
    # canonical origin: the only origin WebAuthn ceremonies run on
    ORIGIN: str = DEFAULT_ORIGIN

    # relying party / display
    RP_ID: str = DEFAULT_RP_ID
    RP_NAME: str = "den"

    # extra hostnames trusted as handoff audiences (bare host or origin)
    ALLOWED_HOSTS: Annotated[list[str], NoDecode] = []

    DATABASE_PATH: Optional[Path] = None
    STATIC_DIR: Optional[Path] = None

    HOST: str = "::"
    PORT: int = DEFAULT_PORT
    LOG_LEVEL: str = DEFAULT_LOG_LEVEL

    SESSION_TTL_SECONDS: int = 7 * 24 * 3600
    CHALLENGE_TTL_SECONDS: int = 300
    HANDOFF_TTL_SECONDS: int = 60

    model_config = SettingsConfigDict(
        env_prefix="DEN_",
        env_file=".env",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        toml_settings = _TomlFileSource(settings_cls, toml_file=config_file_path())
        return (init_settings, env_settings, dotenv_settings, toml_settings)

    @field_validator("ORIGIN")
    @classmethod
    def normalize_origin(cls, v: str) -> str:
        # canonical origin every auth-sensitive page is funnelled to
        normalized = canonical_origin((v or "").strip())
        if normalized is None:
            raise ValueError("ORIGIN must be an http:// or https:// origin with a hostname")
        return normalized

    @field_validator("RP_ID")
    @classmethod
    def normalize_rp_id(cls, v: str) -> str:
        """
        RP_ID must be domain-only (WebAuthn rpId semantics).
        Accepts accidental full URLs and strips scheme/path/trailing slashes.
        """
        v = (v or "").strip()

        if "://" in v:
            p = urlparse(v)
            if p.hostname:
                v = p.hostname

        v = v.strip().rstrip("/").lower()

        if not v:
            raise ValueError("RP_ID cannot be empty")

        if "/" in v or ":" in v:
            raise ValueError("RP_ID must be a bare domain (no scheme, no port, no path)")

        return v

    @field_validator("RP_NAME")
    @classmethod
    def normalize_rp_name(cls, v: str) -> str:
        return (v or "").strip() or "den"

    @field_validator("ALLOWED_HOSTS", mode="before")
    @classmethod
    def normalize_allowed_hosts(cls, v):
        # accept ALLOWED_HOSTS="a.example,b.example" from env
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        return [str(p).strip() for p in v if str(p).strip()]

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return (v or "").strip().lower() or DEFAULT_LOG_LEVEL

    @field_validator("STATIC_DIR", "DATABASE_PATH", mode="before")
    @classmethod
    def empty_path_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def database_path(self) -> Path:
        return self.DATABASE_PATH or default_database_path()
