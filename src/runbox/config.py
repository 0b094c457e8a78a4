"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in config.toml. Secrets (API keys, project env
values) live in .env. Environment variables override both using ``__`` as the
nested delimiter (e.g. ``SECRETS__COMPLETION_API_KEY``).

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from runbox.config import get_settings

    s = get_settings()
    print(s.work_dir)
    print(s.sandbox.default_timeout_seconds)
"""

from __future__ import annotations

from functools import cached_property
from pathlib import Path

from pydantic import BaseModel, SecretStr, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models; reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class PathsConfig(_StrictModel):
    work_dir: str | None = None  # None → ~/.runbox
    sessions_dir: str | None = None  # None → ~/.runbox-sessions
    experiences_dir: str | None = None  # None → sibling "<work_dir>-experiences"


class SandboxConfig(_StrictModel):
    default_timeout_seconds: int = 300
    container_workdir: str = "/workspace"
    shell: str = "bash"
    shared_cache_volume: str = "run-project-shared"
    shared_mount_path: str = "/shared"  # not /tmp, apt-get needs /tmp for GPG
    volume_prefix: str = "runbox-"

    @field_validator("default_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("default_timeout_seconds must be positive")
        return v

    @field_validator("container_workdir")
    @classmethod
    def validate_workdir(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("container_workdir must be an absolute container path")
        return v


class CacheConfig(_StrictModel):
    config_dir: str | None = None  # None → ~/.cache/runbox/container-configs
    max_memory_entries: int = 100

    @field_validator("max_memory_entries")
    @classmethod
    def clamp_entries(cls, v: int) -> int:
        return max(1, v)


class CompletionConfig(_StrictModel):
    """OpenAI-compatible chat endpoint used as the container-config fallback.

    ``base_url`` of None disables the generative path entirely; resolution then
    degrades straight to the static tables.
    """

    base_url: str | None = None
    model: str = "gpt-4o-mini"
    timeout_seconds: float = 60.0
    max_code_chars: int = 2000


class BridgeConfig(_StrictModel):
    image: str = "python:3.11-slim"
    container_port: int = 8080
    first_host_port: int = 18080
    host: str = "127.0.0.1"
    request_timeout_seconds: float = 30.0
    startup_timeout_seconds: float = 60.0


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


class SecretsConfig(_StrictModel):
    completion_api_key: SecretStr | None = None
    env: dict[str, SecretStr] = {}  # project env vars injectable by name


class AgentConfig(_StrictModel):
    """A registered agent under [agents.<id>]."""

    project_path: str
    name: str | None = None
    secrets: list[str] = []  # env var names to inject from [secrets.env]
    skills_from_git: list[str] = []  # known skill names or owner/repo refs

    @field_validator("project_path")
    @classmethod
    def resolve_path(cls, v: str) -> str:
        p = Path(v).expanduser()
        if not p.is_absolute():
            p = (Path.cwd() / p).resolve()
        return str(p)


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    paths: PathsConfig = PathsConfig()
    sandbox: SandboxConfig = SandboxConfig()
    cache: CacheConfig = CacheConfig()
    completion: CompletionConfig = CompletionConfig()
    bridge: BridgeConfig = BridgeConfig()
    logging: LoggingConfig = LoggingConfig()
    secrets: SecretsConfig = SecretsConfig()
    agents: dict[str, AgentConfig] = {}  # [agents.<id>]

    @model_validator(mode="after")
    def _experiences_outside_work_dir(self) -> Settings:
        if self.paths.experiences_dir is None:
            return self
        work = self.work_dir
        store = Path(self.paths.experiences_dir).expanduser().resolve()
        if store == work or store.is_relative_to(work):
            raise ValueError(
                f"paths.experiences_dir ({store}) must not be inside paths.work_dir ({work})"
            )
        return self

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def home_dir(self) -> Path:
        return Path.home()

    @cached_property
    def work_dir(self) -> Path:
        if self.paths.work_dir:
            return Path(self.paths.work_dir).expanduser().resolve()
        return self.home_dir / ".runbox"

    @cached_property
    def sessions_dir(self) -> Path:
        if self.paths.sessions_dir:
            return Path(self.paths.sessions_dir).expanduser().resolve()
        return self.home_dir / ".runbox-sessions"

    @cached_property
    def experiences_dir(self) -> Path:
        if self.paths.experiences_dir:
            return Path(self.paths.experiences_dir).expanduser().resolve()
        return self.work_dir.parent / f"{self.work_dir.name}-experiences"

    @cached_property
    def config_cache_dir(self) -> Path:
        if self.cache.config_dir:
            return Path(self.cache.config_dir).expanduser().resolve()
        return self.home_dir / ".cache" / "runbox" / "container-configs"


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached singleton so the next get_settings() re-reads sources."""
    global _settings
    _settings = None
