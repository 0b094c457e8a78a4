"""Data models for runbox.

JSON helpers use the camelCase keys of the on-disk and wire formats; the
Python attributes stay snake_case.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


def utc_now() -> datetime:
    return datetime.now(UTC)


def _parse_time(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    if not isinstance(raw, str):
        raise ValueError(f"expected ISO timestamp, got {type(raw).__name__}")
    return datetime.fromisoformat(raw.replace("Z", "+00:00"))


def _require_str_list(raw: Any, field_name: str) -> list[str]:
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise ValueError(f"{field_name} must be a list of strings")
    return list(raw)


@dataclass(frozen=True)
class CacheVolume:
    name: str
    mount_path: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "mountPath": self.mount_path}

    @classmethod
    def from_dict(cls, raw: Any) -> CacheVolume:
        if not isinstance(raw, dict):
            raise ValueError("cache volume must be an object")
        name, mount_path = raw.get("name"), raw.get("mountPath")
        if not isinstance(name, str) or not name:
            raise ValueError("cache volume name must be a non-empty string")
        if not isinstance(mount_path, str) or not mount_path.startswith("/"):
            raise ValueError("cache volume mountPath must be an absolute path")
        return cls(name=name, mount_path=mount_path)


@dataclass(frozen=True)
class ContainerConfig:
    """A resolved build plan: image, setup, run command, caches."""

    base_image: str
    setup_commands: tuple[str, ...] = ()
    run_command: tuple[str, ...] = ()
    cache_volumes: tuple[CacheVolume, ...] = ()
    workdir: str = "/app"
    environment: dict[str, str] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "baseImage": self.base_image,
            "setupCommands": list(self.setup_commands),
            "runCommand": list(self.run_command),
            "cacheVolumes": [v.to_dict() for v in self.cache_volumes],
            "workdir": self.workdir,
        }
        if self.environment is not None:
            data["environment"] = dict(self.environment)
        return data

    @classmethod
    def from_dict(cls, raw: Any) -> ContainerConfig:
        """Strictly validate an untrusted mapping. Raises ValueError on any bad shape."""
        if not isinstance(raw, dict):
            raise ValueError("container config must be a JSON object")

        base_image = raw.get("baseImage")
        if not isinstance(base_image, str) or not base_image.strip():
            raise ValueError("baseImage must be a non-empty string")

        setup = _require_str_list(raw.get("setupCommands"), "setupCommands")
        run = _require_str_list(raw.get("runCommand"), "runCommand")
        if not run:
            raise ValueError("runCommand must not be empty")

        volumes_raw = raw.get("cacheVolumes")
        if not isinstance(volumes_raw, list):
            raise ValueError("cacheVolumes must be a list")
        volumes = tuple(CacheVolume.from_dict(v) for v in volumes_raw)

        workdir = raw.get("workdir", "/app")
        if workdir is None:
            workdir = "/app"
        if not isinstance(workdir, str) or not workdir.startswith("/"):
            raise ValueError("workdir must be an absolute path")

        environment = raw.get("environment")
        if environment is not None:
            if not isinstance(environment, dict) or not all(
                isinstance(k, str) and isinstance(v, str) for k, v in environment.items()
            ):
                raise ValueError("environment must map strings to strings")
            environment = dict(environment)

        return cls(
            base_image=base_image.strip(),
            setup_commands=tuple(setup),
            run_command=tuple(run),
            cache_volumes=volumes,
            workdir=workdir,
            environment=environment,
        )


@dataclass
class ContainerConfigCacheEntry:
    config: ContainerConfig
    language: str
    packages: list[str]
    created_at: datetime = field(default_factory=utc_now)
    hit_count: int = 1
    last_accessed: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "config": self.config.to_dict(),
            "language": self.language,
            "packages": list(self.packages),
            "createdAt": self.created_at.isoformat(),
            "hitCount": self.hit_count,
            "lastAccessed": self.last_accessed.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: Any) -> ContainerConfigCacheEntry:
        if not isinstance(raw, dict):
            raise ValueError("cache entry must be a JSON object")
        hit_count = raw.get("hitCount", 0)
        if not isinstance(hit_count, int):
            raise ValueError("hitCount must be an integer")
        language = raw.get("language")
        if not isinstance(language, str):
            raise ValueError("language must be a string")
        return cls(
            config=ContainerConfig.from_dict(raw.get("config")),
            language=language,
            packages=_require_str_list(raw.get("packages", []), "packages"),
            created_at=_parse_time(raw.get("createdAt")),
            hit_count=hit_count,
            last_accessed=_parse_time(raw.get("lastAccessed", raw.get("createdAt"))),
        )


@dataclass(frozen=True)
class SkillRepo:
    """A skill/plugin git repo cloned into the container at build time."""

    name: str
    git_repo: str  # "owner/repo" shorthand or full URL
    container_path: str
    apt_packages: tuple[str, ...] = ()
    setup_commands: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProjectRequirements:
    """What a project needs, derived by static inspection. Immutable once computed."""

    project_type: str
    base_image: str
    detected_tools: tuple[str, ...] = ()
    apt_packages: tuple[str, ...] = ()
    npm_global_packages: tuple[str, ...] = ()
    env_var_names: tuple[str, ...] = ()
    setup_commands: tuple[str, ...] = ()
    cache_volumes: tuple[CacheVolume, ...] = ()
    skill_repos: tuple[SkillRepo, ...] = ()


@dataclass
class ExperienceMetadata:
    experience_id: str
    source_path: str
    created: str
    last_used: str
    agent_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "experienceId": self.experience_id,
            "sourcePath": self.source_path,
            "created": self.created,
            "lastUsed": self.last_used,
        }
        if self.agent_id is not None:
            data["agentId"] = self.agent_id
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ExperienceMetadata:
        return cls(
            experience_id=raw["experienceId"],
            source_path=raw["sourcePath"],
            created=raw["created"],
            last_used=raw["lastUsed"],
            agent_id=raw.get("agentId"),
        )


@dataclass
class ValidationResult:
    """Outcome of one guarded command execution."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: float = 0.0
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out
