"""Container engine abstraction (Docker CLI built in)."""

from __future__ import annotations

from runbox.container_engine._docker import EngineError, ExecDeadlineError, docker_available
from runbox.container_engine.engine import (
    BindMount,
    ContainerEngine,
    ContainerSpec,
    DockerEngine,
    ExecResult,
    IgnoreFn,
    exclude_names,
)

__all__ = [
    "BindMount",
    "ContainerEngine",
    "ContainerSpec",
    "DockerEngine",
    "EngineError",
    "ExecDeadlineError",
    "ExecResult",
    "IgnoreFn",
    "docker_available",
    "exclude_names",
]
