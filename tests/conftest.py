"""Shared test helpers for runbox."""

from __future__ import annotations

import asyncio
import os
import shutil
from collections.abc import Sequence
from pathlib import Path

from runbox.container_engine import ContainerSpec, ExecDeadlineError, ExecResult, IgnoreFn

# ---------------------------------------------------------------------------
# Shared helpers (plain functions and classes, importable by test files)
# ---------------------------------------------------------------------------


def make_settings(tmp_path: Path, **overrides):
    """Create a Settings object rooted entirely under *tmp_path*.

    Usage::

        s = make_settings(tmp_path)
        s = make_settings(tmp_path, agents={"a1": AgentConfig(project_path=...)})
    """
    from runbox.config import CacheConfig, PathsConfig, Settings

    defaults = {
        "paths": PathsConfig(
            work_dir=str(tmp_path / "work"),
            sessions_dir=str(tmp_path / "sessions"),
        ),
        "cache": CacheConfig(config_dir=str(tmp_path / "config-cache")),
    }
    defaults.update(overrides)
    settings = Settings(**defaults)
    settings.work_dir.mkdir(parents=True, exist_ok=True)
    settings.sessions_dir.mkdir(parents=True, exist_ok=True)
    return settings


class LocalEngine:
    """In-process stand-in for a container engine.

    Each "container" is a directory under *root*; container paths map onto it
    and ``exec`` runs argv with the host's own binaries.
    """

    name = "local"

    def __init__(self, root: Path) -> None:
        self.root = root
        self.specs: dict[str, ContainerSpec] = {}
        self.execs: list[list[str]] = []
        self.removed: list[str] = []

    def container_path(self, container: str, path: str) -> Path:
        return self.root / container / path.lstrip("/")

    async def start(self, spec: ContainerSpec) -> None:
        self.specs[spec.name] = spec
        (self.root / spec.name).mkdir(parents=True, exist_ok=True)

    async def copy_in(
        self,
        container: str,
        host_dir: Path,
        container_dir: str,
        ignore: IgnoreFn | None = None,
    ) -> None:
        shutil.copytree(
            host_dir, self.container_path(container, container_dir), ignore=ignore, dirs_exist_ok=True
        )

    async def exec(
        self,
        container: str,
        argv: Sequence[str],
        *,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
        deadline: float | None = None,
        detach: bool = False,
    ) -> ExecResult:
        self.execs.append(list(argv))
        cwd = self.container_path(container, workdir or self.specs[container].workdir)
        cwd.mkdir(parents=True, exist_ok=True)
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            env={**os.environ, **(env or {})},
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=deadline)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise ExecDeadlineError("local exec exceeded deadline") from None
        return ExecResult(proc.returncode or 0, out.decode(), err.decode())

    async def copy_out(self, container: str, container_dir: str, host_dir: Path) -> None:
        source = self.container_path(container, container_dir)
        if source.is_dir():
            shutil.copytree(source, host_dir, dirs_exist_ok=True)

    async def remove(self, container: str) -> None:
        self.removed.append(container)
        shutil.rmtree(self.root / container, ignore_errors=True)
