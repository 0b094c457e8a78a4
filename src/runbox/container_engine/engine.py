"""Container engine contract and the Docker CLI implementation."""

from __future__ import annotations

import asyncio
import shutil
import tempfile
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from runbox.container_engine._docker import (
    EngineError,
    ensure_image,
    exec_streaming,
    remove_container,
    run_docker,
)
from runbox.logger import logger
from runbox.types import CacheVolume

IgnoreFn = Callable[[str, list[str]], set[str]]


@dataclass(frozen=True)
class BindMount:
    host_path: str
    container_path: str
    readonly: bool = True


@dataclass(frozen=True)
class ContainerSpec:
    """Everything needed to start one long-lived container."""

    name: str
    image: str
    workdir: str
    volumes: tuple[CacheVolume, ...] = ()
    binds: tuple[BindMount, ...] = ()
    ports: tuple[tuple[int, int], ...] = ()  # (host, container)
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class ExecResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""


@runtime_checkable
class ContainerEngine(Protocol):
    """What the executor and bridge lifecycle need from a container runtime."""

    name: str

    async def start(self, spec: ContainerSpec) -> None: ...

    async def copy_in(
        self,
        container: str,
        host_dir: Path,
        container_dir: str,
        ignore: IgnoreFn | None = None,
    ) -> None: ...

    async def exec(
        self,
        container: str,
        argv: Sequence[str],
        *,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
        deadline: float | None = None,
        detach: bool = False,
    ) -> ExecResult: ...

    async def copy_out(self, container: str, container_dir: str, host_dir: Path) -> None: ...

    async def remove(self, container: str) -> None: ...


def exclude_names(names: Sequence[str]) -> IgnoreFn:
    """``shutil.copytree`` ignore callable dropping the given entry names anywhere."""
    excluded = frozenset(names)

    def _ignore(_directory: str, entries: list[str]) -> set[str]:
        return {entry for entry in entries if entry in excluded}

    return _ignore


def _env_flags(env: dict[str, str] | None) -> list[str]:
    # Values travel through the CLI's environment, not its argv
    flags: list[str] = []
    for key in sorted(env or {}):
        flags += ["-e", key]
    return flags


class DockerEngine:
    """Drives the ``docker`` CLI.

    Named cache volumes get ``volume_prefix`` prepended so runbox volumes are
    easy to find and prune.
    """

    name = "docker"

    def __init__(self, volume_prefix: str = "runbox-") -> None:
        self._volume_prefix = volume_prefix

    def _start_args(self, spec: ContainerSpec) -> list[str]:
        args = ["run", "-d", "--name", spec.name, "-w", spec.workdir]
        for vol in spec.volumes:
            args += ["-v", f"{self._volume_prefix}{vol.name}:{vol.mount_path}"]
        for bind in spec.binds:
            suffix = ":ro" if bind.readonly else ""
            args += ["-v", f"{bind.host_path}:{bind.container_path}{suffix}"]
        for host_port, container_port in spec.ports:
            args += ["-p", f"127.0.0.1:{host_port}:{container_port}"]
        for key, value in sorted(spec.env.items()):
            args += ["-e", f"{key}={value}"]
        # Keep the container alive for exec calls
        args += [spec.image, "tail", "-f", "/dev/null"]
        return args

    async def start(self, spec: ContainerSpec) -> None:
        await ensure_image(spec.image)
        await remove_container(spec.name)
        await run_docker(*self._start_args(spec), timeout=120)
        logger.info("Container started", container=spec.name, image=spec.image)

    async def copy_in(
        self,
        container: str,
        host_dir: Path,
        container_dir: str,
        ignore: IgnoreFn | None = None,
    ) -> None:
        with tempfile.TemporaryDirectory(prefix="runbox-stage-") as tmp:
            staging = Path(tmp) / "src"
            await asyncio.to_thread(
                shutil.copytree, host_dir, staging, ignore=ignore, symlinks=True
            )
            await run_docker("cp", f"{staging}/.", f"{container}:{container_dir}", timeout=600)

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
        args = ["exec"]
        if detach:
            args.append("-d")
        if workdir:
            args += ["-w", workdir]
        args += _env_flags(env)
        args += [container, *argv]
        code, stdout, stderr = await exec_streaming(args, env=env, deadline=deadline)
        return ExecResult(exit_code=code, stdout=stdout, stderr=stderr)

    async def copy_out(self, container: str, container_dir: str, host_dir: Path) -> None:
        host_dir.mkdir(parents=True, exist_ok=True)
        await run_docker("cp", f"{container}:{container_dir.rstrip('/')}/.", str(host_dir), timeout=600)

    async def remove(self, container: str) -> None:
        try:
            await remove_container(container)
        except EngineError as exc:
            logger.warning("Container removal failed", container=container, err=str(exc))
