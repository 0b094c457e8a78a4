"""One-shot guarded command execution against an experience directory."""

from __future__ import annotations

import time
import uuid
from pathlib import Path

from runbox.container_engine import (
    ContainerEngine,
    ContainerSpec,
    EngineError,
    ExecDeadlineError,
    IgnoreFn,
)
from runbox.experience import META_FILENAME
from runbox.logger import logger
from runbox.paths import PathSandbox
from runbox.types import CacheVolume, ContainerConfig, ValidationResult

from ._guard import TIMEOUT_EXIT_CODE, build_timeout_exec_args, is_timed_out

# Never copied into the container
COPY_EXCLUDES = frozenset({".git", "node_modules"})

# Host deadline sits past the in-container guard so the guard normally fires first
HOST_DEADLINE_GRACE_SECONDS = 30
SETUP_DEADLINE_SECONDS = 900


def experience_ignore(root: Path) -> IgnoreFn:
    """Drop VCS and dependency dirs anywhere, and the metadata file at the top."""
    top = str(root)

    def _ignore(directory: str, names: list[str]) -> set[str]:
        skipped = {n for n in names if n in COPY_EXCLUDES}
        if directory == top and META_FILENAME in names:
            skipped.add(META_FILENAME)
        return skipped

    return _ignore


class SandboxExecutor:
    """Run one command in a fresh container seeded from an experience dir.

    Lifecycle per call: start, copy in, setup, guarded run, copy out, remove.
    The copy out happens whether the command succeeded or not, so installed
    dependencies and written files carry over to the next run. Engine
    failures come back as a synthetic ``exit_code=1`` result, never raised.
    Only path-policy violations raise.
    """

    def __init__(
        self,
        engine: ContainerEngine,
        sandbox: PathSandbox,
        *,
        shell: str = "bash",
        shared_volume: CacheVolume | None = None,
        container_prefix: str = "runbox-exec-",
    ) -> None:
        self._engine = engine
        self._sandbox = sandbox
        self._shell = shell
        self._shared_volume = shared_volume
        self._prefix = container_prefix

    @property
    def engine(self) -> ContainerEngine:
        return self._engine

    @property
    def sandbox(self) -> PathSandbox:
        return self._sandbox

    async def run(
        self,
        command: str,
        experience_dir: str | Path,
        config: ContainerConfig,
        timeout_seconds: int,
        container_workdir: str = "/workspace",
        env: dict[str, str] | None = None,
        shell: str | None = None,
    ) -> ValidationResult:
        """Run *command* under *shell*, defaulting to the executor's own."""
        shell = shell or self._shell
        host_dir = self._sandbox.ensure_allowed(experience_dir)
        name = f"{self._prefix}{uuid.uuid4().hex[:12]}"
        merged_env = {**(config.environment or {}), **(env or {})}
        volumes = config.cache_volumes
        if self._shared_volume is not None:
            volumes = (*volumes, self._shared_volume)

        spec = ContainerSpec(
            name=name,
            image=config.base_image,
            workdir=container_workdir,
            volumes=volumes,
        )
        started = False
        seeded = False
        t0 = time.monotonic()
        try:
            await self._engine.start(spec)
            started = True
            await self._engine.copy_in(
                name, host_dir, container_workdir, ignore=experience_ignore(host_dir)
            )
            seeded = True
            await self._run_setup(name, config, container_workdir, merged_env, shell)

            t0 = time.monotonic()
            res = await self._engine.exec(
                name,
                build_timeout_exec_args(command, timeout_seconds, shell),
                workdir=container_workdir,
                env=merged_env,
                deadline=timeout_seconds + HOST_DEADLINE_GRACE_SECONDS,
            )
            duration_ms = (time.monotonic() - t0) * 1000
            timed_out = is_timed_out(res.exit_code, duration_ms, timeout_seconds)
            stderr = res.stderr.strip()
            if timed_out and not stderr:
                stderr = f"Execution timed out after {timeout_seconds} seconds"
            result = ValidationResult(
                exit_code=TIMEOUT_EXIT_CODE if timed_out else res.exit_code,
                stdout=res.stdout.strip(),
                stderr=stderr,
                duration_ms=duration_ms,
                timed_out=timed_out,
            )
        except ExecDeadlineError as exc:
            logger.warning("Command exceeded host deadline", container=name, err=str(exc))
            result = ValidationResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stderr=f"Execution timed out after {timeout_seconds} seconds",
                duration_ms=(time.monotonic() - t0) * 1000,
                timed_out=True,
            )
        except EngineError as exc:
            logger.error("Container engine failure", container=name, err=str(exc))
            result = ValidationResult(
                exit_code=1,
                stderr=str(exc),
                duration_ms=(time.monotonic() - t0) * 1000,
            )
        finally:
            if seeded:
                await self._export(name, container_workdir, host_dir)
            if started:
                await self._engine.remove(name)

        logger.info(
            "Command finished",
            container=name,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            duration_ms=round(result.duration_ms),
        )
        return result

    async def _run_setup(
        self,
        name: str,
        config: ContainerConfig,
        workdir: str,
        env: dict[str, str],
        shell: str,
    ) -> None:
        for cmd in config.setup_commands:
            try:
                res = await self._engine.exec(
                    name,
                    [shell, "-c", cmd],
                    workdir=workdir,
                    env=env,
                    deadline=SETUP_DEADLINE_SECONDS,
                )
            except ExecDeadlineError:
                logger.warning("Setup command exceeded deadline", command=cmd)
                continue
            if res.exit_code != 0:
                # Optional deps may legitimately fail to install
                logger.warning(
                    "Setup command failed",
                    command=cmd,
                    exit_code=res.exit_code,
                    stderr=res.stderr.strip()[-500:],
                )

    async def _export(self, name: str, workdir: str, host_dir: Path) -> None:
        try:
            await self._engine.copy_out(name, workdir, host_dir)
        except EngineError as exc:
            logger.warning("Export back to experience failed", container=name, err=str(exc))
