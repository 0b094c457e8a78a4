"""Codebase validation: ordered named checks against one provisioned container."""

from __future__ import annotations

import asyncio
import re
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from runbox.container_engine import (
    ContainerEngine,
    ContainerSpec,
    EngineError,
    ExecDeadlineError,
    exclude_names,
)
from runbox.logger import logger
from runbox.paths import PathSandbox
from runbox.project_analyzer import SETUP_COMMANDS, detect_project_type
from runbox.types import CacheVolume

from ._guard import TIMEOUT_EXIT_CODE, build_timeout_exec_args, is_timed_out

VALIDATION_IMAGES: dict[str, str] = {
    "npm": "node:20-alpine",
    "pip": "python:3.11-alpine",
    "cargo": "rust:1.75-alpine",
    "go": "golang:1.21-alpine",
    "maven": "maven:3.9-eclipse-temurin-17-alpine",
    "gradle": "gradle:8.5-jdk17-alpine",
    "unknown": "ubuntu:22.04",
}

VALIDATION_CACHE_VOLUMES: dict[str, tuple[CacheVolume, ...]] = {
    "npm": (
        CacheVolume("npm-cache", "/root/.npm"),
        CacheVolume("node-modules", "/app/node_modules"),
    ),
    "pip": (
        CacheVolume("pip-cache", "/root/.cache/pip"),
        CacheVolume("python-packages", "/usr/local/lib/python3.11/site-packages"),
    ),
    "cargo": (
        CacheVolume("cargo-registry", "/usr/local/cargo/registry"),
        CacheVolume("cargo-git", "/usr/local/cargo/git"),
        CacheVolume("cargo-target", "/app/target"),
    ),
    "go": (
        CacheVolume("go-mod-cache", "/go/pkg/mod"),
        CacheVolume("go-build-cache", "/root/.cache/go-build"),
    ),
    "maven": (CacheVolume("maven-repo", "/root/.m2/repository"),),
    "gradle": (CacheVolume("gradle-cache", "/root/.gradle"),),
}

CODEBASE_EXCLUDES = (
    "node_modules",
    "dist",
    "build",
    "target",
    ".git",
    "__pycache__",
    "venv",
    ".venv",
    "env",
)
CODEBASE_WORKDIR = "/app"


@dataclass(frozen=True)
class ValidationCommand:
    name: str
    command: str
    workdir: str = CODEBASE_WORKDIR
    timeout: int = 60
    expected_exit_code: int = 0
    output_must_match: tuple[str, ...] = ()
    output_must_not_match: tuple[str, ...] = ()


@dataclass
class StepResult:
    name: str
    command: str
    passed: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: float = 0.0
    timed_out: bool = False
    failures: list[str] = field(default_factory=list)


@dataclass
class CodebaseRunResult:
    success: bool
    steps: list[StepResult]
    project_type: str
    setup_commands: list[str]
    total_duration_ms: float
    error: str | None = None


def check_step(
    step: ValidationCommand, exit_code: int, stdout: str, stderr: str, timed_out: bool
) -> list[str]:
    """Failure messages for one finished step; empty means it passed."""
    failures: list[str] = []
    if timed_out:
        failures.append(f"Command timed out after {step.timeout}s")
    elif exit_code != step.expected_exit_code:
        failures.append(f"Expected exit code {step.expected_exit_code}, got {exit_code}")

    combined = f"{stdout}\n{stderr}"
    for pattern in step.output_must_match:
        if not re.search(pattern, combined):
            failures.append(f"Output must match pattern: {pattern}")
    for pattern in step.output_must_not_match:
        if re.search(pattern, combined):
            failures.append(f"Output must not match pattern: {pattern}")
    return failures


class CodebaseValidator:
    def __init__(self, engine: ContainerEngine, sandbox: PathSandbox, *, shell: str = "sh") -> None:
        self._engine = engine
        self._sandbox = sandbox
        self._shell = shell

    async def run(
        self,
        codebase_path: str | Path,
        validations: list[ValidationCommand],
        *,
        project_type: str | None = None,
        setup_commands: list[str] | None = None,
        run_setup: bool = True,
        continue_on_failure: bool = False,
    ) -> CodebaseRunResult:
        """Provision once, run setup (non-fatal), then each step in order.

        Stops at the first failing step unless *continue_on_failure*.
        """
        root = self._sandbox.ensure_allowed(codebase_path)
        t0 = time.monotonic()
        if project_type is None:
            project_type = await asyncio.to_thread(detect_project_type, root)
        if project_type not in VALIDATION_IMAGES:
            project_type = "unknown"
        if setup_commands is None:
            setup_commands = list(SETUP_COMMANDS.get(project_type, ())) if run_setup else []

        name = f"runbox-validate-{uuid.uuid4().hex[:12]}"
        spec = ContainerSpec(
            name=name,
            image=VALIDATION_IMAGES[project_type],
            workdir=CODEBASE_WORKDIR,
            volumes=VALIDATION_CACHE_VOLUMES.get(project_type, ()),
        )
        steps: list[StepResult] = []
        started = False
        try:
            await self._engine.start(spec)
            started = True
            await self._engine.copy_in(
                name, root, CODEBASE_WORKDIR, ignore=exclude_names(CODEBASE_EXCLUDES)
            )
            for cmd in setup_commands:
                res = await self._engine.exec(name, [self._shell, "-c", cmd], workdir=CODEBASE_WORKDIR)
                if res.exit_code != 0:
                    logger.warning("Validation setup failed", command=cmd, exit_code=res.exit_code)

            for step in validations:
                result = await self._run_step(name, step)
                steps.append(result)
                if not result.passed and not continue_on_failure:
                    break
        except EngineError as exc:
            logger.error("Codebase validation aborted", container=name, err=str(exc))
            return CodebaseRunResult(
                success=False,
                steps=steps,
                project_type=project_type,
                setup_commands=setup_commands,
                total_duration_ms=(time.monotonic() - t0) * 1000,
                error=f"Container engine error: {exc}",
            )
        finally:
            if started:
                await self._engine.remove(name)

        return CodebaseRunResult(
            success=len(steps) == len(validations) and all(s.passed for s in steps),
            steps=steps,
            project_type=project_type,
            setup_commands=setup_commands,
            total_duration_ms=(time.monotonic() - t0) * 1000,
        )

    async def _run_step(self, container: str, step: ValidationCommand) -> StepResult:
        t0 = time.monotonic()
        try:
            res = await self._engine.exec(
                container,
                build_timeout_exec_args(step.command, step.timeout, self._shell),
                workdir=step.workdir,
                deadline=step.timeout + 30,
            )
            exit_code, stdout, stderr = res.exit_code, res.stdout, res.stderr
            duration_ms = (time.monotonic() - t0) * 1000
            timed_out = is_timed_out(exit_code, duration_ms, step.timeout)
            if timed_out:
                exit_code = TIMEOUT_EXIT_CODE
        except ExecDeadlineError as exc:
            exit_code, stdout, stderr = TIMEOUT_EXIT_CODE, "", str(exc)
            duration_ms = (time.monotonic() - t0) * 1000
            timed_out = True

        failures = check_step(step, exit_code, stdout, stderr, timed_out)
        logger.info("Validation step finished", step=step.name, passed=not failures)
        return StepResult(
            name=step.name,
            command=step.command,
            passed=not failures,
            exit_code=exit_code,
            stdout=stdout.strip(),
            stderr=stderr.strip(),
            duration_ms=duration_ms,
            timed_out=timed_out,
            failures=failures,
        )
