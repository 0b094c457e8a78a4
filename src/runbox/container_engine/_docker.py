"""Docker CLI subprocess wrappers.

All public functions are async so they don't block the event loop.
Short CLI calls run in a thread via ``asyncio.to_thread``; long-running
``docker exec`` calls use an asyncio subprocess so they can be killed on a
host-side deadline.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import subprocess

from runbox.logger import logger


class EngineError(RuntimeError):
    """The container engine is unavailable or a CLI call failed."""


class ExecDeadlineError(EngineError):
    """A ``docker exec`` outlived its host-side deadline and was killed."""


def docker_available() -> bool:
    """Check if ``docker`` is on PATH."""
    return shutil.which("docker") is not None


def _run_docker_sync(
    *args: str,
    check: bool = True,
    timeout: int = 30,
) -> subprocess.CompletedProcess[str]:
    """Run a ``docker`` CLI command (blocking, internal only)."""
    return subprocess.run(
        ["docker", *args],
        capture_output=True,
        text=True,
        timeout=timeout,
        check=check,
    )


async def run_docker(
    *args: str,
    check: bool = True,
    timeout: int = 30,
) -> subprocess.CompletedProcess[str]:
    """Run a ``docker`` CLI command without blocking the event loop.

    Raises :class:`EngineError` when the CLI is missing, times out, or (with
    ``check``) exits nonzero. The message carries docker's stderr.
    """
    if not docker_available():
        raise EngineError("docker CLI not found on PATH")
    try:
        return await asyncio.to_thread(_run_docker_sync, *args, check=check, timeout=timeout)
    except subprocess.CalledProcessError as exc:
        detail = (exc.stderr or exc.stdout or "").strip()
        raise EngineError(f"docker {args[0]} failed ({exc.returncode}): {detail}") from exc
    except subprocess.TimeoutExpired as exc:
        raise EngineError(f"docker {args[0]} timed out after {timeout}s") from exc


async def ensure_image(image: str) -> None:
    """Pull a Docker image if not already present locally."""
    result = await run_docker("image", "inspect", image, check=False)
    if result.returncode == 0:
        return

    logger.info("Pulling Docker image (first run may take a minute)", image=image)
    await run_docker("pull", image, timeout=600)
    logger.info("Docker image pulled", image=image)


async def remove_container(name: str) -> None:
    """Force-remove a container (idempotent, no error if absent)."""
    await run_docker("rm", "-f", name, check=False)


async def exec_streaming(
    argv: list[str],
    *,
    env: dict[str, str] | None = None,
    deadline: float | None = None,
) -> tuple[int, str, str]:
    """Run a docker command as an asyncio subprocess and collect its output.

    *env* is merged over the host environment so ``-e NAME`` flags can pick up
    values without putting them on the command line.
    """
    if not docker_available():
        raise EngineError("docker CLI not found on PATH")
    proc_env = {**os.environ, **env} if env else None
    try:
        proc = await asyncio.create_subprocess_exec(
            "docker",
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=proc_env,
        )
    except OSError as exc:
        raise EngineError(f"failed to launch docker: {exc}") from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=deadline)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        raise ExecDeadlineError(f"docker {argv[0]} exceeded host deadline of {deadline}s") from None
    return (
        proc.returncode if proc.returncode is not None else 1,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )
