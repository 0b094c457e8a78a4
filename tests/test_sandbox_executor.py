"""Tests for one-shot guarded execution against an experience directory."""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from conftest import LocalEngine

from runbox.container_engine import EngineError, ExecDeadlineError, ExecResult
from runbox.errors import OutsideAllowedPathError
from runbox.executor import SandboxExecutor, experience_ignore
from runbox.experience import META_FILENAME
from runbox.paths import PathSandbox
from runbox.types import CacheVolume, ContainerConfig

pytestmark = pytest.mark.skipif(
    shutil.which("timeout") is None or shutil.which("bash") is None,
    reason="needs coreutils timeout and bash",
)

CONFIG = ContainerConfig(
    base_image="ubuntu:22.04",
    setup_commands=("echo ready > setup.txt",),
    run_command=("bash",),
    cache_volumes=(CacheVolume("apt-cache", "/var/cache/apt"),),
    workdir="/workspace",
)


@pytest.fixture
def experience(tmp_path: Path) -> Path:
    d = tmp_path / "store" / "exp-1"
    d.mkdir(parents=True)
    (d / "in.txt").write_text("input data\n")
    (d / META_FILENAME).write_text('{"experienceId": "exp-1"}')
    (d / ".git").mkdir()
    return d


@pytest.fixture
def engine(tmp_path: Path) -> LocalEngine:
    return LocalEngine(tmp_path / "containers")


@pytest.fixture
def executor(engine: LocalEngine, tmp_path: Path) -> SandboxExecutor:
    return SandboxExecutor(
        engine,
        PathSandbox([tmp_path / "store"]),
        shared_volume=CacheVolume("run-project-shared", "/shared"),
    )


@pytest.mark.asyncio
async def test_runs_command_and_exports_back(executor, engine, experience: Path):
    result = await executor.run("cat in.txt && echo hi > out.txt", experience, CONFIG, 30)

    assert result.exit_code == 0
    assert result.success
    assert result.stdout == "input data"
    assert not result.timed_out
    assert (experience / "out.txt").read_text() == "hi\n"
    assert (experience / "setup.txt").read_text() == "ready\n"
    assert len(engine.removed) == 1


@pytest.mark.asyncio
async def test_failed_command_still_exports(executor, experience: Path):
    result = await executor.run("echo partial > partial.txt; echo oops >&2; exit 3", experience, CONFIG, 30)
    assert result.exit_code == 3
    assert result.stderr == "oops"
    assert not result.success
    assert (experience / "partial.txt").exists()


@pytest.mark.asyncio
async def test_metadata_and_vcs_not_visible_in_container(executor, experience: Path):
    result = await executor.run(
        f"test -e {META_FILENAME} && echo meta; test -e .git && echo git; echo done",
        experience,
        CONFIG,
        30,
    )
    assert result.stdout == "done"
    # Host copy keeps its metadata
    assert (experience / META_FILENAME).exists()


@pytest.mark.asyncio
async def test_env_reaches_command(executor, experience: Path):
    config = ContainerConfig(base_image="x", run_command=("bash",), environment={"A": "from-config"})
    result = await executor.run('echo "$A $B"', experience, config, 30, env={"B": "from-call"})
    assert result.stdout == "from-config from-call"


@pytest.mark.asyncio
async def test_timeout_maps_to_124(executor, experience: Path):
    config = ContainerConfig(base_image="x", run_command=("bash",))
    result = await executor.run("sleep 5", experience, config, 1)
    assert result.exit_code == 124
    assert result.timed_out
    assert "timed out" in result.stderr


@pytest.mark.asyncio
async def test_command_exiting_124_is_not_timed_out(executor, experience: Path):
    config = ContainerConfig(base_image="x", run_command=("bash",))
    result = await executor.run("exit 124", experience, config, 30)
    assert result.exit_code == 124
    assert not result.timed_out


@pytest.mark.asyncio
async def test_spec_carries_image_volumes_and_shared_cache(executor, engine, experience: Path):
    await executor.run("true", experience, CONFIG, 30)
    (spec,) = engine.specs.values()
    assert spec.image == "ubuntu:22.04"
    assert spec.workdir == "/workspace"
    assert [v.name for v in spec.volumes] == ["apt-cache", "run-project-shared"]


@pytest.mark.asyncio
async def test_setup_failure_is_not_fatal(executor, experience: Path):
    config = ContainerConfig(base_image="x", setup_commands=("exit 7",), run_command=("bash",))
    result = await executor.run("echo ok", experience, config, 30)
    assert result.exit_code == 0
    assert result.stdout == "ok"


@pytest.mark.asyncio
async def test_engine_failure_is_synthetic_exit_1(executor, engine, experience: Path):
    with patch.object(engine, "start", AsyncMock(side_effect=EngineError("daemon unreachable"))):
        result = await executor.run("echo hi", experience, CONFIG, 30)
    assert result.exit_code == 1
    assert result.stderr == "daemon unreachable"
    assert engine.removed == []


@pytest.mark.asyncio
async def test_copy_in_failure_still_removes_container(executor, engine, experience: Path):
    with patch.object(engine, "copy_in", AsyncMock(side_effect=EngineError("cp failed"))):
        result = await executor.run("echo hi", experience, CONFIG, 30)
    assert result.exit_code == 1
    assert len(engine.removed) == 1


@pytest.mark.asyncio
async def test_host_deadline_maps_to_timeout(executor, engine, experience: Path):
    config = ContainerConfig(base_image="x", run_command=("bash",))
    with patch.object(engine, "exec", AsyncMock(side_effect=ExecDeadlineError("killed"))):
        result = await executor.run("sleep 999", experience, config, 5)
    assert result.exit_code == 124
    assert result.timed_out


@pytest.mark.asyncio
async def test_outside_allowed_path_raises(executor, tmp_path: Path):
    rogue = tmp_path / "rogue"
    rogue.mkdir()
    with pytest.raises(OutsideAllowedPathError):
        await executor.run("echo hi", rogue, CONFIG, 30)


def test_experience_ignore_only_drops_top_level_meta(tmp_path: Path):
    ignore = experience_ignore(tmp_path)
    names = [META_FILENAME, "node_modules", ".git", "src"]
    assert ignore(str(tmp_path), names) == {META_FILENAME, "node_modules", ".git"}
    assert ignore(str(tmp_path / "src"), names) == {"node_modules", ".git"}


@pytest.mark.asyncio
async def test_per_call_shell(executor, engine, experience: Path):
    result = await executor.run("echo $0", experience, CONFIG, 30, shell="sh")
    assert result.stdout == "sh"
    assert ["sh", "-c", "echo ready > setup.txt"] in engine.execs
    assert engine.execs[-1][:3] == ["timeout", "30", "sh"]


@pytest.mark.asyncio
async def test_busybox_kill_code_normalised(executor, engine, experience: Path):
    async def fake_exec(container, argv, **kwargs) -> ExecResult:
        if argv[0] == "timeout":
            await asyncio.sleep(1.05)
            return ExecResult(143)
        return ExecResult(0)

    with patch.object(engine, "exec", AsyncMock(side_effect=fake_exec)):
        result = await executor.run("sleep 5", experience, CONFIG, 1)

    assert result.timed_out
    assert result.exit_code == 124
    assert result.stderr == "Execution timed out after 1 seconds"
