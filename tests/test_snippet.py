"""Tests for running standalone snippets through a resolved config."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, Mock, patch

import pytest
from conftest import LocalEngine, make_settings

from runbox.container_engine import ExecResult
from runbox.habitat import Habitat
from runbox.types import ValidationResult


@pytest.fixture
def habitat(tmp_path: Path) -> Habitat:
    return Habitat(make_settings(tmp_path), engine=LocalEngine(tmp_path / "containers"))


@pytest.mark.asyncio
async def test_snippet_written_and_run_with_static_config(habitat: Habitat):
    seen: dict = {}

    async def fake_run(
        command, experience_dir, config, timeout_seconds, container_workdir, env=None, shell=None
    ):
        scratch = Path(experience_dir)
        seen["files"] = sorted(p.name for p in scratch.iterdir())
        seen["code"] = (scratch / "code.py").read_text()
        seen["scratch"] = scratch
        seen["command"] = command
        seen["workdir"] = container_workdir
        seen["shell"] = shell
        return ValidationResult(exit_code=0, stdout="42")

    with patch.object(habitat.executor, "run", side_effect=fake_run):
        out = await habitat.snippets.run("print(42)", "Python", timeout_seconds=10)

    assert out.result.stdout == "42"
    assert out.cached is False
    assert out.config.base_image == "python:3.11-alpine"
    assert seen["files"] == ["code.py"]
    assert seen["code"] == "print(42)"
    assert seen["command"] == "python /app/code.py"
    assert seen["workdir"] == "/app"
    assert seen["shell"] == "sh"
    # Scratch space is always cleaned up
    assert not seen["scratch"].exists()
    assert seen["scratch"].parent == habitat.sessions_dir / "snippets"


@pytest.mark.asyncio
async def test_second_snippet_hits_cache(habitat: Habitat):
    async def fake_run(*args, **kwargs):
        return ValidationResult(exit_code=0)

    with patch.object(habitat.executor, "run", side_effect=fake_run):
        await habitat.snippets.run("print(1)", "python")
        again = await habitat.snippets.run("print(2)", "python")
    assert again.cached is True


@pytest.mark.asyncio
async def test_scratch_removed_when_run_raises(habitat: Habitat):
    scratch_root = habitat.sessions_dir / "snippets"

    with patch.object(habitat.executor, "run", side_effect=RuntimeError("engine exploded")):
        with pytest.raises(RuntimeError):
            await habitat.snippets.run("print(1)", "python")
    assert list(scratch_root.iterdir()) == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("language", "image"),
    [("python", "python:3.11-alpine"), ("javascript", "node:20-alpine")],
)
async def test_alpine_snippet_runs_under_sh(tmp_path: Path, language: str, image: str):
    engine = Mock()
    for method in ("start", "copy_in", "copy_out", "remove"):
        setattr(engine, method, AsyncMock())
    engine.exec = AsyncMock(return_value=ExecResult(0, "1\n", ""))
    habitat = Habitat(make_settings(tmp_path), engine=engine)

    out = await habitat.snippets.run("print(1)", language, timeout_seconds=5)

    assert engine.start.await_args.args[0].image == image
    argv = engine.exec.await_args_list[-1].args[1]
    assert argv[:4] == ["timeout", "5", "sh", "-c"]
    assert all(call.args[1][0] != "bash" for call in engine.exec.await_args_list)
    assert out.result.exit_code == 0
