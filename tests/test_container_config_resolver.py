"""Tests for container-config resolution order and generative fallback handling."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from runbox.container_config import (
    ContainerConfigCache,
    ContainerConfigResolver,
    fallback_config,
    parse_config_response,
)
from runbox.container_config._resolver import requirements_cache_identity
from runbox.types import ProjectRequirements, SkillRepo

GENERATED = {
    "baseImage": "python:3.12-slim",
    "setupCommands": ["pip install requests"],
    "runCommand": ["python", "/app/code.py"],
    "cacheVolumes": [{"name": "pip-cache", "mountPath": "/root/.cache/pip"}],
}


class CountingCompleter:
    def __init__(self, reply: str | Exception) -> None:
        self.reply = reply
        self.calls = 0
        self.prompts: list[str] = []

    async def __call__(self, prompt: str) -> str:
        self.calls += 1
        self.prompts.append(prompt)
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


def _resolver(tmp_path: Path, completer=None, **kwargs) -> ContainerConfigResolver:
    return ContainerConfigResolver(ContainerConfigCache(tmp_path / "cache"), completer, **kwargs)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParseConfigResponse:
    def test_fenced(self):
        reply = f"Here you go:\n```json\n{json.dumps(GENERATED)}\n```\nEnjoy."
        assert parse_config_response(reply).base_image == "python:3.12-slim"

    def test_bare(self):
        reply = f"Sure! {json.dumps(GENERATED)}"
        cfg = parse_config_response(reply)
        assert cfg.run_command == ("python", "/app/code.py")
        assert cfg.cache_volumes[0].mount_path == "/root/.cache/pip"

    def test_no_json(self):
        with pytest.raises(ValueError):
            parse_config_response("I cannot help with that.")

    def test_invalid_json(self):
        with pytest.raises(ValueError):
            parse_config_response("```json\n{baseImage: nope}\n```")

    @pytest.mark.parametrize(
        "patch",
        [
            {"baseImage": ""},
            {"runCommand": []},
            {"runCommand": "python code.py"},
            {"setupCommands": None},
            {"cacheVolumes": [{"name": "x", "mountPath": "relative"}]},
            {"workdir": "app"},
            {"environment": {"A": 1}},
        ],
    )
    def test_bad_shapes_rejected(self, patch):
        with pytest.raises(ValueError):
            parse_config_response(json.dumps({**GENERATED, **patch}))

    def test_missing_field_rejected(self):
        partial = {k: v for k, v in GENERATED.items() if k != "cacheVolumes"}
        with pytest.raises(ValueError):
            parse_config_response(json.dumps(partial))


# ---------------------------------------------------------------------------
# Resolution order
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_static_config_for_known_language_without_packages(tmp_path: Path):
    completer = CountingCompleter(json.dumps(GENERATED))
    resolver = _resolver(tmp_path, completer)

    first = await resolver.resolve("python", "print('hi')")
    assert first.cached is False
    assert first.config.base_image == "python:3.11-alpine"
    assert completer.calls == 0

    second = await resolver.resolve("Python", "print('hi')")
    assert second.cached is True
    assert second.config == first.config


@pytest.mark.asyncio
async def test_generative_call_happens_once(tmp_path: Path):
    completer = CountingCompleter(f"```json\n{json.dumps(GENERATED)}\n```")
    resolver = _resolver(tmp_path, completer)
    code = "import requests\nprint(requests.get('x'))"

    first = await resolver.resolve("python", code)
    second = await resolver.resolve("python", code)

    assert completer.calls == 1
    assert first.cached is False
    assert second.cached is True
    assert first.config == second.config
    assert first.config.base_image == "python:3.12-slim"


@pytest.mark.asyncio
async def test_prompt_carries_language_packages_and_bounded_code(tmp_path: Path):
    completer = CountingCompleter(json.dumps(GENERATED))
    resolver = _resolver(tmp_path, completer, max_code_chars=40)
    code = "import requests\n" + "x = 1\n" * 100

    await resolver.resolve("python", code)

    prompt = completer.prompts[0]
    assert "python" in prompt
    assert "requests" in prompt
    assert "/app/code.py" in prompt
    assert code not in prompt


@pytest.mark.asyncio
async def test_force_refresh_bypasses_cache(tmp_path: Path):
    completer = CountingCompleter(json.dumps(GENERATED))
    resolver = _resolver(tmp_path, completer)
    await resolver.resolve("python", "import requests")
    await resolver.resolve("python", "import requests", force_refresh=True)
    assert completer.calls == 2


@pytest.mark.asyncio
async def test_completer_failure_falls_back_uncached(tmp_path: Path):
    completer = CountingCompleter(RuntimeError("endpoint down"))
    resolver = _resolver(tmp_path, completer)

    result = await resolver.resolve("python", "import requests")
    assert result.cached is False
    assert result.config.base_image == "python:3.11-alpine"
    assert "pip install --no-cache-dir requests" in result.config.setup_commands

    # Not cached, so the generative path is retried
    await resolver.resolve("python", "import requests")
    assert completer.calls == 2
    assert resolver.cache.stats().disk_size == 0


@pytest.mark.asyncio
async def test_unparseable_reply_falls_back(tmp_path: Path):
    resolver = _resolver(tmp_path, CountingCompleter('{"baseImage": "x"}'))
    result = await resolver.resolve("python", "import numpy")
    assert result.config.base_image == "python:3.11-alpine"


@pytest.mark.asyncio
async def test_unknown_language_without_completer_is_generic(tmp_path: Path):
    result = await _resolver(tmp_path).resolve("zig", "const std = @import(\"std\");")
    assert result.config.base_image == "zig:latest"
    assert result.config.run_command == ("zig", "/app/code.zig")


def test_fallback_config_known_language_without_install():
    cfg = fallback_config("go", ["github.com/x/y"])
    assert cfg.base_image == "golang:1.21-alpine"
    assert cfg.setup_commands == ()


# ---------------------------------------------------------------------------
# Project requirements
# ---------------------------------------------------------------------------

REQS = ProjectRequirements(
    project_type="shell",
    base_image="ubuntu:22.04",
    apt_packages=("jq", "git"),
    setup_commands=("apt-get install -y jq git",),
    skill_repos=(SkillRepo("tool", "owner/tool", "/opt/tool"),),
)


def test_requirements_identity():
    language, packages = requirements_cache_identity(REQS)
    assert language == "project:shell"
    assert "jq" in packages
    assert "skill:tool@owner/tool" in packages
    assert "image:ubuntu:22.04" in packages


@pytest.mark.asyncio
async def test_resolve_requirements_builds_and_caches(tmp_path: Path):
    resolver = _resolver(tmp_path)
    first = await resolver.resolve_requirements(REQS, workdir="/workspace")
    cfg = first.config
    assert first.cached is False
    assert cfg.base_image == "ubuntu:22.04"
    assert cfg.workdir == "/workspace"
    assert cfg.run_command == ("bash",)
    assert cfg.setup_commands[0] == "apt-get install -y jq git"
    assert cfg.setup_commands[1].endswith("git clone --depth 1 https://github.com/owner/tool /opt/tool")

    second = await resolver.resolve_requirements(REQS, workdir="/workspace")
    assert second.cached is True
    assert second.config == cfg


@pytest.mark.asyncio
async def test_resolve_requirements_workdir_change_rebuilds(tmp_path: Path):
    resolver = _resolver(tmp_path)
    await resolver.resolve_requirements(REQS, workdir="/workspace")
    other = await resolver.resolve_requirements(REQS, workdir="/srv")
    assert other.cached is False
    assert other.config.workdir == "/srv"
