"""Tests for the shell timeout guard."""

from __future__ import annotations

import asyncio
import shutil
import time

import pytest

from runbox.executor import (
    GUARD_EXIT_CODES,
    TIMEOUT_EXIT_CODE,
    build_timeout_exec_args,
    is_timed_out,
)

needs_timeout = pytest.mark.skipif(
    shutil.which("timeout") is None, reason="coreutils timeout not installed"
)


def test_args_keep_command_as_one_element():
    args = build_timeout_exec_args("echo 'a b' && ls", 30, shell="sh")
    assert args == ["timeout", "30", "sh", "-c", "echo 'a b' && ls"]


def test_timeout_is_whole_seconds():
    assert build_timeout_exec_args("x", 2.7)[1] == "2"


class TestIsTimedOut:
    def test_guard_fired(self):
        assert is_timed_out(124, 1000.0, 1)

    def test_command_exited_124_early(self):
        assert not is_timed_out(124, 20.0, 1)

    def test_other_exit_code_after_deadline(self):
        assert not is_timed_out(1, 5000.0, 1)

    @pytest.mark.parametrize("code", [137, 143])
    def test_busybox_kill_codes_at_deadline(self, code: int):
        assert code in GUARD_EXIT_CODES
        assert is_timed_out(code, 1000.0, 1)
        assert is_timed_out(code, 1500.0, 1)

    @pytest.mark.parametrize("code", [137, 143])
    def test_busybox_kill_codes_before_deadline(self, code: int):
        assert not is_timed_out(code, 300.0, 1)


async def _run(argv: list[str]) -> tuple[int, float]:
    t0 = time.monotonic()
    proc = await asyncio.create_subprocess_exec(
        *argv, stdout=asyncio.subprocess.DEVNULL, stderr=asyncio.subprocess.DEVNULL
    )
    code = await proc.wait()
    return code, (time.monotonic() - t0) * 1000


@needs_timeout
@pytest.mark.asyncio
async def test_sleep_past_timeout_reports_124():
    code, duration_ms = await _run(build_timeout_exec_args("sleep 5", 1, shell="sh"))
    assert code == TIMEOUT_EXIT_CODE
    assert is_timed_out(code, duration_ms, 1)
    assert duration_ms < 4000


@needs_timeout
@pytest.mark.asyncio
async def test_self_reported_124_is_not_a_timeout():
    code, duration_ms = await _run(build_timeout_exec_args("exit 124", 5, shell="sh"))
    assert code == TIMEOUT_EXIT_CODE
    assert not is_timed_out(code, duration_ms, 5)
