"""Guarded command execution inside containers."""

from __future__ import annotations

from runbox.executor._guard import (
    GUARD_EXIT_CODES,
    TIMEOUT_EXIT_CODE,
    build_timeout_exec_args,
    is_timed_out,
)
from runbox.executor._sandbox import COPY_EXCLUDES, SandboxExecutor, experience_ignore
from runbox.executor._validation import (
    CodebaseRunResult,
    CodebaseValidator,
    StepResult,
    ValidationCommand,
    check_step,
)
from runbox.executor.snippet import SnippetResult, SnippetRunner

__all__ = [
    "COPY_EXCLUDES",
    "GUARD_EXIT_CODES",
    "TIMEOUT_EXIT_CODE",
    "CodebaseRunResult",
    "CodebaseValidator",
    "SandboxExecutor",
    "SnippetResult",
    "SnippetRunner",
    "StepResult",
    "ValidationCommand",
    "build_timeout_exec_args",
    "check_step",
    "experience_ignore",
    "is_timed_out",
]
