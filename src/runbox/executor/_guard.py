"""Shell timeout guard.

Commands run as ``timeout <secs> <shell> -c <command>``. The command string is
a single argv element, so it is never re-interpolated by an outer shell.
"""

from __future__ import annotations

TIMEOUT_EXIT_CODE = 124

# coreutils reports 124; busybox execs the command in place and kills it,
# so the container sees 128+SIGTERM or 128+SIGKILL instead
GUARD_EXIT_CODES = frozenset({TIMEOUT_EXIT_CODE, 128 + 15, 128 + 9})


def build_timeout_exec_args(command: str, timeout_seconds: int, shell: str = "bash") -> list[str]:
    return ["timeout", str(int(timeout_seconds)), shell, "-c", command]


def is_timed_out(exit_code: int, duration_ms: float, timeout_seconds: float) -> bool:
    """True only when the guard fired.

    A command that exits with a guard code by itself before its deadline is
    not a timeout. Callers report a timed-out run as ``TIMEOUT_EXIT_CODE``.
    """
    return exit_code in GUARD_EXIT_CODES and duration_ms >= timeout_seconds * 1000
