"""Allowed-roots path policy.

Every component that touches the host filesystem or mounts a host directory
into a container goes through :class:`PathSandbox`. A leading ``/`` on a
caller-supplied path is a virtual root anchored at the primary work directory,
not the host filesystem root.
"""

from __future__ import annotations

import os
from collections.abc import Iterable
from pathlib import Path

from runbox.errors import OutsideAllowedPathError


def is_within(path: str | Path, root: str | Path) -> bool:
    """True when *path* equals *root* or lies beneath it (both already absolute)."""
    try:
        rel = os.path.relpath(path, root)
    except ValueError:
        # Different drives on Windows
        return False
    if rel == ".":
        return True
    return rel != os.pardir and not rel.startswith(os.pardir + os.sep) and not os.path.isabs(rel)


class PathSandbox:
    """Resolve and check paths against an ordered set of allowed roots.

    The first root is the primary work directory and anchors virtual-root
    paths. Roots are de-duplicated, keeping the first occurrence.
    """

    def __init__(self, roots: Iterable[str | Path]) -> None:
        ordered: list[Path] = []
        for root in roots:
            resolved = Path(root).expanduser().resolve()
            if resolved not in ordered:
                ordered.append(resolved)
        if not ordered:
            raise ValueError("PathSandbox needs at least one allowed root")
        self._roots = tuple(ordered)

    @property
    def roots(self) -> tuple[Path, ...]:
        return self._roots

    @property
    def work_dir(self) -> Path:
        return self._roots[0]

    def resolve(self, raw_path: str, scope_hint: str | Path | None = None) -> Path:
        """Turn a caller-supplied path into an absolute host path.

        Does not check the result; call :meth:`ensure_allowed` before acting.
        """
        if scope_hint is not None and not os.path.isabs(raw_path):
            return (Path(scope_hint).expanduser() / raw_path).resolve()

        expanded = os.path.expanduser(raw_path)
        if expanded.startswith("/") and not expanded.startswith("//"):
            candidate = Path(expanded).resolve()
            # Real host paths already under a root are kept as-is
            if self.is_allowed(candidate):
                return candidate
            return (self.work_dir / expanded.lstrip("/")).resolve()

        return (self.work_dir / expanded).resolve()

    def is_allowed(self, path: str | Path) -> bool:
        resolved = Path(path).expanduser().resolve()
        return any(is_within(resolved, root) for root in self._roots)

    def ensure_allowed(self, path: str | Path) -> Path:
        """Return the resolved path, or raise :class:`OutsideAllowedPathError`."""
        resolved = Path(path).expanduser().resolve()
        if not any(is_within(resolved, root) for root in self._roots):
            allowed = ", ".join(str(r) for r in self._roots)
            raise OutsideAllowedPathError(
                f"Path {resolved} is outside the allowed directories ({allowed})"
            )
        return resolved
