"""Experience lifecycle: isolated, persistent working copies of a project.

An experience is a full copy of a source tree plus a ``meta.json`` record,
living under a store directory that is a sibling of the work directory.
Commands run against the copy; only :meth:`ExperienceManager.commit` writes
anything back to the source.

States: absent -> start -> active -> (resume)* -> commit | discard -> absent.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import secrets
import shutil
import string
import time
from pathlib import Path
from typing import Literal

from runbox.errors import (
    CopyIntoSelfError,
    ExperienceExistsError,
    ExperienceNotFoundError,
    InvalidExperienceIdError,
)
from runbox.logger import logger
from runbox.paths import PathSandbox, is_within
from runbox.types import ExperienceMetadata, utc_now

META_FILENAME = "meta.json"

# Directory names never copied into an experience
EXCLUDED_DIRS = frozenset({".git", "node_modules", ".dagger-experiences"})
EXCLUDED_SUFFIX = "-experiences"

_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_ID_ALPHABET = string.ascii_lowercase + string.digits

ExperienceStatus = Literal["new", "continued"]


def experiences_base_dir(work_dir: str | Path) -> Path:
    """Default store location: ``<parent>/<work_dir name>-experiences``."""
    work = Path(work_dir).expanduser().resolve()
    return work.parent / f"{work.name or 'runbox'}{EXCLUDED_SUFFIX}"


def generate_id() -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(7))
    return f"experience-{int(time.time() * 1000)}-{suffix}"


def _now_iso() -> str:
    return utc_now().isoformat().replace("+00:00", "Z")


def _ignore_excluded(directory: str, names: list[str]) -> set[str]:
    return {
        name
        for name in names
        if name in EXCLUDED_DIRS
        or (name.endswith(EXCLUDED_SUFFIX) and os.path.isdir(os.path.join(directory, name)))
    }


class ExperienceManager:
    """Create, resume, commit and discard experiences under one store root."""

    def __init__(
        self,
        work_dir: str | Path,
        base_dir: str | Path | None = None,
        sandbox: PathSandbox | None = None,
    ) -> None:
        self._work_dir = Path(work_dir).expanduser().resolve()
        self._base_dir = (
            Path(base_dir).expanduser().resolve()
            if base_dir is not None
            else experiences_base_dir(self._work_dir)
        )
        if is_within(self._base_dir, self._work_dir):
            raise CopyIntoSelfError(
                f"Experience store {self._base_dir} must not be inside work dir {self._work_dir}"
            )
        self._sandbox = sandbox

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def experience_dir(self, experience_id: str) -> Path:
        if not _ID_RE.match(experience_id) or experience_id in (".", ".."):
            raise InvalidExperienceIdError(
                f"Invalid experience id {experience_id!r}: use letters, digits, '.', '_' or '-'"
            )
        return self._base_dir / experience_id

    def _meta_path(self, experience_id: str) -> Path:
        return self.experience_dir(experience_id) / META_FILENAME

    def _read_meta(self, experience_id: str) -> ExperienceMetadata | None:
        path = self._meta_path(experience_id)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable experience metadata", path=str(path), err=str(exc))
            return None
        try:
            return ExperienceMetadata.from_dict(raw)
        except (KeyError, TypeError) as exc:
            logger.warning("Malformed experience metadata", path=str(path), err=str(exc))
            return None

    def _write_meta(self, meta: ExperienceMetadata) -> None:
        path = self._meta_path(meta.experience_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(META_FILENAME + ".tmp")
        tmp.write_text(json.dumps(meta.to_dict(), indent=2), encoding="utf-8")
        tmp.replace(path)

    def _require_meta(self, experience_id: str) -> ExperienceMetadata:
        meta = self._read_meta(experience_id)
        if meta is None:
            raise ExperienceNotFoundError(f"Experience {experience_id} does not exist.")
        return meta

    def _check_source(self, source: Path) -> Path:
        if self._sandbox is not None:
            return self._sandbox.ensure_allowed(source)
        return source.resolve()

    # --- Queries ---

    async def exists(self, experience_id: str) -> bool:
        return await asyncio.to_thread(self._meta_path(experience_id).is_file)

    async def load(self, experience_id: str) -> ExperienceMetadata | None:
        return await asyncio.to_thread(self._read_meta, experience_id)

    async def list(self) -> list[ExperienceMetadata]:
        """All experiences in the store, most recently used first."""

        def _scan() -> list[ExperienceMetadata]:
            if not self._base_dir.is_dir():
                return []
            found = []
            for child in self._base_dir.iterdir():
                if child.is_dir() and _ID_RE.match(child.name):
                    meta = self._read_meta(child.name)
                    if meta is not None:
                        found.append(meta)
            return sorted(found, key=lambda m: m.last_used, reverse=True)

        return await asyncio.to_thread(_scan)

    # --- Transitions ---

    async def start(
        self, experience_id: str, source_path: str | Path, agent_id: str | None = None
    ) -> ExperienceMetadata:
        target = self.experience_dir(experience_id)
        source = self._check_source(Path(source_path))

        if is_within(self._base_dir, source) or is_within(source, target):
            raise CopyIntoSelfError(
                f"Cannot copy {source} into experience store {self._base_dir}"
            )
        if await self.exists(experience_id):
            raise ExperienceExistsError(f"Experience {experience_id} already exists.")

        def _start() -> ExperienceMetadata:
            self._base_dir.mkdir(parents=True, exist_ok=True)
            try:
                shutil.copytree(
                    source, target, ignore=_ignore_excluded, symlinks=True, dirs_exist_ok=True
                )
                now = _now_iso()
                meta = ExperienceMetadata(
                    experience_id=experience_id,
                    source_path=str(source),
                    created=now,
                    last_used=now,
                    agent_id=agent_id,
                )
                self._write_meta(meta)
            except BaseException:
                shutil.rmtree(target, ignore_errors=True)
                raise
            return meta

        meta = await asyncio.to_thread(_start)
        logger.info(
            "Experience started",
            experience_id=experience_id,
            source=str(source),
            agent_id=agent_id,
        )
        return meta

    async def resume(self, experience_id: str) -> ExperienceMetadata:
        """Mark an existing experience as used again (the ``continue`` action)."""

        def _resume() -> ExperienceMetadata:
            meta = self._require_meta(experience_id)
            meta.last_used = _now_iso()
            self._write_meta(meta)
            return meta

        meta = await asyncio.to_thread(_resume)
        logger.debug("Experience resumed", experience_id=experience_id)
        return meta

    async def start_or_resume(
        self, experience_id: str, source_path: str | Path, agent_id: str | None = None
    ) -> tuple[ExperienceMetadata, ExperienceStatus]:
        """Implicit lifecycle: start when absent, otherwise resume.

        Check-then-act; callers sharing one id must serialize themselves.
        """
        if await self.exists(experience_id):
            return await self.resume(experience_id), "continued"
        return await self.start(experience_id, source_path, agent_id), "new"

    async def commit(self, experience_id: str) -> ExperienceMetadata:
        """Copy everything except metadata back onto the source, then delete."""
        meta = await asyncio.to_thread(self._require_meta, experience_id)
        source = self._check_source(Path(meta.source_path))
        target = self.experience_dir(experience_id)

        def _commit() -> None:
            def _ignore_meta(directory: str, names: list[str]) -> set[str]:
                if Path(directory) == target:
                    return {META_FILENAME, META_FILENAME + ".tmp"} & set(names)
                return set()

            shutil.copytree(target, source, ignore=_ignore_meta, symlinks=True, dirs_exist_ok=True)
            shutil.rmtree(target)

        await asyncio.to_thread(_commit)
        logger.info("Experience committed", experience_id=experience_id, source=str(source))
        return meta

    async def discard(self, experience_id: str) -> ExperienceMetadata:
        meta = await asyncio.to_thread(self._require_meta, experience_id)
        await asyncio.to_thread(shutil.rmtree, self.experience_dir(experience_id))
        logger.info("Experience discarded", experience_id=experience_id)
        return meta
