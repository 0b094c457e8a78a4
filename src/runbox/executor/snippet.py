"""Run a standalone code snippet with a resolved container config."""

from __future__ import annotations

import asyncio
import shlex
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

from runbox.container_config import ContainerConfigResolver, get_extension
from runbox.types import ContainerConfig, ValidationResult

from ._sandbox import SandboxExecutor


@dataclass
class SnippetResult:
    result: ValidationResult
    config: ContainerConfig
    cached: bool


class SnippetRunner:
    """Write ``code<ext>`` into a scratch dir and execute ``config.run_command``.

    *scratch_root* must sit under one of the executor's allowed roots. Static
    snippet images are mostly alpine, so commands run under ``sh``.
    """

    def __init__(
        self,
        executor: SandboxExecutor,
        resolver: ContainerConfigResolver,
        scratch_root: str | Path,
        *,
        shell: str = "sh",
    ) -> None:
        self._executor = executor
        self._resolver = resolver
        self._scratch_root = Path(scratch_root)
        self._shell = shell

    async def run(
        self,
        code: str,
        language: str,
        timeout_seconds: int = 60,
        force_refresh: bool = False,
    ) -> SnippetResult:
        resolved = await self._resolver.resolve(language, code, force_refresh=force_refresh)
        config = resolved.config

        def _prepare() -> Path:
            self._scratch_root.mkdir(parents=True, exist_ok=True)
            scratch = Path(tempfile.mkdtemp(prefix="snippet-", dir=self._scratch_root))
            (scratch / f"code{get_extension(language.strip().lower())}").write_text(
                code, encoding="utf-8"
            )
            return scratch

        scratch = await asyncio.to_thread(_prepare)
        try:
            result = await self._executor.run(
                shlex.join(config.run_command),
                scratch,
                config,
                timeout_seconds,
                container_workdir=config.workdir,
                shell=self._shell,
            )
        finally:
            await asyncio.to_thread(shutil.rmtree, scratch, True)
        return SnippetResult(result=result, config=config, cached=resolved.cached)
