"""Resolve a language (or analyzed project) into a cacheable ContainerConfig.

Order: persistent cache, static language table, generative fallback, generic
last resort. Resolution never raises.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass

from runbox.completion import Completer
from runbox.container_config._cache import ContainerConfigCache
from runbox.container_config._languages import (
    detect_packages,
    generic_config,
    get_extension,
    get_static_config,
    package_install_command,
)
from runbox.container_config._prompts import render_config_prompt
from runbox.logger import logger
from runbox.skills import skill_setup_commands
from runbox.types import ContainerConfig, ProjectRequirements

_FENCED_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_OBJECT_RE = re.compile(r"(\{[\s\S]*\})")


@dataclass(frozen=True)
class ResolvedConfig:
    config: ContainerConfig
    cached: bool


def parse_config_response(response: str) -> ContainerConfig:
    """Extract and strictly validate a config from a completion reply.

    Accepts fenced or bare JSON. Raises ValueError on anything malformed;
    missing fields are never filled in from defaults.
    """
    match = _FENCED_RE.search(response) or _OBJECT_RE.search(response)
    if match is None:
        raise ValueError("no JSON object found in completion response")
    try:
        parsed = json.loads(match.group(1).strip())
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid JSON in completion response: {exc}") from exc
    return ContainerConfig.from_dict(parsed)


def fallback_config(language: str, packages: list[str]) -> ContainerConfig:
    """Static table plus a package install step, or the generic config."""
    static = get_static_config(language)
    if static is None:
        return generic_config(language)
    install = package_install_command(language, packages)
    if install is None:
        return static
    return ContainerConfig(
        base_image=static.base_image,
        setup_commands=(*static.setup_commands, install),
        run_command=static.run_command,
        cache_volumes=static.cache_volumes,
        workdir=static.workdir,
        environment=static.environment,
    )


def requirements_cache_identity(requirements: ProjectRequirements) -> tuple[str, list[str]]:
    """Map a project's requirements onto the ``(language, packages)`` cache key space."""
    packages = [*requirements.apt_packages]
    packages += [f"npm:{p}" for p in requirements.npm_global_packages]
    packages += [f"skill:{r.name}@{r.git_repo}" for r in requirements.skill_repos]
    packages.append(f"image:{requirements.base_image}")
    return f"project:{requirements.project_type}", packages


class ContainerConfigResolver:
    def __init__(
        self,
        cache: ContainerConfigCache,
        completer: Completer | None = None,
        *,
        max_code_chars: int = 2000,
    ) -> None:
        self._cache = cache
        self._completer = completer
        self._max_code_chars = max_code_chars

    @property
    def cache(self) -> ContainerConfigCache:
        return self._cache

    async def _lookup(self, language: str, packages: list[str]) -> ContainerConfig | None:
        return await asyncio.to_thread(self._cache.get, language, packages)

    async def _store(self, language: str, packages: list[str], config: ContainerConfig) -> None:
        await asyncio.to_thread(self._cache.set, language, packages, config)

    async def resolve(
        self, language: str, code: str = "", force_refresh: bool = False
    ) -> ResolvedConfig:
        language = language.strip().lower()
        packages = detect_packages(code, language)

        if not force_refresh:
            hit = await self._lookup(language, packages)
            if hit is not None:
                logger.debug("Container config cache hit", language=language, packages=packages)
                return ResolvedConfig(hit, cached=True)

            static = get_static_config(language) if not packages else None
            if static is not None:
                await self._store(language, packages, static)
                return ResolvedConfig(static, cached=False)

        generated = await self._generate(language, code, packages)
        if generated is None:
            # Degraded results stay uncached so a later call retries generation
            return ResolvedConfig(fallback_config(language, packages), cached=False)

        await self._store(language, packages, generated)
        return ResolvedConfig(generated, cached=False)

    async def _generate(
        self, language: str, code: str, packages: list[str]
    ) -> ContainerConfig | None:
        if self._completer is None:
            logger.debug("No completion endpoint configured; using fallback", language=language)
            return None

        prompt = render_config_prompt(
            language, code[: self._max_code_chars], packages, get_extension(language)
        )
        try:
            reply = await self._completer(prompt)
        except Exception as exc:
            logger.warning("Container config generation failed", language=language, err=str(exc))
            return None

        try:
            config = parse_config_response(reply)
        except ValueError as exc:
            logger.warning("Rejected generated container config", language=language, err=str(exc))
            return None
        logger.info("Generated container config", language=language, image=config.base_image)
        return config

    async def resolve_requirements(
        self,
        requirements: ProjectRequirements,
        *,
        workdir: str = "/workspace",
        shell: str = "bash",
        force_refresh: bool = False,
    ) -> ResolvedConfig:
        """Build plan for a whole analyzed project (no generative step needed)."""
        language, packages = requirements_cache_identity(requirements)
        if not force_refresh:
            hit = await self._lookup(language, packages)
            if hit is not None and hit.workdir == workdir:
                return ResolvedConfig(hit, cached=True)

        config = ContainerConfig(
            base_image=requirements.base_image,
            setup_commands=(
                *requirements.setup_commands,
                *skill_setup_commands(requirements.skill_repos),
            ),
            run_command=(shell,),
            cache_volumes=requirements.cache_volumes,
            workdir=workdir,
        )
        await self._store(language, packages, config)
        return ResolvedConfig(config, cached=False)
