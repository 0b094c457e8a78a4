"""The owning process context and its wired component graph.

A :class:`Habitat` holds the work and sessions directories, the registered
agents and their secrets, and one instance of every component. Caches are
per habitat, so two habitats in one process never share state.
"""

from __future__ import annotations

import os
from functools import cached_property
from pathlib import Path

from runbox.bridge.lifecycle import BridgeLifecycle
from runbox.completion import Completer, build_completer
from runbox.config import AgentConfig, Settings, get_settings
from runbox.container_config import ContainerConfigCache, ContainerConfigResolver
from runbox.container_engine import ContainerEngine, DockerEngine
from runbox.errors import AgentNotFoundError
from runbox.executor import CodebaseValidator, SandboxExecutor, SnippetRunner
from runbox.experience import ExperienceManager
from runbox.logger import apply_config_level
from runbox.paths import PathSandbox
from runbox.project_analyzer import ProjectAnalyzer
from runbox.types import CacheVolume


class Habitat:
    def __init__(
        self,
        settings: Settings | None = None,
        engine: ContainerEngine | None = None,
        completer: Completer | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        apply_config_level(self.settings.logging.level)
        self.engine: ContainerEngine = engine or DockerEngine(self.settings.sandbox.volume_prefix)
        self._completer = completer if completer is not None else build_completer(self.settings)

    # --- Identity ---

    @property
    def work_dir(self) -> Path:
        return self.settings.work_dir

    @property
    def sessions_dir(self) -> Path:
        return self.settings.sessions_dir

    @property
    def agents(self) -> dict[str, AgentConfig]:
        return self.settings.agents

    def get_agent(self, agent_id: str) -> tuple[str, AgentConfig]:
        """Look up an agent by id, falling back to its display name."""
        agent = self.agents.get(agent_id)
        if agent is not None:
            return agent_id, agent
        for key, candidate in self.agents.items():
            if candidate.name == agent_id:
                return key, candidate
        raise AgentNotFoundError(f"Agent {agent_id} not found.")

    def get_secret(self, name: str) -> str | None:
        """``[secrets.env]`` first, then the process environment."""
        secret = self.settings.secrets.env.get(name)
        if secret is not None:
            return secret.get_secret_value()
        return os.environ.get(name)

    # --- Path policy ---

    @cached_property
    def allowed_roots(self) -> list[Path]:
        roots = [self.work_dir, self.sessions_dir]
        roots.extend(Path(a.project_path) for a in self.agents.values())
        roots.append(self.experiences.base_dir)
        return roots

    @cached_property
    def sandbox(self) -> PathSandbox:
        return PathSandbox(self.allowed_roots)

    # --- Components ---

    @cached_property
    def analyzer(self) -> ProjectAnalyzer:
        return ProjectAnalyzer()

    @cached_property
    def config_cache(self) -> ContainerConfigCache:
        return ContainerConfigCache(
            self.settings.config_cache_dir, self.settings.cache.max_memory_entries
        )

    @cached_property
    def resolver(self) -> ContainerConfigResolver:
        return ContainerConfigResolver(
            self.config_cache,
            self._completer,
            max_code_chars=self.settings.completion.max_code_chars,
        )

    @cached_property
    def experiences(self) -> ExperienceManager:
        # No sandbox here: allowed_roots depends on this store's location
        return ExperienceManager(self.work_dir, self.settings.experiences_dir)

    @cached_property
    def executor(self) -> SandboxExecutor:
        sandbox_cfg = self.settings.sandbox
        return SandboxExecutor(
            self.engine,
            self.sandbox,
            shell=sandbox_cfg.shell,
            shared_volume=CacheVolume(
                sandbox_cfg.shared_cache_volume, sandbox_cfg.shared_mount_path
            ),
        )

    @cached_property
    def snippets(self) -> SnippetRunner:
        return SnippetRunner(self.executor, self.resolver, self.sessions_dir / "snippets")

    @cached_property
    def validator(self) -> CodebaseValidator:
        return CodebaseValidator(self.engine, self.sandbox)

    @cached_property
    def bridges(self) -> BridgeLifecycle:
        return BridgeLifecycle(
            self.engine,
            self.settings.bridge,
            self.sandbox,
            workspace=self.settings.sandbox.container_workdir,
        )

