"""Long-lived bridge containers: start minimal, analyze, reprovision, execute.

The runbox source tree is bind-mounted read-only into the container and the
bridge server is launched from it, so nothing needs publishing to an index.
"""

from __future__ import annotations

import asyncio
import itertools
import shlex
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import runbox
from runbox.bridge.client import BridgeClient, BridgeRpcError, wait_until_connected
from runbox.container_engine import BindMount, ContainerEngine, ContainerSpec
from runbox.logger import logger
from runbox.paths import PathSandbox
from runbox.project_analyzer import (
    DOC_FILES,
    DOTENV_FILES,
    PROJECT_TYPE_MARKERS,
    ROOT_SCRIPTS,
    SHELL_MARKERS,
    analyze_directory,
)
from runbox.skills import normalize_git_url
from runbox.types import ProjectRequirements

if TYPE_CHECKING:
    from runbox.config import BridgeConfig

SOURCE_MOUNT = "/opt/runbox-src"
SERVER_DEPS = ("aiohttp", "structlog")
GIT_INSTALL = (
    "command -v git >/dev/null 2>&1 || apk add --no-cache git "
    "|| (apt-get update -qq && apt-get install -y -qq git)"
)


@dataclass
class BridgeInstance:
    bridge_id: str
    container: str
    port: int
    image: str
    client: BridgeClient
    created_at: float = field(default_factory=time.time)
    requirements: ProjectRequirements | None = None


def _mirrored_names() -> set[str]:
    names = {m for _, markers in PROJECT_TYPE_MARKERS for m in markers}
    names.update(SHELL_MARKERS, ROOT_SCRIPTS, DOC_FILES, DOTENV_FILES)
    return names


class BridgeLifecycle:
    """Create, track and destroy bridge containers.

    Host ports are handed out sequentially from ``first_host_port``.
    """

    def __init__(
        self,
        engine: ContainerEngine,
        config: BridgeConfig,
        sandbox: PathSandbox,
        *,
        workspace: str = "/workspace",
        source_root: Path | None = None,
    ) -> None:
        self._engine = engine
        self._config = config
        self._sandbox = sandbox
        self._workspace = workspace
        # src/ directory holding the runbox package
        self._source_root = source_root or Path(runbox.__file__).resolve().parent.parent
        self._ports = itertools.count(config.first_host_port)
        self._bridges: dict[str, BridgeInstance] = {}

    def get(self, bridge_id: str) -> BridgeInstance | None:
        return self._bridges.get(bridge_id)

    def list(self) -> list[BridgeInstance]:
        return list(self._bridges.values())

    async def create_bridge(
        self,
        bridge_id: str,
        *,
        image: str | None = None,
        seed_dir: Path | None = None,
        git_repo: str | None = None,
        env: dict[str, str] | None = None,
    ) -> BridgeInstance:
        """Start a container running the bridge server and wait until it answers.

        The workspace is seeded from *seed_dir* (which must pass the path policy)
        or by cloning *git_repo* through the bridge once it is up, not both.
        """
        if seed_dir is not None and git_repo is not None:
            raise ValueError("seed_dir and git_repo are mutually exclusive")
        if seed_dir is not None:
            seed_dir = self._sandbox.ensure_allowed(seed_dir)

        if bridge_id in self._bridges:
            await self.destroy(bridge_id)

        image = image or self._config.image
        port = next(self._ports)
        container = f"runbox-bridge-{bridge_id}"
        spec = ContainerSpec(
            name=container,
            image=image,
            workdir=self._workspace,
            binds=(BindMount(str(self._source_root), SOURCE_MOUNT, readonly=True),),
            ports=((port, self._config.container_port),),
        )
        logger.info("Creating bridge", bridge=bridge_id, image=image, port=port)
        await self._engine.start(spec)
        client: BridgeClient | None = None
        try:
            if seed_dir is not None:
                await self._engine.copy_in(container, seed_dir, self._workspace)

            install = await self._engine.exec(
                container,
                ["sh", "-c", f"pip install -q {' '.join(SERVER_DEPS)}"],
                deadline=300,
            )
            if install.exit_code != 0:
                logger.warning("Bridge dependency install failed", stderr=install.stderr[-500:])
            if git_repo is not None:
                await self._engine.exec(container, ["sh", "-c", GIT_INSTALL], deadline=300)

            server_env = {
                **(env or {}),
                "PYTHONPATH": SOURCE_MOUNT,
                "LOG_FORMAT": "json",
            }
            await self._engine.exec(
                container,
                [
                    "python",
                    "-m",
                    "runbox.bridge.server",
                    "--port",
                    str(self._config.container_port),
                    "--workspace",
                    self._workspace,
                ],
                env=server_env,
                detach=True,
            )

            client = BridgeClient(
                self._config.host,
                port,
                timeout=self._config.request_timeout_seconds,
                client_id=bridge_id,
            )
            await wait_until_connected(client, self._config.startup_timeout_seconds)
            if git_repo is not None:
                await client.git_clone(normalize_git_url(git_repo), self._workspace)
        except BaseException:
            if client is not None:
                await client.disconnect()
            await self._engine.remove(container)
            raise

        instance = BridgeInstance(
            bridge_id=bridge_id, container=container, port=port, image=image, client=client
        )
        self._bridges[bridge_id] = instance
        logger.info("Bridge ready", bridge=bridge_id, port=port, total=len(self._bridges))
        return instance

    async def analyze(self, bridge_id: str) -> ProjectRequirements:
        """Mirror marker files out through the bridge and run static analysis on them."""
        instance = self._require(bridge_id)
        client = instance.client
        wanted = _mirrored_names()

        with tempfile.TemporaryDirectory(prefix="runbox-mirror-") as tmp:
            mirror = Path(tmp)
            for entry in await client.list_directory(self._workspace):
                name = entry.get("name", "")
                if entry.get("type") == "file" and (name in wanted or name.endswith(".sh")):
                    await self._mirror_file(client, f"{self._workspace}/{name}", mirror / name)
                elif entry.get("type") == "directory" and name == "bin":
                    (mirror / "bin").mkdir(exist_ok=True)
                    for sub in await client.list_directory(f"{self._workspace}/bin"):
                        if sub.get("type") == "file":
                            await self._mirror_file(
                                client, f"{self._workspace}/bin/{sub['name']}", mirror / "bin" / sub["name"]
                            )
            requirements = await asyncio.to_thread(analyze_directory, mirror)

        instance.requirements = requirements
        logger.info(
            "Bridge analyzed",
            bridge=bridge_id,
            project_type=requirements.project_type,
            tools=list(requirements.detected_tools),
        )
        return requirements

    @staticmethod
    async def _mirror_file(client: BridgeClient, remote: str, local: Path) -> None:
        try:
            content = await client.read_file(remote)
        except BridgeRpcError as exc:
            logger.warning("Skipping unreadable file", path=remote, err=exc.rpc_message)
            return
        await asyncio.to_thread(local.write_text, content, encoding="utf-8")

    async def reprovision(
        self,
        bridge_id: str,
        requirements: ProjectRequirements | None = None,
        *,
        timeout_ms: int = 600_000,
    ) -> list[dict[str, Any]]:
        """Run setup commands inside the running bridge; failures are logged, not raised."""
        instance = self._require(bridge_id)
        requirements = requirements or instance.requirements
        if requirements is None:
            requirements = await self.analyze(bridge_id)

        results = []
        for cmd in requirements.setup_commands:
            res = await instance.client.execute(cmd, timeout_ms=timeout_ms, cwd=self._workspace)
            if res["exitCode"] != 0:
                logger.warning(
                    "Reprovision step failed",
                    bridge=bridge_id,
                    command=shlex.quote(cmd)[:200],
                    exit_code=res["exitCode"],
                )
            results.append({"command": cmd, **res})
        return results

    async def destroy(self, bridge_id: str) -> None:
        instance = self._bridges.pop(bridge_id, None)
        if instance is None:
            return
        await instance.client.disconnect()
        await self._engine.remove(instance.container)
        logger.info("Bridge destroyed", bridge=bridge_id, remaining=len(self._bridges))

    async def destroy_all(self) -> None:
        for bridge_id in list(self._bridges):
            await self.destroy(bridge_id)

    def _require(self, bridge_id: str) -> BridgeInstance:
        instance = self._bridges.get(bridge_id)
        if instance is None:
            raise KeyError(f"No bridge named {bridge_id!r}")
        return instance
