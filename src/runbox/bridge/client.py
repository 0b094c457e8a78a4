"""Host-side client for the in-container bridge server."""

from __future__ import annotations

import asyncio
import itertools
from typing import Any

import aiohttp

from runbox.bridge.protocol import GIT_TIMEOUTS, RPC_PATH, first_text, make_request
from runbox.logger import logger


class BridgeError(RuntimeError):
    """Transport-level failure talking to the bridge."""


class BridgeRpcError(BridgeError):
    """The server answered with a JSON-RPC error object."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.rpc_message = message


class BridgeTimeoutError(BridgeError):
    """The host-side call deadline expired (not an in-container exit 124)."""


class BridgeClient:
    """One POST per call; ids increase monotonically per client.

    Usable as an async context manager, which connects on entry and closes
    the HTTP session on exit.
    """

    def __init__(
        self,
        host: str,
        port: int,
        timeout: float = 30.0,
        client_id: str | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.client_id = client_id
        self._ids = itertools.count(1)
        self._session: aiohttp.ClientSession | None = None
        self._connected = False

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}{RPC_PATH}"

    @property
    def connected(self) -> bool:
        return self._connected

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def call(
        self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None
    ) -> dict[str, Any]:
        """Invoke *method* and return its result envelope."""
        request_id = next(self._ids)
        payload = make_request(request_id, method, params or {})
        deadline = aiohttp.ClientTimeout(total=timeout if timeout is not None else self.timeout)
        logger.debug("Bridge call", bridge=self.client_id, method=method, request_id=request_id)
        try:
            async with self._get_session().post(self.url, json=payload, timeout=deadline) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise BridgeError(f"HTTP {resp.status} from bridge: {body[:200]}")
                data = await resp.json(content_type=None)
        except TimeoutError as exc:
            raise BridgeTimeoutError(
                f"{method} timed out after {deadline.total}s (request {request_id})"
            ) from exc
        except aiohttp.ClientError as exc:
            raise BridgeError(f"{method} failed: {exc}") from exc

        if not isinstance(data, dict):
            raise BridgeError(f"{method}: malformed response")
        error = data.get("error")
        if error is not None:
            if not isinstance(error, dict):
                raise BridgeError(f"{method}: malformed error object: {error!r:.200}")
            raise BridgeRpcError(int(error.get("code", 0)), str(error.get("message", "")))
        result = data.get("result")
        if not isinstance(result, dict):
            raise BridgeError(f"{method}: response has no result envelope")
        return result

    # --- Lifecycle ---

    async def connect(self) -> None:
        """Verify reachability with a health check; no-op once connected."""
        if self._connected:
            return
        await self.health()
        self._connected = True
        logger.info("Bridge connected", bridge=self.client_id, url=self.url)

    async def disconnect(self) -> None:
        self._connected = False
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> BridgeClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    # --- Typed wrappers ---

    async def read_file(self, path: str) -> str:
        text = first_text(await self.call("fs/read", {"path": path}))
        if text is None:
            raise BridgeError("fs/read returned no text content")
        return text

    async def write_file(self, path: str, content: str) -> None:
        await self.call("fs/write", {"path": path, "content": content})

    async def list_directory(self, path: str = "/workspace") -> list[dict[str, str]]:
        result = await self.call("fs/list", {"path": path})
        return list((result.get("metadata") or {}).get("entries") or [])

    async def file_exists(self, path: str) -> bool:
        result = await self.call("fs/exists", {"path": path})
        return bool((result.get("metadata") or {}).get("exists"))

    async def stat(self, path: str) -> dict[str, Any]:
        result = await self.call("fs/stat", {"path": path})
        return dict(result.get("metadata") or {})

    async def execute(
        self, command: str, *, timeout_ms: int = 60_000, cwd: str | None = None
    ) -> dict[str, Any]:
        """Run a shell command; returns ``stdout``, ``stderr``, ``exitCode``, ``timedOut``.

        The HTTP deadline is stretched past *timeout_ms* so the in-container
        timeout reports first.
        """
        params: dict[str, Any] = {"command": command, "timeout": timeout_ms}
        if cwd:
            params["cwd"] = cwd
        result = await self.call(
            "exec/run", params, timeout=max(self.timeout, timeout_ms / 1000 + 5)
        )
        stdout, stderr = "", ""
        for item in result.get("content") or []:
            text = item.get("text", "")
            if text.startswith("STDERR:\n"):
                stderr = text[len("STDERR:\n") :]
            elif text != "(no stdout)":
                stdout = text
        meta = result.get("metadata") or {}
        return {
            "stdout": stdout,
            "stderr": stderr,
            "exitCode": int(meta.get("exitCode", 0)),
            "timedOut": bool(meta.get("timedOut", False)),
        }

    # --- git ---

    async def git_clone(
        self, url: str, path: str | None = None, *, branch: str | None = None
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"url": url}
        if path:
            params["path"] = path
        if branch:
            params["branch"] = branch
        result = await self.call(
            "git/clone", params, timeout=max(self.timeout, GIT_TIMEOUTS["clone"] + 5)
        )
        return dict(result.get("metadata") or {})

    async def git_status(self, path: str | None = None) -> list[dict[str, str]]:
        result = await self.call("git/status", {"path": path} if path else {})
        return list((result.get("metadata") or {}).get("files") or [])

    async def git_commit(
        self, message: str, path: str | None = None, *, stage_all: bool = True
    ) -> dict[str, Any]:
        """Commit in *path*; stages every change first unless *stage_all* is false."""
        params: dict[str, Any] = {"message": message, "all": stage_all}
        if path:
            params["path"] = path
        result = await self.call(
            "git/commit", params, timeout=max(self.timeout, GIT_TIMEOUTS["commit"] + 5)
        )
        return dict(result.get("metadata") or {})

    async def git_push(
        self, path: str | None = None, *, remote: str | None = None, branch: str | None = None
    ) -> dict[str, Any]:
        params = {k: v for k, v in (("path", path), ("remote", remote), ("branch", branch)) if v}
        result = await self.call(
            "git/push", params, timeout=max(self.timeout, GIT_TIMEOUTS["push"] + 5)
        )
        return dict(result.get("metadata") or {})

    async def health(self) -> dict[str, Any]:
        result = await self.call("bridge/health")
        return dict(result.get("metadata") or {})

    async def get_logs(self, lines: int = 100) -> list[str]:
        result = await self.call("bridge/logs", {"lines": lines})
        logs = (result.get("metadata") or {}).get("logs") or []
        return [f"[{e['timestamp']}] {e['level']}: {e['message']}" for e in logs]


async def wait_until_connected(
    client: BridgeClient, timeout: float, poll_interval: float = 0.5
) -> None:
    """Retry :meth:`BridgeClient.connect` until it succeeds or *timeout* passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    last_error: Exception | None = None
    while loop.time() < deadline:
        try:
            await client.connect()
            return
        except BridgeError as exc:
            last_error = exc
            await asyncio.sleep(poll_interval)
    raise BridgeTimeoutError(f"Bridge not reachable after {timeout}s: {last_error}")
