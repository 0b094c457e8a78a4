"""In-container bridge server: JSON-RPC 2.0 over HTTP POST.

Started inside a long-lived container by :mod:`runbox.bridge.lifecycle`::

    python -m runbox.bridge.server --port 8080 --workspace /workspace

Only paths under the workspace and ``/opt`` are reachable. The server keeps
no state between requests apart from a bounded in-memory log buffer.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import os
import signal
import time
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from aiohttp import web

from runbox.bridge.protocol import (
    GIT_TIMEOUTS,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    JSONRPC_VERSION,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    RPC_PATH,
    make_error,
    make_response,
    text_result,
)
from runbox.errors import OutsideAllowedPathError
from runbox.logger import logger
from runbox.paths import PathSandbox

MAX_LOG_BUFFER = 1000
DEFAULT_EXEC_TIMEOUT_MS = 60_000
DEFAULT_LOG_LINES = 100

Handler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


class RpcError(Exception):
    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class BridgeServer:
    """Method table and handlers; transport lives in :func:`create_app`."""

    def __init__(self, workspace: str | Path = "/workspace", extra_roots: tuple[str, ...] = ("/opt",)):
        self.workspace = Path(workspace).resolve()
        self._sandbox = PathSandbox([self.workspace, *extra_roots])
        self._logs: deque[dict[str, str]] = deque(maxlen=MAX_LOG_BUFFER)
        self._started = time.monotonic()
        self.handlers: dict[str, Handler] = {
            "fs/read": self.fs_read,
            "fs/write": self.fs_write,
            "fs/list": self.fs_list,
            "fs/exists": self.fs_exists,
            "fs/stat": self.fs_stat,
            "exec/run": self.exec_run,
            "git/clone": self.git_clone,
            "git/status": self.git_status,
            "git/commit": self.git_commit,
            "git/push": self.git_push,
            "bridge/health": self.health,
            "bridge/logs": self.logs,
        }

    def log(self, level: str, message: str) -> None:
        self._logs.append({"timestamp": _now_iso(), "level": level, "message": message})
        getattr(logger, level, logger.info)(message, component="bridge")

    # --- Param helpers ---

    def _path(self, params: dict[str, Any], key: str = "path", default: str | None = None) -> Path:
        raw = params.get(key, default)
        if not isinstance(raw, str) or not raw:
            raise RpcError(INVALID_PARAMS, f"'{key}' must be a non-empty string")
        candidate = Path(raw) if os.path.isabs(raw) else self.workspace / raw
        try:
            return self._sandbox.ensure_allowed(candidate)
        except OutsideAllowedPathError:
            raise RpcError(
                INVALID_PARAMS, "Access denied: path outside allowed directories"
            ) from None

    # --- fs/* ---

    async def fs_read(self, params: dict[str, Any]) -> dict[str, Any]:
        path = self._path(params)
        raw = await asyncio.to_thread(path.read_bytes)
        try:
            content = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise RpcError(INVALID_PARAMS, f"Not a text file: {path}") from None
        return text_result(content, metadata={"path": str(path), "size": len(content)})

    async def fs_write(self, params: dict[str, Any]) -> dict[str, Any]:
        path = self._path(params)
        content = params.get("content")
        if not isinstance(content, str):
            raise RpcError(INVALID_PARAMS, "'content' must be a string")

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")

        await asyncio.to_thread(_write)
        return text_result(
            f"Successfully wrote {len(content)} bytes to {path}",
            metadata={"path": str(path), "bytes": len(content)},
        )

    async def fs_list(self, params: dict[str, Any]) -> dict[str, Any]:
        path = self._path(params, default=str(self.workspace))

        def _list() -> list[dict[str, str]]:
            return [
                {"name": entry.name, "type": "directory" if entry.is_dir() else "file"}
                for entry in sorted(path.iterdir(), key=lambda e: e.name)
            ]

        entries = await asyncio.to_thread(_list)
        listing = "\n".join(
            f"{'[D]' if e['type'] == 'directory' else '[F]'} {e['name']}" for e in entries
        )
        return text_result(listing, metadata={"path": str(path), "entries": entries})

    async def fs_exists(self, params: dict[str, Any]) -> dict[str, Any]:
        path = self._path(params)
        exists = await asyncio.to_thread(path.exists)
        text = f"Path exists: {path}" if exists else f"Path does not exist: {path}"
        return text_result(text, metadata={"exists": exists, "path": str(path)})

    async def fs_stat(self, params: dict[str, Any]) -> dict[str, Any]:
        path = self._path(params)
        st = await asyncio.to_thread(path.stat)
        is_dir = path.is_dir()
        created = getattr(st, "st_birthtime", st.st_ctime)
        return text_result(
            f"{path}: {st.st_size} bytes, {'directory' if is_dir else 'file'}",
            metadata={
                "path": str(path),
                "size": st.st_size,
                "isDirectory": is_dir,
                "isFile": path.is_file(),
                "modified": datetime.fromtimestamp(st.st_mtime, UTC).isoformat(),
                "created": datetime.fromtimestamp(created, UTC).isoformat(),
            },
        )

    # --- exec/run ---

    async def exec_run(self, params: dict[str, Any]) -> dict[str, Any]:
        command = params.get("command")
        if not isinstance(command, str) or not command:
            raise RpcError(INVALID_PARAMS, "'command' must be a non-empty string")
        timeout_ms = params.get("timeout") or DEFAULT_EXEC_TIMEOUT_MS
        if not isinstance(timeout_ms, int | float) or timeout_ms <= 0:
            raise RpcError(INVALID_PARAMS, "'timeout' must be a positive number of milliseconds")
        cwd = self._path(params, key="cwd", default=str(self.workspace))

        self.log("info", f"Executing: {command} in {cwd}")
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        timed_out = False
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout_ms / 1000)
        except TimeoutError:
            # Kill the whole group so grandchildren release the pipes
            with contextlib.suppress(ProcessLookupError):
                os.killpg(proc.pid, signal.SIGKILL)
            out, err = await proc.communicate()
            timed_out = True
        stdout = out.decode(errors="replace")
        stderr = err.decode(errors="replace")
        exit_code = 124 if timed_out else (proc.returncode or 0)
        if timed_out:
            stderr = (stderr + f"\nCommand timed out after {timeout_ms}ms").lstrip()

        texts = [stdout or "(no stdout)"]
        if stderr:
            texts.append(f"STDERR:\n{stderr}")
        return text_result(
            *texts,
            metadata={"exitCode": exit_code, "timedOut": timed_out, "cwd": str(cwd)},
        )

    # --- git/* ---

    @staticmethod
    def _git_env() -> dict[str, str]:
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
        # Fallback author email when the repo has no user.email
        env.setdefault("EMAIL", "runbox@localhost")
        return env

    async def _git(self, subcommand: str, *args: str, cwd: Path) -> tuple[str, str]:
        """Run ``git <subcommand> <args>``; non-zero exit or timeout is an RPC error."""
        argv = ["git"]
        if os.environ.get("GITHUB_TOKEN"):
            argv += [
                "-c",
                "credential.helper=!f() { echo username=x-access-token; "
                'echo "password=$GITHUB_TOKEN"; }; f',
            ]
        argv += [subcommand, *args]
        timeout = GIT_TIMEOUTS.get(subcommand, 30)
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            env=self._git_env(),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                os.killpg(proc.pid, signal.SIGKILL)
            await proc.communicate()
            raise RpcError(INTERNAL_ERROR, f"git {subcommand} timed out after {timeout}s") from None
        stdout = out.decode(errors="replace")
        stderr = err.decode(errors="replace")
        if proc.returncode != 0:
            self.log("warning", f"git {subcommand} exited {proc.returncode}: {stderr.strip()}")
            raise RpcError(
                INTERNAL_ERROR, f"git {subcommand} failed ({proc.returncode}): {stderr.strip()}"
            )
        return stdout, stderr

    async def git_clone(self, params: dict[str, Any]) -> dict[str, Any]:
        url = params.get("url")
        if not isinstance(url, str) or not url.strip():
            raise RpcError(INVALID_PARAMS, "'url' must be a non-empty string")
        target = self._path(params, default=str(self.workspace))
        branch = params.get("branch")
        if branch is not None and (not isinstance(branch, str) or not branch):
            raise RpcError(INVALID_PARAMS, "'branch' must be a non-empty string")

        args = ["--depth", "1"]
        if branch:
            args += ["--branch", branch]
        self.log("info", f"Cloning {url} to {target}")
        stdout, stderr = await self._git("clone", *args, "--", url, str(target), cwd=self.workspace)
        return text_result(
            f"Successfully cloned {url} to {target}",
            metadata={"path": str(target), "stdout": stdout, "stderr": stderr},
        )

    async def git_status(self, params: dict[str, Any]) -> dict[str, Any]:
        repo = self._path(params, default=str(self.workspace))
        stdout, _ = await self._git("status", "--porcelain", cwd=repo)
        files = [
            {"status": line[:2].strip(), "path": line[3:]}
            for line in stdout.splitlines()
            if line.strip()
        ]
        return text_result(
            f"Git status for {repo}",
            metadata={"path": str(repo), "files": files, "clean": not files},
        )

    async def git_commit(self, params: dict[str, Any]) -> dict[str, Any]:
        message = params.get("message")
        if not isinstance(message, str) or not message.strip():
            raise RpcError(INVALID_PARAMS, "'message' must be a non-empty string")
        repo = self._path(params, default=str(self.workspace))
        if params.get("all", True):
            await self._git("add", "-A", cwd=repo)
        stdout, stderr = await self._git("commit", "-m", message, cwd=repo)
        self.log("info", f"Committed in {repo}: {message}")
        return text_result(
            f"Committed changes: {message}",
            metadata={"path": str(repo), "stdout": stdout, "stderr": stderr},
        )

    async def git_push(self, params: dict[str, Any]) -> dict[str, Any]:
        repo = self._path(params, default=str(self.workspace))
        remote = params.get("remote")
        branch = params.get("branch")
        for key, value in (("remote", remote), ("branch", branch)):
            if value is not None and (not isinstance(value, str) or not value):
                raise RpcError(INVALID_PARAMS, f"'{key}' must be a non-empty string")

        args: list[str] = []
        if remote or branch:
            args.append(remote or "origin")
        if branch:
            args.append(branch)
        stdout, stderr = await self._git("push", *args, cwd=repo)
        self.log("info", f"Pushed {repo}")
        return text_result(
            "Pushed changes to remote",
            metadata={"path": str(repo), "stdout": stdout, "stderr": stderr},
        )

    # --- bridge/* ---

    async def health(self, params: dict[str, Any]) -> dict[str, Any]:
        return text_result(
            "Bridge is healthy",
            metadata={
                "status": "healthy",
                "timestamp": _now_iso(),
                "uptime": round(time.monotonic() - self._started, 3),
                "workspace": str(self.workspace),
            },
        )

    async def logs(self, params: dict[str, Any]) -> dict[str, Any]:
        lines = params.get("lines") or DEFAULT_LOG_LINES
        if not isinstance(lines, int) or lines <= 0:
            raise RpcError(INVALID_PARAMS, "'lines' must be a positive integer")
        recent = list(self._logs)[-lines:]
        text = "\n".join(f"[{e['timestamp']}] {e['level']}: {e['message']}" for e in recent)
        return text_result(text, metadata={"logs": recent, "total": len(self._logs)})

    # --- Dispatch ---

    async def dispatch(self, payload: Any) -> dict[str, Any]:
        """Turn one decoded request body into one response object."""
        if not isinstance(payload, dict):
            return make_error(None, INVALID_REQUEST, "Request must be a JSON object")
        request_id = payload.get("id")
        method = payload.get("method")
        if payload.get("jsonrpc") != JSONRPC_VERSION or not isinstance(method, str):
            return make_error(request_id, INVALID_REQUEST, "Invalid JSON-RPC 2.0 request")
        params = payload.get("params", {})
        if params is None:
            params = {}
        if not isinstance(params, dict):
            return make_error(request_id, INVALID_PARAMS, "params must be an object")

        handler = self.handlers.get(method)
        if handler is None:
            return make_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")

        try:
            return make_response(request_id, await handler(params))
        except RpcError as exc:
            return make_error(request_id, exc.code, exc.message)
        except OSError as exc:
            self.log("warning", f"{method} failed: {exc}")
            return make_error(request_id, INTERNAL_ERROR, str(exc))
        except Exception as exc:
            self.log("error", f"{method} crashed: {exc!r}")
            return make_error(request_id, INTERNAL_ERROR, f"Internal error: {exc}")


BRIDGE_KEY = web.AppKey("bridge", BridgeServer)


async def _handle_rpc(request: web.Request) -> web.Response:
    bridge = request.app[BRIDGE_KEY]
    try:
        payload = json.loads(await request.text())
    except json.JSONDecodeError as exc:
        return web.json_response(make_error(None, PARSE_ERROR, f"Parse error: {exc}"))
    return web.json_response(await bridge.dispatch(payload))


def create_app(bridge: BridgeServer | None = None) -> web.Application:
    app = web.Application()
    app[BRIDGE_KEY] = bridge or BridgeServer()
    app.router.add_post(RPC_PATH, _handle_rpc)
    return app


async def start_bridge_server(
    bridge: BridgeServer, host: str = "0.0.0.0", port: int = 8080
) -> web.AppRunner:
    """Create, start, and return the server runner."""
    runner = web.AppRunner(create_app(bridge))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    bridge.log("info", f"Bridge server listening on {host}:{port}")
    return runner


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="runbox in-container bridge server")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--workspace", default="/workspace")
    args = parser.parse_args(argv)

    bridge = BridgeServer(args.workspace)
    bridge.log("info", f"Bridge server starting on {args.host}:{args.port}")
    web.run_app(create_app(bridge), host=args.host, port=args.port, print=None)


if __name__ == "__main__":
    main()
