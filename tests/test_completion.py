"""Tests for the OpenAI-compatible completion client."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from conftest import make_settings
from pydantic import SecretStr

from runbox.completion import ChatCompletionClient, CompletionError, build_completer
from runbox.config import CompletionConfig, SecretsConfig


async def _serve(handler) -> TestServer:
    app = web.Application()
    app.router.add_post("/v1/chat/completions", handler)
    server = TestServer(app)
    await server.start_server()
    return server


@pytest.mark.asyncio
async def test_posts_prompt_and_returns_content():
    seen: dict[str, Any] = {}

    async def handler(request: web.Request) -> web.Response:
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = await request.json()
        return web.json_response({"choices": [{"message": {"content": '{"ok": true}'}}]})

    server = await _serve(handler)
    try:
        client = ChatCompletionClient(str(server.make_url("/v1")), "test-model", api_key="sk-1")
        reply = await client("describe a container")
    finally:
        await server.close()

    assert reply == '{"ok": true}'
    assert seen["auth"] == "Bearer sk-1"
    assert seen["body"]["model"] == "test-model"
    assert seen["body"]["temperature"] == 0
    assert seen["body"]["messages"] == [{"role": "user", "content": "describe a container"}]


@pytest.mark.asyncio
async def test_http_error_raises():
    async def handler(request: web.Request) -> web.Response:
        return web.Response(status=500, text="boom")

    server = await _serve(handler)
    try:
        client = ChatCompletionClient(str(server.make_url("/v1")), "m")
        with pytest.raises(CompletionError, match="HTTP 500"):
            await client("x")
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_reply_without_content_raises():
    async def handler(request: web.Request) -> web.Response:
        return web.json_response({"choices": []})

    server = await _serve(handler)
    try:
        client = ChatCompletionClient(str(server.make_url("/v1")), "m")
        with pytest.raises(CompletionError):
            await client("x")
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_unreachable_endpoint_raises():
    client = ChatCompletionClient("http://127.0.0.1:9", "m", timeout_seconds=2)
    with pytest.raises(CompletionError):
        await client("x")


def test_build_completer_disabled_without_base_url(tmp_path: Path):
    assert build_completer(make_settings(tmp_path)) is None


def test_build_completer_from_settings(tmp_path: Path):
    settings = make_settings(
        tmp_path,
        completion=CompletionConfig(base_url="http://localhost:1234/v1", model="local"),
        secrets=SecretsConfig(completion_api_key=SecretStr("k")),
    )
    assert isinstance(build_completer(settings), ChatCompletionClient)
