"""Text-completion collaborator for the generative container-config path.

Anything matching :data:`Completer` works; :class:`ChatCompletionClient` talks
to an OpenAI-compatible ``/chat/completions`` endpoint.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import aiohttp

from runbox.logger import logger

if TYPE_CHECKING:
    from runbox.config import Settings

Completer = Callable[[str], Awaitable[str]]


class CompletionError(RuntimeError):
    """The completion endpoint failed or returned an unusable reply."""


class ChatCompletionClient:
    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str | None = None,
        timeout_seconds: float = 60.0,
    ) -> None:
        self._url = base_url.rstrip("/") + "/chat/completions"
        self._model = model
        self._api_key = api_key
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def __call__(self, prompt: str) -> str:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        payload: dict[str, Any] = {
            "model": self._model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 0,
        }
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(self._url, json=payload, headers=headers) as resp:
                    if resp.status != 200:
                        body = await resp.text()
                        raise CompletionError(f"HTTP {resp.status}: {body[:500]}")
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise CompletionError(f"completion request failed: {exc}") from exc

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise CompletionError("completion reply has no message content") from exc
        if not isinstance(content, str):
            raise CompletionError("completion reply content is not text")
        return content


def build_completer(settings: Settings) -> Completer | None:
    """Completion client from settings, or None when no endpoint is configured."""
    cfg = settings.completion
    if not cfg.base_url:
        return None
    key = settings.secrets.completion_api_key
    logger.debug("Completion endpoint configured", base_url=cfg.base_url, model=cfg.model)
    return ChatCompletionClient(
        base_url=cfg.base_url,
        model=cfg.model,
        api_key=key.get_secret_value() if key else None,
        timeout_seconds=cfg.timeout_seconds,
    )
