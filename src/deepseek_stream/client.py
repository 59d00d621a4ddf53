"""Async client for DeepSeek-style /chat/completions streaming."""

from __future__ import annotations

import contextlib
import logging
from typing import Any, AsyncIterator

import httpx

from deepseek_stream.config import ClientConfig
from deepseek_stream.core.cancellation import CancellationToken
from deepseek_stream.core.controller import StreamController

logger = logging.getLogger(__name__)


def system_message(content: str) -> dict[str, Any]:
    return {"role": "system", "content": content}


def user_message(content: str, name: str | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "user", "content": content}
    if name:
        message["name"] = name
    return message


def assistant_message(
    content: str,
    prefix: bool = False,
    reasoning_content: str | None = None,
) -> dict[str, Any]:
    """Assistant turn; ``prefix`` asks the service to continue this text."""
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if prefix:
        message["prefix"] = True
    if reasoning_content is not None:
        message["reasoning_content"] = reasoning_content
    return message


def tool_message(content: str, tool_call_id: str) -> dict[str, Any]:
    return {"role": "tool", "content": content, "tool_call_id": tool_call_id}


class DeepSeekClient:
    """Opens streamed chat completions and hands them to a StreamController."""

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        config = config or ClientConfig()
        overrides = {
            k: v
            for k, v in (("base_url", base_url), ("api_key", api_key), ("timeout", timeout))
            if v is not None
        }
        self.config = config.model_copy(update=overrides)
        self.completions_url = (
            f"{self.config.base_url.rstrip('/')}{self.config.chat_endpoint}"
        )

        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"

        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(self.config.timeout, connect=self.config.connect_timeout),
            http2=self.config.http2,
            transport=transport,
        )

    async def __aenter__(self) -> DeepSeekClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    def build_request(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        tools: list[dict] | None = None,
    ) -> httpx.Request:
        payload: dict[str, Any] = {
            "model": model or self.config.model,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if temperature is not None:
            payload["temperature"] = temperature
        if tools:
            payload["tools"] = tools
        return self._client.build_request("POST", self.completions_url, json=payload)

    @contextlib.asynccontextmanager
    async def stream_chat(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        tools: list[dict] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamController]:
        """Open a streamed chat completion for the duration of the block.

            async with client.stream_chat(messages) as stream:
                async for delta in stream:
                    ...

        Nothing is sent until the controller is iterated. Each iteration
        yields a ChoiceDelta; the reassembled message for every choice is
        available from ``stream.messages()`` afterwards. Leaving the block,
        normally or by an exception, closes the response.
        """
        request = self.build_request(messages, model, max_tokens, temperature, tools)
        logger.debug("Streaming chat completion from %s", self.completions_url)
        controller = StreamController(self._client, request, cancel_token=cancel_token)
        try:
            yield controller
        finally:
            await controller.aclose()
