"""Concrete model stream providers and factory helpers."""

from __future__ import annotations

import asyncio
import contextlib
import json
import threading
from collections.abc import AsyncIterator
from collections.abc import Iterator
from typing import Any
from urllib.error import HTTPError
from urllib.error import URLError
from urllib.request import Request
from urllib.request import urlopen

from tutorstream.config import LLMConfig
from tutorstream.engine.provider import GenerationRequest
from tutorstream.engine.provider import LLMError
from tutorstream.engine.provider import ModelStreamProvider
from tutorstream.engine.provider import ProviderUsage
from tutorstream.engine.provider import StreamChunk

_END_OF_STREAM = object()


class EchoStreamProvider(ModelStreamProvider):
    """Deterministic provider that streams the user text back in slices."""

    def __init__(self, chunk_chars: int = 16) -> None:
        if chunk_chars < 1:
            raise ValueError("chunk_chars must be >= 1")
        self._chunk_chars = chunk_chars

    async def stream(self, request: GenerationRequest) -> AsyncIterator[StreamChunk]:
        text = request.user_text
        for start in range(0, len(text), self._chunk_chars):
            await asyncio.sleep(0)
            yield StreamChunk(text=text[start : start + self._chunk_chars])


class OpenAICompatibleStreamProvider(ModelStreamProvider):
    """Streaming chat-completions adapter for OpenAI-compatible APIs.

    The blocking HTTP read runs in an executor thread and hands chunks to
    the event loop through an ``asyncio.Queue``.  Closing the iterator
    signals the thread to stop at the next line.
    """

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        temperature: float = 0.7,
        timeout_seconds: float = 60.0,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._temperature = temperature
        self._timeout_seconds = timeout_seconds

    async def stream(self, request: GenerationRequest) -> AsyncIterator[StreamChunk]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[Any] = asyncio.Queue()
        stop = threading.Event()

        def emit(item: Any) -> None:
            if stop.is_set():
                return
            # The loop may already be closed when the consumer went away
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(queue.put_nowait, item)

        def pump() -> None:
            try:
                for chunk in self._iter_chunks(request, stop):
                    emit(chunk)
            except Exception as exc:
                emit(exc)
            else:
                emit(_END_OF_STREAM)

        loop.run_in_executor(None, pump)
        try:
            while True:
                item = await queue.get()
                if item is _END_OF_STREAM:
                    return
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            stop.set()

    def _build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        messages: list[dict[str, str]] = [
            {"role": "system", "content": request.system_prompt}
        ]
        messages.extend(
            {"role": entry.role.value, "content": entry.content}
            for entry in request.memory
        )
        messages.append({"role": "user", "content": request.user_text})
        payload: dict[str, Any] = {
            "model": request.model or self._model,
            "messages": messages,
            "temperature": self._temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        return payload

    def _iter_chunks(
        self,
        request: GenerationRequest,
        stop: threading.Event,
    ) -> Iterator[StreamChunk]:
        http_request = Request(
            url=f"{self._base_url}/chat/completions",
            data=json.dumps(self._build_payload(request)).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
                "Accept": "text/event-stream",
            },
            method="POST",
        )
        try:
            with urlopen(http_request, timeout=self._timeout_seconds) as response:
                for raw_line in response:
                    if stop.is_set():
                        return
                    line = raw_line.decode("utf-8").strip()
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:") :].strip()
                    if data == "[DONE]":
                        return
                    chunk = _parse_chunk(data)
                    if chunk is not None:
                        yield chunk
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise LLMError(f"provider HTTP {exc.code}: {detail[:200]}") from exc
        except URLError as exc:
            raise LLMError(f"provider network error: {exc.reason}") from exc
        except OSError as exc:
            raise LLMError(f"provider IO error: {exc}") from exc


def _parse_chunk(data: str) -> StreamChunk | None:
    try:
        body = json.loads(data)
    except ValueError as exc:
        raise LLMError("provider sent a malformed stream chunk") from exc
    if not isinstance(body, dict):
        raise LLMError("provider stream chunk must be a JSON object")
    if "error" in body:
        raise LLMError(f"provider stream error: {body['error']}")

    text = ""
    choices = body.get("choices") or []
    if choices and isinstance(choices[0], dict):
        delta = choices[0].get("delta") or {}
        content = delta.get("content")
        if isinstance(content, str):
            text = content

    usage = None
    raw_usage = body.get("usage")
    if isinstance(raw_usage, dict):
        usage = ProviderUsage(
            prompt_tokens=int(raw_usage.get("prompt_tokens") or 0),
            completion_tokens=int(raw_usage.get("completion_tokens") or 0),
        )
    if not text and usage is None:
        return None
    return StreamChunk(text=text, usage=usage)


def build_stream_provider(config: LLMConfig) -> ModelStreamProvider:
    """Create a concrete provider from ``LLMConfig``."""

    provider = config.provider.strip().lower()
    if provider == "openai":
        if not config.api_key:
            raise ValueError("llm_config.api_key is required when provider='openai'")
        return OpenAICompatibleStreamProvider(
            model=config.model,
            api_key=config.api_key,
            base_url=config.base_url,
            temperature=config.temperature,
            timeout_seconds=config.timeout_seconds,
        )
    if provider == "echo":
        return EchoStreamProvider()
    raise ValueError(
        f"Unsupported llm_config.provider '{config.provider}'. "
        "Supported providers: openai, echo."
    )
