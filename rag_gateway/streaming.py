#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Потоковый ретранслятор SSE: апстрим Chat Completions -> клиент.

Ответ провайдера читается по кускам, режется на строки, строки `data:`
пересылаются клиенту отдельными событиями. Поток клиента всегда
завершается: либо событием {"done": true}, либо событием ошибки.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import httpx

from .config import ProviderProfile
from .logger import get_logger
from .proxy import normalize_request, upstream_error_message

logger = get_logger(__name__)

DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"
DONE_EVENT = json.dumps({"done": True})


def format_event(data: str) -> str:
    """Кадр text/event-stream для одной полезной нагрузки."""
    return f"data: {data}\n\n"


def error_event(message: str) -> str:
    return json.dumps({"error": True, "message": message})


class EventSink(Protocol):
    async def send(self, data: str) -> None: ...

    async def close(self) -> None: ...


class QueueSink:
    """Приёмник событий на asyncio.Queue; итерируется готовыми SSE-кадрами."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send(self, data: str) -> None:
        if self.closed:
            raise RuntimeError("Sink is closed")
        await self._queue.put(format_event(data))

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            await self._queue.put(None)

    async def __aiter__(self) -> AsyncIterator[str]:
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame


class SSELineDecoder:
    """Собирает строки из произвольно нарезанного текста.

    Незавершённая последняя строка остаётся в буфере до следующего куска.
    feed() возвращает полезные нагрузки строк `data:` в порядке прихода.
    """

    def __init__(self) -> None:
        self._buffer = ""

    @staticmethod
    def _unwrap(line: str) -> Optional[str]:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return None
        payload = line[len(DATA_PREFIX):]
        return payload[1:] if payload.startswith(" ") else payload

    def feed(self, text: str) -> List[str]:
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        payloads = (self._unwrap(line) for line in lines)
        return [p for p in payloads if p is not None]

    def flush(self) -> List[str]:
        rest, self._buffer = self._buffer, ""
        payload = self._unwrap(rest)
        return [payload] if payload is not None else []


class StreamingRelay:
    """Ретранслятор потоковых ответов без повторов.

    - stream принудительно включается профилем
    - неуспешный первый ответ: одно событие ошибки и закрытие
    - [DONE] превращается в {"done": true}; {"done": true} отправляется
      ровно один раз, даже если апстрим оборвался без маркера
    - любое исключение (включая таймаут) превращается в событие ошибки
    """

    def __init__(self, profile: ProviderProfile, api_key: str, client: httpx.AsyncClient) -> None:
        self._profile = profile
        self._api_key = api_key
        self._client = client

    async def relay(self, body: Dict[str, Any], sink: EventSink) -> None:
        try:
            params = normalize_request(body, self._profile)
            params["stream"] = True
            await self._relay(params, sink)
        except Exception as exc:
            logger.error("Streaming API error: %s %s", type(exc).__name__, exc)
            if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
                message = "The streaming request took too long to process."
            else:
                message = str(exc) or type(exc).__name__
            await sink.send(error_event(message))
        finally:
            await sink.close()

    async def _relay(self, params: Dict[str, Any], sink: EventSink) -> None:
        logger.info("Streaming request for model: %s", params.get("model", "unknown"))
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self._api_key}"}
        async with self._client.stream(
            "POST",
            self._profile.endpoint,
            json=params,
            headers=headers,
            timeout=httpx.Timeout(self._profile.timeout),
        ) as response:
            if not response.is_success:
                text = (await response.aread()).decode("utf-8", errors="replace")
                message = upstream_error_message(response.status_code, text, self._profile)
                logger.error("%s streaming error %d: %s", self._profile.name, response.status_code, message)
                await sink.send(error_event(message))
                return

            decoder = SSELineDecoder()
            forwarded = 0
            async for chunk in response.aiter_text():
                for payload in decoder.feed(chunk):
                    if payload == DONE_MARKER:
                        await sink.send(DONE_EVENT)
                        logger.info("Stream finished after %d events", forwarded)
                        return
                    await sink.send(payload)
                    forwarded += 1

            for payload in decoder.flush():
                if payload == DONE_MARKER:
                    break
                await sink.send(payload)
                forwarded += 1

        logger.info("Stream finished after %d events", forwarded)
        await sink.send(DONE_EVENT)
