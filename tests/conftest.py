"""
Общие заглушки для тестов: фейковый клиент MongoDB, фейковый сон для
ретраев и httpx-клиент на MockTransport с заранее заданными ответами.
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest


class FakeCursor:
    def __init__(self, records: List[Dict[str, Any]], gate: Optional[asyncio.Event] = None) -> None:
        self._records = records
        self._gate = gate

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        if self._gate is not None:
            await self._gate.wait()
        return list(self._records[:length] if length else self._records)


class FakeCollection:
    def __init__(self, records: List[Dict[str, Any]], gate: Optional[asyncio.Event] = None, error: Optional[Exception] = None) -> None:
        self._records = records
        self._gate = gate
        self._error = error
        self.pipelines: List[List[Dict[str, Any]]] = []

    def aggregate(self, pipeline: List[Dict[str, Any]]) -> FakeCursor:
        self.pipelines.append(pipeline)
        if self._error is not None:
            raise self._error
        return FakeCursor(self._records, self._gate)


class FakeDatabase:
    def __init__(self, collection: FakeCollection) -> None:
        self.collection = collection
        self.requested: List[str] = []

    def __getitem__(self, name: str) -> FakeCollection:
        self.requested.append(name)
        return self.collection


class FakeAdmin:
    def __init__(self, error: Optional[Exception] = None, gate: Optional[asyncio.Event] = None) -> None:
        self._error = error
        self._gate = gate
        self.pings = 0

    async def command(self, name: str) -> Dict[str, Any]:
        self.pings += 1
        if self._gate is not None:
            await self._gate.wait()
        if self._error is not None:
            raise self._error
        return {"ok": 1}


class FakeMongoClient:
    """Минимальный двойник AsyncIOMotorClient для ConnectionCache/Retriever."""

    def __init__(
        self,
        records: Optional[List[Dict[str, Any]]] = None,
        ping_error: Optional[Exception] = None,
        gate: Optional[asyncio.Event] = None,
        query_gate: Optional[asyncio.Event] = None,
        query_error: Optional[Exception] = None,
    ) -> None:
        self.admin = FakeAdmin(ping_error, gate)
        self.collection = FakeCollection(records or [], query_gate, query_error)
        self.db = FakeDatabase(self.collection)
        self.db_names: List[str] = []
        self.closed = False

    def __getitem__(self, name: str) -> FakeDatabase:
        self.db_names.append(name)
        return self.db

    def close(self) -> None:
        self.closed = True


class ListSink:
    """Приёмник событий ретранслятора, складывающий всё в список."""

    def __init__(self) -> None:
        self.events: List[str] = []
        self.closed = False

    async def send(self, data: str) -> None:
        assert not self.closed, "write after close"
        self.events.append(data)

    async def close(self) -> None:
        self.closed = True


def mock_http_client(responses: List[Any], calls: List[Dict[str, Any]]) -> httpx.AsyncClient:
    """httpx-клиент, отдающий ответы из списка по порядку.

    Элемент списка — httpx.Response, исключение (будет брошено) или
    корутинная функция без аргументов (для зависаний/таймаутов).
    """
    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append({
            "url": str(request.url),
            "headers": dict(request.headers),
            "json": json.loads(request.content) if request.content else None,
            "timeout": request.extensions.get("timeout"),
        })
        item = responses[min(len(calls), len(responses)) - 1]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return await item()
        return item

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps: List[float]) -> Callable[[float], Any]:
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)
    return _sleep


@pytest.fixture
def paris_record() -> Dict[str, Any]:
    return {
        "instruction": "capital of France",
        "context": "geography",
        "response": "Paris is the capital.",
        "score": 0.91,
    }
