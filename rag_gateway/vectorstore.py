#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Подключение к MongoDB Atlas и векторный поиск по документам."""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient

from .config import RetrievalConfig, VectorStoreConfig
from .errors import RetrievalUnavailable, StoreConnectionError
from .logger import get_logger

logger = get_logger(__name__)

SOURCE_PREVIEW_CHARS = 200


class ConnectionState(str, enum.Enum):
    UNCONNECTED = "unconnected"
    CONNECTING = "connecting"
    READY = "ready"
    FAILED = "failed"


def make_mongo_client(cfg: VectorStoreConfig) -> AsyncIOMotorClient:
    """Создаёт асинхронный клиент MongoDB с раздельными таймаутами драйвера."""
    return AsyncIOMotorClient(
        cfg.uri,
        connectTimeoutMS=cfg.connect_timeout_ms,
        socketTimeoutMS=cfg.socket_timeout_ms,
        serverSelectionTimeoutMS=cfg.server_selection_timeout_ms,
    )


class ConnectionCache:
    """Кэш единственного пулового подключения к хранилищу.

    - READY: acquire() сразу отдаёт закэшированную базу
    - CONNECTING: все вызывающие ждут одну и ту же задачу подключения
    - UNCONNECTED/FAILED: запускается новая попытка

    При неудаче клиент закрывается, слот задачи очищается, и ошибка
    получают все ожидающие этой попытки; следующий acquire() подключается
    заново.
    """

    def __init__(
        self,
        cfg: VectorStoreConfig,
        client_factory: Callable[[VectorStoreConfig], Any] = make_mongo_client,
    ) -> None:
        self._cfg = cfg
        self._client_factory = client_factory
        self._client: Optional[Any] = None
        self._db: Optional[Any] = None
        self._pending: Optional[asyncio.Task] = None
        self.state = ConnectionState.UNCONNECTED

    async def acquire(self) -> Any:
        if self._db is not None:
            return self._db
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._connect())
        # shield: отмена одного ожидающего (таймаут поиска) не обрывает
        # попытку, которую ждут остальные
        return await asyncio.shield(self._pending)

    async def _connect(self) -> Any:
        self.state = ConnectionState.CONNECTING
        logger.info("Connecting to MongoDB (db=%s)", self._cfg.db_name)
        client = None
        try:
            client = self._client_factory(self._cfg)
            await client.admin.command("ping")
        except Exception as exc:
            self.state = ConnectionState.FAILED
            self._pending = None
            if client is not None:
                client.close()
            logger.error("MongoDB connection failed: %s", exc)
            raise StoreConnectionError(f"MongoDB connection failed: {exc}") from exc

        self._client = client
        self._db = client[self._cfg.db_name]
        self._pending = None
        self.state = ConnectionState.READY
        logger.info("MongoDB connection ready")
        return self._db

    def reset(self) -> None:
        """Сбрасывает кэш; следующий acquire() подключится заново."""
        if self._client is not None:
            self._client.close()
        self._client = None
        self._db = None
        self._pending = None
        self.state = ConnectionState.UNCONNECTED


@dataclass(frozen=True)
class RetrievedDocument:
    """Документ из векторного поиска вместе со скором хранилища."""
    instruction: str
    context: str
    response: str
    score: float

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "RetrievedDocument":
        return cls(
            instruction=str(record.get("instruction") or ""),
            context=str(record.get("context") or ""),
            response=str(record.get("response") or ""),
            score=float(record.get("score") or 0.0),
        )

    def to_source(self) -> Dict[str, Any]:
        """Источник для ответа клиенту; response обрезается до 200 символов."""
        response = self.response
        if len(response) > SOURCE_PREVIEW_CHARS:
            response = response[:SOURCE_PREVIEW_CHARS] + "..."
        return {
            "instruction": self.instruction,
            "response": response,
            "context": self.context,
            "score": self.score,
        }


@dataclass
class RetrievalOutcome:
    documents: List[RetrievedDocument] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class Retriever:
    """Стадия поиска: ANN-запрос `$vectorSearch` через кэш подключения.

    Подключение и запрос делят один бюджет времени. retrieve() никогда не
    бросает исключений: любая ошибка превращается в пустой результат
    с текстом ошибки.
    """

    def __init__(self, cache: ConnectionCache, cfg: Optional[RetrievalConfig] = None) -> None:
        self._cache = cache
        self._cfg = cfg or RetrievalConfig()

    def _pipeline(self, vector: List[float], k: int) -> List[Dict[str, Any]]:
        return [
            {
                "$vectorSearch": {
                    "index": self._cfg.index_name,
                    "path": self._cfg.vector_path,
                    "queryVector": vector,
                    "numCandidates": k * self._cfg.num_candidates_factor,
                    "limit": k,
                }
            },
            {
                "$project": {
                    "_id": 0,
                    "instruction": 1,
                    "context": 1,
                    "response": 1,
                    "score": {"$meta": "vectorSearchScore"},
                }
            },
        ]

    async def search(self, vector: List[float], collection: str, k: Optional[int] = None) -> List[RetrievedDocument]:
        """Выполняет поиск без перехвата ошибок (бросает RetrievalUnavailable)."""
        k = k or self._cfg.top_k
        try:
            db = await self._cache.acquire()
            cursor = db[collection].aggregate(self._pipeline(vector, k))
            records = await cursor.to_list(length=k)
        except StoreConnectionError as exc:
            raise RetrievalUnavailable(exc.message) from exc
        except Exception as exc:
            raise RetrievalUnavailable(f"Vector search failed: {exc}") from exc
        return [RetrievedDocument.from_record(r) for r in records[:k]]

    async def retrieve(self, vector: List[float], collection: str, k: Optional[int] = None) -> RetrievalOutcome:
        try:
            documents = await asyncio.wait_for(self.search(vector, collection, k), timeout=self._cfg.timeout)
        except asyncio.TimeoutError:
            logger.warning("Vector search timed out after %.1fs", self._cfg.timeout)
            return RetrievalOutcome(error=f"Vector search timed out after {self._cfg.timeout:g}s")
        except RetrievalUnavailable as exc:
            logger.warning("Vector search unavailable: %s", exc.message)
            return RetrievalOutcome(error=exc.message)
        logger.info("Retrieved %d documents from '%s'", len(documents), collection)
        return RetrievalOutcome(documents=documents)
