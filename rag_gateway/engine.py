#!/usr/bin/env python3
# -*- coding: utf-8 -*-
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import EmbeddingError, GenerationError, InvalidRequestError
from .llm import ChatGenerator, Embedder
from .logger import get_logger
from .prompts import CONTEXT_BLOCK, EMBEDDING_FALLBACK_ANSWER, GENERATION_FALLBACK_ANSWER
from .vectorstore import RetrievedDocument, Retriever

logger = get_logger(__name__)


@dataclass
class OrchestrationResult:
    """Итог RAG-запроса: ответ, источники и признак деградации."""
    answer: str
    sources: List[RetrievedDocument] = field(default_factory=list)
    used_fallback: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "answer": self.answer,
            "sources": [doc.to_source() for doc in self.sources],
            "fallback": self.used_fallback,
        }
        if self.error is not None:
            body["error"] = self.error
        return body


def build_context(documents: List[RetrievedDocument]) -> str:
    """Склеивает документы в блоки Question/Context/Answer в порядке хранилища."""
    return "\n\n".join(
        CONTEXT_BLOCK.format(instruction=d.instruction, context=d.context, response=d.response)
        for d in documents
    )


class RAGOrchestrator:
    """RAG-движок с деградацией: эмбеддинг -> поиск -> генерация.

    - эмбеддинг упал: заготовленный ответ с текстом вопроса, без источников
    - поиск упал: генерация без контекста, fallback=True
    - генерация упала: заготовленный ответ, найденные источники сохраняются

    Стадии выполняются строго последовательно. Ошибки стадий не выходят
    наружу: у вызывающего всегда есть текстовый ответ.
    """
    def __init__(
        self,
        embedder: Embedder,
        retriever: Retriever,
        generator: ChatGenerator,
        default_collection: str = "documents",
    ) -> None:
        self._embedder = embedder
        self._retriever = retriever
        self._generator = generator
        self._default_collection = default_collection

    async def answer(
        self,
        query: str,
        collection: Optional[str] = None,
        embedding_model: Optional[str] = None,
        chat_model: Optional[str] = None,
    ) -> OrchestrationResult:
        if not isinstance(query, str) or not query.strip():
            raise InvalidRequestError("Missing query parameter")
        collection = collection or self._default_collection

        try:
            vector = await self._embedder.embed(query, embedding_model)
        except EmbeddingError as exc:
            logger.warning("Embedding failed, answering with fallback: %s", exc.message)
            return OrchestrationResult(
                answer=EMBEDDING_FALLBACK_ANSWER.format(query=query),
                used_fallback=True,
                error=exc.message,
            )

        outcome = await self._retriever.retrieve(vector, collection)
        used_fallback = outcome.failed
        error = outcome.error
        documents = outcome.documents

        try:
            answer = await self._generator.generate(
                query,
                context=build_context(documents),
                fallback=used_fallback,
                model=chat_model,
            )
        except GenerationError as exc:
            logger.warning("Generation failed, answering with fallback: %s", exc.message)
            return OrchestrationResult(
                answer=GENERATION_FALLBACK_ANSWER.format(query=query),
                sources=documents,
                used_fallback=True,
                error=exc.message,
            )

        if used_fallback:
            logger.info("Answered without knowledge base context")
        return OrchestrationResult(answer=answer, sources=documents, used_fallback=used_fallback, error=error)
