#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import asyncio
from typing import Dict, List, Optional

from openai import APIError, APIStatusError, AsyncOpenAI

from .config import EmbeddingConfig, LLMConfig
from .errors import EmbeddingError, GenerationError
from .logger import get_logger
from .prompts import SYSTEM_PROMPT_FALLBACK, SYSTEM_PROMPT_WITH_CONTEXT

logger = get_logger(__name__)


class Embedder:
    """Стадия эмбеддинга: один вызов OpenAI-совместимого /embeddings.

    Повторов нет (max_retries=0): решение о fallback принимает оркестратор.
    """
    def __init__(self, cfg: EmbeddingConfig, client: Optional[AsyncOpenAI] = None) -> None:
        self._cfg = cfg
        self._client = client or AsyncOpenAI(
            base_url=cfg.base_url,
            api_key=cfg.api_key,
            max_retries=0,
            timeout=cfg.timeout,
        )

    async def embed(self, text: str, model: Optional[str] = None) -> List[float]:
        """Возвращает вектор для текста; при любой ошибке — EmbeddingError."""
        call = self._client.embeddings.create(
            model=model or self._cfg.model_name,
            input=text,
            encoding_format="float",
        )
        try:
            resp = await asyncio.wait_for(call, timeout=self._cfg.timeout)
        except asyncio.TimeoutError as exc:
            raise EmbeddingError(f"Embedding request timed out after {self._cfg.timeout:g}s") from exc
        except APIStatusError as exc:
            body = exc.response.text
            raise EmbeddingError(
                f"Embedding API error: {body or exc.status_code}",
                upstream_status=exc.status_code,
                upstream_body=body,
            ) from exc
        except APIError as exc:
            raise EmbeddingError(f"Embedding API error: {exc}") from exc

        if not resp.data:
            raise EmbeddingError("Embedding API returned no vectors")
        return list(resp.data[0].embedding)


class ChatGenerator:
    """Стадия генерации: ровно два сообщения (system + user) в Chat API.

    Системный промпт зависит от того, есть ли контекст из базы знаний или
    поиск уже деградировал. Весь вызов ограничен таймаутом из конфига;
    по истечении запрос отменяется.
    """
    def __init__(self, cfg: LLMConfig, client: Optional[AsyncOpenAI] = None) -> None:
        self._cfg = cfg
        self._client = client or AsyncOpenAI(
            base_url=cfg.base_url,
            api_key=cfg.api_key,
            max_retries=0,
            timeout=cfg.timeout,
        )

    @staticmethod
    def make_messages(query: str, context: str = "", fallback: bool = False) -> List[Dict[str, str]]:
        """Формирует список сообщений (system + user) для Chat API."""
        if fallback:
            system_prompt = SYSTEM_PROMPT_FALLBACK
        else:
            system_prompt = SYSTEM_PROMPT_WITH_CONTEXT.format(context=context)
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": query},
        ]

    async def generate(self, query: str, context: str = "", fallback: bool = False, model: Optional[str] = None) -> str:
        call = self._client.chat.completions.create(
            model=model or self._cfg.model_name,
            messages=self.make_messages(query, context, fallback),
            temperature=self._cfg.temperature,
            top_p=self._cfg.top_p,
            max_tokens=self._cfg.max_tokens,
            presence_penalty=self._cfg.presence_penalty,
            frequency_penalty=self._cfg.frequency_penalty,
            extra_body={"top_k": self._cfg.top_k},
        )
        try:
            resp = await asyncio.wait_for(call, timeout=self._cfg.timeout)
        except asyncio.TimeoutError as exc:
            raise GenerationError(f"LLM request timed out after {self._cfg.timeout:g}s") from exc
        except APIStatusError as exc:
            raise GenerationError(f"LLM API error: {exc.status_code} {exc.response.text}") from exc
        except APIError as exc:
            raise GenerationError(f"LLM API error: {exc}") from exc

        text = (resp.choices[0].message.content or "").strip() if resp.choices else ""
        if not text:
            raise GenerationError("LLM returned an empty answer")
        return text
