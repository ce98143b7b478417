#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Веб-поиск через Perplexity Chat Completions (модель sonar-pro)."""

from __future__ import annotations

import asyncio
import re
from typing import Any, Dict, List

import httpx

from .config import PERPLEXITY_BASE_URL, ProviderProfile
from .errors import InvalidRequestError, UpstreamPermanentError, UpstreamTimeout, UpstreamUnavailable
from .logger import get_logger
from .prompts import WEB_SEARCH_SYSTEM_PROMPT
from .proxy import upstream_error_message

logger = get_logger(__name__)

_MARKDOWN_LINK = re.compile(r"\[(.*?)\]\((https?://[^\s)]+)\)")


def extract_sources(answer: str) -> List[Dict[str, str]]:
    """Достаёт markdown-ссылки [title](url) из текста ответа."""
    return [{"title": m.group(1), "url": m.group(2)} for m in _MARKDOWN_LINK.finditer(answer or "")]


class WebSearchClient:
    """Один вызов sonar-pro без повторов; 25 секунд на весь запрос."""

    def __init__(
        self,
        api_key: str,
        client: httpx.AsyncClient,
        base_url: str = PERPLEXITY_BASE_URL,
        model: str = "sonar-pro",
        timeout: float = 25.0,
    ) -> None:
        self._api_key = api_key
        self._client = client
        self._model = model
        self._timeout = timeout
        self._profile = ProviderProfile(name="Perplexity", endpoint=f"{base_url}/chat/completions", timeout=timeout)

    async def search(self, query: str) -> Dict[str, Any]:
        if not isinstance(query, str) or not query.strip():
            raise InvalidRequestError("Query parameter is required")
        logger.info('Querying Perplexity for: "%s"', query)

        payload = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": WEB_SEARCH_SYSTEM_PROMPT},
                {"role": "user", "content": query},
            ],
        }
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self._api_key}"}
        try:
            response = await asyncio.wait_for(
                self._client.post(
                    self._profile.endpoint,
                    json=payload,
                    headers=headers,
                    timeout=httpx.Timeout(self._timeout),
                ),
                timeout=self._timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise UpstreamTimeout("The request to Perplexity took too long. Please try again.") from exc
        except httpx.TransportError as exc:
            raise UpstreamUnavailable(f"Perplexity request failed: {exc}") from exc

        if not response.is_success:
            message = upstream_error_message(response.status_code, response.text, self._profile)
            raise UpstreamPermanentError(
                message,
                response.status_code,
                label=f"Perplexity API error: {response.status_code}",
            )

        data = response.json()
        choices = data.get("choices") or []
        answer = ""
        if choices:
            answer = (choices[0].get("message") or {}).get("content") or ""
        sources = extract_sources(answer)
        logger.info("Perplexity response received with %d sources", len(sources))
        return {
            "answer": answer,
            "sources": sources,
            "metadata": {"model": data.get("model"), "usage": data.get("usage")},
        }
