#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Прокси Chat Completions с нормализацией параметров и повторами."""

from __future__ import annotations

import asyncio
import json
import math
import time
from typing import Any, Dict, List, Optional

import httpx

from .config import ProviderProfile
from .errors import (
    InvalidRequestError,
    UpstreamPermanentError,
    UpstreamTimeout,
    UpstreamTransientError,
    UpstreamUnavailable,
)
from .logger import get_logger
from .retry import RetryPolicy, linear_backoff

logger = get_logger(__name__)


def clamp_max_tokens(value: Any, profile: ProviderProfile) -> int:
    """Приводит max_tokens к диапазону [1, потолок провайдера].

    None означает «не задано» и заменяется значением по умолчанию.
    """
    if value is None:
        return profile.default_max_tokens
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidRequestError(f"max_tokens must be a number, got {value!r}")
    if not math.isfinite(value):
        raise InvalidRequestError(f"max_tokens must be a finite number, got {value!r}")
    validated = min(max(1, int(value)), profile.max_tokens_ceiling)
    if validated != value:
        logger.info("Adjusted max_tokens from %s to %d to meet %s API requirements", value, validated, profile.name)
    return validated


def normalize_request(body: Dict[str, Any], profile: ProviderProfile) -> Dict[str, Any]:
    """Готовит тело запроса к отправке провайдеру.

    1) оставляет только разрешённые поля (если список задан)
    2) применяет принудительные поля (модель, stream)
    3) ограничивает max_tokens
    4) заполняет незаданные параметры сэмплинга значениями по умолчанию
    5) выбрасывает поля со значением None
    """
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    if profile.allowed_params is None:
        params = dict(body)
    else:
        params = {key: body.get(key) for key in profile.allowed_params}

    for key, value in profile.overrides.items():
        if key == "model" and body.get("model") not in (None, value):
            logger.info("Model '%s' requested, using '%s'", body.get("model"), value)
        params[key] = value

    params["max_tokens"] = clamp_max_tokens(body.get("max_tokens"), profile)

    for key, value in profile.defaults.items():
        if params.get(key) is None:
            params[key] = value

    return {key: value for key, value in params.items() if value is not None}


def detect_reasoning_method(messages: Any) -> str:
    """Определяет метод рассуждения по первому (системному) сообщению."""
    if not isinstance(messages, list) or not messages or not isinstance(messages[0], dict):
        return "Standard"
    content = messages[0].get("content")
    if not isinstance(content, str):
        return "Standard"
    if "Chain of Draft" in content:
        return "CoD"
    if "Chain of Thought" in content:
        return "CoT"
    return "Standard"


def upstream_error_message(status_code: int, text: str, profile: ProviderProfile) -> str:
    """Достаёт человекочитаемое сообщение из тела ошибки провайдера."""
    try:
        parsed = json.loads(text)
    except ValueError:
        message = text or f"Error {status_code}"
    else:
        error = parsed.get("error") if isinstance(parsed, dict) else None
        if isinstance(error, dict):
            message = error.get("message") or "Unknown API error"
        elif isinstance(error, str):
            message = error
        else:
            message = "Unknown API error"
        if "max_tokens" in message:
            message = (
                f"Invalid max_tokens value. The {profile.name} API accepts values "
                f"between 1 and {profile.max_tokens_ceiling}."
            )

    if status_code == 401:
        message = f"Authentication failed. Please check your {profile.name} API key."
    elif status_code == 429:
        message = "Rate limit exceeded. Please try again in a few moments."
    return message


class ResilientProxy:
    """Пересылает запрос Chat Completions провайдеру с повторами.

    - каждая попытка ограничена таймаутом профиля и отменяется по нему
    - повтор на статусах из профиля и на сетевых ошибках, линейный backoff
    - прочие ошибки провайдера отдаются сразу, со статусом провайдера
    """

    def __init__(
        self,
        profile: ProviderProfile,
        api_key: str,
        client: httpx.AsyncClient,
        policy: Optional[RetryPolicy] = None,
        error_hints: Optional[List[str]] = None,
    ) -> None:
        self._profile = profile
        self._api_key = api_key
        self._client = client
        self._policy = policy or RetryPolicy(
            max_attempts=profile.max_attempts,
            retry_statuses=profile.retry_statuses,
            backoff=linear_backoff(profile.backoff_unit),
            name=profile.name,
        )
        self._error_hints = error_hints

    @property
    def profile(self) -> ProviderProfile:
        return self._profile

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }

    async def _attempt(self, params: Dict[str, Any]) -> httpx.Response:
        return await asyncio.wait_for(
            self._client.post(
                self._profile.endpoint,
                json=params,
                headers=self._headers(),
                timeout=httpx.Timeout(self._profile.timeout),
            ),
            timeout=self._profile.timeout,
        )

    async def forward(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Возвращает JSON ответа провайдера или бросает UpstreamError/Timeout."""
        params = normalize_request(body, self._profile)
        logger.info(
            "Forwarding to %s: model=%s, messages=%d, max_tokens=%s",
            self._profile.name,
            params.get("model"),
            len(params.get("messages") or []),
            params.get("max_tokens"),
        )

        try:
            response = await self._policy.run(lambda attempt: self._attempt(params))
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            logger.error("%s request timed out: %s", self._profile.name, exc)
            raise UpstreamTimeout(
                f"The request to the {self._profile.name} API took too long to complete "
                f"(>{self._profile.timeout:g} seconds). Try reducing max_tokens or simplifying your prompt."
            ) from exc
        except httpx.TransportError as exc:
            logger.error("%s request failed: %s", self._profile.name, exc)
            raise UpstreamUnavailable(
                f"Failed to get response from {self._profile.name} API after "
                f"{self._policy.max_attempts} attempts: {exc}"
            ) from exc

        status = response.status_code
        logger.info("%s API response status: %d", self._profile.name, status)
        if response.is_success:
            data = response.json()
            usage = data.get("usage") if isinstance(data, dict) else None
            if usage:
                logger.info(
                    "Token usage: prompt=%s, completion=%s, total=%s",
                    usage.get("prompt_tokens"),
                    usage.get("completion_tokens"),
                    usage.get("total_tokens"),
                )
            return data

        text = response.text
        logger.error("%s API error %d: %s", self._profile.name, status, text[:500])
        message = upstream_error_message(status, text, self._profile)
        label = f"{self._profile.label}{self._profile.name} API error: {status}"
        details = {"possible_fixes": self._error_hints} if self._error_hints else None
        if self._policy.is_retryable(status):
            raise UpstreamTransientError(message, status, label=label, details=details)
        raise UpstreamPermanentError(message, status, label=label, details=details)


async def forward_with_metrics(proxy: ResilientProxy, body: Dict[str, Any]) -> Dict[str, Any]:
    """Пересылает запрос и добавляет в ответ блок performance."""
    method = detect_reasoning_method(body.get("messages") if isinstance(body, dict) else None)
    logger.info("Using reasoning method: %s", method)
    started = time.monotonic()
    data = await proxy.forward(body)
    elapsed_ms = int((time.monotonic() - started) * 1000)
    logger.info("%s response time: %dms, method: %s", proxy.profile.name, elapsed_ms, method)
    if isinstance(data, dict) and not data.get("error"):
        data["performance"] = {"response_time_ms": elapsed_ms, "reasoning_method": method}
    return data
