#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Типы ошибок шлюза.

Каждая ошибка знает свой HTTP-статус и умеет отдать тело ответа
в формате {"error", "message"?, "details"?}. Ошибки стадий RAG
(эмбеддинг, поиск, генерация) обрабатываются оркестратором и наружу
как 5xx не выходят; ошибки прокси отдаются клиенту как есть.
"""

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Базовая ошибка: статус, короткая метка, сообщение и детали."""

    status_code: int = 500
    label: str = "Internal Server Error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        label: Optional[str] = None,
        details: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if label is not None:
            self.label = label
        self.details = details

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.label, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ConfigurationError(GatewayError):
    """Не заданы ключи или строка подключения (500, без ретраев)."""

    status_code = 500
    label = "Configuration error"


class InvalidRequestError(GatewayError):
    """Некорректное тело запроса (400, апстрим не вызывается)."""

    status_code = 400
    label = "Invalid request"


class StoreConnectionError(GatewayError):
    """Хранилище недоступно; для RAG превращается в fallback."""

    status_code = 503
    label = "Document store unavailable"


class EmbeddingError(GatewayError):
    """Сервис эмбеддингов вернул ошибку или не ответил.

    Attributes:
        upstream_status: HTTP-статус апстрима (None при сетевой ошибке)
        upstream_body: тело ответа апстрима
    """

    status_code = 502
    label = "Embedding API error"

    def __init__(self, message: str, upstream_status: Optional[int] = None, upstream_body: str = "") -> None:
        super().__init__(message)
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body


class RetrievalUnavailable(GatewayError):
    """Векторный поиск не удался или не уложился в бюджет времени."""

    status_code = 503
    label = "Retrieval unavailable"


class GenerationError(GatewayError):
    """LLM не ответила, ответила ошибкой или вышла за таймаут."""

    status_code = 502
    label = "LLM API error"


class UpstreamError(GatewayError):
    """Ошибка апстрим-провайдера прокси со статусом ответа."""

    def __init__(self, message: str, status_code: int, *, label: Optional[str] = None, details: Optional[Any] = None) -> None:
        super().__init__(message, status_code=status_code, label=label, details=details)


class UpstreamTransientError(UpstreamError):
    """502/503 от провайдера после исчерпания попыток."""


class UpstreamPermanentError(UpstreamError):
    """Любой другой неуспешный статус, отдаётся без ретраев."""


class UpstreamTimeout(GatewayError):
    """Попытка не уложилась в таймаут вызова."""

    status_code = 504
    label = "Gateway Timeout"


class UpstreamUnavailable(GatewayError):
    """Сетевая ошибка на последней попытке."""

    status_code = 502
    label = "Request Failed"
