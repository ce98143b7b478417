#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Единая политика повторов для вызовов апстрима.

Параметры: число попыток, набор «временных» статусов, функция задержки
и функция сна (подменяется в тестах). Состояние попыток живёт только
внутри одного вызова run().
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, FrozenSet, Tuple

import httpx

from .logger import get_logger

logger = get_logger(__name__)


def linear_backoff(unit: float = 2.0) -> Callable[[int], float]:
    """Попытка n ждёт n * unit секунд."""
    return lambda attempt: attempt * unit


def exponential_backoff(unit: float = 2.0, cap: float = 30.0) -> Callable[[int], float]:
    """Попытка n ждёт unit * 2^(n-1) секунд, не больше cap."""
    return lambda attempt: min(unit * (2 ** (attempt - 1)), cap)


@dataclass
class RetryPolicy:
    """Повторяет вызов на временных статусах и сетевых исключениях.

    - max_attempts: всего попыток, включая первую
    - retry_statuses: коды ответа, после которых делается новая попытка
    - backoff: задержка после неудачной попытки с номером n (1-based)
    - retry_exceptions: исключения, которые тоже расходуют попытку
    """
    max_attempts: int = 3
    retry_statuses: FrozenSet[int] = frozenset({502})
    backoff: Callable[[int], float] = field(default_factory=linear_backoff)
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    retry_exceptions: Tuple[type, ...] = (httpx.TransportError, asyncio.TimeoutError)
    name: str = "upstream"

    def is_retryable(self, status_code: int) -> bool:
        return status_code in self.retry_statuses

    async def run(self, call: Callable[[int], Awaitable[Any]]) -> Any:
        """Выполняет call(attempt) с повторами.

        Возвращает первый ответ с неретраибельным статусом либо последний
        ответ, если попытки кончились. Исключение последней попытки
        пробрасывается как есть. После последней попытки пауза не делается.
        """
        for attempt in range(1, self.max_attempts + 1):
            logger.info("%s: attempt %d/%d", self.name, attempt, self.max_attempts)
            try:
                response = await call(attempt)
            except self.retry_exceptions as exc:
                logger.warning("%s: attempt %d failed: %s %s", self.name, attempt, type(exc).__name__, exc)
                if attempt == self.max_attempts:
                    raise
            else:
                status = response.status_code
                if not self.is_retryable(status) or attempt == self.max_attempts:
                    return response
                logger.warning("%s: received %d, retrying", self.name, status)

            delay = self.backoff(attempt)
            logger.info("%s: waiting %.1fs before retry", self.name, delay)
            await self.sleep(delay)

        raise RuntimeError("RetryPolicy.max_attempts must be >= 1")
