#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Фабрика логгеров с единым форматом для всех модулей шлюза.

Пример:
    from rag_gateway.logger import get_logger
    logger = get_logger(__name__)
    logger.info("...")
"""

import logging
import os
import sys
from typing import Optional


_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _default_level() -> int:
    level = logging.getLevelName(os.environ.get("LOG_LEVEL", "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """Возвращает именованный логгер со stdout-хендлером.

    Уровень берётся из аргумента или переменной LOG_LEVEL. Хендлер
    добавляется один раз, propagate отключён, чтобы не было дублей в root.
    """
    resolved = level if level is not None else _default_level()
    logger = logging.getLogger(name)

    if not logger.handlers:
        logger.setLevel(resolved)
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(resolved)
        handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt=_DATEFMT))
        logger.addHandler(handler)
        logger.propagate = False

    return logger
