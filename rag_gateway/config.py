#!/usr/bin/env python3
# -*- coding: utf-8 -*-
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional, Tuple

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


FIREWORKS_BASE_URL = "https://api.fireworks.ai/inference/v1"
DEEPSEEK_BASE_URL = "https://api.deepseek.com/v1"
PERPLEXITY_BASE_URL = "https://api.perplexity.ai"


class Settings(BaseSettings):
    """Настройки окружения шлюза (переменные окружения и `.env`).

    Ключи и строка подключения к MongoDB необязательны на старте:
    их наличие проверяется в каждом обработчике, чтобы сервис поднимался
    и отвечал 500 с понятным сообщением, а не падал при импорте.
    """
    FIREWORKS_API_KEY: Optional[SecretStr] = None
    DEEPSEEK_API_KEY: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("DEEPSEEKAPI", "DEEPSEEK_API_KEY"),
    )
    PERPLEXITY_API_KEY: Optional[SecretStr] = None

    MONGODB_URI: Optional[SecretStr] = None
    MONGODB_DB_NAME: str = "ragDatabase"
    MONGODB_COLLECTION: str = "documents"

    EMBEDDING_MODEL: str = "nomic-ai/nomic-embed-text-v1.5"
    CHAT_MODEL: str = "accounts/fireworks/models/llama-v3p3-70b-instruct"

    FIREWORKS_BASE_URL: str = FIREWORKS_BASE_URL
    DEEPSEEK_BASE_URL: str = DEEPSEEK_BASE_URL
    PERPLEXITY_BASE_URL: str = PERPLEXITY_BASE_URL

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


def secret_value(value: Optional[SecretStr]) -> Optional[str]:
    """Возвращает сырое значение секрета или None, если он не задан/пустой."""
    if value is None:
        return None
    raw = value.get_secret_value()
    return raw or None


@dataclass
class VectorStoreConfig:
    """Параметры подключения к MongoDB Atlas.

    - uri: строка подключения
    - db_name: логическое пространство имён (база), выбираемое после подключения
    - connect/socket/server_selection_timeout_ms: раздельные таймауты драйвера
    """
    uri: str
    db_name: str = "ragDatabase"
    connect_timeout_ms: int = 10_000
    socket_timeout_ms: int = 45_000
    server_selection_timeout_ms: int = 5_000


@dataclass
class EmbeddingConfig:
    """Параметры сервиса эмбеддингов (OpenAI-совместимый /embeddings)."""
    base_url: str = FIREWORKS_BASE_URL
    api_key: str = ""
    model_name: str = "nomic-ai/nomic-embed-text-v1.5"
    timeout: float = 10.0


@dataclass
class LLMConfig:
    """Параметры генерации ответа (OpenAI-совместимый Chat API).

    Значения сэмплинга фиксированы для RAG-ответов; штрафы за повторы
    нулевые.
    """
    base_url: str = FIREWORKS_BASE_URL
    api_key: str = ""
    model_name: str = "accounts/fireworks/models/llama-v3p3-70b-instruct"
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40
    max_tokens: int = 1024
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    timeout: float = 15.0


@dataclass
class RetrievalConfig:
    """Параметры векторного поиска.

    - index_name: имя Atlas Vector Search индекса
    - vector_path: поле с эмбеддингом в документе
    - top_k: сколько документов вернуть
    - num_candidates_factor: множитель кандидатов для ANN (top_k * factor)
    - timeout: общий бюджет на подключение и запрос, секунды
    """
    index_name: str = "vector_index"
    vector_path: str = "embedding"
    top_k: int = 5
    num_candidates_factor: int = 20
    timeout: float = 4.0


@dataclass
class ProviderProfile:
    """Описание апстрим-провайдера Chat Completions для прокси.

    - endpoint: полный URL chat/completions
    - max_tokens_ceiling / default_max_tokens: допустимый диапазон и значение по умолчанию
    - defaults: значения для незаданных параметров сэмплинга
    - allowed_params: белый список полей (None — передавать всё тело)
    - overrides: поля, принудительно заменяющие присланные клиентом (модель, stream)
    - retry_statuses: коды, считающиеся временным сбоем
    - timeout: таймаут одной попытки, секунды
    """
    name: str
    endpoint: str
    max_tokens_ceiling: int = 8192
    default_max_tokens: int = 4096
    defaults: Dict[str, Any] = field(default_factory=dict)
    allowed_params: Optional[Tuple[str, ...]] = None
    overrides: Dict[str, Any] = field(default_factory=dict)
    retry_statuses: FrozenSet[int] = frozenset({502})
    max_attempts: int = 3
    backoff_unit: float = 2.0
    timeout: float = 120.0
    label: str = ""


def fireworks_profile(base_url: str = FIREWORKS_BASE_URL) -> ProviderProfile:
    """Основной прокси Fireworks: широкий потолок max_tokens и дефолты сэмплинга."""
    return ProviderProfile(
        name="Fireworks",
        endpoint=f"{base_url}/chat/completions",
        max_tokens_ceiling=40_000,
        default_max_tokens=4008,
        defaults={
            "top_p": 1,
            "top_k": 40,
            "presence_penalty": 0,
            "frequency_penalty": 0,
            "temperature": 0.6,
        },
        retry_statuses=frozenset({502}),
        timeout=120.0,
    )


def fallback_profile(base_url: str = FIREWORKS_BASE_URL) -> ProviderProfile:
    """Резервный прокси Fireworks: урезанный набор параметров, без стрима."""
    return ProviderProfile(
        name="Fireworks",
        endpoint=f"{base_url}/chat/completions",
        max_tokens_ceiling=8192,
        default_max_tokens=4096,
        overrides={"stream": False},
        allowed_params=("model", "messages", "max_tokens", "temperature", "top_p", "stream"),
        retry_statuses=frozenset({502}),
        timeout=50.0,
        label="[FALLBACK] ",
    )


def streaming_profile(base_url: str = FIREWORKS_BASE_URL) -> ProviderProfile:
    """Потоковый прокси Fireworks (ретраев нет: заголовки уже отправлены клиенту)."""
    return ProviderProfile(
        name="Fireworks",
        endpoint=f"{base_url}/chat/completions",
        max_tokens_ceiling=8192,
        default_max_tokens=4096,
        allowed_params=("model", "messages", "max_tokens", "temperature", "top_p", "stream"),
        overrides={"stream": True},
        max_attempts=1,
        timeout=60.0,
    )


def deepseek_profile(base_url: str = DEEPSEEK_BASE_URL) -> ProviderProfile:
    """DeepSeek V3: модель принудительно deepseek-chat, ретраи на 502 и 503."""
    return ProviderProfile(
        name="DeepSeek",
        endpoint=f"{base_url}/chat/completions",
        max_tokens_ceiling=8192,
        default_max_tokens=4096,
        allowed_params=(
            "model", "messages", "max_tokens", "temperature", "top_p",
            "n", "stream", "stop", "presence_penalty", "frequency_penalty",
        ),
        overrides={"model": "deepseek-chat"},
        retry_statuses=frozenset({502, 503}),
        timeout=150.0,
    )
