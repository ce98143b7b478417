#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from fastapi import Body, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field, SecretStr
from starlette.exceptions import HTTPException as StarletteHTTPException

from rag_gateway.config import (
    EmbeddingConfig,
    LLMConfig,
    Settings,
    VectorStoreConfig,
    deepseek_profile,
    fallback_profile,
    fireworks_profile,
    secret_value,
    streaming_profile,
)
from rag_gateway.engine import RAGOrchestrator
from rag_gateway.errors import ConfigurationError, GatewayError
from rag_gateway.llm import ChatGenerator, Embedder
from rag_gateway.logger import get_logger
from rag_gateway.proxy import ResilientProxy, forward_with_metrics
from rag_gateway.search import WebSearchClient
from rag_gateway.streaming import QueueSink, StreamingRelay
from rag_gateway.vectorstore import ConnectionCache, Retriever

logger = get_logger(__name__)
settings = Settings()

NO_CACHE_HEADERS = {"Cache-Control": "no-cache, no-store, must-revalidate"}

DEEPSEEK_ERROR_HINTS = [
    "Verify the API key is correct in your environment",
    "Ensure your DeepSeek API subscription is active",
    "Try reducing max_tokens if you're getting timeout errors",
]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    client: Optional[httpx.AsyncClient] = getattr(app.state, "http_client", None)
    if client is not None:
        await client.aclose()
    cache: Optional[ConnectionCache] = getattr(app.state, "connection_cache", None)
    if cache is not None:
        cache.reset()


app = FastAPI(title="RAG Gateway (MongoDB + Fireworks/DeepSeek/Perplexity)", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=86400,
)


class RAGRequest(BaseModel):
    """Тело RAG-запроса.

    collectionName и modelName необязательны: по умолчанию берутся
    коллекция и модель эмбеддингов из настроек.
    """
    model_config = ConfigDict(populate_by_name=True)

    query: Optional[str] = None
    collection_name: Optional[str] = Field(None, alias="collectionName")
    embedding_model: Optional[str] = Field(None, alias="modelName")
    chat_model: Optional[str] = Field(None, alias="chatModel")


class SearchRequest(BaseModel):
    """Тело запроса веб-поиска."""
    query: Optional[str] = None


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return JSONResponse(exc.to_body(), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if any(e.get("type") == "json_invalid" for e in errors):
        label = "Invalid JSON in request body"
    else:
        label = "Invalid request"
    message = "; ".join(str(e.get("msg")) for e in errors) or label
    return JSONResponse(
        {"error": label, "message": message, "details": jsonable_encoder(errors)},
        status_code=400,
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=exc.headers)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error in %s", request.url.path)
    return JSONResponse({"error": "Internal Server Error", "message": str(exc)}, status_code=500)


def _require_secret(value: Optional[SecretStr], name: str) -> str:
    raw = secret_value(value)
    if not raw:
        logger.error("Missing required environment variable %s", name)
        raise ConfigurationError(f"Please set {name} in your environment variables")
    return raw


def get_http_client() -> httpx.AsyncClient:
    """Общий httpx-клиент процесса (создаётся при первом запросе)."""
    client = getattr(app.state, "http_client", None)
    if client is None:
        client = httpx.AsyncClient()
        app.state.http_client = client
    return client


def get_connection_cache(mongo_uri: str) -> ConnectionCache:
    """Кэш подключения к MongoDB, один на процесс."""
    cache = getattr(app.state, "connection_cache", None)
    if cache is None:
        cache = ConnectionCache(VectorStoreConfig(uri=mongo_uri, db_name=settings.MONGODB_DB_NAME))
        app.state.connection_cache = cache
    return cache


def build_orchestrator(fireworks_key: str, mongo_uri: str) -> RAGOrchestrator:
    """Собирает RAG-оркестратор на общем httpx-клиенте и кэше подключения."""
    openai_client = AsyncOpenAI(
        base_url=settings.FIREWORKS_BASE_URL,
        api_key=fireworks_key,
        max_retries=0,
        http_client=get_http_client(),
    )
    emb_cfg = EmbeddingConfig(
        base_url=settings.FIREWORKS_BASE_URL,
        api_key=fireworks_key,
        model_name=settings.EMBEDDING_MODEL,
    )
    llm_cfg = LLMConfig(
        base_url=settings.FIREWORKS_BASE_URL,
        api_key=fireworks_key,
        model_name=settings.CHAT_MODEL,
    )
    return RAGOrchestrator(
        embedder=Embedder(emb_cfg, client=openai_client),
        retriever=Retriever(get_connection_cache(mongo_uri)),
        generator=ChatGenerator(llm_cfg, client=openai_client),
        default_collection=settings.MONGODB_COLLECTION,
    )


@app.options("/api/{path:path}")
def api_options(path: str) -> Response:
    """OPTIONS без заголовков CORS-preflight: пустой ответ 204."""
    return Response(status_code=204)


@app.get("/health")
def health() -> Dict[str, str]:
    """Простой health-check эндпоинт для мониторинга/оркестраторов."""
    return {"status": "ok"}


@app.post("/api/rag")
async def rag(req: RAGRequest) -> JSONResponse:
    """RAG-ответ по базе знаний MongoDB.

    Сбои стадий не дают 5xx: клиент получает 200 с fallback=true и полем
    error, если что-то деградировало.
    """
    fireworks_key = _require_secret(settings.FIREWORKS_API_KEY, "FIREWORKS_API_KEY")
    mongo_uri = _require_secret(settings.MONGODB_URI, "MONGODB_URI")

    orchestrator = build_orchestrator(fireworks_key, mongo_uri)
    result = await orchestrator.answer(
        req.query,
        collection=req.collection_name,
        embedding_model=req.embedding_model,
        chat_model=req.chat_model,
    )
    return JSONResponse(result.to_dict(), headers=NO_CACHE_HEADERS)


@app.post("/api/proxy")
async def proxy(body: Dict[str, Any] = Body(...)) -> JSONResponse:
    """Прокси Fireworks с ретраями и блоком performance в ответе."""
    api_key = _require_secret(settings.FIREWORKS_API_KEY, "FIREWORKS_API_KEY")
    upstream = ResilientProxy(fireworks_profile(settings.FIREWORKS_BASE_URL), api_key, get_http_client())
    data = await forward_with_metrics(upstream, body)
    return JSONResponse(data, headers=NO_CACHE_HEADERS)


@app.post("/api/fallback-proxy")
async def fallback_proxy(body: Dict[str, Any] = Body(...)) -> JSONResponse:
    """Резервный прокси Fireworks: урезанные параметры, без стрима."""
    api_key = _require_secret(settings.FIREWORKS_API_KEY, "FIREWORKS_API_KEY")
    upstream = ResilientProxy(fallback_profile(settings.FIREWORKS_BASE_URL), api_key, get_http_client())
    data = await upstream.forward(body)
    return JSONResponse(data, headers=NO_CACHE_HEADERS)


@app.post("/api/deepseek")
async def deepseek(body: Dict[str, Any] = Body(...)) -> JSONResponse:
    """Прокси DeepSeek V3 (deepseek-chat) с ретраями на 502/503."""
    api_key = _require_secret(settings.DEEPSEEK_API_KEY, "DEEPSEEK_API_KEY")
    upstream = ResilientProxy(
        deepseek_profile(settings.DEEPSEEK_BASE_URL),
        api_key,
        get_http_client(),
        error_hints=DEEPSEEK_ERROR_HINTS,
    )
    data = await upstream.forward(body)
    return JSONResponse(data, headers=NO_CACHE_HEADERS)


@app.post("/api/streaming-proxy")
async def streaming_proxy(body: Dict[str, Any] = Body(...)) -> StreamingResponse:
    """Потоковый прокси Fireworks: text/event-stream, завершается {"done": true}."""
    api_key = _require_secret(settings.FIREWORKS_API_KEY, "FIREWORKS_API_KEY")
    relay = StreamingRelay(streaming_profile(settings.FIREWORKS_BASE_URL), api_key, get_http_client())

    async def event_stream() -> AsyncIterator[str]:
        sink = QueueSink()
        task = asyncio.create_task(relay.relay(body, sink))
        try:
            async for frame in sink:
                yield frame
        finally:
            if not task.done():
                task.cancel()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.post("/api/search")
async def search(req: SearchRequest) -> JSONResponse:
    """Веб-поиск через Perplexity: ответ и ссылки-источники из текста."""
    api_key = _require_secret(settings.PERPLEXITY_API_KEY, "PERPLEXITY_API_KEY")
    client = WebSearchClient(api_key, get_http_client(), base_url=settings.PERPLEXITY_BASE_URL)
    data = await client.search(req.query)
    return JSONResponse(data, headers=NO_CACHE_HEADERS)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=False)
