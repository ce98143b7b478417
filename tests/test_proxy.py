"""
Тесты прокси Chat Completions: нормализация параметров и повторы.

HTTP подменяется httpx.MockTransport, сон между попытками — фейковым
(задержки складываются в список и проверяются).

Запуск тестов:
  pytest -q tests/test_proxy.py
"""

import asyncio
import math
from typing import Any, Dict, List

import httpx
import pytest

from conftest import mock_http_client
from rag_gateway.config import deepseek_profile, fallback_profile, fireworks_profile
from rag_gateway.errors import (
    InvalidRequestError,
    UpstreamPermanentError,
    UpstreamTimeout,
    UpstreamTransientError,
    UpstreamUnavailable,
)
from rag_gateway.proxy import (
    ResilientProxy,
    clamp_max_tokens,
    detect_reasoning_method,
    forward_with_metrics,
    normalize_request,
)
from rag_gateway.retry import RetryPolicy, exponential_backoff, linear_backoff

OK_BODY = {"choices": [{"message": {"content": "hi"}}], "usage": {"total_tokens": 3}}
MESSAGES = [{"role": "user", "content": "hello"}]


def _proxy(profile, responses: List[Any], calls: List[Dict[str, Any]], fake_sleep, hints=None) -> ResilientProxy:
    policy = RetryPolicy(
        max_attempts=profile.max_attempts,
        retry_statuses=profile.retry_statuses,
        backoff=linear_backoff(profile.backoff_unit),
        sleep=fake_sleep,
    )
    return ResilientProxy(profile, "test-key", mock_http_client(responses, calls), policy=policy, error_hints=hints)


@pytest.mark.parametrize(
    "requested, expected",
    [(0, 1), (-5, 1), (50_000, 40_000), (40_000, 40_000), (1234, 1234), (None, 4008), (12.7, 12)],
)
def test_clamp_max_tokens_fireworks(requested, expected) -> None:
    assert clamp_max_tokens(requested, fireworks_profile()) == expected


def test_clamp_max_tokens_rejects_non_numbers() -> None:
    with pytest.raises(InvalidRequestError):
        clamp_max_tokens("a lot", fireworks_profile())
    with pytest.raises(InvalidRequestError):
        clamp_max_tokens(True, fireworks_profile())


@pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf])
def test_clamp_max_tokens_rejects_non_finite(value) -> None:
    with pytest.raises(InvalidRequestError):
        clamp_max_tokens(value, fireworks_profile())


def test_normalize_fills_defaults_and_keeps_extra_fields() -> None:
    params = normalize_request({"model": "m", "messages": MESSAGES, "temperature": 0.2, "user": "u1"}, fireworks_profile())

    assert params["temperature"] == 0.2
    assert params["top_p"] == 1
    assert params["top_k"] == 40
    assert params["presence_penalty"] == 0
    assert params["max_tokens"] == 4008
    assert params["user"] == "u1"


def test_normalize_fallback_whitelist_and_stream_override() -> None:
    body = {"model": "m", "messages": MESSAGES, "max_tokens": 9000, "stream": True, "top_k": 5, "seed": 1}
    params = normalize_request(body, fallback_profile())

    assert params == {"model": "m", "messages": MESSAGES, "max_tokens": 8192, "stream": False}


def test_normalize_deepseek_forces_model_and_drops_none() -> None:
    params = normalize_request({"model": "gpt-4", "messages": MESSAGES, "stop": None}, deepseek_profile())

    assert params["model"] == "deepseek-chat"
    assert "stop" not in params
    assert params["max_tokens"] == 4096


def test_normalize_rejects_non_object() -> None:
    with pytest.raises(InvalidRequestError):
        normalize_request(["not", "an", "object"], fireworks_profile())


@pytest.mark.parametrize(
    "content, expected",
    [
        ("Use Chain of Draft reasoning", "CoD"),
        ("Think step by step (Chain of Thought)", "CoT"),
        ("You are helpful", "Standard"),
    ],
)
def test_detect_reasoning_method(content, expected) -> None:
    assert detect_reasoning_method([{"role": "system", "content": content}]) == expected


def test_detect_reasoning_method_without_messages() -> None:
    assert detect_reasoning_method(None) == "Standard"
    assert detect_reasoning_method([]) == "Standard"


@pytest.mark.asyncio
async def test_success_on_first_attempt(fake_sleep, sleeps) -> None:
    calls: List[Dict[str, Any]] = []
    proxy = _proxy(fireworks_profile(), [httpx.Response(200, json=OK_BODY)], calls, fake_sleep)

    data = await proxy.forward({"model": "m", "messages": MESSAGES, "max_tokens": 0})

    assert data == OK_BODY
    assert len(calls) == 1
    assert sleeps == []
    assert calls[0]["url"] == "https://api.fireworks.ai/inference/v1/chat/completions"
    assert calls[0]["headers"]["authorization"] == "Bearer test-key"
    assert calls[0]["json"]["max_tokens"] == 1


@pytest.mark.asyncio
async def test_retries_502_with_linear_backoff(fake_sleep, sleeps) -> None:
    calls: List[Dict[str, Any]] = []
    responses = [
        httpx.Response(502, text="bad gateway"),
        httpx.Response(502, text="bad gateway"),
        httpx.Response(200, json=OK_BODY),
    ]
    proxy = _proxy(fireworks_profile(), responses, calls, fake_sleep)

    data = await proxy.forward({"model": "m", "messages": MESSAGES})

    assert data == OK_BODY
    assert len(calls) == 3
    assert sleeps == [2.0, 4.0]


@pytest.mark.asyncio
async def test_exhausted_502_raises_transient_error(fake_sleep, sleeps) -> None:
    calls: List[Dict[str, Any]] = []
    responses = [httpx.Response(502, json={"error": {"message": "upstream down"}})] * 3
    proxy = _proxy(fireworks_profile(), responses, calls, fake_sleep)

    with pytest.raises(UpstreamTransientError) as exc_info:
        await proxy.forward({"model": "m", "messages": MESSAGES})

    assert len(calls) == 3
    assert sleeps == [2.0, 4.0]
    err = exc_info.value
    assert err.status_code == 502
    assert err.message == "upstream down"
    assert err.to_body()["error"] == "Fireworks API error: 502"


@pytest.mark.asyncio
async def test_client_error_is_not_retried(fake_sleep, sleeps) -> None:
    calls: List[Dict[str, Any]] = []
    responses = [httpx.Response(400, json={"error": {"message": "max_tokens is too large"}})]
    proxy = _proxy(fireworks_profile(), responses, calls, fake_sleep)

    with pytest.raises(UpstreamPermanentError) as exc_info:
        await proxy.forward({"model": "m", "messages": MESSAGES})

    assert len(calls) == 1
    assert sleeps == []
    assert exc_info.value.status_code == 400
    assert "between 1 and 40000" in exc_info.value.message


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, fragment",
    [(401, "Authentication failed"), (429, "Rate limit exceeded")],
)
async def test_auth_and_rate_limit_messages(fake_sleep, status, fragment) -> None:
    calls: List[Dict[str, Any]] = []
    proxy = _proxy(fireworks_profile(), [httpx.Response(status, text="nope")], calls, fake_sleep)

    with pytest.raises(UpstreamPermanentError) as exc_info:
        await proxy.forward({"model": "m", "messages": MESSAGES})

    assert exc_info.value.status_code == status
    assert fragment in exc_info.value.message
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_fallback_label_prefix(fake_sleep) -> None:
    calls: List[Dict[str, Any]] = []
    proxy = _proxy(fallback_profile(), [httpx.Response(404, text="")], calls, fake_sleep)

    with pytest.raises(UpstreamPermanentError) as exc_info:
        await proxy.forward({"model": "m", "messages": MESSAGES})

    assert exc_info.value.label == "[FALLBACK] Fireworks API error: 404"


@pytest.mark.asyncio
async def test_deepseek_retries_503_and_forces_model(fake_sleep, sleeps) -> None:
    calls: List[Dict[str, Any]] = []
    responses = [httpx.Response(503, text="busy"), httpx.Response(200, json=OK_BODY)]
    proxy = _proxy(deepseek_profile(), responses, calls, fake_sleep)

    await proxy.forward({"model": "whatever", "messages": MESSAGES})

    assert len(calls) == 2
    assert sleeps == [2.0]
    assert all(c["json"]["model"] == "deepseek-chat" for c in calls)
    assert calls[0]["url"] == "https://api.deepseek.com/v1/chat/completions"


@pytest.mark.asyncio
async def test_deepseek_error_carries_hints(fake_sleep) -> None:
    calls: List[Dict[str, Any]] = []
    proxy = _proxy(deepseek_profile(), [httpx.Response(401, text="")], calls, fake_sleep, hints=["check key"])

    with pytest.raises(UpstreamPermanentError) as exc_info:
        await proxy.forward({"messages": MESSAGES})

    assert exc_info.value.to_body()["details"] == {"possible_fixes": ["check key"]}


@pytest.mark.asyncio
async def test_network_errors_exhaust_attempts(fake_sleep, sleeps) -> None:
    calls: List[Dict[str, Any]] = []
    proxy = _proxy(fireworks_profile(), [httpx.ConnectError("refused")], calls, fake_sleep)

    with pytest.raises(UpstreamUnavailable) as exc_info:
        await proxy.forward({"model": "m", "messages": MESSAGES})

    assert len(calls) == 3
    assert sleeps == [2.0, 4.0]
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_network_error_then_success(fake_sleep, sleeps) -> None:
    calls: List[Dict[str, Any]] = []
    responses = [httpx.ConnectError("refused"), httpx.Response(200, json=OK_BODY)]
    proxy = _proxy(fireworks_profile(), responses, calls, fake_sleep)

    assert await proxy.forward({"model": "m", "messages": MESSAGES}) == OK_BODY
    assert sleeps == [2.0]


@pytest.mark.asyncio
async def test_hanging_upstream_times_out(fake_sleep, sleeps) -> None:
    async def hang() -> httpx.Response:
        await asyncio.sleep(10)
        return httpx.Response(200, json=OK_BODY)

    calls: List[Dict[str, Any]] = []
    profile = fireworks_profile()
    profile.timeout = 0.05
    proxy = _proxy(profile, [hang], calls, fake_sleep)

    with pytest.raises(UpstreamTimeout) as exc_info:
        await proxy.forward({"model": "m", "messages": MESSAGES})

    assert len(calls) == 3
    assert exc_info.value.status_code == 504


@pytest.mark.asyncio
async def test_forward_with_metrics_adds_performance(fake_sleep) -> None:
    calls: List[Dict[str, Any]] = []
    proxy = _proxy(fireworks_profile(), [httpx.Response(200, json=dict(OK_BODY))], calls, fake_sleep)
    messages = [{"role": "system", "content": "Use Chain of Draft"}] + MESSAGES

    data = await forward_with_metrics(proxy, {"model": "m", "messages": messages})

    assert data["performance"]["reasoning_method"] == "CoD"
    assert data["performance"]["response_time_ms"] >= 0
    assert data["choices"] == OK_BODY["choices"]


@pytest.mark.asyncio
async def test_retry_policy_single_attempt_never_sleeps(fake_sleep, sleeps) -> None:
    policy = RetryPolicy(max_attempts=1, sleep=fake_sleep)

    async def call(attempt: int) -> httpx.Response:
        return httpx.Response(502)

    response = await policy.run(call)

    assert response.status_code == 502
    assert sleeps == []


@pytest.mark.asyncio
async def test_retry_policy_reraises_last_exception(fake_sleep, sleeps) -> None:
    policy = RetryPolicy(max_attempts=2, backoff=exponential_backoff(1.0), sleep=fake_sleep)
    attempts: List[int] = []

    async def call(attempt: int) -> httpx.Response:
        attempts.append(attempt)
        raise httpx.ReadError("reset by peer")

    with pytest.raises(httpx.ReadError):
        await policy.run(call)

    assert attempts == [1, 2]
    assert sleeps == [1.0]


def test_exponential_backoff_is_capped() -> None:
    backoff = exponential_backoff(2.0, cap=5.0)
    assert [backoff(n) for n in (1, 2, 3, 4)] == [2.0, 4.0, 5.0, 5.0]


@pytest.mark.asyncio
async def test_attempt_timeout_overrides_client_default() -> None:
    seen: List[Dict[str, Any]] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.extensions["timeout"])
        return httpx.Response(200, json=OK_BODY)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    assert client.timeout.read == 5.0

    proxy = ResilientProxy(deepseek_profile(), "test-key", client)
    await proxy.forward({"messages": MESSAGES})

    assert seen[0]["read"] == 150.0
    assert seen[0]["connect"] == 150.0
