"""Tests for ResilientInvoker: deadlines, bounded retries and error tagging."""

import asyncio
import json
import logging

import httpx
import pytest

from conftest import HANG, ScriptedAdapter, image_stream, empty_chunk, text_stream
from genpipe.errors import (
    ErrorKind,
    ExhaustedRetriesError,
    GenerationTimeoutError,
    MalformedResponseError,
    TransientProviderError,
)
from genpipe.schemas.generation import (
    Err,
    GenerationRequest,
    Modality,
    Ok,
    Payload,
    Provider,
)
from genpipe.services.providers.base import BufferedResponse
from genpipe.services.resilience import ResilientInvoker, is_transient


def _request(max_retries=2, timeout_ms=50, modality=Modality.TEXT, provider=Provider.TEXT_MODEL):
    return GenerationRequest(
        provider=provider,
        modality=modality,
        timeout_ms=timeout_ms,
        max_retries=max_retries,
    )


# ---------------------------------------------------------------------------
# Success and attempt tagging
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_first_attempt_success_is_tagged_zero(make_invoker, sleep):
    adapter = ScriptedAdapter(text_stream("hello ", "world"))
    invoker = make_invoker(text_model=adapter)

    result = await invoker.invoke(_request())

    assert isinstance(result, Ok)
    assert result.text == "hello world"
    assert result.attempt == 0
    assert adapter.calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_two_timeouts_then_success(make_invoker, sleep):
    """Two deadline misses, then a response on the third attempt."""
    adapter = ScriptedAdapter(HANG, HANG, text_stream("done"))
    invoker = make_invoker(text_model=adapter)

    result = await invoker.invoke(_request(max_retries=3, timeout_ms=20))

    assert isinstance(result, Ok)
    assert result.attempt == 2
    assert result.text == "done"
    assert adapter.calls == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_transient_errors_are_retried(make_invoker):
    adapter = ScriptedAdapter(
        TransientProviderError("503 overloaded", status=503),
        BufferedResponse(data=b"png", mime_type="image/png"),
    )
    invoker = make_invoker(image_model_b=adapter)

    result = await invoker.invoke(
        _request(modality=Modality.IMAGE, provider=Provider.IMAGE_MODEL_B)
    )

    assert result.is_ok
    assert result.data == b"png"
    assert result.attempt == 1


# ---------------------------------------------------------------------------
# Bounded attempts
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("max_retries", [0, 1, 3])
async def test_at_most_max_retries_plus_one_attempts(make_invoker, max_retries):
    adapter = ScriptedAdapter(TransientProviderError("INTERNAL"))
    invoker = make_invoker(text_model=adapter)

    result = await invoker.invoke(_request(max_retries=max_retries))

    assert isinstance(result, Err)
    assert result.kind == ErrorKind.EXHAUSTED
    assert result.attempt == max_retries
    assert adapter.calls == max_retries + 1


@pytest.mark.asyncio
async def test_backoff_is_capped(make_invoker, sleep):
    adapter = ScriptedAdapter(HANG)
    invoker = make_invoker(text_model=adapter)

    result = await invoker.invoke(_request(max_retries=6, timeout_ms=5))

    assert result.kind == ErrorKind.EXHAUSTED
    assert sleep.delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


@pytest.mark.asyncio
async def test_exhausted_unwrap_raises_with_user_message(make_invoker):
    invoker = make_invoker(text_model=ScriptedAdapter(HANG))

    result = await invoker.invoke(_request(max_retries=1, timeout_ms=5))

    with pytest.raises(ExhaustedRetriesError) as exc_info:
        result.unwrap()
    assert exc_info.value.attempts == 2
    assert "retry" in exc_info.value.user_message.lower()


# ---------------------------------------------------------------------------
# Non-retryable outcomes
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_non_transient_error_stops_immediately(make_invoker, sleep):
    adapter = ScriptedAdapter(ValueError("bad request"))
    invoker = make_invoker(text_model=adapter)

    result = await invoker.invoke(_request(max_retries=3))

    assert isinstance(result, Err)
    assert result.kind == ErrorKind.PROVIDER_ERROR
    assert "bad request" in result.message
    assert adapter.calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_empty_binary_stream_is_malformed_without_retry(make_invoker):
    adapter = ScriptedAdapter(lambda request: image_stream(empty_chunk(), empty_chunk()))
    invoker = make_invoker(image_model_a=adapter)

    result = await invoker.invoke(
        _request(modality=Modality.IMAGE, provider=Provider.IMAGE_MODEL_A)
    )

    assert isinstance(result, Err)
    assert result.kind == ErrorKind.MALFORMED_RESPONSE
    assert adapter.calls == 1
    with pytest.raises(MalformedResponseError):
        result.unwrap()


@pytest.mark.asyncio
async def test_missing_adapter_raises_key_error(make_invoker):
    invoker = make_invoker()
    with pytest.raises(KeyError):
        await invoker.invoke(_request())


@pytest.mark.asyncio
async def test_invocation_logs_json_envelope(make_invoker, caplog):
    invoker = make_invoker(text_model=ScriptedAdapter(text_stream("abc")))

    with caplog.at_level(logging.INFO, logger="genpipe.services.resilience"):
        await invoker.invoke(_request(max_retries=1, timeout_ms=1000))

    done = [r.getMessage() for r in caplog.records if "invoke done" in r.getMessage()]
    assert done
    record = json.loads(done[0].split("invoke done ", 1)[1])
    assert record == {
        "provider": "text-model",
        "modality": "text",
        "timeoutMs": 1000,
        "maxRetries": 1,
        "attempt": 0,
        "status": "ok",
        "mimeType": "text/plain",
        "textLength": 3,
    }


@pytest.mark.asyncio
async def test_invoker_is_reentrant(make_invoker):
    adapter = ScriptedAdapter(lambda request: text_stream(request.payload.prompt))
    invoker = make_invoker(text_model=adapter)

    requests = [
        GenerationRequest(
            provider=Provider.TEXT_MODEL,
            modality=Modality.TEXT,
            payload=Payload(prompt=f"p{i}"),
            timeout_ms=1000,
            max_retries=0,
        )
        for i in range(5)
    ]
    results = await asyncio.gather(*[invoker.invoke(r) for r in requests])

    assert [r.text for r in results] == [f"p{i}" for i in range(5)]


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "exc, expected",
    [
        (TransientProviderError("x"), True),
        (GenerationTimeoutError("x"), True),
        (TimeoutError(), True),
        (ConnectionResetError(), True),
        (httpx.ConnectError("refused"), True),
        (RuntimeError("13 INTERNAL: backend error"), True),
        (RuntimeError("RESOURCE_EXHAUSTED"), True),
        (RuntimeError("read ECONNRESET"), True),
        (RuntimeError("Request timeout"), True),
        (MalformedResponseError("x"), False),
        (ValueError("invalid prompt"), False),
        (FileNotFoundError("refs/hero.png"), False),
        (PermissionError("output dir"), False),
    ],
)
def test_is_transient(exc, expected):
    assert is_transient(exc) is expected


def test_timeout_error_is_also_builtin_timeout():
    assert isinstance(GenerationTimeoutError("x"), TimeoutError)


def test_from_settings_registers_every_provider(settings):
    invoker = ResilientInvoker.from_settings(settings)
    assert set(invoker._adapters) == set(Provider)
