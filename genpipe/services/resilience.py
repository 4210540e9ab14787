"""Timeout + bounded-retry wrapper around a single provider call.

Each attempt races the adapter call and the response drain against
``request.timeout_ms``. Timeouts and transient provider errors are retried
with capped exponential backoff (1s, 2s, 4s, ... up to 10s) for at most
``max_retries + 1`` attempts in total.

Timeouts cancel the awaiting task. SDKs that run their HTTP call on a worker
thread keep that call alive after cancellation; its late response is dropped
and never replaces the result of a later attempt.
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable, Mapping, Optional, Union

import httpx
from google.genai.errors import ClientError, ServerError
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from genpipe.config import Settings
from genpipe.errors import (
    ErrorKind,
    GenerationTimeoutError,
    GenPipeError,
    MalformedResponseError,
    TransientProviderError,
)
from genpipe.schemas.generation import Err, GenerationRequest, Ok, Provider, envelope
from genpipe.services.accumulator import ResponseAccumulator
from genpipe.services.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

_TRANSIENT_MARKERS = ("INTERNAL", "RESOURCE_EXHAUSTED", "Request timeout", "ECONNRESET")


def is_transient(exc: BaseException) -> bool:
    """Return True only for errors worth another attempt (timeouts, 429, 5xx)."""
    if isinstance(exc, (TransientProviderError, TimeoutError)):
        return True
    if isinstance(exc, GenPipeError):
        return False
    if isinstance(exc, ServerError):
        return True
    if isinstance(exc, ClientError):
        return getattr(exc, "code", 0) == 429
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, ConnectionError):
        return True
    message = str(exc)
    return any(marker in message for marker in _TRANSIENT_MARKERS)


class ResilientInvoker:
    """Execute ``GenerationRequest``s against provider adapters.

    Stateless between calls, so one instance can serve any number of
    concurrent ``invoke()`` calls.
    """

    def __init__(
        self,
        adapters: Mapping[Provider, ProviderAdapter],
        accumulator: Optional[ResponseAccumulator] = None,
        *,
        base_delay_ms: int = 1_000,
        max_delay_ms: int = 10_000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Args:
            adapters: Adapter per provider.
            accumulator: Response drainer; a fresh one by default.
            base_delay_ms: Delay before the first retry.
            max_delay_ms: Upper bound for any single backoff delay.
            sleep: Awaitable sleep used between attempts (seconds).
        """
        self._adapters = dict(adapters)
        self._accumulator = accumulator or ResponseAccumulator()
        self._base_delay = base_delay_ms / 1000
        self._max_delay = max_delay_ms / 1000
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "ResilientInvoker":
        """Build an invoker with every registered adapter."""
        from genpipe.services.providers.registry import build_adapters

        return cls(
            build_adapters(settings),
            base_delay_ms=settings.retries.base_delay_ms,
            max_delay_ms=settings.retries.max_delay_ms,
            **kwargs,
        )

    async def invoke(self, request: GenerationRequest) -> Union[Ok, Err]:
        """Run the request; never raises for provider failures."""
        adapter = self._adapters.get(request.provider)
        if adapter is None:
            raise KeyError(f"No adapter registered for {request.provider.value}")

        logger.info(
            "[%s] invoke start (model=%s, timeout=%dms, max_retries=%d)",
            request.provider.value,
            request.model or "default",
            request.timeout_ms,
            request.max_retries,
        )

        result = await self._run(adapter, request)
        record = envelope(request, result)
        if result.is_ok:
            logger.info("[%s] invoke done %s", request.provider.value, json.dumps(record))
        else:
            logger.error("[%s] invoke failed %s", request.provider.value, json.dumps(record))
        return result

    async def _run(self, adapter: ProviderAdapter, request: GenerationRequest) -> Union[Ok, Err]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(request.max_retries + 1),
            wait=wait_exponential(multiplier=self._base_delay, max=self._max_delay),
            retry=retry_if_exception(is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
        )

        attempt_index = 0
        result: Union[Ok, Err, None] = None
        try:
            async for attempt in retrying:
                attempt_index = attempt.retry_state.attempt_number - 1
                with attempt:
                    result = await self._attempt(adapter, request, attempt_index)
        except RetryError as e:
            last_exc = e.last_attempt.exception()
            return Err(
                kind=ErrorKind.EXHAUSTED,
                message=(
                    f"{request.provider.value} failed after {attempt_index + 1} attempt(s): "
                    f"{last_exc}"
                ),
                attempt=attempt_index,
            )
        except Exception as exc:
            kind = exc.kind if isinstance(exc, GenPipeError) else ErrorKind.PROVIDER_ERROR
            return Err(kind=kind, message=str(exc), attempt=attempt_index)

        if result is None:
            raise MalformedResponseError("Retry loop finished without a result")
        return result.model_copy(update={"attempt": attempt_index})

    async def _attempt(
        self, adapter: ProviderAdapter, request: GenerationRequest, attempt_index: int
    ) -> Union[Ok, Err]:
        if attempt_index > 0:
            logger.info(
                "[%s] retry %d/%d", request.provider.value, attempt_index, request.max_retries
            )

        async def _call_and_drain() -> Union[Ok, Err]:
            response = await adapter.call(request)
            return await self._accumulator.accumulate(response)

        try:
            return await asyncio.wait_for(_call_and_drain(), timeout=request.timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            raise GenerationTimeoutError(
                f"{adapter.label} API timeout after {request.timeout_ms}ms"
            ) from e
