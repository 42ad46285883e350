from __future__ import annotations

import asyncio
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Optional,
    Type,
    TypeVar,
)

import pydantic_core
from pydantic import BaseModel, ValidationError

from libs.core import logging as core_logging
from libs.core.llm_provider import LLMProvider, LLMProviderError
from libs.core.retry import RetryExhaustedError, RetryPolicy, retry_with_backoff

from .errors import GenerationFailed

T = TypeVar("T", bound=BaseModel)

Emit = Callable[[Dict[str, Any]], Awaitable[None]]

LOGGER = core_logging.get_logger("summaries")

_DONE = object()


class GenerationOutputError(Exception):
    pass


_RETRYABLE = (LLMProviderError, GenerationOutputError, ValidationError, asyncio.TimeoutError)


def extract_json(text: str) -> str:
    if not text:
        return ""
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.strip("`")
    start = stripped.find("{")
    end = stripped.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return ""
    return stripped[start : end + 1]


def parse_partial_object(text: str) -> Optional[Dict[str, Any]]:
    start = text.find("{")
    if start == -1:
        return None
    try:
        value = pydantic_core.from_json(text[start:], allow_partial="trailing-strings")
    except ValueError:
        return None
    if isinstance(value, dict) and value:
        return value
    return None


def validate_output(content: str, output_model: Type[T]) -> T:
    json_text = extract_json(content)
    if not json_text:
        raise GenerationOutputError("model output did not contain a JSON object")
    return output_model.model_validate_json(json_text)


async def _bounded(awaitable: Awaitable[Any], timeout_s: Optional[float]) -> Any:
    if timeout_s is None or timeout_s <= 0:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout=timeout_s)


class GenerationStream(Generic[T]):
    """Incremental generation result with two channels.

    ``partial_objects()`` yields cumulative snapshots (each one replaces the
    previous view); ``final()`` resolves to the validated object or raises
    ``GenerationFailed``. Generation starts on first use of either channel.
    """

    def __init__(self, run: Callable[[Emit], Awaitable[T]]) -> None:
        self._run = run
        self._queue: Optional[asyncio.Queue[Any]] = None
        self._task: Optional[asyncio.Task[T]] = None

    def _ensure_started(self) -> asyncio.Task[T]:
        if self._task is None:
            queue: asyncio.Queue[Any] = asyncio.Queue()
            self._queue = queue
            self._task = asyncio.ensure_future(self._run(queue.put))
            self._task.add_done_callback(self._on_done)
        return self._task

    def _on_done(self, task: asyncio.Task[T]) -> None:
        if not task.cancelled():
            # Retrieved here so an unobserved failure is not reported by the loop.
            task.exception()
        assert self._queue is not None
        self._queue.put_nowait(_DONE)

    async def partial_objects(self) -> AsyncIterator[Dict[str, Any]]:
        self._ensure_started()
        assert self._queue is not None
        while True:
            item = await self._queue.get()
            if item is _DONE:
                return
            yield item

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return self.partial_objects()

    async def final(self) -> T:
        return await self._ensure_started()

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()


class GenerationEngine:
    def __init__(
        self,
        provider: LLMProvider,
        *,
        policy: Optional[RetryPolicy] = None,
        timeout_s: Optional[float] = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.policy = policy or RetryPolicy()
        self.timeout_s = timeout_s
        self._sleep = sleep

    async def generate(self, prompt: str, output_model: Type[T]) -> T:
        schema = output_model.model_json_schema(by_alias=True)
        name = output_model.__name__

        async def attempt(model: Optional[str]) -> T:
            response = await _bounded(
                self.provider.generate(prompt, schema=schema, schema_name=name, model=model),
                self.timeout_s,
            )
            return validate_output(response.content, output_model)

        return await self._with_retries(attempt, name, mode="buffered")

    def generate_stream(self, prompt: str, output_model: Type[T]) -> GenerationStream[T]:
        schema = output_model.model_json_schema(by_alias=True)
        name = output_model.__name__

        async def run(emit: Emit) -> T:
            async def attempt(model: Optional[str]) -> T:
                return await self._stream_once(prompt, schema, name, output_model, emit, model)

            return await self._with_retries(attempt, name, mode="stream")

        return GenerationStream(run)

    async def _with_retries(
        self, attempt: Callable[[Optional[str]], Awaitable[T]], name: str, *, mode: str
    ) -> T:
        try:
            result = await retry_with_backoff(
                attempt,
                self.policy,
                retry_on=_RETRYABLE,
                sleep=self._sleep,
                label=f"{mode}:{name}",
            )
        except RetryExhaustedError as exc:
            LOGGER.error(
                "generation_failed",
                output=name,
                mode=mode,
                attempts=exc.attempts,
                error_type=exc.last_error.__class__.__name__,
            )
            raise GenerationFailed() from exc
        LOGGER.info("generation_succeeded", output=name, mode=mode)
        return result

    async def _stream_once(
        self,
        prompt: str,
        schema: Dict[str, Any],
        name: str,
        output_model: Type[T],
        emit: Emit,
        model: Optional[str],
    ) -> T:
        buffer = ""
        last: Optional[Dict[str, Any]] = None
        iterator = self.provider.stream(prompt, schema=schema, schema_name=name, model=model).__aiter__()
        try:
            while True:
                try:
                    delta = await _bounded(iterator.__anext__(), self.timeout_s)
                except StopAsyncIteration:
                    break
                buffer += delta
                partial = parse_partial_object(buffer)
                if partial is not None and partial != last:
                    last = partial
                    await emit(partial)
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
        return validate_output(buffer, output_model)
