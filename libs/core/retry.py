from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from libs.core import logging as core_logging
from libs.core.llm_provider import LLMModelUnavailableError, LLMRateLimitError

T = TypeVar("T")

LOGGER = core_logging.get_logger("retry")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 1.0
    fallback_model: Optional[str] = None
    rate_limit_delay_s: float = 5.0

    def delay_for(self, attempt: int, error: BaseException) -> float:
        base = self.rate_limit_delay_s if isinstance(error, LLMRateLimitError) else self.base_delay_s
        return base * (2**attempt)


class RetryExhaustedError(Exception):
    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"operation failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def _model_for_attempt(
    policy: RetryPolicy, attempt: int, primary_unavailable: bool
) -> Optional[str]:
    if not policy.fallback_model:
        return None
    if primary_unavailable:
        return policy.fallback_model
    # The last attempt always goes to the fallback model.
    if policy.max_attempts > 1 and attempt == policy.max_attempts - 1:
        return policy.fallback_model
    return None


async def retry_with_backoff(
    operation: Callable[[Optional[str]], Awaitable[T]],
    policy: RetryPolicy,
    *,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or the policy is exhausted.

    ``operation`` receives the model override for the attempt: ``None`` means
    the primary model, otherwise the policy's fallback model. Errors outside
    ``retry_on`` propagate immediately.
    """
    attempts = max(1, policy.max_attempts)
    primary_unavailable = False
    last_error: BaseException | None = None
    for attempt in range(attempts):
        model = _model_for_attempt(policy, attempt, primary_unavailable)
        try:
            return await operation(model)
        except retry_on as exc:
            last_error = exc
            if isinstance(exc, LLMModelUnavailableError) and model is None:
                primary_unavailable = True
            LOGGER.warning(
                "retry_attempt_failed",
                label=label,
                attempt=attempt + 1,
                max_attempts=attempts,
                model_override=model,
                error_type=exc.__class__.__name__,
                error=str(exc)[:300],
            )
            if attempt < attempts - 1:
                await sleep(policy.delay_for(attempt, exc))
    assert last_error is not None
    raise RetryExhaustedError(attempts, last_error) from last_error
