"""
Async retry with exponential backoff and jitter.

Built on tenacity's ``AsyncRetrying`` so the sync client decorators and the
async orchestrator share one retry library. Only exceptions classified as
``ErrorClass.RETRYABLE`` are retried by default. Callers wrapping
``DataverseClient`` methods pass ``retry_on=is_retryable_after_client`` so a
transient failure is retried by one layer only.

Usage:
    from core.deployment.retry import retry_with_backoff

    result = await retry_with_backoff(
        lambda: asyncio.to_thread(client.create_entity, metadata),
        operation_name="create cr123_customer",
    )
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from constants import DeploymentDefaults
from ..dataverse_client import DataverseAPIError, ErrorClass, TransientAPIError, classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]


def is_retryable(exception: BaseException) -> bool:
    return classify_error(exception) == ErrorClass.RETRYABLE


def is_retryable_after_client(exception: BaseException) -> bool:
    """
    Retryable errors that ``DataverseClient`` has not already retried.

    The client retries ``TransientAPIError`` (throttling, 503, timeouts and
    dropped connections) with its own policy, so those are excluded here.
    """
    return not isinstance(exception, TransientAPIError) and is_retryable(exception)


def is_batch_retryable(exception: BaseException) -> bool:
    """Any API error other than a transient one the client already retried."""
    return isinstance(exception, DataverseAPIError) and not isinstance(exception, TransientAPIError)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = DeploymentDefaults.MAX_RETRIES,
    base_delay: float = DeploymentDefaults.BASE_DELAY_SECONDS,
    max_delay: float = DeploymentDefaults.MAX_DELAY_SECONDS,
    jitter: float = DeploymentDefaults.JITTER_SECONDS,
    retry_on: Callable[[BaseException], bool] = is_retryable,
    sleep: Optional[SleepFunc] = None,
    operation_name: str = "operation",
) -> T:
    """
    Await ``operation()`` until it succeeds or attempts run out.

    Delays are ``min(base * 2**(n-1), cap)`` plus up to ``jitter`` seconds.
    The last exception is re-raised unchanged.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, max=max_delay) + wait_random(0, jitter),
        retry=retry_if_exception(retry_on),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        sleep=sleep or asyncio.sleep,
        reraise=True,
    )
    result = None
    async for attempt in retrying:
        with attempt:
            if attempt.retry_state.attempt_number > 1:
                logger.info(f"Retrying {operation_name} (attempt {attempt.retry_state.attempt_number}/{max_attempts})")
            result = await operation()
    return result
