from __future__ import annotations

import logging
import os
from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from services.api.app.checkout.errors import NetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _is_retryable_network_error(exc: BaseException) -> bool:
    return isinstance(exc, NetworkError) and exc.retryable


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning("Retrying %s after attempt %s: %s", state.fn, state.attempt_number, exc)


def retry_idempotent(call: Callable[[], T]) -> T:
    """Run an idempotent remote call, retrying transient network failures.

    Bounded by UNICLIMA_RETRY_ATTEMPTS (default 3) with exponential backoff starting at
    UNICLIMA_RETRY_WAIT_SECONDS (default 0.5). Only for requests that are safe to repeat;
    payment calls must never go through here.
    """

    attempts = max(1, int(os.getenv("UNICLIMA_RETRY_ATTEMPTS", "3")))
    base_wait = float(os.getenv("UNICLIMA_RETRY_WAIT_SECONDS", "0.5"))

    retrying = Retrying(
        retry=retry_if_exception(_is_retryable_network_error),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=base_wait, max=8),
        before_sleep=_log_retry,
        reraise=True,
    )
    return retrying(call)
