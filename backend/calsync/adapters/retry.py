"""Bounded retry for transient provider failures."""
from __future__ import annotations
import logging
from typing import Callable, Optional, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_backoff = wait_exponential(multiplier=0.5, min=0.5, max=8)


def wait_for_provider(retry_state: RetryCallState) -> float:
    """Exponential backoff, but never shorter than a provider-supplied Retry-After."""
    delay = _backoff(retry_state)
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    retry_after = getattr(exc, "retry_after", None)
    if retry_after:
        delay = max(delay, float(retry_after))
    return delay


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning("transient provider failure (attempt %s): %s", retry_state.attempt_number, exc)


def call_with_retry(
    fn: Callable[[], T],
    max_attempts: int,
    wait: Optional[Callable[[RetryCallState], float]] = None,
) -> T:
    retryer = Retrying(
        retry=retry_if_exception_type(TransientProviderError),
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait or wait_for_provider,
        before_sleep=_log_retry,
        reraise=True,
    )
    return retryer(fn)


def parse_retry_after(raw: Optional[str]) -> Optional[float]:
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None
