"""Bounded retry helpers built on tenacity.

Only idempotent reads go through here. Writes are never retried: a timed-out
write surfaces as :class:`hallbook.errors.Timeout` and the caller decides.
"""
from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import (
    RetryCallState,
    Retrying,
    before_sleep_log,
    retry_if_exception,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from .config import get_settings
from .errors import Timeout, is_transient_store_error

logger = logging.getLogger(__name__)

T = TypeVar("T")
F = TypeVar("F", bound=Callable[..., Any])


def _lookup_exhausted(state: RetryCallState) -> None:
    outcome = state.outcome
    if outcome is not None and outcome.failed:
        raise Timeout("The data store did not respond in time") from outcome.exception()
    return None


def lookup_with_backoff(
    fetch: Callable[[], Optional[T]],
    *,
    attempts: Optional[int] = None,
    backoff: Optional[float] = None,
    on_retry: Optional[Callable[[], None]] = None,
) -> Optional[T]:
    """Call ``fetch`` until it returns something other than ``None``.

    Used for rows that are written by another component and may lag behind
    the event that announced them (a freshly signed-up user's profile).
    Returns ``None`` once attempts are exhausted.
    """

    settings = get_settings()
    multiplier = settings.profile_lookup_backoff_seconds if backoff is None else backoff

    def _before_sleep(state: RetryCallState) -> None:
        logger.info("Lookup attempt %s came back empty, retrying", state.attempt_number)
        if on_retry is not None:
            on_retry()

    retryer = Retrying(
        stop=stop_after_attempt(attempts or settings.profile_lookup_attempts),
        wait=wait_exponential(multiplier=multiplier, max=10),
        retry=retry_if_result(lambda value: value is None) | retry_if_exception(is_transient_store_error),
        before_sleep=_before_sleep,
        retry_error_callback=_lookup_exhausted,
    )
    return retryer(fetch)


def _session_from(args: tuple, kwargs: dict) -> Optional[Session]:
    candidate = kwargs.get("db", args[0] if args else None)
    return candidate if isinstance(candidate, Session) else None


def retry_reads(func: F) -> F:
    """Retry a read-only domain function on transient store errors.

    The wrapped function must take the SQLAlchemy session as ``db`` (first
    positional argument or keyword). The session is rolled back between
    attempts so the next one starts a fresh transaction.
    """

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        settings = get_settings()
        db = _session_from(args, kwargs)

        log_retry = before_sleep_log(logger, logging.WARNING)

        def _reset(state: RetryCallState) -> None:
            log_retry(state)
            if db is not None:
                db.rollback()

        retryer = Retrying(
            stop=stop_after_attempt(settings.read_retry_attempts),
            wait=wait_exponential(multiplier=settings.read_retry_backoff_seconds, max=2),
            retry=retry_if_exception(is_transient_store_error),
            before_sleep=_reset,
            reraise=True,
        )
        try:
            return retryer(func, *args, **kwargs)
        except SQLAlchemyError as exc:
            if is_transient_store_error(exc):
                raise Timeout("The data store did not respond in time", {"operation": func.__name__}) from exc
            raise

    return wrapper  # type: ignore[return-value]
