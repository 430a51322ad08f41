from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5

# Provider-side hiccups (overloaded RPC backends, rate limits) get a longer back-off.
_HICCUP_MARKERS = ("no backend is currently healthy", "429", "rate")


def is_provider_hiccup(message: str) -> bool:
    lower = str(message or "").lower()
    return any(marker in lower for marker in _HICCUP_MARKERS)


def backoff_seconds(attempt: int, hiccup: bool) -> float:
    """Linear back-off, capped: 5s/attempt up to 30s for hiccups, 2s/attempt up to 10s otherwise."""
    if hiccup:
        return float(min(5 * attempt, 30))
    return float(min(2 * attempt, 10))


def call_with_retry(
    fn: Callable[[], T],
    label: str,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call `fn` until it succeeds or `max_attempts` calls have failed.

    The last exception is re-raised unchanged so callers can decide what a
    failure means for them (e.g. not advancing a scan cursor).
    """
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as e:
            attempt += 1
            msg = str(e) or type(e).__name__
            if attempt >= max_attempts:
                logger.warning("%s failed after %s attempts: %s", label, attempt, msg[:200])
                raise
            hiccup = is_provider_hiccup(msg)
            delay = backoff_seconds(attempt, hiccup)
            logger.debug(
                "%s failed (attempt %s/%s, %s); retrying in %.0fs: %s",
                label,
                attempt,
                max_attempts,
                "provider hiccup" if hiccup else "error",
                delay,
                msg[:200],
            )
            sleep(delay)
