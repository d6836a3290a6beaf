"""Retry and error classification for embedding API calls."""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, TypeVar

from ..errors import EmbeddingError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorCategory(Enum):
    """Classification of errors for retry behavior."""

    TRANSIENT = "transient"  # Retry with backoff
    RATE_LIMITED = "rate_limited"  # Retry, honouring Retry-After
    PERMANENT = "permanent"  # Give up
    AUTH_FAILURE = "auth_failure"  # Give up, bad key


def _extract_status_code(error: Exception) -> int | None:
    """Extract HTTP status code from various exception types."""
    # urllib.error.HTTPError
    if hasattr(error, "code"):
        code = getattr(error, "code")
        if isinstance(code, int):
            return code

    if hasattr(error, "status_code"):
        code = getattr(error, "status_code")
        if isinstance(code, int):
            return code

    if hasattr(error, "response"):
        response = getattr(error, "response")
        if response is not None and hasattr(response, "status_code"):
            return response.status_code

    return None


def _extract_retry_after(error: Exception) -> float | None:
    """Extract Retry-After header value from error if present."""
    headers = getattr(error, "headers", None)
    if headers is None and getattr(error, "response", None) is not None:
        headers = getattr(error.response, "headers", None)
    if headers is not None:
        retry_after = headers.get("Retry-After")
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                pass
    return None


def classify_error(error: Exception) -> ErrorCategory:
    """Classify exception into retry behavior category."""
    if isinstance(error, EmbeddingError):
        # Raised by our own response validation
        return ErrorCategory.PERMANENT

    status = _extract_status_code(error)

    if status:
        if status == 429:
            return ErrorCategory.RATE_LIMITED
        if status in (401, 403):
            return ErrorCategory.AUTH_FAILURE
        if status in (400, 404, 422):
            return ErrorCategory.PERMANENT
        if status >= 500:
            return ErrorCategory.TRANSIENT

    if isinstance(error, json.JSONDecodeError):
        return ErrorCategory.PERMANENT

    error_type = type(error).__name__
    error_msg = str(error).lower()

    connection_types = ("Connection", "Timeout", "Socket", "URLError", "Network")
    if any(x in error_type for x in connection_types):
        return ErrorCategory.TRANSIENT

    connection_msgs = ("connection", "timeout", "timed out", "reset", "refused", "unreachable")
    if any(x in error_msg for x in connection_msgs):
        return ErrorCategory.TRANSIENT

    # Unknown errors → TRANSIENT (safer to retry)
    return ErrorCategory.TRANSIENT


@dataclass
class RetryPolicy:
    """Run a blocking call with retries and exponential backoff.

    Waits 1s, 2s, 4s (scaled by backoff_base_s) between attempts, or the
    server's Retry-After on 429. Raises EmbeddingError when out of attempts.
    """

    provider: str = "unknown"
    max_retries: int = 3
    backoff_base_s: float = 1.0
    sleep: Callable[[float], None] = time.sleep

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        for attempt in range(self.max_retries + 1):
            try:
                result = fn(*args, **kwargs)
                if attempt > 0:
                    logger.debug(f"[{self.provider}] succeeded on retry {attempt}")
                return result

            except Exception as e:
                category = classify_error(e)
                self._log_error(e, category, attempt)

                if category in (ErrorCategory.PERMANENT, ErrorCategory.AUTH_FAILURE):
                    raise EmbeddingError(f"[{self.provider}] {type(e).__name__}: {e}") from e

                if attempt >= self.max_retries:
                    raise EmbeddingError(
                        f"[{self.provider}] giving up after {self.max_retries} retries: {type(e).__name__}: {e}"
                    ) from e

                wait = self._get_backoff(e, category, attempt)
                logger.info(
                    f"[{self.provider}] Retry {attempt + 1}/{self.max_retries}: "
                    f"{type(e).__name__} (waiting {wait:.1f}s)"
                )
                self.sleep(wait)

        raise EmbeddingError(f"[{self.provider}] no attempts made")

    def _get_backoff(self, error: Exception, category: ErrorCategory, attempt: int) -> float:
        """Calculate backoff time, respecting Retry-After header."""
        if category == ErrorCategory.RATE_LIMITED:
            retry_after = _extract_retry_after(error)
            if retry_after:
                logger.info(f"[{self.provider}] Using Retry-After header: {retry_after}s")
                return retry_after
        return self.backoff_base_s * (2 ** attempt)

    def _log_error(self, error: Exception, category: ErrorCategory, attempt: int) -> None:
        status = _extract_status_code(error)
        status_str = f" ({status})" if status else ""
        error_type = type(error).__name__
        context = f"[{self.provider}]{status_str}"

        if category == ErrorCategory.AUTH_FAILURE:
            logger.error(f"{context}: Auth failed - {error_type}. Check the API key.")
        elif category == ErrorCategory.PERMANENT:
            logger.warning(f"{context}: Not retrying - {error_type}: {error}")
        elif category == ErrorCategory.RATE_LIMITED:
            logger.info(f"{context}: Rate limited (429)")
        elif attempt == 0:
            logger.warning(f"{context}: {error_type}: {error}")
        else:
            logger.debug(f"{context}: Retry {attempt} failed - {error_type}")
