import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence, TypeVar

from facturas.core import config

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(Exception):
    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"Sin éxito tras {attempts} intentos: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def is_rate_limit_error(
    exc: BaseException, markers: Sequence[str] = config.RATE_LIMIT_MARKERS
) -> bool:
    """Rate-limit and quota signals are the only failures worth retrying."""
    for attr in ("status_code", "status", "code"):
        if getattr(exc, attr, None) in (429, "429"):
            return True
    text = str(exc).lower()
    return any(marker in text for marker in markers)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = config.EXTRACTION_RETRY_ATTEMPTS
    delay_seconds: float = config.EXTRACTION_RETRY_DELAY_SECONDS
    backoff: float = config.EXTRACTION_RETRY_BACKOFF
    is_transient: Callable[[BaseException], bool] = is_rate_limit_error
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def call(
        self,
        fn: Callable[..., T],
        *args,
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
        **kwargs,
    ) -> T:
        """
        Run ``fn`` and retry transient failures.

        Non-transient errors propagate unchanged on the first occurrence.
        Once ``max_attempts`` transient failures have happened the last one
        is wrapped in RetryExhaustedError. ``on_retry(attempt, exc)`` is
        called before each wait.
        """
        delay = self.delay_seconds
        attempt = 1
        while True:
            try:
                return fn(*args, **kwargs)
            except Exception as exc:
                if not self.is_transient(exc):
                    raise
                if attempt >= self.max_attempts:
                    raise RetryExhaustedError(attempt, exc) from exc
                logger.warning(
                    "Transient extraction error (attempt %s/%s), retrying in %.1fs: %s",
                    attempt,
                    self.max_attempts,
                    delay,
                    exc,
                )
                if on_retry is not None:
                    on_retry(attempt, exc)
                self.sleep(delay)
                delay *= self.backoff
                attempt += 1
