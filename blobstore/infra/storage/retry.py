"""Fixed-attempt, fixed-backoff retry policy for object store calls."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from blobstore.infra.observability.metrics import STORAGE_RETRIES
from blobstore.infra.storage.client import (
    OperationCancelledError,
    TransientTransportError,
)

logger = logging.getLogger("blobstore.storage")

T = TypeVar("T")


def raise_if_cancelled(
    cancel_event: threading.Event | None, operation_name: str
) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelledError(f"{operation_name} was cancelled")


@dataclass(frozen=True)
class RetryPolicy:
    """Runs an operation up to ``attempts`` times.

    Only ``retry_on`` exceptions are retried; anything else propagates on the
    first occurrence. The wait between attempts is constant and there is no
    wait after the final attempt. When every attempt fails the last error is
    re-raised unchanged.
    """

    attempts: int = 3
    backoff_seconds: float = 3.0
    retry_on: tuple[type[BaseException], ...] = (TransientTransportError,)
    sleep: Callable[[float], None] = time.sleep

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must not be negative")

    def run(
        self,
        operation: Callable[[], T],
        *,
        operation_name: str,
        cancel_event: threading.Event | None = None,
    ) -> T:
        last_error: BaseException | None = None
        for attempt in range(1, self.attempts + 1):
            raise_if_cancelled(cancel_event, operation_name)
            try:
                return operation()
            except self.retry_on as exc:
                last_error = exc
                logger.debug(
                    "%s failed (attempt %s/%s): %s",
                    operation_name,
                    attempt,
                    self.attempts,
                    exc,
                    extra={
                        "extra": {
                            "operation": operation_name,
                            "attempt": attempt,
                            "attempts": self.attempts,
                            "error": repr(exc),
                        }
                    },
                )
            if attempt < self.attempts:
                STORAGE_RETRIES.labels(operation_name).inc()
                self._wait(cancel_event, operation_name)

        assert last_error is not None
        raise last_error

    def _wait(self, cancel_event: threading.Event | None, operation_name: str) -> None:
        if cancel_event is None:
            self.sleep(self.backoff_seconds)
            return
        if cancel_event.wait(self.backoff_seconds):
            raise OperationCancelledError(f"{operation_name} was cancelled")
