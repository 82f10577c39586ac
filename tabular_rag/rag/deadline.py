"""Request deadlines for external model calls."""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Optional, TypeVar

from tabular_rag.errors import EmbeddingError, ModelError, RequestTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS = (ModelError, EmbeddingError, RequestTimeoutError)


class Deadline:
    """Point in time after which a request must give up."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.seconds = seconds
        self.expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0


class CallRunner:
    """Run external calls on worker threads bounded by a request deadline.

    A call that outlives the deadline is abandoned, not interrupted: the
    worker thread finishes in the background and its result is dropped.
    Worker threads are not daemons, so the interpreter still waits for an
    abandoned call at exit even after ``close()``. The wait is bounded only
    by the model client's own HTTP timeout.
    """

    def __init__(self, max_workers: int = 4):
        self.max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="model-call"
            )
        return self._executor

    def call(
        self,
        label: str,
        fn: Callable[..., T],
        *args: Any,
        deadline: Deadline,
        retries: int = 0,
        **kwargs: Any,
    ) -> T:
        """Call ``fn`` within the remaining time of ``deadline``.

        Args:
            label: Name of the call used in logs and errors.
            fn: Callable to run.
            deadline: Request deadline.
            retries: Extra attempts after a model or timeout failure.

        Returns:
            Whatever ``fn`` returns.

        Raises:
            RequestTimeoutError: If the deadline passes first.
            ModelError: If the last attempt failed in the model client.
            EmbeddingError: If the last attempt failed in the embedding client.
        """
        attempts = max(retries, 0) + 1
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            remaining = deadline.remaining()
            if remaining <= 0.0:
                raise RequestTimeoutError(
                    f"{label} not attempted: request deadline of {deadline.seconds}s exceeded",
                    original_error=last_error,
                )
            future = self.executor.submit(fn, *args, **kwargs)
            try:
                return future.result(timeout=remaining)
            except RETRYABLE_ERRORS as e:
                last_error = e
            except FutureTimeoutError as e:
                future.cancel()
                last_error = RequestTimeoutError(
                    f"{label} exceeded the request deadline of {deadline.seconds}s",
                    original_error=e,
                )
            if attempt < attempts:
                logger.warning(f"{label} failed on attempt {attempt}/{attempts}: {last_error}")
        raise last_error

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
