# core/metrics.py
import threading
import time
from typing import Protocol, runtime_checkable
import logging

logger = logging.getLogger(__name__)


@runtime_checkable
class MetricsSink(Protocol):
    """Receives one call per provider request. Implementations must be cheap."""

    def record_embedding(self, context: str) -> None: ...

    def record_completion(self, context: str) -> None: ...


class NullMetrics:
    def record_embedding(self, context: str) -> None:
        return None

    def record_completion(self, context: str) -> None:
        return None


class RequestCounter:
    """
    Counts embedding and completion requests since construction and logs a
    running rate with each one. Shared by every request the app serves.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._embedding = 0
        self._completion = 0
        self._started = time.monotonic()

    def record_embedding(self, context: str) -> None:
        with self._lock:
            self._embedding += 1
        self._log("embedding", context)

    def record_completion(self, context: str) -> None:
        with self._lock:
            self._completion += 1
        self._log("completion", context)

    @property
    def embedding_count(self) -> int:
        return self._embedding

    @property
    def completion_count(self) -> int:
        return self._completion

    @property
    def total(self) -> int:
        return self._embedding + self._completion

    def elapsed_seconds(self) -> int:
        return int(time.monotonic() - self._started)

    def requests_per_minute(self) -> float:
        elapsed = self.elapsed_seconds()
        if elapsed < 1:
            return 0.0
        return self.total / elapsed * 60.0

    def snapshot(self) -> dict:
        return {
            "embedding": self.embedding_count,
            "completion": self.completion_count,
            "total": self.total,
            "elapsed_seconds": self.elapsed_seconds(),
            "requests_per_minute": round(self.requests_per_minute(), 2),
        }

    def log_summary(self) -> None:
        s = self.snapshot()
        logger.info(
            "provider.summary total=%d embedding=%d completion=%d elapsed_s=%d rpm=%.2f",
            s["total"],
            s["embedding"],
            s["completion"],
            s["elapsed_seconds"],
            s["requests_per_minute"],
        )

    def _log(self, kind: str, context: str) -> None:
        logger.info(
            "provider.request n=%d kind=%s ctx=%s embedding=%d completion=%d rpm=%.2f",
            self.total,
            kind,
            context,
            self.embedding_count,
            self.completion_count,
            self.requests_per_minute(),
        )
