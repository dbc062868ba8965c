"""
Best-effort usage tracking for validated tokens.

Validation only enqueues a (token_id, used_at) event; a daemon thread applies
the usage_count/last_used_at bump. Nothing here may raise into a request.
"""
import queue
import threading
from datetime import datetime
from typing import Callable, Optional, Tuple

from core.config import logger, USAGE_QUEUE_SIZE

UsageHandler = Callable[[str, datetime], None]


class UsageRecorder:
    def __init__(self, handler: UsageHandler, maxsize: int = USAGE_QUEUE_SIZE):
        self._handler = handler
        self._queue: "queue.Queue[Optional[Tuple[str, datetime]]]" = queue.Queue(maxsize=maxsize)
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.dropped = 0

    def start(self):
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name="token-usage", daemon=True)
            self._thread.start()
            logger.info("[usage] recorder started")

    def stop(self, timeout: float = 5.0):
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._queue.put(None)
        thread.join(timeout)
        logger.info("[usage] recorder stopped")

    def record(self, token_id: str, used_at: datetime) -> None:
        try:
            self._queue.put_nowait((token_id, used_at))
        except queue.Full:
            self.dropped += 1
            logger.warning(f"[usage] queue full, dropped usage event for {token_id}")

    def flush(self):
        """Block until every queued event has been handled."""
        if self._thread is None:
            self._drain()
            return
        self._queue.join()

    def _drain(self):
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            self._apply(item)
            self._queue.task_done()

    def _run(self):
        while True:
            item = self._queue.get()
            if item is None:
                self._queue.task_done()
                return
            self._apply(item)
            self._queue.task_done()

    def _apply(self, item):
        if item is None:
            return
        token_id, used_at = item
        try:
            self._handler(token_id, used_at)
        except Exception as ex:
            logger.warning(f"[usage] failed to record usage for {token_id}: {ex}")


class InlineUsageRecorder(UsageRecorder):
    """Applies usage immediately in the caller's thread; still never raises."""

    def record(self, token_id: str, used_at: datetime) -> None:
        self._apply((token_id, used_at))

    def start(self):
        pass

    def stop(self, timeout: float = 5.0):
        pass
