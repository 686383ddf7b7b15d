"""Best-effort consumer of retry intents emitted by the completion handler."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Protocol

from mission_dispatch.orchestrator.errors import OrchestratorError
from mission_dispatch.orchestrator.models import DispatchResult, RetryRequested

logger = logging.getLogger(__name__)


class Dispatcher(Protocol):
    def dispatch(self, task_id: str) -> DispatchResult: ...


class RetryDispatcher:
    """Queue of ``RetryRequested`` intents dispatched outside the completion transaction.

    ``start()`` runs a daemon consumer thread. Without it, pending intents are
    processed by ``drain()``. A failed retry dispatch is logged and dropped;
    it never reaches the component that published the intent.
    """

    def __init__(self, dispatcher: Dispatcher, *, poll_interval_seconds: float = 0.5) -> None:
        self._dispatcher = dispatcher
        self._poll_interval = poll_interval_seconds
        self._queue: queue.Queue[RetryRequested] = queue.Queue()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def publish(self, intent: RetryRequested) -> None:
        logger.info("Retry requested for task %s", intent.task_id)
        self._queue.put(intent)

    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._consume_loop,
            daemon=True,
            name="retry-dispatcher",
        )
        self._thread.start()
        logger.info("Retry dispatcher thread started")

    def stop(self, *, timeout: float = 15.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Retry dispatcher thread stopped")

    def drain(self) -> list[DispatchResult]:
        """Process every queued intent in the calling thread."""

        results: list[DispatchResult] = []
        while True:
            try:
                intent = self._queue.get_nowait()
            except queue.Empty:
                return results
            result = self._process(intent)
            if result is not None:
                results.append(result)

    def _consume_loop(self) -> None:
        while not self._stop.is_set():
            try:
                intent = self._queue.get(timeout=self._poll_interval)
            except queue.Empty:
                continue
            self._process(intent)

    def _process(self, intent: RetryRequested) -> DispatchResult | None:
        try:
            result = self._dispatcher.dispatch(intent.task_id)
        except OrchestratorError as error:
            logger.warning(
                "Retry dispatch for task %s failed [%s]: %s",
                intent.task_id,
                error.kind.value,
                error.message,
            )
            return None
        except Exception:
            logger.exception("Retry dispatch for task %s crashed", intent.task_id)
            return None
        finally:
            self._queue.task_done()
        logger.info(
            "Retry dispatched task %s attempt %d to agent %s",
            result.task_id,
            result.attempt_number,
            result.agent_id,
        )
        return result
