"""Background worker threads for optimization and loop closure.

Each worker owns one thread and one request queue. The tracking thread
submits requests built from map snapshots and collects finished results
with ``poll_results`` between frames, so corrections are always applied
on the tracking thread under the map lock.

With ``supersede`` enabled a newer request makes older ones obsolete:
queued ones are skipped and a running one is asked to stop through the
``is_cancelled`` callable passed to the handler.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable

from ..errors import OptimizationCancelled
from .messages import ShutdownMessage, TaskResult

logger = logging.getLogger(__name__)

# handler(payload, is_cancelled) -> value
Handler = Callable[[Any, Callable[[], bool]], Any]


class BackgroundWorker:
    """Runs a handler on requests in a dedicated thread.

    Results (including failures and cancellations) are queued for the
    owner; a handler exception is logged and reported, never raised in
    the worker thread's caller.
    """

    def __init__(
        self,
        name: str,
        handler: Handler,
        supersede: bool = True,
        synchronous: bool = False,
    ) -> None:
        """Initialize worker.

        Args:
            name: Task kind, used in results and thread name
            handler: Function run for every request
            supersede: Newer requests cancel older pending ones
            synchronous: Run requests inline in submit() (no thread)
        """
        self._name = name
        self._handler = handler
        self._supersede = supersede
        self._synchronous = synchronous

        self._requests: queue.Queue = queue.Queue()
        self._results: queue.Queue = queue.Queue()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._next_id = 0
        self._latest_id = 0
        self._pending = 0
        self._stopping = False

    @property
    def name(self) -> str:
        """Task kind handled by this worker."""
        return self._name

    @property
    def is_running(self) -> bool:
        """Return True if the worker thread is alive."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def pending(self) -> int:
        """Requests submitted but not finished."""
        with self._lock:
            return self._pending

    def start(self) -> None:
        """Start the worker thread (no-op in synchronous mode)."""
        if self._synchronous or self.is_running:
            return
        self._stopping = False
        self._thread = threading.Thread(
            target=self._loop, name=f"recon3d-{self._name}", daemon=True
        )
        self._thread.start()
        logger.debug("[Worker:%s] Started", self._name)

    def stop(self, timeout: float = 5.0) -> None:
        """Cancel outstanding work and stop the thread."""
        if self._thread is None:
            return
        self._stopping = True
        self._requests.put(ShutdownMessage())
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("[Worker:%s] Did not stop within %.1fs", self._name, timeout)
        self._thread = None
        logger.debug("[Worker:%s] Stopped", self._name)

    def submit(self, payload: Any) -> int:
        """Queue a request.

        Returns:
            Request id, increasing with submission order
        """
        with self._lock:
            self._next_id += 1
            request_id = self._next_id
            self._latest_id = request_id
            self._pending += 1

        if self._synchronous:
            self._run(request_id, payload)
        else:
            self._requests.put((request_id, payload))
        return request_id

    def poll_results(self) -> list[TaskResult]:
        """Return every finished result without blocking."""
        results = []
        while True:
            try:
                results.append(self._results.get_nowait())
            except queue.Empty:
                return results

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every submitted request has finished.

        Returns:
            False if the timeout expired first
        """
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def _is_cancelled(self, request_id: int) -> bool:
        if self._stopping:
            return True
        return self._supersede and request_id < self._latest_id

    def _run(self, request_id: int, payload: Any) -> None:
        try:
            if self._is_cancelled(request_id):
                logger.debug("[Worker:%s] Skipping superseded request %d", self._name, request_id)
                result = TaskResult(self._name, request_id, cancelled=True)
            else:
                value = self._handler(payload, lambda: self._is_cancelled(request_id))
                result = TaskResult(self._name, request_id, value=value)
        except OptimizationCancelled:
            logger.debug("[Worker:%s] Request %d cancelled", self._name, request_id)
            result = TaskResult(self._name, request_id, cancelled=True)
        except Exception as e:
            logger.exception("[Worker:%s] Request %d failed", self._name, request_id)
            result = TaskResult(self._name, request_id, error=e)

        self._results.put(result)
        with self._idle:
            self._pending -= 1
            self._idle.notify_all()

    def _loop(self) -> None:
        while True:
            item = self._requests.get()
            if isinstance(item, ShutdownMessage):
                break
            self._run(*item)

        # Account for requests left behind by the shutdown
        while True:
            try:
                item = self._requests.get_nowait()
            except queue.Empty:
                break
            if not isinstance(item, ShutdownMessage):
                self._run(*item)
