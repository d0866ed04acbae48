"""Concurrent request execution with a concurrency limit and a bounded queue."""

from __future__ import annotations

import dataclasses
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from rpcroute.context import (
    Context,
    ContextCancelled,
    DeadlineExceeded,
    get_request_context,
)

__all__ = [
    "ManagerError",
    "ActiveRequest",
    "ManagerMetrics",
    "RequestManager",
]

DEFAULT_MAX_CONCURRENT = 100
DEFAULT_MAX_QUEUED = 1000

_POLL_INTERVAL = 0.05
_METRICS_INTERVAL = 10.0


class ManagerError(RuntimeError):
    """The request manager refused or could not carry out an operation."""


@dataclass(eq=False)
class ActiveRequest:
    """A request that has been accepted and not yet finished."""

    id: str
    correlation_id: str
    method: str
    start_time: float
    context: Context

    def cancel(self) -> None:
        """Cancel the request's context."""
        self.context.cancel()


@dataclass
class ManagerMetrics:
    """Counters of the request manager; ``max_active_duration`` is in seconds."""

    total_requests: int = 0
    active_requests: int = 0
    queued_requests: int = 0
    rejected_requests: int = 0
    completed_requests: int = 0
    timeout_requests: int = 0
    max_queue_depth: int = 0
    max_active_duration: float = 0.0


class RequestManager:
    """Runs request functions on threads, at most ``max_concurrent`` at a time.

    Requests that find every slot busy wait in a queue of ``max_queued``
    entries; when the queue is full too, the request is rejected.
    """

    def __init__(
        self,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        max_queued: int = DEFAULT_MAX_QUEUED,
    ) -> None:
        self._max_concurrent = max_concurrent if max_concurrent > 0 else DEFAULT_MAX_CONCURRENT
        self._max_queued = max_queued if max_queued > 0 else DEFAULT_MAX_QUEUED
        self._slots = threading.BoundedSemaphore(self._max_concurrent)
        self._queue: queue.Queue[Callable[[], None]] = queue.Queue(maxsize=self._max_queued)
        self._active: dict[str, ActiveRequest] = {}
        self._active_lock = threading.Lock()
        self._counts = ManagerMetrics()
        self._metrics_lock = threading.Lock()
        self._stopping = threading.Event()
        self._lock = threading.Lock()
        self._threads: list[threading.Thread] = []
        self._running = False

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def max_queued(self) -> int:
        return self._max_queued

    def _count(self, **deltas: int) -> None:
        with self._metrics_lock:
            for name, delta in deltas.items():
                setattr(self._counts, name, getattr(self._counts, name) + delta)

    def start(self) -> None:
        """Start the queue processor and the metrics collector."""
        with self._lock:
            if self._running:
                raise ManagerError("manager already running")
            self._running = True
            for target, name in (
                (self._process_queue, "rpcroute-manager-queue"),
                (self._collect_metrics, "rpcroute-manager-metrics"),
            ):
                thread = threading.Thread(target=target, name=name, daemon=True)
                self._threads.append(thread)
                thread.start()

    def _run_in_slot(self, fn: Callable[[], None]) -> None:
        def run() -> None:
            try:
                fn()
            finally:
                self._count(active_requests=-1)
                self._slots.release()

        threading.Thread(target=run, daemon=True).start()

    def _process_queue(self) -> None:
        while not self._stopping.is_set():
            try:
                fn = self._queue.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            while not self._slots.acquire(timeout=_POLL_INTERVAL):
                if self._stopping.is_set():
                    return
            self._count(queued_requests=-1, active_requests=1)
            self._run_in_slot(fn)

    def _collect_metrics(self) -> None:
        while not self._stopping.wait(_METRICS_INTERVAL):
            self._update_metrics()

    def _update_metrics(self) -> None:
        now = time.monotonic()
        with self._active_lock:
            durations = [now - req.start_time for req in self._active.values()]
        depth = self._queue.qsize()
        with self._metrics_lock:
            self._counts.max_active_duration = max(durations, default=0.0)
            self._counts.max_queue_depth = max(self._counts.max_queue_depth, depth)

    def execute(
        self, ctx: Context, request_id: str, fn: Callable[[Context], Any]
    ) -> None:
        """Run ``fn(ctx)`` now or later; raises ManagerError if it cannot be accepted.

        Exceptions raised by ``fn`` are not propagated; a DeadlineExceeded
        counts as a timed-out request.
        """
        with self._lock:
            if not self._running:
                raise ManagerError("manager not running")

        self._count(total_requests=1)
        exec_ctx = ctx.with_cancel()

        correlation_id = ""
        method = ""
        rc = get_request_context(ctx)
        if rc is not None:
            correlation_id = rc.correlation_id
            method = rc.get_metadata_string("method") or ""

        active = ActiveRequest(
            id=request_id,
            correlation_id=correlation_id,
            method=method,
            start_time=time.monotonic(),
            context=exec_ctx,
        )
        with self._active_lock:
            self._active[request_id] = active

        def run() -> None:
            try:
                if exec_ctx.is_done():
                    self._count(timeout_requests=1)
                    return
                try:
                    fn(exec_ctx)
                except DeadlineExceeded:
                    self._count(timeout_requests=1)
                except Exception:
                    pass
            finally:
                with self._active_lock:
                    if self._active.get(request_id) is active:
                        del self._active[request_id]
                self._count(completed_requests=1)
                exec_ctx.cancel()

        if self._slots.acquire(blocking=False):
            self._count(active_requests=1)
            self._run_in_slot(run)
            return

        try:
            self._queue.put_nowait(run)
        except queue.Full:
            self._count(rejected_requests=1)
            with self._active_lock:
                if self._active.get(request_id) is active:
                    del self._active[request_id]
            exec_ctx.cancel()
            raise ManagerError("request queue full") from None
        self._count(queued_requests=1)

    def cancel_request(self, request_id: str) -> None:
        """Cancel the active request ``request_id``."""
        with self._active_lock:
            active = self._active.get(request_id)
        if active is None:
            raise ManagerError("request not found")
        active.cancel()

    def get_active_request(self, request_id: str) -> ActiveRequest | None:
        with self._active_lock:
            return self._active.get(request_id)

    def list_active_requests(self) -> list[ActiveRequest]:
        with self._active_lock:
            return list(self._active.values())

    def shutdown(self, ctx: Context) -> None:
        """Stop accepting work, cancel active requests and wait for the helpers.

        Raises the context's error if ``ctx`` finishes before the helpers stop.
        """
        with self._lock:
            if not self._running:
                return
            self._running = False
            threads = list(self._threads)
        self._stopping.set()

        for active in self.list_active_requests():
            active.cancel()

        joined = ctx.with_cancel()

        def join_all() -> None:
            for thread in threads:
                thread.join()
            joined.cancel()

        threading.Thread(target=join_all, daemon=True).start()
        joined.wait()
        if any(thread.is_alive() for thread in threads):
            raise ctx.err() or ContextCancelled("context canceled")

    def metrics(self) -> ManagerMetrics:
        """A snapshot of the current counters."""
        with self._metrics_lock:
            return dataclasses.replace(self._counts)