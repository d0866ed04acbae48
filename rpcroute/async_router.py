"""Queue-backed asynchronous request handling with correlation ids.

An :class:`AsyncRouter` wraps a :class:`~rpcroute.router.Router`. Requests
are queued and processed by a fixed pool of worker threads. Each request
gets a correlation id that the caller uses to collect the response later, to
block for it synchronously, or to receive it through a callback.
"""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from rpcroute.context import (
    Context,
    ContextCancelled,
    RequestContext,
    get_request_context,
    with_request_context,
)
from rpcroute.correlation import CorrelationError, CorrelationTracker
from rpcroute.middleware import Chain
from rpcroute.router import ErrorCode, Request, Response, Router, RpcError

__all__ = [
    "RouterShutdownError",
    "QueueFullError",
    "AsyncRouterStats",
    "AsyncRouter",
]

DEFAULT_WORKERS = 10
DEFAULT_QUEUE_SIZE = 100
DEFAULT_RESPONSE_TIMEOUT = 30.0

_POLL_INTERVAL = 0.05
_DRAIN_TIMEOUT = 5.0
_CANCEL_KEY = "_cancel"
_UNSET = object()


class RouterShutdownError(RuntimeError):
    """The router is not running."""

    def __init__(self, message: str = "router is shutdown") -> None:
        super().__init__(message)


class QueueFullError(RuntimeError):
    """The request queue has no room for another request."""

    def __init__(self, message: str = "request queue is full") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class AsyncRouterStats:
    queued_requests: int
    pending_requests: int
    workers: int
    running: bool


class _Slot:
    """Hand-off point between a worker and the thread watching a request."""

    def __init__(self, ctx: Context) -> None:
        self.signal = ctx.with_cancel()
        self._lock = threading.Lock()
        self._response: Any = _UNSET

    def deliver(self, response: Response) -> None:
        with self._lock:
            if not self.signal.is_done():
                self._response = response
        self.signal.cancel()

    def abandon(self) -> None:
        self.signal.cancel()

    def response(self) -> Any:
        with self._lock:
            return self._response


@dataclass
class _QueuedRequest:
    ctx: Context
    request: Request
    correlation_id: str
    slot: _Slot


class AsyncRouter:
    """Processes requests on a worker pool and correlates their responses."""

    def __init__(
        self,
        router: Router | None = None,
        *,
        workers: int = DEFAULT_WORKERS,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        middleware: Iterable[Callable[..., Any]] = (),
    ) -> None:
        self._router = router if router is not None else Router()
        self._workers = workers if workers > 0 else DEFAULT_WORKERS
        self._queue_size = queue_size if queue_size > 0 else DEFAULT_QUEUE_SIZE
        self._queue: queue.Queue[_QueuedRequest] = queue.Queue(maxsize=self._queue_size)
        self._tracker = CorrelationTracker()
        chain = Chain(*middleware)
        self._handler = chain.then(self._router) if len(chain) else self._router.handle
        self._stopping = threading.Event()
        self._lock = threading.Lock()
        self._threads: list[threading.Thread] = []
        self._running = False

    @property
    def router(self) -> Router:
        """The router whose handlers serve the queued requests."""
        return self._router

    def start(self) -> None:
        """Start the worker threads."""
        with self._lock:
            if self._running:
                raise RuntimeError("router already running")
            self._running = True
            for number in range(self._workers):
                thread = threading.Thread(
                    target=self._worker, name=f"rpcroute-worker-{number}", daemon=True
                )
                self._threads.append(thread)
                thread.start()

    def _worker(self) -> None:
        while not self._stopping.is_set():
            try:
                item = self._queue.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            self._process(item)
        deadline = time.monotonic() + _DRAIN_TIMEOUT
        while time.monotonic() < deadline:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            self._process(item)

    def _process(self, item: _QueuedRequest) -> None:
        try:
            response = self._handler(item.ctx, item.request)
        except Exception as exc:
            response = Response(
                id=item.request.id,
                error=RpcError(
                    ErrorCode.INTERNAL,
                    "Internal server error",
                    f"unhandled exception: {exc}",
                ),
            )
        item.slot.deliver(response)

    def _watch(self, ctx: Context, correlation_id: str, slot: _Slot) -> None:
        try:
            slot.signal.wait()
            response = slot.response()
            try:
                if response is not _UNSET:
                    self._tracker.complete(correlation_id, response)
                elif ctx.is_done():
                    self._tracker.complete_with_error(
                        correlation_id, ctx.err() or ContextCancelled("context canceled")
                    )
            except CorrelationError:
                pass
        finally:
            rc = get_request_context(ctx)
            if rc is not None:
                cancel = rc.get_metadata(_CANCEL_KEY)
                if callable(cancel):
                    cancel()

    def handle_async(self, ctx: Context, request: Request) -> str:
        """Queue ``request`` and return the correlation id of its response."""
        with self._lock:
            if not self._running:
                raise RouterShutdownError()

        correlation_id = self._tracker.generate_correlation_id()
        rc = get_request_context(ctx)
        if rc is None:
            rc = RequestContext(correlation_id=correlation_id)
            ctx = with_request_context(ctx, rc)
        else:
            rc.correlation_id = correlation_id

        slot = _Slot(ctx)
        self._tracker.register(correlation_id)
        threading.Thread(
            target=self._watch, args=(ctx, correlation_id, slot), daemon=True
        ).start()

        try:
            self._queue.put_nowait(_QueuedRequest(ctx, request, correlation_id, slot))
        except queue.Full:
            self._tracker.cancel(correlation_id)
            slot.abandon()
            raise QueueFullError() from None
        return correlation_id

    def handle_async_with_timeout(
        self, ctx: Context, request: Request, timeout: float
    ) -> str:
        """Queue ``request`` bounded by ``timeout`` seconds."""
        timeout_ctx = ctx.with_timeout(timeout)
        cancel = timeout_ctx.cancel
        rc = get_request_context(timeout_ctx)
        if rc is None:
            rc = RequestContext()
            rc.timeout = timeout
            timeout_ctx = with_request_context(timeout_ctx, rc)
        elif rc.timeout == 0:
            rc.timeout = timeout
        rc.set_metadata(_CANCEL_KEY, cancel)
        try:
            return self.handle_async(timeout_ctx, request)
        except RouterShutdownError:
            cancel()
            raise

    def get_response(
        self, correlation_id: str, timeout: float | None = None
    ) -> Response | None:
        """Wait for the response correlated with ``correlation_id``."""
        return self._tracker.wait_for_response(correlation_id, timeout)

    def handle_async_with_callback(
        self,
        ctx: Context,
        request: Request,
        callback: Callable[[Response | None, BaseException | None], Any],
    ) -> None:
        """Queue ``request`` and call ``callback(response, error)`` when done."""
        correlation_id = self.handle_async(ctx, request)
        timeout = DEFAULT_RESPONSE_TIMEOUT
        rc = get_request_context(ctx)
        if rc is not None and rc.timeout > 0:
            timeout = rc.timeout

        def wait() -> None:
            try:
                response = self.get_response(correlation_id, timeout)
            except Exception as exc:
                callback(None, exc)
            else:
                callback(response, None)

        threading.Thread(target=wait, daemon=True).start()

    def handle(self, ctx: Context, request: Request) -> Response:
        """Process ``request`` through the queue and block for its response."""
        timeout = DEFAULT_RESPONSE_TIMEOUT
        rc = get_request_context(ctx)
        if rc is not None and rc.timeout > 0:
            timeout = rc.timeout

        try:
            correlation_id = self.handle_async(ctx, request)
        except (RouterShutdownError, QueueFullError) as exc:
            return Response(
                id=request.id,
                error=RpcError(ErrorCode.INTERNAL, "Failed to process request", str(exc)),
            )

        try:
            response = self.get_response(correlation_id, timeout)
        except Exception as exc:
            return Response(
                id=request.id,
                error=RpcError(ErrorCode.TIMEOUT, "Request timeout", str(exc)),
            )
        if response is None:
            return Response(
                id=request.id,
                error=RpcError(ErrorCode.INTERNAL, "Failed to process request", "no response"),
            )
        return response

    __call__ = handle

    def shutdown(self, ctx: Context) -> None:
        """Stop the workers, draining queued requests, within ``ctx``'s lifetime."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            threads = list(self._threads)
        self._stopping.set()

        joined = ctx.with_cancel()

        def join_all() -> None:
            for thread in threads:
                thread.join()
            joined.cancel()

        threading.Thread(target=join_all, daemon=True).start()
        joined.wait()
        if any(thread.is_alive() for thread in threads):
            raise ctx.err() or ContextCancelled("context canceled")

        self._tracker.shutdown()

    def stats(self) -> AsyncRouterStats:
        with self._lock:
            running = self._running
        return AsyncRouterStats(
            queued_requests=self._queue.qsize(),
            pending_requests=self._tracker.stats().pending_count,
            workers=self._workers,
            running=running,
        )