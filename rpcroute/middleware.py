"""Composable request-handler middleware and common implementations."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from rpcroute.context import (
    Context,
    RequestContext,
    get_request_context,
    with_request_context,
)
from rpcroute.router import ErrorCode, Request, Response, RpcError

__all__ = [
    "Chain",
    "RequestMetrics",
    "logging_middleware",
    "metrics_middleware",
    "recovery_middleware",
    "timeout_middleware",
    "auth_middleware",
    "context_enrichment_middleware",
]

Handler = Callable[[Context, Request], Response]
Middleware = Callable[[Handler], Any]

_DEFAULT_LOGGER = logging.getLogger("rpcroute")


def _as_handler(handler: Any) -> Handler:
    handle = getattr(handler, "handle", None)
    if callable(handle):
        return handle
    if callable(handler):
        return handler
    raise TypeError(f"not a request handler: {handler!r}")


def _correlation_id(ctx: Context) -> str:
    rc = get_request_context(ctx)
    return rc.correlation_id if rc is not None else "unknown"


class Chain:
    """An ordered list of middleware; the first one is the outermost layer."""

    def __init__(self, *middlewares: Middleware) -> None:
        self._middlewares: tuple[Middleware, ...] = tuple(middlewares)

    @property
    def middlewares(self) -> tuple[Middleware, ...]:
        return self._middlewares

    def __len__(self) -> int:
        return len(self._middlewares)

    def append(self, *args: Middleware) -> Chain:
        """Return a new chain with ``args`` added after the existing middleware."""
        return Chain(*self._middlewares, *args)

    def then(self, final: Any) -> Handler:
        """Wrap ``final`` in every middleware of the chain."""
        if final is None:
            raise ValueError("chain: final handler cannot be nil")
        handler = _as_handler(final)
        for middleware in reversed(self._middlewares):
            handler = _as_handler(middleware(handler))
        return handler


@dataclass(eq=False)
class RequestMetrics:
    """Request counters; ``total_duration`` is in seconds."""

    total_requests: int = 0
    total_errors: int = 0
    method_counts: dict[str, int] = field(default_factory=dict)
    total_duration: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def _record(self, method: str, duration: float, failed: bool) -> None:
        with self._lock:
            self.total_requests += 1
            self.method_counts[method] = self.method_counts.get(method, 0) + 1
            self.total_duration += duration
            if failed:
                self.total_errors += 1


def logging_middleware(logger: logging.Logger | None = None) -> Middleware:
    """Log each request and its response at INFO level."""
    log = logger or _DEFAULT_LOGGER

    def middleware(next_handler: Handler) -> Handler:
        def handler(ctx: Context, req: Request) -> Response:
            start = time.monotonic()
            cid = _correlation_id(ctx)
            log.info("[%s] Request: method=%s id=%s", cid, req.method, req.id)
            resp = next_handler(ctx, req)
            elapsed_ms = (time.monotonic() - start) * 1000
            if resp.error is not None:
                log.info(
                    "[%s] Response: id=%s error=%s duration=%.3fms",
                    cid, resp.id, resp.error, elapsed_ms,
                )
            else:
                log.info(
                    "[%s] Response: id=%s success=true duration=%.3fms",
                    cid, resp.id, elapsed_ms,
                )
            return resp

        return handler

    return middleware


def metrics_middleware(metrics: RequestMetrics) -> Middleware:
    """Count requests, errors and time spent into ``metrics``."""

    def middleware(next_handler: Handler) -> Handler:
        def handler(ctx: Context, req: Request) -> Response:
            start = time.monotonic()
            resp = next_handler(ctx, req)
            duration = time.monotonic() - start
            metrics._record(req.method, duration, resp.error is not None)
            rc = get_request_context(ctx)
            if rc is not None:
                rc.set_metadata("duration", duration)
            return resp

        return handler

    return middleware


def recovery_middleware(logger: logging.Logger | None = None) -> Middleware:
    """Turn exceptions raised by the handler into internal-error responses."""
    log = logger or _DEFAULT_LOGGER

    def middleware(next_handler: Handler) -> Handler:
        def handler(ctx: Context, req: Request) -> Response:
            try:
                return next_handler(ctx, req)
            except Exception as exc:
                log.error("[%s] Panic recovered: %s", _correlation_id(ctx), exc)
                return Response(
                    id=req.id,
                    error=RpcError(
                        ErrorCode.INTERNAL, "Internal server error", f"panic: {exc}"
                    ),
                )

        return handler

    return middleware


def timeout_middleware(default_timeout: float) -> Middleware:
    """Bound each request by the request context's timeout or ``default_timeout``.

    Timeouts are in seconds; a value <= 0 means no limit.
    """

    def middleware(next_handler: Handler) -> Handler:
        def handler(ctx: Context, req: Request) -> Response:
            timeout = default_timeout
            rc = get_request_context(ctx)
            if rc is not None and rc.timeout > 0:
                timeout = rc.timeout
            if timeout <= 0:
                return next_handler(ctx, req)

            timeout_ctx = ctx.with_timeout(timeout)
            finished = timeout_ctx.with_cancel()
            outcome: dict[str, Any] = {}

            def run() -> None:
                try:
                    outcome["response"] = next_handler(timeout_ctx, req)
                except BaseException as exc:
                    outcome["error"] = exc
                finally:
                    finished.cancel()

            threading.Thread(target=run, daemon=True).start()
            try:
                finished.wait()
            finally:
                timeout_ctx.cancel()

            if "error" in outcome:
                raise outcome["error"]
            if "response" in outcome:
                return outcome["response"]
            return Response(
                id=req.id,
                error=RpcError(
                    ErrorCode.TIMEOUT, "Request timeout", f"timeout after {timeout}s"
                ),
            )

        return handler

    return middleware


def auth_middleware(auth_func: Callable[[Context, str], Any]) -> Middleware:
    """Reject requests for which ``auth_func(ctx, method)`` raises."""

    def middleware(next_handler: Handler) -> Handler:
        def handler(ctx: Context, req: Request) -> Response:
            try:
                auth_func(ctx, req.method)
            except Exception as exc:
                return Response(
                    id=req.id,
                    error=RpcError(ErrorCode.UNAUTHORIZED, "Unauthorized", str(exc)),
                )
            return next_handler(ctx, req)

        return handler

    return middleware


def context_enrichment_middleware() -> Middleware:
    """Ensure a request context exists and record the method and request id in it."""

    def middleware(next_handler: Handler) -> Handler:
        def handler(ctx: Context, req: Request) -> Response:
            rc = get_request_context(ctx)
            if rc is None:
                rc = RequestContext(correlation_id="" if req.id is None else str(req.id))
                ctx = with_request_context(ctx, rc)
            rc.set_metadata("method", req.method)
            rc.set_metadata("request_id", req.id)
            return next_handler(ctx, req)

        return handler

    return middleware