"""Method-name routing for JSON-RPC requests and notifications.

A :class:`Router` maps method names to handlers. A request handler is either a
callable ``(ctx, request) -> Response`` or an object with a ``handle`` method of
that shape; a notification handler is a callable ``(ctx, notification)`` or an
object with a ``handle_notification`` method.

Unknown request methods fall back to the default handler or, if none is set,
produce a "method not found" error response that keeps the request id.
Unknown notifications go to the default notification handler or are silently
ignored. All operations are safe to call from several threads at once.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable

from rpcroute.context import Context

__all__ = [
    "ErrorCode",
    "RpcError",
    "Request",
    "Response",
    "Notification",
    "RouterStats",
    "Router",
]


class ErrorCode(IntEnum):
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL = -32603
    TIMEOUT = -32001
    UNAUTHORIZED = -32002


class RpcError(Exception):
    """A JSON-RPC error object; also raisable as an exception."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = int(code)
        self.message = message
        self.data = data

    def __str__(self) -> str:
        return f"jsonrpc error {self.code}: {self.message}"

    def __repr__(self) -> str:
        return f"RpcError(code={self.code!r}, message={self.message!r}, data={self.data!r})"


@dataclass
class Request:
    method: str
    params: Any = None
    id: Any = None
    jsonrpc: str = "2.0"


@dataclass
class Notification:
    method: str
    params: Any = None
    jsonrpc: str = "2.0"


@dataclass
class Response:
    id: Any = None
    result: Any = None
    error: RpcError | None = None
    jsonrpc: str = "2.0"


@dataclass(frozen=True)
class RouterStats:
    registered_methods: int
    registered_notification_methods: int
    has_default_handler: bool
    has_default_notification_handler: bool


RequestHandler = Callable[[Context, Request], Response]
NotificationHandler = Callable[[Context, Notification], None]


def _as_request_handler(handler: Any) -> RequestHandler:
    handle = getattr(handler, "handle", None)
    if callable(handle):
        return handle
    if callable(handler):
        return handler
    raise TypeError(f"not a request handler: {handler!r}")


def _as_notification_handler(handler: Any) -> NotificationHandler:
    handle = getattr(handler, "handle_notification", None)
    if callable(handle):
        return handle
    if callable(handler):
        return handler
    raise TypeError(f"not a notification handler: {handler!r}")


class Router:
    """Thread-safe dispatcher of requests and notifications by method name."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._handlers: dict[str, RequestHandler] = {}
        self._notification_handlers: dict[str, NotificationHandler] = {}
        self._default_handler: RequestHandler | None = None
        self._default_notification_handler: NotificationHandler | None = None

    def register(self, method: str, handler: Any) -> None:
        fn = _as_request_handler(handler)
        with self._lock:
            self._handlers[method] = fn

    def register_notification(self, method: str, handler: Any) -> None:
        fn = _as_notification_handler(handler)
        with self._lock:
            self._notification_handlers[method] = fn

    def set_default_handler(self, handler: Any) -> None:
        fn = None if handler is None else _as_request_handler(handler)
        with self._lock:
            self._default_handler = fn

    def set_default_notification_handler(self, handler: Any) -> None:
        fn = None if handler is None else _as_notification_handler(handler)
        with self._lock:
            self._default_notification_handler = fn

    def handle(self, ctx: Context, request: Request) -> Response:
        """Dispatch ``request`` and return the handler's response."""
        with self._lock:
            handler = self._handlers.get(request.method) or self._default_handler
        if handler is not None:
            return handler(ctx, request)
        return Response(
            id=request.id,
            error=RpcError(
                ErrorCode.METHOD_NOT_FOUND,
                "Method not found",
                {"method": request.method},
            ),
        )

    __call__ = handle

    def handle_notification(self, ctx: Context, notification: Notification) -> None:
        """Dispatch ``notification``; unknown methods are ignored."""
        with self._lock:
            handler = (
                self._notification_handlers.get(notification.method)
                or self._default_notification_handler
            )
        if handler is not None:
            handler(ctx, notification)

    def registered_methods(self) -> list[str]:
        with self._lock:
            return list(self._handlers)

    def registered_notification_methods(self) -> list[str]:
        with self._lock:
            return list(self._notification_handlers)

    def has_method(self, method: str) -> bool:
        with self._lock:
            return method in self._handlers

    def has_notification_method(self, method: str) -> bool:
        with self._lock:
            return method in self._notification_handlers

    def unregister(self, method: str) -> None:
        with self._lock:
            self._handlers.pop(method, None)

    def unregister_notification(self, method: str) -> None:
        with self._lock:
            self._notification_handlers.pop(method, None)

    def clear(self) -> None:
        """Remove every handler, including the defaults."""
        with self._lock:
            self._handlers = {}
            self._notification_handlers = {}
            self._default_handler = None
            self._default_notification_handler = None

    def stats(self) -> RouterStats:
        with self._lock:
            return RouterStats(
                registered_methods=len(self._handlers),
                registered_notification_methods=len(self._notification_handlers),
                has_default_handler=self._default_handler is not None,
                has_default_notification_handler=(
                    self._default_notification_handler is not None
                ),
            )