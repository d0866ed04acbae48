"""Cancellable contexts and request-scoped data carried across async boundaries."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any

__all__ = [
    "ContextCancelled",
    "DeadlineExceeded",
    "Context",
    "background",
    "RequestContext",
    "with_request_context",
    "get_request_context",
]


class ContextCancelled(Exception):
    """The context was cancelled explicitly or by its parent."""


class DeadlineExceeded(TimeoutError):
    """The context's deadline passed before the work finished."""


_NO_KEY = object()
_REQUEST_CONTEXT_KEY = object()


class Context:
    """A node in a tree of cancellable contexts that may also carry a value.

    Cancelling a context cancels every context derived from it; it never
    affects its parent.
    """

    def __init__(
        self,
        parent: Context | None = None,
        *,
        key: Any = _NO_KEY,
        value: Any = None,
        cancellable: bool = True,
    ) -> None:
        self._parent = parent
        self._key = key
        self._value = value
        self._cancellable = cancellable
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._err: BaseException | None = None
        self._children: set[Context] = set()
        self._timer: threading.Timer | None = None
        if parent is not None:
            parent._attach(self)

    def _attach(self, child: Context) -> None:
        with self._lock:
            if not self._done.is_set():
                if self._cancellable:
                    self._children.add(child)
                return
            err = self._err
        child._finish(err)

    def _detach(self, child: Context) -> None:
        with self._lock:
            self._children.discard(child)

    def _finish(self, err: BaseException | None) -> None:
        with self._lock:
            if self._done.is_set():
                return
            self._err = err
            self._done.set()
            children = list(self._children)
            self._children.clear()
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        for child in children:
            child._finish(err)
        if self._parent is not None:
            self._parent._detach(self)

    def with_cancel(self) -> Context:
        """Return a child context that can be cancelled on its own."""
        return Context(self)

    def with_timeout(self, timeout: float) -> Context:
        """Return a child context that expires after ``timeout`` seconds."""
        child = Context(self)
        if timeout <= 0:
            child._finish(DeadlineExceeded("context deadline exceeded"))
            return child
        timer = threading.Timer(
            timeout, child._finish, args=(DeadlineExceeded("context deadline exceeded"),)
        )
        timer.daemon = True
        with child._lock:
            if child._done.is_set():
                return child
            child._timer = timer
        timer.start()
        return child

    def with_value(self, key: Any, value: Any) -> Context:
        """Return a child context carrying ``value`` under ``key``."""
        return Context(self, key=key, value=value)

    def value(self, key: Any) -> Any:
        """Look up ``key`` in this context and its ancestors; None if absent."""
        node: Context | None = self
        while node is not None:
            if node._key is not _NO_KEY and node._key == key:
                return node._value
            node = node._parent
        return None

    def cancel(self) -> None:
        """Cancel this context and everything derived from it."""
        if self._cancellable:
            self._finish(ContextCancelled("context canceled"))

    def is_done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the context is done or ``timeout`` passes; True if done."""
        return self._done.wait(timeout)

    def err(self) -> BaseException | None:
        """The reason the context finished, or None while it is still live."""
        with self._lock:
            return self._err


_BACKGROUND = Context(cancellable=False)


def background() -> Context:
    """The root context: never cancelled, carries no values."""
    return _BACKGROUND


@dataclass(eq=False)
class RequestContext:
    """Request-scoped data: correlation id, metadata, start time and timeout.

    ``timeout`` is in seconds; 0 means no timeout.
    """

    correlation_id: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    start_time: float = field(default_factory=time.monotonic)
    timeout: float = 0.0
    _lock: threading.RLock = field(
        default_factory=threading.RLock, init=False, repr=False
    )

    def set_metadata(self, key: str, value: Any) -> None:
        with self._lock:
            self.metadata[key] = value

    def get_metadata(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self.metadata.get(key, default)

    def get_metadata_string(self, key: str) -> str | None:
        """The metadata value under ``key`` if it is a string, else None."""
        value = self.get_metadata(key)
        return value if isinstance(value, str) else None

    def duration(self) -> float:
        """Seconds elapsed since the request started."""
        return time.monotonic() - self.start_time

    def is_timed_out(self) -> bool:
        if self.timeout == 0:
            return False
        return self.duration() > self.timeout

    def with_timeout(self, ctx: Context) -> Context:
        """Derive a context from ``ctx`` bounded by this request's timeout."""
        if self.timeout == 0:
            return ctx.with_cancel()
        return ctx.with_timeout(self.timeout)

    def clone(self) -> RequestContext:
        with self._lock:
            return RequestContext(
                correlation_id=self.correlation_id,
                metadata=dict(self.metadata),
                start_time=self.start_time,
                timeout=self.timeout,
            )


def with_request_context(ctx: Context, rc: RequestContext) -> Context:
    """Return a context derived from ``ctx`` that carries ``rc``."""
    return ctx.with_value(_REQUEST_CONTEXT_KEY, rc)


def get_request_context(ctx: Context) -> RequestContext | None:
    """The RequestContext carried by ``ctx``, or None."""
    rc = ctx.value(_REQUEST_CONTEXT_KEY)
    return rc if isinstance(rc, RequestContext) else None