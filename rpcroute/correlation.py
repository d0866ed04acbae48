"""Request/response correlation for work that completes on another thread."""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from typing import Any

from rpcroute.router import Response

__all__ = [
    "CorrelationError",
    "CorrelationNotFound",
    "CorrelationTimeout",
    "PendingCorrelation",
    "CorrelationStats",
    "CorrelationTracker",
]


class CorrelationError(Exception):
    """A correlation could not be completed or awaited."""


class CorrelationNotFound(CorrelationError):
    """No pending correlation is registered under the given id."""

    def __init__(self, message: str = "correlation ID not found") -> None:
        super().__init__(message)


class CorrelationTimeout(CorrelationError, TimeoutError):
    """Waiting for a correlated response took longer than allowed."""

    def __init__(self, message: str = "correlation timeout") -> None:
        super().__init__(message)


_UNSET = object()


class PendingCorrelation:
    """One slot for a response and one for an error, plus a closed flag.

    Each slot holds at most one value. Closing wakes every waiter; values
    delivered before closing remain readable.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._response: Any = _UNSET
        self._error: Any = _UNSET
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def _ready(self) -> bool:
        return (
            self._closed
            or self._response is not _UNSET
            or self._error is not _UNSET
        )

    def _deliver_response(self, response: Response | None) -> None:
        with self._cond:
            if self._closed:
                raise CorrelationError("response channel already closed")
            if self._response is not _UNSET:
                raise CorrelationError("response channel blocked")
            self._response = response
            self._cond.notify_all()

    def _deliver_error(self, error: BaseException) -> None:
        with self._cond:
            if self._closed:
                raise CorrelationError("error channel already closed")
            if self._error is not _UNSET:
                raise CorrelationError("error channel blocked")
            self._error = error
            self._cond.notify_all()

    def close(self) -> None:
        """Close the slots; closing twice does nothing."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until a value arrives or the slots close; True unless timed out."""
        with self._cond:
            return self._cond.wait_for(self._ready, timeout)

    def _take(self) -> tuple[str | None, Any]:
        with self._cond:
            if self._response is not _UNSET:
                value, self._response = self._response, _UNSET
                return "response", value
            if self._error is not _UNSET:
                value, self._error = self._error, _UNSET
                return "error", value
            return None, None


@dataclass(frozen=True)
class CorrelationStats:
    pending_count: int


class CorrelationTracker:
    """Tracks pending correlations by id until a response is consumed."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: dict[str, PendingCorrelation] = {}
        self._shut_down = False

    def generate_correlation_id(self) -> str:
        return str(uuid.uuid4())

    def register(self, correlation_id: str) -> PendingCorrelation:
        """Register ``correlation_id``, replacing any earlier entry."""
        pending = PendingCorrelation()
        with self._lock:
            self._pending[correlation_id] = pending
        return pending

    def _lookup(self, correlation_id: str) -> PendingCorrelation:
        with self._lock:
            pending = self._pending.get(correlation_id)
        if pending is None:
            raise CorrelationNotFound()
        return pending

    def _remove(self, correlation_id: str, pending: PendingCorrelation) -> None:
        with self._lock:
            if self._pending.get(correlation_id) is pending:
                del self._pending[correlation_id]

    def complete(self, correlation_id: str, response: Response | None) -> None:
        """Deliver ``response``; raises if unknown, closed or already completed."""
        self._lookup(correlation_id)._deliver_response(response)

    def complete_with_error(self, correlation_id: str, error: BaseException) -> None:
        """Deliver ``error``; raises if unknown, closed or already failed."""
        self._lookup(correlation_id)._deliver_error(error)

    def cancel(self, correlation_id: str) -> None:
        """Forget ``correlation_id`` and wake anyone waiting on it."""
        with self._lock:
            pending = self._pending.pop(correlation_id, None)
        if pending is not None:
            pending.close()

    def wait_for_response(
        self, correlation_id: str, timeout: float | None = None
    ) -> Response | None:
        """Wait for the correlated response and forget the correlation.

        Raises the delivered error if one arrived instead. A ``timeout`` of
        None or <= 0 waits forever. Returns None if the correlation was
        cancelled while waiting.
        """
        pending = self._lookup(correlation_id)
        limit = timeout if timeout is not None and timeout > 0 else None
        if not pending.wait(limit):
            self.cancel(correlation_id)
            raise CorrelationTimeout()
        kind, value = pending._take()
        pending.close()
        self._remove(correlation_id, pending)
        if kind == "error":
            if isinstance(value, BaseException):
                raise value
            raise CorrelationError(str(value))
        return value

    def shutdown(self) -> None:
        """Cancel every pending correlation."""
        with self._lock:
            self._shut_down = True
            ids = list(self._pending)
        for correlation_id in ids:
            self.cancel(correlation_id)

    def stats(self) -> CorrelationStats:
        with self._lock:
            return CorrelationStats(pending_count=len(self._pending))