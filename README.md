# rpcroute

In-process routing for JSON-RPC requests and notifications. It provides
cancellable contexts with request-scoped data, middleware chains,
correlation tracking, an asynchronous router backed by a pool of worker
threads, and a request manager with a concurrency limit. It has no
dependencies outside the standard library.

All durations and timeouts are given in seconds as floats.

## Installation

```
pip install rpcroute
```

## Routing requests (`rpcroute.router`)

```python
from rpcroute.context import background
from rpcroute.router import Router, Request, Response, Notification

router = Router()
router.register("echo", lambda ctx, req: Response(id=req.id, result=req.params))
router.register_notification("log", lambda ctx, note: print(note.params))

response = router.handle(background(), Request(method="echo", params="hello", id=1))
router.handle_notification(background(), Notification(method="log", params="debug"))
```

A request handler is a callable `(ctx, request) -> Response` or an object
with a `handle` method of that shape; a notification handler is a callable
`(ctx, notification)` or an object with a `handle_notification` method.

- An unknown request method goes to the handler given to
  `set_default_handler`; if there is none, the response carries an
  `RpcError` with `ErrorCode.METHOD_NOT_FOUND` and the request's id.
- An unknown notification goes to the handler given to
  `set_default_notification_handler`, or is ignored.
- `registered_methods`, `registered_notification_methods`, `has_method`,
  `has_notification_method`, `unregister`, `unregister_notification`,
  `clear` (which also drops the default handlers) and `stats` (a
  `RouterStats`) manage what is registered.

`Request`, `Response` and `Notification` are dataclasses; `RpcError` holds a
`code`, `message` and `data` and can also be raised. `ErrorCode` lists the
standard JSON-RPC codes plus `TIMEOUT` (-32001) and `UNAUTHORIZED` (-32002).
A `Router` is itself callable as a handler.

## Contexts (`rpcroute.context`)

`background()` is the root context. `Context.with_cancel()`,
`Context.with_timeout(seconds)` and `Context.with_value(key, value)` derive
children; cancelling a context cancels everything derived from it.
`is_done()`, `wait(timeout)` and `err()` report its state; `err()` is a
`ContextCancelled` or `DeadlineExceeded` once it is done.

`RequestContext` carries a `correlation_id`, thread-safe `metadata`
(`set_metadata`, `get_metadata`, `get_metadata_string`), a `start_time` and
an optional `timeout` (0 means none), with `duration()`, `is_timed_out()`,
`with_timeout(ctx)` and `clone()`. Attach it to a context with
`with_request_context(ctx, rc)` and read it back with
`get_request_context(ctx)`, which returns `None` when there is none.

## Middleware (`rpcroute.middleware`)

```python
from rpcroute.middleware import (
    Chain, RequestMetrics, logging_middleware, metrics_middleware,
    recovery_middleware, timeout_middleware,
)

metrics = RequestMetrics()
handler = Chain(
    logging_middleware(None),
    metrics_middleware(metrics),
    recovery_middleware(None),
    timeout_middleware(0.2),
).then(router)
```

The first middleware in a chain is the outermost layer; `Chain.append`
returns a new, longer chain.

- `logging_middleware(logger)` logs each request and response at INFO level
  (to the `rpcroute` logger when given `None`).
- `metrics_middleware(metrics)` counts requests, errors, calls per method and
  total time into a `RequestMetrics`.
- `recovery_middleware(logger)` turns an exception raised by the handler into
  an `ErrorCode.INTERNAL` response.
- `timeout_middleware(default_timeout)` answers with `ErrorCode.TIMEOUT` when
  the handler outlasts the request context's timeout or the default.
- `auth_middleware(auth_func)` answers with `ErrorCode.UNAUTHORIZED` when
  `auth_func(ctx, method)` raises.
- `context_enrichment_middleware()` makes sure a `RequestContext` exists and
  records `method` and `request_id` in its metadata.

## Correlation (`rpcroute.correlation`)

`CorrelationTracker` registers correlation ids, takes a response with
`complete` or an error with `complete_with_error`, and hands it over once
through `wait_for_response(correlation_id, timeout)`, which raises
`CorrelationNotFound`, `CorrelationTimeout` or the delivered error.
`cancel`, `shutdown` and `stats` manage pending entries. Entries are never
expired on their own; they stay until consumed or cancelled.

## Asynchronous dispatch (`rpcroute.async_router`)

```python
from rpcroute.async_router import AsyncRouter

async_router = AsyncRouter(router=router, workers=5, queue_size=100)
async_router.start()
correlation_id = async_router.handle_async(
    background(), Request(method="echo", params={}, id="a")
)
response = async_router.get_response(correlation_id, 1.0)
async_router.shutdown(background())
```

Requests are queued for a fixed pool of worker threads, passing through any
middleware given to the constructor. `handle_async_with_timeout` bounds a
request by a timeout, `handle_async_with_callback` calls
`callback(response, error)` when done, and `handle` blocks for the response
and reports failures as error responses. A full queue raises
`QueueFullError`; a router that is not running raises `RouterShutdownError`.
`stats()` returns an `AsyncRouterStats`.

## Request manager (`rpcroute.manager`)

`RequestManager(max_concurrent, max_queued)` runs `fn(ctx)` on threads, at
most `max_concurrent` at once, queuing up to `max_queued` more. `execute`
raises `ManagerError` when the manager is not running or the queue is full;
exceptions from `fn` are not propagated. `cancel_request`,
`get_active_request` and `list_active_requests` work on `ActiveRequest`
entries, `shutdown(ctx)` cancels active work, and `metrics()` returns a
`ManagerMetrics` snapshot.

## What it does not do

rpcroute works on Python objects inside one process. It does not read or
write JSON, validate messages against a schema, or provide a transport,
server or command-line program; the caller builds `Request` and
`Notification` objects and delivers `Response` objects itself.

## Running the tests

```
pip install -e ".[test]"
pytest
```