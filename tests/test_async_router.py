import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from rpcroute.async_router import (
    AsyncRouter,
    QueueFullError,
    RouterShutdownError,
)
from rpcroute.context import (
    DeadlineExceeded,
    RequestContext,
    background,
    get_request_context,
    with_request_context,
)
from rpcroute.correlation import CorrelationNotFound
from rpcroute.middleware import (
    RequestMetrics,
    context_enrichment_middleware,
    logging_middleware,
    metrics_middleware,
    recovery_middleware,
    timeout_middleware,
)
from rpcroute.router import ErrorCode, Request, Response, Router, RpcError

LOGGER_NAME = "tests.async_router"


def echo(ctx, req):
    return Response(id=req.id, result=req.params)


def slow(ctx, req):
    time.sleep(0.05)
    return Response(id=req.id, result={"status": "slow"})


def failing(ctx, req):
    return Response(id=req.id, error=RpcError(ErrorCode.INTERNAL, "test error"))


@pytest.fixture
def async_router():
    base = Router()
    base.register("test.echo", echo)
    base.register("test.slow", slow)
    base.register("test.error", failing)
    ar = AsyncRouter(base, workers=5, queue_size=100)
    ar.start()
    yield ar
    ar.shutdown(background())


def test_handle_async(async_router):
    req = Request(method="test.echo", params={"message": "hello"}, id="test-1")
    correlation_id = async_router.handle_async(background(), req)
    assert correlation_id != ""
    resp = async_router.get_response(correlation_id, 1.0)
    assert resp.id == "test-1"
    assert resp.error is None
    assert resp.result == {"message": "hello"}


def test_handle_async_error_response(async_router):
    correlation_id = async_router.handle_async(
        background(), Request(method="test.error", id="err-1")
    )
    resp = async_router.get_response(correlation_id, 1.0)
    assert resp.error.code == ErrorCode.INTERNAL
    assert resp.error.message == "test error"


def test_unknown_method_returns_method_not_found(async_router):
    correlation_id = async_router.handle_async(
        background(), Request(method="nope", id="x")
    )
    resp = async_router.get_response(correlation_id, 1.0)
    assert resp.error.code == ErrorCode.METHOD_NOT_FOUND
    assert resp.id == "x"


def test_handle_async_with_timeout_expires(async_router):
    req = Request(method="test.slow", id="test-2")
    correlation_id = async_router.handle_async_with_timeout(background(), req, 0.01)
    with pytest.raises(TimeoutError):
        async_router.get_response(correlation_id, 0.03)


def test_handle_async_with_timeout_sets_request_timeout(async_router):
    rc = RequestContext("existing")
    ctx = with_request_context(background(), rc)
    req = Request(method="test.echo", params={"a": 1}, id="t-3")
    correlation_id = async_router.handle_async_with_timeout(ctx, req, 0.5)
    assert rc.timeout == 0.5
    assert rc.correlation_id == correlation_id
    resp = async_router.get_response(correlation_id, 1.0)
    assert resp.result == {"a": 1}


def test_handle_async_with_callback(async_router):
    done = threading.Event()
    received = {}

    def callback(resp, err):
        received["resp"] = resp
        received["err"] = err
        done.set()

    req = Request(method="test.echo", params={"test": True}, id="test-3")
    async_router.handle_async_with_callback(background(), req, callback)
    assert done.wait(2.0)
    assert received["err"] is None
    assert received["resp"].id == "test-3"

    direct = async_router.handle(
        background(), Request(method="test.echo", params={"test": True}, id="test-3b")
    )
    assert direct.id == "test-3b"
    assert direct.error is None
    assert received["resp"].result == direct.result == {"test": True}


def test_handle_async_with_callback_receives_error(async_router):
    done = threading.Event()
    received = {}

    def callback(resp, err):
        received["resp"] = resp
        received["err"] = err
        done.set()

    ctx = background().with_timeout(0.01)
    async_router.handle_async_with_callback(
        ctx, Request(method="test.slow", id="cb-err"), callback
    )
    assert done.wait(2.0)
    assert received["resp"] is None
    assert isinstance(received["err"], DeadlineExceeded)

    direct = async_router.handle(ctx, Request(method="test.slow", id="cb-err-2"))
    assert direct.id == "cb-err-2"
    assert direct.error.code == ErrorCode.TIMEOUT


def test_concurrent_requests(async_router):
    def run(n):
        req = Request(method="test.echo", params={"num": n}, id=f"concurrent-{n}")
        correlation_id = async_router.handle_async(background(), req)
        resp = async_router.get_response(correlation_id, 1.0)
        return resp is not None and resp.error is None and resp.result == {"num": n}

    with ThreadPoolExecutor(max_workers=50) as pool:
        results = list(pool.map(run, range(50)))
    assert sum(results) == 50


def test_synchronous_handle(async_router):
    req = Request(method="test.echo", params={"sync": True}, id="sync-1")
    resp = async_router.handle(background(), req)
    assert resp.error is None
    assert resp.id == "sync-1"
    assert resp.result == {"sync": True}


def test_stats(async_router):
    stats = async_router.stats()
    assert stats.running is True
    assert stats.workers == 5


def test_get_response_unknown_id(async_router):
    with pytest.raises(CorrelationNotFound):
        async_router.get_response("nonexistent", 0.01)


def test_start_twice_raises(async_router):
    with pytest.raises(RuntimeError, match="already running"):
        async_router.start()


def test_defaults_for_non_positive_config():
    ar = AsyncRouter(workers=0, queue_size=-1)
    stats = ar.stats()
    assert stats.workers == 10
    assert stats.running is False
    assert isinstance(ar.router, Router)


def test_handler_exception_becomes_internal_error():
    base = Router()

    def boom(ctx, req):
        raise ValueError("kaboom")

    base.register("boom", boom)
    ar = AsyncRouter(base, workers=1, queue_size=5)
    ar.start()
    try:
        correlation_id = ar.handle_async(background(), Request(method="boom", id="b"))
        resp = ar.get_response(correlation_id, 1.0)
        assert resp.error.code == ErrorCode.INTERNAL
        assert "kaboom" in resp.error.data
    finally:
        ar.shutdown(background())


def test_shutdown():
    base = Router()

    def sleeper(ctx, req):
        if ctx.wait(0.1):
            return Response(id=req.id, error=RpcError(ErrorCode.INTERNAL, "cancelled"))
        return Response(id=req.id, result="completed")

    base.register("test.sleep", sleeper)
    ar = AsyncRouter(base, workers=3, queue_size=10)
    ar.start()

    ids = [
        ar.handle_async(background(), Request(method="test.sleep", id=f"shutdown-{i}"))
        for i in range(5)
    ]
    assert len(set(ids)) == 5

    ar.shutdown(background().with_timeout(0.5))
    assert ar.stats().running is False

    with pytest.raises(RouterShutdownError):
        ar.handle_async(background(), Request(method="test.sleep", id="after-shutdown"))


def test_handle_after_shutdown_returns_error_response():
    ar = AsyncRouter(workers=1, queue_size=1)
    resp = ar.handle(background(), Request(method="anything", id="late"))
    assert resp.id == "late"
    assert resp.error.code == ErrorCode.INTERNAL
    assert resp.error.message == "Failed to process request"


def test_shutdown_times_out_while_workers_busy():
    base = Router()
    started = threading.Event()
    release = threading.Event()

    def blocker(ctx, req):
        started.set()
        release.wait(2.0)
        return Response(id=req.id, result="done")

    base.register("block", blocker)
    ar = AsyncRouter(base, workers=1, queue_size=2)
    ar.start()
    ar.handle_async(background(), Request(method="block", id="1"))
    assert started.wait(1.0)
    try:
        with pytest.raises(DeadlineExceeded):
            ar.shutdown(background().with_timeout(0.05))
        assert ar.stats().running is False
    finally:
        release.set()


def test_queue_full():
    base = Router()
    started = threading.Event()

    def block(ctx, req):
        started.set()
        ctx.wait()
        return Response(id=req.id)

    base.register("test.block", block)
    ar = AsyncRouter(base, workers=1, queue_size=2)
    ar.start()
    ctx = background().with_cancel()
    try:
        ar.handle_async(ctx, Request(method="test.block", id="1"))
        assert started.wait(1.0)
        for i in (2, 3):
            ar.handle_async(ctx, Request(method="test.block", id=str(i)))
        with pytest.raises(QueueFullError):
            ar.handle_async(ctx, Request(method="test.block", id="4"))
        resp = ar.handle(ctx, Request(method="test.block", id="5"))
        assert resp.error.code == ErrorCode.INTERNAL
        assert resp.error.data == "request queue is full"
    finally:
        ctx.cancel()
        ar.shutdown(background())


def test_with_middleware():
    base = Router()
    base.register(
        "test.method", lambda ctx, req: Response(id=req.id, result={"original": True})
    )
    calls = []

    def test_middleware(next_handler):
        def handler(ctx, req):
            calls.append(req.method)
            resp = next_handler(ctx, req)
            if isinstance(resp.result, dict):
                resp.result["middleware"] = True
            return resp

        return handler

    ar = AsyncRouter(base, workers=2, queue_size=10, middleware=[test_middleware])
    ar.start()
    try:
        correlation_id = ar.handle_async(
            background(), Request(method="test.method", id="middleware-test")
        )
        resp = ar.get_response(correlation_id, 1.0)
        assert calls == ["test.method"]
        assert resp.result == {"original": True, "middleware": True}
    finally:
        ar.shutdown(background())


@pytest.fixture
def integration():
    base = Router()
    base.register("echo", echo)

    def slow_handler(ctx, req):
        if ctx.wait(0.1):
            return Response(id=req.id, error=RpcError(ErrorCode.TIMEOUT, "cancelled"))
        return Response(id=req.id, result={"processed": True})

    def context_handler(ctx, req):
        rc = get_request_context(ctx)
        if rc is None:
            return Response(
                id=req.id, error=RpcError(ErrorCode.INTERNAL, "no request context")
            )
        return Response(
            id=req.id,
            result={"correlation_id": rc.correlation_id, "metadata": dict(rc.metadata)},
        )

    base.register("slow", slow_handler)
    base.register("context", context_handler)

    logger = logging.getLogger(LOGGER_NAME)
    metrics = RequestMetrics()
    ar = AsyncRouter(
        base,
        workers=10,
        queue_size=50,
        middleware=[
            context_enrichment_middleware(),
            logging_middleware(logger),
            metrics_middleware(metrics),
            recovery_middleware(logger),
            timeout_middleware(0.2),
        ],
    )
    ar.start()
    yield ar, metrics
    ar.shutdown(background().with_timeout(2.0))


def test_integration_basic_flow(integration, caplog):
    ar, metrics = integration
    with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
        correlation_id = ar.handle_async(
            background(),
            Request(method="echo", params={"message": "hello async"}, id="basic-1"),
        )
        resp = ar.get_response(correlation_id, 1.0)
    assert resp.error is None
    assert resp.result == {"message": "hello async"}
    assert correlation_id in caplog.text
    assert metrics.total_requests >= 1


def test_integration_context_propagation(integration):
    ar, _ = integration
    rc = RequestContext("test-context-123")
    rc.set_metadata("user", "testuser")
    rc.set_metadata("requestType", "test")
    ctx = with_request_context(background(), rc)

    correlation_id = ar.handle_async(ctx, Request(method="context", id="context-1"))
    resp = ar.get_response(correlation_id, 1.0)
    metadata = resp.result["metadata"]
    assert metadata["user"] == "testuser"
    assert metadata["method"] == "context"
    assert resp.result["correlation_id"] == correlation_id


def test_integration_timeout_handling(integration):
    ar, _ = integration
    rc = RequestContext("timeout-test")
    rc.timeout = 0.05
    ctx = with_request_context(background(), rc)

    correlation_id = ar.handle_async(ctx, Request(method="slow", id="timeout-1"))
    resp = ar.get_response(correlation_id, 0.2)
    assert resp.error is not None
    assert resp.error.code == ErrorCode.TIMEOUT


def test_integration_callback_pattern(integration):
    ar, _ = integration
    done = threading.Event()
    received = {}

    def callback(resp, err):
        received["resp"] = resp
        received["err"] = err
        done.set()

    ar.handle_async_with_callback(
        background(),
        Request(method="echo", params={"callback": True}, id="callback-1"),
        callback,
    )
    assert done.wait(2.0)
    assert received["err"] is None
    assert received["resp"].result["callback"] is True

    direct = ar.handle(
        background(),
        Request(method="echo", params={"callback": True}, id="callback-2"),
    )
    assert direct.id == "callback-2"
    assert direct.error is None
    assert received["resp"].result == direct.result