"""In-process JSON-RPC routing with contexts, middleware, correlation tracking and worker-pool dispatch."""

__version__ = "0.1.0"

__all__ = ["async_router", "context", "correlation", "manager", "middleware", "router"]