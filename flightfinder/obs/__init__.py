"""Observability package.

Lightweight request middleware, in-process metrics, structured logging and
request-scoped context shared by the cache, the search service and the API.
"""

__all__ = [
    "middleware",
    "metrics",
    "logger",
    "context",
]
