"""API middleware modules."""

from .request_context import MetricsMiddleware, RequestIDMiddleware

__all__ = [
    "MetricsMiddleware",
    "RequestIDMiddleware",
]
