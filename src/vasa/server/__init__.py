"""HTTP server for the webhook admin API."""

from vasa.server.factory import HealthResponse, create_server

__all__ = [
    "HealthResponse",
    "create_server",
]
