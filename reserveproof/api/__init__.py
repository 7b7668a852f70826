"""HTTP API for ingestion and reserve status."""

from .server import ReserveApiHandlers, ReserveApiServer, create_api_app

__all__ = ["ReserveApiHandlers", "ReserveApiServer", "create_api_app"]
