"""Network transport contract and the aiohttp implementation."""

from field_sync.transport.http import AiohttpTransport
from field_sync.transport.interfaces import Transport, TransportResponse, is_transient_status

__all__ = ["AiohttpTransport", "Transport", "TransportResponse", "is_transient_status"]
