"""Transports: REST client and live event channel."""
from .channel import LiveChannel, NullChannel, WebSocketChannel
from .http import ApiClient

__all__ = ["ApiClient", "LiveChannel", "NullChannel", "WebSocketChannel"]
