"""Call-signaling relay: presence registry, call session tracking, WebSocket routing."""

__version__ = "0.1.0"
