"""Session-scoped signaling relay for peer-to-peer media rooms."""

__version__ = "0.1.0"
