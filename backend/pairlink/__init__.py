"""pairlink: signaling backbone for two-party WebRTC sessions."""

__version__ = "0.1.0"
