"""Remoting protocol, TCP client and name-server routing for a RocketMQ-compatible broker."""

__version__ = "0.1.0"

__all__ = [
    "codec",
    "future",
    "connection",
    "remoting",
    "request",
    "constants",
    "model",
    "route",
    "namesrv",
]