"""
Error types shared by the framing layer, session transport and simulator.

Timeouts and closed sockets subclass the builtin TimeoutError/ConnectionError
so callers can keep catching them the usual way.
"""


class WhiteboardError(Exception):
    """Base exception for whiteboard protocol errors."""

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class ProtocolError(WhiteboardError):
    """Malformed frame, oversize length or unknown message kind."""


class ClosedError(WhiteboardError):
    """Operation attempted on a component that was shut down."""


class ReadTimeoutError(TimeoutError):
    """No frame arrived within the read-idle window."""


class ConnectionClosed(ConnectionError):
    """Peer closed the stream."""
