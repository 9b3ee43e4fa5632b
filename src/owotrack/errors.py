"""
Exception types raised by the owotrack receiver.

Send paths and the periodic tick never let these escape; they surface from
setup calls (binding sockets, reading state before initialization) and from
the wire codec, where the caller decides to drop the datagram.
"""


class OwoTrackError(RuntimeError):
    pass


class TransportError(OwoTrackError):
    """Socket bind/send/receive failure."""


class PortBindError(TransportError):
    """The requested UDP port could not be bound (usually already in use)."""

    def __init__(self, port: int, reason: str = ""):
        self.port = port
        self.reason = reason
        message = f"failed to bind UDP port {port}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ProtocolError(OwoTrackError):
    """Datagram is undersized or otherwise not decodable."""


class NotInitializedError(OwoTrackError):
    """Operation attempted before setup completed."""
