"""Error taxonomy shared by the connection layer and the transfer engines."""


class PeerShareError(Exception):
    """Base class for all PeerShare errors."""


class ConnectivityError(PeerShareError):
    """The rendezvous lookup or the connection attempt failed."""


class TransportClosed(PeerShareError):
    """The link closed while something was still waiting on it."""


class ProtocolViolation(PeerShareError):
    """A peer sent something the protocol does not allow at this point."""


class AuthFailure(PeerShareError):
    """Password verification failed."""


class QuotaExceeded(PeerShareError):
    """The session hit its download limit or expired."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Session expired ({reason})")
        self.reason = reason
