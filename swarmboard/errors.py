"""
Exceptions raised by the protocol clients, connection managers and the
category store. Callers can catch SwarmBoardError for everything or pick the
specific kind they want to react to.
"""


class SwarmBoardError(Exception):
    """Base exception for all application-specific errors."""


class TransportError(SwarmBoardError):
    """Raised when a request fails at the network or HTTP level."""


class Timeout(TransportError):
    """Raised when a backend does not answer in time or refuses the connection."""


class AuthFailure(SwarmBoardError):
    """Raised when a backend rejects our credentials or session for good."""


class RemoteError(SwarmBoardError):
    """
    Raised when the backend answered but reported an error.
    `status` holds the HTTP status code when the error came from one.
    """

    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


class NotConnected(SwarmBoardError):
    """Raised when an operation needs a live client and there is none."""


class ConfigurationError(SwarmBoardError):
    """Raised for issues related to configuration loading or validation."""


class CategoryError(SwarmBoardError):
    """Raised for invalid category operations (duplicates, unknown names, Default)."""


_CONNECTION_SIGNATURES = ("refused", "timeout", "timed out", "401", "403")


def is_connection_loss(exc: BaseException) -> bool:
    """True when the failure looks like the backend went away or our session died."""
    if isinstance(exc, (TransportError, AuthFailure, NotConnected)):
        return True
    message = str(exc).lower()
    return any(sig in message for sig in _CONNECTION_SIGNATURES)
