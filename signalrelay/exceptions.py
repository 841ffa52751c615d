"""Exception types raised by the relay server, clients, and endpoints."""
from __future__ import annotations


class RelayServerError(Exception):
    """Base exception type for exceptions raised by relay server."""

    pass


class AdmissionError(RelayServerError):
    """A new connection could not be admitted to the registry."""

    pass


class MissingIdentifierError(AdmissionError):
    """Connection did not supply an identifier in identified mode."""

    pass


class DuplicateIdentifierError(AdmissionError):
    """Identifier is already held by a live participant."""

    pass


class DeliveryError(RelayServerError):
    """Message could not be queued for delivery to a participant."""

    pass


class RelayClientError(Exception):
    """Base exception type for exceptions raised by relay clients."""

    pass


class AdmissionRefusedError(RelayClientError):
    """Relay server refused the connection with a policy violation."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class NegotiationError(Exception):
    """Error in the endpoint negotiation process."""

    pass
