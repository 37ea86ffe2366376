"""
Error taxonomy for the ARCA protocol client.

Every failure that crosses a client boundary is one of these kinds. Network
and parsing exceptions from httpx/lxml are translated at the client edge and
never leak to callers.

    ArcaError
    +-- CertificateFormatError   fatal, re-upload material
    +-- SigningError             fatal
    +-- AuthenticationError      fatal until credentials are fixed
    +-- StaleTokenStateError     transient, retry after a short delay
    +-- TransportError           transient, retry with backoff
    +-- AuthorityRejection       terminal for the invoice
    +-- ValidationError          fatal, raised before any network call
"""

from __future__ import annotations


class ArcaError(Exception):
    """Base class for all ARCA client errors."""

    transient = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class CertificateFormatError(ArcaError):
    """Certificate or private key is missing, malformed or unparseable."""


class SigningError(ArcaError):
    """Cryptographic failure while building the signed envelope."""


class AuthenticationError(ArcaError):
    """WSAA rejected the signed ticket request."""


class StaleTokenStateError(ArcaError):
    """WSAA says a valid ticket exists, but none is cached locally."""

    transient = True


class TransportError(ArcaError):
    """Network failure, timeout or an unreadable authority response."""

    transient = True


class AuthorityRejection(ArcaError):
    """Business-level rejection with an authority-supplied code."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        authority_response: str | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.authority_response = authority_response


class ValidationError(ArcaError):
    """Input rejected locally, before contacting the authority."""
