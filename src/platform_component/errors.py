"""
Error taxonomy for the platform component runtime.

Handshake and connect errors are fatal and raised synchronously.
Heartbeat publish failures never surface; log sink failures do.
"""
from __future__ import annotations


class PlatformComponentError(RuntimeError):
    """Base class for all platform component errors."""


class KeyGenerationError(PlatformComponentError):
    """Raised when a new nkey pair cannot be produced."""


class InvalidKeyError(PlatformComponentError, ValueError):
    """Raised when key material is empty, malformed or of the wrong role."""


class EncodeError(PlatformComponentError, ValueError):
    """Raised when registration data cannot be encoded as JSON."""


class RegistrationRequestError(PlatformComponentError):
    """Raised when the registration request could not be sent or read."""


class RegistrationRejectedError(PlatformComponentError):
    """Raised when the control plane answers with a non-200 status."""

    def __init__(self, status: int, reason: str, body: str) -> None:
        self.status = status
        self.reason = reason
        self.body = body
        super().__init__(f"{status} {reason}: {body}")


class DecodeError(PlatformComponentError, ValueError):
    """
    Raised when JSON returned by the control plane cannot be decoded.

    stage is "response" for the outer envelope and "config" for the
    embedded component config.
    """

    def __init__(self, stage: str, message: str) -> None:
        self.stage = stage
        super().__init__(f"{stage} decode failed: {message}")


class ConnectError(PlatformComponentError):
    """Raised when the bus connection cannot be opened or authenticated."""


class DrainTimeoutError(PlatformComponentError):
    """Raised when the connection did not drain and close within the bound."""


class PublishError(PlatformComponentError):
    """Raised when the bus rejects a publish."""


class ComponentStateError(PlatformComponentError):
    """Raised when an operation is called in a lifecycle state that forbids it."""
