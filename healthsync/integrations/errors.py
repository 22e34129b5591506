"""Typed errors raised by the sync engine.

Each error carries an HTTP-equivalent ``status_code`` so the calling
controller layer can translate it without inspecting the type hierarchy.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for every error surfaced by the sync engine."""

    status_code: int = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class NotFound(SyncError):
    """A connection (or other entity) does not exist."""

    status_code = 404


class InvalidState(SyncError):
    """The connection is not in a state that allows the operation."""

    status_code = 400


class InvalidOperation(SyncError):
    """The operation cannot be performed, e.g. refresh without a refresh token."""

    status_code = 400


class AuthExpired(SyncError):
    """Credentials are expired or unusable; the user must re-authorize."""

    status_code = 401


class CryptoError(SyncError):
    """Stored ciphertext could not be decrypted."""

    status_code = 500


class MappingError(SyncError):
    """A single provider record could not be mapped to the canonical model."""

    status_code = 422


class RateLimitExceeded(SyncError):
    """The rate limiter gave up after its bounded number of waits."""

    status_code = 429

    def __init__(self, bucket: str, attempts: int) -> None:
        super().__init__(
            f"Rate limit for bucket '{bucket}' not satisfied after {attempts} waits"
        )
        self.bucket = bucket
        self.attempts = attempts


class ProviderError(SyncError):
    """A remote provider call failed (non-2xx, transport error, bad payload).

    Attributes:
        provider:  Provider slug, e.g. ``"fitbit"``.
        operation: Adapter operation that failed, e.g. ``"get_activities"``.
        cause:     The underlying exception, if any.
        status:    Remote HTTP status when one was received.
    """

    status_code = 502

    def __init__(
        self,
        provider: str,
        operation: str,
        cause: BaseException | str | None = None,
        status: int | None = None,
    ) -> None:
        detail = f": {cause}" if cause else ""
        super().__init__(f"{provider} {operation} failed{detail}")
        self.provider = provider
        self.operation = operation
        self.cause = cause
        self.status = status
