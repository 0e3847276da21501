"""Custom exception hierarchy for phonebackend."""

from __future__ import annotations


class PhoneBackendError(Exception):
    """Base exception for all phonebackend errors."""


class ConfigError(PhoneBackendError):
    """Invalid or missing configuration."""


class StoreError(PhoneBackendError):
    """A store operation was refused.

    ``status_code`` is the relay status the dispatcher answers with.
    """

    status_code: int = 400

    def __init__(self, message: str, *, path: str = "") -> None:
        self.path = path
        super().__init__(message)


class InvalidPathError(StoreError):
    """Path has no segments where one is required (e.g. ``set("/")``)."""


class InvalidBodyError(StoreError):
    """Request body is not a JSON object where one is required."""


class PathConflictError(StoreError):
    """A write would go through, or merge into, a non-object node."""

    status_code = 409


class TransportError(PhoneBackendError):
    """Relay connection or framing failure."""

    def __init__(self, message: str, *, url: str = "") -> None:
        self.url = url
        super().__init__(message)


class AuthenticationError(PhoneBackendError):
    """The routing service rejected this agent's identity.

    Fatal: credentials are assumed invalid, not transient.
    """
