"""Data models for relay payloads and local state."""

from phonebackend.models._base import RelayModel
from phonebackend.models.credentials import Credentials
from phonebackend.models.messages import (
    ApiRequest,
    ApiResponse,
    AuthenticatePayload,
    AuthErrorPayload,
    DataSnapshot,
    SnapshotRequest,
)

__all__ = [
    "ApiRequest",
    "ApiResponse",
    "AuthErrorPayload",
    "AuthenticatePayload",
    "Credentials",
    "DataSnapshot",
    "RelayModel",
    "SnapshotRequest",
]
