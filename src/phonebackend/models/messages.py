"""Relay event payloads."""

from __future__ import annotations

from typing import Any

from pydantic import field_validator

from phonebackend.models._base import RelayModel

#: Correlation ids are opaque; they are echoed back exactly as received.
CorrelationId = str | int


class AuthenticatePayload(RelayModel):
    """Outbound ``authenticate`` handshake."""

    username: str
    user_id: str


class AuthErrorPayload(RelayModel):
    """Inbound ``auth_error``."""

    message: str = "Authentication rejected"


class ApiRequest(RelayModel):
    """Inbound ``api_request`` relayed from a remote caller."""

    id: CorrelationId
    method: str = ""
    path: str = ""
    body: Any = None

    @field_validator("id")
    @classmethod
    def _id_non_empty(cls, value: CorrelationId) -> CorrelationId:
        if isinstance(value, str) and not value.strip():
            raise ValueError("id must be non-empty")
        return value

    @field_validator("method")
    @classmethod
    def _normalize_method(cls, value: str) -> str:
        return value.strip().upper()


class ApiResponse(RelayModel):
    """Outbound ``api_response``.

    Exactly one of ``body`` or ``error`` is sent; ``error`` is used for
    internal failures only, every other outcome carries a ``body``.
    """

    request_id: CorrelationId | None
    status_code: int
    body: Any = None
    error: str | None = None

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"requestId": self.request_id, "statusCode": self.status_code}
        if self.error is not None:
            payload["error"] = self.error
        else:
            payload["body"] = self.body
        return payload


class SnapshotRequest(RelayModel):
    """Inbound ``get_data_snapshot``."""

    request_id: CorrelationId | None = None


class DataSnapshot(RelayModel):
    """Outbound ``data_snapshot``."""

    request_id: CorrelationId | None
    snapshot: dict[str, Any]

    def to_wire(self) -> dict[str, Any]:
        return {"requestId": self.request_id, "snapshot": self.snapshot}
