"""Base model for relay wire payloads.

Relay payloads use camelCase keys (``requestId``, ``statusCode``); models
expose snake_case fields and accept either spelling on input.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class RelayModel(BaseModel):
    """Base for every payload exchanged with the routing service."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_wire(self) -> dict[str, Any]:
        """Serialize with camelCase keys, omitting unset optional fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
