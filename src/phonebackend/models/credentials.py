"""Local login record."""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Credentials(BaseModel):
    """Identity stored by ``phone-backend login``.

    Parameters
    ----------
    username : str
        Name the agent authenticates with; also forms the public API URL.
    timestamp : datetime
        When the login happened.
    """

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    username: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("username")
    @classmethod
    def _username_non_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("username must be non-empty")
        if "/" in value:
            raise ValueError("username must not contain '/'")
        return value
