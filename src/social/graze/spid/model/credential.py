"""Credential value object.

Holds the bearer token issued by SPiD together with its refresh token, expiry
and identity markers. Credentials are frozen: every state transition in the
client replaces the whole value, so a request that captured a credential never
observes it changing underneath it.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Credential(BaseModel):
    """Access credential for SPiD API calls.

    A client credential (app-level, obtained with the client-credentials
    grant) is never tied to a user and never carries a refresh token.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(min_length=1)
    """Opaque bearer value sent with each API call."""

    refresh_token: Optional[str] = None
    """Refresh token for user credentials. Absent for client credentials."""

    expires_at: Optional[datetime] = None
    """Instant the access token stops being valid. None means unknown."""

    subject_id: Optional[str] = None
    """SPiD user id of the authenticated user."""

    is_client_credential: bool = False

    @field_validator("expires_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is None:
            return v
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @model_validator(mode="after")
    def check_client_credential(self) -> "Credential":
        if self.is_client_credential and self.refresh_token is not None:
            raise ValueError("client credentials cannot carry a refresh token")
        return self

    @property
    def can_refresh(self) -> bool:
        """True when a replacement can be obtained without user interaction."""
        return self.is_client_credential or self.refresh_token is not None

    def has_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.expires_at <= now

    def expires_within(self, seconds: float, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.expires_at <= now + timedelta(seconds=seconds)

    def serialize(self) -> str:
        return self.model_dump_json()

    @classmethod
    def deserialize(cls, data: str | bytes) -> "Credential":
        return cls.model_validate_json(data)

    def __repr__(self) -> str:
        # Tokens stay out of logs and tracebacks.
        return (
            f"Credential(subject_id={self.subject_id!r}, "
            f"expires_at={self.expires_at!r}, "
            f"is_client_credential={self.is_client_credential!r}, "
            f"has_refresh_token={self.refresh_token is not None})"
        )

    __str__ = __repr__
