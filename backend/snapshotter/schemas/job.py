from __future__ import annotations

import uuid
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator

from snapshotter.config import settings


class SnapshotJob(BaseModel):
    """Message payload delivered to the worker. Immutable; a retry is a new job."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    save_id: uuid.UUID = Field(alias="saveId")
    space_id: uuid.UUID = Field(alias="spaceId")
    url: str
    attempt: StrictInt = 1

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        url = str(v).strip()
        parsed = urlparse(url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc or not parsed.hostname:
            raise ValueError("url must be an absolute http(s) URL")
        return url

    @field_validator("attempt")
    @classmethod
    def validate_attempt(cls, v: int) -> int:
        if v < 1 or v > settings.SNAPSHOT_MAX_ATTEMPTS:
            raise ValueError(f"attempt must be between 1 and {settings.SNAPSHOT_MAX_ATTEMPTS}")
        return v

    def to_message(self) -> dict[str, object]:
        """Wire form: camelCase keys, string ids."""
        return {
            "saveId": str(self.save_id),
            "spaceId": str(self.space_id),
            "url": self.url,
            "attempt": self.attempt,
        }
