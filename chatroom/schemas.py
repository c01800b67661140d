from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _as_utc(v: Optional[datetime]) -> Optional[datetime]:
    if v is None:
        return None
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


class Message(BaseModel):
    """A chat message as it crosses the collection boundary.

    ``id`` stays ``None`` until storage assigns it on create.
    """

    model_config = ConfigDict(from_attributes=True, populate_by_name=True, extra="forbid")

    id: Optional[int] = None
    sender: str = ""
    sent_time: Optional[datetime] = Field(default=None, alias="sentTime")
    text: str = ""

    @field_validator("sent_time")
    @classmethod
    def normalize_sent_time(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    def to_wire(self) -> dict[str, Any]:
        # zero-valued fields are left out of the payload entirely
        return self.model_dump(mode="json", by_alias=True, exclude_defaults=True)


class MessageCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sender: str = Field(min_length=1)
    sent_time: Optional[datetime] = Field(default=None, alias="sentTime")
    text: str

    @field_validator("sent_time")
    @classmethod
    def normalize_sent_time(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    def to_message(self) -> Message:
        sent_time = self.sent_time or datetime.now(timezone.utc)
        return Message(sender=self.sender, sent_time=sent_time, text=self.text)


class MessageUpdate(BaseModel):
    text: str


class MessageEdit(MessageUpdate):
    """Sync-frame edit; both id and text must be present."""

    id: int

    def to_message(self) -> Message:
        return Message(id=self.id, text=self.text)
