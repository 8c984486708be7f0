from pydantic import BaseModel, ConfigDict, Field

from studybuddy.schemas.common import UTCDateTime


class MessageIn(BaseModel):
    message: str = Field(max_length=5000)


class MessageOut(BaseModel):
    message_id: str
    user_id: str
    user_name: str
    user_email: str
    message: str
    timestamp: UTCDateTime
    edited: bool = False
    edited_at: UTCDateTime | None = None

    model_config = ConfigDict(from_attributes=True)


class DiscussionOut(BaseModel):
    discussion_id: str
    group_id: str
    messages: list[MessageOut] = Field(default_factory=list)
    created_at: UTCDateTime
    updated_at: UTCDateTime | None = None

    model_config = ConfigDict(from_attributes=True)


class NotesIn(BaseModel):
    notes: str


class NotesOut(BaseModel):
    user_id: str
    group_id: str
    notes: str = ""
    updated_at: UTCDateTime | None = None

    model_config = ConfigDict(from_attributes=True)
