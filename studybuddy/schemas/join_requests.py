from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from studybuddy.schemas.common import UTCDateTime

DEFAULT_REJECTION_REASON = "No reason provided"


class JoinRequestStatus(StrEnum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class JoinRequestIn(BaseModel):
    message: str = Field(default="", max_length=1000)


class JoinRequestRejectIn(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class JoinRequestOut(BaseModel):
    request_id: str
    group_id: str
    user_id: str
    user_email: str
    message: str = ""
    status: JoinRequestStatus
    requested_at: UTCDateTime
    processed_by: str | None = None
    processed_at: UTCDateTime | None = None
    rejection_reason: str | None = None

    model_config = ConfigDict(from_attributes=True)


class JoinRequestDecisionOut(BaseModel):
    request: JoinRequestOut
    membership_created: bool
