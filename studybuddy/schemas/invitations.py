from dataclasses import dataclass
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, EmailStr, SecretStr

from studybuddy.schemas.common import UTCDateTime


class InvitationStatus(StrEnum):
    pending = "pending"
    accepted = "accepted"
    declined = "declined"
    expired = "expired"


class InvitationCreate(BaseModel):
    email: EmailStr


class InvitationTokenIn(BaseModel):
    token: SecretStr


class InvitationOut(BaseModel):
    group_id: str
    invited_email: EmailStr
    invited_by: str
    status: InvitationStatus
    sent_at: UTCDateTime
    expires_at: UTCDateTime
    accepted_at: UTCDateTime | None = None
    accepted_by: str | None = None

    model_config = ConfigDict(from_attributes=True)


@dataclass(frozen=True)
class IssuedInvitation:
    invitation: InvitationOut
    token: str
    link: str
    group_name: str
    concept: str


class InvitationVerifyOut(BaseModel):
    group_id: str
    group_name: str
    concept: str
    invited_email: EmailStr
    expires_at: UTCDateTime


class InvitationAcceptOut(BaseModel):
    group_id: str
    membership_created: bool
