from dataclasses import dataclass
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator

from studybuddy.schemas.common import UTCDateTime
from studybuddy.schemas.invitations import InvitationOut


class GroupLevel(StrEnum):
    beginner = "beginner"
    intermediate = "intermediate"
    advanced = "advanced"


class TimeCommitment(StrEnum):
    ten = "10hrs/wk"
    fifteen = "15hrs/wk"
    twenty = "20hrs/wk"


class GroupStatus(StrEnum):
    pending_approval = "pending_approval"
    active = "active"
    rejected = "rejected"
    archived = "archived"


class ResourceType(StrEnum):
    video = "video"
    article = "article"
    document = "document"
    link = "link"
    book = "book"


class MembershipStatus(StrEnum):
    active = "active"
    left = "left"
    removed = "removed"
    pending_approval = "pending_approval"


class GroupCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    concept: str = Field(min_length=1, max_length=200)
    level: GroupLevel
    time_commitment: TimeCommitment
    description: str | None = Field(default=None, max_length=2000)

    @field_validator("name", "concept")
    @classmethod
    def strip_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Field cannot be blank")
        return value


@dataclass(frozen=True)
class GroupFilters:
    level: GroupLevel | None = None
    time_commitment: TimeCommitment | None = None
    concept: str | None = None

    def matches(self, group: "GroupOut") -> bool:
        if self.level and group.level != self.level:
            return False
        if self.time_commitment and group.time_commitment != self.time_commitment:
            return False
        if self.concept and self.concept.lower() not in group.concept.lower():
            return False
        return True


class ApprovalStatus(BaseModel):
    approved_by: str | None = None
    approved_at: UTCDateTime | None = None
    rejected_by: str | None = None
    rejection_reason: str | None = None
    rejected_at: UTCDateTime | None = None


class GroupOverview(BaseModel):
    meeting_link: str | None = None
    meeting_link_created_at: UTCDateTime | None = None


class ResourceIn(BaseModel):
    type: ResourceType
    title: str = Field(min_length=1, max_length=300)
    url: HttpUrl
    description: str = Field(default="", max_length=2000)


class ResourceOut(BaseModel):
    resource_id: str
    type: ResourceType
    title: str
    url: str
    description: str = ""
    uploaded_by: str
    uploaded_by_name: str
    uploaded_at: UTCDateTime

    model_config = ConfigDict(from_attributes=True)


class GroupOut(BaseModel):
    group_id: str
    name: str
    concept: str
    description: str | None = None
    level: GroupLevel
    time_commitment: TimeCommitment
    created_by: str
    status: GroupStatus
    approval_status: ApprovalStatus = Field(default_factory=ApprovalStatus)
    overview: GroupOverview = Field(default_factory=GroupOverview)
    resources: list[ResourceOut] = Field(default_factory=list)
    discussion_id: str | None = None
    created_at: UTCDateTime
    updated_at: UTCDateTime | None = None
    member_count: int | None = None

    model_config = ConfigDict(from_attributes=True)


class GroupBrowseOut(GroupOut):
    current_user_is_member: bool = False
    current_user_is_admin: bool = False


class GroupAdminOut(GroupOut):
    creator_name: str | None = None
    creator_email: str | None = None


class AdminGroupsOut(BaseModel):
    groups: list[GroupAdminOut]
    pending_count: int


class GroupRejectIn(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class MembershipOut(BaseModel):
    group_id: str
    user_id: str
    is_admin: bool
    status: MembershipStatus
    joined_at: UTCDateTime
    left_at: UTCDateTime | None = None

    model_config = ConfigDict(from_attributes=True)


class MemberDetail(MembershipOut):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None


class MeetingLinkOut(BaseModel):
    group_id: str
    meeting_link: str
    meeting_link_created_at: UTCDateTime


class AdminStatsOut(BaseModel):
    total_users: int
    total_groups: int
    pending_groups: int
    active_groups: int
    rejected_groups: int


class GroupDetailOut(BaseModel):
    group: GroupOut
    members: list[MemberDetail]
    member_count: int
    is_member: bool
    is_admin: bool
    pending_invitations: list[InvitationOut] = Field(default_factory=list)
