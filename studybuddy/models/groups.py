from __future__ import annotations

import datetime

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from studybuddy.core.database import Base
from studybuddy.schemas.groups import (
    ApprovalStatus,
    GroupLevel,
    GroupOverview,
    GroupStatus,
    MembershipStatus,
    ResourceType,
    TimeCommitment,
)
from studybuddy.schemas.invitations import InvitationStatus
from studybuddy.schemas.join_requests import JoinRequestStatus


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def _enum(enum_cls, name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda enum_cls: [e.value for e in enum_cls],
    )


class Group(Base):
    __tablename__ = "study_groups"

    group_id: Mapped[str] = mapped_column(String(16), primary_key=True)
    name: Mapped[str]
    concept: Mapped[str] = mapped_column(index=True)
    level: Mapped[GroupLevel] = mapped_column(_enum(GroupLevel, "grouplevel"))
    time_commitment: Mapped[TimeCommitment] = mapped_column(
        _enum(TimeCommitment, "timecommitment")
    )
    created_by: Mapped[str] = mapped_column(index=True)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    status: Mapped[GroupStatus] = mapped_column(
        _enum(GroupStatus, "groupstatus"),
        default=GroupStatus.pending_approval,
        index=True,
    )
    approved_by: Mapped[str | None] = mapped_column(default=None)
    approved_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    rejected_by: Mapped[str | None] = mapped_column(default=None)
    rejection_reason: Mapped[str | None] = mapped_column(Text, default=None)
    rejected_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    meeting_link: Mapped[str | None] = mapped_column(default=None)
    meeting_link_created_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    discussion_id: Mapped[str | None] = mapped_column(default=None)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default_factory=_utcnow, index=True
    )
    updated_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    resources: Mapped[list[GroupResource]] = relationship(
        back_populates="group",
        cascade="all, delete-orphan",
        order_by="GroupResource.id",
        lazy="selectin",
        init=False,
    )

    @property
    def approval_status(self) -> ApprovalStatus:
        return ApprovalStatus(
            approved_by=self.approved_by,
            approved_at=self.approved_at,
            rejected_by=self.rejected_by,
            rejection_reason=self.rejection_reason,
            rejected_at=self.rejected_at,
        )

    @property
    def overview(self) -> GroupOverview:
        return GroupOverview(
            meeting_link=self.meeting_link,
            meeting_link_created_at=self.meeting_link_created_at,
        )


class GroupResource(Base):
    __tablename__ = "group_resources"

    id: Mapped[int] = mapped_column(primary_key=True, init=False)
    group_id: Mapped[str] = mapped_column(
        ForeignKey("study_groups.group_id", ondelete="CASCADE"), index=True
    )
    group: Mapped[Group] = relationship(back_populates="resources", init=False)
    resource_id: Mapped[str] = mapped_column(unique=True)
    type: Mapped[ResourceType] = mapped_column(_enum(ResourceType, "resourcetype"))
    title: Mapped[str]
    url: Mapped[str]
    uploaded_by: Mapped[str]
    uploaded_by_name: Mapped[str]
    description: Mapped[str] = mapped_column(Text, default="")
    uploaded_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default_factory=_utcnow
    )


class Membership(Base):
    __tablename__ = "group_members"

    id: Mapped[int] = mapped_column(primary_key=True, init=False)
    group_id: Mapped[str] = mapped_column(index=True)
    user_id: Mapped[str] = mapped_column(index=True)
    is_admin: Mapped[bool] = mapped_column(default=False)
    status: Mapped[MembershipStatus] = mapped_column(
        _enum(MembershipStatus, "membershipstatus"),
        default=MembershipStatus.active,
    )
    joined_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default_factory=_utcnow
    )
    left_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_member"),
    )


class UserGroupIndex(Base):
    """Per-user list of groups the user actively belongs to."""

    __tablename__ = "user_group_index"

    user_id: Mapped[str] = mapped_column(primary_key=True)
    group_id: Mapped[str] = mapped_column(primary_key=True, index=True)


class JoinRequest(Base):
    __tablename__ = "join_requests"

    request_id: Mapped[str] = mapped_column(String(16), primary_key=True)
    group_id: Mapped[str] = mapped_column(index=True)
    user_id: Mapped[str] = mapped_column(index=True)
    user_email: Mapped[str]
    message: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[JoinRequestStatus] = mapped_column(
        _enum(JoinRequestStatus, "joinrequeststatus"),
        default=JoinRequestStatus.pending,
    )
    requested_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default_factory=_utcnow
    )
    processed_by: Mapped[str | None] = mapped_column(default=None)
    processed_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    rejection_reason: Mapped[str | None] = mapped_column(Text, default=None)

    __table_args__ = (
        Index(
            "uq_pending_join_request",
            "group_id",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )


class Invitation(Base):
    __tablename__ = "group_invitations"

    id: Mapped[int] = mapped_column(primary_key=True, init=False)
    group_id: Mapped[str] = mapped_column(index=True)
    invited_email: Mapped[str] = mapped_column(index=True)
    invited_by: Mapped[str]
    token_hash: Mapped[str] = mapped_column(unique=True, repr=False)
    expires_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), index=True
    )
    status: Mapped[InvitationStatus] = mapped_column(
        _enum(InvitationStatus, "invitationstatus"),
        default=InvitationStatus.pending,
        index=True,
    )
    sent_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default_factory=_utcnow
    )
    accepted_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    accepted_by: Mapped[str | None] = mapped_column(default=None)


class Discussion(Base):
    __tablename__ = "discussions"

    discussion_id: Mapped[str] = mapped_column(String(16), primary_key=True)
    group_id: Mapped[str] = mapped_column(unique=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default_factory=_utcnow
    )
    updated_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    messages: Mapped[list[DiscussionMessage]] = relationship(
        back_populates="discussion",
        cascade="all, delete-orphan",
        order_by="DiscussionMessage.id",
        lazy="selectin",
        init=False,
    )


class DiscussionMessage(Base):
    __tablename__ = "discussion_messages"

    id: Mapped[int] = mapped_column(primary_key=True, init=False)
    discussion_id: Mapped[str] = mapped_column(
        ForeignKey("discussions.discussion_id", ondelete="CASCADE"), index=True
    )
    discussion: Mapped[Discussion] = relationship(
        back_populates="messages", init=False
    )
    message_id: Mapped[str] = mapped_column(unique=True)
    user_id: Mapped[str]
    user_name: Mapped[str]
    user_email: Mapped[str]
    message: Mapped[str] = mapped_column(Text)
    timestamp: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default_factory=_utcnow
    )
    edited: Mapped[bool] = mapped_column(default=False)
    edited_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )


class UserGroupNotes(Base):
    __tablename__ = "user_group_notes"

    user_id: Mapped[str] = mapped_column(primary_key=True)
    group_id: Mapped[str] = mapped_column(primary_key=True, index=True)
    notes: Mapped[str] = mapped_column(Text, default="")
    updated_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
