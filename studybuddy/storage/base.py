"""Repository interfaces shared by the SQL and DynamoDB backends.

Every method either returns plain records from ``studybuddy.schemas`` or
raises a ``studybuddy.core.errors.StudyBuddyError`` subclass. Transport and
transaction failures surface as ``StorageError`` after the backend has undone
any partial write.
"""

import secrets
from abc import ABC, abstractmethod
from datetime import datetime

from studybuddy.schemas.discussions import DiscussionOut, MessageOut, NotesOut
from studybuddy.schemas.groups import (
    GroupCreate,
    GroupFilters,
    GroupOut,
    MembershipOut,
    MembershipStatus,
    ResourceOut,
)
from studybuddy.schemas.invitations import InvitationOut
from studybuddy.schemas.join_requests import JoinRequestOut


def new_group_id() -> str:
    return f"G{secrets.token_hex(5).upper()}"


def new_resource_id() -> str:
    return f"R{secrets.token_hex(6)}"


def new_request_id() -> str:
    return f"JR{secrets.token_hex(6)}"


def new_message_id() -> str:
    return f"M{secrets.token_hex(6)}"


def new_discussion_id() -> str:
    return f"D{secrets.token_hex(6)}"


def placeholder_meeting_link(base: str) -> str:
    return f"{base.rstrip('/')}/xxx-xxxx-xxx"


class GroupRepository(ABC):
    @abstractmethod
    def create(self, draft: GroupCreate, creator_id: str) -> GroupOut:
        """Insert a pending group plus the creator's admin membership, atomically."""

    @abstractmethod
    def get(self, group_id: str) -> GroupOut: ...

    @abstractmethod
    def list_active(self, filters: GroupFilters | None = None) -> list[GroupOut]:
        """Active groups, newest first, with ``member_count`` filled in."""

    @abstractmethod
    def list_for_user(self, user_id: str) -> list[GroupOut]:
        """Groups the user actively belongs to or created, newest first."""

    @abstractmethod
    def list_all_for_admin(self) -> list[GroupOut]: ...

    @abstractmethod
    def count_pending(self) -> int: ...

    @abstractmethod
    def approve(self, group_id: str, admin_id: str) -> GroupOut: ...

    @abstractmethod
    def reject(self, group_id: str, admin_id: str, reason: str) -> GroupOut: ...

    @abstractmethod
    def delete(self, group_id: str) -> None:
        """Remove the group and every record that references it."""

    @abstractmethod
    def add_resource(self, group_id: str, resource: ResourceOut) -> ResourceOut: ...

    @abstractmethod
    def remove_resource(self, group_id: str, resource_id: str) -> None: ...

    @abstractmethod
    def set_meeting_link(
        self, group_id: str, link: str, created_at: datetime
    ) -> GroupOut: ...


class MembershipRepository(ABC):
    @abstractmethod
    def get(self, group_id: str, user_id: str) -> MembershipOut | None: ...

    @abstractmethod
    def list_active(self, group_id: str) -> list[MembershipOut]: ...

    @abstractmethod
    def count_active(self, group_id: str) -> int: ...

    @abstractmethod
    def add(
        self, group_id: str, user_id: str, is_admin: bool = False
    ) -> tuple[MembershipOut, bool]:
        """Activate the membership; the flag is False when it was already active."""

    @abstractmethod
    def remove(
        self,
        group_id: str,
        user_id: str,
        status: MembershipStatus = MembershipStatus.removed,
    ) -> MembershipOut: ...

    @abstractmethod
    def group_ids_for_user(self, user_id: str) -> set[str]: ...

    def is_active_member(self, group_id: str, user_id: str) -> bool:
        membership = self.get(group_id, user_id)
        return membership is not None and membership.status == MembershipStatus.active

    def is_admin(self, group_id: str, user_id: str) -> bool:
        membership = self.get(group_id, user_id)
        return (
            membership is not None
            and membership.status == MembershipStatus.active
            and membership.is_admin
        )


class JoinRequestRepository(ABC):
    @abstractmethod
    def create(
        self, group_id: str, user_id: str, user_email: str, message: str
    ) -> JoinRequestOut:
        """Raises ``ConflictError`` when a pending request already exists."""

    @abstractmethod
    def get(self, request_id: str) -> JoinRequestOut: ...

    @abstractmethod
    def list_pending(self, group_id: str) -> list[JoinRequestOut]:
        """Pending requests for the group, oldest first."""

    @abstractmethod
    def approve(
        self, request_id: str, admin_id: str
    ) -> tuple[JoinRequestOut, bool]:
        """Mark approved and activate the membership as one unit."""

    @abstractmethod
    def reject(
        self, request_id: str, admin_id: str, reason: str
    ) -> JoinRequestOut: ...


class InvitationRepository(ABC):
    @abstractmethod
    def create(
        self,
        group_id: str,
        invited_email: str,
        invited_by: str,
        token_hash: str,
        sent_at: datetime,
        expires_at: datetime,
    ) -> InvitationOut: ...

    @abstractmethod
    def get_by_token_hash(self, token_hash: str) -> InvitationOut | None: ...

    @abstractmethod
    def find_pending(
        self, group_id: str, invited_email: str, now: datetime
    ) -> InvitationOut | None: ...

    @abstractmethod
    def list_pending(self, group_id: str, now: datetime) -> list[InvitationOut]: ...

    @abstractmethod
    def accept(
        self, token_hash: str, user_id: str, now: datetime
    ) -> tuple[InvitationOut, bool]:
        """Mark accepted and activate the membership as one unit."""

    @abstractmethod
    def expire_pending(self, now: datetime) -> int:
        """Flip overdue pending invitations to expired; returns how many changed."""


class DiscussionRepository(ABC):
    @abstractmethod
    def get_or_create(self, group_id: str) -> DiscussionOut: ...

    @abstractmethod
    def append_message(self, group_id: str, message: MessageOut) -> DiscussionOut: ...


class NotesRepository(ABC):
    def __init__(self, max_length: int):
        self.max_length = max_length

    def _clip(self, notes: str) -> str:
        return notes[: self.max_length]

    @abstractmethod
    def get_or_create(self, user_id: str, group_id: str) -> NotesOut: ...

    @abstractmethod
    def upsert(
        self, user_id: str, group_id: str, notes: str, updated_at: datetime
    ) -> NotesOut: ...
