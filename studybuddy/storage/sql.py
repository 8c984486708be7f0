import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from studybuddy.core.config import Settings
from studybuddy.core.errors import (
    AlreadyProcessedError,
    ConflictError,
    NotFoundError,
    StorageError,
    StudyBuddyError,
)
from studybuddy.models.groups import (
    Discussion,
    DiscussionMessage,
    Group,
    GroupResource,
    Invitation,
    JoinRequest,
    Membership,
    UserGroupIndex,
    UserGroupNotes,
)
from studybuddy.schemas.common import as_utc
from studybuddy.schemas.discussions import DiscussionOut, MessageOut, NotesOut
from studybuddy.schemas.groups import (
    GroupCreate,
    GroupFilters,
    GroupOut,
    GroupStatus,
    MembershipOut,
    MembershipStatus,
    ResourceOut,
)
from studybuddy.schemas.invitations import InvitationOut, InvitationStatus
from studybuddy.schemas.join_requests import JoinRequestOut, JoinRequestStatus
from studybuddy.storage.base import (
    DiscussionRepository,
    GroupRepository,
    InvitationRepository,
    JoinRequestRepository,
    MembershipRepository,
    NotesRepository,
    new_discussion_id,
    new_group_id,
    new_request_id,
    placeholder_meeting_link,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@contextmanager
def storage_errors(session: Session, action: str) -> Iterator[None]:
    try:
        yield
    except StudyBuddyError:
        session.rollback()
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("SQL storage failed to %s", action)
        raise StorageError(f"Could not {action}") from exc


def _supports_row_locks(session: Session) -> bool:
    bind = session.get_bind()
    return bind.dialect.name != "sqlite"


def _index_add(session: Session, user_id: str, group_id: str) -> None:
    if session.get(UserGroupIndex, (user_id, group_id)) is not None:
        return
    try:
        with session.begin_nested():
            session.add(UserGroupIndex(user_id=user_id, group_id=group_id))
    except IntegrityError:
        # Indexed concurrently by another writer; the row we wanted exists.
        logger.debug("Group %s already indexed for user %s", group_id, user_id)


def _index_remove(session: Session, user_id: str, group_id: str) -> None:
    session.execute(
        delete(UserGroupIndex).where(
            UserGroupIndex.user_id == user_id,
            UserGroupIndex.group_id == group_id,
        )
    )


def _select_membership(session: Session, group_id: str, user_id: str):
    stmt = select(Membership).where(
        Membership.group_id == group_id,
        Membership.user_id == user_id,
    )
    if _supports_row_locks(session):
        stmt = stmt.with_for_update()
    return session.execute(stmt).scalar_one_or_none()


def _activate_membership(
    session: Session, group_id: str, user_id: str, is_admin: bool
) -> tuple[Membership, bool]:
    """Make (group, user) an active member inside the caller's transaction.

    The unique (group_id, user_id) constraint decides concurrent inserts: the
    losing insert is rolled back to its savepoint and reported as not created.
    """
    membership = _select_membership(session, group_id, user_id)
    if membership is None:
        membership = Membership(group_id=group_id, user_id=user_id, is_admin=is_admin)
        try:
            with session.begin_nested():
                session.add(membership)
        except IntegrityError:
            membership = _select_membership(session, group_id, user_id)
            if membership is None:
                raise
            if membership.status == MembershipStatus.active:
                return membership, False
        else:
            _index_add(session, user_id, group_id)
            return membership, True

    if membership.status == MembershipStatus.active:
        return membership, False

    membership.status = MembershipStatus.active
    membership.is_admin = is_admin
    membership.joined_at = _utcnow()
    membership.left_at = None
    _index_add(session, user_id, group_id)
    return membership, True


class SqlGroupRepository(GroupRepository):
    def __init__(self, session: Session, settings: Settings):
        self.session = session
        self.settings = settings

    def _get_model(self, group_id: str) -> Group:
        group = self.session.get(Group, group_id)
        if group is None:
            raise NotFoundError("Group not found")
        return group

    def _member_counts(self, group_ids: list[str]) -> dict[str, int]:
        if not group_ids:
            return {}
        rows = self.session.execute(
            select(Membership.group_id, func.count())
            .where(
                Membership.group_id.in_(group_ids),
                Membership.status == MembershipStatus.active,
            )
            .group_by(Membership.group_id)
        ).all()
        return {group_id: count for group_id, count in rows}

    def _with_counts(self, groups: list[Group]) -> list[GroupOut]:
        counts = self._member_counts([g.group_id for g in groups])
        result: list[GroupOut] = []
        for group in groups:
            out = GroupOut.model_validate(group)
            out.member_count = counts.get(group.group_id, 0)
            result.append(out)
        return result

    def create(self, draft: GroupCreate, creator_id: str) -> GroupOut:
        with storage_errors(self.session, "create the group"):
            now = _utcnow()
            group = Group(
                group_id=new_group_id(),
                name=draft.name,
                concept=draft.concept,
                level=draft.level,
                time_commitment=draft.time_commitment,
                created_by=creator_id,
                description=draft.description,
                meeting_link=placeholder_meeting_link(self.settings.meeting_link_base),
                meeting_link_created_at=now,
                created_at=now,
            )
            self.session.add(group)
            self.session.add(
                Membership(
                    group_id=group.group_id,
                    user_id=creator_id,
                    is_admin=True,
                    joined_at=now,
                )
            )
            self.session.add(
                UserGroupIndex(user_id=creator_id, group_id=group.group_id)
            )
            self.session.commit()
            out = GroupOut.model_validate(group)
            out.member_count = 1
            return out

    def get(self, group_id: str) -> GroupOut:
        with storage_errors(self.session, "load the group"):
            return GroupOut.model_validate(self._get_model(group_id))

    def list_active(self, filters: GroupFilters | None = None) -> list[GroupOut]:
        with storage_errors(self.session, "list groups"):
            stmt = select(Group).where(Group.status == GroupStatus.active)
            if filters is not None:
                if filters.level:
                    stmt = stmt.where(Group.level == filters.level)
                if filters.time_commitment:
                    stmt = stmt.where(Group.time_commitment == filters.time_commitment)
                if filters.concept:
                    stmt = stmt.where(
                        func.lower(Group.concept).contains(
                            filters.concept.lower(), autoescape=True
                        )
                    )
            groups = self.session.execute(
                stmt.order_by(Group.created_at.desc())
            ).scalars()
            return self._with_counts(list(groups))

    def list_for_user(self, user_id: str) -> list[GroupOut]:
        with storage_errors(self.session, "list the user's groups"):
            member_of = select(Membership.group_id).where(
                Membership.user_id == user_id,
                Membership.status == MembershipStatus.active,
            )
            groups = self.session.execute(
                select(Group)
                .where(or_(Group.group_id.in_(member_of), Group.created_by == user_id))
                .order_by(Group.created_at.desc())
            ).scalars()
            return self._with_counts(list(groups))

    def list_all_for_admin(self) -> list[GroupOut]:
        with storage_errors(self.session, "list groups"):
            groups = self.session.execute(
                select(Group).order_by(Group.created_at.desc())
            ).scalars()
            return self._with_counts(list(groups))

    def count_pending(self) -> int:
        with storage_errors(self.session, "count pending groups"):
            return self.session.execute(
                select(func.count())
                .select_from(Group)
                .where(Group.status == GroupStatus.pending_approval)
            ).scalar_one()

    def _raise_not_pending(self, group_id: str) -> None:
        if self.session.get(Group, group_id) is None:
            raise NotFoundError("Group not found")
        raise AlreadyProcessedError("Group has already been processed")

    def approve(self, group_id: str, admin_id: str) -> GroupOut:
        with storage_errors(self.session, "approve the group"):
            now = _utcnow()
            result = self.session.execute(
                update(Group)
                .where(
                    Group.group_id == group_id,
                    Group.status == GroupStatus.pending_approval,
                )
                .values(
                    status=GroupStatus.active,
                    approved_by=admin_id,
                    approved_at=now,
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                self._raise_not_pending(group_id)
            self.session.commit()
            return GroupOut.model_validate(self._get_model(group_id))

    def reject(self, group_id: str, admin_id: str, reason: str) -> GroupOut:
        with storage_errors(self.session, "reject the group"):
            now = _utcnow()
            result = self.session.execute(
                update(Group)
                .where(
                    Group.group_id == group_id,
                    Group.status == GroupStatus.pending_approval,
                )
                .values(
                    status=GroupStatus.rejected,
                    rejected_by=admin_id,
                    rejection_reason=reason,
                    rejected_at=now,
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                self._raise_not_pending(group_id)
            self.session.commit()
            return GroupOut.model_validate(self._get_model(group_id))

    def delete(self, group_id: str) -> None:
        with storage_errors(self.session, "delete the group"):
            group = self._get_model(group_id)
            discussion = self.session.execute(
                select(Discussion).where(Discussion.group_id == group_id)
            ).scalar_one_or_none()
            if discussion is not None:
                self.session.delete(discussion)
            for model in (
                Membership,
                UserGroupIndex,
                JoinRequest,
                Invitation,
                UserGroupNotes,
            ):
                self.session.execute(delete(model).where(model.group_id == group_id))
            self.session.delete(group)
            self.session.commit()

    def add_resource(self, group_id: str, resource: ResourceOut) -> ResourceOut:
        with storage_errors(self.session, "add the resource"):
            group = self._get_model(group_id)
            model = GroupResource(
                group_id=group_id,
                resource_id=resource.resource_id,
                type=resource.type,
                title=resource.title,
                url=resource.url,
                uploaded_by=resource.uploaded_by,
                uploaded_by_name=resource.uploaded_by_name,
                description=resource.description,
                uploaded_at=resource.uploaded_at,
            )
            group.resources.append(model)
            group.updated_at = _utcnow()
            self.session.commit()
            return ResourceOut.model_validate(model)

    def remove_resource(self, group_id: str, resource_id: str) -> None:
        with storage_errors(self.session, "remove the resource"):
            group = self._get_model(group_id)
            for resource in group.resources:
                if resource.resource_id == resource_id:
                    group.resources.remove(resource)
                    break
            else:
                raise NotFoundError("Resource not found")
            group.updated_at = _utcnow()
            self.session.commit()

    def set_meeting_link(
        self, group_id: str, link: str, created_at: datetime
    ) -> GroupOut:
        with storage_errors(self.session, "save the meeting link"):
            group = self._get_model(group_id)
            group.meeting_link = link
            group.meeting_link_created_at = created_at
            group.updated_at = created_at
            self.session.commit()
            return GroupOut.model_validate(group)


class SqlMembershipRepository(MembershipRepository):
    def __init__(self, session: Session):
        self.session = session

    def get(self, group_id: str, user_id: str) -> MembershipOut | None:
        with storage_errors(self.session, "load the membership"):
            membership = self.session.execute(
                select(Membership).where(
                    Membership.group_id == group_id,
                    Membership.user_id == user_id,
                )
            ).scalar_one_or_none()
            return MembershipOut.model_validate(membership) if membership else None

    def list_active(self, group_id: str) -> list[MembershipOut]:
        with storage_errors(self.session, "list members"):
            rows = self.session.execute(
                select(Membership)
                .where(
                    Membership.group_id == group_id,
                    Membership.status == MembershipStatus.active,
                )
                .order_by(Membership.joined_at)
            ).scalars()
            return [MembershipOut.model_validate(m) for m in rows]

    def count_active(self, group_id: str) -> int:
        with storage_errors(self.session, "count members"):
            return self.session.execute(
                select(func.count())
                .select_from(Membership)
                .where(
                    Membership.group_id == group_id,
                    Membership.status == MembershipStatus.active,
                )
            ).scalar_one()

    def add(
        self, group_id: str, user_id: str, is_admin: bool = False
    ) -> tuple[MembershipOut, bool]:
        with storage_errors(self.session, "add the member"):
            membership, created = _activate_membership(
                self.session, group_id, user_id, is_admin
            )
            self.session.commit()
            return MembershipOut.model_validate(membership), created

    def remove(
        self,
        group_id: str,
        user_id: str,
        status: MembershipStatus = MembershipStatus.removed,
    ) -> MembershipOut:
        with storage_errors(self.session, "remove the member"):
            membership = _select_membership(self.session, group_id, user_id)
            if membership is None or membership.status != MembershipStatus.active:
                raise NotFoundError("Member not found or already removed")
            membership.status = status
            membership.left_at = _utcnow()
            _index_remove(self.session, user_id, group_id)
            self.session.commit()
            return MembershipOut.model_validate(membership)

    def group_ids_for_user(self, user_id: str) -> set[str]:
        with storage_errors(self.session, "load the user's group index"):
            rows = self.session.execute(
                select(UserGroupIndex.group_id).where(UserGroupIndex.user_id == user_id)
            ).scalars()
            return set(rows)


class SqlJoinRequestRepository(JoinRequestRepository):
    def __init__(self, session: Session):
        self.session = session

    def _get_model(self, request_id: str) -> JoinRequest:
        request = self.session.get(JoinRequest, request_id)
        if request is None:
            raise NotFoundError("Join request not found")
        return request

    def create(
        self, group_id: str, user_id: str, user_email: str, message: str
    ) -> JoinRequestOut:
        with storage_errors(self.session, "submit the join request"):
            request = JoinRequest(
                request_id=new_request_id(),
                group_id=group_id,
                user_id=user_id,
                user_email=user_email,
                message=message,
            )
            try:
                with self.session.begin_nested():
                    self.session.add(request)
            except IntegrityError as exc:
                raise ConflictError(
                    "You already have a pending request for this group"
                ) from exc
            self.session.commit()
            return JoinRequestOut.model_validate(request)

    def get(self, request_id: str) -> JoinRequestOut:
        with storage_errors(self.session, "load the join request"):
            return JoinRequestOut.model_validate(self._get_model(request_id))

    def list_pending(self, group_id: str) -> list[JoinRequestOut]:
        with storage_errors(self.session, "list join requests"):
            rows = self.session.execute(
                select(JoinRequest)
                .where(
                    JoinRequest.group_id == group_id,
                    JoinRequest.status == JoinRequestStatus.pending,
                )
                .order_by(JoinRequest.requested_at)
            ).scalars()
            return [JoinRequestOut.model_validate(r) for r in rows]

    def _decide(self, request_id: str, **values) -> JoinRequest:
        result = self.session.execute(
            update(JoinRequest)
            .where(
                JoinRequest.request_id == request_id,
                JoinRequest.status == JoinRequestStatus.pending,
            )
            .values(**values)
        )
        if result.rowcount == 0:
            self._get_model(request_id)
            raise AlreadyProcessedError("Join request has already been processed")
        return self._get_model(request_id)

    def approve(
        self, request_id: str, admin_id: str
    ) -> tuple[JoinRequestOut, bool]:
        with storage_errors(self.session, "approve the join request"):
            request = self._decide(
                request_id,
                status=JoinRequestStatus.approved,
                processed_by=admin_id,
                processed_at=_utcnow(),
            )
            _, created = _activate_membership(
                self.session, request.group_id, request.user_id, is_admin=False
            )
            self.session.commit()
            return JoinRequestOut.model_validate(request), created

    def reject(
        self, request_id: str, admin_id: str, reason: str
    ) -> JoinRequestOut:
        with storage_errors(self.session, "reject the join request"):
            request = self._decide(
                request_id,
                status=JoinRequestStatus.rejected,
                processed_by=admin_id,
                processed_at=_utcnow(),
                rejection_reason=reason,
            )
            self.session.commit()
            return JoinRequestOut.model_validate(request)


class SqlInvitationRepository(InvitationRepository):
    def __init__(self, session: Session):
        self.session = session

    def _find(self, token_hash: str) -> Invitation | None:
        return self.session.execute(
            select(Invitation)
            .where(Invitation.token_hash == token_hash)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def create(
        self,
        group_id: str,
        invited_email: str,
        invited_by: str,
        token_hash: str,
        sent_at: datetime,
        expires_at: datetime,
    ) -> InvitationOut:
        with storage_errors(self.session, "create the invitation"):
            invitation = Invitation(
                group_id=group_id,
                invited_email=invited_email,
                invited_by=invited_by,
                token_hash=token_hash,
                expires_at=expires_at,
                sent_at=sent_at,
            )
            self.session.add(invitation)
            self.session.commit()
            return InvitationOut.model_validate(invitation)

    def get_by_token_hash(self, token_hash: str) -> InvitationOut | None:
        with storage_errors(self.session, "load the invitation"):
            invitation = self._find(token_hash)
            return InvitationOut.model_validate(invitation) if invitation else None

    def find_pending(
        self, group_id: str, invited_email: str, now: datetime
    ) -> InvitationOut | None:
        with storage_errors(self.session, "look up invitations"):
            invitation = (
                self.session.execute(
                    select(Invitation).where(
                        Invitation.group_id == group_id,
                        Invitation.invited_email == invited_email,
                        Invitation.status == InvitationStatus.pending,
                        Invitation.expires_at > now,
                    )
                )
                .scalars()
                .first()
            )
            return InvitationOut.model_validate(invitation) if invitation else None

    def list_pending(self, group_id: str, now: datetime) -> list[InvitationOut]:
        with storage_errors(self.session, "list invitations"):
            rows = self.session.execute(
                select(Invitation)
                .where(
                    Invitation.group_id == group_id,
                    Invitation.status == InvitationStatus.pending,
                    Invitation.expires_at > now,
                )
                .order_by(Invitation.sent_at.desc())
            ).scalars()
            return [InvitationOut.model_validate(i) for i in rows]

    def accept(
        self, token_hash: str, user_id: str, now: datetime
    ) -> tuple[InvitationOut, bool]:
        with storage_errors(self.session, "accept the invitation"):
            result = self.session.execute(
                update(Invitation)
                .where(
                    Invitation.token_hash == token_hash,
                    Invitation.status == InvitationStatus.pending,
                    Invitation.expires_at > now,
                )
                .values(
                    status=InvitationStatus.accepted,
                    accepted_at=now,
                    accepted_by=user_id,
                )
                .execution_options(synchronize_session=False)
            )
            invitation = self._find(token_hash)
            if invitation is None:
                raise NotFoundError("Invalid or expired invitation")
            if result.rowcount == 0:
                if as_utc(invitation.expires_at) <= now:
                    raise NotFoundError("Invalid or expired invitation")
                if (
                    invitation.status == InvitationStatus.accepted
                    and invitation.accepted_by == user_id
                ):
                    # Replay by the same user; a later removal stays in force.
                    return InvitationOut.model_validate(invitation), False
                raise AlreadyProcessedError("Invitation has already been used")
            _, created = _activate_membership(
                self.session, invitation.group_id, user_id, is_admin=False
            )
            self.session.commit()
            return InvitationOut.model_validate(invitation), created

    def expire_pending(self, now: datetime) -> int:
        with storage_errors(self.session, "expire invitations"):
            result = self.session.execute(
                update(Invitation)
                .where(
                    Invitation.status == InvitationStatus.pending,
                    Invitation.expires_at <= now,
                )
                .values(status=InvitationStatus.expired)
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
            return result.rowcount


class SqlDiscussionRepository(DiscussionRepository):
    def __init__(self, session: Session):
        self.session = session

    def _find(self, group_id: str) -> Discussion | None:
        return self.session.execute(
            select(Discussion).where(Discussion.group_id == group_id)
        ).scalar_one_or_none()

    def _ensure(self, group_id: str) -> Discussion:
        discussion = self._find(group_id)
        if discussion is not None:
            return discussion
        discussion = Discussion(discussion_id=new_discussion_id(), group_id=group_id)
        try:
            with self.session.begin_nested():
                self.session.add(discussion)
        except IntegrityError:
            existing = self._find(group_id)
            if existing is None:
                raise
            return existing
        group = self.session.get(Group, group_id)
        if group is not None:
            group.discussion_id = discussion.discussion_id
        return discussion

    def get_or_create(self, group_id: str) -> DiscussionOut:
        with storage_errors(self.session, "load the discussion"):
            discussion = self._ensure(group_id)
            self.session.commit()
            return DiscussionOut.model_validate(discussion)

    def append_message(self, group_id: str, message: MessageOut) -> DiscussionOut:
        with storage_errors(self.session, "post the message"):
            discussion = self._ensure(group_id)
            discussion.messages.append(
                DiscussionMessage(
                    discussion_id=discussion.discussion_id,
                    message_id=message.message_id,
                    user_id=message.user_id,
                    user_name=message.user_name,
                    user_email=message.user_email,
                    message=message.message,
                    timestamp=message.timestamp,
                )
            )
            discussion.updated_at = message.timestamp
            self.session.commit()
            return DiscussionOut.model_validate(discussion)


class SqlNotesRepository(NotesRepository):
    def __init__(self, session: Session, max_length: int):
        super().__init__(max_length)
        self.session = session

    def _ensure(self, user_id: str, group_id: str) -> UserGroupNotes:
        notes = self.session.get(UserGroupNotes, (user_id, group_id))
        if notes is not None:
            return notes
        notes = UserGroupNotes(user_id=user_id, group_id=group_id)
        try:
            with self.session.begin_nested():
                self.session.add(notes)
        except IntegrityError:
            existing = self.session.get(UserGroupNotes, (user_id, group_id))
            if existing is None:
                raise
            return existing
        return notes

    def get_or_create(self, user_id: str, group_id: str) -> NotesOut:
        with storage_errors(self.session, "load notes"):
            notes = self._ensure(user_id, group_id)
            self.session.commit()
            return NotesOut.model_validate(notes)

    def upsert(
        self, user_id: str, group_id: str, notes: str, updated_at: datetime
    ) -> NotesOut:
        with storage_errors(self.session, "save notes"):
            record = self._ensure(user_id, group_id)
            record.notes = self._clip(notes)
            record.updated_at = updated_at
            self.session.commit()
            return NotesOut.model_validate(record)
