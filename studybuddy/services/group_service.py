import logging
import secrets
import string
from datetime import UTC, datetime

from studybuddy.core.config import Settings
from studybuddy.core.errors import ForbiddenError, NotFoundError
from studybuddy.schemas.groups import (
    AdminGroupsOut,
    AdminStatsOut,
    GroupAdminOut,
    GroupBrowseOut,
    GroupCreate,
    GroupDetailOut,
    GroupFilters,
    GroupOut,
    GroupStatus,
    MeetingLinkOut,
    MemberDetail,
    MembershipStatus,
    ResourceIn,
    ResourceOut,
)
from studybuddy.schemas.join_requests import DEFAULT_REJECTION_REASON
from studybuddy.schemas.users import UserOut
from studybuddy.services.permissions import (
    require_active_group,
    require_group_admin,
    require_member,
    require_super_admin,
)
from studybuddy.storage import Storage
from studybuddy.storage.base import new_resource_id
from studybuddy.storage.users import UserStore

logger = logging.getLogger(__name__)


def _browse_view(storage: Storage, group: GroupOut, caller: UserOut) -> GroupBrowseOut:
    membership = storage.memberships.get(group.group_id, caller.user_id)
    is_member = membership is not None and membership.status == MembershipStatus.active
    return GroupBrowseOut(
        **group.model_dump(),
        current_user_is_member=is_member,
        current_user_is_admin=is_member and membership.is_admin,
    )


def create_group(storage: Storage, caller: UserOut, draft: GroupCreate) -> GroupOut:
    group = storage.groups.create(draft, caller.user_id)
    logger.info("User %s created group %s (pending approval)", caller.user_id, group.group_id)
    return group


def browse_groups(
    storage: Storage, caller: UserOut, filters: GroupFilters | None = None
) -> list[GroupBrowseOut]:
    return [
        _browse_view(storage, group, caller)
        for group in storage.groups.list_active(filters)
    ]


def my_groups(storage: Storage, caller: UserOut) -> list[GroupBrowseOut]:
    return [
        _browse_view(storage, group, caller)
        for group in storage.groups.list_for_user(caller.user_id)
    ]


def get_group_detail(
    storage: Storage, users: UserStore, caller: UserOut, group_id: str
) -> GroupDetailOut:
    group = storage.groups.get(group_id)
    membership = storage.memberships.get(group_id, caller.user_id)
    is_member = membership is not None and membership.status == MembershipStatus.active
    is_admin = is_member and membership.is_admin
    if not (is_member or group.created_by == caller.user_id or caller.is_super_admin):
        raise ForbiddenError("You don't have access to this group")

    members = storage.memberships.list_active(group_id)
    profiles = users.display_info({m.user_id for m in members})
    details = []
    for member in members:
        profile = profiles.get(member.user_id)
        details.append(
            MemberDetail(
                **member.model_dump(),
                first_name=profile.first_name if profile else None,
                last_name=profile.last_name if profile else None,
                email=profile.email if profile else None,
            )
        )

    pending_invitations = []
    if is_admin:
        pending_invitations = storage.invitations.list_pending(
            group_id, datetime.now(UTC)
        )

    group.member_count = len(members)
    return GroupDetailOut(
        group=group,
        members=details,
        member_count=len(members),
        is_member=is_member,
        is_admin=is_admin,
        pending_invitations=pending_invitations,
    )


def list_groups_for_admin(
    storage: Storage, users: UserStore, caller: UserOut
) -> AdminGroupsOut:
    require_super_admin(caller)
    groups = storage.groups.list_all_for_admin()
    creators = users.display_info({g.created_by for g in groups})
    enriched = []
    for group in groups:
        creator = creators.get(group.created_by)
        enriched.append(
            GroupAdminOut(
                **group.model_dump(),
                creator_name=creator.display_name if creator else None,
                creator_email=creator.email if creator else None,
            )
        )
    return AdminGroupsOut(groups=enriched, pending_count=storage.groups.count_pending())


def approve_group(storage: Storage, caller: UserOut, group_id: str) -> GroupOut:
    require_super_admin(caller)
    group = storage.groups.approve(group_id, caller.user_id)
    logger.info("Super admin %s approved group %s", caller.user_id, group_id)
    return group


def reject_group(
    storage: Storage, caller: UserOut, group_id: str, reason: str | None = None
) -> GroupOut:
    require_super_admin(caller)
    reason = (reason or "").strip() or DEFAULT_REJECTION_REASON
    group = storage.groups.reject(group_id, caller.user_id, reason)
    logger.info("Super admin %s rejected group %s", caller.user_id, group_id)
    return group


def delete_group(storage: Storage, caller: UserOut, group_id: str) -> None:
    require_super_admin(caller)
    storage.groups.delete(group_id)
    logger.info("Super admin %s deleted group %s", caller.user_id, group_id)


def admin_stats(storage: Storage, users: UserStore, caller: UserOut) -> AdminStatsOut:
    require_super_admin(caller)
    groups = storage.groups.list_all_for_admin()

    def count(status: GroupStatus) -> int:
        return sum(1 for g in groups if g.status == status)

    return AdminStatsOut(
        total_users=len(users.list_all()),
        total_groups=len(groups),
        pending_groups=count(GroupStatus.pending_approval),
        active_groups=count(GroupStatus.active),
        rejected_groups=count(GroupStatus.rejected),
    )


def _random_letters(length: int) -> str:
    return "".join(secrets.choice(string.ascii_lowercase) for _ in range(length))


def generate_meeting_link(
    storage: Storage, settings: Settings, caller: UserOut, group_id: str
) -> MeetingLinkOut:
    require_active_group(storage, group_id)
    require_group_admin(storage, group_id, caller)
    now = datetime.now(UTC)
    code = f"{_random_letters(3)}-{_random_letters(4)}-{_random_letters(3)}"
    link = f"{settings.meeting_link_base.rstrip('/')}/{code}"
    storage.groups.set_meeting_link(group_id, link, now)
    return MeetingLinkOut(
        group_id=group_id, meeting_link=link, meeting_link_created_at=now
    )


def remove_member(
    storage: Storage, caller: UserOut, group_id: str, user_id: str
) -> None:
    storage.groups.get(group_id)
    require_group_admin(storage, group_id, caller)
    if user_id == caller.user_id:
        raise ForbiddenError("Group admins cannot remove themselves")
    storage.memberships.remove(group_id, user_id, MembershipStatus.removed)
    logger.info("Admin %s removed %s from group %s", caller.user_id, user_id, group_id)


def leave_group(storage: Storage, caller: UserOut, group_id: str) -> None:
    storage.groups.get(group_id)
    membership = storage.memberships.get(group_id, caller.user_id)
    if membership is None or membership.status != MembershipStatus.active:
        raise NotFoundError("You are not a member of this group")
    if membership.is_admin:
        admins = [m for m in storage.memberships.list_active(group_id) if m.is_admin]
        if len(admins) <= 1:
            raise ForbiddenError("The last admin cannot leave the group")
    storage.memberships.remove(group_id, caller.user_id, MembershipStatus.left)
    logger.info("User %s left group %s", caller.user_id, group_id)


def add_resource(
    storage: Storage, caller: UserOut, group_id: str, payload: ResourceIn
) -> ResourceOut:
    require_active_group(storage, group_id)
    require_member(storage, group_id, caller)
    resource = ResourceOut(
        resource_id=new_resource_id(),
        type=payload.type,
        title=payload.title.strip(),
        url=str(payload.url),
        description=payload.description.strip(),
        uploaded_by=caller.user_id,
        uploaded_by_name=caller.display_name,
        uploaded_at=datetime.now(UTC),
    )
    return storage.groups.add_resource(group_id, resource)


def remove_resource(
    storage: Storage, caller: UserOut, group_id: str, resource_id: str
) -> None:
    group = storage.groups.get(group_id)
    resource = next(
        (r for r in group.resources if r.resource_id == resource_id), None
    )
    if resource is None:
        raise NotFoundError("Resource not found")
    if resource.uploaded_by != caller.user_id and not storage.memberships.is_admin(
        group_id, caller.user_id
    ):
        raise ForbiddenError("You can only remove your own resources or be an admin")
    storage.groups.remove_resource(group_id, resource_id)
