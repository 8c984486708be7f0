from studybuddy.core.errors import ForbiddenError, ValidationError
from studybuddy.schemas.groups import GroupOut, GroupStatus
from studybuddy.schemas.users import UserOut
from studybuddy.storage import Storage


def require_super_admin(caller: UserOut) -> None:
    if not caller.is_super_admin:
        raise ForbiddenError("Super admin access required")


def require_active_group(storage: Storage, group_id: str) -> GroupOut:
    group = storage.groups.get(group_id)
    if group.status != GroupStatus.active:
        raise ValidationError("Group is not active")
    return group


def require_group_admin(storage: Storage, group_id: str, caller: UserOut) -> None:
    if not storage.memberships.is_admin(group_id, caller.user_id):
        raise ForbiddenError("Only group admins can perform this action")


def require_member(storage: Storage, group_id: str, caller: UserOut) -> None:
    if not storage.memberships.is_active_member(group_id, caller.user_id):
        raise ForbiddenError("You must be a member of this group")
