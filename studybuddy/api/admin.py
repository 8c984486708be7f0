import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Response, status

from studybuddy.api.deps import (
    get_email_sender,
    get_storage,
    get_user_store,
    require_super_admin,
)
from studybuddy.core.errors import StudyBuddyError
from studybuddy.schemas.groups import (
    AdminGroupsOut,
    AdminStatsOut,
    GroupOut,
    GroupRejectIn,
)
from studybuddy.schemas.users import UserOut
from studybuddy.services import group_service
from studybuddy.services.notification_service import (
    EmailSender,
    send_group_decision_email,
)
from studybuddy.storage import Storage
from studybuddy.storage.users import UserStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


def _notify_creator(
    bg: BackgroundTasks,
    sender: EmailSender,
    users: UserStore,
    group: GroupOut,
    approved: bool,
) -> None:
    try:
        creator = users.display_info({group.created_by}).get(group.created_by)
    except StudyBuddyError:
        logger.exception("Skipping decision email for group %s", group.group_id)
        return
    if creator is None:
        return
    bg.add_task(
        send_group_decision_email,
        sender,
        creator.email,
        group.name,
        approved,
        group.approval_status.rejection_reason,
    )


@router.get("/groups", response_model=AdminGroupsOut)
def list_groups(
    storage: Storage = Depends(get_storage),
    users: UserStore = Depends(get_user_store),
    admin: UserOut = Depends(require_super_admin),
) -> AdminGroupsOut:
    return group_service.list_groups_for_admin(storage, users, admin)


@router.post("/groups/{group_id}/approve", response_model=GroupOut)
def approve_group(
    group_id: str,
    bg: BackgroundTasks,
    storage: Storage = Depends(get_storage),
    users: UserStore = Depends(get_user_store),
    sender: EmailSender = Depends(get_email_sender),
    admin: UserOut = Depends(require_super_admin),
) -> GroupOut:
    group = group_service.approve_group(storage, admin, group_id)
    _notify_creator(bg, sender, users, group, approved=True)
    return group


@router.post("/groups/{group_id}/reject", response_model=GroupOut)
def reject_group(
    group_id: str,
    payload: GroupRejectIn,
    bg: BackgroundTasks,
    storage: Storage = Depends(get_storage),
    users: UserStore = Depends(get_user_store),
    sender: EmailSender = Depends(get_email_sender),
    admin: UserOut = Depends(require_super_admin),
) -> GroupOut:
    group = group_service.reject_group(storage, admin, group_id, payload.reason)
    _notify_creator(bg, sender, users, group, approved=False)
    return group


@router.delete("/groups/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_group(
    group_id: str,
    storage: Storage = Depends(get_storage),
    admin: UserOut = Depends(require_super_admin),
) -> Response:
    group_service.delete_group(storage, admin, group_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/users", response_model=list[UserOut])
def list_users(
    users: UserStore = Depends(get_user_store),
    admin: UserOut = Depends(require_super_admin),
) -> list[UserOut]:
    return users.list_all()


@router.post("/users/{user_id}/promote", response_model=UserOut)
def promote_user(
    user_id: str,
    users: UserStore = Depends(get_user_store),
    admin: UserOut = Depends(require_super_admin),
) -> UserOut:
    return users.promote(user_id)


@router.get("/stats", response_model=AdminStatsOut)
def admin_stats(
    storage: Storage = Depends(get_storage),
    users: UserStore = Depends(get_user_store),
    admin: UserOut = Depends(require_super_admin),
) -> AdminStatsOut:
    return group_service.admin_stats(storage, users, admin)
