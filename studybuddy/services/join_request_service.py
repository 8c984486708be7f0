import logging

from studybuddy.core.errors import AlreadyProcessedError, ConflictError
from studybuddy.schemas.join_requests import (
    DEFAULT_REJECTION_REASON,
    JoinRequestDecisionOut,
    JoinRequestOut,
    JoinRequestStatus,
)
from studybuddy.schemas.users import UserOut
from studybuddy.services.permissions import require_active_group, require_group_admin
from studybuddy.storage import Storage

logger = logging.getLogger(__name__)


def submit_join_request(
    storage: Storage, caller: UserOut, group_id: str, message: str = ""
) -> JoinRequestOut:
    require_active_group(storage, group_id)
    if storage.memberships.is_active_member(group_id, caller.user_id):
        raise ConflictError("You are already a member of this group")
    request = storage.join_requests.create(
        group_id, caller.user_id, caller.email, (message or "").strip()
    )
    logger.info(
        "User %s requested to join group %s (%s)",
        caller.user_id,
        group_id,
        request.request_id,
    )
    return request


def _load_pending(storage: Storage, caller: UserOut, request_id: str) -> JoinRequestOut:
    request = storage.join_requests.get(request_id)
    if request.status != JoinRequestStatus.pending:
        raise AlreadyProcessedError("Request has already been processed")
    require_group_admin(storage, request.group_id, caller)
    return request


def approve_join_request(
    storage: Storage, caller: UserOut, request_id: str
) -> JoinRequestDecisionOut:
    pending = _load_pending(storage, caller, request_id)
    require_active_group(storage, pending.group_id)
    request, created = storage.join_requests.approve(request_id, caller.user_id)
    logger.info("Admin %s approved join request %s", caller.user_id, request_id)
    return JoinRequestDecisionOut(request=request, membership_created=created)


def reject_join_request(
    storage: Storage, caller: UserOut, request_id: str, reason: str | None = None
) -> JoinRequestOut:
    _load_pending(storage, caller, request_id)
    reason = (reason or "").strip() or DEFAULT_REJECTION_REASON
    request = storage.join_requests.reject(request_id, caller.user_id, reason)
    logger.info("Admin %s rejected join request %s", caller.user_id, request_id)
    return request


def list_pending_requests(
    storage: Storage, caller: UserOut, group_id: str
) -> list[JoinRequestOut]:
    storage.groups.get(group_id)
    require_group_admin(storage, group_id, caller)
    return storage.join_requests.list_pending(group_id)
