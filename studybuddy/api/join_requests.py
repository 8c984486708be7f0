import logging

from fastapi import APIRouter, BackgroundTasks, Depends, status

from studybuddy.api.deps import get_current_user, get_email_sender, get_storage
from studybuddy.core.errors import StudyBuddyError
from studybuddy.schemas.join_requests import (
    JoinRequestDecisionOut,
    JoinRequestIn,
    JoinRequestOut,
    JoinRequestRejectIn,
)
from studybuddy.schemas.users import UserOut
from studybuddy.services import join_request_service
from studybuddy.services.notification_service import (
    EmailSender,
    send_join_decision_email,
)
from studybuddy.storage import Storage

logger = logging.getLogger(__name__)

router = APIRouter(tags=["join-requests"])


def _notify_requester(
    bg: BackgroundTasks,
    sender: EmailSender,
    storage: Storage,
    request: JoinRequestOut,
    approved: bool,
) -> None:
    try:
        group = storage.groups.get(request.group_id)
    except StudyBuddyError:
        logger.exception("Skipping decision email for request %s", request.request_id)
        return
    bg.add_task(
        send_join_decision_email,
        sender,
        request.user_email,
        group.name,
        approved,
        request.rejection_reason,
    )


@router.post(
    "/groups/{group_id}/join-requests",
    response_model=JoinRequestOut,
    status_code=status.HTTP_201_CREATED,
)
def submit_join_request(
    group_id: str,
    payload: JoinRequestIn,
    storage: Storage = Depends(get_storage),
    current_user: UserOut = Depends(get_current_user),
) -> JoinRequestOut:
    return join_request_service.submit_join_request(
        storage, current_user, group_id, payload.message
    )


@router.get("/groups/{group_id}/join-requests", response_model=list[JoinRequestOut])
def list_join_requests(
    group_id: str,
    storage: Storage = Depends(get_storage),
    current_user: UserOut = Depends(get_current_user),
) -> list[JoinRequestOut]:
    return join_request_service.list_pending_requests(storage, current_user, group_id)


@router.post(
    "/join-requests/{request_id}/approve", response_model=JoinRequestDecisionOut
)
def approve_join_request(
    request_id: str,
    bg: BackgroundTasks,
    storage: Storage = Depends(get_storage),
    sender: EmailSender = Depends(get_email_sender),
    current_user: UserOut = Depends(get_current_user),
) -> JoinRequestDecisionOut:
    decision = join_request_service.approve_join_request(
        storage, current_user, request_id
    )
    _notify_requester(bg, sender, storage, decision.request, approved=True)
    return decision


@router.post("/join-requests/{request_id}/reject", response_model=JoinRequestOut)
def reject_join_request(
    request_id: str,
    payload: JoinRequestRejectIn,
    bg: BackgroundTasks,
    storage: Storage = Depends(get_storage),
    sender: EmailSender = Depends(get_email_sender),
    current_user: UserOut = Depends(get_current_user),
) -> JoinRequestOut:
    request = join_request_service.reject_join_request(
        storage, current_user, request_id, payload.reason
    )
    _notify_requester(bg, sender, storage, request, approved=False)
    return request
