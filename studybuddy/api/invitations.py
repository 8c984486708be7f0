from fastapi import APIRouter, BackgroundTasks, Depends, status

from studybuddy.api.deps import get_current_user, get_email_sender, get_storage
from studybuddy.core.config import Settings, get_settings
from studybuddy.schemas.invitations import (
    InvitationAcceptOut,
    InvitationCreate,
    InvitationOut,
    InvitationTokenIn,
    InvitationVerifyOut,
)
from studybuddy.schemas.users import UserOut
from studybuddy.services import invitation_service
from studybuddy.services.notification_service import EmailSender, send_invitation_email
from studybuddy.storage import Storage

router = APIRouter(tags=["invitations"])


@router.post(
    "/groups/{group_id}/invitations",
    response_model=InvitationOut,
    status_code=status.HTTP_201_CREATED,
)
def send_invitation(
    group_id: str,
    payload: InvitationCreate,
    bg: BackgroundTasks,
    storage: Storage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
    sender: EmailSender = Depends(get_email_sender),
    current_user: UserOut = Depends(get_current_user),
) -> InvitationOut:
    issued = invitation_service.send_invitation(
        storage, settings, current_user, group_id, payload.email
    )
    bg.add_task(
        send_invitation_email,
        sender,
        issued.invitation.invited_email,
        current_user.display_name,
        current_user.email,
        issued.group_name,
        issued.concept,
        issued.link,
    )
    return issued.invitation


@router.get("/groups/{group_id}/invitations", response_model=list[InvitationOut])
def list_invitations(
    group_id: str,
    storage: Storage = Depends(get_storage),
    current_user: UserOut = Depends(get_current_user),
) -> list[InvitationOut]:
    return invitation_service.list_pending_invitations(
        storage, current_user, group_id
    )


@router.post("/invitations/verify", response_model=InvitationVerifyOut)
def verify_invitation(
    body: InvitationTokenIn, storage: Storage = Depends(get_storage)
) -> InvitationVerifyOut:
    return invitation_service.verify_invitation(storage, body.token.get_secret_value())


@router.post("/invitations/accept", response_model=InvitationAcceptOut)
def accept_invitation(
    body: InvitationTokenIn,
    storage: Storage = Depends(get_storage),
    current_user: UserOut = Depends(get_current_user),
) -> InvitationAcceptOut:
    return invitation_service.accept_invitation(
        storage, current_user, body.token.get_secret_value()
    )
