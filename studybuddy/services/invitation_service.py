import logging
from datetime import UTC, datetime, timedelta
from urllib.parse import urlencode

from studybuddy.core.config import Settings
from studybuddy.core.errors import ConflictError, NotFoundError
from studybuddy.core.security import generate_raw_token, hash_token
from studybuddy.schemas.invitations import (
    InvitationAcceptOut,
    InvitationOut,
    InvitationStatus,
    InvitationVerifyOut,
    IssuedInvitation,
)
from studybuddy.schemas.users import UserOut
from studybuddy.services.permissions import require_active_group, require_group_admin
from studybuddy.storage import Storage

logger = logging.getLogger(__name__)


def invitation_link(settings: Settings, token: str, email: str) -> str:
    query = urlencode({"token": token, "email": email})
    return f"{settings.frontend_url.rstrip('/')}/accept-invitation?{query}"


def send_invitation(
    storage: Storage,
    settings: Settings,
    caller: UserOut,
    group_id: str,
    invited_email: str,
) -> IssuedInvitation:
    group = require_active_group(storage, group_id)
    require_group_admin(storage, group_id, caller)

    email = invited_email.strip().lower()
    now = datetime.now(UTC)
    if storage.invitations.find_pending(group_id, email, now) is not None:
        raise ConflictError("An invitation has already been sent to this email")

    token = generate_raw_token()
    invitation = storage.invitations.create(
        group_id=group_id,
        invited_email=email,
        invited_by=caller.user_id,
        token_hash=hash_token(token),
        sent_at=now,
        expires_at=now + timedelta(days=settings.invitation_ttl_days),
    )
    logger.info("Admin %s invited %s to group %s", caller.user_id, email, group_id)
    return IssuedInvitation(
        invitation=invitation,
        token=token,
        link=invitation_link(settings, token, email),
        group_name=group.name,
        concept=group.concept,
    )


def _live_invitation(storage: Storage, token: str, now: datetime) -> InvitationOut:
    invitation = storage.invitations.get_by_token_hash(hash_token(token))
    if invitation is None or invitation.expires_at <= now:
        raise NotFoundError("Invalid or expired invitation")
    return invitation


def verify_invitation(storage: Storage, token: str) -> InvitationVerifyOut:
    invitation = _live_invitation(storage, token, datetime.now(UTC))
    if invitation.status != InvitationStatus.pending:
        raise NotFoundError("Invalid or expired invitation")
    group = storage.groups.get(invitation.group_id)
    return InvitationVerifyOut(
        group_id=group.group_id,
        group_name=group.name,
        concept=group.concept,
        invited_email=invitation.invited_email,
        expires_at=invitation.expires_at,
    )


def accept_invitation(
    storage: Storage, caller: UserOut, token: str
) -> InvitationAcceptOut:
    now = datetime.now(UTC)
    invitation = _live_invitation(storage, token, now)
    require_active_group(storage, invitation.group_id)
    accepted, created = storage.invitations.accept(hash_token(token), caller.user_id, now)
    logger.info(
        "User %s accepted invitation to group %s (new membership: %s)",
        caller.user_id,
        accepted.group_id,
        created,
    )
    return InvitationAcceptOut(group_id=accepted.group_id, membership_created=created)


def list_pending_invitations(
    storage: Storage, caller: UserOut, group_id: str
) -> list[InvitationOut]:
    storage.groups.get(group_id)
    require_group_admin(storage, group_id, caller)
    return storage.invitations.list_pending(group_id, datetime.now(UTC))


def cleanup_expired(storage: Storage, now: datetime | None = None) -> int:
    expired = storage.invitations.expire_pending(now or datetime.now(UTC))
    if expired:
        logger.info("Expired %d pending invitations", expired)
    return expired
