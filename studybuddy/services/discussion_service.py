import logging
from datetime import UTC, datetime

from studybuddy.core.errors import ValidationError
from studybuddy.schemas.discussions import DiscussionOut, MessageOut
from studybuddy.schemas.users import UserOut
from studybuddy.services.permissions import require_active_group, require_member
from studybuddy.storage import Storage
from studybuddy.storage.base import new_message_id

logger = logging.getLogger(__name__)


def get_discussion(storage: Storage, caller: UserOut, group_id: str) -> DiscussionOut:
    require_active_group(storage, group_id)
    require_member(storage, group_id, caller)
    return storage.discussions.get_or_create(group_id)


def add_message(
    storage: Storage, caller: UserOut, group_id: str, text: str
) -> MessageOut:
    text = (text or "").strip()
    if not text:
        raise ValidationError("Message cannot be empty")
    require_active_group(storage, group_id)
    require_member(storage, group_id, caller)

    # Author name and email are copied onto the message and not refreshed later.
    message = MessageOut(
        message_id=new_message_id(),
        user_id=caller.user_id,
        user_name=caller.display_name,
        user_email=caller.email,
        message=text,
        timestamp=datetime.now(UTC),
    )
    storage.discussions.append_message(group_id, message)
    logger.debug("User %s posted %s in group %s", caller.user_id, message.message_id, group_id)
    return message
