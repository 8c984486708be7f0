from datetime import UTC, datetime

from studybuddy.schemas.discussions import NotesOut
from studybuddy.schemas.users import UserOut
from studybuddy.services.permissions import require_member
from studybuddy.storage import Storage


def get_notes(storage: Storage, caller: UserOut, group_id: str) -> NotesOut:
    storage.groups.get(group_id)
    require_member(storage, group_id, caller)
    return storage.notes.get_or_create(caller.user_id, group_id)


def save_notes(storage: Storage, caller: UserOut, group_id: str, notes: str) -> NotesOut:
    """Last write wins; storage clips text past ``NOTES_MAX_LENGTH``."""
    storage.groups.get(group_id)
    require_member(storage, group_id, caller)
    return storage.notes.upsert(caller.user_id, group_id, notes, datetime.now(UTC))
