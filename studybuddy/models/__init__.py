from studybuddy.core.database import Base
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
from studybuddy.models.users import User

__all__ = [
    "Base",
    "Discussion",
    "DiscussionMessage",
    "Group",
    "GroupResource",
    "Invitation",
    "JoinRequest",
    "Membership",
    "User",
    "UserGroupIndex",
    "UserGroupNotes",
]
