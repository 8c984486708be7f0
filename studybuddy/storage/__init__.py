from dataclasses import dataclass

from botocore.client import BaseClient
from sqlalchemy.orm import Session

from studybuddy.core.config import Settings
from studybuddy.storage.base import (
    DiscussionRepository,
    GroupRepository,
    InvitationRepository,
    JoinRequestRepository,
    MembershipRepository,
    NotesRepository,
)


@dataclass
class Storage:
    groups: GroupRepository
    memberships: MembershipRepository
    join_requests: JoinRequestRepository
    invitations: InvitationRepository
    discussions: DiscussionRepository
    notes: NotesRepository


def build_sql_storage(session: Session, settings: Settings) -> Storage:
    from studybuddy.storage import sql

    return Storage(
        groups=sql.SqlGroupRepository(session, settings),
        memberships=sql.SqlMembershipRepository(session),
        join_requests=sql.SqlJoinRequestRepository(session),
        invitations=sql.SqlInvitationRepository(session),
        discussions=sql.SqlDiscussionRepository(session),
        notes=sql.SqlNotesRepository(session, settings.notes_max_length),
    )


def build_dynamodb_storage(client: BaseClient, settings: Settings) -> Storage:
    from studybuddy.storage import dynamodb

    return Storage(
        groups=dynamodb.DynamoGroupRepository(client, settings),
        memberships=dynamodb.DynamoMembershipRepository(client, settings),
        join_requests=dynamodb.DynamoJoinRequestRepository(client, settings),
        invitations=dynamodb.DynamoInvitationRepository(client, settings),
        discussions=dynamodb.DynamoDiscussionRepository(client, settings),
        notes=dynamodb.DynamoNotesRepository(client, settings),
    )
