from datetime import UTC, datetime, timedelta

import boto3
import pytest
from boto3.dynamodb.types import TypeSerializer
from botocore.stub import ANY, Stubber

from studybuddy.core.aws import (
    DISCUSSIONS_TABLE,
    GROUPS_TABLE,
    INVITATIONS_TABLE,
    JOIN_REQUESTS_TABLE,
    MEMBERS_TABLE,
    NOTES_TABLE,
    USER_PROFILES_TABLE,
    table_name,
)
from studybuddy.core.errors import (
    AlreadyProcessedError,
    ConflictError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from studybuddy.schemas.groups import (
    GroupCreate,
    GroupLevel,
    GroupStatus,
    MembershipStatus,
    TimeCommitment,
)
from studybuddy.schemas.invitations import InvitationStatus
from studybuddy.schemas.join_requests import JoinRequestStatus
from studybuddy.storage.dynamodb import (
    DynamoGroupRepository,
    DynamoInvitationRepository,
    DynamoJoinRequestRepository,
    DynamoMembershipRepository,
)

serializer = TypeSerializer()

GROUPS = table_name(GROUPS_TABLE)
MEMBERS = table_name(MEMBERS_TABLE)
REQUESTS = table_name(JOIN_REQUESTS_TABLE)
INVITATIONS = table_name(INVITATIONS_TABLE)
DISCUSSIONS = table_name(DISCUSSIONS_TABLE)
NOTES = table_name(NOTES_TABLE)
PROFILES = table_name(USER_PROFILES_TABLE)


def _item(data: dict) -> dict:
    return {k: serializer.serialize(v) for k, v in data.items() if v is not None}


def _cancelled(stubber: Stubber, *codes: str) -> None:
    stubber.add_client_error(
        "transact_write_items",
        service_error_code="TransactionCanceledException",
        modeled_fields={"CancellationReasons": [{"Code": code} for code in codes]},
    )


@pytest.fixture
def ddb():
    client = boto3.client(
        "dynamodb",
        region_name="us-east-1",
        aws_access_key_id="test",
        aws_secret_access_key="test",
    )
    stubber = Stubber(client)
    stubber.activate()
    try:
        yield client, stubber
    finally:
        stubber.deactivate()


def _group_item(group_id: str, status: GroupStatus) -> dict:
    return _item(
        {
            "group_id": group_id,
            "name": "Algo Study",
            "concept": "Algorithms",
            "level": GroupLevel.intermediate.value,
            "time_commitment": TimeCommitment.ten.value,
            "created_by": "U1",
            "status": status.value,
            "approval_status": {"approved_by": "U0", "rejection_reason": None},
            "resources": [],
            "created_at": "2024-01-01T00:00:00.000000Z",
        }
    )


def test_create_group_writes_group_membership_and_index_together(ddb, settings):
    client, stubber = ddb
    stubber.add_response("transact_write_items", {})
    repo = DynamoGroupRepository(client, settings)

    group = repo.create(
        GroupCreate(
            name="Algo Study",
            concept="Algorithms",
            level=GroupLevel.intermediate,
            time_commitment=TimeCommitment.ten,
        ),
        "U1",
    )

    assert group.status == GroupStatus.pending_approval
    assert group.created_by == "U1"
    assert group.member_count == 1
    assert group.overview.meeting_link.startswith(settings.meeting_link_base)
    stubber.assert_no_pending_responses()


def test_second_group_decision_is_already_processed(ddb, settings):
    client, stubber = ddb
    stubber.add_client_error(
        "update_item", service_error_code="ConditionalCheckFailedException"
    )
    stubber.add_response(
        "get_item", {"Item": _group_item("G1", GroupStatus.active)}
    )
    repo = DynamoGroupRepository(client, settings)

    with pytest.raises(AlreadyProcessedError):
        repo.reject("G1", "U0", "late")
    stubber.assert_no_pending_responses()


def test_decision_on_missing_group_is_not_found(ddb, settings):
    client, stubber = ddb
    stubber.add_client_error(
        "update_item", service_error_code="ConditionalCheckFailedException"
    )
    stubber.add_response("get_item", {})
    repo = DynamoGroupRepository(client, settings)

    with pytest.raises(NotFoundError):
        repo.approve("G404", "U0")


def test_unexpected_client_errors_become_storage_errors(ddb, settings):
    client, stubber = ddb
    stubber.add_client_error("get_item", service_error_code="InternalServerError")
    repo = DynamoGroupRepository(client, settings)

    with pytest.raises(StorageError):
        repo.get("G1")


def test_duplicate_pending_join_request_conflicts(ddb, settings):
    client, stubber = ddb
    _cancelled(stubber, "ConditionalCheckFailed", "None")
    repo = DynamoJoinRequestRepository(client, settings)

    with pytest.raises(ConflictError):
        repo.create("G1", "U2", "student@example.com", "")


def test_adding_an_active_member_returns_existing_row(ddb, settings):
    client, stubber = ddb
    _cancelled(stubber, "ConditionalCheckFailed", "None")
    stubber.add_response(
        "get_item",
        {
            "Item": _item(
                {
                    "group_id": "G1",
                    "user_id": "U2",
                    "is_admin": False,
                    "status": "active",
                    "joined_at": "2024-01-02T00:00:00.000000Z",
                }
            )
        },
    )
    repo = DynamoMembershipRepository(client, settings)

    membership, created = repo.add("G1", "U2")

    assert created is False
    assert membership.user_id == "U2"


def _invitation_item(status: InvitationStatus, expires_at: datetime, **extra) -> dict:
    return _item(
        {
            "token_hash": "h" * 64,
            "group_id": "G1",
            "invited_email": "student@example.com",
            "invited_by": "U1",
            "status": status.value,
            "sent_at": "2024-01-01T00:00:00.000000Z",
            "expires_at": expires_at.strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            **extra,
        }
    )


def test_accept_by_existing_member_consumes_token_without_new_row(ddb, settings):
    client, stubber = ddb
    now = datetime.now(UTC)
    expires_at = now + timedelta(days=3)
    stubber.add_response(
        "get_item", {"Item": _invitation_item(InvitationStatus.pending, expires_at)}
    )
    _cancelled(stubber, "None", "ConditionalCheckFailed", "None")
    stubber.add_response("transact_write_items", {})
    stubber.add_response(
        "get_item",
        {
            "Item": _invitation_item(
                InvitationStatus.accepted, expires_at, accepted_by="U2"
            )
        },
    )
    repo = DynamoInvitationRepository(client, settings)

    invitation, created = repo.accept("h" * 64, "U2", now)

    assert created is False
    assert invitation.status == InvitationStatus.accepted
    assert invitation.accepted_by == "U2"
    stubber.assert_no_pending_responses()


def test_used_invitation_is_rejected_for_another_user(ddb, settings):
    client, stubber = ddb
    now = datetime.now(UTC)
    accepted = _invitation_item(
        InvitationStatus.accepted, now + timedelta(days=3), accepted_by="U2"
    )
    stubber.add_response("get_item", {"Item": accepted})
    _cancelled(stubber, "ConditionalCheckFailed", "None", "None")
    stubber.add_response("get_item", {"Item": accepted})
    repo = DynamoInvitationRepository(client, settings)

    with pytest.raises(AlreadyProcessedError):
        repo.accept("h" * 64, "U3", now)


def test_same_user_reaccepting_is_a_no_op(ddb, settings):
    client, stubber = ddb
    now = datetime.now(UTC)
    stubber.add_response(
        "get_item",
        {
            "Item": _invitation_item(
                InvitationStatus.accepted, now + timedelta(days=3), accepted_by="U2"
            )
        },
    )
    repo = DynamoInvitationRepository(client, settings)

    _, created = repo.accept("h" * 64, "U2", now)

    assert created is False
    stubber.assert_no_pending_responses()


def _page(*items: dict) -> dict:
    return {
        "Items": [_item(item) for item in items],
        "Count": len(items),
        "ScannedCount": len(items),
    }


def _delete(table: str, **key: str) -> dict:
    return {
        "Delete": {
            "TableName": table,
            "Key": {name: {"S": value} for name, value in key.items()},
        }
    }


def _index(user_id: str, group_id: str, action: str) -> dict:
    return {
        "Update": {
            "TableName": PROFILES,
            "Key": {"user_id": {"S": user_id}},
            "UpdateExpression": f"{action} #groups :group",
            "ExpressionAttributeNames": {"#groups": "groups"},
            "ExpressionAttributeValues": {":group": {"SS": [group_id]}},
        }
    }


def _member_put(group_id: str, user_id: str) -> dict:
    return {
        "Put": {
            "TableName": MEMBERS,
            "Item": {
                "group_id": {"S": group_id},
                "user_id": {"S": user_id},
                "is_admin": {"BOOL": False},
                "status": {"S": "active"},
                "joined_at": ANY,
            },
            "ConditionExpression": "attribute_not_exists(user_id) OR #status <> :active",
            "ExpressionAttributeNames": {"#status": "status"},
            "ExpressionAttributeValues": {":active": {"S": "active"}},
        }
    }


def _approval(request_id: str) -> dict:
    return {
        "Update": {
            "TableName": REQUESTS,
            "Key": {"request_id": {"S": request_id}},
            "UpdateExpression": (
                "SET #status = :status, processed_by = :processed_by, "
                "processed_at = :processed_at"
            ),
            "ConditionExpression": "#status = :pending",
            "ExpressionAttributeNames": {"#status": "status"},
            "ExpressionAttributeValues": {
                ":status": {"S": "approved"},
                ":pending": {"S": "pending"},
                ":processed_by": {"S": "U1"},
                ":processed_at": ANY,
            },
        }
    }


def _group_active(group_id: str) -> dict:
    return {
        "ConditionCheck": {
            "TableName": GROUPS,
            "Key": {"group_id": {"S": group_id}},
            "ConditionExpression": "#status = :active",
            "ExpressionAttributeNames": {"#status": "status"},
            "ExpressionAttributeValues": {":active": {"S": "active"}},
        }
    }


def test_delete_archives_first_then_children_then_group(ddb, settings):
    client, stubber = ddb
    stubber.add_response(
        "update_item",
        {},
        {
            "TableName": GROUPS,
            "Key": {"group_id": {"S": "G1"}},
            "UpdateExpression": "SET #status = :archived, updated_at = :now",
            "ConditionExpression": "attribute_exists(group_id)",
            "ExpressionAttributeNames": {"#status": "status"},
            "ExpressionAttributeValues": {
                ":archived": {"S": "archived"},
                ":now": ANY,
            },
        },
    )
    stubber.add_response(
        "query",
        _page({"group_id": "G1", "user_id": "U1"}, {"group_id": "G1", "user_id": "U2"}),
    )
    stubber.add_response(
        "query",
        _page(
            {"request_id": "JR1", "group_id": "G1", "user_id": "U3", "status": "pending"},
            {"request_id": "JR2", "group_id": "G1", "user_id": "U2", "status": "approved"},
        ),
    )
    stubber.add_response("query", _page({"token_hash": "h1", "group_id": "G1"}))
    stubber.add_response("query", _page({"user_id": "U2", "group_id": "G1"}))
    stubber.add_response(
        "transact_write_items",
        {},
        {
            "TransactItems": [
                _delete(MEMBERS, group_id="G1", user_id="U1"),
                _index("U1", "G1", "DELETE"),
                _delete(MEMBERS, group_id="G1", user_id="U2"),
                _index("U2", "G1", "DELETE"),
                _delete(REQUESTS, request_id="JR1"),
                _delete(REQUESTS, request_id="PENDING#G1#U3"),
                _delete(REQUESTS, request_id="JR2"),
                _delete(INVITATIONS, token_hash="h1"),
                _delete(NOTES, user_id="U2", group_id="G1"),
                _delete(DISCUSSIONS, group_id="G1"),
            ]
        },
    )
    stubber.add_response(
        "delete_item", {}, {"TableName": GROUPS, "Key": {"group_id": {"S": "G1"}}}
    )

    DynamoGroupRepository(client, settings).delete("G1")

    stubber.assert_no_pending_responses()


def test_delete_splits_large_cascades_into_transactions_of_100(ddb, settings):
    client, stubber = ddb
    members = [{"group_id": "G1", "user_id": f"U{n:03d}"} for n in range(60)]
    stubber.add_response("update_item", {})
    stubber.add_response("query", _page(*members))
    for _ in range(3):
        stubber.add_response("query", _page())

    batches: list[int] = []

    def record(params, **kwargs):
        batches.append(len(params["TransactItems"]))

    client.meta.events.register(
        "before-parameter-build.dynamodb.TransactWriteItems", record
    )
    stubber.add_response("transact_write_items", {})
    stubber.add_response("transact_write_items", {})
    stubber.add_response("delete_item", {})

    DynamoGroupRepository(client, settings).delete("G1")

    assert batches == [100, 21]
    stubber.assert_no_pending_responses()


def test_delete_missing_group_is_not_found(ddb, settings):
    client, stubber = ddb
    stubber.add_client_error(
        "update_item", service_error_code="ConditionalCheckFailedException"
    )

    with pytest.raises(NotFoundError):
        DynamoGroupRepository(client, settings).delete("G404")
    stubber.assert_no_pending_responses()


def _request_item(status: str, **extra) -> dict:
    return _item(
        {
            "request_id": "JR1",
            "group_id": "G1",
            "user_id": "U2",
            "user_email": "student@example.com",
            "message": "",
            "status": status,
            "requested_at": "2024-01-01T00:00:00.000000Z",
            **extra,
        }
    )


def test_approve_join_request_writes_membership_atomically(ddb, settings):
    client, stubber = ddb
    stubber.add_response("get_item", {"Item": _request_item("pending")})
    stubber.add_response(
        "transact_write_items",
        {},
        {
            "TransactItems": [
                _approval("JR1"),
                _delete(REQUESTS, request_id="PENDING#G1#U2"),
                _member_put("G1", "U2"),
                _index("U2", "G1", "ADD"),
                _group_active("G1"),
            ]
        },
    )
    stubber.add_response(
        "get_item", {"Item": _request_item("approved", processed_by="U1")}
    )

    request, created = DynamoJoinRequestRepository(client, settings).approve("JR1", "U1")

    assert created is True
    assert request.status == JoinRequestStatus.approved
    stubber.assert_no_pending_responses()


def test_approve_for_existing_member_only_closes_request(ddb, settings):
    client, stubber = ddb
    stubber.add_response("get_item", {"Item": _request_item("pending")})
    _cancelled(stubber, "None", "None", "ConditionalCheckFailed", "None", "None")
    stubber.add_response(
        "transact_write_items",
        {},
        {
            "TransactItems": [
                _approval("JR1"),
                _delete(REQUESTS, request_id="PENDING#G1#U2"),
                _group_active("G1"),
            ]
        },
    )
    stubber.add_response(
        "get_item", {"Item": _request_item("approved", processed_by="U1")}
    )

    _, created = DynamoJoinRequestRepository(client, settings).approve("JR1", "U1")

    assert created is False
    stubber.assert_no_pending_responses()


def test_approve_fails_once_group_is_archived(ddb, settings):
    client, stubber = ddb
    stubber.add_response("get_item", {"Item": _request_item("pending")})
    _cancelled(stubber, "None", "None", "None", "None", "ConditionalCheckFailed")

    with pytest.raises(ValidationError, match="Group is not active"):
        DynamoJoinRequestRepository(client, settings).approve("JR1", "U1")
    stubber.assert_no_pending_responses()


def test_remove_member_soft_deletes_and_strips_index(ddb, settings):
    client, stubber = ddb
    stubber.add_response(
        "transact_write_items",
        {},
        {
            "TransactItems": [
                {
                    "Update": {
                        "TableName": MEMBERS,
                        "Key": {"group_id": {"S": "G1"}, "user_id": {"S": "U2"}},
                        "UpdateExpression": "SET #status = :status, left_at = :now",
                        "ConditionExpression": "#status = :active",
                        "ExpressionAttributeNames": {"#status": "status"},
                        "ExpressionAttributeValues": {
                            ":status": {"S": "removed"},
                            ":now": ANY,
                            ":active": {"S": "active"},
                        },
                    }
                },
                _index("U2", "G1", "DELETE"),
            ]
        },
    )
    stubber.add_response(
        "get_item",
        {
            "Item": _item(
                {
                    "group_id": "G1",
                    "user_id": "U2",
                    "is_admin": False,
                    "status": "removed",
                    "joined_at": "2024-01-02T00:00:00.000000Z",
                }
            )
        },
    )
    repo = DynamoMembershipRepository(client, settings)

    membership = repo.remove("G1", "U2")

    assert membership.status == MembershipStatus.removed
    stubber.assert_no_pending_responses()


def test_removing_inactive_member_is_not_found(ddb, settings):
    client, stubber = ddb
    _cancelled(stubber, "ConditionalCheckFailed", "None")

    with pytest.raises(NotFoundError):
        DynamoMembershipRepository(client, settings).remove("G1", "U2")


def test_expire_pending_counts_only_its_own_flips(ddb, settings):
    client, stubber = ddb
    now = datetime.now(UTC)
    overdue = now - timedelta(hours=1)
    pending = _invitation_item(InvitationStatus.pending, overdue)
    stubber.add_response(
        "query",
        {
            "Items": [{**pending, "token_hash": {"S": t}} for t in ("h1", "h2")],
            "Count": 2,
            "ScannedCount": 2,
        },
    )
    stubber.add_response("update_item", {})
    stubber.add_client_error(
        "update_item", service_error_code="ConditionalCheckFailedException"
    )

    expired = DynamoInvitationRepository(client, settings).expire_pending(now)

    assert expired == 1
    stubber.assert_no_pending_responses()
