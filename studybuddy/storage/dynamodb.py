"""DynamoDB implementation of the repositories.

Multi-item writes go through ``TransactWriteItems`` with condition
expressions, so a cancelled transaction leaves nothing behind. Memberships
are keyed by (group_id, user_id), which makes a second activation of the
same pair fail its condition instead of creating a duplicate.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError

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
from studybuddy.core.config import Settings
from studybuddy.core.errors import (
    AlreadyProcessedError,
    ConflictError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from studybuddy.schemas.common import as_utc
from studybuddy.schemas.discussions import DiscussionOut, MessageOut, NotesOut
from studybuddy.schemas.groups import (
    GroupCreate,
    GroupFilters,
    GroupOut,
    GroupStatus,
    MembershipOut,
    MembershipStatus,
    ResourceOut,
)
from studybuddy.schemas.invitations import InvitationOut, InvitationStatus
from studybuddy.schemas.join_requests import JoinRequestOut, JoinRequestStatus
from studybuddy.storage.base import (
    DiscussionRepository,
    GroupRepository,
    InvitationRepository,
    JoinRequestRepository,
    MembershipRepository,
    NotesRepository,
    new_discussion_id,
    new_group_id,
    new_request_id,
    placeholder_meeting_link,
)

logger = logging.getLogger(__name__)

TRANSACTION_LIMIT = 100
BATCH_GET_LIMIT = 100
CONDITION_FAILED = "ConditionalCheckFailed"

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    # Fixed-width so string comparison on expires_at/created_at orders correctly.
    if value is None:
        return None
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _av(value: Any) -> dict:
    return _serializer.serialize(value)


def _to_item(data: dict) -> dict:
    return {k: _serializer.serialize(v) for k, v in data.items() if v is not None}


def _from_item(item: dict) -> dict:
    return {k: _deserializer.deserialize(v) for k, v in item.items()}


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def _cancellation_codes(exc: ClientError) -> list[str] | None:
    """Per-action reason codes of a cancelled transaction, or None for other errors."""
    if _error_code(exc) != "TransactionCanceledException":
        return None
    return [
        reason.get("Code", "None") for reason in exc.response.get("CancellationReasons", [])
    ]


def _failed_at(codes: list[str] | None, position: int) -> bool:
    return codes is not None and len(codes) > position and codes[position] == CONDITION_FAILED


@contextmanager
def dynamodb_errors(action: str) -> Iterator[None]:
    try:
        yield
    except (ClientError, BotoCoreError) as exc:
        logger.exception("DynamoDB failed to %s", action)
        raise StorageError(f"Could not {action}") from exc


def _chunks(items: list, size: int) -> Iterator[list]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class _DynamoRepository:
    def __init__(self, client: BaseClient, settings: Settings):
        self.client = client
        self.settings = settings
        self.groups_table = table_name(GROUPS_TABLE)
        self.members_table = table_name(MEMBERS_TABLE)
        self.join_requests_table = table_name(JOIN_REQUESTS_TABLE)
        self.invitations_table = table_name(INVITATIONS_TABLE)
        self.discussions_table = table_name(DISCUSSIONS_TABLE)
        self.notes_table = table_name(NOTES_TABLE)
        self.profiles_table = table_name(USER_PROFILES_TABLE)

    def _get(self, table: str, key: dict) -> dict | None:
        response = self.client.get_item(
            TableName=table,
            Key={k: _av(v) for k, v in key.items()},
            ConsistentRead=True,
        )
        item = response.get("Item")
        return _from_item(item) if item else None

    def _query(self, **kwargs) -> list[dict]:
        paginator = self.client.get_paginator("query")
        items: list[dict] = []
        for page in paginator.paginate(**kwargs):
            items.extend(_from_item(item) for item in page.get("Items", []))
        return items

    def _count(self, **kwargs) -> int:
        paginator = self.client.get_paginator("query")
        return sum(
            page.get("Count", 0) for page in paginator.paginate(Select="COUNT", **kwargs)
        )

    def _transact(self, actions: list[dict]) -> None:
        self.client.transact_write_items(TransactItems=actions)

    def _member_put(
        self, group_id: str, user_id: str, is_admin: bool, now: datetime
    ) -> dict:
        return {
            "Put": {
                "TableName": self.members_table,
                "Item": _to_item(
                    {
                        "group_id": group_id,
                        "user_id": user_id,
                        "is_admin": is_admin,
                        "status": MembershipStatus.active.value,
                        "joined_at": _iso(now),
                    }
                ),
                "ConditionExpression": "attribute_not_exists(user_id) OR #status <> :active",
                "ExpressionAttributeNames": {"#status": "status"},
                "ExpressionAttributeValues": {
                    ":active": _av(MembershipStatus.active.value)
                },
            }
        }

    def _index_update(self, user_id: str, group_id: str, action: str) -> dict:
        return {
            "Update": {
                "TableName": self.profiles_table,
                "Key": {"user_id": _av(user_id)},
                "UpdateExpression": f"{action} #groups :group",
                "ExpressionAttributeNames": {"#groups": "groups"},
                "ExpressionAttributeValues": {":group": {"SS": [group_id]}},
            }
        }

    def _member_count(self, group_id: str) -> int:
        return self._count(
            TableName=self.members_table,
            KeyConditionExpression="group_id = :group",
            FilterExpression="#status = :active",
            ExpressionAttributeNames={"#status": "status"},
            ExpressionAttributeValues={
                ":group": _av(group_id),
                ":active": _av(MembershipStatus.active.value),
            },
        )


def _resource_data(resource: ResourceOut) -> dict:
    return {
        "resource_id": resource.resource_id,
        "type": resource.type.value,
        "title": resource.title,
        "url": resource.url,
        "description": resource.description,
        "uploaded_by": resource.uploaded_by,
        "uploaded_by_name": resource.uploaded_by_name,
        "uploaded_at": _iso(resource.uploaded_at),
    }


class DynamoGroupRepository(_DynamoRepository, GroupRepository):
    def _load(self, group_id: str) -> GroupOut:
        item = self._get(self.groups_table, {"group_id": group_id})
        if item is None:
            raise NotFoundError("Group not found")
        return GroupOut.model_validate(item)

    def _with_counts(self, items: list[dict]) -> list[GroupOut]:
        groups = [GroupOut.model_validate(item) for item in items]
        for group in groups:
            group.member_count = self._member_count(group.group_id)
        groups.sort(key=lambda g: g.created_at, reverse=True)
        return groups

    def _batch_get(self, group_ids: list[str]) -> list[dict]:
        items: list[dict] = []
        for chunk in _chunks(group_ids, BATCH_GET_LIMIT):
            request = {
                self.groups_table: {
                    "Keys": [{"group_id": _av(gid)} for gid in chunk],
                    "ConsistentRead": True,
                }
            }
            while request:
                response = self.client.batch_get_item(RequestItems=request)
                items.extend(
                    _from_item(item)
                    for item in response.get("Responses", {}).get(self.groups_table, [])
                )
                request = response.get("UnprocessedKeys") or {}
        return items

    def create(self, draft: GroupCreate, creator_id: str) -> GroupOut:
        now = _utcnow()
        group_id = new_group_id()
        data = {
            "group_id": group_id,
            "name": draft.name,
            "concept": draft.concept,
            "description": draft.description,
            "level": draft.level.value,
            "time_commitment": draft.time_commitment.value,
            "created_by": creator_id,
            "status": GroupStatus.pending_approval.value,
            "approval_status": {
                "approved_by": None,
                "approved_at": None,
                "rejected_by": None,
                "rejection_reason": None,
                "rejected_at": None,
            },
            "overview": {
                "meeting_link": placeholder_meeting_link(
                    self.settings.meeting_link_base
                ),
                "meeting_link_created_at": _iso(now),
            },
            "resources": [],
            "created_at": _iso(now),
            "updated_at": _iso(now),
        }
        with dynamodb_errors("create the group"):
            self._transact(
                [
                    {
                        "Put": {
                            "TableName": self.groups_table,
                            "Item": _to_item(data),
                            "ConditionExpression": "attribute_not_exists(group_id)",
                        }
                    },
                    self._member_put(group_id, creator_id, True, now),
                    self._index_update(creator_id, group_id, "ADD"),
                ]
            )
        group = GroupOut.model_validate(data)
        group.member_count = 1
        return group

    def get(self, group_id: str) -> GroupOut:
        with dynamodb_errors("load the group"):
            return self._load(group_id)

    def list_active(self, filters: GroupFilters | None = None) -> list[GroupOut]:
        with dynamodb_errors("list groups"):
            items = self._query(
                TableName=self.groups_table,
                IndexName="StatusIndex",
                KeyConditionExpression="#status = :status",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={":status": _av(GroupStatus.active.value)},
                ScanIndexForward=False,
            )
            groups = [GroupOut.model_validate(item) for item in items]
            if filters is not None:
                groups = [g for g in groups if filters.matches(g)]
            for group in groups:
                group.member_count = self._member_count(group.group_id)
            return groups

    def list_for_user(self, user_id: str) -> list[GroupOut]:
        with dynamodb_errors("list the user's groups"):
            memberships = self._query(
                TableName=self.members_table,
                IndexName="UserIdIndex",
                KeyConditionExpression="user_id = :user",
                FilterExpression="#status = :active",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={
                    ":user": _av(user_id),
                    ":active": _av(MembershipStatus.active.value),
                },
            )
            created = self._query(
                TableName=self.groups_table,
                IndexName="CreatorIndex",
                KeyConditionExpression="created_by = :user",
                ExpressionAttributeValues={":user": _av(user_id)},
            )
            seen = {item["group_id"] for item in created}
            missing = sorted(
                {m["group_id"] for m in memberships if m["group_id"] not in seen}
            )
            return self._with_counts(created + self._batch_get(missing))

    def list_all_for_admin(self) -> list[GroupOut]:
        with dynamodb_errors("list groups"):
            paginator = self.client.get_paginator("scan")
            items: list[dict] = []
            for page in paginator.paginate(TableName=self.groups_table):
                items.extend(_from_item(item) for item in page.get("Items", []))
            return self._with_counts(items)

    def count_pending(self) -> int:
        with dynamodb_errors("count pending groups"):
            return self._count(
                TableName=self.groups_table,
                IndexName="StatusIndex",
                KeyConditionExpression="#status = :status",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={
                    ":status": _av(GroupStatus.pending_approval.value)
                },
            )

    def _decide(self, group_id: str, status: GroupStatus, approval: dict) -> GroupOut:
        now = _iso(_utcnow())
        try:
            response = self.client.update_item(
                TableName=self.groups_table,
                Key={"group_id": _av(group_id)},
                UpdateExpression=(
                    "SET #status = :status, approval_status = :approval, "
                    "updated_at = :now"
                ),
                ConditionExpression="#status = :pending",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={
                    ":status": _av(status.value),
                    ":approval": _av(approval),
                    ":now": _av(now),
                    ":pending": _av(GroupStatus.pending_approval.value),
                },
                ReturnValues="ALL_NEW",
            )
        except ClientError as exc:
            if _error_code(exc) != "ConditionalCheckFailedException":
                raise
            self._load(group_id)
            raise AlreadyProcessedError("Group has already been processed") from exc
        return GroupOut.model_validate(_from_item(response["Attributes"]))

    def approve(self, group_id: str, admin_id: str) -> GroupOut:
        with dynamodb_errors("approve the group"):
            return self._decide(
                group_id,
                GroupStatus.active,
                {
                    "approved_by": admin_id,
                    "approved_at": _iso(_utcnow()),
                    "rejected_by": None,
                    "rejection_reason": None,
                    "rejected_at": None,
                },
            )

    def reject(self, group_id: str, admin_id: str, reason: str) -> GroupOut:
        with dynamodb_errors("reject the group"):
            return self._decide(
                group_id,
                GroupStatus.rejected,
                {
                    "approved_by": None,
                    "approved_at": None,
                    "rejected_by": admin_id,
                    "rejection_reason": reason,
                    "rejected_at": _iso(_utcnow()),
                },
            )

    def _child_deletes(self, group_id: str) -> list[dict]:
        group_key = {":group": _av(group_id)}
        actions: list[dict] = []

        members = self._query(
            TableName=self.members_table,
            KeyConditionExpression="group_id = :group",
            ExpressionAttributeValues=group_key,
        )
        for member in members:
            actions.append(
                {
                    "Delete": {
                        "TableName": self.members_table,
                        "Key": {
                            "group_id": _av(group_id),
                            "user_id": _av(member["user_id"]),
                        },
                    }
                }
            )
            actions.append(self._index_update(member["user_id"], group_id, "DELETE"))

        requests = self._query(
            TableName=self.join_requests_table,
            IndexName="GroupIdIndex",
            KeyConditionExpression="group_id = :group",
            ExpressionAttributeValues=group_key,
        )
        for request in requests:
            keys = [request["request_id"]]
            if request.get("status") == JoinRequestStatus.pending.value:
                keys.append(_pending_guard_id(group_id, request["user_id"]))
            actions.extend(
                {
                    "Delete": {
                        "TableName": self.join_requests_table,
                        "Key": {"request_id": _av(key)},
                    }
                }
                for key in keys
            )

        invitations = self._query(
            TableName=self.invitations_table,
            IndexName="GroupIdIndex",
            KeyConditionExpression="group_id = :group",
            ExpressionAttributeValues=group_key,
        )
        actions.extend(
            {
                "Delete": {
                    "TableName": self.invitations_table,
                    "Key": {"token_hash": _av(invitation["token_hash"])},
                }
            }
            for invitation in invitations
        )

        notes = self._query(
            TableName=self.notes_table,
            IndexName="GroupIdIndex",
            KeyConditionExpression="group_id = :group",
            ExpressionAttributeValues=group_key,
        )
        actions.extend(
            {
                "Delete": {
                    "TableName": self.notes_table,
                    "Key": {
                        "user_id": _av(note["user_id"]),
                        "group_id": _av(group_id),
                    },
                }
            }
            for note in notes
        )

        actions.append(
            {
                "Delete": {
                    "TableName": self.discussions_table,
                    "Key": {"group_id": _av(group_id)},
                }
            }
        )
        return actions

    def delete(self, group_id: str) -> None:
        """Tombstone the group, delete its children in transactions, then the group.

        The group item goes last, so an interrupted delete leaves an archived
        group that can be deleted again rather than orphaned children.
        """
        with dynamodb_errors("delete the group"):
            try:
                self.client.update_item(
                    TableName=self.groups_table,
                    Key={"group_id": _av(group_id)},
                    UpdateExpression="SET #status = :archived, updated_at = :now",
                    ConditionExpression="attribute_exists(group_id)",
                    ExpressionAttributeNames={"#status": "status"},
                    ExpressionAttributeValues={
                        ":archived": _av(GroupStatus.archived.value),
                        ":now": _av(_iso(_utcnow())),
                    },
                )
            except ClientError as exc:
                if _error_code(exc) != "ConditionalCheckFailedException":
                    raise
                raise NotFoundError("Group not found") from exc

            actions = self._child_deletes(group_id)
            for chunk in _chunks(actions, TRANSACTION_LIMIT):
                self._transact(chunk)
            self.client.delete_item(
                TableName=self.groups_table, Key={"group_id": _av(group_id)}
            )
            logger.info(
                "Deleted group %s and %d dependent records", group_id, len(actions)
            )

    def add_resource(self, group_id: str, resource: ResourceOut) -> ResourceOut:
        with dynamodb_errors("add the resource"):
            try:
                self.client.update_item(
                    TableName=self.groups_table,
                    Key={"group_id": _av(group_id)},
                    UpdateExpression=(
                        "SET resources = list_append(if_not_exists(resources, :empty), "
                        ":resource), updated_at = :now"
                    ),
                    ConditionExpression="attribute_exists(group_id)",
                    ExpressionAttributeValues={
                        ":empty": {"L": []},
                        ":resource": _av([_resource_data(resource)]),
                        ":now": _av(_iso(_utcnow())),
                    },
                )
            except ClientError as exc:
                if _error_code(exc) != "ConditionalCheckFailedException":
                    raise
                raise NotFoundError("Group not found") from exc
        return resource

    def remove_resource(self, group_id: str, resource_id: str) -> None:
        with dynamodb_errors("remove the resource"):
            for _ in range(3):
                group = self._load(group_id)
                position = next(
                    (
                        i
                        for i, r in enumerate(group.resources)
                        if r.resource_id == resource_id
                    ),
                    None,
                )
                if position is None:
                    raise NotFoundError("Resource not found")
                try:
                    self.client.update_item(
                        TableName=self.groups_table,
                        Key={"group_id": _av(group_id)},
                        UpdateExpression=(
                            f"REMOVE resources[{position}] SET updated_at = :now"
                        ),
                        ConditionExpression=(
                            f"resources[{position}].resource_id = :resource"
                        ),
                        ExpressionAttributeValues={
                            ":resource": _av(resource_id),
                            ":now": _av(_iso(_utcnow())),
                        },
                    )
                    return
                except ClientError as exc:
                    if _error_code(exc) != "ConditionalCheckFailedException":
                        raise
                    logger.info(
                        "Resources of group %s changed concurrently, retrying",
                        group_id,
                    )
        raise StorageError("Could not remove the resource")

    def set_meeting_link(
        self, group_id: str, link: str, created_at: datetime
    ) -> GroupOut:
        with dynamodb_errors("save the meeting link"):
            try:
                response = self.client.update_item(
                    TableName=self.groups_table,
                    Key={"group_id": _av(group_id)},
                    UpdateExpression="SET overview = :overview, updated_at = :now",
                    ConditionExpression="attribute_exists(group_id)",
                    ExpressionAttributeValues={
                        ":overview": _av(
                            {
                                "meeting_link": link,
                                "meeting_link_created_at": _iso(created_at),
                            }
                        ),
                        ":now": _av(_iso(created_at)),
                    },
                    ReturnValues="ALL_NEW",
                )
            except ClientError as exc:
                if _error_code(exc) != "ConditionalCheckFailedException":
                    raise
                raise NotFoundError("Group not found") from exc
            return GroupOut.model_validate(_from_item(response["Attributes"]))


class DynamoMembershipRepository(_DynamoRepository, MembershipRepository):
    def get(self, group_id: str, user_id: str) -> MembershipOut | None:
        with dynamodb_errors("load the membership"):
            item = self._get(
                self.members_table, {"group_id": group_id, "user_id": user_id}
            )
            return MembershipOut.model_validate(item) if item else None

    def list_active(self, group_id: str) -> list[MembershipOut]:
        with dynamodb_errors("list members"):
            items = self._query(
                TableName=self.members_table,
                KeyConditionExpression="group_id = :group",
                FilterExpression="#status = :active",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={
                    ":group": _av(group_id),
                    ":active": _av(MembershipStatus.active.value),
                },
                ConsistentRead=True,
            )
            members = [MembershipOut.model_validate(item) for item in items]
            return sorted(members, key=lambda m: m.joined_at)

    def count_active(self, group_id: str) -> int:
        with dynamodb_errors("count members"):
            return self._member_count(group_id)

    def add(
        self, group_id: str, user_id: str, is_admin: bool = False
    ) -> tuple[MembershipOut, bool]:
        now = _utcnow()
        with dynamodb_errors("add the member"):
            try:
                self._transact(
                    [
                        self._member_put(group_id, user_id, is_admin, now),
                        self._index_update(user_id, group_id, "ADD"),
                    ]
                )
            except ClientError as exc:
                if not _failed_at(_cancellation_codes(exc), 0):
                    raise
                existing = self.get(group_id, user_id)
                if existing is None:
                    raise
                return existing, False
        membership = MembershipOut(
            group_id=group_id,
            user_id=user_id,
            is_admin=is_admin,
            status=MembershipStatus.active,
            joined_at=now,
        )
        return membership, True

    def remove(
        self,
        group_id: str,
        user_id: str,
        status: MembershipStatus = MembershipStatus.removed,
    ) -> MembershipOut:
        with dynamodb_errors("remove the member"):
            try:
                self._transact(
                    [
                        {
                            "Update": {
                                "TableName": self.members_table,
                                "Key": {
                                    "group_id": _av(group_id),
                                    "user_id": _av(user_id),
                                },
                                "UpdateExpression": "SET #status = :status, left_at = :now",
                                "ConditionExpression": "#status = :active",
                                "ExpressionAttributeNames": {"#status": "status"},
                                "ExpressionAttributeValues": {
                                    ":status": _av(status.value),
                                    ":now": _av(_iso(_utcnow())),
                                    ":active": _av(MembershipStatus.active.value),
                                },
                            }
                        },
                        self._index_update(user_id, group_id, "DELETE"),
                    ]
                )
            except ClientError as exc:
                if not _failed_at(_cancellation_codes(exc), 0):
                    raise
                raise NotFoundError("Member not found or already removed") from exc
            membership = self.get(group_id, user_id)
        if membership is None:
            raise NotFoundError("Member not found or already removed")
        return membership

    def group_ids_for_user(self, user_id: str) -> set[str]:
        with dynamodb_errors("load the user's group index"):
            item = self._get(self.profiles_table, {"user_id": user_id})
        if not item:
            return set()
        return set(item.get("groups", set()))


def _pending_guard_id(group_id: str, user_id: str) -> str:
    return f"PENDING#{group_id}#{user_id}"


class DynamoJoinRequestRepository(_DynamoRepository, JoinRequestRepository):
    def _decision_update(
        self, request_id: str, status: JoinRequestStatus, values: dict
    ) -> dict:
        assignments = ", ".join(f"{name} = :{name}" for name in values)
        return {
            "Update": {
                "TableName": self.join_requests_table,
                "Key": {"request_id": _av(request_id)},
                "UpdateExpression": f"SET #status = :status, {assignments}",
                "ConditionExpression": "#status = :pending",
                "ExpressionAttributeNames": {"#status": "status"},
                "ExpressionAttributeValues": {
                    ":status": _av(status.value),
                    ":pending": _av(JoinRequestStatus.pending.value),
                    **{f":{name}": _av(value) for name, value in values.items()},
                },
            }
        }

    def _guard_release(self, request: JoinRequestOut) -> dict:
        return {
            "Delete": {
                "TableName": self.join_requests_table,
                "Key": {
                    "request_id": _av(
                        _pending_guard_id(request.group_id, request.user_id)
                    )
                },
            }
        }

    def create(
        self, group_id: str, user_id: str, user_email: str, message: str
    ) -> JoinRequestOut:
        request = JoinRequestOut(
            request_id=new_request_id(),
            group_id=group_id,
            user_id=user_id,
            user_email=user_email,
            message=message,
            status=JoinRequestStatus.pending,
            requested_at=_utcnow(),
        )
        with dynamodb_errors("submit the join request"):
            try:
                self._transact(
                    [
                        {
                            "Put": {
                                "TableName": self.join_requests_table,
                                "Item": _to_item(
                                    {
                                        "request_id": _pending_guard_id(
                                            group_id, user_id
                                        ),
                                        "pending_request_id": request.request_id,
                                    }
                                ),
                                "ConditionExpression": "attribute_not_exists(request_id)",
                            }
                        },
                        {
                            "Put": {
                                "TableName": self.join_requests_table,
                                "Item": _to_item(
                                    {
                                        "request_id": request.request_id,
                                        "group_id": group_id,
                                        "user_id": user_id,
                                        "user_email": user_email,
                                        "message": message,
                                        "status": request.status.value,
                                        "requested_at": _iso(request.requested_at),
                                    }
                                ),
                                "ConditionExpression": "attribute_not_exists(request_id)",
                            }
                        },
                    ]
                )
            except ClientError as exc:
                if not _failed_at(_cancellation_codes(exc), 0):
                    raise
                raise ConflictError(
                    "You already have a pending request for this group"
                ) from exc
        return request

    def _load(self, request_id: str) -> JoinRequestOut:
        item = None
        if not request_id.startswith("PENDING#"):
            item = self._get(self.join_requests_table, {"request_id": request_id})
        if item is None:
            raise NotFoundError("Join request not found")
        return JoinRequestOut.model_validate(item)

    def get(self, request_id: str) -> JoinRequestOut:
        with dynamodb_errors("load the join request"):
            return self._load(request_id)

    def list_pending(self, group_id: str) -> list[JoinRequestOut]:
        with dynamodb_errors("list join requests"):
            items = self._query(
                TableName=self.join_requests_table,
                IndexName="GroupIdIndex",
                KeyConditionExpression="group_id = :group",
                FilterExpression="#status = :pending",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={
                    ":group": _av(group_id),
                    ":pending": _av(JoinRequestStatus.pending.value),
                },
                ScanIndexForward=True,
            )
            return [JoinRequestOut.model_validate(item) for item in items]

    def _group_active_check(self, group_id: str) -> dict:
        return {
            "ConditionCheck": {
                "TableName": self.groups_table,
                "Key": {"group_id": _av(group_id)},
                "ConditionExpression": "#status = :active",
                "ExpressionAttributeNames": {"#status": "status"},
                "ExpressionAttributeValues": {
                    ":active": _av(GroupStatus.active.value)
                },
            }
        }

    def approve(
        self, request_id: str, admin_id: str
    ) -> tuple[JoinRequestOut, bool]:
        with dynamodb_errors("approve the join request"):
            request = self._load(request_id)
            if request.status != JoinRequestStatus.pending:
                raise AlreadyProcessedError("Join request has already been processed")
            now = _utcnow()
            decision = self._decision_update(
                request_id,
                JoinRequestStatus.approved,
                {
                    "processed_by": admin_id,
                    "processed_at": _iso(now),
                },
            )
            release = self._guard_release(request)
            group_check = self._group_active_check(request.group_id)
            created = True
            try:
                self._transact(
                    [
                        decision,
                        release,
                        self._member_put(request.group_id, request.user_id, False, now),
                        self._index_update(request.user_id, request.group_id, "ADD"),
                        group_check,
                    ]
                )
            except ClientError as exc:
                codes = _cancellation_codes(exc)
                if _failed_at(codes, 0):
                    raise AlreadyProcessedError(
                        "Join request has already been processed"
                    ) from exc
                if _failed_at(codes, 4):
                    raise ValidationError("Group is not active") from exc
                if not _failed_at(codes, 2):
                    raise
                # Already an active member: close the request without a second row.
                created = False
                try:
                    self._transact([decision, release, group_check])
                except ClientError as retry_exc:
                    retry_codes = _cancellation_codes(retry_exc)
                    if _failed_at(retry_codes, 2):
                        raise ValidationError("Group is not active") from retry_exc
                    if not _failed_at(retry_codes, 0):
                        raise
                    raise AlreadyProcessedError(
                        "Join request has already been processed"
                    ) from retry_exc
            return self._load(request_id), created

    def reject(
        self, request_id: str, admin_id: str, reason: str
    ) -> JoinRequestOut:
        with dynamodb_errors("reject the join request"):
            request = self._load(request_id)
            if request.status != JoinRequestStatus.pending:
                raise AlreadyProcessedError("Join request has already been processed")
            decision = self._decision_update(
                request_id,
                JoinRequestStatus.rejected,
                {
                    "processed_by": admin_id,
                    "processed_at": _iso(_utcnow()),
                    "rejection_reason": reason,
                },
            )
            try:
                self._transact([decision, self._guard_release(request)])
            except ClientError as exc:
                if not _failed_at(_cancellation_codes(exc), 0):
                    raise
                raise AlreadyProcessedError(
                    "Join request has already been processed"
                ) from exc
            return self._load(request_id)


class DynamoInvitationRepository(_DynamoRepository, InvitationRepository):
    def create(
        self,
        group_id: str,
        invited_email: str,
        invited_by: str,
        token_hash: str,
        sent_at: datetime,
        expires_at: datetime,
    ) -> InvitationOut:
        data = {
            "token_hash": token_hash,
            "group_id": group_id,
            "invited_email": invited_email,
            "invited_by": invited_by,
            "status": InvitationStatus.pending.value,
            "sent_at": _iso(sent_at),
            "expires_at": _iso(expires_at),
        }
        with dynamodb_errors("create the invitation"):
            self.client.put_item(
                TableName=self.invitations_table,
                Item=_to_item(data),
                ConditionExpression="attribute_not_exists(token_hash)",
            )
        return InvitationOut.model_validate(data)

    def get_by_token_hash(self, token_hash: str) -> InvitationOut | None:
        with dynamodb_errors("load the invitation"):
            item = self._get(self.invitations_table, {"token_hash": token_hash})
            return InvitationOut.model_validate(item) if item else None

    def _pending_for_group(
        self, group_id: str, now: datetime, invited_email: str | None = None
    ) -> list[InvitationOut]:
        filters = "#status = :pending AND expires_at > :now"
        values = {
            ":group": _av(group_id),
            ":pending": _av(InvitationStatus.pending.value),
            ":now": _av(_iso(now)),
        }
        if invited_email is not None:
            filters += " AND invited_email = :email"
            values[":email"] = _av(invited_email)
        items = self._query(
            TableName=self.invitations_table,
            IndexName="GroupIdIndex",
            KeyConditionExpression="group_id = :group",
            FilterExpression=filters,
            ExpressionAttributeNames={"#status": "status"},
            ExpressionAttributeValues=values,
        )
        invitations = [InvitationOut.model_validate(item) for item in items]
        return sorted(invitations, key=lambda i: i.sent_at, reverse=True)

    def find_pending(
        self, group_id: str, invited_email: str, now: datetime
    ) -> InvitationOut | None:
        with dynamodb_errors("look up invitations"):
            matches = self._pending_for_group(group_id, now, invited_email)
            return matches[0] if matches else None

    def list_pending(self, group_id: str, now: datetime) -> list[InvitationOut]:
        with dynamodb_errors("list invitations"):
            return self._pending_for_group(group_id, now)

    def accept(
        self, token_hash: str, user_id: str, now: datetime
    ) -> tuple[InvitationOut, bool]:
        with dynamodb_errors("accept the invitation"):
            item = self._get(self.invitations_table, {"token_hash": token_hash})
            if item is None:
                raise NotFoundError("Invalid or expired invitation")
            invitation = InvitationOut.model_validate(item)
            if (
                invitation.status == InvitationStatus.accepted
                and invitation.accepted_by == user_id
                and invitation.expires_at > now
            ):
                return invitation, False
            acceptance = {
                "Update": {
                    "TableName": self.invitations_table,
                    "Key": {"token_hash": _av(token_hash)},
                    "UpdateExpression": (
                        "SET #status = :accepted, accepted_at = :now, "
                        "accepted_by = :user"
                    ),
                    "ConditionExpression": "#status = :pending AND expires_at > :now",
                    "ExpressionAttributeNames": {"#status": "status"},
                    "ExpressionAttributeValues": {
                        ":accepted": _av(InvitationStatus.accepted.value),
                        ":pending": _av(InvitationStatus.pending.value),
                        ":now": _av(_iso(now)),
                        ":user": _av(user_id),
                    },
                }
            }
            created = True
            try:
                self._transact(
                    [
                        acceptance,
                        self._member_put(invitation.group_id, user_id, False, now),
                        self._index_update(user_id, invitation.group_id, "ADD"),
                    ]
                )
            except ClientError as exc:
                codes = _cancellation_codes(exc)
                if _failed_at(codes, 0):
                    self._raise_not_acceptable(token_hash, now, exc)
                if not _failed_at(codes, 1):
                    raise
                # Already an active member: consume the token without a second row.
                created = False
                try:
                    self._transact([acceptance])
                except ClientError as retry_exc:
                    if not _failed_at(_cancellation_codes(retry_exc), 0):
                        raise
                    self._raise_not_acceptable(token_hash, now, retry_exc)
            item = self._get(self.invitations_table, {"token_hash": token_hash})
            return InvitationOut.model_validate(item), created

    def _raise_not_acceptable(
        self, token_hash: str, now: datetime, cause: Exception
    ) -> None:
        item = self._get(self.invitations_table, {"token_hash": token_hash})
        if item is None or as_utc(InvitationOut.model_validate(item).expires_at) <= now:
            raise NotFoundError("Invalid or expired invitation") from cause
        raise AlreadyProcessedError("Invitation has already been used") from cause

    def expire_pending(self, now: datetime) -> int:
        with dynamodb_errors("expire invitations"):
            overdue = self._query(
                TableName=self.invitations_table,
                IndexName="StatusIndex",
                KeyConditionExpression="#status = :pending AND expires_at <= :now",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={
                    ":pending": _av(InvitationStatus.pending.value),
                    ":now": _av(_iso(now)),
                },
            )
            expired = 0
            for item in overdue:
                try:
                    self.client.update_item(
                        TableName=self.invitations_table,
                        Key={"token_hash": _av(item["token_hash"])},
                        UpdateExpression="SET #status = :expired",
                        ConditionExpression="#status = :pending",
                        ExpressionAttributeNames={"#status": "status"},
                        ExpressionAttributeValues={
                            ":expired": _av(InvitationStatus.expired.value),
                            ":pending": _av(InvitationStatus.pending.value),
                        },
                    )
                except ClientError as exc:
                    if _error_code(exc) != "ConditionalCheckFailedException":
                        raise
                    # Accepted or expired by someone else since the query.
                    continue
                expired += 1
            return expired


class DynamoDiscussionRepository(_DynamoRepository, DiscussionRepository):
    def _ensure(self, group_id: str) -> dict:
        item = self._get(self.discussions_table, {"group_id": group_id})
        if item is not None:
            return item
        now = _iso(_utcnow())
        discussion_id = new_discussion_id()
        try:
            self._transact(
                [
                    {
                        "Put": {
                            "TableName": self.discussions_table,
                            "Item": _to_item(
                                {
                                    "group_id": group_id,
                                    "discussion_id": discussion_id,
                                    "messages": [],
                                    "created_at": now,
                                    "updated_at": now,
                                }
                            ),
                            "ConditionExpression": "attribute_not_exists(group_id)",
                        }
                    },
                    {
                        "Update": {
                            "TableName": self.groups_table,
                            "Key": {"group_id": _av(group_id)},
                            "UpdateExpression": "SET discussion_id = :discussion",
                            "ConditionExpression": "attribute_exists(group_id)",
                            "ExpressionAttributeValues": {
                                ":discussion": _av(discussion_id)
                            },
                        }
                    },
                ]
            )
        except ClientError as exc:
            codes = _cancellation_codes(exc)
            if _failed_at(codes, 1):
                raise NotFoundError("Group not found") from exc
            if not _failed_at(codes, 0):
                raise
        item = self._get(self.discussions_table, {"group_id": group_id})
        if item is None:
            raise StorageError("Could not load the discussion")
        return item

    def get_or_create(self, group_id: str) -> DiscussionOut:
        with dynamodb_errors("load the discussion"):
            return DiscussionOut.model_validate(self._ensure(group_id))

    def append_message(self, group_id: str, message: MessageOut) -> DiscussionOut:
        data = {
            "message_id": message.message_id,
            "user_id": message.user_id,
            "user_name": message.user_name,
            "user_email": message.user_email,
            "message": message.message,
            "timestamp": _iso(message.timestamp),
            "edited": message.edited,
            "edited_at": _iso(message.edited_at),
        }
        with dynamodb_errors("post the message"):
            self._ensure(group_id)
            response = self.client.update_item(
                TableName=self.discussions_table,
                Key={"group_id": _av(group_id)},
                UpdateExpression=(
                    "SET messages = list_append(messages, :message), updated_at = :now"
                ),
                ExpressionAttributeValues={
                    ":message": _av([data]),
                    ":now": _av(_iso(message.timestamp)),
                },
                ReturnValues="ALL_NEW",
            )
            return DiscussionOut.model_validate(_from_item(response["Attributes"]))


class DynamoNotesRepository(_DynamoRepository, NotesRepository):
    def __init__(self, client: BaseClient, settings: Settings):
        _DynamoRepository.__init__(self, client, settings)
        NotesRepository.__init__(self, settings.notes_max_length)

    def get_or_create(self, user_id: str, group_id: str) -> NotesOut:
        key = {"user_id": user_id, "group_id": group_id}
        with dynamodb_errors("load notes"):
            item = self._get(self.notes_table, key)
            if item is not None:
                return NotesOut.model_validate(item)
            try:
                self.client.put_item(
                    TableName=self.notes_table,
                    Item=_to_item({**key, "notes": ""}),
                    ConditionExpression="attribute_not_exists(user_id)",
                )
            except ClientError as exc:
                if _error_code(exc) != "ConditionalCheckFailedException":
                    raise
                return NotesOut.model_validate(self._get(self.notes_table, key))
        return NotesOut(user_id=user_id, group_id=group_id, notes="")

    def upsert(
        self, user_id: str, group_id: str, notes: str, updated_at: datetime
    ) -> NotesOut:
        record = NotesOut(
            user_id=user_id,
            group_id=group_id,
            notes=self._clip(notes),
            updated_at=updated_at,
        )
        with dynamodb_errors("save notes"):
            self.client.put_item(
                TableName=self.notes_table,
                Item=_to_item(
                    {
                        "user_id": user_id,
                        "group_id": group_id,
                        "notes": record.notes,
                        "updated_at": _iso(updated_at),
                    }
                ),
            )
        return record
