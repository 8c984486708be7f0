from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select

from studybuddy.api.deps import get_user_store
from studybuddy.core.errors import AlreadyProcessedError, ForbiddenError, StorageError
from studybuddy.main import app
from studybuddy.models.groups import (
    Discussion,
    DiscussionMessage,
    Invitation,
    JoinRequest,
    Membership,
    UserGroupIndex,
    UserGroupNotes,
)
from studybuddy.schemas.groups import GroupStatus
from studybuddy.services import group_service
from studybuddy.storage.users import SqlUserStore


def test_reject_records_reason_and_blocks_later_approval(
    client, make_group, creator, super_admin, auth_headers, email_sender
):
    group = make_group(creator, name="G2")

    rejected = client.post(
        f"/admin/groups/{group.group_id}/reject",
        json={"reason": "duplicate topic"},
        headers=auth_headers(super_admin),
    )
    assert rejected.status_code == 200
    assert rejected.json()["status"] == "rejected"
    assert rejected.json()["approval_status"]["rejection_reason"] == "duplicate topic"
    assert rejected.json()["approval_status"]["rejected_by"] == super_admin.user_id
    assert "duplicate topic" in email_sender.sent[-1]["text"]

    approve = client.post(
        f"/admin/groups/{group.group_id}/approve", headers=auth_headers(super_admin)
    )
    assert approve.status_code == 409
    assert approve.json()["kind"] == "AlreadyProcessed"


def test_second_decision_does_not_change_approval_status(
    storage, make_group, creator, super_admin
):
    group = make_group(creator, approve_as=super_admin)

    with pytest.raises(AlreadyProcessedError):
        group_service.reject_group(storage, super_admin, group.group_id, "late")

    stored = storage.groups.get(group.group_id)
    assert stored.status == GroupStatus.active
    assert stored.approval_status.rejection_reason is None


def test_reject_without_reason_uses_default(storage, make_group, creator, super_admin):
    group = make_group(creator)

    rejected = group_service.reject_group(storage, super_admin, group.group_id, "  ")

    assert rejected.approval_status.rejection_reason == "No reason provided"


def test_admin_routes_require_super_admin(client, make_group, creator, auth_headers):
    group = make_group(creator)

    for method, url in (
        ("get", "/admin/groups"),
        ("post", f"/admin/groups/{group.group_id}/approve"),
        ("delete", f"/admin/groups/{group.group_id}"),
        ("get", "/admin/users"),
        ("get", "/admin/stats"),
    ):
        response = client.request(method, url, headers=auth_headers(creator))
        assert response.status_code == 403, url


def test_service_guards_reject_regular_users(storage, make_group, creator):
    group = make_group(creator)

    with pytest.raises(ForbiddenError):
        group_service.approve_group(storage, creator, group.group_id)


def test_admin_group_listing_and_stats(
    client, make_group, creator, student, super_admin, auth_headers
):
    make_group(creator, name="Waiting")
    make_group(creator, name="Live", approve_as=super_admin)
    rejected = make_group(creator, name="Nope")
    client.post(
        f"/admin/groups/{rejected.group_id}/reject",
        json={},
        headers=auth_headers(super_admin),
    )

    listing = client.get("/admin/groups", headers=auth_headers(super_admin)).json()
    assert listing["pending_count"] == 1
    assert len(listing["groups"]) == 3
    assert {g["creator_name"] for g in listing["groups"]} == {"Cora Creator"}
    assert {g["creator_email"] for g in listing["groups"]} == {creator.email}

    stats = client.get("/admin/stats", headers=auth_headers(super_admin)).json()
    assert stats == {
        "total_users": 3,
        "total_groups": 3,
        "pending_groups": 1,
        "active_groups": 1,
        "rejected_groups": 1,
    }


def test_delete_group_leaves_no_orphans(
    client, db_session, storage, active_group, creator, student, super_admin, auth_headers
):
    group_id = active_group.group_id
    request = storage.join_requests.create(group_id, student.user_id, student.email, "")
    storage.join_requests.approve(request.request_id, creator.user_id)
    now = datetime.now(UTC)
    storage.invitations.create(
        group_id=group_id,
        invited_email="friend@example.com",
        invited_by=creator.user_id,
        token_hash="b" * 64,
        sent_at=now,
        expires_at=now + timedelta(days=7),
    )
    client.post(
        f"/groups/{group_id}/discussion/messages",
        json={"message": "hi all"},
        headers=auth_headers(student),
    )
    storage.notes.upsert(student.user_id, group_id, "my notes", now)

    response = client.delete(f"/admin/groups/{group_id}", headers=auth_headers(super_admin))
    assert response.status_code == 204

    for model in (
        Membership,
        UserGroupIndex,
        JoinRequest,
        Invitation,
        UserGroupNotes,
        Discussion,
    ):
        count = db_session.execute(
            select(func.count()).select_from(model).where(model.group_id == group_id)
        ).scalar_one()
        assert count == 0, model.__name__
    assert db_session.execute(
        select(func.count()).select_from(DiscussionMessage)
    ).scalar_one() == 0
    assert group_id not in storage.memberships.group_ids_for_user(creator.user_id)
    assert group_id not in storage.memberships.group_ids_for_user(student.user_id)

    missing = client.get(f"/groups/{group_id}", headers=auth_headers(creator))
    assert missing.status_code == 404


def test_list_and_promote_users(client, student, super_admin, auth_headers):
    users = client.get("/admin/users", headers=auth_headers(super_admin)).json()
    assert {u["email"] for u in users} == {student.email, super_admin.email}

    promoted = client.post(
        f"/admin/users/{student.user_id}/promote", headers=auth_headers(super_admin)
    )
    assert promoted.status_code == 200
    assert promoted.json()["is_super_admin"] is True

    now_admin = client.get("/admin/stats", headers=auth_headers(student))
    assert now_admin.status_code == 200

    unknown = client.post(
        "/admin/users/nobody/promote", headers=auth_headers(super_admin)
    )
    assert unknown.status_code == 404


class UnreachableProfilesStore(SqlUserStore):
    def display_info(self, user_ids):
        raise StorageError("Could not load users")


def test_committed_decision_survives_failed_creator_lookup(
    client,
    db_session,
    settings,
    storage,
    make_group,
    creator,
    super_admin,
    auth_headers,
    email_sender,
):
    group = make_group(creator)
    app.dependency_overrides[get_user_store] = lambda: UnreachableProfilesStore(
        db_session, settings
    )

    response = client.post(
        f"/admin/groups/{group.group_id}/approve", headers=auth_headers(super_admin)
    )

    assert response.status_code == 200
    assert response.json()["status"] == "active"
    assert storage.groups.get(group.group_id).status == GroupStatus.active
    assert email_sender.sent == []
