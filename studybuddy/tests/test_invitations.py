from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy import select

from studybuddy.core.errors import (
    AlreadyProcessedError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from studybuddy.core.security import hash_token
from studybuddy.models.groups import Invitation
from studybuddy.schemas.invitations import InvitationStatus
from studybuddy.services import group_service, invitation_service
from studybuddy.workers.invitation_sweeper import run_sweep_tick


def _issue(storage, settings, admin, group_id, email="friend@example.com"):
    return invitation_service.send_invitation(storage, settings, admin, group_id, email)


def test_send_invitation_stores_only_token_hash_and_emails_link(
    client, db_session, active_group, creator, auth_headers, email_sender
):
    response = client.post(
        f"/groups/{active_group.group_id}/invitations",
        json={"email": "Friend@Example.com"},
        headers=auth_headers(creator),
    )

    assert response.status_code == 201
    body = response.json()
    assert body["invited_email"] == "friend@example.com"
    assert body["status"] == "pending"
    assert "token" not in body

    mail = email_sender.sent[-1]
    assert mail["to"] == "friend@example.com"
    assert "Algo Study" in mail["subject"]
    link = next(word for word in mail["text"].split() if "accept-invitation" in word)
    parsed = urlparse(link)
    assert parsed.path == "/accept-invitation"
    raw_token = parse_qs(parsed.query)["token"][0]
    assert parse_qs(parsed.query)["email"] == ["friend@example.com"]

    stored = db_session.execute(select(Invitation)).scalar_one()
    assert stored.token_hash == hash_token(raw_token)
    assert stored.token_hash != raw_token
    expires = stored.expires_at.replace(tzinfo=UTC)
    sent = stored.sent_at.replace(tzinfo=UTC)
    assert expires - sent == timedelta(days=7)


def test_duplicate_pending_invitation_conflicts(storage, settings, active_group, creator):
    _issue(storage, settings, creator, active_group.group_id)

    with pytest.raises(ConflictError):
        _issue(storage, settings, creator, active_group.group_id, "FRIEND@example.com")


def test_only_admins_of_active_groups_invite(
    storage, settings, make_group, active_group, creator, student
):
    storage.memberships.add(active_group.group_id, student.user_id)
    with pytest.raises(ForbiddenError):
        _issue(storage, settings, student, active_group.group_id)

    pending = make_group(creator, name="Pending")
    with pytest.raises(ValidationError, match="Group is not active"):
        _issue(storage, settings, creator, pending.group_id)


def test_verify_then_accept_creates_membership(
    client, storage, settings, active_group, creator, student, auth_headers
):
    issued = _issue(storage, settings, creator, active_group.group_id, student.email)

    verify = client.post("/invitations/verify", json={"token": issued.token})
    assert verify.status_code == 200
    assert verify.json()["group_name"] == "Algo Study"
    assert verify.json()["invited_email"] == student.email

    accept = client.post(
        "/invitations/accept",
        json={"token": issued.token},
        headers=auth_headers(student),
    )
    assert accept.status_code == 200
    assert accept.json() == {
        "group_id": active_group.group_id,
        "membership_created": True,
    }
    assert storage.memberships.is_active_member(active_group.group_id, student.user_id)
    assert active_group.group_id in storage.memberships.group_ids_for_user(
        student.user_id
    )

    used = client.post("/invitations/verify", json={"token": issued.token})
    assert used.status_code == 404


def test_token_is_single_use_across_users(
    storage, settings, active_group, creator, student, make_user
):
    other = make_user("other@example.com")
    issued = _issue(storage, settings, creator, active_group.group_id, student.email)

    first = invitation_service.accept_invitation(storage, student, issued.token)
    again = invitation_service.accept_invitation(storage, student, issued.token)

    assert first.membership_created is True
    assert again.membership_created is False
    with pytest.raises(AlreadyProcessedError):
        invitation_service.accept_invitation(storage, other, issued.token)
    assert not storage.memberships.is_active_member(
        active_group.group_id, other.user_id
    )


def test_accept_when_already_member_marks_invitation_used(
    storage, settings, db_session, active_group, creator, student
):
    storage.memberships.add(active_group.group_id, student.user_id)
    issued = _issue(storage, settings, creator, active_group.group_id, student.email)

    result = invitation_service.accept_invitation(storage, student, issued.token)

    assert result.membership_created is False
    stored = db_session.execute(select(Invitation)).scalar_one()
    assert stored.status == InvitationStatus.accepted
    assert stored.accepted_by == student.user_id


def test_expired_invitation_cannot_be_accepted(
    storage, active_group, creator, student
):
    now = datetime.now(UTC)
    storage.invitations.create(
        group_id=active_group.group_id,
        invited_email=student.email,
        invited_by=creator.user_id,
        token_hash=hash_token("stale-token"),
        sent_at=now - timedelta(days=8),
        expires_at=now - timedelta(days=1),
    )

    with pytest.raises(NotFoundError):
        invitation_service.verify_invitation(storage, "stale-token")
    with pytest.raises(NotFoundError):
        invitation_service.accept_invitation(storage, student, "stale-token")
    with pytest.raises(NotFoundError):
        invitation_service.accept_invitation(storage, student, "unknown-token")


def test_list_pending_invitations_is_admin_only(
    client, storage, settings, active_group, creator, student, auth_headers
):
    _issue(storage, settings, creator, active_group.group_id)
    storage.memberships.add(active_group.group_id, student.user_id)
    url = f"/groups/{active_group.group_id}/invitations"

    as_admin = client.get(url, headers=auth_headers(creator))
    as_member = client.get(url, headers=auth_headers(student))

    assert [i["invited_email"] for i in as_admin.json()] == ["friend@example.com"]
    assert as_member.status_code == 403


def test_cleanup_expired_is_idempotent(storage, db_session, active_group, creator):
    now = datetime.now(UTC)
    for index, expires_at in enumerate(
        (now - timedelta(hours=1), now - timedelta(days=2), now + timedelta(days=3))
    ):
        storage.invitations.create(
            group_id=active_group.group_id,
            invited_email=f"user{index}@example.com",
            invited_by=creator.user_id,
            token_hash=hash_token(f"token-{index}"),
            sent_at=now - timedelta(days=7),
            expires_at=expires_at,
        )

    assert invitation_service.cleanup_expired(storage, now) == 2
    assert invitation_service.cleanup_expired(storage, now) == 0

    db_session.expire_all()
    statuses = sorted(
        invitation.status.value
        for invitation in db_session.execute(select(Invitation)).scalars()
    )
    assert statuses == ["expired", "expired", "pending"]


def test_sweep_tick_uses_given_session(db_session, settings, storage, active_group, creator):
    now = datetime.now(UTC)
    storage.invitations.create(
        group_id=active_group.group_id,
        invited_email="late@example.com",
        invited_by=creator.user_id,
        token_hash=hash_token("late"),
        sent_at=now - timedelta(days=8),
        expires_at=now - timedelta(minutes=5),
    )

    expired = run_sweep_tick(
        settings=settings,
        session_factory=lambda: db_session,
        close_session=False,
        now=now,
    )

    assert expired == 1


def test_sweep_tick_skips_dynamodb_without_client(settings, monkeypatch):
    monkeypatch.setattr(settings, "group_store", "dynamodb")

    assert run_sweep_tick(settings=settings, dynamodb_client=None) == 0


def test_replayed_token_does_not_undo_removal(
    storage, settings, active_group, creator, student
):
    issued = _issue(storage, settings, creator, active_group.group_id, student.email)
    invitation_service.accept_invitation(storage, student, issued.token)
    group_service.remove_member(storage, creator, active_group.group_id, student.user_id)

    replay = invitation_service.accept_invitation(storage, student, issued.token)

    assert replay.membership_created is False
    assert not storage.memberships.is_active_member(
        active_group.group_id, student.user_id
    )
    assert active_group.group_id not in storage.memberships.group_ids_for_user(
        student.user_id
    )
