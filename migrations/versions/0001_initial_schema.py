from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.sql import expression

revision = "0001_initial_schema"
down_revision = None
branch_labels: tuple[str, ...] | None = None
depends_on: tuple[str, ...] | None = None

ENUMS = {
    "grouplevel": ("beginner", "intermediate", "advanced"),
    "timecommitment": ("10hrs/wk", "15hrs/wk", "20hrs/wk"),
    "groupstatus": ("pending_approval", "active", "rejected", "archived"),
    "resourcetype": ("video", "article", "document", "link", "book"),
    "membershipstatus": ("active", "left", "removed", "pending_approval"),
    "joinrequeststatus": ("pending", "approved", "rejected"),
    "invitationstatus": ("pending", "accepted", "declined", "expired"),
}


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    bind = op.get_bind()
    enums = {name: sa.Enum(*values, name=name) for name, values in ENUMS.items()}
    for enum in enums.values():
        enum.create(bind, checkfirst=True)

    op.create_table(
        "users",
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("password_hash", sa.String(), nullable=True),
        sa.Column("first_name", sa.String(), nullable=False),
        sa.Column("last_name", sa.String(), nullable=False),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.Column("phone_number", sa.String(), nullable=True),
        sa.Column(
            "is_super_admin",
            sa.Boolean(),
            nullable=False,
            server_default=expression.false(),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        _ts("updated_at"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "study_groups",
        sa.Column("group_id", sa.String(length=16), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("concept", sa.String(), nullable=False),
        sa.Column("level", enums["grouplevel"], nullable=False),
        sa.Column("time_commitment", enums["timecommitment"], nullable=False),
        sa.Column("created_by", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", enums["groupstatus"], nullable=False),
        sa.Column("approved_by", sa.String(), nullable=True),
        _ts("approved_at"),
        sa.Column("rejected_by", sa.String(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        _ts("rejected_at"),
        sa.Column("meeting_link", sa.String(), nullable=True),
        _ts("meeting_link_created_at"),
        sa.Column("discussion_id", sa.String(), nullable=True),
        _ts("created_at", nullable=False),
        _ts("updated_at"),
    )
    for column in ("concept", "created_by", "status", "created_at"):
        op.create_index(f"ix_study_groups_{column}", "study_groups", [column])

    op.create_table(
        "group_resources",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "group_id",
            sa.String(length=16),
            sa.ForeignKey("study_groups.group_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("resource_id", sa.String(), nullable=False, unique=True),
        sa.Column("type", enums["resourcetype"], nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("url", sa.String(), nullable=False),
        sa.Column("uploaded_by", sa.String(), nullable=False),
        sa.Column("uploaded_by_name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        _ts("uploaded_at", nullable=False),
    )
    op.create_index("ix_group_resources_group_id", "group_resources", ["group_id"])

    op.create_table(
        "group_members",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column(
            "is_admin",
            sa.Boolean(),
            nullable=False,
            server_default=expression.false(),
        ),
        sa.Column("status", enums["membershipstatus"], nullable=False),
        _ts("joined_at", nullable=False),
        _ts("left_at"),
        sa.UniqueConstraint("group_id", "user_id", name="uq_group_member"),
    )
    op.create_index("ix_group_members_group_id", "group_members", ["group_id"])
    op.create_index("ix_group_members_user_id", "group_members", ["user_id"])

    op.create_table(
        "user_group_index",
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("group_id", sa.String(), primary_key=True),
    )
    op.create_index("ix_user_group_index_group_id", "user_group_index", ["group_id"])

    op.create_table(
        "join_requests",
        sa.Column("request_id", sa.String(length=16), primary_key=True),
        sa.Column("group_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("user_email", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("status", enums["joinrequeststatus"], nullable=False),
        _ts("requested_at", nullable=False),
        sa.Column("processed_by", sa.String(), nullable=True),
        _ts("processed_at"),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
    )
    op.create_index("ix_join_requests_group_id", "join_requests", ["group_id"])
    op.create_index("ix_join_requests_user_id", "join_requests", ["user_id"])
    op.create_index(
        "uq_pending_join_request",
        "join_requests",
        ["group_id", "user_id"],
        unique=True,
        sqlite_where=sa.text("status = 'pending'"),
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "group_invitations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.String(), nullable=False),
        sa.Column("invited_email", sa.String(), nullable=False),
        sa.Column("invited_by", sa.String(), nullable=False),
        sa.Column("token_hash", sa.String(), nullable=False, unique=True),
        _ts("expires_at", nullable=False),
        sa.Column("status", enums["invitationstatus"], nullable=False),
        _ts("sent_at", nullable=False),
        _ts("accepted_at"),
        sa.Column("accepted_by", sa.String(), nullable=True),
    )
    for column in ("group_id", "invited_email", "expires_at", "status"):
        op.create_index(
            f"ix_group_invitations_{column}", "group_invitations", [column]
        )

    op.create_table(
        "discussions",
        sa.Column("discussion_id", sa.String(length=16), primary_key=True),
        sa.Column("group_id", sa.String(), nullable=False, unique=True),
        _ts("created_at", nullable=False),
        _ts("updated_at"),
    )

    op.create_table(
        "discussion_messages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "discussion_id",
            sa.String(length=16),
            sa.ForeignKey("discussions.discussion_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("message_id", sa.String(), nullable=False, unique=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("user_name", sa.String(), nullable=False),
        sa.Column("user_email", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        _ts("timestamp", nullable=False),
        sa.Column(
            "edited",
            sa.Boolean(),
            nullable=False,
            server_default=expression.false(),
        ),
        _ts("edited_at"),
    )
    op.create_index(
        "ix_discussion_messages_discussion_id",
        "discussion_messages",
        ["discussion_id"],
    )

    op.create_table(
        "user_group_notes",
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("group_id", sa.String(), primary_key=True),
        sa.Column("notes", sa.Text(), nullable=False),
        _ts("updated_at"),
    )
    op.create_index("ix_user_group_notes_group_id", "user_group_notes", ["group_id"])


def downgrade() -> None:
    for table in (
        "user_group_notes",
        "discussion_messages",
        "discussions",
        "group_invitations",
        "join_requests",
        "user_group_index",
        "group_members",
        "group_resources",
        "study_groups",
        "users",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        sa.Enum(name=name).drop(bind, checkfirst=True)
