"""content lifecycle, publishing runs and quota core

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def _is_postgresql() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP"))


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "clients",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("owner_user_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["owner_user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_clients_owner_created_at", "clients", ["owner_user_id", "created_at"], unique=False)

    op.create_table(
        "client_members",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("client_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False, server_default="editor"),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("client_id", "user_id", name="uq_client_members_client_user"),
    )
    op.create_index("ix_client_members_user", "client_members", ["user_id"], unique=False)

    op.create_table(
        "posts",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("client_id", sa.String(length=36), nullable=False),
        sa.Column("project_id", sa.String(length=36), nullable=True),
        sa.Column("caption", sa.Text(), nullable=False, server_default=""),
        sa.Column("media_reference", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
        sa.Column("approval_status", sa.String(length=32), nullable=False, server_default="draft"),
        sa.Column("needs_reapproval", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("original_caption", sa.Text(), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("currently_editing_by", sa.String(length=36), nullable=True),
        sa.Column("editing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_modified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scheduled_date", sa.Date(), nullable=True),
        sa.Column("scheduled_time", sa.Time(), nullable=True),
        sa.Column("platforms_scheduled_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("external_status", sa.String(length=32), nullable=True),
        sa.Column("external_post_id", sa.String(length=128), nullable=True),
        sa.Column("draft_changes_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("edit_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_edited_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_edited_by", sa.String(length=36), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_posts_client_created_at", "posts", ["client_id", "created_at"], unique=False)
    op.create_index("ix_posts_client_status", "posts", ["client_id", "status"], unique=False)

    op.create_table(
        "scheduled_posts",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("post_id", sa.String(length=36), nullable=True),
        sa.Column("client_id", sa.String(length=36), nullable=False),
        sa.Column("caption", sa.Text(), nullable=False, server_default=""),
        sa.Column("media_reference", sa.Text(), nullable=True),
        sa.Column("scheduled_date", sa.Date(), nullable=True),
        sa.Column("scheduled_time", sa.Time(), nullable=True),
        sa.Column("account_ids_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="scheduled"),
        sa.Column("external_post_id", sa.String(length=128), nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["post_id"], ["posts.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_post_id", name="uq_scheduled_posts_external_post_id"),
    )
    op.create_index(
        "ix_scheduled_posts_client_created_at",
        "scheduled_posts",
        ["client_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "post_revisions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("post_id", sa.String(length=36), nullable=False),
        sa.Column("client_id", sa.String(length=36), nullable=False),
        sa.Column("edited_by", sa.String(length=36), nullable=False),
        sa.Column("previous_caption", sa.Text(), nullable=True),
        sa.Column("new_caption", sa.Text(), nullable=True),
        sa.Column("changed_fields_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("edit_reason", sa.String(length=255), nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["post_id"], ["posts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_post_revisions_post_created_at",
        "post_revisions",
        ["post_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "publish_runs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("post_id", sa.String(length=36), nullable=False),
        sa.Column("client_id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=128), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("stage_reached", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="running"),
        sa.Column("remote_media_url", sa.Text(), nullable=True),
        sa.Column("staged_media_reference", sa.Text(), nullable=True),
        sa.Column("remote_job_id", sa.String(length=128), nullable=True),
        sa.Column("error_message", sa.String(length=255), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["post_id"], ["posts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_publish_runs_post_account_created_at",
        "publish_runs",
        ["post_id", "account_id", "created_at"],
        unique=False,
    )
    op.create_index("ix_publish_runs_status_updated_at", "publish_runs", ["status", "updated_at"], unique=False)

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("subscription_tier", sa.String(length=32), nullable=False, server_default="freemium"),
        sa.Column("subscription_status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("max_clients", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("max_posts_per_month", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_ai_credits_per_month", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("clients_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("posts_used_this_month", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ai_credits_used_this_month", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("usage_reset_date", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", name="uq_subscriptions_user"),
    )

    op.create_table(
        "user_profiles",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("ai_credits_purchased", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "ai_credit_usage",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("credit_type", sa.String(length=20), nullable=False),
        sa.Column("action_type", sa.String(length=100), nullable=False),
        sa.Column("credits_used", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("client_id", sa.String(length=36), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=False, server_default="{}"),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_ai_credit_usage_user_created_at",
        "ai_credit_usage",
        ["user_id", "created_at"],
        unique=False,
    )

    if _is_postgresql():
        op.execute(
            """
            ALTER TABLE posts ADD CONSTRAINT ck_posts_status
            CHECK (status IN ('draft', 'ready', 'scheduled', 'published', 'archived', 'deleted'));
            """
        )
        op.execute(
            """
            ALTER TABLE user_profiles ADD CONSTRAINT ck_user_profiles_credits_non_negative
            CHECK (ai_credits_purchased >= 0);
            """
        )


def downgrade() -> None:
    op.drop_index("ix_ai_credit_usage_user_created_at", table_name="ai_credit_usage")
    op.drop_table("ai_credit_usage")
    op.drop_table("user_profiles")
    op.drop_table("subscriptions")
    op.drop_index("ix_publish_runs_status_updated_at", table_name="publish_runs")
    op.drop_index("ix_publish_runs_post_account_created_at", table_name="publish_runs")
    op.drop_table("publish_runs")
    op.drop_index("ix_post_revisions_post_created_at", table_name="post_revisions")
    op.drop_table("post_revisions")
    op.drop_index("ix_scheduled_posts_client_created_at", table_name="scheduled_posts")
    op.drop_table("scheduled_posts")
    op.drop_index("ix_posts_client_status", table_name="posts")
    op.drop_index("ix_posts_client_created_at", table_name="posts")
    op.drop_table("posts")
    op.drop_index("ix_client_members_user", table_name="client_members")
    op.drop_table("client_members")
    op.drop_index("ix_clients_owner_created_at", table_name="clients")
    op.drop_table("clients")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
