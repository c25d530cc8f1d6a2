"""SQLAlchemy ORM models for the content lifecycle, publishing and quota core."""

from __future__ import annotations

from datetime import date, datetime, time
import json
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, Time, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from src.storage.db import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _load_json(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        value = json.loads(raw)
    except ValueError:
        return default
    return value if isinstance(value, type(default)) else default


def dump_json(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True)


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class Client(Base):
    """Tenant client owned by one account; collaborators are listed in client_members."""

    __tablename__ = "clients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (Index("ix_clients_owner_created_at", "owner_user_id", "created_at"),)


class ClientMember(Base):
    """Collaborator allowed to work on a client's posts besides its owner."""

    __tablename__ = "client_members"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    client_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="editor")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("client_id", "user_id", name="uq_client_members_client_user"),
        Index("ix_client_members_user", "user_id"),
    )


class Post(Base):
    __tablename__ = "posts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    client_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
    )
    project_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    caption: Mapped[str] = mapped_column(Text, nullable=False, default="")
    media_reference: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    approval_status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft")
    needs_reapproval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    original_caption: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    currently_editing_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    editing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_modified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    scheduled_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    scheduled_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    platforms_scheduled_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    external_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    external_post_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    draft_changes_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    edit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_edited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_edited_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_posts_client_created_at", "client_id", "created_at"),
        Index("ix_posts_client_status", "client_id", "status"),
    )

    @property
    def platforms_scheduled(self) -> List[str]:
        return [str(item) for item in _load_json(self.platforms_scheduled_json, [])]

    @property
    def draft_changes(self) -> Dict[str, Any]:
        return _load_json(self.draft_changes_json, {})


class ScheduledPost(Base):
    """Calendar copy of a post; also the historical log of remote schedule jobs."""

    __tablename__ = "scheduled_posts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    post_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("posts.id", ondelete="SET NULL"),
        nullable=True,
    )
    client_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
    )
    caption: Mapped[str] = mapped_column(Text, nullable=False, default="")
    media_reference: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    scheduled_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    scheduled_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    account_ids_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="scheduled")
    external_post_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (Index("ix_scheduled_posts_client_created_at", "client_id", "created_at"),)

    @property
    def account_ids(self) -> List[str]:
        return [str(item) for item in _load_json(self.account_ids_json, [])]


class PostRevision(Base):
    __tablename__ = "post_revisions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    post_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("posts.id", ondelete="CASCADE"),
        nullable=False,
    )
    client_id: Mapped[str] = mapped_column(String(36), nullable=False)
    edited_by: Mapped[str] = mapped_column(String(36), nullable=False)
    previous_caption: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    new_caption: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    changed_fields_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    edit_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (Index("ix_post_revisions_post_created_at", "post_id", "created_at"),)

    @property
    def changed_fields(self) -> List[str]:
        return [str(item) for item in _load_json(self.changed_fields_json, [])]


class PublishRun(Base):
    """Checkpoint of one publishing pipeline run for a (post, account) pair."""

    __tablename__ = "publish_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    post_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("posts.id", ondelete="CASCADE"),
        nullable=False,
    )
    client_id: Mapped[str] = mapped_column(String(36), nullable=False)
    account_id: Mapped[str] = mapped_column(String(128), nullable=False)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)
    stage_reached: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")
    remote_media_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    staged_media_reference: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    remote_job_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_publish_runs_post_account_created_at", "post_id", "account_id", "created_at"),
        Index("ix_publish_runs_status_updated_at", "status", "updated_at"),
    )


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    subscription_tier: Mapped[str] = mapped_column(String(32), nullable=False, default="freemium")
    subscription_status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    current_period_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    max_clients: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_posts_per_month: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_ai_credits_per_month: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    clients_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    posts_used_this_month: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ai_credits_used_this_month: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    usage_reset_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (UniqueConstraint("user_id", name="uq_subscriptions_user"),)


class UserProfile(Base):
    __tablename__ = "user_profiles"

    id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    ai_credits_purchased: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class AICreditUsage(Base):
    __tablename__ = "ai_credit_usage"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    credit_type: Mapped[str] = mapped_column(String(20), nullable=False)
    action_type: Mapped[str] = mapped_column(String(100), nullable=False)
    credits_used: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    client_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (Index("ix_ai_credit_usage_user_created_at", "user_id", "created_at"),)
