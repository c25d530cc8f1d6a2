"""Advisory, time-boxed editing sessions stored inline on the post row.

The lock fields (``currently_editing_by`` / ``editing_started_at``) live on the
post itself. Acquire and release are single conditional UPDATEs so that two
racing requests cannot both observe a free lock and both win: the storage
engine decides, and the loser is reported as a conflict.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import or_

from src.core.config import get_settings
from src.core.errors import Conflict, Forbidden, NotFound
from src.core.logger import get_logger
from src.core.metrics import record_editing_lock_conflict
from src.core.timeutils import isoformat_or_none, normalize_optional_dt, utc_now
from src.posts.lifecycle import EDITABLE_STATUSES, ensure_editable, is_editable_status
from src.storage.models import Post
from src.storage.repository import ContentRepository


logger = get_logger("postpilot.editing.sessions")


@dataclass(frozen=True)
class EditingLockState:
    post_id: str
    holder: str
    lock_started_at: datetime
    last_modified_at: Optional[datetime]


@dataclass(frozen=True)
class EditingSessionStatus:
    post_id: str
    is_active: bool
    holder: Optional[str]
    lock_started_at: Optional[datetime]
    last_modified_at: Optional[datetime]
    can_edit: bool
    status: str


def default_lock_ttl() -> timedelta:
    return timedelta(minutes=get_settings().editing_lock_ttl_minutes)


def lock_is_active(post: Post, *, now: datetime, ttl: timedelta) -> bool:
    started_at = normalize_optional_dt(post.editing_started_at)
    if not post.currently_editing_by or started_at is None:
        return False
    return (now - started_at) < ttl


def _holder_details(post: Post) -> Dict[str, Any]:
    return {
        "current_holder": post.currently_editing_by,
        "lock_started_at": isoformat_or_none(post.editing_started_at),
    }


def ensure_not_locked_by_other(
    post: Post,
    *,
    actor_id: str,
    now: datetime,
    ttl: timedelta,
    force: bool = False,
) -> None:
    """Raise Conflict when another actor holds an active lock and ``force`` is off."""

    if force:
        return
    if lock_is_active(post, now=now, ttl=ttl) and post.currently_editing_by != actor_id:
        record_editing_lock_conflict(operation="edit")
        details = _holder_details(post)
        details["can_force_edit"] = True
        raise Conflict("Post is currently being edited by another user", details=details)


class EditingSessionManager:
    """Acquire, release and inspect editing sessions for posts."""

    def __init__(self, repository: ContentRepository, *, ttl: timedelta | None = None) -> None:
        resolved_ttl = ttl if ttl is not None else default_lock_ttl()
        if resolved_ttl <= timedelta(0):
            raise ValueError("ttl must be positive")
        self._repository = repository
        self._ttl = resolved_ttl

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def _load_owned_post(self, post_id: str, client_id: str) -> Post:
        post = self._repository.get_post(post_id)
        if post.client_id != client_id:
            raise Forbidden(
                "Unauthorized: Post does not belong to this client",
                details={"post_id": post_id},
            )
        return post

    def _conflict(self, post: Post) -> Conflict:
        record_editing_lock_conflict(operation="acquire")
        details = _holder_details(post)
        details["can_force_start"] = True
        return Conflict("Post is currently being edited by another user", details=details)

    def acquire(
        self,
        post_id: str,
        client_id: str,
        actor_id: str,
        *,
        force: bool = False,
        now: datetime | None = None,
    ) -> EditingLockState:
        reference = now or utc_now()
        post = self._load_owned_post(post_id, client_id)
        ensure_editable(post.status, operation="editing_session")

        previous_holder = post.currently_editing_by
        if (
            not force
            and lock_is_active(post, now=reference, ttl=self._ttl)
            and previous_holder != actor_id
        ):
            logger.info(
                "editing_session_conflict",
                post_id=post_id,
                actor_id=actor_id,
                current_holder=previous_holder,
            )
            raise self._conflict(post)

        conditions = [Post.client_id == client_id, Post.status.in_(EDITABLE_STATUSES)]
        if not force:
            cutoff = reference - self._ttl
            conditions.append(
                or_(
                    Post.currently_editing_by.is_(None),
                    Post.currently_editing_by == actor_id,
                    Post.editing_started_at.is_(None),
                    Post.editing_started_at <= cutoff,
                )
            )

        try:
            updated = self._repository.update_post(
                post_id,
                {
                    "currently_editing_by": actor_id,
                    "editing_started_at": reference,
                    "last_modified_at": reference,
                },
                conditions=conditions,
                now=reference,
            )
        except NotFound:
            self._repository.rollback()
            current = self._load_owned_post(post_id, client_id)
            ensure_editable(current.status, operation="editing_session")
            logger.info(
                "editing_session_lost_race",
                post_id=post_id,
                actor_id=actor_id,
                current_holder=current.currently_editing_by,
            )
            raise self._conflict(current)

        self._repository.commit()
        if force and previous_holder and previous_holder != actor_id:
            logger.warning(
                "editing_session_force_taken",
                post_id=post_id,
                actor_id=actor_id,
                evicted_holder=previous_holder,
            )
        else:
            logger.info("editing_session_started", post_id=post_id, actor_id=actor_id)

        return EditingLockState(
            post_id=updated.id,
            holder=actor_id,
            lock_started_at=reference,
            last_modified_at=normalize_optional_dt(updated.last_modified_at),
        )

    def release(
        self,
        post_id: str,
        client_id: str,
        actor_id: str,
        *,
        force: bool = False,
    ) -> None:
        post = self._load_owned_post(post_id, client_id)
        if post.currently_editing_by != actor_id and not force:
            record_editing_lock_conflict(operation="release")
            details = _holder_details(post)
            details["can_force_end"] = True
            raise Forbidden("Cannot end editing session started by another user", details=details)

        conditions = [Post.client_id == client_id]
        if not force:
            conditions.append(Post.currently_editing_by == actor_id)

        try:
            self._repository.update_post(
                post_id,
                {"currently_editing_by": None, "editing_started_at": None},
                conditions=conditions,
            )
        except NotFound:
            self._repository.rollback()
            current = self._load_owned_post(post_id, client_id)
            details = _holder_details(current)
            details["can_force_end"] = True
            raise Forbidden("Cannot end editing session started by another user", details=details)

        self._repository.commit()
        logger.info(
            "editing_session_ended",
            post_id=post_id,
            actor_id=actor_id,
            forced=force and post.currently_editing_by != actor_id,
        )

    def status(
        self,
        post_id: str,
        client_id: str,
        *,
        now: datetime | None = None,
    ) -> EditingSessionStatus:
        reference = now or utc_now()
        post = self._repository.get_post(post_id)
        if post.client_id != client_id:
            raise NotFound("Post not found", details={"post_id": post_id})

        active = lock_is_active(post, now=reference, ttl=self._ttl)
        return EditingSessionStatus(
            post_id=post.id,
            is_active=active,
            holder=post.currently_editing_by if active else None,
            lock_started_at=normalize_optional_dt(post.editing_started_at),
            last_modified_at=normalize_optional_dt(post.last_modified_at),
            can_edit=is_editable_status(post.status),
            status=post.status,
        )
