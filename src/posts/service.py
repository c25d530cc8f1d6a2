"""Post lifecycle application services: drafts, edits, approval, status and calendar."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional

from src.core.errors import Forbidden, ValidationError
from src.core.logger import get_logger
from src.core.timeutils import utc_now
from src.editing.sessions import default_lock_ttl, ensure_not_locked_by_other
from src.posts.lifecycle import (
    APPROVAL_APPROVED,
    APPROVAL_DRAFT,
    STATUS_DRAFT,
    STATUS_READY,
    STATUS_SCHEDULED,
    TERMINAL_STATUSES,
    ensure_approval_decision,
    ensure_editable,
    ensure_transition,
)
from src.storage.models import Post, PostRevision, ScheduledPost
from src.storage.repository import ContentRepository


logger = get_logger("postpilot.posts.service")

_EDITABLE_FIELDS = ("caption", "media_reference", "notes")


def _require_caption(caption: Optional[str]) -> str:
    if not (caption or "").strip():
        raise ValidationError("Caption cannot be empty", details={"field": "caption"})
    return str(caption)


def get_owned_post(repo: ContentRepository, post_id: str, client_id: str) -> Post:
    post = repo.get_post(post_id)
    if post.client_id != client_id:
        raise Forbidden(
            "Unauthorized: Post does not belong to this client",
            details={"post_id": post_id},
        )
    return post


def create_draft(
    repo: ContentRepository,
    *,
    client_id: str,
    caption: str,
    actor_id: str,
    media_reference: Optional[str] = None,
    notes: Optional[str] = None,
    project_id: Optional[str] = None,
) -> Post:
    repo.get_client(client_id)
    now = utc_now()
    post = repo.insert_post(
        client_id=client_id,
        project_id=project_id,
        caption=_require_caption(caption),
        media_reference=media_reference,
        notes=notes,
        status=STATUS_DRAFT,
        approval_status=APPROVAL_DRAFT,
        last_modified_at=now,
        created_at=now,
        updated_at=now,
    )
    repo.commit()
    logger.info("post_draft_created", post_id=post.id, client_id=client_id, actor_id=actor_id)
    return post


def edit_post(
    repo: ContentRepository,
    *,
    post_id: str,
    client_id: str,
    actor_id: str,
    changes: Dict[str, Any],
    edit_reason: Optional[str] = None,
    force: bool = False,
    save_as_draft: bool = False,
    now: datetime | None = None,
    lock_ttl: timedelta | None = None,
) -> Post:
    """Apply caption/media/notes changes to an editable post.

    With ``save_as_draft`` the changes are parked in ``draft_changes`` and the
    committed fields are left alone. A committed edit refreshes the editor's
    lock, records a revision and, for approved posts, flags re-approval.
    """

    reference = now or utc_now()
    post = get_owned_post(repo, post_id, client_id)
    ensure_editable(post.status, operation="edit")
    ensure_not_locked_by_other(
        post,
        actor_id=actor_id,
        now=reference,
        ttl=lock_ttl if lock_ttl is not None else default_lock_ttl(),
        force=force,
    )

    patch = {key: changes[key] for key in _EDITABLE_FIELDS if key in changes}
    if "caption" in patch:
        patch["caption"] = _require_caption(patch["caption"])

    if save_as_draft:
        overlay = dict(post.draft_changes)
        overlay.update(patch)
        updated = repo.update_post(
            post_id,
            {"draft_changes": overlay, "last_modified_at": reference},
            now=reference,
        )
        repo.commit()
        logger.info("post_draft_changes_saved", post_id=post_id, actor_id=actor_id, fields=sorted(patch))
        return updated

    changed_fields = sorted(key for key, value in patch.items() if getattr(post, key) != value)
    previous_caption = post.caption

    values: Dict[str, Any] = dict(patch)
    values.update(
        {
            "edit_count": int(post.edit_count or 0) + 1,
            "last_edited_at": reference,
            "last_edited_by": actor_id,
            "last_modified_at": reference,
            "currently_editing_by": actor_id,
            "editing_started_at": reference,
            "draft_changes": {},
        }
    )
    if post.approval_status == APPROVAL_APPROVED and changed_fields:
        values["needs_reapproval"] = True
        if post.original_caption is None:
            values["original_caption"] = previous_caption

    updated = repo.update_post(post_id, values, now=reference)
    repo.insert_revision(
        post_id=post_id,
        client_id=client_id,
        edited_by=actor_id,
        previous_caption=previous_caption,
        new_caption=updated.caption,
        changed_fields=changed_fields,
        edit_reason=edit_reason,
        created_at=reference,
    )
    repo.commit()
    logger.info(
        "post_edited",
        post_id=post_id,
        actor_id=actor_id,
        changed_fields=changed_fields,
        needs_reapproval=bool(updated.needs_reapproval),
        forced=force,
    )
    return updated


def set_approval(
    repo: ContentRepository,
    *,
    post_id: str,
    client_id: str,
    decision: str,
    actor_id: str,
) -> Post:
    normalized = ensure_approval_decision(decision)
    post = get_owned_post(repo, post_id, client_id)
    now = utc_now()

    patch: Dict[str, Any] = {"approval_status": normalized}
    if normalized == APPROVAL_APPROVED:
        patch.update({"needs_reapproval": False, "original_caption": None, "approved_at": now})

    updated = repo.update_post(post.id, patch, now=now)
    repo.commit()
    logger.info("post_approval_set", post_id=post_id, actor_id=actor_id, decision=normalized)
    return updated


def change_status(
    repo: ContentRepository,
    *,
    post_id: str,
    client_id: str,
    target: str,
    now: datetime | None = None,
) -> Post:
    reference = now or utc_now()
    post = get_owned_post(repo, post_id, client_id)
    current = post.status
    ensure_transition(current, target)

    patch: Dict[str, Any] = {"status": target, "last_modified_at": reference}
    if target in TERMINAL_STATUSES:
        patch.update({"currently_editing_by": None, "editing_started_at": None})

    # status guard keeps a concurrent transition from being overwritten
    updated = repo.update_post(
        post_id,
        patch,
        conditions=[Post.status == current],
        now=reference,
    )
    repo.commit()
    logger.info("post_status_changed", post_id=post_id, previous_status=current, status=target)
    return updated


def schedule_to_calendar(
    repo: ContentRepository,
    *,
    post_id: str,
    client_id: str,
    scheduled_date: date,
    scheduled_time: time,
) -> ScheduledPost:
    post = get_owned_post(repo, post_id, client_id)
    ensure_editable(post.status, operation="schedule")
    now = utc_now()

    patch: Dict[str, Any] = {
        "scheduled_date": scheduled_date,
        "scheduled_time": scheduled_time,
        "last_modified_at": now,
    }
    if post.status in (STATUS_DRAFT, STATUS_READY):
        patch["status"] = STATUS_SCHEDULED
    updated = repo.update_post(post_id, patch, now=now)

    scheduled = repo.insert_scheduled_post(
        post_id=updated.id,
        client_id=client_id,
        caption=updated.caption,
        media_reference=updated.media_reference,
        scheduled_date=scheduled_date,
        scheduled_time=scheduled_time,
        account_ids=[],
        status=STATUS_SCHEDULED,
        created_at=now,
    )
    repo.commit()
    logger.info(
        "post_added_to_calendar",
        post_id=post_id,
        scheduled_post_id=scheduled.id,
        scheduled_date=scheduled_date.isoformat(),
    )
    return scheduled


def list_revisions(repo: ContentRepository, *, post_id: str, client_id: str) -> List[PostRevision]:
    get_owned_post(repo, post_id, client_id)
    return repo.list_revisions(post_id)
