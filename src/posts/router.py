"""Post lifecycle API routes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from src.auth.dependencies import get_bearer_token, require_auth_context
from src.auth.jwt import AuthContext
from src.billing.quota import KIND_POSTS, QuotaGate
from src.clients.service import client_repository
from src.core.timeutils import isoformat_or_none
from src.posts.service import (
    change_status,
    create_draft,
    edit_post,
    get_owned_post,
    list_revisions,
    schedule_to_calendar,
    set_approval,
)
from src.schemas.posts import (
    ApprovalRequest,
    CalendarScheduleRequest,
    PostCreateRequest,
    PostEditRequest,
    PostResponse,
    RevisionListResponse,
    RevisionResponse,
    ScheduledPostResponse,
    StatusChangeRequest,
)
from src.storage.db import get_session
from src.storage.models import Post


router = APIRouter(prefix="/posts", tags=["posts"])


def post_to_response(post: Post) -> PostResponse:
    return PostResponse(
        id=post.id,
        client_id=post.client_id,
        project_id=post.project_id,
        caption=post.caption,
        media_reference=post.media_reference,
        notes=post.notes,
        status=post.status,
        approval_status=post.approval_status,
        needs_reapproval=bool(post.needs_reapproval),
        original_caption=post.original_caption,
        currently_editing_by=post.currently_editing_by,
        editing_started_at=isoformat_or_none(post.editing_started_at),
        scheduled_date=post.scheduled_date,
        scheduled_time=post.scheduled_time,
        platforms_scheduled=post.platforms_scheduled,
        external_status=post.external_status,
        external_post_id=post.external_post_id,
        has_draft_changes=bool(post.draft_changes),
        edit_count=int(post.edit_count or 0),
        last_edited_at=isoformat_or_none(post.last_edited_at),
        last_edited_by=post.last_edited_by,
    )


@router.post("", response_model=PostResponse, status_code=201)
def create_post(
    payload: PostCreateRequest,
    auth: AuthContext = Depends(require_auth_context),
    token: Optional[str] = Depends(get_bearer_token),
    session: Session = Depends(get_session),
) -> PostResponse:
    repo = client_repository(session, client_id=payload.client_id, user_id=auth.user_id)
    post = QuotaGate(repo).run_metered(
        token,
        KIND_POSTS,
        lambda actor_id: create_draft(
            repo,
            client_id=payload.client_id,
            caption=payload.caption,
            actor_id=actor_id,
            media_reference=payload.media_reference,
            notes=payload.notes,
            project_id=payload.project_id,
        ),
        action_type="post_created",
        client_id=payload.client_id,
    )
    return post_to_response(post)


@router.get("/{post_id}", response_model=PostResponse)
def get_post(
    post_id: str,
    client_id: str = Query(min_length=1, max_length=36),
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> PostResponse:
    repo = client_repository(session, client_id=client_id, user_id=auth.user_id)
    return post_to_response(get_owned_post(repo, post_id, client_id))


@router.patch("/{post_id}", response_model=PostResponse)
def update_post(
    post_id: str,
    payload: PostEditRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> PostResponse:
    changes = payload.model_dump(include={"caption", "media_reference", "notes"}, exclude_unset=True)
    post = edit_post(
        client_repository(session, client_id=payload.client_id, user_id=auth.user_id),
        post_id=post_id,
        client_id=payload.client_id,
        actor_id=auth.user_id,
        changes=changes,
        edit_reason=payload.edit_reason,
        force=payload.force,
        save_as_draft=payload.save_as_draft,
    )
    return post_to_response(post)


@router.post("/{post_id}/approval", response_model=PostResponse)
def approve_post(
    post_id: str,
    payload: ApprovalRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> PostResponse:
    post = set_approval(
        client_repository(session, client_id=payload.client_id, user_id=auth.user_id),
        post_id=post_id,
        client_id=payload.client_id,
        decision=payload.decision,
        actor_id=auth.user_id,
    )
    return post_to_response(post)


@router.post("/{post_id}/status", response_model=PostResponse)
def update_post_status(
    post_id: str,
    payload: StatusChangeRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> PostResponse:
    post = change_status(
        client_repository(session, client_id=payload.client_id, user_id=auth.user_id),
        post_id=post_id,
        client_id=payload.client_id,
        target=payload.status,
    )
    return post_to_response(post)


@router.post("/{post_id}/calendar", response_model=ScheduledPostResponse, status_code=201)
def add_post_to_calendar(
    post_id: str,
    payload: CalendarScheduleRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> ScheduledPostResponse:
    scheduled = schedule_to_calendar(
        client_repository(session, client_id=payload.client_id, user_id=auth.user_id),
        post_id=post_id,
        client_id=payload.client_id,
        scheduled_date=payload.scheduled_date,
        scheduled_time=payload.scheduled_time,
    )
    return ScheduledPostResponse(
        id=scheduled.id,
        post_id=scheduled.post_id,
        client_id=scheduled.client_id,
        caption=scheduled.caption,
        media_reference=scheduled.media_reference,
        scheduled_date=scheduled.scheduled_date,
        scheduled_time=scheduled.scheduled_time,
        status=scheduled.status,
    )


@router.get("/{post_id}/revisions", response_model=RevisionListResponse)
def get_post_revisions(
    post_id: str,
    client_id: str = Query(min_length=1, max_length=36),
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> RevisionListResponse:
    revisions = list_revisions(
        client_repository(session, client_id=client_id, user_id=auth.user_id),
        post_id=post_id,
        client_id=client_id,
    )
    return RevisionListResponse(
        post_id=post_id,
        revisions=[
            RevisionResponse(
                id=revision.id,
                edited_by=revision.edited_by,
                previous_caption=revision.previous_caption,
                new_caption=revision.new_caption,
                changed_fields=revision.changed_fields,
                edit_reason=revision.edit_reason,
                created_at=isoformat_or_none(revision.created_at),
            )
            for revision in revisions
        ],
    )
