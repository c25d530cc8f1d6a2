"""Publishing API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from src.auth.dependencies import require_auth_context, require_cron_secret
from src.auth.jwt import AuthContext
from src.clients.service import client_repository
from src.integrations.late.client import LateClient, PlatformAccount, get_late_client
from src.publishing.locks import PublishRunLockManager
from src.publishing.pipeline import PublishOutcome, PublishingPipeline, get_publish_run_lock_manager
from src.schemas.publishing import (
    ConfirmPublishedRequest,
    ConfirmPublishedResponse,
    PublishOutcomeResponse,
    ReconcileResponse,
    ScheduleBatchRequest,
    ScheduleBatchResponse,
)
from src.storage.db import get_session
from src.storage.repository import ContentRepository


router = APIRouter(prefix="/publishing", tags=["publishing"])


def _outcome_response(outcome: PublishOutcome) -> PublishOutcomeResponse:
    return PublishOutcomeResponse(
        post_id=outcome.post_id,
        status=outcome.status,
        remote_job_id=outcome.remote_job_id,
        error_code=outcome.error_code,
        message=outcome.message,
        run_id=outcome.run_id,
    )


@router.post("/schedule", response_model=ScheduleBatchResponse)
def schedule_posts(
    payload: ScheduleBatchRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
    gateway: LateClient = Depends(get_late_client),
    lock_manager: PublishRunLockManager = Depends(get_publish_run_lock_manager),
) -> ScheduleBatchResponse:
    repo = client_repository(session, client_id=payload.client_id, user_id=auth.user_id)
    pipeline = PublishingPipeline(repo, gateway, lock_manager=lock_manager)
    summary = pipeline.schedule_batch(
        client_id=payload.client_id,
        post_ids=payload.post_ids,
        account=PlatformAccount(platform=payload.account.platform, account_id=payload.account.account_id),
        caption_overrides=payload.caption_overrides,
    )
    return ScheduleBatchResponse(
        succeeded=summary.succeeded,
        failed=summary.failed,
        partial=summary.partial,
        counts=summary.counts,
        outcomes=[_outcome_response(outcome) for outcome in summary.outcomes],
    )


@router.post("/confirm", response_model=ConfirmPublishedResponse)
def confirm_published(
    payload: ConfirmPublishedRequest,
    _secret: None = Depends(require_cron_secret),
    session: Session = Depends(get_session),
    gateway: LateClient = Depends(get_late_client),
) -> ConfirmPublishedResponse:
    pipeline = PublishingPipeline(ContentRepository(session), gateway)
    post = pipeline.confirm_published(post_id=payload.post_id, remote_job_id=payload.remote_job_id)
    return ConfirmPublishedResponse(post_id=post.id, status=post.status, external_status=post.external_status)


@router.post("/reconcile", response_model=ReconcileResponse)
def reconcile_partial_runs(
    limit: int = Query(default=50, ge=1, le=500),
    _secret: None = Depends(require_cron_secret),
    session: Session = Depends(get_session),
    gateway: LateClient = Depends(get_late_client),
    lock_manager: PublishRunLockManager = Depends(get_publish_run_lock_manager),
) -> ReconcileResponse:
    pipeline = PublishingPipeline(ContentRepository(session), gateway, lock_manager=lock_manager)
    outcomes = pipeline.reconcile_partial_runs(limit=limit)
    return ReconcileResponse(processed=len(outcomes), outcomes=[_outcome_response(outcome) for outcome in outcomes])
