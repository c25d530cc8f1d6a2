"""Multi-stage publishing pipeline: precondition, media staging, remote scheduling, persistence.

Each (post, platform account) pair gets a ``publish_runs`` record that
captures the stage reached and the remote ids collected so far, so a retry
resumes from the last completed stage instead of re-sending to the gateway.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, time as time_of_day
from functools import lru_cache
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from src.core.config import get_settings
from src.core.errors import Conflict, InvalidState, NotFound, PostPilotError, UpstreamError, ValidationError
from src.core.logger import get_logger
from src.core.metrics import record_publish_outcome
from src.core.observability import capture_exception
from src.integrations.late.client import LateClientError, PlatformAccount
from src.media.loader import LoadedMedia, MediaLoadError, load_media
from src.posts.lifecycle import STATUS_DRAFT, STATUS_PUBLISHED, STATUS_READY, STATUS_SCHEDULED, ensure_editable
from src.posts.service import get_owned_post
from src.publishing.locks import PublishRunLockHandle, PublishRunLockManager, RunPair
from src.storage.models import Post, PublishRun
from src.storage.repository import ContentRepository


logger = get_logger("postpilot.publishing.pipeline")

STAGE_PRECONDITION = "precondition"
STAGE_MEDIA_STAGING = "media_staging"
STAGE_REMOTE_SCHEDULING = "remote_scheduling"
STAGE_PERSISTENCE = "persistence"

RUN_RUNNING = "running"
RUN_SUCCEEDED = "succeeded"
RUN_FAILED = "failed"
RUN_PARTIAL = "partial"

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_PARTIAL = "partial"

EXTERNAL_STATUS_SCHEDULED = "scheduled"
EXTERNAL_STATUS_PUBLISHED = "published"

_GATEWAY_ERRORS = (LateClientError, MediaLoadError)
_MERGE_ATTEMPTS = 3


class PlatformGateway(Protocol):
    def upload_media(self, content: bytes, mime_type: str, *, filename: str = "media") -> str:
        raise NotImplementedError

    def create_scheduled_job(
        self,
        *,
        media_url: str,
        caption: str,
        account: PlatformAccount,
        when_local: str,
    ) -> str:
        raise NotImplementedError


@dataclass(frozen=True)
class PublishOutcome:
    post_id: str
    status: str
    remote_job_id: Optional[str] = None
    error_code: Optional[str] = None
    message: str = ""
    run_id: Optional[str] = None


@dataclass(frozen=True)
class BatchSummary:
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    partial: List[str] = field(default_factory=list)
    outcomes: List[PublishOutcome] = field(default_factory=list)

    @property
    def counts(self) -> Dict[str, int]:
        return {
            OUTCOME_SUCCEEDED: len(self.succeeded),
            OUTCOME_FAILED: len(self.failed),
            OUTCOME_PARTIAL: len(self.partial),
        }


def resolve_caption(post: Post, override: Optional[str] = None) -> str:
    """Caption the gateway would receive: request override, then unsaved draft, then saved caption."""

    if override is not None:
        return override
    draft_caption = post.draft_changes.get("caption")
    if isinstance(draft_caption, str):
        return draft_caption
    return post.caption or ""


def resolve_media_reference(post: Post) -> Optional[str]:
    draft_media = post.draft_changes.get("media_reference")
    if isinstance(draft_media, str) and draft_media.strip():
        return draft_media
    return post.media_reference


def format_when_local(scheduled_date: date, scheduled_time: time_of_day) -> str:
    return f"{scheduled_date.isoformat()}T{scheduled_time.strftime('%H:%M:%S')}"


class PublishingPipeline:
    def __init__(
        self,
        repository: ContentRepository,
        gateway: PlatformGateway,
        *,
        lock_manager: Optional[PublishRunLockManager] = None,
        media_loader: Callable[[Optional[str]], LoadedMedia] = load_media,
        batch_delay_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        settings = get_settings()
        self._repository = repository
        self._gateway = gateway
        self._lock_manager = lock_manager
        self._media_loader = media_loader
        self._batch_delay_seconds = (
            settings.publish_batch_delay_seconds if batch_delay_seconds is None else max(batch_delay_seconds, 0.0)
        )
        self._sleep = sleep

    # guard

    def _acquire_guard(self, post_id: str, account: PlatformAccount) -> Optional[PublishRunLockHandle]:
        if self._lock_manager is None:
            return None
        try:
            handle = self._lock_manager.acquire(RunPair(post_id, account.account_id))
        except RedisError as exc:
            logger.warning("publish_guard_unavailable", post_id=post_id, account_id=account.account_id, error=str(exc))
            return None
        if handle is None:
            raise Conflict(
                "A publish run for this post and account is already in progress",
                details={"post_id": post_id, "account_id": account.account_id},
            )
        return handle

    def _release_guard(self, handle: Optional[PublishRunLockHandle]) -> None:
        if handle is None:
            return
        try:
            handle.release()
        except RedisError as exc:
            logger.warning("publish_guard_release_failed", post_id=handle.pair.post_id, error=str(exc))

    def _extend_guard(self, handle: Optional[PublishRunLockHandle]) -> None:
        if handle is None:
            return
        try:
            kept = handle.extend()
        except RedisError as exc:
            logger.warning("publish_guard_extend_failed", post_id=handle.pair.post_id, error=str(exc))
            return
        if not kept:
            logger.warning(
                "publish_guard_lost",
                post_id=handle.pair.post_id,
                account_id=handle.pair.account_id,
            )

    # run checkpoints

    def _new_run(self, post_id: str, client_id: str, account: PlatformAccount, *, stage: str) -> PublishRun:
        return PublishRun(
            post_id=post_id,
            client_id=client_id,
            account_id=account.account_id,
            platform=account.platform,
            stage_reached=stage,
            status=RUN_RUNNING,
            attempts=1,
        )

    def _checkpoint(
        self,
        run: Optional[PublishRun],
        post: Post,
        account: PlatformAccount,
        *,
        stage: str,
        status: str = RUN_RUNNING,
        remote_media_url: Optional[str] = None,
        remote_job_id: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Optional[PublishRun]:
        """Persist run progress in its own transaction; a failed write only loses resumability."""

        post_id = post.id
        try:
            record = run if run is not None else self._new_run(post_id, post.client_id, account, stage=stage)
            record.stage_reached = stage
            record.status = status
            if remote_media_url is not None:
                record.remote_media_url = remote_media_url
                record.staged_media_reference = resolve_media_reference(post)
            if remote_job_id is not None:
                record.remote_job_id = remote_job_id
            record.error_message = error_message[:255] if error_message else None
            self._repository.save_publish_run(record)
            self._repository.commit()
            return record
        except SQLAlchemyError as exc:
            self._repository.rollback()
            logger.warning(
                "publish_checkpoint_failed",
                post_id=post_id,
                account_id=account.account_id,
                stage=stage,
                error=str(exc),
            )
            return None

    # stages

    def _check_preconditions(self, post: Post, caption: str) -> str:
        ensure_editable(post.status, operation="publish")
        if not caption.strip():
            raise ValidationError(
                "Caption cannot be empty",
                details={"post_id": post.id, "stage": STAGE_PRECONDITION},
            )
        if post.scheduled_date is None or post.scheduled_time is None:
            raise ValidationError(
                "Post has no scheduled date and time",
                details={"post_id": post.id, "stage": STAGE_PRECONDITION},
            )
        return format_when_local(post.scheduled_date, post.scheduled_time)

    def _reusable_media_url(self, run: Optional[PublishRun], post: Post) -> Optional[str]:
        if run is None or not run.remote_media_url:
            return None
        if run.staged_media_reference != resolve_media_reference(post):
            logger.info("publish_media_changed_since_staging", post_id=post.id, run_id=run.id)
            return None
        return run.remote_media_url

    def _stage_media(self, post: Post) -> str:
        try:
            media = self._media_loader(resolve_media_reference(post))
            return self._gateway.upload_media(media.content, media.mime_type, filename=media.filename)
        except _GATEWAY_ERRORS as exc:
            logger.warning("publish_media_staging_failed", post_id=post.id, error=str(exc))
            raise UpstreamError(
                "Media upload to the platform gateway failed",
                details={"post_id": post.id, "stage": STAGE_MEDIA_STAGING, "error": str(exc)},
            ) from exc

    def _merge_scheduled_platform(self, post_id: str, account: PlatformAccount, *, remote_job_id: str) -> Post:
        """Add the platform to ``platforms_scheduled`` without losing a concurrent run's entry.

        The write only lands while the list and status still match what was read;
        otherwise the row is re-read and the merge retried.
        """

        for attempt in range(1, _MERGE_ATTEMPTS + 1):
            current = self._repository.get_post(post_id)
            platforms = current.platforms_scheduled
            if account.platform not in platforms:
                platforms.append(account.platform)

            patch: Dict[str, Any] = {
                "external_status": EXTERNAL_STATUS_SCHEDULED,
                "external_post_id": remote_job_id,
                "platforms_scheduled": platforms,
            }
            if current.status in (STATUS_DRAFT, STATUS_READY):
                patch["status"] = STATUS_SCHEDULED
            try:
                return self._repository.update_post(
                    post_id,
                    patch,
                    conditions=[
                        Post.platforms_scheduled_json == current.platforms_scheduled_json,
                        Post.status == current.status,
                    ],
                )
            except NotFound:
                logger.info("publish_platform_merge_retry", post_id=post_id, attempt=attempt)
        raise Conflict(
            "Post changed concurrently while recording the scheduled platform",
            details={"post_id": post_id, "account_id": account.account_id},
        )

    def _persist(
        self,
        post: Post,
        run: Optional[PublishRun],
        account: PlatformAccount,
        *,
        remote_job_id: str,
        caption: str,
    ) -> PublishOutcome:
        post_id = post.id
        client_id = post.client_id
        run_id = run.id if run is not None else None
        try:
            current = self._merge_scheduled_platform(post_id, account, remote_job_id=remote_job_id)

            if self._repository.find_scheduled_post_by_external_id(remote_job_id) is None:
                self._repository.insert_scheduled_post(
                    post_id=current.id,
                    client_id=current.client_id,
                    caption=caption,
                    media_reference=resolve_media_reference(current),
                    scheduled_date=current.scheduled_date,
                    scheduled_time=current.scheduled_time,
                    account_ids=[account.account_id],
                    status=EXTERNAL_STATUS_SCHEDULED,
                    external_post_id=remote_job_id,
                )

            record = run if run is not None else self._new_run(post_id, client_id, account, stage=STAGE_PERSISTENCE)
            record.stage_reached = STAGE_PERSISTENCE
            record.status = RUN_SUCCEEDED
            record.remote_job_id = remote_job_id
            record.error_message = None
            self._repository.save_publish_run(record)
            self._repository.commit()
        except (SQLAlchemyError, PostPilotError) as exc:
            self._repository.rollback()
            logger.error(
                "publish_persistence_failed",
                post_id=post_id,
                account_id=account.account_id,
                remote_job_id=remote_job_id,
                error=str(exc),
            )
            capture_exception(exc, post_id=post_id, account_id=account.account_id, remote_job_id=remote_job_id)
            partial_run_id = self._record_partial(
                post_id,
                client_id,
                account,
                run_id=run_id,
                remote_job_id=remote_job_id,
                error=str(exc),
            )
            record_publish_outcome(platform=account.platform, status=OUTCOME_PARTIAL)
            return PublishOutcome(
                post_id=post_id,
                status=OUTCOME_PARTIAL,
                remote_job_id=remote_job_id,
                error_code="persistence_failed",
                message="Scheduled remotely but the local record was not updated",
                run_id=partial_run_id,
            )

        record_publish_outcome(platform=account.platform, status=OUTCOME_SUCCEEDED)
        logger.info(
            "publish_scheduled",
            post_id=post_id,
            account_id=account.account_id,
            platform=account.platform,
            remote_job_id=remote_job_id,
        )
        return PublishOutcome(
            post_id=post_id,
            status=OUTCOME_SUCCEEDED,
            remote_job_id=remote_job_id,
            message="Scheduled",
            run_id=record.id,
        )

    def _record_partial(
        self,
        post_id: str,
        client_id: str,
        account: PlatformAccount,
        *,
        run_id: Optional[str],
        remote_job_id: str,
        error: str,
    ) -> Optional[str]:
        try:
            record: Optional[PublishRun] = None
            if run_id is not None:
                try:
                    record = self._repository.get_publish_run(run_id)
                except NotFound:
                    record = None
            if record is None:
                record = self._new_run(post_id, client_id, account, stage=STAGE_PERSISTENCE)
            record.stage_reached = STAGE_PERSISTENCE
            record.status = RUN_PARTIAL
            record.remote_job_id = remote_job_id
            record.error_message = error[:255]
            self._repository.save_publish_run(record)
            self._repository.commit()
            return record.id
        except SQLAlchemyError as exc:
            self._repository.rollback()
            logger.error(
                "publish_partial_record_failed",
                post_id=post_id,
                account_id=account.account_id,
                remote_job_id=remote_job_id,
                error=str(exc),
            )
            capture_exception(exc, post_id=post_id, account_id=account.account_id, remote_job_id=remote_job_id)
            return None

    # public operations

    def schedule_post(
        self,
        *,
        post_id: str,
        client_id: str,
        account: PlatformAccount,
        caption_override: Optional[str] = None,
    ) -> PublishOutcome:
        """Run the pipeline for one post and account.

        Raises ValidationError, NotFound, Forbidden, InvalidState, Conflict or
        UpstreamError for failed runs. A remote job that could not be recorded
        locally is returned as a ``partial`` outcome, never raised.
        """

        handle = self._acquire_guard(post_id, account)
        try:
            return self._run(
                post_id=post_id,
                client_id=client_id,
                account=account,
                caption_override=caption_override,
                guard=handle,
            )
        finally:
            self._release_guard(handle)

    def _run(
        self,
        *,
        post_id: str,
        client_id: str,
        account: PlatformAccount,
        caption_override: Optional[str],
        guard: Optional[PublishRunLockHandle] = None,
    ) -> PublishOutcome:
        post = get_owned_post(self._repository, post_id, client_id)
        caption = resolve_caption(post, caption_override)
        when_local = self._check_preconditions(post, caption)

        run = self._repository.latest_publish_run(post_id, account.account_id)
        if run is not None and run.status == RUN_SUCCEEDED:
            raise Conflict(
                "Post is already scheduled for this account",
                details={"post_id": post_id, "account_id": account.account_id, "remote_job_id": run.remote_job_id},
            )
        if run is not None and run.remote_job_id:
            run.attempts = int(run.attempts or 0) + 1
            logger.info("publish_resume_persistence", post_id=post_id, run_id=run.id, remote_job_id=run.remote_job_id)
            return self._persist(post, run, account, remote_job_id=run.remote_job_id, caption=caption)

        media_url = self._reusable_media_url(run, post)
        if media_url:
            logger.info("publish_resume_remote_scheduling", post_id=post_id, run_id=run.id)
        else:
            media_url = self._stage_media(post)
            self._extend_guard(guard)
        if run is not None:
            run.attempts = int(run.attempts or 0) + 1
        run = self._checkpoint(run, post, account, stage=STAGE_MEDIA_STAGING, remote_media_url=media_url)

        try:
            remote_job_id = self._gateway.create_scheduled_job(
                media_url=media_url,
                caption=caption,
                account=account,
                when_local=when_local,
            )
        except LateClientError as exc:
            run = self._checkpoint(
                run,
                post,
                account,
                stage=STAGE_REMOTE_SCHEDULING,
                status=RUN_FAILED,
                remote_media_url=media_url,
                error_message=str(exc),
            )
            logger.warning("publish_remote_scheduling_failed", post_id=post_id, account_id=account.account_id, error=str(exc))
            raise UpstreamError(
                "Remote scheduling on the platform gateway failed",
                details={
                    "post_id": post_id,
                    "stage": STAGE_REMOTE_SCHEDULING,
                    "run_id": run.id if run is not None else None,
                    "error": str(exc),
                },
            ) from exc

        run = self._checkpoint(run, post, account, stage=STAGE_REMOTE_SCHEDULING, remote_job_id=remote_job_id)
        return self._persist(post, run, account, remote_job_id=remote_job_id, caption=caption)

    def schedule_batch(
        self,
        *,
        client_id: str,
        post_ids: Sequence[str],
        account: PlatformAccount,
        caption_overrides: Optional[Mapping[str, str]] = None,
    ) -> BatchSummary:
        overrides = dict(caption_overrides or {})
        summary = BatchSummary()
        for index, post_id in enumerate(post_ids):
            if index > 0 and self._batch_delay_seconds > 0:
                self._sleep(self._batch_delay_seconds)
            try:
                outcome = self.schedule_post(
                    post_id=post_id,
                    client_id=client_id,
                    account=account,
                    caption_override=overrides.get(post_id),
                )
            except PostPilotError as exc:
                record_publish_outcome(platform=account.platform, status=OUTCOME_FAILED)
                outcome = PublishOutcome(
                    post_id=post_id,
                    status=OUTCOME_FAILED,
                    error_code=exc.code,
                    message=str(exc),
                    run_id=exc.details.get("run_id"),
                )
            except Exception as exc:
                self._repository.rollback()
                logger.exception("publish_batch_item_crashed", post_id=post_id)
                capture_exception(exc, post_id=post_id, account_id=account.account_id)
                record_publish_outcome(platform=account.platform, status=OUTCOME_FAILED)
                outcome = PublishOutcome(
                    post_id=post_id,
                    status=OUTCOME_FAILED,
                    error_code="internal_error",
                    message="Unexpected publishing failure",
                )

            summary.outcomes.append(outcome)
            if outcome.status == OUTCOME_SUCCEEDED:
                summary.succeeded.append(post_id)
            elif outcome.status == OUTCOME_PARTIAL:
                summary.partial.append(post_id)
            else:
                summary.failed.append(post_id)

        logger.info(
            "publish_batch_completed",
            client_id=client_id,
            account_id=account.account_id,
            **summary.counts,
        )
        return summary

    def reconcile_partial_runs(self, *, limit: int = 50) -> List[PublishOutcome]:
        """Retry local persistence for runs whose remote job exists but was never recorded."""

        outcomes: List[PublishOutcome] = []
        for run in self._repository.list_publish_runs(status=RUN_PARTIAL, limit=limit):
            if not run.remote_job_id:
                continue
            account = PlatformAccount(platform=run.platform, account_id=run.account_id)
            try:
                handle = self._acquire_guard(run.post_id, account)
            except Conflict:
                continue
            try:
                post = self._repository.get_post(run.post_id)
                run.attempts = int(run.attempts or 0) + 1
                outcome = self._persist(
                    post,
                    run,
                    account,
                    remote_job_id=run.remote_job_id,
                    caption=resolve_caption(post),
                )
            finally:
                self._release_guard(handle)
            outcomes.append(outcome)

        logger.info(
            "publish_reconcile_completed",
            processed=len(outcomes),
            succeeded=sum(1 for outcome in outcomes if outcome.status == OUTCOME_SUCCEEDED),
        )
        return outcomes

    def confirm_published(self, *, post_id: str, remote_job_id: str, client_id: Optional[str] = None) -> Post:
        """Mark a scheduled post as published once the gateway reports the job went live."""

        log_entry = self._repository.find_scheduled_post_by_external_id(remote_job_id)
        if log_entry is None or log_entry.post_id != post_id:
            raise NotFound(
                "No scheduled job recorded for this post",
                details={"post_id": post_id, "remote_job_id": remote_job_id},
            )
        post = get_owned_post(self._repository, post_id, client_id) if client_id else self._repository.get_post(post_id)
        if post.status == STATUS_PUBLISHED:
            return post
        if post.status != STATUS_SCHEDULED:
            raise InvalidState(
                "Only scheduled posts can be confirmed as published",
                details={"current_status": post.status, "post_id": post_id},
            )

        updated = self._repository.update_post(
            post_id,
            {
                "status": STATUS_PUBLISHED,
                "external_status": EXTERNAL_STATUS_PUBLISHED,
                "currently_editing_by": None,
                "editing_started_at": None,
            },
            conditions=[Post.status == STATUS_SCHEDULED],
        )
        log_entry.status = EXTERNAL_STATUS_PUBLISHED
        self._repository.commit()
        logger.info("publish_confirmed", post_id=post_id, remote_job_id=remote_job_id)
        return updated


@lru_cache(maxsize=1)
def get_publish_run_lock_manager() -> PublishRunLockManager:
    from src.storage.redis_client import get_client

    return PublishRunLockManager(get_client(), ttl_seconds=get_settings().publish_run_lock_ttl_seconds)
