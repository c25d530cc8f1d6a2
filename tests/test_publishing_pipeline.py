from __future__ import annotations

from datetime import date, time
import uuid

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import create_engine, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import Session, sessionmaker

from src.core.errors import Conflict, InvalidState, NotFound, UpstreamError, ValidationError
from src.core.metrics import render_prometheus_metrics, reset_metrics_for_tests
from src.integrations.late.client import LateClientError, PlatformAccount
from src.media.loader import LoadedMedia, MediaLoadError
from src.posts.service import change_status
from src.publishing.locks import PublishRunLockManager, RunPair
from src.publishing.pipeline import PublishingPipeline
from src.storage.db import Base, load_models
from src.storage.models import Client, Post, PublishRun, ScheduledPost, User
from src.storage.repository import ContentRepository


ACCOUNT = PlatformAccount(platform="instagram", account_id="acct-ig-1")


class _FakeGateway:
    def __init__(self, *, fail_captions: tuple[str, ...] = (), fail_upload: bool = False) -> None:
        self.fail_captions = set(fail_captions)
        self.fail_upload = fail_upload
        self.upload_calls: list[str] = []
        self.schedule_calls: list[dict[str, str]] = []

    def upload_media(self, content: bytes, mime_type: str, *, filename: str = "media") -> str:
        del content
        self.upload_calls.append(mime_type)
        if self.fail_upload:
            raise LateClientError("late_request_failed status=500 detail=upload down")
        return f"https://media.example/{filename}-{len(self.upload_calls)}"

    def create_scheduled_job(self, *, media_url: str, caption: str, account: PlatformAccount, when_local: str) -> str:
        self.schedule_calls.append(
            {"media_url": media_url, "caption": caption, "account_id": account.account_id, "when_local": when_local}
        )
        if caption in self.fail_captions:
            raise LateClientError("late_request_failed status=503 detail=try later")
        return f"job-{len(self.schedule_calls)}"

    @property
    def total_calls(self) -> int:
        return len(self.upload_calls) + len(self.schedule_calls)


class _FakeLockRedis:
    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self.extended: list[str] = []

    def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):
        del ex
        if nx and key in self._store:
            return False
        self._store[key] = value
        return True

    def eval(self, script: str, numkeys: int, key: str, token: str, *args):
        del numkeys
        if self._store.get(key) != token:
            return 0
        if "expire" in script:
            self.extended.append(key)
        else:
            del self._store[key]
        return 1


class _DownRedis:
    def set(self, *args, **kwargs):
        raise RedisConnectionError("redis unavailable")

    def eval(self, *args, **kwargs):
        raise RedisConnectionError("redis unavailable")


class _FlakyPersistRepository(ContentRepository):
    def __init__(self, session: Session) -> None:
        super().__init__(session)
        self.fail_persist = True

    def insert_scheduled_post(self, **fields):
        if self.fail_persist and fields.get("external_post_id"):
            raise OperationalError("INSERT INTO scheduled_posts", {}, Exception("database is locked"))
        return super().insert_scheduled_post(**fields)


class _RivalPlatformRepository(ContentRepository):
    """Records another account's platform after this run has read the post but before it writes."""

    def __init__(self, session: Session, *, rival_platforms: str) -> None:
        super().__init__(session)
        self.rival_platforms = rival_platforms
        self.platform_writes = 0

    def update_post(self, post_id, patch, **kwargs):
        if "platforms_scheduled" in patch:
            self.platform_writes += 1
            if self.rival_platforms:
                rival, self.rival_platforms = self.rival_platforms, ""
                self.session.execute(update(Post).where(Post.id == post_id).values(platforms_scheduled_json=rival))
        return super().update_post(post_id, patch, **kwargs)


def _build_session() -> Session:
    load_models()
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    return factory()


def _load_media(reference):
    if not reference:
        raise MediaLoadError("media_reference_missing")
    return LoadedMedia(content=b"\x89PNG-bytes", mime_type="image/png", filename="photo.png")


def _seed_client(session: Session) -> Client:
    owner = User(id=str(uuid.uuid4()), email=f"{uuid.uuid4().hex[:8]}@example.com")
    session.add(owner)
    client = Client(id=str(uuid.uuid4()), owner_user_id=owner.id, name="Harbour Cafe")
    session.add(client)
    session.commit()
    return client


def _seed_post(
    session: Session,
    client: Client,
    *,
    caption: str = "Flat whites all day",
    status: str = "ready",
    scheduled: bool = True,
) -> Post:
    post = Post(
        id=str(uuid.uuid4()),
        client_id=client.id,
        caption=caption,
        media_reference="https://cdn.example/photo.png",
        status=status,
        scheduled_date=date(2026, 11, 3) if scheduled else None,
        scheduled_time=time(8, 15) if scheduled else None,
    )
    session.add(post)
    session.commit()
    return post


def _pipeline(repo: ContentRepository, gateway: _FakeGateway, **kwargs) -> PublishingPipeline:
    kwargs.setdefault("batch_delay_seconds", 0)
    return PublishingPipeline(repo, gateway, media_loader=_load_media, **kwargs)


def test_schedule_post_runs_all_stages_and_persists_remote_job() -> None:
    session = _build_session()
    try:
        client = _seed_client(session)
        post = _seed_post(session, client)
        repo = ContentRepository(session)
        gateway = _FakeGateway()

        outcome = _pipeline(repo, gateway).schedule_post(post_id=post.id, client_id=client.id, account=ACCOUNT)

        assert outcome.status == "succeeded"
        assert outcome.remote_job_id == "job-1"
        assert gateway.schedule_calls[0]["when_local"] == "2026-11-03T08:15:00"
        assert gateway.schedule_calls[0]["media_url"] == "https://media.example/photo.png-1"

        stored = repo.get_post(post.id)
        assert stored.status == "scheduled"
        assert stored.external_status == "scheduled"
        assert stored.external_post_id == "job-1"
        assert stored.platforms_scheduled == ["instagram"]

        log_rows = session.scalars(select(ScheduledPost).where(ScheduledPost.external_post_id == "job-1")).all()
        assert len(log_rows) == 1
        assert log_rows[0].account_ids == ["acct-ig-1"]

        run = repo.latest_publish_run(post.id, ACCOUNT.account_id)
        assert run.status == "succeeded"
        assert run.stage_reached == "persistence"
    finally:
        session.close()


def test_empty_caption_fails_before_any_gateway_call() -> None:
    session = _build_session()
    try:
        client = _seed_client(session)
        post = _seed_post(session, client, caption="")
        repo = ContentRepository(session)
        gateway = _FakeGateway()

        with pytest.raises(ValidationError):
            _pipeline(repo, gateway).schedule_post(post_id=post.id, client_id=client.id, account=ACCOUNT)

        with pytest.raises(ValidationError):
            _pipeline(repo, gateway).schedule_post(
                post_id=post.id,
                client_id=client.id,
                account=ACCOUNT,
                caption_override="   ",
            )

        assert gateway.total_calls == 0
        assert repo.latest_publish_run(post.id, ACCOUNT.account_id) is None
    finally:
        session.close()


def test_missing_schedule_or_wrong_status_fails_precondition() -> None:
    session = _build_session()
    try:
        client = _seed_client(session)
        unscheduled = _seed_post(session, client, scheduled=False)
        published = _seed_post(session, client, status="published")
        repo = ContentRepository(session)
        gateway = _FakeGateway()
        pipeline = _pipeline(repo, gateway)

        with pytest.raises(ValidationError):
            pipeline.schedule_post(post_id=unscheduled.id, client_id=client.id, account=ACCOUNT)
        with pytest.raises(InvalidState):
            pipeline.schedule_post(post_id=published.id, client_id=client.id, account=ACCOUNT)

        assert gateway.total_calls == 0
    finally:
        session.close()


def test_media_staging_failure_writes_nothing() -> None:
    session = _build_session()
    try:
        client = _seed_client(session)
        post = _seed_post(session, client)
        repo = ContentRepository(session)
        gateway = _FakeGateway(fail_upload=True)

        with pytest.raises(UpstreamError) as exc_info:
            _pipeline(repo, gateway).schedule_post(post_id=post.id, client_id=client.id, account=ACCOUNT)

        assert exc_info.value.details["stage"] == "media_staging"
        assert gateway.schedule_calls == []
        assert repo.latest_publish_run(post.id, ACCOUNT.account_id) is None
        assert repo.get_post(post.id).status == "ready"
    finally:
        session.close()


def test_caption_precedence_uses_override_then_unsaved_draft() -> None:
    session = _build_session()
    try:
        client = _seed_client(session)
        first = _seed_post(session, client, caption="Saved caption")
        second = _seed_post(session, client, caption="Saved caption")
        repo = ContentRepository(session)
        repo.update_post(second.id, {"draft_changes": {"caption": "Unsaved draft caption"}})
        repo.commit()
        gateway = _FakeGateway()
        pipeline = _pipeline(repo, gateway)

        pipeline.schedule_post(post_id=first.id, client_id=client.id, account=ACCOUNT, caption_override="Override")
        pipeline.schedule_post(post_id=second.id, client_id=client.id, account=ACCOUNT)

        assert [call["caption"] for call in gateway.schedule_calls] == ["Override", "Unsaved draft caption"]
    finally:
        session.close()


def test_batch_continues_past_a_failing_item() -> None:
    session = _build_session()
    try:
        client = _seed_client(session)
        posts = [
            _seed_post(session, client, caption="Monday menu"),
            _seed_post(session, client, caption="Tuesday menu"),
            _seed_post(session, client, caption="Wednesday menu"),
        ]
        repo = ContentRepository(session)
        gateway = _FakeGateway(fail_captions=("Tuesday menu",))
        sleeps: list[float] = []
        pipeline = _pipeline(repo, gateway, batch_delay_seconds=0.5, sleep=sleeps.append)

        summary = pipeline.schedule_batch(
            client_id=client.id,
            post_ids=[post.id for post in posts],
            account=ACCOUNT,
        )

        assert summary.succeeded == [posts[0].id, posts[2].id]
        assert summary.failed == [posts[1].id]
        assert summary.partial == []
        assert summary.counts == {"succeeded": 2, "failed": 1, "partial": 0}
        assert summary.outcomes[1].error_code == "upstream_error"
        assert sleeps == [0.5, 0.5]
        assert repo.get_post(posts[1].id).status == "ready"
    finally:
        session.close()


def test_retry_after_remote_failure_skips_media_staging() -> None:
    session = _build_session()
    try:
        client = _seed_client(session)
        post = _seed_post(session, client, caption="Retry me")
        repo = ContentRepository(session)
        gateway = _FakeGateway(fail_captions=("Retry me",))
        pipeline = _pipeline(repo, gateway)

        with pytest.raises(UpstreamError) as exc_info:
            pipeline.schedule_post(post_id=post.id, client_id=client.id, account=ACCOUNT)
        failed_run = repo.latest_publish_run(post.id, ACCOUNT.account_id)
        assert failed_run.status == "failed"
        assert failed_run.remote_media_url == "https://media.example/photo.png-1"
        assert exc_info.value.details["run_id"] == failed_run.id

        gateway.fail_captions.clear()
        outcome = pipeline.schedule_post(post_id=post.id, client_id=client.id, account=ACCOUNT)

        assert outcome.status == "succeeded"
        assert len(gateway.upload_calls) == 1
        assert len(gateway.schedule_calls) == 2
        run = repo.latest_publish_run(post.id, ACCOUNT.account_id)
        assert run.id == failed_run.id
        assert run.attempts == 2
    finally:
        session.close()


def test_persistence_failure_reports_partial_and_retry_does_not_resend() -> None:
    reset_metrics_for_tests()
    session = _build_session()
    try:
        client = _seed_client(session)
        post = _seed_post(session, client)
        repo = _FlakyPersistRepository(session)
        gateway = _FakeGateway()
        pipeline = _pipeline(repo, gateway)

        outcome = pipeline.schedule_post(post_id=post.id, client_id=client.id, account=ACCOUNT)

        assert outcome.status == "partial"
        assert outcome.remote_job_id == "job-1"
        stored = repo.get_post(post.id)
        assert stored.status == "ready"
        assert stored.external_post_id is None
        run = repo.latest_publish_run(post.id, ACCOUNT.account_id)
        assert run.status == "partial"
        assert run.remote_job_id == "job-1"

        repo.fail_persist = False
        resumed = pipeline.schedule_post(post_id=post.id, client_id=client.id, account=ACCOUNT)

        assert resumed.status == "succeeded"
        assert resumed.remote_job_id == "job-1"
        assert len(gateway.schedule_calls) == 1
        assert repo.get_post(post.id).external_post_id == "job-1"

        body = render_prometheus_metrics(app_name="postpilot", app_version="test", env="test")
        assert 'postpilot_publish_outcomes_total{platform="instagram",status="partial"} 1' in body
    finally:
        session.close()
        reset_metrics_for_tests()


def test_reconcile_persists_partial_runs() -> None:
    session = _build_session()
    try:
        client = _seed_client(session)
        post = _seed_post(session, client)
        repo = _FlakyPersistRepository(session)
        gateway = _FakeGateway()
        pipeline = _pipeline(repo, gateway)
        pipeline.schedule_post(post_id=post.id, client_id=client.id, account=ACCOUNT)

        repo.fail_persist = False
        outcomes = pipeline.reconcile_partial_runs()

        assert [outcome.status for outcome in outcomes] == ["succeeded"]
        assert len(gateway.schedule_calls) == 1
        stored = repo.get_post(post.id)
        assert stored.status == "scheduled"
        assert stored.external_post_id == "job-1"
        assert pipeline.reconcile_partial_runs() == []
    finally:
        session.close()


def test_already_scheduled_pair_is_a_conflict() -> None:
    session = _build_session()
    try:
        client = _seed_client(session)
        post = _seed_post(session, client)
        repo = ContentRepository(session)
        gateway = _FakeGateway()
        pipeline = _pipeline(repo, gateway)
        pipeline.schedule_post(post_id=post.id, client_id=client.id, account=ACCOUNT)

        with pytest.raises(Conflict):
            pipeline.schedule_post(post_id=post.id, client_id=client.id, account=ACCOUNT)

        other_account = PlatformAccount(platform="facebook", account_id="acct-fb-1")
        outcome = pipeline.schedule_post(post_id=post.id, client_id=client.id, account=other_account)
        assert outcome.status == "succeeded"
        assert sorted(repo.get_post(post.id).platforms_scheduled) == ["facebook", "instagram"]
    finally:
        session.close()


def test_run_guard_blocks_concurrent_run_for_same_pair() -> None:
    session = _build_session()
    try:
        client = _seed_client(session)
        post = _seed_post(session, client)
        repo = ContentRepository(session)
        gateway = _FakeGateway()
        redis_client = _FakeLockRedis()
        lock_manager = PublishRunLockManager(redis_client, ttl_seconds=60)
        pipeline = _pipeline(repo, gateway, lock_manager=lock_manager)

        pair = RunPair(post.id, ACCOUNT.account_id)
        held = lock_manager.acquire(pair)
        assert lock_manager.acquire(pair) is None
        with pytest.raises(Conflict):
            pipeline.schedule_post(post_id=post.id, client_id=client.id, account=ACCOUNT)
        assert gateway.total_calls == 0

        held.release()
        outcome = pipeline.schedule_post(post_id=post.id, client_id=client.id, account=ACCOUNT)
        assert outcome.status == "succeeded"
        assert pair.key == f"postpilot:publish:{post.id}:acct-ig-1"
        assert pair.key not in redis_client._store
        assert redis_client.extended == [pair.key]
    finally:
        session.close()


def test_run_guard_outage_does_not_block_publishing() -> None:
    session = _build_session()
    try:
        client = _seed_client(session)
        post = _seed_post(session, client)
        repo = ContentRepository(session)
        pipeline = _pipeline(repo, _FakeGateway(), lock_manager=PublishRunLockManager(_DownRedis()))

        outcome = pipeline.schedule_post(post_id=post.id, client_id=client.id, account=ACCOUNT)

        assert outcome.status == "succeeded"
    finally:
        session.close()


def test_confirm_published_finalizes_post_and_blocks_deletion() -> None:
    session = _build_session()
    try:
        client = _seed_client(session)
        post = _seed_post(session, client)
        repo = ContentRepository(session)
        pipeline = _pipeline(repo, _FakeGateway())
        pipeline.schedule_post(post_id=post.id, client_id=client.id, account=ACCOUNT)

        with pytest.raises(NotFound):
            pipeline.confirm_published(post_id=post.id, remote_job_id="job-unknown")

        published = pipeline.confirm_published(post_id=post.id, remote_job_id="job-1")
        assert published.status == "published"
        assert published.external_status == "published"
        log_entry = repo.find_scheduled_post_by_external_id("job-1")
        assert log_entry.status == "published"

        again = pipeline.confirm_published(post_id=post.id, remote_job_id="job-1")
        assert again.status == "published"

        with pytest.raises(InvalidState):
            change_status(repo, post_id=post.id, client_id=client.id, target="deleted")
    finally:
        session.close()


def test_publish_run_rows_are_reused_per_pair() -> None:
    session = _build_session()
    try:
        client = _seed_client(session)
        post = _seed_post(session, client, caption="Once more")
        repo = ContentRepository(session)
        gateway = _FakeGateway(fail_captions=("Once more",))
        pipeline = _pipeline(repo, gateway)

        for _ in range(2):
            with pytest.raises(UpstreamError):
                pipeline.schedule_post(post_id=post.id, client_id=client.id, account=ACCOUNT)

        runs = session.scalars(select(PublishRun).where(PublishRun.post_id == post.id)).all()
        assert len(runs) == 1
        assert runs[0].attempts == 2
    finally:
        session.close()


def test_platform_recorded_by_a_concurrent_account_run_is_kept() -> None:
    session = _build_session()
    try:
        client = _seed_client(session)
        post = _seed_post(session, client)
        repo = _RivalPlatformRepository(session, rival_platforms='["facebook"]')

        outcome = _pipeline(repo, _FakeGateway()).schedule_post(post_id=post.id, client_id=client.id, account=ACCOUNT)

        assert outcome.status == "succeeded"
        assert repo.platform_writes == 2
        assert repo.get_post(post.id).platforms_scheduled == ["facebook", "instagram"]
    finally:
        session.close()


def test_second_account_on_same_post_extends_platforms() -> None:
    session = _build_session()
    try:
        client = _seed_client(session)
        post = _seed_post(session, client)
        repo = ContentRepository(session)
        pipeline = _pipeline(repo, _FakeGateway())
        facebook = PlatformAccount(platform="facebook", account_id="acct-fb-1")

        pipeline.schedule_post(post_id=post.id, client_id=client.id, account=facebook)
        pipeline.schedule_post(post_id=post.id, client_id=client.id, account=ACCOUNT)

        assert repo.get_post(post.id).platforms_scheduled == ["facebook", "instagram"]
    finally:
        session.close()


def test_retry_restages_media_when_reference_changed_after_failure() -> None:
    session = _build_session()
    try:
        client = _seed_client(session)
        post = _seed_post(session, client, caption="New photo")
        repo = ContentRepository(session)
        gateway = _FakeGateway(fail_captions=("New photo",))
        pipeline = _pipeline(repo, gateway)

        with pytest.raises(UpstreamError):
            pipeline.schedule_post(post_id=post.id, client_id=client.id, account=ACCOUNT)
        assert repo.latest_publish_run(post.id, ACCOUNT.account_id).staged_media_reference == (
            "https://cdn.example/photo.png"
        )

        repo.update_post(post.id, {"media_reference": "https://cdn.example/photo-v2.png"})
        repo.commit()
        gateway.fail_captions.clear()
        outcome = pipeline.schedule_post(post_id=post.id, client_id=client.id, account=ACCOUNT)

        assert outcome.status == "succeeded"
        assert len(gateway.upload_calls) == 2
        assert gateway.schedule_calls[-1]["media_url"] == "https://media.example/photo.png-2"
        run = repo.latest_publish_run(post.id, ACCOUNT.account_id)
        assert run.staged_media_reference == "https://cdn.example/photo-v2.png"
    finally:
        session.close()


def test_run_guard_cannot_be_released_or_extended_by_a_stale_holder() -> None:
    redis_client = _FakeLockRedis()
    guard = PublishRunLockManager(redis_client, ttl_seconds=60)
    pair = RunPair("post-1", "acct-ig-1")

    stale = guard.acquire(pair)
    redis_client._store.pop(pair.key)
    current = guard.acquire(pair)

    assert stale.extend() is False
    assert stale.release() is False
    assert redis_client._store[pair.key] == current.token
    assert current.extend() is True
    assert current.release() is True
    assert pair.key not in redis_client._store
