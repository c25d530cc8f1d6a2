"""Content repository: row-level reads and conditional writes over the ORM session."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import ColumnElement, select, update
from sqlalchemy.orm import Session

from src.core.errors import NotFound
from src.core.timeutils import utc_now
from src.storage.models import (
    AICreditUsage,
    Client,
    ClientMember,
    Post,
    PostRevision,
    PublishRun,
    ScheduledPost,
    Subscription,
    User,
    UserProfile,
    dump_json,
)


_JSON_PATCH_FIELDS = {
    "platforms_scheduled": "platforms_scheduled_json",
    "draft_changes": "draft_changes_json",
    "account_ids": "account_ids_json",
    "changed_fields": "changed_fields_json",
    "metadata": "metadata_json",
}


def _encode_patch(patch: Mapping[str, Any]) -> Dict[str, Any]:
    encoded: Dict[str, Any] = {}
    for key, value in patch.items():
        column = _JSON_PATCH_FIELDS.get(key)
        if column is not None:
            encoded[column] = dump_json(value)
        else:
            encoded[key] = value
    return encoded


class ContentRepository:
    """Single-row storage capability shared by lifecycle, editing, publishing and quota code.

    Writes are flushed but never committed here; callers own the transaction
    boundary through ``commit``/``rollback``.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    def commit(self) -> None:
        self._session.commit()

    def rollback(self) -> None:
        self._session.rollback()

    # posts

    def get_post(self, post_id: str) -> Post:
        post = self._session.get(Post, post_id, populate_existing=True)
        if post is None:
            raise NotFound("Post not found", details={"post_id": post_id})
        return post

    def insert_post(self, **fields: Any) -> Post:
        post = Post(**_encode_patch(fields))
        self._session.add(post)
        self._session.flush()
        return post

    def update_post(
        self,
        post_id: str,
        patch: Mapping[str, Any],
        *,
        conditions: Sequence[ColumnElement[bool]] = (),
        now: Optional[datetime] = None,
    ) -> Post:
        """Apply ``patch`` in one UPDATE guarded by ``conditions``.

        Raises NotFound when no row matched, whether the post is missing or the
        conditions excluded it.
        """

        values = _encode_patch(patch)
        values.setdefault("updated_at", now or utc_now())
        statement = (
            update(Post)
            .where(Post.id == post_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self._session.execute(statement)
        if result.rowcount == 0:
            raise NotFound("Post not found or precondition failed", details={"post_id": post_id})
        return self.get_post(post_id)

    # calendar / schedule log

    def insert_scheduled_post(self, **fields: Any) -> ScheduledPost:
        scheduled = ScheduledPost(**_encode_patch(fields))
        self._session.add(scheduled)
        self._session.flush()
        return scheduled

    def find_scheduled_post_by_external_id(self, external_post_id: str) -> Optional[ScheduledPost]:
        return self._session.scalar(
            select(ScheduledPost).where(ScheduledPost.external_post_id == external_post_id)
        )

    # revisions

    def insert_revision(self, **fields: Any) -> PostRevision:
        revision = PostRevision(**_encode_patch(fields))
        self._session.add(revision)
        self._session.flush()
        return revision

    def list_revisions(self, post_id: str) -> List[PostRevision]:
        statement = (
            select(PostRevision)
            .where(PostRevision.post_id == post_id)
            .order_by(PostRevision.created_at.desc(), PostRevision.id.desc())
        )
        return list(self._session.scalars(statement).all())

    # publish runs

    def latest_publish_run(self, post_id: str, account_id: str) -> Optional[PublishRun]:
        statement = (
            select(PublishRun)
            .where(PublishRun.post_id == post_id, PublishRun.account_id == account_id)
            .order_by(PublishRun.created_at.desc(), PublishRun.updated_at.desc())
            .limit(1)
        )
        return self._session.scalar(statement)

    def get_publish_run(self, run_id: str) -> PublishRun:
        run = self._session.get(PublishRun, run_id, populate_existing=True)
        if run is None:
            raise NotFound("Publish run not found", details={"run_id": run_id})
        return run

    def save_publish_run(self, run: PublishRun) -> PublishRun:
        run.updated_at = utc_now()
        self._session.add(run)
        self._session.flush()
        return run

    def list_publish_runs(self, *, status: str, limit: int = 50) -> List[PublishRun]:
        statement = (
            select(PublishRun)
            .where(PublishRun.status == status)
            .order_by(PublishRun.updated_at.asc())
            .limit(max(1, limit))
        )
        return list(self._session.scalars(statement).all())

    # clients and users

    def get_client(self, client_id: str) -> Client:
        client = self._session.get(Client, client_id)
        if client is None:
            raise NotFound("Client not found", details={"client_id": client_id})
        return client

    def insert_client(self, **fields: Any) -> Client:
        client = Client(**fields)
        self._session.add(client)
        self._session.flush()
        return client

    def find_client_member(self, client_id: str, user_id: str) -> Optional[ClientMember]:
        return self._session.scalar(
            select(ClientMember).where(ClientMember.client_id == client_id, ClientMember.user_id == user_id)
        )

    def insert_client_member(self, **fields: Any) -> ClientMember:
        member = ClientMember(**fields)
        self._session.add(member)
        self._session.flush()
        return member

    def find_user(self, user_id: str) -> Optional[User]:
        return self._session.get(User, user_id)

    # subscriptions

    def find_subscription(self, user_id: str) -> Optional[Subscription]:
        return self._session.scalar(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .execution_options(populate_existing=True)
        )

    def get_subscription(self, user_id: str) -> Subscription:
        subscription = self.find_subscription(user_id)
        if subscription is None:
            raise NotFound("Subscription not found", details={"user_id": user_id})
        return subscription

    def insert_subscription(self, **fields: Any) -> Subscription:
        subscription = Subscription(**fields)
        self._session.add(subscription)
        self._session.flush()
        return subscription

    def update_subscription(
        self,
        user_id: str,
        patch: Mapping[str, Any],
        *,
        conditions: Sequence[ColumnElement[bool]] = (),
    ) -> Subscription:
        values = dict(patch)
        values.setdefault("updated_at", utc_now())
        statement = (
            update(Subscription)
            .where(Subscription.user_id == user_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self._session.execute(statement)
        if result.rowcount == 0:
            raise NotFound("Subscription not found or precondition failed", details={"user_id": user_id})
        return self.get_subscription(user_id)

    def list_subscriptions(
        self,
        *,
        conditions: Sequence[ColumnElement[bool]] = (),
    ) -> List[Subscription]:
        statement = select(Subscription).where(*conditions).order_by(Subscription.created_at.asc())
        return list(self._session.scalars(statement).all())

    # purchased credits

    def get_purchased_credits(self, user_id: str) -> int:
        profile = self._session.get(UserProfile, user_id, populate_existing=True)
        if profile is None:
            return 0
        return max(int(profile.ai_credits_purchased or 0), 0)

    def consume_purchased_credits(self, user_id: str, amount: int) -> bool:
        """Deduct ``amount`` only while the balance still covers it; False when another writer got there first."""

        statement = (
            update(UserProfile)
            .where(UserProfile.id == user_id, UserProfile.ai_credits_purchased >= amount)
            .values(ai_credits_purchased=UserProfile.ai_credits_purchased - amount, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return self._session.execute(statement).rowcount == 1

    def add_purchased_credits(self, user_id: str, amount: int) -> int:
        statement = (
            update(UserProfile)
            .where(UserProfile.id == user_id)
            .values(ai_credits_purchased=UserProfile.ai_credits_purchased + amount, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        if self._session.execute(statement).rowcount == 0:
            self._session.add(UserProfile(id=user_id, ai_credits_purchased=amount, updated_at=utc_now()))
            self._session.flush()
        return self.get_purchased_credits(user_id)

    def insert_credit_usage(self, **fields: Any) -> AICreditUsage:
        usage = AICreditUsage(**_encode_patch(fields))
        self._session.add(usage)
        self._session.flush()
        return usage
