from __future__ import annotations

from pathlib import Path

from src.storage.db import Base, load_models


MIGRATION_PATH = Path("migrations/versions/20261018_0001_content_lifecycle_core.py")


def test_migration_declares_every_model_table() -> None:
    load_models()
    source = MIGRATION_PATH.read_text(encoding="utf-8")

    for table_name in Base.metadata.tables:
        assert f'"{table_name}",' in source


def test_migration_declares_lookup_indexes_and_constraints() -> None:
    source = MIGRATION_PATH.read_text(encoding="utf-8")

    assert "ix_posts_client_status" in source
    assert "ix_post_revisions_post_created_at" in source
    assert "ix_publish_runs_post_account_created_at" in source
    assert "ix_publish_runs_status_updated_at" in source
    assert "uq_subscriptions_user" in source
    assert "uq_client_members_client_user" in source
    assert "staged_media_reference" in source
    assert "uq_scheduled_posts_external_post_id" in source
    assert "ck_posts_status" in source
