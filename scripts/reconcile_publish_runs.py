"""Retry local persistence for publish runs left partial after a remote job was created."""

from __future__ import annotations

import argparse
from typing import Iterable, List

from src.core.logger import get_logger
from src.integrations.late.client import get_late_client
from src.publishing.pipeline import OUTCOME_SUCCEEDED, PublishOutcome, PublishingPipeline, get_publish_run_lock_manager
from src.storage.db import session_scope
from src.storage.repository import ContentRepository


logger = get_logger("postpilot.scripts.reconcile")


def run_reconcile(*, limit: int) -> List[PublishOutcome]:
    with session_scope() as session:
        pipeline = PublishingPipeline(
            ContentRepository(session),
            get_late_client(),
            lock_manager=get_publish_run_lock_manager(),
        )
        outcomes = pipeline.reconcile_partial_runs(limit=limit)
    logger.info("reconcile_script_finished", limit=limit, processed=len(outcomes))
    return outcomes


def _format_report(outcomes: List[PublishOutcome]) -> Iterable[str]:
    succeeded = sum(1 for outcome in outcomes if outcome.status == OUTCOME_SUCCEEDED)
    yield f"processed={len(outcomes)}"
    yield f"succeeded={succeeded}"
    yield f"still_partial={len(outcomes) - succeeded}"
    for outcome in outcomes:
        yield f"post_id={outcome.post_id} status={outcome.status} remote_job_id={outcome.remote_job_id or '-'}"


def main() -> None:
    parser = argparse.ArgumentParser(description="Reconcile partially persisted publish runs.")
    parser.add_argument("--limit", type=int, default=50)
    args = parser.parse_args()

    if args.limit <= 0:
        raise ValueError("--limit must be positive")

    for line in _format_report(run_reconcile(limit=args.limit)):
        print(line)


if __name__ == "__main__":
    main()
