"""Post status and approval vocabularies with the allowed direct transitions."""

from __future__ import annotations

from typing import Dict, FrozenSet, Tuple

from src.core.errors import InvalidState, ValidationError


STATUS_DRAFT = "draft"
STATUS_READY = "ready"
STATUS_SCHEDULED = "scheduled"
STATUS_PUBLISHED = "published"
STATUS_ARCHIVED = "archived"
STATUS_DELETED = "deleted"

POST_STATUSES: Tuple[str, ...] = (
    STATUS_DRAFT,
    STATUS_READY,
    STATUS_SCHEDULED,
    STATUS_PUBLISHED,
    STATUS_ARCHIVED,
    STATUS_DELETED,
)
EDITABLE_STATUSES: Tuple[str, ...] = (STATUS_DRAFT, STATUS_READY, STATUS_SCHEDULED)
TERMINAL_STATUSES: FrozenSet[str] = frozenset({STATUS_ARCHIVED, STATUS_DELETED})

APPROVAL_PENDING = "pending"
APPROVAL_APPROVED = "approved"
APPROVAL_REJECTED = "rejected"
APPROVAL_NEEDS_ATTENTION = "needs_attention"
APPROVAL_DRAFT = "draft"

APPROVAL_STATUSES: Tuple[str, ...] = (
    APPROVAL_PENDING,
    APPROVAL_APPROVED,
    APPROVAL_REJECTED,
    APPROVAL_NEEDS_ATTENTION,
    APPROVAL_DRAFT,
)
APPROVAL_DECISIONS: Tuple[str, ...] = (
    APPROVAL_PENDING,
    APPROVAL_APPROVED,
    APPROVAL_REJECTED,
    APPROVAL_NEEDS_ATTENTION,
)

# "published" is deliberately absent as a target: only the publishing
# pipeline's confirmation path writes it.
DIRECT_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    STATUS_DRAFT: frozenset({STATUS_READY, STATUS_ARCHIVED, STATUS_DELETED}),
    STATUS_READY: frozenset({STATUS_DRAFT, STATUS_SCHEDULED, STATUS_ARCHIVED, STATUS_DELETED}),
    STATUS_SCHEDULED: frozenset({STATUS_READY, STATUS_ARCHIVED, STATUS_DELETED}),
    STATUS_PUBLISHED: frozenset({STATUS_ARCHIVED}),
    STATUS_ARCHIVED: frozenset(),
    STATUS_DELETED: frozenset(),
}

_EDIT_BLOCK_MESSAGES = {
    STATUS_PUBLISHED: "Cannot edit published posts. Please create a new version instead.",
    STATUS_ARCHIVED: "Cannot edit archived posts. Please restore the post first.",
    STATUS_DELETED: "Cannot edit deleted posts.",
}


def is_editable_status(status: str | None) -> bool:
    return str(status or "") in EDITABLE_STATUSES


def ensure_editable(status: str | None, *, operation: str = "edit") -> None:
    normalized = str(status or "")
    if normalized in EDITABLE_STATUSES:
        return
    message = _EDIT_BLOCK_MESSAGES.get(normalized, "Cannot edit this post in its current status")
    raise InvalidState(message, details={"current_status": normalized, "operation": operation})


def can_transition(current: str, target: str) -> bool:
    return target in DIRECT_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: str, target: str) -> None:
    if target not in POST_STATUSES:
        raise ValidationError(f"Unknown post status: {target}", details={"target": target})
    if current == STATUS_PUBLISHED and target == STATUS_DELETED:
        raise InvalidState(
            "Cannot delete published posts. Please archive instead.",
            details={"current_status": current, "target": target},
        )
    if not can_transition(current, target):
        raise InvalidState(
            f"Transition {current} -> {target} is not allowed",
            details={"current_status": current, "target": target},
        )


def ensure_approval_decision(decision: str) -> str:
    normalized = str(decision or "").strip().lower()
    if normalized not in APPROVAL_DECISIONS:
        raise ValidationError(
            f"Unknown approval decision: {decision}",
            details={"allowed": list(APPROVAL_DECISIONS)},
        )
    return normalized
