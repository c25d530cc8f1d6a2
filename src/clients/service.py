"""Client (tenant) services: creation, collaborators and access checks."""

from __future__ import annotations

from sqlalchemy.orm import Session

from src.core.errors import Conflict, Forbidden, NotFound, ValidationError
from src.core.logger import get_logger
from src.core.timeutils import utc_now
from src.storage.models import Client, ClientMember
from src.storage.repository import ContentRepository


logger = get_logger("postpilot.clients.service")

MEMBER_ROLES = ("editor", "approver")


def create_client(repo: ContentRepository, *, owner_user_id: str, name: str) -> Client:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Client name is required", details={"field": "name"})
    if repo.find_user(owner_user_id) is None:
        raise NotFound("User not found", details={"user_id": owner_user_id})

    client = repo.insert_client(owner_user_id=owner_user_id, name=cleaned[:120], created_at=utc_now())
    repo.commit()
    logger.info("client_created", client_id=client.id, owner_user_id=owner_user_id)
    return client


def ensure_client_access(repo: ContentRepository, *, client_id: str, user_id: str) -> Client:
    """Return the client when ``user_id`` owns it or collaborates on it."""

    client = repo.get_client(client_id)
    if client.owner_user_id == user_id or repo.find_client_member(client_id, user_id) is not None:
        return client
    logger.warning("client_access_denied", client_id=client_id, user_id=user_id)
    raise Forbidden("Not allowed to access this client", details={"client_id": client_id})


def add_client_member(
    repo: ContentRepository,
    *,
    client_id: str,
    owner_user_id: str,
    member_user_id: str,
    role: str = "editor",
) -> ClientMember:
    if role not in MEMBER_ROLES:
        raise ValidationError("Unknown member role", details={"role": role, "allowed": list(MEMBER_ROLES)})
    client = repo.get_client(client_id)
    if client.owner_user_id != owner_user_id:
        raise Forbidden("Only the client owner can add collaborators", details={"client_id": client_id})
    if repo.find_user(member_user_id) is None:
        raise NotFound("User not found", details={"user_id": member_user_id})
    if member_user_id == client.owner_user_id or repo.find_client_member(client_id, member_user_id) is not None:
        raise Conflict("User already has access to this client", details={"user_id": member_user_id})

    member = repo.insert_client_member(client_id=client_id, user_id=member_user_id, role=role, created_at=utc_now())
    repo.commit()
    logger.info("client_member_added", client_id=client_id, user_id=member_user_id, role=role)
    return member


def client_repository(session: Session, *, client_id: str, user_id: str) -> ContentRepository:
    """Repository for a request acting on ``client_id``, after the caller's access is checked."""

    repo = ContentRepository(session)
    ensure_client_access(repo, client_id=client_id, user_id=user_id)
    return repo
