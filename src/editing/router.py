"""Editing session API routes."""

from __future__ import annotations

from typing import Dict

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from src.auth.dependencies import require_auth_context
from src.auth.jwt import AuthContext
from src.clients.service import client_repository
from src.core.timeutils import isoformat_or_none
from src.editing.sessions import EditingSessionManager
from src.schemas.editing import EditingLockResponse, EditingSessionRequest, EditingStatusResponse
from src.storage.db import get_session


router = APIRouter(prefix="/posts", tags=["editing-sessions"])


@router.post("/{post_id}/editing-session", response_model=EditingLockResponse)
def start_editing_session(
    post_id: str,
    payload: EditingSessionRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> EditingLockResponse:
    manager = EditingSessionManager(client_repository(session, client_id=payload.client_id, user_id=auth.user_id))
    state = manager.acquire(post_id, payload.client_id, auth.user_id, force=payload.force)
    return EditingLockResponse(
        post_id=state.post_id,
        holder=state.holder,
        lock_started_at=state.lock_started_at.isoformat(),
        last_modified_at=isoformat_or_none(state.last_modified_at),
    )


@router.delete("/{post_id}/editing-session")
def end_editing_session(
    post_id: str,
    client_id: str = Query(min_length=1, max_length=36),
    force: bool = False,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> Dict[str, object]:
    manager = EditingSessionManager(client_repository(session, client_id=client_id, user_id=auth.user_id))
    manager.release(post_id, client_id, auth.user_id, force=force)
    return {"post_id": post_id, "released": True}


@router.get("/{post_id}/editing-session", response_model=EditingStatusResponse)
def get_editing_session(
    post_id: str,
    client_id: str = Query(min_length=1, max_length=36),
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> EditingStatusResponse:
    repo = client_repository(session, client_id=client_id, user_id=auth.user_id)
    status = EditingSessionManager(repo).status(post_id, client_id)
    return EditingStatusResponse(
        post_id=status.post_id,
        is_active=status.is_active,
        holder=status.holder,
        lock_started_at=isoformat_or_none(status.lock_started_at),
        last_modified_at=isoformat_or_none(status.last_modified_at),
        can_edit=status.can_edit,
        status=status.status,
    )
