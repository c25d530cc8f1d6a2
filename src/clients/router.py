"""Client (tenant) API routes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from src.auth.dependencies import get_bearer_token, require_auth_context
from src.auth.jwt import AuthContext
from src.billing.quota import KIND_CLIENTS, QuotaGate
from src.clients.service import add_client_member, create_client, ensure_client_access
from src.schemas.clients import ClientCreateRequest, ClientMemberRequest, ClientMemberResponse, ClientResponse
from src.storage.db import get_session
from src.storage.models import Client
from src.storage.repository import ContentRepository


router = APIRouter(prefix="/clients", tags=["clients"])


def _client_response(client: Client) -> ClientResponse:
    return ClientResponse(id=client.id, owner_user_id=client.owner_user_id, name=client.name)


@router.post("", response_model=ClientResponse, status_code=201)
def create_client_endpoint(
    payload: ClientCreateRequest,
    _auth: AuthContext = Depends(require_auth_context),
    token: Optional[str] = Depends(get_bearer_token),
    session: Session = Depends(get_session),
) -> ClientResponse:
    repo = ContentRepository(session)
    client = QuotaGate(repo).run_metered(
        token,
        KIND_CLIENTS,
        lambda actor_id: create_client(repo, owner_user_id=actor_id, name=payload.name),
        action_type="client_created",
    )
    return _client_response(client)


@router.get("/{client_id}", response_model=ClientResponse)
def get_client_endpoint(
    client_id: str,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> ClientResponse:
    return _client_response(ensure_client_access(ContentRepository(session), client_id=client_id, user_id=auth.user_id))


@router.post("/{client_id}/members", response_model=ClientMemberResponse, status_code=201)
def add_client_member_endpoint(
    client_id: str,
    payload: ClientMemberRequest,
    auth: AuthContext = Depends(require_auth_context),
    session: Session = Depends(get_session),
) -> ClientMemberResponse:
    member = add_client_member(
        ContentRepository(session),
        client_id=client_id,
        owner_user_id=auth.user_id,
        member_user_id=payload.user_id,
        role=payload.role,
    )
    return ClientMemberResponse(client_id=member.client_id, user_id=member.user_id, role=member.role)
