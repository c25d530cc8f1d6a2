"""Pydantic schemas for client endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ClientCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)


class ClientResponse(BaseModel):
    id: str
    owner_user_id: str
    name: str


class ClientMemberRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=36)
    role: str = Field(default="editor", min_length=1, max_length=20)


class ClientMemberResponse(BaseModel):
    client_id: str
    user_id: str
    role: str
