"""Pydantic schemas for editing session endpoints."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class EditingSessionRequest(BaseModel):
    client_id: str = Field(min_length=1, max_length=36)
    force: bool = False


class EditingLockResponse(BaseModel):
    post_id: str
    holder: str
    lock_started_at: str
    last_modified_at: Optional[str] = None


class EditingStatusResponse(BaseModel):
    post_id: str
    is_active: bool
    holder: Optional[str] = None
    lock_started_at: Optional[str] = None
    last_modified_at: Optional[str] = None
    can_edit: bool
    status: str
