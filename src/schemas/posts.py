"""Pydantic schemas for post lifecycle endpoints."""

from __future__ import annotations

from datetime import date, time
from typing import List, Optional

from pydantic import BaseModel, Field


class PostCreateRequest(BaseModel):
    client_id: str = Field(min_length=1, max_length=36)
    caption: str = Field(min_length=1, max_length=5000)
    media_reference: Optional[str] = Field(default=None, max_length=4096)
    notes: Optional[str] = Field(default=None, max_length=5000)
    project_id: Optional[str] = Field(default=None, max_length=36)


class PostEditRequest(BaseModel):
    client_id: str = Field(min_length=1, max_length=36)
    caption: Optional[str] = Field(default=None, max_length=5000)
    media_reference: Optional[str] = Field(default=None, max_length=4096)
    notes: Optional[str] = Field(default=None, max_length=5000)
    edit_reason: Optional[str] = Field(default=None, max_length=255)
    force: bool = False
    save_as_draft: bool = False


class ApprovalRequest(BaseModel):
    client_id: str = Field(min_length=1, max_length=36)
    decision: str = Field(min_length=1, max_length=32)


class StatusChangeRequest(BaseModel):
    client_id: str = Field(min_length=1, max_length=36)
    status: str = Field(min_length=1, max_length=20)


class CalendarScheduleRequest(BaseModel):
    client_id: str = Field(min_length=1, max_length=36)
    scheduled_date: date
    scheduled_time: time


class PostResponse(BaseModel):
    id: str
    client_id: str
    project_id: Optional[str] = None
    caption: str
    media_reference: Optional[str] = None
    notes: Optional[str] = None
    status: str
    approval_status: str
    needs_reapproval: bool
    original_caption: Optional[str] = None
    currently_editing_by: Optional[str] = None
    editing_started_at: Optional[str] = None
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[time] = None
    platforms_scheduled: List[str] = Field(default_factory=list)
    external_status: Optional[str] = None
    external_post_id: Optional[str] = None
    has_draft_changes: bool = False
    edit_count: int = 0
    last_edited_at: Optional[str] = None
    last_edited_by: Optional[str] = None


class ScheduledPostResponse(BaseModel):
    id: str
    post_id: Optional[str] = None
    client_id: str
    caption: str
    media_reference: Optional[str] = None
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[time] = None
    status: str


class RevisionResponse(BaseModel):
    id: str
    edited_by: str
    previous_caption: Optional[str] = None
    new_caption: Optional[str] = None
    changed_fields: List[str] = Field(default_factory=list)
    edit_reason: Optional[str] = None
    created_at: Optional[str] = None


class RevisionListResponse(BaseModel):
    post_id: str
    revisions: List[RevisionResponse]
