"""Pydantic schemas for publishing endpoints."""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class PlatformAccountPayload(BaseModel):
    platform: str = Field(min_length=1, max_length=32)
    account_id: str = Field(min_length=1, max_length=128)


class ScheduleBatchRequest(BaseModel):
    client_id: str = Field(min_length=1, max_length=36)
    post_ids: List[str] = Field(min_length=1, max_length=100)
    account: PlatformAccountPayload
    caption_overrides: Dict[str, str] = Field(default_factory=dict)


class PublishOutcomeResponse(BaseModel):
    post_id: str
    status: str
    remote_job_id: Optional[str] = None
    error_code: Optional[str] = None
    message: str = ""
    run_id: Optional[str] = None


class ScheduleBatchResponse(BaseModel):
    succeeded: List[str]
    failed: List[str]
    partial: List[str]
    counts: Dict[str, int]
    outcomes: List[PublishOutcomeResponse]


class ConfirmPublishedRequest(BaseModel):
    post_id: str = Field(min_length=1, max_length=36)
    remote_job_id: str = Field(min_length=1, max_length=128)


class ConfirmPublishedResponse(BaseModel):
    post_id: str
    status: str
    external_status: Optional[str] = None


class ReconcileResponse(BaseModel):
    processed: int
    outcomes: List[PublishOutcomeResponse]
