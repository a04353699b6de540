from __future__ import annotations

import json
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class WebhookAccepted(BaseModel):
    ok: bool = True
    event_hash: str
    deduped: bool | None = None


class RunJobRequest(BaseModel):
    entity_id: str | int | None = None


class RunJobResponse(BaseModel):
    ok: bool = True
    enqueued: str
    job_id: UUID
    deduped: bool


class ReviewQueueItemCreate(BaseModel):
    kind: str = Field(default="merge", min_length=1, max_length=32)
    payload: dict[str, Any]


class ReviewQueueItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: str
    payload: dict[str, Any] = Field(validation_alias=AliasChoices("payload_json", "payload"))
    status: str
    created_at: datetime
    updated_at: datetime

    @field_validator("payload", mode="before")
    @classmethod
    def _decode_payload(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value or "{}")
        return value


class ReviewQueueApproveResponse(BaseModel):
    ok: bool = True
    item: ReviewQueueItemRead
    job_id: UUID
    deduped: bool


class MergeCandidateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_type: str
    source_id: int
    target_id: int
    confidence_score: float
    status: str
    status_reason: str | None
    approved_for_execution: bool
    plan: dict[str, Any] | None = Field(default=None, validation_alias=AliasChoices("plan_json", "plan"))
    review_item_id: int | None
    created_at: datetime
    reviewed_at: datetime | None
    executed_at: datetime | None

    @field_validator("plan", mode="before")
    @classmethod
    def _decode_plan(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value)
        return value


class MergeExecuteResponse(BaseModel):
    ok: bool = True
    outcome: str
    no_op: bool
    candidate: MergeCandidateRead


class JobRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    job_name: str
    source: str
    status: str
    stats: dict[str, Any] = Field(validation_alias=AliasChoices("stats_json", "stats"))
    error: str | None
    started_at: datetime
    finished_at: datetime | None

    @field_validator("stats", mode="before")
    @classmethod
    def _decode_stats(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value or "{}")
        return value


class FieldMapRefreshResponse(BaseModel):
    ok: bool = True
    upserted: int
