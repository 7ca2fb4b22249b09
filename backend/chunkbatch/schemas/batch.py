"""Pydantic schemas for batch job endpoints."""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class BatchConfig(BaseModel):
    analysis_type: str | None = None  # defaults per project level
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    top_p: float | None = Field(default=None, gt=0.0, le=1.0)
    max_tokens_per_chunk: int = Field(default=4000, ge=1, le=8000)
    model: str | None = None  # overrides the provider's default model


class BatchSubmitRequest(BaseModel):
    project_id: uuid.UUID
    chunk_ids: list[uuid.UUID]
    config: BatchConfig = Field(default_factory=BatchConfig)


class BatchResultSchema(BaseModel):
    id: uuid.UUID
    chunk_id: uuid.UUID
    position: int
    status: str  # in_attesa | elaborazione | completato | fallito
    tokens_in: int
    tokens_out: int
    cost_usd: float
    latency_ms: int | None
    output: str | None
    error_message: str | None
    retry_count: int
    completed_at: datetime | None

    model_config = {"from_attributes": True}


class BatchJobSchema(BaseModel):
    id: uuid.UUID
    project_id: uuid.UUID
    status: str  # in_coda | elaborazione | completato | fallito | annullato
    analysis_type: str
    config: dict[str, Any]
    total_chunks: int
    processed_chunks: int
    progress_percent: int
    estimated_tokens: int
    estimated_cost_usd: float
    actual_cost_usd: float
    provider: str
    provider_handle: str | None
    error_message: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    expires_at: datetime | None
    last_synced_at: datetime | None
    chunk_ids: list[uuid.UUID]
    results: list[BatchResultSchema] = []

    model_config = {"from_attributes": True}


class PartialFailureSchema(BaseModel):
    detail: str
    failed_chunk_ids: list[uuid.UUID]
    succeeded_chunk_ids: list[uuid.UUID]


class BatchJobResponse(BaseModel):
    job: BatchJobSchema


class BatchJobStatusResponse(BaseModel):
    job: BatchJobSchema
    progress_percentage: int
    is_stale: bool
    time_elapsed_seconds: int | None
    partial_failure: PartialFailureSchema | None = None
    sync_error: str | None = None


class BatchJobListResponse(BaseModel):
    jobs: list[BatchJobSchema]
