"""Pydantic schemas for project and finalization endpoints."""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class ProjectCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=300)
    faculty: str | None = None
    topic: str | None = None
    level: str | None = None  # triennale | magistrale | dottorato


class ProjectSchema(BaseModel):
    id: uuid.UUID
    title: str
    faculty: str | None
    topic: str | None
    level: str | None
    status: str  # active | completed | abandoned
    final_document_id: uuid.UUID | None
    created_at: datetime
    last_activity_at: datetime
    completed_at: datetime | None

    model_config = {"from_attributes": True}


class SkippedChunkSchema(BaseModel):
    chunk_id: uuid.UUID
    title: str
    status: str
    reason: str  # not_ready | failed | queued

    model_config = {"from_attributes": True}


class FinalDocumentSchema(BaseModel):
    id: uuid.UUID
    project_id: uuid.UUID
    version: int
    title: str
    content: str
    quality_score: float
    included_chunk_ids: list[uuid.UUID]
    created_at: datetime

    model_config = {"from_attributes": True}


class FinalizeResponse(BaseModel):
    document: FinalDocumentSchema
    skipped_chunks: list[SkippedChunkSchema]
    quality_score: float
    total_characters: int
    compression_ratio: float

    model_config = {"from_attributes": True}
