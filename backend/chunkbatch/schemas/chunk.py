"""Pydantic schemas for chunk endpoints."""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class ChunkCreateRequest(BaseModel):
    title: str
    content: str
    section: str | None = None
    page_range: str | None = None


class ChunkSegmentRequest(BaseModel):
    text: str
    max_chars: int = Field(default=12_000, ge=10, le=50_000)


class ChunkUpdateRequest(BaseModel):
    title: str | None = None
    section: str | None = None
    content: str | None = None


class ChunkSchema(BaseModel):
    id: uuid.UUID
    project_id: uuid.UUID
    order_index: int
    title: str
    section: str | None
    page_range: str | None
    content: str
    char_count: int
    word_count: int
    status: str  # bozza | pronto | in_coda | elaborazione | completato | errore
    result_id: uuid.UUID | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
