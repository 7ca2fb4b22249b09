"""Chunk authoring API router."""

import logging
import uuid

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from chunkbatch.api.deps import get_owner_id
from chunkbatch.db import get_session
from chunkbatch.schemas.chunk import (
    ChunkCreateRequest,
    ChunkSchema,
    ChunkSegmentRequest,
    ChunkUpdateRequest,
)
from chunkbatch.services.chunks import ChunkEditor
from chunkbatch.services.projects import ProjectService
from chunkbatch.services.segmenter import segment_text

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/projects/{project_id}/chunks", status_code=201)
def create_chunk(
    project_id: uuid.UUID,
    body: ChunkCreateRequest,
    db: Session = Depends(get_session),
    owner_id: str = Depends(get_owner_id),
) -> ChunkSchema:
    project = ProjectService().get(project_id, db, owner_id)
    chunk = ChunkEditor(db).create(project, body.title, body.content, body.section, body.page_range)
    return ChunkSchema.model_validate(chunk)


@router.post("/projects/{project_id}/chunks/segment", status_code=201)
def segment_into_chunks(
    project_id: uuid.UUID,
    body: ChunkSegmentRequest,
    db: Session = Depends(get_session),
    owner_id: str = Depends(get_owner_id),
) -> list[ChunkSchema]:
    """Split already-extracted document text into draft chunks."""
    project = ProjectService().get(project_id, db, owner_id)
    drafts = segment_text(body.text, body.max_chars)
    chunks = ChunkEditor(db).create_many(project, drafts)
    logger.info("segmented %d chars into %d chunks for project %s", len(body.text), len(chunks), project.id)
    return [ChunkSchema.model_validate(c) for c in chunks]


@router.get("/projects/{project_id}/chunks")
def list_chunks(
    project_id: uuid.UUID,
    db: Session = Depends(get_session),
    owner_id: str = Depends(get_owner_id),
) -> list[ChunkSchema]:
    project = ProjectService().get(project_id, db, owner_id)
    return [ChunkSchema.model_validate(c) for c in ChunkEditor(db).list_for_project(project.id)]


@router.patch("/chunks/{chunk_id}")
def update_chunk(
    chunk_id: uuid.UUID,
    body: ChunkUpdateRequest,
    db: Session = Depends(get_session),
    owner_id: str = Depends(get_owner_id),
) -> ChunkSchema:
    editor = ChunkEditor(db)
    chunk = editor.get_owned(chunk_id, owner_id)
    return ChunkSchema.model_validate(
        editor.update(chunk, title=body.title, section=body.section, content=body.content)
    )


@router.post("/chunks/{chunk_id}/ready")
def mark_chunk_ready(
    chunk_id: uuid.UUID,
    db: Session = Depends(get_session),
    owner_id: str = Depends(get_owner_id),
) -> ChunkSchema:
    editor = ChunkEditor(db)
    return ChunkSchema.model_validate(editor.mark_ready(editor.get_owned(chunk_id, owner_id)))


@router.post("/chunks/{chunk_id}/reset")
def reset_chunk(
    chunk_id: uuid.UUID,
    db: Session = Depends(get_session),
    owner_id: str = Depends(get_owner_id),
) -> ChunkSchema:
    """Send a failed chunk back to draft."""
    editor = ChunkEditor(db)
    return ChunkSchema.model_validate(editor.reset(editor.get_owned(chunk_id, owner_id)))


@router.delete("/chunks/{chunk_id}", status_code=204)
def delete_chunk(
    chunk_id: uuid.UUID,
    db: Session = Depends(get_session),
    owner_id: str = Depends(get_owner_id),
) -> Response:
    editor = ChunkEditor(db)
    editor.delete(editor.get_owned(chunk_id, owner_id))
    return Response(status_code=204)
