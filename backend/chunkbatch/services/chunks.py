"""Chunk repository and the three narrow write capabilities over it.

``ChunkEditor`` is the author's capability (drafts), ``QueueWriter`` belongs to
the scheduler and ``ResultWriter`` to the reconciler. None of them exposes a
generic status setter; every status change goes through the state machine.
"""

import uuid
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from chunkbatch.db import utcnow
from chunkbatch.models.batch_result import BatchResult
from chunkbatch.models.chunk import Chunk
from chunkbatch.models.project import Project
from chunkbatch.services.errors import InvalidTransition, NotFoundError, ValidationError
from chunkbatch.services.state_machine import (
    CHUNK_ACTIVE,
    RESULT_TERMINAL,
    check_chunk_transition,
)

MIN_TITLE_CHARS = 3
MAX_TITLE_CHARS = 200
MIN_CONTENT_CHARS = 10
MAX_CONTENT_CHARS = 50_000

# Content is frozen from the moment a chunk is queued.
_EDITABLE_CONTENT = frozenset({"bozza", "pronto"})


@dataclass(frozen=True)
class ChunkDraft:
    title: str
    content: str
    section: str | None = None
    page_range: str | None = None


def _word_count(text: str) -> int:
    return len(text.split())


class ChunkRepository:
    """Read access to chunks."""

    def __init__(self, db: Session) -> None:
        self._db = db

    def get(self, chunk_id: uuid.UUID) -> Chunk:
        chunk = self._db.query(Chunk).filter(Chunk.id == chunk_id).first()
        if chunk is None:
            raise NotFoundError(f"Chunk {chunk_id} not found", [chunk_id])
        return chunk

    def get_owned(self, chunk_id: uuid.UUID, owner_id: str) -> Chunk:
        """Return the chunk if its project belongs to *owner_id*."""
        chunk = (
            self._db.query(Chunk)
            .join(Project, Project.id == Chunk.project_id)
            .filter(Chunk.id == chunk_id, Project.owner_id == owner_id)
            .first()
        )
        if chunk is None:
            raise NotFoundError(f"Chunk {chunk_id} not found", [chunk_id])
        return chunk

    def get_many(self, chunk_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, Chunk]:
        ids = list(chunk_ids)
        if not ids:
            return {}
        return {c.id: c for c in self._db.query(Chunk).filter(Chunk.id.in_(ids)).all()}

    def list_for_project(self, project_id: uuid.UUID) -> list[Chunk]:
        return (
            self._db.query(Chunk)
            .filter(Chunk.project_id == project_id)
            .order_by(Chunk.order_index.asc())
            .all()
        )

    def next_order_index(self, project_id: uuid.UUID) -> int:
        last = (
            self._db.query(func.max(Chunk.order_index))
            .filter(Chunk.project_id == project_id)
            .scalar()
        )
        return (last or 0) + 1


class ChunkEditor(ChunkRepository):
    """Author capability: create and edit drafts, mark them ready, reset failures."""

    def create(
        self,
        project: Project,
        title: str,
        content: str,
        section: str | None = None,
        page_range: str | None = None,
    ) -> Chunk:
        chunk = self._build(project, ChunkDraft(title, content, section, page_range))
        self._db.commit()
        self._db.refresh(chunk)
        return chunk

    def create_many(self, project: Project, drafts: Iterable[ChunkDraft]) -> list[Chunk]:
        """Persist *drafts* in order, all or nothing."""
        try:
            chunks = [self._build(project, d) for d in drafts]
        except ValidationError:
            self._db.rollback()
            raise
        self._db.commit()
        for chunk in chunks:
            self._db.refresh(chunk)
        return chunks

    def update(
        self,
        chunk: Chunk,
        title: str | None = None,
        section: str | None = None,
        content: str | None = None,
    ) -> Chunk:
        if chunk.status in CHUNK_ACTIVE:
            raise InvalidTransition(
                f"Chunk {chunk.id} is '{chunk.status}' and cannot be edited", [chunk.id]
            )
        if title is not None:
            chunk.title = self._clean_title(title)
        if section is not None:
            chunk.section = section.strip() or None
        if content is not None:
            if chunk.status not in _EDITABLE_CONTENT:
                raise InvalidTransition(
                    f"Content of chunk {chunk.id} is frozen in status '{chunk.status}'",
                    [chunk.id],
                )
            clean = self._clean_content(content)
            chunk.content = clean
            chunk.char_count = len(clean)
            chunk.word_count = _word_count(clean)
        chunk.updated_at = utcnow()
        self._db.commit()
        self._db.refresh(chunk)
        return chunk

    def mark_ready(self, chunk: Chunk) -> Chunk:
        check_chunk_transition(chunk.status, "pronto", "author")
        if not chunk.content.strip():
            raise ValidationError(f"Chunk {chunk.id} has no content", [chunk.id])
        return self._set_status(chunk, "pronto")

    def reset(self, chunk: Chunk) -> Chunk:
        """Return a failed chunk to draft so it can be fixed and retried."""
        check_chunk_transition(chunk.status, "bozza", "author")
        return self._set_status(chunk, "bozza")

    def delete(self, chunk: Chunk) -> None:
        if chunk.status in CHUNK_ACTIVE:
            raise InvalidTransition(
                f"Chunk {chunk.id} is '{chunk.status}' and cannot be deleted", [chunk.id]
            )
        self._db.delete(chunk)
        self._db.commit()

    def _set_status(self, chunk: Chunk, status: str) -> Chunk:
        chunk.status = status
        chunk.updated_at = utcnow()
        self._db.commit()
        self._db.refresh(chunk)
        return chunk

    def _build(self, project: Project, draft: ChunkDraft) -> Chunk:
        if project.status != "active":
            raise ValidationError(
                f"Project is '{project.status}'. Only active projects accept new chunks."
            )
        content = self._clean_content(draft.content)
        chunk = Chunk(
            project_id=project.id,
            order_index=self.next_order_index(project.id),
            title=self._clean_title(draft.title),
            section=(draft.section or "").strip() or None,
            page_range=(draft.page_range or "").strip() or None,
            content=content,
            char_count=len(content),
            word_count=_word_count(content),
            status="bozza",
        )
        self._db.add(chunk)
        self._db.flush()
        project.last_activity_at = utcnow()
        return chunk

    @staticmethod
    def _clean_title(title: str) -> str:
        clean = title.strip()
        if len(clean) < MIN_TITLE_CHARS:
            raise ValidationError(f"Title must be at least {MIN_TITLE_CHARS} characters")
        return clean[:MAX_TITLE_CHARS]

    @staticmethod
    def _clean_content(content: str) -> str:
        clean = content.strip()
        if len(clean) < MIN_CONTENT_CHARS:
            raise ValidationError(f"Content must be at least {MIN_CONTENT_CHARS} characters")
        if len(clean) > MAX_CONTENT_CHARS:
            raise ValidationError(
                f"Content too long: {len(clean)} characters. "
                f"Maximum {MAX_CONTENT_CHARS} characters per chunk."
            )
        return clean


class QueueWriter:
    """Scheduler capability: move ready chunks into a job and back out again."""

    def __init__(self, db: Session) -> None:
        self._db = db

    def reserve(self, chunks: list[Chunk]) -> int:
        """Move *chunks* from ``pronto`` to ``in_coda``; returns the number moved.

        The update is conditional on the stored status, so a concurrent
        reservation of the same chunk shows up as a short count.
        """
        check_chunk_transition("pronto", "in_coda", "scheduler")
        result = self._db.execute(
            update(Chunk)
            .where(Chunk.id.in_([c.id for c in chunks]), Chunk.status == "pronto")
            .values(status="in_coda", updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount  # type: ignore[attr-defined, no-any-return]

    def release(self, chunks: Iterable[Chunk]) -> list[uuid.UUID]:
        """Return still-active chunks to ``pronto``; returns the ids released."""
        released: list[uuid.UUID] = []
        now = utcnow()
        for chunk in chunks:
            if chunk.status not in CHUNK_ACTIVE:
                continue
            check_chunk_transition(chunk.status, "pronto", "scheduler")
            chunk.status = "pronto"
            chunk.updated_at = now
            released.append(chunk.id)
        return released

    def close_results(self, results: Iterable[BatchResult], reason: str) -> None:
        """Mark results that never got an outcome as failed with *reason*."""
        now = utcnow()
        for result in results:
            if result.status in RESULT_TERMINAL:
                continue
            result.status = "fallito"
            result.error_message = reason
            result.completed_at = now


class ResultWriter:
    """Reconciler capability: record processing progress and per-chunk outcomes."""

    def __init__(self, db: Session) -> None:
        self._db = db

    def mark_processing(self, chunk: Chunk | None, result: BatchResult) -> None:
        if result.status == "in_attesa":
            result.status = "elaborazione"
        if chunk is not None and chunk.status == "in_coda":
            check_chunk_transition(chunk.status, "elaborazione", "reconciler")
            chunk.status = "elaborazione"
            chunk.updated_at = utcnow()

    def complete(
        self,
        chunk: Chunk | None,
        result: BatchResult,
        output: str,
        tokens_in: int,
        tokens_out: int,
        cost_usd: float,
        latency_ms: int | None,
    ) -> None:
        self._finish(result, "completato", latency_ms)
        result.output = output
        result.tokens_in = tokens_in
        result.tokens_out = tokens_out
        result.cost_usd = cost_usd
        self._move_chunk(chunk, result, "completato")

    def fail(
        self,
        chunk: Chunk | None,
        result: BatchResult,
        error: str,
        tokens_in: int = 0,
        tokens_out: int = 0,
        cost_usd: float = 0.0,
        latency_ms: int | None = None,
    ) -> None:
        self._finish(result, "fallito", latency_ms)
        result.error_message = error
        result.tokens_in = tokens_in
        result.tokens_out = tokens_out
        result.cost_usd = cost_usd
        self._move_chunk(chunk, result, "errore")

    def _finish(self, result: BatchResult, status: str, latency_ms: int | None) -> None:
        if result.status in RESULT_TERMINAL:
            raise InvalidTransition(
                f"Result for chunk {result.chunk_id} is already '{result.status}'",
                [result.chunk_id],
            )
        result.status = status
        result.latency_ms = latency_ms
        result.completed_at = utcnow()

    def _move_chunk(self, chunk: Chunk | None, result: BatchResult, target: str) -> None:
        if chunk is None:
            return
        self.mark_processing(chunk, result)
        check_chunk_transition(chunk.status, target, "reconciler")
        chunk.status = target
        chunk.result_id = result.id
        chunk.updated_at = utcnow()
