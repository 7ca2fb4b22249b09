"""ProjectFinalizer: merge completed chunk outputs into a versioned final document."""

import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import func
from sqlalchemy.orm import Session

from chunkbatch.db import utcnow
from chunkbatch.models.batch_result import BatchResult
from chunkbatch.models.chunk import Chunk
from chunkbatch.models.final_document import FinalDocument
from chunkbatch.models.project import Project
from chunkbatch.services.chunks import ChunkRepository
from chunkbatch.services.errors import InvalidTransition
from chunkbatch.services.events import EventBus, ProjectFinalized, bus
from chunkbatch.services.projects import ProjectService
from chunkbatch.services.state_machine import skip_reason

logger = logging.getLogger(__name__)

SECTION_SEPARATOR = "\n\n---\n\n"
_FINALIZABLE = frozenset({"active", "completed"})


@dataclass(frozen=True)
class SkippedChunk:
    chunk_id: uuid.UUID
    title: str
    status: str
    reason: str  # not_ready | failed | queued


@dataclass
class FinalizedDocument:
    document: FinalDocument
    quality_score: float
    skipped_chunks: list[SkippedChunk] = field(default_factory=list)
    total_characters: int = 0
    compression_ratio: float = 0.0


def _header(project: Project) -> str:
    lines = [f"# {project.title}"]
    for label, value in (("Faculty", project.faculty), ("Topic", project.topic), ("Level", project.level)):
        if value:
            lines.append(f"- {label}: {value}")
    return "\n".join(lines)


class ProjectFinalizer:
    def __init__(self, events: EventBus = bus) -> None:
        self._events = events

    def finalize(self, project_id: uuid.UUID, db: Session, owner_id: str | None = None) -> FinalizedDocument:
        """Merge every ``completato`` chunk, in order, into a new document version.

        Raises InvalidTransition if the project is abandoned or has no completed chunks.
        """
        project = ProjectService().get(project_id, db, owner_id)
        if project.status not in _FINALIZABLE:
            raise InvalidTransition(f"Project is '{project.status}' and cannot be finalized")

        chunks = ChunkRepository(db).list_for_project(project.id)
        completed = [c for c in chunks if c.status == "completato"]
        if not completed:
            raise InvalidTransition(
                "No completed chunks to finalize", [c.id for c in chunks]
            )
        skipped = [
            SkippedChunk(chunk_id=c.id, title=c.title, status=c.status, reason=skip_reason(c.status))
            for c in chunks
            if c.status != "completato"
        ]

        outputs = self._outputs(completed, db)
        sections = [
            f"## {n}. {chunk.title}\n\n{outputs.get(chunk.id, '').strip()}"
            for n, chunk in enumerate(completed, start=1)
        ]
        content = SECTION_SEPARATOR.join([_header(project), *sections])
        quality = round(len(completed) / len(chunks), 4)

        previous = (
            db.query(func.max(FinalDocument.version)).filter(FinalDocument.project_id == project.id).scalar()
        )
        document = FinalDocument(
            project_id=project.id,
            version=(previous or 0) + 1,
            title=project.title,
            content=content,
            quality_score=quality,
            included_chunk_ids=[str(c.id) for c in completed],
            skipped_chunks=[
                {"chunk_id": str(s.chunk_id), "title": s.title, "status": s.status, "reason": s.reason}
                for s in skipped
            ],
        )
        db.add(document)
        db.flush()

        now = utcnow()
        project.status = "completed"
        project.completed_at = now
        project.last_activity_at = now
        project.final_document_id = document.id
        db.commit()
        db.refresh(document)

        output_chars = sum(len(outputs.get(c.id, "")) for c in completed)
        input_chars = sum(c.char_count for c in completed)
        logger.info(
            "project %s finalized as version %d (%d chunks, %d skipped)",
            project.id,
            document.version,
            len(completed),
            len(skipped),
        )
        self._events.publish(ProjectFinalized(project_id=project.id, document_id=document.id, version=document.version))
        return FinalizedDocument(
            document=document,
            quality_score=quality,
            skipped_chunks=skipped,
            total_characters=len(content),
            compression_ratio=round(output_chars / input_chars, 4) if input_chars else 0.0,
        )

    @staticmethod
    def _outputs(chunks: list[Chunk], db: Session) -> dict[uuid.UUID, str]:
        result_ids = [c.result_id for c in chunks if c.result_id is not None]
        if not result_ids:
            return {}
        results = db.query(BatchResult).filter(BatchResult.id.in_(result_ids)).all()
        by_id = {r.id: r.output or "" for r in results}
        return {c.id: by_id.get(c.result_id, "") for c in chunks if c.result_id is not None}
