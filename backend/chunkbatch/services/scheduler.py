"""BatchJobScheduler: validate a chunk selection, submit it, own the job lifecycle up to submission.

Submission is a saga: reserve (job + results + chunks ``in_coda`` in one
transaction), submit to the provider outside any transaction, then either
commit the provider handle or compensate.
"""

import logging
import os
import uuid
from collections.abc import Sequence
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.orm import Session

from chunkbatch.db import utcnow
from chunkbatch.models.batch_job import BatchJob
from chunkbatch.models.batch_result import BatchResult
from chunkbatch.models.chunk import Chunk
from chunkbatch.models.project import Project
from chunkbatch.schemas.batch import BatchConfig
from chunkbatch.services.chunks import ChunkRepository, QueueWriter
from chunkbatch.services.errors import (
    ChunkAlreadyQueued,
    DailyLimitExceeded,
    InvalidTransition,
    NotFoundError,
    ProviderRejected,
    ProviderUnavailable,
    ValidationError,
)
from chunkbatch.services.estimation import estimate_batch
from chunkbatch.services.events import EventBus, JobCancelled, JobFailed, JobSubmitted, bus
from chunkbatch.services.locks import job_lock
from chunkbatch.services.projects import ProjectService
from chunkbatch.services.prompts import SYSTEM_PROMPT, build_prompt, default_analysis_type, valid_analysis_types
from chunkbatch.services.provider import BatchProviderClient, ProviderRequest
from chunkbatch.services.state_machine import CHUNK_ACTIVE, JOB_ACTIVE, check_job_transition

logger = logging.getLogger(__name__)

MAX_CHUNKS_PER_BATCH = 50
MAX_CHUNK_CHARS = 25_000
MAX_BATCH_CHARS = 500_000
COMPLETION_WINDOW = timedelta(hours=24)


def _daily_limit() -> int:
    return int(os.environ.get("BATCH_DAILY_LIMIT", "5"))


def _stale_after() -> timedelta:
    return timedelta(hours=float(os.environ.get("BATCH_STALE_AFTER_HOURS", "24")))


def is_stale(job: BatchJob, now: datetime | None = None) -> bool:
    """True for a job still processing well past the expected completion time."""
    if job.status != "elaborazione" or job.started_at is None:
        return False
    return (now or utcnow()) - job.started_at > _stale_after()


def time_elapsed_seconds(job: BatchJob, now: datetime | None = None) -> int | None:
    if job.started_at is None:
        return None
    end = job.completed_at or now or utcnow()
    return max(0, int((end - job.started_at).total_seconds()))


class BatchJobScheduler:
    def __init__(self, provider: BatchProviderClient, events: EventBus = bus) -> None:
        self._provider = provider
        self._events = events

    def submit(
        self,
        project_id: uuid.UUID,
        chunk_ids: Sequence[uuid.UUID],
        config: BatchConfig,
        db: Session,
        owner_id: str | None = None,
    ) -> BatchJob:
        """Queue *chunk_ids* as one batch job and hand it to the provider.

        Either every chunk ends up ``in_coda`` under the new job, or nothing
        changes (validation errors) or everything is compensated (provider errors).
        """
        project, chunks = self._validate(project_id, list(chunk_ids), db, owner_id)
        config = self._resolve_analysis_type(project, config)
        job = self._reserve(project, chunks, config, db)
        ids = [c.id for c in chunks]

        with job_lock(job.id):
            requests = [
                ProviderRequest(
                    key=str(c.id),
                    system=SYSTEM_PROMPT,
                    prompt=build_prompt(project, c, config.analysis_type),
                )
                for c in chunks
            ]
            try:
                handle = self._provider.submit(str(job.id), requests, config)
            except ProviderRejected as exc:
                self._compensate(job.id, str(exc), db)
                raise ProviderRejected(str(exc), ids, job_id=job.id) from exc
            except ProviderUnavailable as exc:
                self._compensate(job.id, str(exc), db)
                raise ProviderUnavailable(str(exc), ids) from exc
            except Exception as exc:
                self._compensate(job.id, f"submission failed: {exc}", db)
                raise

            now = utcnow()
            check_job_transition(job.status, "elaborazione", "scheduler")
            job.provider_handle = handle
            job.status = "elaborazione"
            job.started_at = now
            job.expires_at = now + COMPLETION_WINDOW
            db.commit()
            db.refresh(job)

        logger.info("batch job %s submitted (%s handle %s)", job.id, self._provider.name, handle)
        self._events.publish(
            JobSubmitted(job_id=job.id, project_id=project.id, chunk_ids=tuple(ids), provider_handle=handle)
        )
        return job

    def cancel(self, job_id: uuid.UUID, db: Session, owner_id: str | None = None) -> BatchJob:
        """Cancel an active job; unfinished chunks go back to ``pronto``."""
        job = self.get(job_id, db, owner_id)
        with job_lock(job.id):
            db.refresh(job)
            if job.status not in JOB_ACTIVE:
                raise InvalidTransition(
                    f"Batch job {job.id} is '{job.status}' and cannot be cancelled", job.chunk_ids
                )
            if job.provider_handle:
                self._provider.cancel(job.provider_handle)
            check_job_transition(job.status, "annullato", "scheduler")

            writer = QueueWriter(db)
            chunks = ChunkRepository(db).get_many(job.chunk_ids)
            released = writer.release(chunks[cid] for cid in job.chunk_ids if cid in chunks)
            writer.close_results(job.results, "job cancelled")
            job.status = "annullato"
            job.completed_at = utcnow()
            db.commit()
            db.refresh(job)

        logger.info("batch job %s cancelled, %d chunks released", job.id, len(released))
        self._events.publish(JobCancelled(job_id=job.id, released=tuple(released)))
        return job

    def get(self, job_id: uuid.UUID, db: Session, owner_id: str | None = None) -> BatchJob:
        job = db.query(BatchJob).filter(BatchJob.id == job_id).first()
        if job is None or (owner_id is not None and job.owner_id != owner_id):
            raise NotFoundError(f"Batch job {job_id} not found")
        return job

    def list_for_project(
        self, project_id: uuid.UUID, db: Session, owner_id: str | None = None
    ) -> list[BatchJob]:
        project = ProjectService().get(project_id, db, owner_id)
        return (
            db.query(BatchJob)
            .filter(BatchJob.project_id == project.id)
            .order_by(BatchJob.created_at.desc())
            .all()
        )

    # ── Saga steps ────────────────────────────────────────────────────────────

    def _validate(
        self,
        project_id: uuid.UUID,
        chunk_ids: list[uuid.UUID],
        db: Session,
        owner_id: str | None,
    ) -> tuple[Project, list[Chunk]]:
        if not chunk_ids:
            raise ValidationError("Select at least one chunk")
        duplicates = sorted({cid for cid in chunk_ids if chunk_ids.count(cid) > 1}, key=str)
        if duplicates:
            raise ValidationError("Duplicate chunk ids in selection", duplicates)
        if len(chunk_ids) > MAX_CHUNKS_PER_BATCH:
            raise ValidationError(
                f"Too many chunks: {len(chunk_ids)}. Maximum {MAX_CHUNKS_PER_BATCH} per batch."
            )

        project = ProjectService().get(project_id, db, owner_id)
        if project.status != "active":
            raise ValidationError(f"Project is '{project.status}'. Only active projects accept batch jobs.")

        found = ChunkRepository(db).get_many(chunk_ids)
        foreign = [cid for cid in chunk_ids if cid not in found or found[cid].project_id != project.id]
        if foreign:
            raise ValidationError(f"{len(foreign)} chunk(s) do not belong to this project", foreign)
        chunks = [found[cid] for cid in chunk_ids]

        queued = {c.id for c in chunks if c.status in CHUNK_ACTIVE}
        queued.update(self._in_active_jobs(chunk_ids, db))
        if queued:
            ordered = [cid for cid in chunk_ids if cid in queued]
            raise ChunkAlreadyQueued(
                f"{len(ordered)} chunk(s) already belong to an active batch job", ordered
            )

        not_ready = [c.id for c in chunks if c.status != "pronto"]
        if not_ready:
            raise ValidationError(f"{len(not_ready)} chunk(s) are not ready (status must be 'pronto')", not_ready)

        too_long = [c.id for c in chunks if c.char_count > MAX_CHUNK_CHARS]
        if too_long:
            raise ValidationError(
                f"{len(too_long)} chunk(s) exceed {MAX_CHUNK_CHARS} characters", too_long
            )
        total_chars = sum(c.char_count for c in chunks)
        if total_chars > MAX_BATCH_CHARS:
            raise ValidationError(
                f"Batch too large: {total_chars} characters. Maximum {MAX_BATCH_CHARS} per batch."
            )

        self._check_daily_limit(project.owner_id, db)
        return project, chunks

    def _in_active_jobs(self, chunk_ids: list[uuid.UUID], db: Session) -> set[uuid.UUID]:
        rows = (
            db.query(BatchResult.chunk_id)
            .join(BatchJob, BatchJob.id == BatchResult.job_id)
            .filter(BatchResult.chunk_id.in_(chunk_ids), BatchJob.status.in_(JOB_ACTIVE))
            .all()
        )
        return {row[0] for row in rows}

    @staticmethod
    def _resolve_analysis_type(project: Project, config: BatchConfig) -> BatchConfig:
        if config.analysis_type is None:
            return config.model_copy(update={"analysis_type": default_analysis_type(project.level)})
        if config.analysis_type not in valid_analysis_types(project.level):
            raise ValidationError(
                f"Analysis type '{config.analysis_type}' is not valid for level '{project.level or 'n/a'}'"
            )
        return config

    def _check_daily_limit(self, owner_id: str, db: Session) -> None:
        limit = _daily_limit()
        day_start = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        count = (
            db.query(func.count(BatchJob.id))
            .filter(BatchJob.owner_id == owner_id, BatchJob.created_at >= day_start)
            .scalar()
        ) or 0
        if count >= limit:
            raise DailyLimitExceeded(
                f"Daily limit reached: {count}/{limit} batch jobs today. Try again tomorrow."
            )

    def _reserve(self, project: Project, chunks: list[Chunk], config: BatchConfig, db: Session) -> BatchJob:
        ids = [c.id for c in chunks]
        tokens, cost = estimate_batch([c.content for c in chunks], config.max_tokens_per_chunk)
        job = BatchJob(
            id=uuid.uuid4(),
            project_id=project.id,
            owner_id=project.owner_id,
            status="in_coda",
            analysis_type=config.analysis_type,
            config=config.model_dump(),
            total_chunks=len(chunks),
            processed_chunks=0,
            progress_percent=0,
            estimated_tokens=tokens,
            estimated_cost_usd=cost,
            provider=self._provider.name,
        )
        db.add(job)

        prior = dict(
            db.query(BatchResult.chunk_id, func.count(BatchResult.id))
            .filter(BatchResult.chunk_id.in_(ids))
            .group_by(BatchResult.chunk_id)
            .all()
        )
        for position, chunk in enumerate(chunks):
            db.add(
                BatchResult(
                    job_id=job.id,
                    chunk_id=chunk.id,
                    position=position,
                    status="in_attesa",
                    retry_count=prior.get(chunk.id, 0),
                )
            )
        db.flush()

        moved = QueueWriter(db).reserve(chunks)
        if moved != len(chunks):
            db.rollback()
            raise ChunkAlreadyQueued("Selection changed concurrently; some chunks were queued by another job", ids)
        ProjectService.touch(project)
        db.commit()
        db.refresh(job)
        logger.info("BatchJob %s persisted (state=in_coda, %d chunks)", job.id, len(chunks))
        return job

    def _compensate(self, job_id: uuid.UUID, reason: str, db: Session) -> None:
        """Undo a reservation after the provider refused or could not take the batch."""
        db.rollback()
        job = self.get(job_id, db)
        check_job_transition(job.status, "fallito", "scheduler")
        writer = QueueWriter(db)
        chunks = ChunkRepository(db).get_many(job.chunk_ids)
        released = writer.release(chunks[cid] for cid in job.chunk_ids if cid in chunks)
        writer.close_results(job.results, reason)
        job.status = "fallito"
        job.error_message = reason
        job.completed_at = utcnow()
        db.commit()
        logger.warning("batch job %s failed at submission, %d chunks released: %s", job.id, len(released), reason)
        self._events.publish(JobFailed(job_id=job.id, reason=reason, affected=tuple(released)))
