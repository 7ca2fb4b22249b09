"""Batch job API router."""

import logging
import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from chunkbatch.api.deps import get_batch_provider, get_owner_id
from chunkbatch.db import get_session
from chunkbatch.models.batch_job import BatchJob
from chunkbatch.schemas.batch import (
    BatchJobListResponse,
    BatchJobResponse,
    BatchJobSchema,
    BatchJobStatusResponse,
    BatchSubmitRequest,
    PartialFailureSchema,
)
from chunkbatch.services.errors import PartialFailure, ProviderUnavailable
from chunkbatch.services.provider import BatchProviderClient
from chunkbatch.services.reconciler import SyncReconciler, ensure_poller, partial_failure_of
from chunkbatch.services.scheduler import BatchJobScheduler, is_stale, time_elapsed_seconds

logger = logging.getLogger(__name__)

router = APIRouter()


def _status_response(
    job: BatchJob,
    partial: PartialFailure | None,
    sync_error: str | None = None,
) -> BatchJobStatusResponse:
    return BatchJobStatusResponse(
        job=BatchJobSchema.model_validate(job),
        progress_percentage=job.progress_percent,
        is_stale=is_stale(job),
        time_elapsed_seconds=time_elapsed_seconds(job),
        partial_failure=(
            PartialFailureSchema(
                detail=str(partial),
                failed_chunk_ids=partial.failed,
                succeeded_chunk_ids=partial.succeeded,
            )
            if partial is not None
            else None
        ),
        sync_error=sync_error,
    )


@router.post("/jobs", status_code=201)
def submit_job(
    body: BatchSubmitRequest,
    db: Session = Depends(get_session),
    owner_id: str = Depends(get_owner_id),
    provider: BatchProviderClient = Depends(get_batch_provider),
) -> BatchJobResponse:
    """Queue the selected ready chunks as one batch job and submit it to the provider."""
    job = BatchJobScheduler(provider).submit(body.project_id, body.chunk_ids, body.config, db, owner_id)
    ensure_poller(provider)
    return BatchJobResponse(job=BatchJobSchema.model_validate(job))


@router.get("/jobs")
def list_jobs(
    project_id: uuid.UUID,
    db: Session = Depends(get_session),
    owner_id: str = Depends(get_owner_id),
    provider: BatchProviderClient = Depends(get_batch_provider),
) -> BatchJobListResponse:
    jobs = BatchJobScheduler(provider).list_for_project(project_id, db, owner_id)
    return BatchJobListResponse(jobs=[BatchJobSchema.model_validate(j) for j in jobs])


@router.get("/jobs/{job_id}")
def job_status(
    job_id: uuid.UUID,
    db: Session = Depends(get_session),
    owner_id: str = Depends(get_owner_id),
    provider: BatchProviderClient = Depends(get_batch_provider),
) -> BatchJobStatusResponse:
    """Reconcile the job with the provider, then return it.

    If the provider cannot be reached the stored state is returned with ``sync_error`` set.
    """
    job = BatchJobScheduler(provider).get(job_id, db, owner_id)
    try:
        result = SyncReconciler(provider).reconcile(job.id, db)
    except ProviderUnavailable as exc:
        logger.warning("status for job %s served from stored state: %s", job_id, exc)
        db.refresh(job)
        return _status_response(job, partial_failure_of(job), sync_error=str(exc))
    return _status_response(result.job, result.partial_failure)


@router.post("/jobs/{job_id}/sync")
def sync_job(
    job_id: uuid.UUID,
    db: Session = Depends(get_session),
    owner_id: str = Depends(get_owner_id),
    provider: BatchProviderClient = Depends(get_batch_provider),
) -> BatchJobStatusResponse:
    """Force a reconcile. Provider outages surface as 503."""
    job = BatchJobScheduler(provider).get(job_id, db, owner_id)
    result = SyncReconciler(provider).reconcile(job.id, db)
    return _status_response(result.job, result.partial_failure)


@router.post("/jobs/{job_id}/cancel")
def cancel_job(
    job_id: uuid.UUID,
    db: Session = Depends(get_session),
    owner_id: str = Depends(get_owner_id),
    provider: BatchProviderClient = Depends(get_batch_provider),
) -> BatchJobResponse:
    job = BatchJobScheduler(provider).cancel(job_id, db, owner_id)
    return BatchJobResponse(job=BatchJobSchema.model_validate(job))

