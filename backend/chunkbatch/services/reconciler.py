"""SyncReconciler: pull authoritative provider state and apply it to jobs and chunks.

Also hosts the background poll loop that reconciles every processing job on a
fixed interval.
"""

import logging
import os
import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass

from sqlalchemy.orm import Session

from chunkbatch.db import utcnow
from chunkbatch.models.batch_job import BatchJob
from chunkbatch.models.batch_result import BatchResult
from chunkbatch.services.chunks import ChunkRepository, ResultWriter
from chunkbatch.services.errors import NotFoundError, PartialFailure, ProviderUnavailable
from chunkbatch.services.estimation import token_cost_usd
from chunkbatch.services.events import EventBus, JobCompleted, JobFailed, JobProgressed, bus
from chunkbatch.services.locks import job_lock
from chunkbatch.services.provider import BatchProviderClient, ProviderSnapshot
from chunkbatch.services.state_machine import JOB_TERMINAL, RESULT_TERMINAL, check_job_transition

logger = logging.getLogger(__name__)

MISSING_RESULT_MESSAGE = "no result returned by provider"
_JOB_FAILURE_MESSAGES = {
    "failed": "batch job failed at the provider",
    "expired": "batch job expired before the provider finished it",
    "cancelled": "batch job was cancelled at the provider",
}
_MAX_POLL_WORKERS = 8


@dataclass
class ReconcileResult:
    job: BatchJob
    changed: bool
    partial_failure: PartialFailure | None = None


def partial_failure_of(job: BatchJob) -> PartialFailure | None:
    """Per-chunk breakdown for a completed job in which some chunks failed."""
    if job.status != "completato":
        return None
    failed = [r.chunk_id for r in job.results if r.status == "fallito"]
    if not failed:
        return None
    succeeded = [r.chunk_id for r in job.results if r.status == "completato"]
    return PartialFailure(job.id, failed, succeeded)


class SyncReconciler:
    def __init__(self, provider: BatchProviderClient, events: EventBus = bus) -> None:
        self._provider = provider
        self._events = events

    def reconcile(self, job_id: uuid.UUID, db: Session) -> ReconcileResult:
        """Bring *job_id* in line with the provider.

        Safe to repeat: an unchanged provider snapshot produces no writes.
        Raises ProviderUnavailable, with local state untouched, if the
        provider cannot be read.
        """
        with job_lock(job_id):
            return self._reconcile_locked(job_id, db)

    def _reconcile_locked(self, job_id: uuid.UUID, db: Session) -> ReconcileResult:
        job = (
            db.query(BatchJob)
            .filter(BatchJob.id == job_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if job is None:
            raise NotFoundError(f"Batch job {job_id} not found")
        if job.status in JOB_TERMINAL or not job.provider_handle:
            db.rollback()
            return ReconcileResult(job, False, partial_failure_of(job))

        keys = [str(r.chunk_id) for r in job.results]
        try:
            snapshot = self._provider.fetch(job.provider_handle, keys)
        except ProviderUnavailable:
            db.rollback()
            raise

        cursor = snapshot.fingerprint()
        if cursor == job.provider_cursor:
            db.rollback()
            return ReconcileResult(job, False, partial_failure_of(job))

        processed_before = job.processed_chunks
        applied = self._apply(job, snapshot, db)
        job.processed_chunks = min(job.total_chunks, processed_before + applied)
        job.progress_percent = job.processed_chunks * 100 // job.total_chunks if job.total_chunks else 0
        job.actual_cost_usd = round(sum(r.cost_usd for r in job.results), 6)
        job.provider_cursor = cursor
        job.last_synced_at = utcnow()
        db.commit()
        db.refresh(job)

        logger.info(
            "batch job %s reconciled: provider %s, %d/%d processed",
            job.id,
            snapshot.state,
            job.processed_chunks,
            job.total_chunks,
        )
        self._publish(job, processed_before)
        return ReconcileResult(job, True, partial_failure_of(job))

    def _apply(self, job: BatchJob, snapshot: ProviderSnapshot, db: Session) -> int:
        """Write new per-item outcomes and the job-level outcome; returns items applied."""
        writer = ResultWriter(db)
        chunks = ChunkRepository(db).get_many(r.chunk_id for r in job.results)
        items = snapshot.by_key()
        now = utcnow()
        elapsed_ms = int((now - job.started_at).total_seconds() * 1000) if job.started_at else None
        pending: list[BatchResult] = [r for r in job.results if r.status not in RESULT_TERMINAL]

        if snapshot.state != "pending":
            for result in pending:
                writer.mark_processing(chunks.get(result.chunk_id), result)

        applied = 0
        for result in pending:
            item = items.get(str(result.chunk_id))
            if item is None or item.status == "running":
                continue
            chunk = chunks.get(result.chunk_id)
            cost = token_cost_usd(item.tokens_in + item.tokens_out)
            latency = item.latency_ms if item.latency_ms is not None else elapsed_ms
            if item.status == "succeeded":
                writer.complete(chunk, result, item.output or "", item.tokens_in, item.tokens_out, cost, latency)
            else:
                logger.warning("batch job %s: chunk %s failed: %s", job.id, result.chunk_id, item.error)
                writer.fail(
                    chunk,
                    result,
                    item.error or "failed at the provider",
                    item.tokens_in,
                    item.tokens_out,
                    cost,
                    latency,
                )
            applied += 1

        remaining = [r for r in job.results if r.status not in RESULT_TERMINAL]
        if snapshot.state == "succeeded":
            for result in remaining:
                logger.warning("batch job %s: no result for chunk %s", job.id, result.chunk_id)
                writer.fail(chunks.get(result.chunk_id), result, MISSING_RESULT_MESSAGE, latency_ms=elapsed_ms)
                applied += 1
            check_job_transition(job.status, "completato", "reconciler")
            job.status = "completato"
            job.completed_at = now
        elif snapshot.state in _JOB_FAILURE_MESSAGES:
            reason = snapshot.error or _JOB_FAILURE_MESSAGES[snapshot.state]
            for result in remaining:
                writer.fail(chunks.get(result.chunk_id), result, reason)
            target = "annullato" if snapshot.state == "cancelled" else "fallito"
            check_job_transition(job.status, target, "reconciler")
            job.status = target
            job.error_message = reason
            job.completed_at = now
            logger.warning("batch job %s ended as %s: %s", job.id, target, reason)
        return applied

    def _publish(self, job: BatchJob, processed_before: int) -> None:
        if job.processed_chunks != processed_before:
            self._events.publish(
                JobProgressed(
                    job_id=job.id,
                    processed_chunks=job.processed_chunks,
                    total_chunks=job.total_chunks,
                    progress_percent=job.progress_percent,
                )
            )
        succeeded = tuple(r.chunk_id for r in job.results if r.status == "completato")
        failed = tuple(r.chunk_id for r in job.results if r.status == "fallito")
        if job.status == "completato":
            self._events.publish(JobCompleted(job_id=job.id, succeeded=succeeded, failed=failed))
        elif job.status in ("fallito", "annullato"):
            self._events.publish(
                JobFailed(
                    job_id=job.id,
                    reason=job.error_message or job.status,
                    affected=failed,
                    unaffected=succeeded,
                )
            )


# ── Background poll loop ──────────────────────────────────────────────────────

_poll_thread: threading.Thread | None = None
# Set when a caller found the poll thread alive; keeps it from exiting on its next empty tick.
_rearm = False
_lock = threading.Lock()


def poll_enabled() -> bool:
    return os.environ.get("BATCH_POLL_ENABLED", "1").strip() not in ("0", "false", "no")


def _poll_interval() -> float:
    return float(os.environ.get("BATCH_POLL_INTERVAL_SECONDS", "300"))


def _reconcile_one(
    reconciler: SyncReconciler,
    session_factory: Callable[[], Session],
    job_id: uuid.UUID,
) -> str:
    db = session_factory()
    try:
        return reconciler.reconcile(job_id, db).job.status
    finally:
        db.close()


def poll_once(
    session_factory: Callable[[], Session],
    provider: BatchProviderClient,
    events: EventBus = bus,
) -> int:
    """Reconcile every processing job once, in parallel. Returns how many are still active."""
    db = session_factory()
    try:
        job_ids = [row[0] for row in db.query(BatchJob.id).filter(BatchJob.status == "elaborazione").all()]
    finally:
        db.close()
    if not job_ids:
        return 0

    reconciler = SyncReconciler(provider, events)
    remaining = 0
    with ThreadPoolExecutor(max_workers=min(len(job_ids), _MAX_POLL_WORKERS)) as pool:
        futures = {pool.submit(_reconcile_one, reconciler, session_factory, jid): jid for jid in job_ids}
        for fut in as_completed(futures):
            job_id = futures[fut]
            try:
                status = fut.result()
            except ProviderUnavailable as exc:
                logger.warning("poll loop: provider unavailable for job %s: %s", job_id, exc)
                remaining += 1
                continue
            except Exception as exc:
                logger.error("poll loop: failed to reconcile job %s: %s", job_id, exc)
                remaining += 1
                continue
            if status not in JOB_TERMINAL:
                remaining += 1
    return remaining


def ensure_poller(
    provider: BatchProviderClient,
    session_factory: Callable[[], Session] | None = None,
) -> bool:
    """Start the shared poll thread if it is enabled and not already running."""
    global _poll_thread, _rearm
    if not poll_enabled():
        return False
    if session_factory is None:
        from chunkbatch.db import get_session_factory

        session_factory = get_session_factory()
    with _lock:
        if _poll_thread is not None and _poll_thread.is_alive():
            _rearm = True
            return True
        t = threading.Thread(target=_poll_loop_thread, args=(provider, session_factory), daemon=True)
        _poll_thread = t
    t.start()
    return True


def resume_active_jobs(db: Session) -> None:
    """On startup, re-attach to jobs left in ``elaborazione`` and poll them."""
    from chunkbatch.services.provider import get_provider

    count = db.query(BatchJob).filter(BatchJob.status == "elaborazione").count()
    if not count:
        return
    try:
        provider = get_provider()
    except ValueError as exc:
        logger.error("resume: cannot build batch provider: %s", exc)
        return
    logger.info("resume: %d in-flight jobs found, starting poll thread", count)
    ensure_poller(provider)


def _poll_loop_thread(provider: BatchProviderClient, session_factory: Callable[[], Session]) -> None:
    logger.info("poll loop started")
    try:
        while True:
            time.sleep(_poll_interval())
            try:
                remaining = poll_once(session_factory, provider)
            except Exception as exc:
                logger.error("poll loop: tick failed: %s", exc)
                continue
            if _should_stop(remaining):
                logger.info("poll loop: no processing jobs remain, stopping")
                break
    finally:
        logger.info("poll loop stopped")


def _should_stop(remaining: int) -> bool:
    """Decide under ``_lock`` whether the poll thread exits; clears ``_poll_thread`` if so."""
    global _poll_thread, _rearm
    with _lock:
        rearmed, _rearm = _rearm, False
        if remaining or rearmed:
            return False
        _poll_thread = None
        return True
