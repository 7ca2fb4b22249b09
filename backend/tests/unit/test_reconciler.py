"""Unit tests for SyncReconciler and the background poll loop."""

import threading
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

import pytest
from conftest import FakeProvider, failed, running, status_of, succeeded
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from chunkbatch.db import Base, import_models
from chunkbatch.models.batch_job import BatchJob
from chunkbatch.models.chunk import Chunk
from chunkbatch.models.project import Project
from chunkbatch.schemas.batch import BatchConfig
from chunkbatch.services import reconciler as reconciler_module
from chunkbatch.services.errors import NotFoundError, ProviderUnavailable
from chunkbatch.services.estimation import token_cost_usd
from chunkbatch.services.events import EventBus, JobCompleted, JobFailed, JobProgressed
from chunkbatch.services.reconciler import (
    MISSING_RESULT_MESSAGE,
    SyncReconciler,
    ensure_poller,
    poll_enabled,
    poll_once,
)
from chunkbatch.services.scheduler import BatchJobScheduler

Submitted = tuple[BatchJob, list[Chunk]]


@contextmanager
def count_writes(db: Session) -> Iterator[list[str]]:
    """Collect every INSERT/UPDATE/DELETE issued on *db*'s engine."""
    engine = db.get_bind()
    writes: list[str] = []

    def _record(conn, cursor, statement, parameters, context, executemany) -> None:  # noqa: ANN001
        if statement.lstrip().upper().startswith(("INSERT", "UPDATE", "DELETE")):
            writes.append(statement)

    event.listen(engine, "before_cursor_execute", _record)
    try:
        yield writes
    finally:
        event.remove(engine, "before_cursor_execute", _record)


@pytest.fixture()
def three_chunk_job(
    make_project: Callable[..., Project],
    make_chunks: Callable[..., list[Chunk]],
    submit: Callable[..., BatchJob],
) -> Submitted:
    project = make_project()
    chunks = make_chunks(project, 3)
    return submit(project, chunks), chunks


@pytest.fixture()
def reconciler(provider: FakeProvider, events: tuple[EventBus, list[object]]) -> SyncReconciler:
    return SyncReconciler(provider, events=events[0])


class TestProgress:
    def test_two_of_three_done(
        self, db_session: Session, provider: FakeProvider, reconciler: SyncReconciler, three_chunk_job: Submitted
    ) -> None:
        job, (c1, c2, c3) = three_chunk_job
        provider.report(job, "running", succeeded(c1, "first"), succeeded(c2, "second"), running(c3))

        outcome = reconciler.reconcile(job.id, db_session)

        job = outcome.job
        assert outcome.changed
        assert job.status == "elaborazione"
        assert job.processed_chunks == 2
        assert job.progress_percent == 66
        assert [status_of(db_session, c.id) for c in (c1, c2, c3)] == ["completato", "completato", "elaborazione"]
        by_chunk = {r.chunk_id: r for r in job.results}
        assert by_chunk[c1.id].output == "first"
        assert by_chunk[c1.id].status == "completato"
        assert by_chunk[c1.id].tokens_in == 1000 and by_chunk[c1.id].tokens_out == 500
        assert by_chunk[c1.id].latency_ms == 1200
        assert by_chunk[c1.id].cost_usd == token_cost_usd(1500)
        assert by_chunk[c3.id].status == "elaborazione"
        assert job.actual_cost_usd == pytest.approx(2 * token_cost_usd(1500))
        assert job.last_synced_at is not None

    def test_chunk_points_at_its_result(
        self, db_session: Session, provider: FakeProvider, reconciler: SyncReconciler, three_chunk_job: Submitted
    ) -> None:
        job, (c1, c2, c3) = three_chunk_job
        provider.report(job, "running", succeeded(c1), running(c2), running(c3))

        job = reconciler.reconcile(job.id, db_session).job

        chunk = db_session.get(Chunk, c1.id)
        assert chunk is not None
        assert chunk.result_id == next(r.id for r in job.results if r.chunk_id == c1.id)

    def test_unchanged_snapshot_writes_nothing(
        self, db_session: Session, provider: FakeProvider, reconciler: SyncReconciler, three_chunk_job: Submitted
    ) -> None:
        job, (c1, c2, c3) = three_chunk_job
        provider.report(job, "running", succeeded(c1), succeeded(c2), running(c3))
        first = reconciler.reconcile(job.id, db_session).job
        synced_at = first.last_synced_at

        with count_writes(db_session) as writes:
            again = reconciler.reconcile(job.id, db_session)

        assert writes == []
        assert not again.changed
        assert again.job.processed_chunks == 2
        assert again.job.last_synced_at == synced_at
        assert [status_of(db_session, c.id) for c in (c1, c2, c3)] == ["completato", "completato", "elaborazione"]
        assert provider.fetch_calls == 2

    def test_progress_never_decreases(
        self, db_session: Session, provider: FakeProvider, reconciler: SyncReconciler, three_chunk_job: Submitted
    ) -> None:
        job, (c1, c2, c3) = three_chunk_job
        provider.report(job, "running", succeeded(c1), succeeded(c2), running(c3))
        reconciler.reconcile(job.id, db_session)
        # A later, thinner snapshot must not roll back what was already applied.
        provider.report(job, "running", running(c1), running(c2), running(c3))

        job = reconciler.reconcile(job.id, db_session).job

        assert job.processed_chunks == 2
        assert status_of(db_session, c1.id) == "completato"

    def test_pending_provider_job_leaves_chunks_queued(
        self, db_session: Session, provider: FakeProvider, reconciler: SyncReconciler, three_chunk_job: Submitted
    ) -> None:
        job, chunks = three_chunk_job

        job = reconciler.reconcile(job.id, db_session).job

        assert job.processed_chunks == 0
        assert [status_of(db_session, c.id) for c in chunks] == ["in_coda"] * 3

    def test_publishes_progress(
        self,
        db_session: Session,
        provider: FakeProvider,
        reconciler: SyncReconciler,
        events: tuple[EventBus, list[object]],
        three_chunk_job: Submitted,
    ) -> None:
        job, (c1, c2, c3) = three_chunk_job
        provider.report(job, "running", succeeded(c1), running(c2), running(c3))

        reconciler.reconcile(job.id, db_session)

        progressed = [e for e in events[1] if isinstance(e, JobProgressed)]
        assert progressed == [JobProgressed(job_id=job.id, processed_chunks=1, total_chunks=3, progress_percent=33)]


class TestCompletion:
    def test_all_succeeded_completes_job(
        self,
        db_session: Session,
        provider: FakeProvider,
        reconciler: SyncReconciler,
        events: tuple[EventBus, list[object]],
        three_chunk_job: Submitted,
    ) -> None:
        job, chunks = three_chunk_job
        provider.report(job, "succeeded", *(succeeded(c) for c in chunks))

        outcome = reconciler.reconcile(job.id, db_session)

        assert outcome.job.status == "completato"
        assert outcome.job.processed_chunks == 3
        assert outcome.job.progress_percent == 100
        assert outcome.job.completed_at is not None
        assert outcome.partial_failure is None
        assert [status_of(db_session, c.id) for c in chunks] == ["completato"] * 3
        completed = [e for e in events[1] if isinstance(e, JobCompleted)]
        assert completed == [JobCompleted(job_id=job.id, succeeded=tuple(c.id for c in chunks), failed=())]

    def test_partial_failure_is_reported(
        self, db_session: Session, provider: FakeProvider, reconciler: SyncReconciler, three_chunk_job: Submitted
    ) -> None:
        job, (c1, c2, c3) = three_chunk_job
        provider.report(job, "succeeded", succeeded(c1), failed(c2, "safety block"), succeeded(c3))

        outcome = reconciler.reconcile(job.id, db_session)

        assert outcome.job.status == "completato"
        assert outcome.job.processed_chunks == 3
        assert outcome.partial_failure is not None
        assert outcome.partial_failure.failed == [c2.id]
        assert outcome.partial_failure.succeeded == [c1.id, c3.id]
        assert status_of(db_session, c2.id) == "errore"
        result = next(r for r in outcome.job.results if r.chunk_id == c2.id)
        assert result.error_message == "safety block"

    def test_missing_items_fail_their_chunks(
        self, db_session: Session, provider: FakeProvider, reconciler: SyncReconciler, three_chunk_job: Submitted
    ) -> None:
        job, (c1, c2, c3) = three_chunk_job
        provider.report(job, "succeeded", succeeded(c1))

        outcome = reconciler.reconcile(job.id, db_session)

        assert outcome.job.status == "completato"
        assert outcome.job.processed_chunks == 3
        assert [status_of(db_session, c.id) for c in (c2, c3)] == ["errore", "errore"]
        messages = {r.chunk_id: r.error_message for r in outcome.job.results}
        assert messages[c2.id] == MISSING_RESULT_MESSAGE

    def test_terminal_job_is_left_alone(
        self, db_session: Session, provider: FakeProvider, reconciler: SyncReconciler, three_chunk_job: Submitted
    ) -> None:
        job, chunks = three_chunk_job
        provider.report(job, "succeeded", *(succeeded(c) for c in chunks))
        reconciler.reconcile(job.id, db_session)
        provider.report(job, "failed", error="late failure")

        with count_writes(db_session) as writes:
            outcome = reconciler.reconcile(job.id, db_session)

        assert writes == []
        assert outcome.job.status == "completato"
        assert provider.fetch_calls == 1


class TestJobFailure:
    def test_failed_job_keeps_completed_chunks(
        self,
        db_session: Session,
        provider: FakeProvider,
        reconciler: SyncReconciler,
        events: tuple[EventBus, list[object]],
        three_chunk_job: Submitted,
    ) -> None:
        job, (c1, c2, c3) = three_chunk_job
        provider.report(job, "running", succeeded(c1), succeeded(c2), running(c3))
        reconciler.reconcile(job.id, db_session)
        provider.report(job, "failed", succeeded(c1), succeeded(c2), error="quota exhausted")

        job = reconciler.reconcile(job.id, db_session).job

        assert job.status == "fallito"
        assert job.error_message == "quota exhausted"
        assert job.processed_chunks == 2
        assert [status_of(db_session, c.id) for c in (c1, c2, c3)] == ["completato", "completato", "errore"]
        failure = [e for e in events[1] if isinstance(e, JobFailed)][-1]
        assert failure.affected == (c3.id,)
        assert failure.unaffected == (c1.id, c2.id)

    def test_expired_job_fails_with_default_reason(
        self, db_session: Session, provider: FakeProvider, reconciler: SyncReconciler, three_chunk_job: Submitted
    ) -> None:
        job, chunks = three_chunk_job
        provider.report(job, "expired")

        job = reconciler.reconcile(job.id, db_session).job

        assert job.status == "fallito"
        assert "expired" in (job.error_message or "")
        assert [status_of(db_session, c.id) for c in chunks] == ["errore"] * 3
        assert {r.status for r in job.results} == {"fallito"}

    def test_cancelled_at_provider(
        self, db_session: Session, provider: FakeProvider, reconciler: SyncReconciler, three_chunk_job: Submitted
    ) -> None:
        job, chunks = three_chunk_job
        provider.report(job, "cancelled")

        job = reconciler.reconcile(job.id, db_session).job

        assert job.status == "annullato"
        assert [status_of(db_session, c.id) for c in chunks] == ["errore"] * 3


class TestProviderErrors:
    def test_unavailable_provider_changes_nothing(
        self, db_session: Session, provider: FakeProvider, reconciler: SyncReconciler, three_chunk_job: Submitted
    ) -> None:
        job, chunks = three_chunk_job
        provider.fetch_error = ProviderUnavailable("connection reset")

        with count_writes(db_session) as writes:
            with pytest.raises(ProviderUnavailable):
                reconciler.reconcile(job.id, db_session)

        assert writes == []
        db_session.refresh(job)
        assert job.status == "elaborazione"
        assert job.last_synced_at is None
        assert [status_of(db_session, c.id) for c in chunks] == ["in_coda"] * 3

    def test_unknown_job(self, db_session: Session, reconciler: SyncReconciler) -> None:
        with pytest.raises(NotFoundError):
            reconciler.reconcile(uuid.uuid4(), db_session)


class TestPollLoop:
    @pytest.fixture()
    def file_sessions(self, tmp_path: Path) -> sessionmaker[Session]:
        engine = create_engine(f"sqlite:///{tmp_path / 'jobs.db'}", connect_args={"check_same_thread": False})
        import_models()
        Base.metadata.create_all(bind=engine)
        return sessionmaker(bind=engine, autocommit=False, autoflush=False)

    def _submit_job(
        self, sessions: sessionmaker[Session], provider: FakeProvider, n: int
    ) -> tuple[uuid.UUID, list[Chunk]]:
        db = sessions()
        try:
            project = Project(owner_id="owner-1", title="Poll project")
            db.add(project)
            db.flush()
            chunks = []
            for i in range(n):
                text = f"Section {i + 1} on sediment transport near the estuary."
                chunk = Chunk(
                    project_id=project.id,
                    order_index=i + 1,
                    title=f"Section {i + 1}",
                    content=text,
                    char_count=len(text),
                    word_count=len(text.split()),
                    status="pronto",
                )
                db.add(chunk)
                chunks.append(chunk)
            db.commit()
            job = BatchJobScheduler(provider, events=EventBus()).submit(
                project.id, [c.id for c in chunks], BatchConfig(), db
            )
            for chunk in chunks:
                db.refresh(chunk)
                db.expunge(chunk)
            return job.id, chunks
        finally:
            db.close()

    def test_poll_once_reconciles_every_processing_job(
        self, file_sessions: sessionmaker[Session], provider: FakeProvider
    ) -> None:
        done_id, done_chunks = self._submit_job(file_sessions, provider, 2)
        busy_id, busy_chunks = self._submit_job(file_sessions, provider, 1)
        db = file_sessions()
        try:
            done = db.get(BatchJob, done_id)
            busy = db.get(BatchJob, busy_id)
            assert done is not None and busy is not None
            provider.report(done, "succeeded", *(succeeded(c) for c in done_chunks))
            provider.report(busy, "running", running(busy_chunks[0]))
        finally:
            db.close()

        remaining = poll_once(file_sessions, provider, EventBus())

        assert remaining == 1
        db = file_sessions()
        try:
            assert db.get(BatchJob, done_id).status == "completato"  # type: ignore[union-attr]
            assert db.get(BatchJob, busy_id).status == "elaborazione"  # type: ignore[union-attr]
        finally:
            db.close()

    def test_poll_once_counts_unreachable_jobs_as_remaining(
        self, file_sessions: sessionmaker[Session], provider: FakeProvider
    ) -> None:
        self._submit_job(file_sessions, provider, 1)
        provider.fetch_error = ProviderUnavailable("timeout")

        assert poll_once(file_sessions, provider, EventBus()) == 1

    def test_poll_once_with_nothing_to_do(self, file_sessions: sessionmaker[Session], provider: FakeProvider) -> None:
        assert poll_once(file_sessions, provider, EventBus()) == 0
        assert provider.fetch_calls == 0

    def test_concurrent_reconciles_apply_once(
        self, file_sessions: sessionmaker[Session], provider: FakeProvider
    ) -> None:
        job_id, (c1, c2, c3) = self._submit_job(file_sessions, provider, 3)
        db = file_sessions()
        try:
            job = db.get(BatchJob, job_id)
            assert job is not None
            provider.report(job, "running", succeeded(c1), succeeded(c2), running(c3))
        finally:
            db.close()

        reconciler = SyncReconciler(provider, events=EventBus())
        barrier = threading.Barrier(8)
        errors: list[Exception] = []

        def worker() -> None:
            session = file_sessions()
            try:
                barrier.wait()
                reconciler.reconcile(job_id, session)
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)
            finally:
                session.close()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert errors == []
        db = file_sessions()
        try:
            job = db.get(BatchJob, job_id)
            assert job is not None
            assert job.processed_chunks == 2
            assert sorted(r.status for r in job.results) == ["completato", "completato", "elaborazione"]
        finally:
            db.close()
        assert provider.fetch_calls == 8


class TestPollThread:
    @pytest.fixture(autouse=True)
    def _reset_thread_state(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BATCH_POLL_ENABLED", "1")
        monkeypatch.setenv("BATCH_POLL_INTERVAL_SECONDS", "0")
        monkeypatch.setattr(reconciler_module, "_poll_thread", None)
        monkeypatch.setattr(reconciler_module, "_rearm", False)

    def test_submit_during_last_tick_keeps_thread_running(
        self, monkeypatch: pytest.MonkeyPatch, provider: FakeProvider
    ) -> None:
        ticks: list[int] = []
        started: list[bool] = []

        def fake_poll_once(session_factory: object, provider: object) -> int:
            ticks.append(1)
            if len(ticks) == 1:
                # A new job arrives while this tick still sees nothing to do.
                started.append(ensure_poller(provider, lambda: None))  # type: ignore[arg-type, return-value]
            return 0

        monkeypatch.setattr(reconciler_module, "poll_once", fake_poll_once)
        monkeypatch.setattr(reconciler_module, "_poll_thread", threading.current_thread())

        reconciler_module._poll_loop_thread(provider, lambda: None)  # type: ignore[arg-type, return-value]

        assert started == [True]
        assert len(ticks) == 2
        assert reconciler_module._poll_thread is None

    def test_idle_thread_clears_itself(self, monkeypatch: pytest.MonkeyPatch, provider: FakeProvider) -> None:
        monkeypatch.setattr(reconciler_module, "poll_once", lambda session_factory, provider: 0)
        monkeypatch.setattr(reconciler_module, "_poll_thread", threading.current_thread())

        reconciler_module._poll_loop_thread(provider, lambda: None)  # type: ignore[arg-type, return-value]

        assert reconciler_module._poll_thread is None


def test_poll_enabled_reads_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BATCH_POLL_ENABLED", "0")
    assert not poll_enabled()
    monkeypatch.setenv("BATCH_POLL_ENABLED", "1")
    assert poll_enabled()
