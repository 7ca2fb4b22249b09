"""Shared pytest fixtures."""

import os

# The background poller must never start inside tests.
os.environ.setdefault("BATCH_POLL_ENABLED", "0")

import uuid
from collections.abc import Callable, Generator, Sequence

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from chunkbatch.db import Base, import_models
from chunkbatch.models.batch_job import BatchJob
from chunkbatch.models.chunk import Chunk
from chunkbatch.models.project import Project
from chunkbatch.schemas.batch import BatchConfig
from chunkbatch.services.events import Event, EventBus
from chunkbatch.services.provider import ProviderItem, ProviderRequest, ProviderSnapshot
from chunkbatch.services.scheduler import BatchJobScheduler


class FakeProvider:
    """Scriptable in-memory batch provider."""

    name = "fake"

    def __init__(self) -> None:
        self.submitted: list[tuple[str, list[ProviderRequest], BatchConfig]] = []
        self.snapshots: dict[str, ProviderSnapshot] = {}
        self.cancelled: list[str] = []
        self.submit_error: Exception | None = None
        self.fetch_error: Exception | None = None
        self.cancel_error: Exception | None = None
        self.fetch_calls = 0

    def submit(self, job_key: str, requests: Sequence[ProviderRequest], config: BatchConfig) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append((job_key, list(requests), config))
        return f"batches/{len(self.submitted)}"

    def fetch(self, handle: str, keys: Sequence[str]) -> ProviderSnapshot:
        self.fetch_calls += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.snapshots.get(handle, ProviderSnapshot(state="pending"))

    def cancel(self, handle: str) -> None:
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append(handle)

    def report(self, job: BatchJob, state: str, *items: ProviderItem, error: str | None = None) -> None:
        assert job.provider_handle is not None
        self.snapshots[job.provider_handle] = ProviderSnapshot(state=state, items=tuple(items), error=error)  # type: ignore[arg-type]


def succeeded(chunk: Chunk, output: str = "analysis", tokens_in: int = 1000, tokens_out: int = 500) -> ProviderItem:
    return ProviderItem(
        key=str(chunk.id),
        status="succeeded",
        output=output,
        tokens_in=tokens_in,
        tokens_out=tokens_out,
        latency_ms=1200,
    )


def failed(chunk: Chunk, error: str = "content filtered") -> ProviderItem:
    return ProviderItem(key=str(chunk.id), status="failed", error=error)


def running(chunk: Chunk) -> ProviderItem:
    return ProviderItem(key=str(chunk.id), status="running")


def make_engine() -> Engine:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    import_models()
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def session_factory() -> sessionmaker[Session]:
    return sessionmaker(bind=make_engine(), autocommit=False, autoflush=False)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Real SQLAlchemy session on an in-memory SQLite database."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def events() -> tuple[EventBus, list[Event]]:
    """A private event bus and the list of everything published on it."""
    bus = EventBus()
    seen: list[Event] = []
    bus.subscribe(seen.append)
    return bus, seen


@pytest.fixture()
def make_project(db_session: Session) -> Callable[..., Project]:
    def _make(owner_id: str = "owner-1", title: str = "Thesis on tidal energy", **kwargs: object) -> Project:
        project = Project(
            owner_id=owner_id,
            title=title,
            faculty=kwargs.pop("faculty", "Engineering"),
            topic=kwargs.pop("topic", "Tidal energy"),
            level=kwargs.pop("level", "magistrale"),
            **kwargs,
        )
        db_session.add(project)
        db_session.commit()
        db_session.refresh(project)
        return project

    return _make


@pytest.fixture()
def make_chunks(db_session: Session) -> Callable[..., list[Chunk]]:
    def _make(project: Project, n: int = 3, status: str = "pronto", content: str | None = None) -> list[Chunk]:
        chunks = []
        for i in range(n):
            text = content or f"Chapter {i + 1} discusses turbine placement and yield in detail."
            chunk = Chunk(
                project_id=project.id,
                order_index=i + 1,
                title=f"Chapter {i + 1}",
                content=text,
                char_count=len(text),
                word_count=len(text.split()),
                status=status,
            )
            db_session.add(chunk)
            chunks.append(chunk)
        db_session.commit()
        for chunk in chunks:
            db_session.refresh(chunk)
        return chunks

    return _make


@pytest.fixture()
def submit(
    db_session: Session,
    provider: FakeProvider,
    events: tuple[EventBus, list[Event]],
) -> Callable[..., BatchJob]:
    """Submit chunks through the real scheduler and return the job."""

    def _submit(project: Project, chunks: list[Chunk], config: BatchConfig | None = None) -> BatchJob:
        scheduler = BatchJobScheduler(provider, events=events[0])
        return scheduler.submit(project.id, [c.id for c in chunks], config or BatchConfig(), db_session)

    return _submit


def status_of(db: Session, chunk_id: uuid.UUID) -> str:
    chunk = db.get(Chunk, chunk_id)
    assert chunk is not None
    db.refresh(chunk)
    return chunk.status
