"""BatchResult ORM model: the per-chunk outcome of a batch job."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Float, ForeignKey, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chunkbatch.db import Base, utcnow

if TYPE_CHECKING:
    from chunkbatch.models.batch_job import BatchJob


class BatchResult(Base):
    __tablename__ = "batch_results"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("batch_jobs.id", ondelete="CASCADE"), nullable=False
    )
    # Not a foreign key: the audit record survives chunk deletion.
    chunk_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    # Submission order inside the job; providers without per-item ids answer by index.
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    # status: in_attesa | elaborazione | completato | fallito
    status: Mapped[str] = mapped_column(Text, nullable=False, default="in_attesa")
    tokens_in: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tokens_out: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    output: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    job: Mapped[BatchJob] = relationship("BatchJob", back_populates="results")

    __table_args__ = (UniqueConstraint("chunk_id", "job_id", name="uq_batch_results_chunk_job"),)
