"""BatchJob ORM model: a group of chunks submitted together to the batch provider."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, CheckConstraint, Float, ForeignKey, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chunkbatch.db import Base, utcnow

if TYPE_CHECKING:
    from chunkbatch.models.batch_result import BatchResult


class BatchJob(Base):
    __tablename__ = "batch_jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    owner_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    # status: in_coda | elaborazione | completato | fallito | annullato
    status: Mapped[str] = mapped_column(Text, nullable=False, default="in_coda")
    analysis_type: Mapped[str] = mapped_column(Text, nullable=False)
    config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)
    processed_chunks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_cost_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    actual_cost_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    provider_handle: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Fingerprint of the last provider snapshot applied by the reconciler.
    provider_cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(nullable=True)

    results: Mapped[list[BatchResult]] = relationship(
        "BatchResult",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="BatchResult.position",
    )

    __table_args__ = (
        CheckConstraint("processed_chunks <= total_chunks", name="ck_batch_jobs_processed"),
    )

    @property
    def chunk_ids(self) -> list[uuid.UUID]:
        return [r.chunk_id for r in self.results]
