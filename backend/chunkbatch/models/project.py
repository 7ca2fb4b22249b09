"""Project ORM model: one document-analysis effort owned by a user."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chunkbatch.db import Base, utcnow

if TYPE_CHECKING:
    from chunkbatch.models.chunk import Chunk


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    faculty: Mapped[str | None] = mapped_column(Text, nullable=True)
    topic: Mapped[str | None] = mapped_column(Text, nullable=True)
    # level: triennale | magistrale | dottorato (free text for other domains)
    level: Mapped[str | None] = mapped_column(Text, nullable=True)
    # status: active | completed | abandoned
    status: Mapped[str] = mapped_column(Text, nullable=False, default="active")
    final_document_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    last_activity_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    chunks: Mapped[list[Chunk]] = relationship(
        "Chunk",
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="Chunk.order_index",
    )
