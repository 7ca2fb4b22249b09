"""Error body shared by every endpoint."""

import uuid

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    error: str
    detail: str | None = None
    chunk_ids: list[uuid.UUID] = []
