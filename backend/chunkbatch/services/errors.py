"""Error taxonomy for the batch analysis pipeline.

Every error names the chunks it affects so callers can tell affected chunks
from unaffected ones.
"""

import uuid
from collections.abc import Iterable


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    code = "pipeline_error"

    def __init__(self, message: str, chunk_ids: Iterable[uuid.UUID] = ()) -> None:
        super().__init__(message)
        self.chunk_ids: list[uuid.UUID] = list(chunk_ids)


class ValidationError(PipelineError):
    """Bad input. Nothing was changed."""

    code = "validation_error"


class DailyLimitExceeded(ValidationError):
    """The owner already created the maximum number of batch jobs today."""

    code = "daily_limit_exceeded"


class NotFoundError(PipelineError):
    """The entity does not exist or is not owned by the caller."""

    code = "not_found"


class InvalidTransition(PipelineError):
    """A chunk, job or project state machine was asked for an illegal move."""

    code = "invalid_transition"


class ChunkAlreadyQueued(PipelineError):
    """At least one selected chunk already belongs to an active batch job."""

    code = "chunk_already_queued"


class ProviderUnavailable(PipelineError):
    """The batch provider could not be reached. Safe to retry."""

    code = "provider_unavailable"


class ProviderRejected(PipelineError):
    """The batch provider refused the request. Retrying it unchanged will not help."""

    code = "provider_rejected"

    def __init__(
        self,
        message: str,
        chunk_ids: Iterable[uuid.UUID] = (),
        job_id: uuid.UUID | None = None,
    ) -> None:
        super().__init__(message, chunk_ids)
        self.job_id = job_id


class PartialFailure(PipelineError):
    """Some chunks of a finished job failed while the others succeeded.

    Reported alongside the job rather than raised: the job itself still
    reaches ``completato``.
    """

    code = "partial_failure"

    def __init__(
        self,
        job_id: uuid.UUID,
        failed: Iterable[uuid.UUID],
        succeeded: Iterable[uuid.UUID],
    ) -> None:
        self.job_id = job_id
        self.failed = list(failed)
        self.succeeded = list(succeeded)
        super().__init__(
            f"{len(self.failed)} of {len(self.failed) + len(self.succeeded)} chunks failed "
            f"in job {job_id}",
            self.failed,
        )
