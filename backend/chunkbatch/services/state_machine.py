"""Chunk and batch-job state machines.

Each legal chunk transition is owned by exactly one writer capability:
the author edits drafts, the scheduler queues and un-queues, the reconciler
writes everything that follows. Anything not listed is rejected.
"""

from typing import Literal

from chunkbatch.services.errors import InvalidTransition

ChunkStatus = Literal["bozza", "pronto", "in_coda", "elaborazione", "completato", "errore"]
JobStatus = Literal["in_coda", "elaborazione", "completato", "fallito", "annullato"]
ResultStatus = Literal["in_attesa", "elaborazione", "completato", "fallito"]
Actor = Literal["author", "scheduler", "reconciler"]

CHUNK_ACTIVE: frozenset[str] = frozenset({"in_coda", "elaborazione"})
JOB_ACTIVE: frozenset[str] = frozenset({"in_coda", "elaborazione"})
JOB_TERMINAL: frozenset[str] = frozenset({"completato", "fallito", "annullato"})
RESULT_TERMINAL: frozenset[str] = frozenset({"completato", "fallito"})

_CHUNK_TRANSITIONS: dict[tuple[str, str], Actor] = {
    ("bozza", "pronto"): "author",
    ("errore", "bozza"): "author",
    ("pronto", "in_coda"): "scheduler",
    # compensation after a rejected submission, or cancellation
    ("in_coda", "pronto"): "scheduler",
    ("elaborazione", "pronto"): "scheduler",
    ("in_coda", "elaborazione"): "reconciler",
    ("elaborazione", "completato"): "reconciler",
    ("elaborazione", "errore"): "reconciler",
}

_JOB_TRANSITIONS: dict[tuple[str, str], frozenset[Actor]] = {
    ("in_coda", "elaborazione"): frozenset({"scheduler"}),
    ("in_coda", "fallito"): frozenset({"scheduler"}),
    ("in_coda", "annullato"): frozenset({"scheduler"}),
    ("elaborazione", "completato"): frozenset({"reconciler"}),
    ("elaborazione", "fallito"): frozenset({"reconciler"}),
    # the scheduler cancels on request; the reconciler records provider-side cancels
    ("elaborazione", "annullato"): frozenset({"scheduler", "reconciler"}),
}


def check_chunk_transition(current: str, target: str, actor: Actor) -> None:
    """Raise InvalidTransition unless *actor* may move a chunk from *current* to *target*."""
    owner = _CHUNK_TRANSITIONS.get((current, target))
    if owner is None:
        raise InvalidTransition(f"chunk cannot move from '{current}' to '{target}'")
    if owner != actor:
        raise InvalidTransition(
            f"chunk transition '{current}' -> '{target}' belongs to the {owner}, not the {actor}"
        )


def check_job_transition(current: str, target: str, actor: Actor) -> None:
    """Raise InvalidTransition unless *actor* may move a job from *current* to *target*."""
    if current in JOB_TERMINAL:
        raise InvalidTransition(f"batch job is '{current}' and can no longer change")
    owners = _JOB_TRANSITIONS.get((current, target))
    if owners is None:
        raise InvalidTransition(f"batch job cannot move from '{current}' to '{target}'")
    if actor not in owners:
        raise InvalidTransition(
            f"job transition '{current}' -> '{target}' is not available to the {actor}"
        )


def skip_reason(status: str) -> str:
    """Reason code reported for a chunk left out of a finalized document."""
    if status == "errore":
        return "failed"
    if status in CHUNK_ACTIVE:
        return "queued"
    return "not_ready"
