"""Unit tests for the chunk and job state machines."""

import pytest

from chunkbatch.services.errors import InvalidTransition
from chunkbatch.services.state_machine import check_chunk_transition, check_job_transition, skip_reason


class TestChunkTransitions:
    @pytest.mark.parametrize(
        ("current", "target", "actor"),
        [
            ("bozza", "pronto", "author"),
            ("errore", "bozza", "author"),
            ("pronto", "in_coda", "scheduler"),
            ("in_coda", "pronto", "scheduler"),
            ("elaborazione", "pronto", "scheduler"),
            ("in_coda", "elaborazione", "reconciler"),
            ("elaborazione", "completato", "reconciler"),
            ("elaborazione", "errore", "reconciler"),
        ],
    )
    def test_allows_owned_transition(self, current: str, target: str, actor: str) -> None:
        check_chunk_transition(current, target, actor)  # type: ignore[arg-type]

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            ("bozza", "in_coda"),
            ("pronto", "completato"),
            ("completato", "pronto"),
            ("errore", "pronto"),
            ("in_coda", "completato"),
            ("bozza", "bozza"),
        ],
    )
    def test_rejects_unlisted_transition(self, current: str, target: str) -> None:
        for actor in ("author", "scheduler", "reconciler"):
            with pytest.raises(InvalidTransition):
                check_chunk_transition(current, target, actor)  # type: ignore[arg-type]

    def test_rejects_transition_owned_by_another_writer(self) -> None:
        with pytest.raises(InvalidTransition, match="belongs to the scheduler"):
            check_chunk_transition("pronto", "in_coda", "author")
        with pytest.raises(InvalidTransition, match="belongs to the reconciler"):
            check_chunk_transition("elaborazione", "completato", "scheduler")


class TestJobTransitions:
    def test_terminal_jobs_are_immutable(self) -> None:
        for terminal in ("completato", "fallito", "annullato"):
            with pytest.raises(InvalidTransition, match="can no longer change"):
                check_job_transition(terminal, "elaborazione", "reconciler")

    def test_scheduler_starts_and_reconciler_completes(self) -> None:
        check_job_transition("in_coda", "elaborazione", "scheduler")
        check_job_transition("elaborazione", "completato", "reconciler")
        with pytest.raises(InvalidTransition):
            check_job_transition("elaborazione", "completato", "scheduler")

    def test_both_writers_may_cancel_a_processing_job(self) -> None:
        check_job_transition("elaborazione", "annullato", "scheduler")
        check_job_transition("elaborazione", "annullato", "reconciler")


def test_skip_reason_codes() -> None:
    assert skip_reason("errore") == "failed"
    assert skip_reason("in_coda") == "queued"
    assert skip_reason("elaborazione") == "queued"
    assert skip_reason("bozza") == "not_ready"
    assert skip_reason("pronto") == "not_ready"
