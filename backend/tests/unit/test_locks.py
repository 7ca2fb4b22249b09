"""Unit tests for the per-job lock registry."""

import gc
import uuid

from chunkbatch.services import locks
from chunkbatch.services.locks import job_lock


def test_same_job_shares_one_lock() -> None:
    job_id = uuid.uuid4()
    lock = job_lock(job_id)

    assert job_lock(job_id) is lock
    assert job_lock(uuid.uuid4()) is not lock


def test_unused_locks_are_dropped() -> None:
    job_id = uuid.uuid4()
    with job_lock(job_id):
        assert job_id in locks._locks

    gc.collect()

    assert job_id not in locks._locks
