"""Per-job mutual exclusion shared by the scheduler and the reconciler."""

import threading
import uuid
import weakref

# Entries disappear once no thread holds or waits on the lock.
_locks: "weakref.WeakValueDictionary[uuid.UUID, threading.Lock]" = weakref.WeakValueDictionary()
_registry_lock = threading.Lock()


def job_lock(job_id: uuid.UUID) -> threading.Lock:
    """Return the process-wide lock serializing work on *job_id*."""
    with _registry_lock:
        lock = _locks.get(job_id)
        if lock is None:
            lock = threading.Lock()
            _locks[job_id] = lock
        return lock
