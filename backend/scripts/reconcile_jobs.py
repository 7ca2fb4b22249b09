"""Reconcile batch jobs with the provider from the command line.

Reconciles every job still processing once (default), a single job
(--job-id), or keeps polling until no job is left processing (--loop).

Usage (inside the api container):
    uv run python scripts/reconcile_jobs.py [--job-id UUID] [--loop] [--db-url URL]
"""

import argparse
import logging
import os
import sys
import time
import uuid
from pathlib import Path

from dotenv import load_dotenv

_BACKEND_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_BACKEND_DIR))

load_dotenv(_BACKEND_DIR.parent / ".env")

_pre = argparse.ArgumentParser(add_help=False)
_pre.add_argument("--db-url", default=os.environ.get("DATABASE_URL", ""))
_pre_args, _ = _pre.parse_known_args()
if _pre_args.db_url:
    os.environ["DATABASE_URL"] = _pre_args.db_url

from chunkbatch.db import get_session_factory, import_models  # noqa: E402
from chunkbatch.services.errors import PipelineError  # noqa: E402
from chunkbatch.services.provider import get_provider  # noqa: E402
from chunkbatch.services.reconciler import SyncReconciler, poll_once  # noqa: E402

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S")
logger = logging.getLogger("reconcile_jobs")


def main() -> None:
    parser = argparse.ArgumentParser(description="Reconcile batch jobs with the batch provider.")
    parser.add_argument("--db-url", help="SQLAlchemy database URL (defaults to $DATABASE_URL)")
    parser.add_argument("--job-id", type=uuid.UUID, help="reconcile only this job")
    parser.add_argument("--loop", action="store_true", help="poll until no job is processing")
    parser.add_argument("--interval", type=float, default=60.0, help="seconds between polls with --loop")
    args = parser.parse_args()

    import_models()
    provider = get_provider()
    session_factory = get_session_factory()

    if args.job_id is not None:
        db = session_factory()
        try:
            result = SyncReconciler(provider).reconcile(args.job_id, db)
            job = result.job
            print(
                f"{job.id}: {job.status} {job.processed_chunks}/{job.total_chunks} "
                f"({job.progress_percent}%){' changed' if result.changed else ''}"
            )
            if result.partial_failure is not None:
                print(f"  partial failure: {result.partial_failure}")
        except PipelineError as exc:
            print(f"error: {exc}", file=sys.stderr)
            sys.exit(1)
        finally:
            db.close()
        return

    while True:
        remaining = poll_once(session_factory, provider)
        print(f"{remaining} job(s) still processing")
        if not args.loop or remaining == 0:
            break
        time.sleep(args.interval)


if __name__ == "__main__":
    main()
