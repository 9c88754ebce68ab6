#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json

from orderflow.db import Base, SessionLocal, engine
from orderflow.services.job_queue import force_process, queue_stats


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the render job recovery sweep from a shell.")
    parser.add_argument("--user", default=None, help="Restrict the sweep to one user's jobs.")
    parser.add_argument("--limit", type=int, default=None, help="Maximum jobs handled per phase.")
    parser.add_argument(
        "--stale-minutes",
        type=int,
        default=None,
        help="Age threshold for queued/running jobs (default: STALE_JOB_MINUTES).",
    )
    parser.add_argument("--stats-only", action="store_true", help="Print queue stats without sweeping.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        if not args.stats_only:
            summary = force_process(db, user_id=args.user, limit=args.limit, stale_minutes=args.stale_minutes)
            print(json.dumps(summary, indent=2))
        print(json.dumps(queue_stats(db, user_id=args.user), indent=2, default=str))
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
