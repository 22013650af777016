#!/usr/bin/env python3

import json
import os
import sqlite3
import sys
from datetime import datetime
from pathlib import Path

# Default DB location when running from a checkout (../local/state/carriers.db)
PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_DB = PROJECT_ROOT / "local" / "state" / "carriers.db"


def get_recent_jobs(db_path: str, limit: int = 15) -> list[tuple]:
    """
    Fetch the latest `limit` sync jobs, newest first.
    Returns list of (id, job_type, status, processed, updated, failed, errors, created_at, completed_at)
    """
    try:
        conn = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)
        try:
            rows = conn.execute(
                """
                SELECT id, job_type, status, carriers_processed, carriers_updated,
                       carriers_failed, errors, created_at, completed_at
                  FROM sync_jobs
                 ORDER BY created_at DESC
                 LIMIT ?
                """,
                (limit,),
            ).fetchall()
        finally:
            conn.close()
        return rows
    except sqlite3.Error as e:
        print(f"Error reading {db_path}: {e}", file=sys.stderr)
        return []


def format_timestamp(iso_str: str | None) -> str:
    """Convert ISO timestamp to readable local format."""
    if not iso_str:
        return "-"
    try:
        dt = datetime.fromisoformat(iso_str.replace("Z", "+00:00"))
        return dt.astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")
    except ValueError:
        return iso_str


def main():
    db_path = os.getenv("CARRIER_SYNC_DB") or str(DEFAULT_DB)
    if not os.path.exists(db_path):
        print(f"Database not found: {db_path}")
        sys.exit(1)

    limit = 15
    if len(sys.argv) > 1:
        try:
            limit = int(sys.argv[1])
            if limit <= 0:
                raise ValueError
        except ValueError:
            print(f"Invalid limit: {sys.argv[1]}. Using default (15).", file=sys.stderr)
            limit = 15

    jobs = get_recent_jobs(db_path, limit)
    print(f"DATABASE: {db_path}")
    print(f"Showing last {len(jobs)} sync job(s).\n")

    for i, (job_id, job_type, status, processed, updated, failed, errors, created, completed) in enumerate(jobs, 1):
        print("=" * 80)
        print(f"{i:2d}. {job_type} [{status}] {job_id}")
        print(f"     Created:   {format_timestamp(created)}")
        print(f"     Completed: {format_timestamp(completed)}")
        print(f"     Counts:    {updated}/{processed} updated, {failed} failed")
        errs = json.loads(errors or "[]")
        for err in errs[:5]:
            print(f"       - {err}")
        if len(errs) > 5:
            print(f"       ... and {len(errs) - 5} more")
    print()


if __name__ == "__main__":
    main()
