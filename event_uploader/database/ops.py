import sqlite3
import logging
from datetime import datetime, UTC
from typing import Optional, List, Dict, Any

from ..models import SessionSnapshot, UploadJob, verdict_label

class LedgerOperations:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def start_run(self, event_id: str) -> int:
        """Opens a run row for one event and returns its id."""
        cur = self.conn.cursor()
        cur.execute(
            "INSERT INTO upload_runs (event_id, started_at) VALUES (?, ?)",
            (event_id, datetime.now(UTC).isoformat()),
        )
        if cur.lastrowid is None:
            raise RuntimeError("Database INSERT failed to return a row ID.")
        self.conn.commit()
        return cur.lastrowid

    def record_job(self, run_id: int, job: UploadJob):
        """
        Stores the outcome of one asset. Called as each job reaches a terminal
        state so an interrupted run still leaves an accurate trail.
        """
        self.conn.execute("""
            INSERT OR REPLACE INTO upload_jobs (
                run_id, event_id, asset_id, file_name, status, attempts,
                duplicate, remote_id, verdict, last_error, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            run_id, job.event_id, job.asset.asset_id, job.asset.file_name, job.status.value,
            job.attempt, int(job.duplicate), job.remote_id, verdict_label(job.verdict) or None,
            job.last_error, datetime.now(UTC).isoformat(),
        ))
        self.conn.commit()

    def finish_run(self, run_id: int, snapshot: SessionSnapshot, aborted_reason: Optional[str] = None):
        self.conn.execute("""
            UPDATE upload_runs
            SET finished_at = ?, total = ?, completed = ?, failed = ?, skipped = ?,
                cancelled = ?, aborted_reason = ?
            WHERE id = ?
        """, (
            datetime.now(UTC).isoformat(), snapshot.total, snapshot.completed, snapshot.failed,
            snapshot.skipped, int(snapshot.cancelled), aborted_reason, run_id,
        ))
        self.conn.commit()
        logging.debug(f"Ledger run {run_id} closed")

    def fetch_failed(self, event_id: str) -> List[Dict[str, Any]]:
        """Failed assets of the most recent run for an event, for follow-up."""
        cur = self.conn.cursor()
        cur.execute("""
            SELECT j.asset_id, j.file_name, j.attempts, j.last_error
            FROM upload_jobs j
            WHERE j.event_id = ? AND j.status = 'failed'
              AND j.run_id = (SELECT MAX(id) FROM upload_runs WHERE event_id = ?)
            ORDER BY j.file_name
        """, (event_id, event_id))
        return [
            {'asset_id': r[0], 'file_name': r[1], 'attempts': r[2], 'error': r[3]}
            for r in cur.fetchall()
        ]

    def fetch_run_summary(self, run_id: int) -> Optional[Dict[str, Any]]:
        cur = self.conn.cursor()
        cur.execute("""
            SELECT event_id, started_at, finished_at, total, completed, failed, skipped,
                   cancelled, aborted_reason
            FROM upload_runs WHERE id = ?
        """, (run_id,))
        row = cur.fetchone()
        if row is None:
            return None
        return {
            'event_id': row[0], 'started_at': row[1], 'finished_at': row[2],
            'total': row[3], 'completed': row[4], 'failed': row[5], 'skipped': row[6],
            'cancelled': bool(row[7]), 'aborted_reason': row[8],
        }
