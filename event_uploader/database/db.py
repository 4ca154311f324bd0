"""
Ledger connection management.
"""
import sqlite3
import logging
from pathlib import Path
from typing import Optional, Union

from .schema import init_schema

class DBManager:
    """
    Owns the single connection to the upload ledger.

    The ledger sits next to the photos (or wherever --db points) and only the
    uploader thread writes to it, so the default rollback journal is enough.
    """

    def __init__(self, db_path: Union[Path, str]):
        self.db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None

    def connect(self) -> sqlite3.Connection:
        if self._conn:
            return self._conn

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        logging.info(f"Opening upload ledger: {self.db_path}")
        # Opened on the main thread, written from the uploader worker thread
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        # upload_jobs rows go with their run
        self._conn.execute("PRAGMA foreign_keys=ON;")
        init_schema(self._conn)
        return self._conn

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
