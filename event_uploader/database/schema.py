"""
Ledger schema definitions.
"""
import sqlite3
import logging

CURRENT_SCHEMA_VERSION = 1

def init_schema(conn: sqlite3.Connection):
    """
    Applies the ledger schema to the database.
    Idempotent: safe to run on every startup.
    """
    with conn:
        # 1. Version Tracking (For future migrations)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );
        """)

        cur = conn.cursor()
        cur.execute("SELECT version FROM schema_version")
        if not cur.fetchone():
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (CURRENT_SCHEMA_VERSION,))

        # 2. One row per processed event
        conn.execute("""
        CREATE TABLE IF NOT EXISTS upload_runs (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            event_id        TEXT NOT NULL,
            started_at      TEXT NOT NULL,
            finished_at     TEXT,
            total           INTEGER NOT NULL DEFAULT 0,
            completed       INTEGER NOT NULL DEFAULT 0,
            failed          INTEGER NOT NULL DEFAULT 0,
            skipped         INTEGER NOT NULL DEFAULT 0,
            cancelled       INTEGER NOT NULL DEFAULT 0,
            aborted_reason  TEXT
        );
        """)

        # 3. Terminal outcome of each asset within a run
        conn.execute("""
        CREATE TABLE IF NOT EXISTS upload_jobs (
            run_id          INTEGER NOT NULL,
            event_id        TEXT NOT NULL,
            asset_id        TEXT NOT NULL,
            file_name       TEXT NOT NULL,
            status          TEXT NOT NULL,
            attempts        INTEGER NOT NULL DEFAULT 0,
            duplicate       INTEGER NOT NULL DEFAULT 0,
            remote_id       TEXT,
            verdict         TEXT,
            last_error      TEXT,
            updated_at      TEXT NOT NULL,
            PRIMARY KEY (run_id, asset_id),
            FOREIGN KEY(run_id) REFERENCES upload_runs(id) ON DELETE CASCADE
        );
        """)

        # 4. Indices for Performance
        conn.execute("CREATE INDEX IF NOT EXISTS idx_upload_runs_event ON upload_runs(event_id);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_upload_jobs_event_status ON upload_jobs(event_id, status);")

    logging.debug("Ledger schema initialized.")
