"""
Manages the SQLite database that persists the job queue and playlist batches
so they survive a restart.
"""

import asyncio
import json
import logging
import sqlite3
from pathlib import Path

from pydantic import ValidationError

from dlqueue.models.batch import Batch
from dlqueue.models.job import Job

log = logging.getLogger(__name__)


class JobStore:
    """
    Durable key-value storage for jobs and batches.

    Each record is stored as a JSON payload keyed by its id, with an explicit
    position so queue order survives a reload. Deserialization is best effort:
    records that no longer validate are dropped with a warning and unknown
    fields are ignored.
    """

    def __init__(self, state_dir: Path):
        self.db_path = state_dir / "queue.sqlite"
        state_dir.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self._initialize_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Gets a new database connection with optimized PRAGMA settings."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            return conn
        except sqlite3.Error as e:
            log.error(f"Failed to connect to queue database: {e}")
            raise

    def _initialize_db(self) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS jobs (
                        job_id TEXT PRIMARY KEY NOT NULL,
                        position INTEGER NOT NULL,
                        payload TEXT NOT NULL,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    );
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS batches (
                        batch_id TEXT PRIMARY KEY NOT NULL,
                        position INTEGER NOT NULL,
                        payload TEXT NOT NULL,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    );
                    """
                )
                conn.commit()
        except sqlite3.Error as e:
            log.error(f"Failed to initialize queue database at '{self.db_path}': {e}")

    def _load_sync(self, table: str, model):
        key = "job_id" if table == "jobs" else "batch_id"
        records = []
        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    f"SELECT {key}, payload FROM {table} ORDER BY position"  # noqa: S608
                )
                rows = cursor.fetchall()
        except sqlite3.Error as e:
            log.error(f"Failed to read {table} from queue database: {e}")
            return records

        for record_id, payload in rows:
            try:
                records.append(model.model_validate(json.loads(payload)))
            except (json.JSONDecodeError, ValidationError) as e:
                log.warning(
                    f"[yellow]Dropping unreadable {table[:-1]} '{record_id}':[/] {e}"
                )
        return records

    def _save_sync(self, table: str, rows: list[tuple[str, int, str]]) -> bool:
        key = "job_id" if table == "jobs" else "batch_id"
        try:
            with self._get_connection() as conn:
                conn.execute(f"DELETE FROM {table}")  # noqa: S608
                conn.executemany(
                    f"INSERT INTO {table} ({key}, position, payload) VALUES (?, ?, ?)",  # noqa: S608
                    rows,
                )
                conn.commit()
            return True
        except sqlite3.Error as e:
            log.error(f"Failed to save {len(rows)} {table} to queue database: {e}")
            return False

    async def load(self) -> list[Job]:
        """Returns all persisted jobs in queue order."""
        async with self._lock:
            return await asyncio.to_thread(self._load_sync, "jobs", Job)

    async def save(self, jobs: list[Job]) -> bool:
        """Replaces the persisted queue with ``jobs``."""
        rows = [
            (job.id, position, job.model_dump_json())
            for position, job in enumerate(jobs)
        ]
        async with self._lock:
            return await asyncio.to_thread(self._save_sync, "jobs", rows)

    async def load_batches(self) -> list[Batch]:
        async with self._lock:
            return await asyncio.to_thread(self._load_sync, "batches", Batch)

    async def save_batches(self, batches: list[Batch]) -> bool:
        rows = [
            (batch.id, position, batch.model_dump_json())
            for position, batch in enumerate(batches)
        ]
        async with self._lock:
            return await asyncio.to_thread(self._save_sync, "batches", rows)

    def _vacuum_sync(self) -> bool:
        try:
            with self._get_connection() as conn:
                conn.execute("VACUUM;")
            return True
        except sqlite3.Error as e:
            log.error(f"Database vacuum failed: {e}")
            return False

    async def vacuum(self) -> bool:
        """Optimizes the database file by rebuilding it."""
        async with self._lock:
            return await asyncio.to_thread(self._vacuum_sync)
