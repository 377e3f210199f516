"""Failure memory store.

Episode metadata lives in SQLite (one row per failure episode). Embedding
chunks live in a chromadb collection, one entry per chunk, each tagged
with the id of the metadata row it belongs to so deletes can cascade.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator, List, Optional

import chromadb

from smart_worker.config import MemoryConfig
from smart_worker.errors import StorageError
from smart_worker.models.failure import (
    CategorizedEmbedding,
    CodeChange,
    EmbeddingCategory,
    MemoryRecord,
    MemorySearchHit,
)
from smart_worker.models.job import FailedJob

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class FailureMemoryStore:
    """SQLite metadata rows plus a chromadb chunk collection."""

    def __init__(
        self,
        config: Optional[MemoryConfig] = None,
        client: Optional[Any] = None,
    ) -> None:
        """Initialize the store.

        Args:
            config: Memory configuration. If None, loads from environment.
            client: Optional chromadb client (tests pass an ephemeral one).
        """
        self.config = config or MemoryConfig()
        self.db_path = Path(self.config.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

        if client is None:
            Path(self.config.vector_path).mkdir(parents=True, exist_ok=True)
            client = chromadb.PersistentClient(path=self.config.vector_path)
        self.client = client
        self.collection = self.client.get_or_create_collection(
            name=self.config.collection,
            metadata={"hnsw:space": self.config.distance_metric},
        )

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Create tables and indexes if they don't exist."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS job_failures_metadata (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    job_name TEXT NOT NULL,
                    queue_name TEXT NOT NULL,
                    job_data TEXT,
                    job_opts TEXT,
                    failed_reason TEXT,
                    stacktrace TEXT,
                    attempts_made INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER,
                    retry_delay_ms INTEGER,
                    timestamp_created TEXT NOT NULL,
                    timestamp_failed TEXT NOT NULL,
                    resolved INTEGER NOT NULL DEFAULT 0,
                    resolved_at TEXT,
                    resolution_summary TEXT,
                    code_diff TEXT,
                    UNIQUE(queue_name, job_id)
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_job_failures_failed_time "
                "ON job_failures_metadata (timestamp_failed DESC)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_job_failures_resolved "
                "ON job_failures_metadata (resolved)"
            )

    def check_connection(self) -> bool:
        """Return True if both backends answer."""
        try:
            with self._get_connection() as conn:
                conn.execute("SELECT 1")
            self.client.heartbeat()
        except Exception as e:
            logger.warning(f"Memory store health check failed: {e}")
            return False
        return True

    # --- writes ---

    def insert_record(
        self,
        job: FailedJob,
        resolved: bool = False,
        resolution_summary: str = "",
        changes: Optional[List[CodeChange]] = None,
    ) -> int:
        """Insert one episode metadata row.

        Args:
            job: The failed job.
            resolved: Whether a verified fix exists.
            resolution_summary: Natural-language summary of the fix.
            changes: Code changes that fixed the job.

        Returns:
            The new record id.

        Raises:
            StorageError: If the row could not be written.
        """
        now = _now()
        code_diff = [
            {"path": c.path, "original_code": c.original_code, "code": c.code}
            for c in changes or []
        ]
        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO job_failures_metadata (
                        job_id, job_name, queue_name, job_data, job_opts,
                        failed_reason, stacktrace, attempts_made, max_attempts,
                        retry_delay_ms, timestamp_created, timestamp_failed,
                        resolved, resolved_at, resolution_summary, code_diff
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.id,
                        job.name,
                        job.queue_name,
                        json.dumps(job.data, default=str),
                        json.dumps(job.opts, default=str),
                        job.failed_reason,
                        job.stacktrace[-1] if job.stacktrace else None,
                        job.attempts_made,
                        job.max_attempts,
                        job.retry_delay_ms,
                        job.created_at.isoformat(),
                        now,
                        1 if resolved else 0,
                        now if resolved else None,
                        resolution_summary,
                        json.dumps(code_diff),
                    ),
                )
                record_id = cursor.lastrowid
        except sqlite3.Error as e:
            raise StorageError(f"failed to insert job {job.id}: {e}") from e

        logger.info(
            f"Stored failure record {record_id} for job {job.id} (resolved={resolved})"
        )
        return int(record_id)

    def insert_chunk(
        self, record_id: int, chunk_index: int, embedding: CategorizedEmbedding
    ) -> None:
        """Insert one embedding chunk belonging to a record.

        Raises:
            StorageError: If the vector store rejected the chunk.
        """
        try:
            self.collection.add(
                ids=[f"{record_id}-{chunk_index}"],
                embeddings=[embedding.vector],
                documents=[embedding.content],
                metadatas=[
                    {
                        "job_failure_id": record_id,
                        "chunk_index": chunk_index,
                        "chunk_id": embedding.chunk_id,
                        "category": embedding.category.value,
                        "weight": embedding.weight,
                    }
                ],
            )
        except Exception as e:
            raise StorageError(
                f"failed to insert chunk {chunk_index} of record {record_id}: {e}"
            ) from e

    def delete_record(self, record_id: int) -> bool:
        """Delete a record and every chunk that references it.

        Returns:
            True if a metadata row was deleted.
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM job_failures_metadata WHERE id = ?", (record_id,)
            )
            deleted = cursor.rowcount > 0
        try:
            self.collection.delete(where={"job_failure_id": record_id})
        except Exception as e:
            raise StorageError(f"failed to delete chunks of record {record_id}: {e}") from e
        if deleted:
            logger.info(f"Deleted failure record {record_id} and its chunks")
        return deleted

    # --- reads ---

    def query_category(
        self,
        vector: List[float],
        category: EmbeddingCategory,
        n_results: int,
    ) -> List[MemorySearchHit]:
        """Nearest stored chunks of one category.

        Args:
            vector: Query embedding.
            category: Only chunks of this category are considered.
            n_results: Maximum number of neighbours.

        Returns:
            Hits ordered by ascending raw distance.
        """
        if self.collection.count() == 0:
            return []
        try:
            results = self.collection.query(
                query_embeddings=[vector],
                n_results=n_results,
                where={"category": category.value},
                include=["documents", "metadatas", "distances"],
            )
        except Exception as e:
            raise StorageError(f"vector query failed: {e}") from e

        hits = []
        if results["ids"]:
            for i in range(len(results["ids"][0])):
                metadata = results["metadatas"][0][i]
                hits.append(
                    MemorySearchHit(
                        chunk_id=results["ids"][0][i],
                        record_id=int(metadata["job_failure_id"]),
                        category=EmbeddingCategory(metadata["category"]),
                        content=results["documents"][0][i] or "",
                        distance=float(results["distances"][0][i]),
                        weight=float(metadata["weight"]),
                    )
                )
        return hits

    def get_resolution_summary(self, record_id: int) -> Optional[str]:
        """Resolution summary of a record, or None if it does not exist."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT resolution_summary FROM job_failures_metadata WHERE id = ?",
                (record_id,),
            ).fetchone()
        return row["resolution_summary"] if row else None

    def get_record(self, record_id: int) -> Optional[MemoryRecord]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM job_failures_metadata WHERE id = ?", (record_id,)
            ).fetchone()
        return self._row_to_record(row) if row else None

    def list_records(self, limit: int = 20) -> List[MemoryRecord]:
        """Most recently failed records first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM job_failures_metadata "
                "ORDER BY timestamp_failed DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def count_records(self, resolved: Optional[bool] = None) -> int:
        query = "SELECT COUNT(*) FROM job_failures_metadata"
        params: tuple = ()
        if resolved is not None:
            query += " WHERE resolved = ?"
            params = (1 if resolved else 0,)
        with self._get_connection() as conn:
            return int(conn.execute(query, params).fetchone()[0])

    def count_chunks(self) -> int:
        return int(self.collection.count())

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> MemoryRecord:
        return MemoryRecord(
            id=row["id"],
            job_id=row["job_id"],
            job_name=row["job_name"],
            queue_name=row["queue_name"],
            job_data=json.loads(row["job_data"]) if row["job_data"] else {},
            job_opts=json.loads(row["job_opts"]) if row["job_opts"] else {},
            failed_reason=row["failed_reason"],
            stacktrace=row["stacktrace"],
            attempts_made=row["attempts_made"],
            max_attempts=row["max_attempts"] or 1,
            retry_delay_ms=row["retry_delay_ms"],
            timestamp_created=row["timestamp_created"],
            timestamp_failed=row["timestamp_failed"],
            resolved=bool(row["resolved"]),
            resolved_at=row["resolved_at"],
            resolution_summary=row["resolution_summary"],
            code_diff=json.loads(row["code_diff"]) if row["code_diff"] else [],
        )
