import contextlib
import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

from .utils import EPOCH_CURSOR, utc_now_iso
from .warehouse import Warehouse

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"
STATUS_NO_NEW_DATA = "no_new_data"
STATUS_SKIPPED = "skipped"


class WatermarkConflict(Exception):
    """The watermark row changed between read and advance."""


class LeaseHeld(Exception):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"lease {name!r} is held by another run")


@dataclass
class Watermark:
    stream_name: str
    last_processed_at: str
    status: str
    updated_at: str
    rows_processed: int
    version: int
    last_error: Optional[str] = None

    def to_api(self) -> dict:
        return {
            "stream_name": self.stream_name,
            "last_processed_at": self.last_processed_at,
            "status": self.status,
            "updated_at": self.updated_at,
            "rows_processed": self.rows_processed,
            "last_error": self.last_error,
        }


def _row_to_watermark(row) -> Watermark:
    return Watermark(
        stream_name=str(row["stream_name"]),
        last_processed_at=str(row["last_processed_at"]),
        status=str(row["status"]),
        updated_at=str(row["updated_at"]),
        rows_processed=int(row["rows_processed"] or 0),
        version=int(row["version"]),
        last_error=row["last_error"],
    )


class WatermarkStore:
    def __init__(self, warehouse: Warehouse):
        self.warehouse = warehouse

    async def get(self, stream_name: str) -> Optional[Watermark]:
        row = await self.warehouse.query_one(
            """
            SELECT stream_name, last_processed_at, status, updated_at,
                   rows_processed, last_error, version
            FROM processing_watermarks
            WHERE stream_name = ?
            """,
            (stream_name,),
        )
        return _row_to_watermark(row) if row else None

    async def list_all(self) -> List[Watermark]:
        rows = await self.warehouse.query(
            """
            SELECT stream_name, last_processed_at, status, updated_at,
                   rows_processed, last_error, version
            FROM processing_watermarks
            ORDER BY stream_name
            """
        )
        return [_row_to_watermark(r) for r in rows]

    @staticmethod
    def advance(
        conn: sqlite3.Connection,
        stream_name: str,
        cursor: str,
        rows_processed: int,
        expected_version: Optional[int],
    ) -> int:
        """Move the cursor forward inside the caller's transaction.

        ``expected_version`` is the version read before the batch ran (``None``
        when no row existed). Raises :class:`WatermarkConflict` if another
        writer got there first. Returns the new version.
        """
        now = utc_now_iso()
        if expected_version is None:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO processing_watermarks(
                    stream_name, last_processed_at, status, updated_at,
                    rows_processed, last_error, version
                ) VALUES (?, ?, 'success', ?, ?, NULL, 1)
                """,
                (stream_name, cursor, now, int(rows_processed)),
            )
            if cur.rowcount != 1:
                raise WatermarkConflict(stream_name)
            return 1

        cur = conn.execute(
            """
            UPDATE processing_watermarks
            SET last_processed_at = MAX(last_processed_at, ?),
                status = 'success',
                updated_at = ?,
                rows_processed = ?,
                last_error = NULL,
                version = version + 1
            WHERE stream_name = ? AND version = ?
            """,
            (cursor, now, int(rows_processed), stream_name, int(expected_version)),
        )
        if cur.rowcount != 1:
            raise WatermarkConflict(stream_name)
        return int(expected_version) + 1

    async def record_status(
        self, stream_name: str, status: str, error: Optional[str] = None
    ) -> None:
        """Record an attempt without touching the cursor."""
        now = utc_now_iso()
        await self.warehouse.execute(
            """
            INSERT INTO processing_watermarks(
                stream_name, last_processed_at, status, updated_at,
                rows_processed, last_error, version
            ) VALUES (?, ?, ?, ?, 0, ?, 1)
            ON CONFLICT(stream_name) DO UPDATE SET
                status = excluded.status,
                updated_at = excluded.updated_at,
                last_error = excluded.last_error,
                version = processing_watermarks.version + 1
            """,
            (stream_name, EPOCH_CURSOR, status, now, error),
        )


class LeaseManager:
    """Named, expiring mutual exclusion stored in the warehouse.

    A lease is taken with one guarded upsert: a free name is inserted, an
    expired one is stolen, a live one is left alone. Releasing only deletes
    the row while the caller still owns it.
    """

    def __init__(self, warehouse: Warehouse, ttl_sec: float = 600):
        self.warehouse = warehouse
        self.ttl_sec = ttl_sec

    async def acquire(self, name: str, owner: str) -> bool:
        now = time.time()
        changed = await self.warehouse.execute(
            """
            INSERT INTO job_leases(name, owner, acquired_at, expires_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                owner = excluded.owner,
                acquired_at = excluded.acquired_at,
                expires_at = excluded.expires_at
            WHERE job_leases.expires_at < excluded.acquired_at
            """,
            (name, owner, now, now + self.ttl_sec),
        )
        return changed == 1

    async def release(self, name: str, owner: str) -> None:
        await self.warehouse.execute(
            "DELETE FROM job_leases WHERE name = ? AND owner = ?",
            (name, owner),
        )

    @contextlib.asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[str]:
        owner = uuid.uuid4().hex
        if not await self.acquire(name, owner):
            raise LeaseHeld(name)
        logger.debug("lease %s acquired by %s", name, owner)
        try:
            yield owner
        finally:
            try:
                await self.release(name, owner)
            except Exception:
                # the lease expires on its own after ttl_sec
                logger.exception("failed to release lease %s", name)
