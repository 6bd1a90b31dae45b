import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from .streams import StreamDefinition, get_stream
from .utils import EPOCH_CURSOR, elapsed_ms
from .warehouse import Warehouse, execute_counted
from .watermarks import (
    STATUS_ERROR,
    STATUS_NO_NEW_DATA,
    STATUS_SKIPPED,
    STATUS_SUCCESS,
    LeaseHeld,
    LeaseManager,
    WatermarkStore,
)

logger = logging.getLogger(__name__)


@dataclass
class TransformResult:
    stream_name: str
    status: str
    rows_processed: int
    duration_ms: int
    last_processed_at: Optional[str] = None
    error: Optional[str] = None

    def to_api(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "stream_name": self.stream_name,
            "status": self.status,
            "rows_processed": self.rows_processed,
            "duration_ms": self.duration_ms,
        }
        if self.last_processed_at is not None:
            out["last_processed_at"] = self.last_processed_at
        if self.error is not None:
            out["error"] = self.error
        return out


class IncrementalTransformer:
    """Moves raw events past a stream's watermark into its staging table.

    One run reads the watermark, peeks at the pending window, then inserts the
    window and advances the watermark in a single transaction. Staging rows
    carry a composite key from their position inside the raw body, so
    re-running a window inserts nothing new.
    """

    def __init__(
        self,
        warehouse: Warehouse,
        watermarks: WatermarkStore,
        leases: LeaseManager,
        query_timeout_sec: Optional[float] = None,
        long_query_timeout_sec: Optional[float] = None,
    ):
        self.warehouse = warehouse
        self.watermarks = watermarks
        self.leases = leases
        self.query_timeout_sec = query_timeout_sec
        self.long_query_timeout_sec = long_query_timeout_sec

    async def run_incremental(self, stream_name: str) -> TransformResult:
        stream = get_stream(stream_name)
        started = time.monotonic()
        try:
            async with self.leases.hold(f"transform:{stream.name}"):
                return await self._run(stream, started)
        except LeaseHeld:
            logger.info("transform %s already running, skipping", stream.name)
            return TransformResult(
                stream_name=stream.name,
                status=STATUS_SKIPPED,
                rows_processed=0,
                duration_ms=elapsed_ms(started),
            )
        except Exception as e:
            logger.exception("transform %s failed", stream.name)
            await self._record_error(stream.name, str(e))
            return TransformResult(
                stream_name=stream.name,
                status=STATUS_ERROR,
                rows_processed=0,
                duration_ms=elapsed_ms(started),
                error=str(e) or type(e).__name__,
            )

    async def _record_error(self, stream_name: str, message: str) -> None:
        try:
            await self.watermarks.record_status(stream_name, STATUS_ERROR, message)
        except Exception:
            logger.exception("failed to record error status for %s", stream_name)

    async def _run(self, stream: StreamDefinition, started: float) -> TransformResult:
        watermark = await self.watermarks.get(stream.name)
        cursor = watermark.last_processed_at if watermark else EPOCH_CURSOR
        expected_version = watermark.version if watermark else None
        logger.info("transform %s starting from %s", stream.name, cursor)

        pending, upper = await self._peek(stream, cursor)
        if pending == 0 or upper is None:
            logger.info("transform %s: no new data", stream.name)
            return TransformResult(
                stream_name=stream.name,
                status=STATUS_NO_NEW_DATA,
                rows_processed=0,
                duration_ms=elapsed_ms(started),
                last_processed_at=cursor,
            )

        logger.info("transform %s: %d raw events up to %s", stream.name, pending, upper)

        def _apply(conn: sqlite3.Connection) -> int:
            params = {"cursor": cursor, "upper": upper}
            inserted = execute_counted(conn, stream.insert_sql, params)
            # every raw event up to upper was examined, including those that yield no rows here
            self.watermarks.advance(conn, stream.name, upper, inserted, expected_version)
            return inserted

        inserted = await self.warehouse.transaction(_apply, self.long_query_timeout_sec)
        logger.info(
            "transform %s: inserted %d rows, watermark -> %s", stream.name, inserted, upper
        )
        return TransformResult(
            stream_name=stream.name,
            status=STATUS_SUCCESS,
            rows_processed=inserted,
            duration_ms=elapsed_ms(started),
            last_processed_at=upper,
        )

    async def _peek(self, stream: StreamDefinition, cursor: str) -> Tuple[int, Optional[str]]:
        row = await self.warehouse.query_one(
            f"""
            SELECT COUNT(*) AS pending, MAX(e.received_at) AS upper
            FROM raw_events AS e
            WHERE e.received_at > :cursor
              AND {stream.shape_predicate}
            """,
            {"cursor": cursor},
            self.query_timeout_sec,
        )
        if not row:
            return 0, None
        return int(row["pending"] or 0), row["upper"]
