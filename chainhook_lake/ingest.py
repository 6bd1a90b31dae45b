import json
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from .utils import format_ts, find_path
from .warehouse import Warehouse

logger = logging.getLogger(__name__)

BLOCK_HASH_PATH = "apply[0].block_identifier.hash"
BLOCK_INDEX_PATH = "apply[0].block_identifier.index"


@dataclass
class IngestResult:
    ok: bool
    event_id: str
    error: Optional[str] = None
    note: Optional[str] = None

    def to_api(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": self.ok, "event_id": self.event_id}
        if self.error is not None:
            out["error"] = self.error
        if self.note is not None:
            out["note"] = self.note
        return out


@dataclass
class RawEvent:
    event_id: str
    received_at: str
    path: str
    body: Any
    body_format: str
    headers: Dict[str, str]
    url: Optional[str]
    method: Optional[str]
    block_hash: Optional[str]
    block_index: Optional[int]


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant: {name}")


def decode_body(raw_body: bytes) -> Tuple[Any, str]:
    """Return ``(value, format)``; unparseable payloads come back as text.

    NaN and Infinity are refused so every stored body stays valid JSON.
    """
    text = raw_body.decode("utf-8", errors="replace")
    try:
        return json.loads(text, parse_constant=_reject_constant), "json"
    except ValueError:
        return text, "text"


def block_identifier(body: Any) -> Optional[Tuple[str, int]]:
    block_hash = find_path(body, BLOCK_HASH_PATH, str)
    block_index = find_path(body, BLOCK_INDEX_PATH, int)
    if not block_hash or block_index is None:
        return None
    return block_hash, block_index


class EventIngestor:
    def __init__(self, warehouse: Warehouse, dedup: bool = True):
        self.warehouse = warehouse
        self.dedup = dedup
        self._clock_lock = threading.Lock()
        self._last_received: Optional[datetime] = None

    def next_received_at(self) -> str:
        """Wall-clock receipt time, forced strictly increasing for this instance."""
        with self._clock_lock:
            now = datetime.now(timezone.utc)
            if self._last_received is not None and now <= self._last_received:
                now = self._last_received + timedelta(microseconds=1)
            self._last_received = now
            return format_ts(now)

    @staticmethod
    def new_event_id() -> str:
        return uuid.uuid4().hex

    async def ingest(
        self,
        path: Sequence[str],
        raw_body: bytes,
        headers: Mapping[str, str],
        url: Optional[str] = None,
        method: Optional[str] = "POST",
        event_id: Optional[str] = None,
    ) -> IngestResult:
        event_id = event_id or self.new_event_id()
        try:
            return await self._ingest(event_id, path, raw_body, headers, url, method)
        except Exception:
            logger.exception("webhook %s failed", event_id)
            return IngestResult(ok=False, event_id=event_id, error="Processing failed")

    async def _ingest(
        self,
        event_id: str,
        path: Sequence[str],
        raw_body: bytes,
        headers: Mapping[str, str],
        url: Optional[str],
        method: Optional[str],
    ) -> IngestResult:
        body, body_format = decode_body(raw_body)
        if body_format == "text":
            logger.warning("webhook %s body is not JSON; storing %d bytes as text", event_id, len(raw_body))

        webhook_path = "/".join(s for s in path if s) or "root"
        block = block_identifier(body) if self.dedup else None
        if self.dedup and block is None:
            logger.info("webhook %s has no block identifier, skipping deduplication", event_id)

        if block is not None:
            exists = await self.warehouse.query_one(
                "SELECT 1 AS hit FROM raw_events WHERE block_hash = ? AND block_index = ? LIMIT 1",
                block,
            )
            if exists:
                logger.info("block %s (%s) already stored, skipping duplicate", block[1], block[0])
                return IngestResult(ok=True, event_id=event_id, note="duplicate block skipped")

        row = (
            event_id,
            self.next_received_at(),
            webhook_path,
            json.dumps(body, ensure_ascii=False),
            body_format,
            json.dumps({str(k).lower(): str(v) for k, v in headers.items()}, ensure_ascii=False),
            url,
            method,
            block[0] if block else None,
            block[1] if block else None,
        )
        inserted = await self.warehouse.execute(
            """
            INSERT OR IGNORE INTO raw_events(
                event_id, received_at, webhook_path, body, body_format,
                headers, url, method, block_hash, block_index
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            row,
        )
        if inserted == 0:
            # lost the race against a concurrent delivery of the same block
            logger.info("event %s lost an insert race, skipping duplicate", event_id)
            return IngestResult(ok=True, event_id=event_id, note="duplicate block skipped")
        if block is not None:
            logger.info("inserted block %s (%s) as %s", block[1], block[0], event_id)
        return IngestResult(ok=True, event_id=event_id)

    async def get_event(self, event_id: str) -> Optional[RawEvent]:
        row = await self.warehouse.query_one(
            "SELECT * FROM raw_events WHERE event_id = ?",
            (event_id,),
        )
        if not row:
            return None
        return RawEvent(
            event_id=str(row["event_id"]),
            received_at=str(row["received_at"]),
            path=str(row["webhook_path"]),
            body=json.loads(row["body"]),
            body_format=str(row["body_format"]),
            headers=json.loads(row["headers"] or "{}"),
            url=row["url"],
            method=row["method"],
            block_hash=row["block_hash"],
            block_index=int(row["block_index"]) if row["block_index"] is not None else None,
        )

    async def count_events(self) -> int:
        row = await self.warehouse.query_one("SELECT COUNT(1) AS c FROM raw_events")
        return int(row["c"]) if row else 0
