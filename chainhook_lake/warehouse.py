import asyncio
import logging
import re
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")
Params = Union[Sequence[Any], Mapping[str, Any]]


class WarehouseError(Exception):
    pass


class WarehouseTimeout(WarehouseError):
    pass


SCHEMA = """
CREATE TABLE IF NOT EXISTS raw_events (
    event_id TEXT PRIMARY KEY,
    received_at TEXT NOT NULL,
    webhook_path TEXT NOT NULL,
    body TEXT NOT NULL,
    body_format TEXT NOT NULL,
    headers TEXT,
    url TEXT,
    method TEXT,
    block_hash TEXT,
    block_index INTEGER
);
CREATE INDEX IF NOT EXISTS idx_raw_events_received_at
    ON raw_events(received_at);
CREATE UNIQUE INDEX IF NOT EXISTS idx_raw_events_block
    ON raw_events(block_hash, block_index)
    WHERE block_hash IS NOT NULL;

CREATE TABLE IF NOT EXISTS processing_watermarks (
    stream_name TEXT PRIMARY KEY,
    last_processed_at TEXT NOT NULL,
    status TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    rows_processed INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    version INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS job_leases (
    name TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    acquired_at REAL NOT NULL,
    expires_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS stg_transactions (
    event_id TEXT NOT NULL,
    block_position INTEGER NOT NULL,
    tx_position INTEGER NOT NULL,
    block_hash TEXT,
    block_index INTEGER,
    tx_hash TEXT,
    description TEXT,
    fee INTEGER,
    success INTEGER,
    operation_count INTEGER,
    webhook_path TEXT,
    received_at TEXT NOT NULL,
    UNIQUE(event_id, block_position, tx_position)
);
CREATE INDEX IF NOT EXISTS idx_stg_transactions_received_at
    ON stg_transactions(received_at);

CREATE TABLE IF NOT EXISTS stg_events (
    event_id TEXT NOT NULL,
    block_position INTEGER NOT NULL,
    tx_position INTEGER NOT NULL,
    event_position INTEGER NOT NULL,
    block_hash TEXT,
    block_time TEXT,
    tx_hash TEXT,
    event_type TEXT,
    position_index INTEGER,
    contract_identifier TEXT,
    topic TEXT,
    action TEXT,
    ft_sender TEXT,
    ft_recipient TEXT,
    ft_amount TEXT,
    ft_asset_identifier TEXT,
    raw_event_data TEXT,
    webhook_path TEXT,
    received_at TEXT NOT NULL,
    UNIQUE(event_id, block_position, tx_position, event_position)
);
CREATE INDEX IF NOT EXISTS idx_stg_events_received_at
    ON stg_events(received_at);

CREATE TABLE IF NOT EXISTS stg_addresses (
    event_id TEXT NOT NULL,
    block_position INTEGER NOT NULL,
    tx_position INTEGER NOT NULL,
    operation_position INTEGER NOT NULL,
    block_hash TEXT,
    tx_hash TEXT,
    operation_type TEXT,
    address TEXT,
    amount TEXT,
    contract_identifier TEXT,
    function_name TEXT,
    function_args TEXT,
    webhook_path TEXT,
    received_at TEXT NOT NULL,
    UNIQUE(event_id, block_position, tx_position, operation_position)
);
CREATE INDEX IF NOT EXISTS idx_stg_addresses_received_at
    ON stg_addresses(received_at);

CREATE TABLE IF NOT EXISTS dim_contracts (
    contract_address TEXT PRIMARY KEY,
    transaction_count INTEGER NOT NULL,
    last_seen TEXT,
    status TEXT,
    source_code TEXT,
    parsed_abi TEXT,
    deployment_tx_id TEXT,
    deployment_block_height INTEGER,
    canonical INTEGER,
    analysis_status TEXT NOT NULL DEFAULT 'pending',
    analysis_errors TEXT,
    analyzed_at TEXT,
    analysis_duration_ms INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_dim_contracts_analysis
    ON dim_contracts(analysis_status, transaction_count);

CREATE TABLE IF NOT EXISTS dim_tokens (
    contract_address TEXT PRIMARY KEY,
    token_type TEXT NOT NULL,
    available_functions TEXT NOT NULL,
    transaction_count INTEGER NOT NULL,
    last_seen TEXT,
    status TEXT,
    analysis_status TEXT NOT NULL DEFAULT 'pending',
    token_name TEXT,
    token_symbol TEXT,
    decimals INTEGER,
    total_supply TEXT,
    token_uri TEXT,
    image_url TEXT,
    description TEXT,
    validation_errors TEXT,
    validated_at TEXT,
    validation_duration_ms INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_dim_tokens_analysis
    ON dim_tokens(analysis_status, token_type, transaction_count);

CREATE TABLE IF NOT EXISTS liquidity_pools (
    pool_contract_id TEXT PRIMARY KEY,
    vault_contract_id TEXT,
    token_a_contract_id TEXT,
    token_b_contract_id TEXT,
    protocol TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS liquidity_pool_reserves (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pool_contract_id TEXT NOT NULL,
    reserves_a TEXT NOT NULL,
    reserves_b TEXT NOT NULL,
    version TEXT NOT NULL,
    method TEXT NOT NULL,
    reserves_updated_at TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_pool_reserves_pool_time
    ON liquidity_pool_reserves(pool_contract_id, reserves_updated_at);
"""


def _sql_regexp(pattern: Optional[str], value: Optional[str]) -> Optional[int]:
    if pattern is None or value is None:
        return None
    return 1 if re.search(pattern, str(value)) else 0


def _sql_regexp_extract(value: Optional[str], pattern: Optional[str]) -> Optional[str]:
    if pattern is None or value is None:
        return None
    m = re.search(pattern, str(value))
    if not m:
        return None
    return m.group(1) if m.groups() else m.group(0)


def execute_counted(conn: sqlite3.Connection, sql: str, params: Params = ()) -> int:
    # cursor.rowcount is -1 for statements opening with WITH
    before = conn.total_changes
    conn.execute(sql, params)
    return conn.total_changes - before


class Warehouse:
    """Async SQL client over a SQLite file.

    Every call runs on a worker thread and is bounded by a timeout; a call
    that times out raises :class:`WarehouseTimeout` while the statement is
    left to finish on its own. All values must be passed as bound parameters.
    """

    def __init__(self, db_path: str, query_timeout_sec: float = 30.0):
        self.db_path = db_path
        self.query_timeout_sec = query_timeout_sec
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(
            db_path,
            timeout=query_timeout_sec,
            isolation_level=None,
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self.conn.create_function("regexp", 2, _sql_regexp, deterministic=True)
        self.conn.create_function("regexp_extract", 2, _sql_regexp_extract, deterministic=True)
        self._init_schema()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        if self.db_path != ":memory:":
            cur.execute("PRAGMA journal_mode=WAL")
        cur.execute("PRAGMA synchronous=NORMAL")
        cur.executescript(SCHEMA)

    def _locked(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        with self._lock:
            return fn(self.conn)

    async def run(self, fn: Callable[[sqlite3.Connection], T], timeout: Optional[float] = None) -> T:
        limit = timeout or self.query_timeout_sec
        try:
            return await asyncio.wait_for(asyncio.to_thread(self._locked, fn), timeout=limit)
        except asyncio.TimeoutError as e:
            raise WarehouseTimeout(f"warehouse call exceeded {limit:g}s") from e
        except sqlite3.Error as e:
            raise WarehouseError(f"{type(e).__name__}: {e}") from e

    async def query(
        self, sql: str, params: Params = (), timeout: Optional[float] = None
    ) -> List[Dict[str, Any]]:
        def _q(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]

        return await self.run(_q, timeout)

    async def query_one(
        self, sql: str, params: Params = (), timeout: Optional[float] = None
    ) -> Optional[Dict[str, Any]]:
        rows = await self.query(sql, params, timeout)
        return rows[0] if rows else None

    async def execute(self, sql: str, params: Params = (), timeout: Optional[float] = None) -> int:
        """Run one statement and return the number of rows it changed."""

        def _x(conn: sqlite3.Connection) -> int:
            return execute_counted(conn, sql, params)

        return await self.run(_x, timeout)

    async def executemany(
        self, sql: str, rows: Sequence[Params], timeout: Optional[float] = None
    ) -> int:
        def _xm(conn: sqlite3.Connection) -> int:
            conn.execute("BEGIN IMMEDIATE")
            try:
                count = conn.executemany(sql, rows).rowcount
                conn.execute("COMMIT")
                return count
            except BaseException:
                conn.execute("ROLLBACK")
                raise

        return await self.run(_xm, timeout)

    async def transaction(
        self, fn: Callable[[sqlite3.Connection], T], timeout: Optional[float] = None
    ) -> T:
        """Run ``fn(conn)`` inside ``BEGIN IMMEDIATE`` .. ``COMMIT``; roll back on any error."""

        def _tx(conn: sqlite3.Connection) -> T:
            conn.execute("BEGIN IMMEDIATE")
            try:
                result = fn(conn)
                conn.execute("COMMIT")
                return result
            except BaseException:
                conn.execute("ROLLBACK")
                raise

        return await self.run(_tx, timeout)
