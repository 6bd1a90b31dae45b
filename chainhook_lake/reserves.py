import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .clarity import buffer_cv, principal_cv, some_cv, to_hex, uint_cv
from .stacks import as_int
from .utils import elapsed_ms, format_ts, is_contract_id, settle_all, utc_now_iso
from .warehouse import Warehouse
from .watermarks import STATUS_ERROR, STATUS_SKIPPED, STATUS_SUCCESS, LeaseHeld, LeaseManager

logger = logging.getLogger(__name__)

OP_LOOKUP_RESERVES = 0x04

VERSION_V1 = "v1"
VERSION_V0 = "v0"
METHOD_QUOTE = "quote_opcode_4"
METHOD_BALANCE = "balance_check"

RESULTS_IN_RESPONSE = 5

INSERT_RESERVES_SQL = """
INSERT INTO liquidity_pool_reserves(
    pool_contract_id, reserves_a, reserves_b, version, method,
    reserves_updated_at, created_at
) VALUES (?, ?, ?, ?, ?, ?, ?)
"""


@dataclass
class Pool:
    pool_contract_id: str
    vault_contract_id: Optional[str] = None
    token_a_contract_id: Optional[str] = None
    token_b_contract_id: Optional[str] = None
    protocol: Optional[str] = None


@dataclass
class ReserveResult:
    pool_contract_id: str
    success: bool
    reserves_a: str = "0"
    reserves_b: str = "0"
    version: Optional[str] = None
    method: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def error(self) -> Optional[str]:
        return "; ".join(self.errors) if self.errors else None

    def to_api(self) -> Dict[str, Any]:
        if self.success:
            return {
                "contractId": self.pool_contract_id,
                "action": "updated",
                "reservesA": self.reserves_a,
                "reservesB": self.reserves_b,
                "version": self.version,
                "method": self.method,
            }
        return {
            "contractId": self.pool_contract_id,
            "action": "error",
            "error": self.error or "Failed to get reserves",
        }


@dataclass
class ReserveRunResult:
    status: str
    processed: int = 0
    updated: int = 0
    errors: int = 0
    duration_ms: int = 0
    results: List[ReserveResult] = field(default_factory=list)
    error: Optional[str] = None

    def to_api(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "status": self.status,
            "processed": self.processed,
            "updated": self.updated,
            "errors": self.errors,
            "duration_ms": self.duration_ms,
            "results": [r.to_api() for r in self.results[:RESULTS_IN_RESPONSE]],
        }
        if self.error is not None:
            out["error"] = self.error
        return out


def is_stx_leg(token: Optional[str]) -> bool:
    return bool(token) and (token == ".stx" or token.lower() == "stx")


def lookup_reserves_args() -> List[str]:
    opcode = bytes([OP_LOOKUP_RESERVES]) + bytes(15)
    return [to_hex(uint_cv(0)), to_hex(some_cv(buffer_cv(opcode)))]


def _amount(value: Any) -> Optional[int]:
    amount = as_int(value)
    if amount is None or amount < 0:
        return None
    return amount


class ReserveResolver:
    def __init__(
        self,
        warehouse: Warehouse,
        client: Any,
        leases: LeaseManager,
        batch_limit: int = 30,
        refresh_sec: int = 60,
    ):
        self.warehouse = warehouse
        self.client = client
        self.leases = leases
        self.batch_limit = batch_limit
        self.refresh_sec = refresh_sec

    async def resolve_reserves(self, pool: Pool) -> ReserveResult:
        """Quote the pool for its reserves, falling back to per-leg balances.

        ``quote(u0, (some 0x04..))`` is tried on the vault contract first when
        it differs from the pool, then on the pool itself. A quote counts only
        when one side is non-zero.
        """
        errors: List[str] = []
        targets = [pool.pool_contract_id]
        if pool.vault_contract_id and pool.vault_contract_id != pool.pool_contract_id:
            targets.insert(0, pool.vault_contract_id)

        for target in targets:
            try:
                quote = await self.client.call_read_only(target, "quote", lookup_reserves_args())
            except Exception as e:
                errors.append(f"quote on {target}: {str(e) or type(e).__name__}")
                continue
            dx = _amount(quote.get("dx")) if isinstance(quote, dict) else None
            dy = _amount(quote.get("dy")) if isinstance(quote, dict) else None
            if dx or dy:
                return ReserveResult(
                    pool.pool_contract_id,
                    True,
                    str(dx or 0),
                    str(dy or 0),
                    VERSION_V1,
                    METHOD_QUOTE,
                )
            errors.append(f"quote on {target}: no reserves in result")

        if not pool.token_a_contract_id or not pool.token_b_contract_id:
            errors.append("no token legs registered for balance check")
            return ReserveResult(pool.pool_contract_id, False, errors=errors)

        legs = await settle_all(
            [
                self._leg_balance(pool.pool_contract_id, pool.token_a_contract_id),
                self._leg_balance(pool.pool_contract_id, pool.token_b_contract_id),
            ]
        )
        leg_errors = [f"balance {label}: {o.error_message}" for label, o in zip("AB", legs) if not o.ok]
        if leg_errors:
            return ReserveResult(pool.pool_contract_id, False, errors=errors + leg_errors)
        logger.debug("pool %s resolved by balance check after: %s", pool.pool_contract_id, errors)
        return ReserveResult(
            pool.pool_contract_id,
            True,
            str(legs[0].value),
            str(legs[1].value),
            VERSION_V0,
            METHOD_BALANCE,
        )

    async def _leg_balance(self, pool_id: str, token: str) -> int:
        if is_stx_leg(token):
            try:
                return await self.client.get_stx_balance(pool_id)
            except Exception as e:
                logger.info("stx balance lookup for %s failed (%s), asking the pool", pool_id, e)
                value = await self.client.call_read_only(pool_id, "get-stx-balance")
        else:
            value = await self.client.call_read_only(token, "get-balance", [to_hex(principal_cv(pool_id))])
        amount = _amount(value)
        if amount is None:
            raise ValueError(f"unexpected balance value: {value!r}")
        return amount

    async def update_reserves(self) -> ReserveRunResult:
        started = time.monotonic()
        try:
            async with self.leases.hold("job:update_vault_reserves"):
                result = await self._update_reserves()
        except LeaseHeld:
            logger.info("reserve update already running, skipping")
            return ReserveRunResult(status=STATUS_SKIPPED, duration_ms=elapsed_ms(started))
        except Exception as e:
            logger.exception("reserve update failed")
            return ReserveRunResult(
                status=STATUS_ERROR,
                duration_ms=elapsed_ms(started),
                error=str(e) or type(e).__name__,
            )
        result.duration_ms = elapsed_ms(started)
        logger.info(
            "reserve update finished in %dms: %d updated, %d errors",
            result.duration_ms,
            result.updated,
            result.errors,
        )
        return result

    async def due_pools(self) -> List[Pool]:
        fresh_after = format_ts(datetime.now(timezone.utc) - timedelta(seconds=self.refresh_sec))
        rows = await self.warehouse.query(
            """
            SELECT p.pool_contract_id, p.vault_contract_id, p.token_a_contract_id,
                   p.token_b_contract_id, p.protocol
            FROM liquidity_pools AS p
            WHERE NOT EXISTS (
                SELECT 1 FROM liquidity_pool_reserves AS r
                WHERE r.pool_contract_id = p.pool_contract_id
                  AND r.reserves_updated_at >= ?
            )
            ORDER BY p.pool_contract_id
            LIMIT ?
            """,
            (fresh_after, int(self.batch_limit)),
        )
        return [Pool(**row) for row in rows]

    async def _update_reserves(self) -> ReserveRunResult:
        pools = await self.due_pools()
        logger.info("resolving reserves for %d pools", len(pools))
        outcomes = await settle_all(self.resolve_reserves(p) for p in pools)

        run = ReserveRunResult(status=STATUS_SUCCESS)
        for pool, outcome in zip(pools, outcomes):
            run.processed += 1
            if outcome.ok:
                res = outcome.value
            else:
                res = ReserveResult(pool.pool_contract_id, False, errors=[outcome.error_message])
            run.results.append(res)
            if res.success:
                logger.info(
                    "pool %s: A=%s B=%s (%s)", res.pool_contract_id, res.reserves_a, res.reserves_b, res.version
                )
            else:
                run.errors += 1
                logger.warning("pool %s: %s", res.pool_contract_id, res.error)

        now = utc_now_iso()
        rows = [
            (r.pool_contract_id, r.reserves_a, r.reserves_b, r.version, r.method, now, now)
            for r in run.results
            if r.success
        ]
        run.updated = await self._store(rows)
        return run

    async def _store(self, rows: Sequence[Tuple[Any, ...]]) -> int:
        if not rows:
            return 0
        try:
            await self.warehouse.executemany(INSERT_RESERVES_SQL, rows)
            return len(rows)
        except Exception:
            logger.exception("batch insert of %d reserve snapshots failed, inserting one by one", len(rows))
        stored = 0
        for row in rows:
            try:
                await self.warehouse.execute(INSERT_RESERVES_SQL, row)
                stored += 1
            except Exception:
                logger.exception("failed to store reserves for %s", row[0])
        return stored

    async def import_pools(self, rows: Sequence[Dict[str, Any]]) -> int:
        pools = [_pool_from_row(i, row) for i, row in enumerate(rows)]
        if not pools:
            return 0
        now = utc_now_iso()
        await self.warehouse.executemany(
            """
            INSERT INTO liquidity_pools(
                pool_contract_id, vault_contract_id, token_a_contract_id,
                token_b_contract_id, protocol, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(pool_contract_id) DO UPDATE SET
                vault_contract_id = excluded.vault_contract_id,
                token_a_contract_id = excluded.token_a_contract_id,
                token_b_contract_id = excluded.token_b_contract_id,
                protocol = excluded.protocol,
                updated_at = excluded.updated_at
            """,
            [
                (
                    p.pool_contract_id,
                    p.vault_contract_id,
                    p.token_a_contract_id,
                    p.token_b_contract_id,
                    p.protocol,
                    now,
                    now,
                )
                for p in pools
            ],
        )
        logger.info("registered %d liquidity pools", len(pools))
        return len(pools)


def _pool_from_row(index: int, row: Dict[str, Any]) -> Pool:
    if not isinstance(row, dict):
        raise ValueError(f"pool #{index} must be an object")
    pool_id = row.get("pool_contract_id") or row.get("contract_id")
    if not is_contract_id(pool_id):
        raise ValueError(f"pool #{index} has an invalid pool_contract_id: {pool_id!r}")
    vault = row.get("vault_contract_id") or None
    if vault is not None and not is_contract_id(vault):
        raise ValueError(f"pool #{index} has an invalid vault_contract_id: {vault!r}")
    legs = []
    for key in ("token_a_contract_id", "token_b_contract_id"):
        token = row.get(key) or None
        if token is not None and not (is_stx_leg(token) or is_contract_id(token)):
            raise ValueError(f"pool #{index} has an invalid {key}: {token!r}")
        legs.append(token)
    protocol = row.get("protocol")
    return Pool(pool_id, vault, legs[0], legs[1], str(protocol) if protocol else None)
