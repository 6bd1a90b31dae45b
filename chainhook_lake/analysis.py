import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .utils import chunked, elapsed_ms, settle_all, utc_now_iso
from .validation import ENTITY_FAILED, ENTITY_VALIDATED, EnrichmentResult
from .warehouse import Warehouse
from .watermarks import STATUS_ERROR, STATUS_SKIPPED, STATUS_SUCCESS, LeaseHeld, LeaseManager

logger = logging.getLogger(__name__)


@dataclass
class ContractAnalysis:
    contract_address: str
    status: str
    source_code: Optional[str] = None
    parsed_abi: Optional[Dict[str, Any]] = None
    deployment_tx_id: Optional[str] = None
    deployment_block_height: Optional[int] = None
    canonical: Optional[bool] = None
    errors: List[str] = field(default_factory=list)
    duration_ms: int = 0


def analysis_to_api(result: EnrichmentResult) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "job_name": "analyze_contracts",
        "status": result.status,
        "contracts_processed": result.processed,
        "successful_analyses": result.succeeded,
        "failed_analyses": result.failed,
        "duration_ms": result.duration_ms,
    }
    if result.error is not None:
        out["error"] = result.error
    return out


class ContractAnalyzer:
    """Fills source, ABI and deployment info for pending contracts."""

    def __init__(
        self,
        warehouse: Warehouse,
        client: Any,
        leases: LeaseManager,
        batch_limit: int = 200,
        concurrency: int = 10,
    ):
        self.warehouse = warehouse
        self.client = client
        self.leases = leases
        self.batch_limit = batch_limit
        self.concurrency = concurrency

    async def analyze_pending(self, batch_limit: Optional[int] = None) -> EnrichmentResult:
        started = time.monotonic()
        limit = batch_limit or self.batch_limit
        try:
            async with self.leases.hold("job:analyze_contracts"):
                result = await self._analyze_pending(limit)
        except LeaseHeld:
            logger.info("contract analysis already running, skipping")
            return EnrichmentResult(status=STATUS_SKIPPED, duration_ms=elapsed_ms(started))
        except Exception as e:
            logger.exception("contract analysis failed")
            return EnrichmentResult(
                status=STATUS_ERROR,
                duration_ms=elapsed_ms(started),
                error=str(e) or type(e).__name__,
            )
        result.duration_ms = elapsed_ms(started)
        logger.info(
            "contract analysis finished in %dms: %d processed, %d ok, %d failed",
            result.duration_ms,
            result.processed,
            result.succeeded,
            result.failed,
        )
        return result

    async def _analyze_pending(self, limit: int) -> EnrichmentResult:
        rows = await self.warehouse.query(
            """
            SELECT contract_address, transaction_count
            FROM dim_contracts
            WHERE analysis_status = 'pending'
            ORDER BY transaction_count DESC, contract_address
            LIMIT ?
            """,
            (int(limit),),
        )
        logger.info("analyzing %d pending contracts", len(rows))
        result = EnrichmentResult(status=STATUS_SUCCESS)
        for batch in chunked(rows, self.concurrency):
            ids = [r["contract_address"] for r in batch]
            outcomes = await settle_all(self.analyze_contract(cid) for cid in ids)
            for cid, outcome in zip(ids, outcomes):
                if outcome.ok:
                    analysis = outcome.value
                else:
                    logger.warning("analysis of %s failed: %s", cid, outcome.error_message)
                    analysis = ContractAnalysis(cid, ENTITY_FAILED, errors=[outcome.error_message])
                stored = await self._persist(analysis)
                result.processed += 1
                if stored and analysis.status == ENTITY_VALIDATED:
                    result.succeeded += 1
                else:
                    result.failed += 1
        return result

    async def analyze_contract(self, contract_id: str) -> ContractAnalysis:
        started = time.monotonic()
        info = await self.client.get_contract_info(contract_id)
        if info is None:
            return ContractAnalysis(
                contract_id,
                ENTITY_FAILED,
                errors=["Contract not found or inaccessible"],
                duration_ms=elapsed_ms(started),
            )
        height = info.get("block_height")
        canonical = info.get("canonical")
        return ContractAnalysis(
            contract_address=contract_id,
            status=ENTITY_VALIDATED,
            source_code=info.get("source_code") or None,
            parsed_abi=info.get("abi"),
            deployment_tx_id=info.get("tx_id") or None,
            deployment_block_height=height if isinstance(height, int) and not isinstance(height, bool) else None,
            canonical=canonical if isinstance(canonical, bool) else None,
            duration_ms=elapsed_ms(started),
        )

    async def _persist(self, a: ContractAnalysis) -> bool:
        now = utc_now_iso()
        try:
            await self.warehouse.execute(
                """
                UPDATE dim_contracts
                SET analysis_status = ?,
                    source_code = COALESCE(?, source_code),
                    parsed_abi = COALESCE(?, parsed_abi),
                    deployment_tx_id = COALESCE(?, deployment_tx_id),
                    deployment_block_height = COALESCE(?, deployment_block_height),
                    canonical = COALESCE(?, canonical),
                    analysis_errors = ?,
                    analyzed_at = ?,
                    analysis_duration_ms = ?,
                    updated_at = ?
                WHERE contract_address = ?
                """,
                (
                    a.status,
                    a.source_code,
                    json.dumps(a.parsed_abi) if a.parsed_abi is not None else None,
                    a.deployment_tx_id,
                    a.deployment_block_height,
                    None if a.canonical is None else int(a.canonical),
                    json.dumps(a.errors) if a.errors else None,
                    now,
                    a.duration_ms,
                    now,
                    a.contract_address,
                ),
            )
        except Exception:
            logger.exception("failed to store analysis of %s", a.contract_address)
            return False
        return True
