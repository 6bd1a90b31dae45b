import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .utils import CONTRACT_ID_PATTERN, elapsed_ms, utc_now_iso
from .warehouse import Warehouse
from .watermarks import STATUS_ERROR, STATUS_SKIPPED, STATUS_SUCCESS, LeaseHeld, LeaseManager

logger = logging.getLogger(__name__)

SIP010_FUNCTIONS: List[str] = [
    "get-name",
    "get-symbol",
    "get-decimals",
    "get-total-supply",
    "get-token-uri",
    "transfer",
    "get-balance",
]
TOKEN_REQUIRED_FUNCTIONS: List[str] = ["transfer", "get-balance", "get-total-supply"]

_FULL_ID = f"^{CONTRACT_ID_PATTERN}$"

DISCOVER_CONTRACTS_SQL = """
WITH candidates AS (
    SELECT regexp_extract(description, :id_capture) AS contract_address,
           received_at AS last_seen,
           'tx_description' AS source
    FROM stg_transactions
    WHERE description IS NOT NULL
      AND regexp(:id_anywhere, description)

    UNION ALL

    SELECT contract_identifier, received_at, 'address_data'
    FROM stg_addresses
    WHERE contract_identifier IS NOT NULL
      AND regexp(:id_full, contract_identifier)

    UNION ALL

    SELECT substr(ft_asset_identifier, 1, instr(ft_asset_identifier, '::') - 1),
           received_at, 'ft_events'
    FROM stg_events
    WHERE ft_asset_identifier IS NOT NULL
      AND instr(ft_asset_identifier, '::') > 0

    UNION ALL

    SELECT regexp_extract(contract_identifier, '^([^.]+[.][^.]+)'),
           received_at, 'function_calls'
    FROM stg_addresses
    WHERE contract_identifier IS NOT NULL
      AND function_name IS NOT NULL
      AND regexp(:address_prefix, contract_identifier)
),
per_source AS (
    SELECT contract_address, source, COUNT(*) AS n, MAX(last_seen) AS last_seen
    FROM candidates
    WHERE contract_address IS NOT NULL
      AND contract_address != ''
      AND length(contract_address) >= 42
      AND regexp(:id_full, contract_address)
    GROUP BY contract_address, source
    ORDER BY contract_address, source
),
discovered AS (
    SELECT contract_address,
           SUM(n) AS transaction_count,
           MAX(last_seen) AS last_seen,
           group_concat(source, ', ') AS sources
    FROM per_source
    GROUP BY contract_address
)
INSERT OR IGNORE INTO dim_contracts(
    contract_address, transaction_count, last_seen, status,
    analysis_status, created_at, updated_at
)
SELECT d.contract_address, d.transaction_count, d.last_seen,
       'discovered_from_' || d.sources, 'pending', :now, :now
FROM discovered AS d
WHERE NOT EXISTS (
    SELECT 1 FROM dim_contracts AS existing
    WHERE existing.contract_address = d.contract_address
)
ORDER BY d.transaction_count DESC, d.last_seen DESC
"""

DISCOVER_TOKENS_SQL = """
WITH functions AS (
    SELECT c.contract_address, json_extract(f.value, '$.name') AS name
    FROM dim_contracts AS c,
         json_each(
             CASE WHEN json_valid(c.parsed_abi) THEN
                 CASE WHEN json_type(c.parsed_abi, '$.functions') = 'array'
                      THEN json_extract(c.parsed_abi, '$.functions')
                      ELSE '[]' END
             ELSE '[]' END
         ) AS f
    WHERE c.analysis_status = 'validated'
      AND c.parsed_abi IS NOT NULL
      AND CASE WHEN f.type = 'object' THEN json_type(f.value, '$.name') END = 'text'
),
scored AS (
    SELECT fn.contract_address,
           json_group_array(DISTINCT fn.name) AS available_functions,
           COUNT(DISTINCT CASE WHEN fn.name IN (SELECT value FROM json_each(:sip010)) THEN fn.name END)
               AS sip010_count,
           COUNT(DISTINCT CASE WHEN fn.name IN (SELECT value FROM json_each(:required)) THEN fn.name END)
               AS required_count
    FROM functions AS fn
    GROUP BY fn.contract_address
)
INSERT OR IGNORE INTO dim_tokens(
    contract_address, token_type, available_functions, transaction_count,
    last_seen, status, analysis_status, created_at, updated_at
)
SELECT s.contract_address,
       CASE WHEN s.sip010_count >= 5 THEN 'sip010_token' ELSE 'partial_token' END,
       s.available_functions,
       c.transaction_count,
       c.last_seen,
       'discovered_from_contract_abi',
       'pending',
       :now,
       :now
FROM scored AS s
JOIN dim_contracts AS c ON c.contract_address = s.contract_address
WHERE s.required_count = :required_total
  AND s.sip010_count >= 3
  AND NOT EXISTS (
      SELECT 1 FROM dim_tokens AS existing
      WHERE existing.contract_address = s.contract_address
  )
ORDER BY s.sip010_count DESC, c.transaction_count DESC, c.last_seen DESC
"""


@dataclass
class DiscoveryResult:
    job_name: str
    status: str
    new_entities_discovered: int
    duration_ms: int
    error: Optional[str] = None

    def to_api(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "job_name": self.job_name,
            "status": self.status,
            "new_entities_discovered": self.new_entities_discovered,
            "duration_ms": self.duration_ms,
        }
        if self.error is not None:
            out["error"] = self.error
        return out


class ContractDiscovery:
    def __init__(
        self,
        warehouse: Warehouse,
        leases: LeaseManager,
        long_query_timeout_sec: Optional[float] = None,
    ):
        self.warehouse = warehouse
        self.leases = leases
        self.long_query_timeout_sec = long_query_timeout_sec

    async def discover_contracts(self) -> DiscoveryResult:
        params = {
            "id_capture": f"({CONTRACT_ID_PATTERN})",
            "id_anywhere": CONTRACT_ID_PATTERN,
            "id_full": _FULL_ID,
            "address_prefix": r"^S[PM][0-9A-Z]{38,42}\.",
            "now": utc_now_iso(),
        }
        return await self._run("discover_contracts", DISCOVER_CONTRACTS_SQL, params)

    async def discover_tokens(self) -> DiscoveryResult:
        params = {
            "sip010": json.dumps(SIP010_FUNCTIONS),
            "required": json.dumps(TOKEN_REQUIRED_FUNCTIONS),
            "required_total": len(TOKEN_REQUIRED_FUNCTIONS),
            "now": utc_now_iso(),
        }
        return await self._run("discover_tokens", DISCOVER_TOKENS_SQL, params)

    async def _run(self, job_name: str, sql: str, params: Dict[str, Any]) -> DiscoveryResult:
        started = time.monotonic()
        logger.info("starting %s", job_name)
        try:
            async with self.leases.hold(f"job:{job_name}"):
                inserted = await self.warehouse.execute(sql, params, self.long_query_timeout_sec)
        except LeaseHeld:
            logger.info("%s already running, skipping", job_name)
            return DiscoveryResult(job_name, STATUS_SKIPPED, 0, elapsed_ms(started))
        except Exception as e:
            logger.exception("%s failed", job_name)
            return DiscoveryResult(
                job_name, STATUS_ERROR, 0, elapsed_ms(started), error=str(e) or type(e).__name__
            )
        duration_ms = elapsed_ms(started)
        logger.info("%s finished in %dms: %d new entities", job_name, duration_ms, inserted)
        return DiscoveryResult(job_name, STATUS_SUCCESS, inserted, duration_ms)
