import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .stacks import as_int, as_text, normalize_image_url, resolve_token_uri
from .utils import (
    Settled,
    chunked,
    elapsed_ms,
    fallback_token_name,
    fallback_token_symbol,
    settle_all,
    utc_now_iso,
)
from .warehouse import Warehouse
from .watermarks import STATUS_ERROR, STATUS_SKIPPED, STATUS_SUCCESS, LeaseHeld, LeaseManager

logger = logging.getLogger(__name__)

ENTITY_VALIDATED = "validated"
ENTITY_FAILED = "failed"

# (result field, read-only function)
METADATA_CALLS: List[Tuple[str, str]] = [
    ("name", "get-name"),
    ("symbol", "get-symbol"),
    ("decimals", "get-decimals"),
    ("total_supply", "get-total-supply"),
    ("token_uri", "get-token-uri"),
]


@dataclass
class EnrichmentResult:
    status: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    duration_ms: int = 0
    error: Optional[str] = None


@dataclass
class TokenValidation:
    contract_address: str
    status: str = ENTITY_VALIDATED
    name: Optional[str] = None
    symbol: Optional[str] = None
    decimals: Optional[int] = None
    total_supply: Optional[str] = None
    token_uri: Optional[str] = None
    image_url: Optional[str] = None
    description: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    duration_ms: int = 0


def validation_to_api(result: EnrichmentResult) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "status": result.status,
        "tokens_processed": result.processed,
        "successful_validations": result.succeeded,
        "failed_validations": result.failed,
        "duration_ms": result.duration_ms,
    }
    if result.error is not None:
        out["error"] = result.error
    return out


def parse_function_list(raw: Any) -> List[str]:
    if isinstance(raw, list):
        items = raw
    else:
        try:
            items = json.loads(raw) if raw else []
        except ValueError:
            return []
    if not isinstance(items, list):
        return []
    return [x for x in items if isinstance(x, str)]


class TokenValidator:
    def __init__(
        self,
        warehouse: Warehouse,
        client: Any,
        leases: LeaseManager,
        batch_limit: int = 30,
        concurrency: int = 3,
        pause_ms: int = 800,
        uri_timeout_sec: float = 5,
        ipfs_gateway: str = "https://ipfs.io/ipfs/",
    ):
        self.warehouse = warehouse
        self.client = client
        self.leases = leases
        self.batch_limit = batch_limit
        self.concurrency = concurrency
        self.pause_ms = pause_ms
        self.uri_timeout_sec = uri_timeout_sec
        self.ipfs_gateway = ipfs_gateway

    async def validate_pending(self, batch_limit: Optional[int] = None) -> EnrichmentResult:
        started = time.monotonic()
        limit = batch_limit or self.batch_limit
        try:
            async with self.leases.hold("job:validate_tokens"):
                result = await self._validate_pending(limit)
        except LeaseHeld:
            logger.info("token validation already running, skipping")
            return EnrichmentResult(status=STATUS_SKIPPED, duration_ms=elapsed_ms(started))
        except Exception as e:
            logger.exception("token validation failed")
            return EnrichmentResult(
                status=STATUS_ERROR,
                duration_ms=elapsed_ms(started),
                error=str(e) or type(e).__name__,
            )
        result.duration_ms = elapsed_ms(started)
        logger.info(
            "token validation finished in %dms: %d processed, %d validated, %d failed",
            result.duration_ms,
            result.processed,
            result.succeeded,
            result.failed,
        )
        return result

    async def _validate_pending(self, limit: int) -> EnrichmentResult:
        tokens = await self.warehouse.query(
            """
            SELECT contract_address, token_type, available_functions, transaction_count
            FROM dim_tokens
            WHERE analysis_status = 'pending'
            ORDER BY CASE WHEN token_type = 'sip010_token' THEN 0 ELSE 1 END,
                     transaction_count DESC,
                     contract_address
            LIMIT ?
            """,
            (int(limit),),
        )
        logger.info("validating %d pending tokens", len(tokens))
        result = EnrichmentResult(status=STATUS_SUCCESS)
        batches = list(chunked(tokens, self.concurrency))
        for i, batch in enumerate(batches):
            outcomes = await settle_all(self.validate_token(t) for t in batch)
            for token, outcome in zip(batch, outcomes):
                validation = self._from_outcome(token["contract_address"], outcome)
                persisted = await self._persist(validation)
                result.processed += 1
                if persisted and validation.status == ENTITY_VALIDATED:
                    result.succeeded += 1
                else:
                    result.failed += 1
            if i + 1 < len(batches) and self.pause_ms > 0:
                await asyncio.sleep(self.pause_ms / 1000)
        return result

    @staticmethod
    def _from_outcome(contract_id: str, outcome: Settled) -> TokenValidation:
        if outcome.ok:
            return outcome.value
        logger.warning("validation of %s crashed: %s", contract_id, outcome.error_message)
        return TokenValidation(
            contract_address=contract_id,
            status=ENTITY_FAILED,
            name=fallback_token_name(contract_id),
            symbol=fallback_token_symbol(contract_id),
            errors=[outcome.error_message],
        )

    async def validate_token(self, token: Dict[str, Any]) -> TokenValidation:
        started = time.monotonic()
        contract_id = token["contract_address"]
        functions = parse_function_list(token.get("available_functions"))
        v = TokenValidation(contract_address=contract_id)

        calls = [(attr, fn) for attr, fn in METADATA_CALLS if fn in functions]
        outcomes = await settle_all(self.client.call_read_only(contract_id, fn) for _, fn in calls)
        for (attr, fn), outcome in zip(calls, outcomes):
            if not outcome.ok:
                v.status = ENTITY_FAILED
                v.errors.append(f"{fn}: {outcome.error_message}")
                logger.warning("%s %s failed: %s", contract_id, fn, outcome.error_message)
                continue
            if attr == "decimals":
                v.decimals = as_int(outcome.value)
            elif attr == "total_supply":
                supply = as_int(outcome.value)
                v.total_supply = str(supply) if supply is not None else None
            else:
                setattr(v, attr, as_text(outcome.value))

        if v.token_uri:
            await self._apply_token_uri(v)

        if not v.name:
            v.name = fallback_token_name(contract_id)
        if not v.symbol:
            v.symbol = fallback_token_symbol(contract_id)
        v.duration_ms = elapsed_ms(started)
        return v

    async def _apply_token_uri(self, v: TokenValidation) -> None:
        uri = v.token_uri or ""
        try:
            metadata = await asyncio.wait_for(
                self.client.fetch_token_metadata(uri, self.ipfs_gateway, self.uri_timeout_sec),
                timeout=self.uri_timeout_sec,
            )
        except Exception as e:
            message = str(e) or type(e).__name__
            v.errors.append(f"token uri: {message}")
            logger.warning("token uri fetch for %s failed: %s", v.contract_address, message)
            return

        name = metadata.get("name")
        if not v.name and isinstance(name, str) and name:
            v.name = name
        description = metadata.get("description")
        if isinstance(description, str) and description:
            v.description = description
        # the fetch above succeeded, so a non-data uri resolves to its url
        base = None if uri.strip().startswith("data:") else resolve_token_uri(uri, self.ipfs_gateway)
        v.image_url = normalize_image_url(metadata.get("image"), base, self.ipfs_gateway)

    async def _persist(self, v: TokenValidation) -> bool:
        now = utc_now_iso()
        try:
            await self.warehouse.execute(
                """
                UPDATE dim_tokens
                SET analysis_status = ?,
                    token_name = ?,
                    token_symbol = ?,
                    decimals = ?,
                    total_supply = ?,
                    token_uri = ?,
                    image_url = ?,
                    description = ?,
                    validation_errors = ?,
                    validated_at = ?,
                    validation_duration_ms = ?,
                    updated_at = ?
                WHERE contract_address = ?
                """,
                (
                    v.status,
                    v.name,
                    v.symbol,
                    v.decimals,
                    v.total_supply,
                    v.token_uri,
                    v.image_url,
                    v.description,
                    json.dumps(v.errors) if v.errors else None,
                    now,
                    v.duration_ms,
                    now,
                    v.contract_address,
                ),
            )
        except Exception:
            logger.exception("failed to store validation of %s", v.contract_address)
            return False
        return True
