import json
from typing import Any, Dict, List, Optional

import pytest

from chainhook_lake.clarity import ContractCallError, c32_address
from chainhook_lake.stacks import StacksApiError
from chainhook_lake.warehouse import Warehouse
from chainhook_lake.watermarks import LeaseManager, WatermarkStore


def make_address(seed: int = 1, version: int = 22) -> str:
    """A checksummed Stacks address derived from ``seed``."""
    hash160 = bytes([0x80 + seed % 64]) + bytes((seed + i) % 256 for i in range(19))
    return c32_address(version, hash160)


def make_tx(
    tx_hash: str = "0xaaa1",
    fee: Any = 1000,
    success: Any = True,
    operations: Optional[List[Dict[str, Any]]] = None,
    events: Optional[List[Dict[str, Any]]] = None,
    description: str = "transfer",
    contract_call: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {
        "description": description,
        "fee": fee,
        "success": success,
        "receipt": {"events": events or []},
    }
    if contract_call is not None:
        metadata["kind"] = {"type": "ContractCall", "data": contract_call}
    return {
        "transaction_identifier": {"hash": tx_hash},
        "operations": operations if operations is not None else [],
        "metadata": metadata,
    }


def make_block(
    block_hash: str = "0xb10c",
    index: Any = 100,
    transactions: Optional[List[Dict[str, Any]]] = None,
    block_time: Optional[int] = 1700000000,
) -> Dict[str, Any]:
    return {
        "block_identifier": {"hash": block_hash, "index": index},
        "metadata": {"block_time": block_time},
        "transactions": transactions if transactions is not None else [make_tx()],
    }


def make_payload(*blocks: Dict[str, Any]) -> bytes:
    return json.dumps({"apply": list(blocks) or [make_block()], "rollback": []}).encode("utf-8")


@pytest.fixture
def warehouse(tmp_path):
    wh = Warehouse(str(tmp_path / "lake.db"), query_timeout_sec=10)
    yield wh
    wh.close()


@pytest.fixture
def watermarks(warehouse):
    return WatermarkStore(warehouse)


@pytest.fixture
def leases(warehouse):
    return LeaseManager(warehouse, ttl_sec=60)


class FakeNode:
    """In-memory stand-in for StacksClient.

    Registered values are returned as-is; registered exceptions are raised.
    Unknown read-only calls fail like a missing function would.
    """

    def __init__(self):
        self.read_only: Dict[Any, Any] = {}
        self.contracts: Dict[str, Any] = {}
        self.stx_balances: Dict[str, Any] = {}
        self.metadata: Dict[str, Any] = {}
        self.calls: List[Any] = []

    @staticmethod
    def _resolve(value):
        if isinstance(value, BaseException):
            raise value
        return value

    async def call_read_only(self, contract_id, function, args_hex=(), sender=None):
        self.calls.append((contract_id, function, list(args_hex)))
        key = (contract_id, function)
        if key not in self.read_only:
            raise ContractCallError(f"{contract_id}::{function} rejected: NoSuchPublicFunction")
        return self._resolve(self.read_only[key])

    async def get_contract_info(self, contract_id):
        return self._resolve(self.contracts.get(contract_id))

    async def get_stx_balance(self, address):
        if address not in self.stx_balances:
            raise StacksApiError(f"no stx balance in response for {address}")
        return self._resolve(self.stx_balances[address])

    async def fetch_token_metadata(self, uri, gateway, timeout_sec):
        if uri not in self.metadata:
            raise StacksApiError(f"HTTP 404 fetching {uri}", status=404)
        return self._resolve(self.metadata[uri])


@pytest.fixture
def node():
    return FakeNode()
