import pytest

from chainhook_lake.clarity import buffer_cv, some_cv, to_hex, uint_cv
from chainhook_lake.reserves import (
    METHOD_BALANCE,
    METHOD_QUOTE,
    VERSION_V0,
    VERSION_V1,
    Pool,
    ReserveResolver,
    is_stx_leg,
    lookup_reserves_args,
)
from chainhook_lake.stacks import StacksApiError
from chainhook_lake.watermarks import STATUS_SKIPPED, STATUS_SUCCESS

from conftest import make_address

POOL = f"{make_address(1)}.pool-meme-stx"
VAULT = f"{make_address(2)}.vault"
TOKEN = f"{make_address(3)}.meme"
OTHER = f"{make_address(4)}.usd"


class TestHelpers:
    def test_lookup_args(self):
        opcode = bytes([0x04]) + bytes(15)
        assert lookup_reserves_args() == [to_hex(uint_cv(0)), to_hex(some_cv(buffer_cv(opcode)))]

    @pytest.mark.parametrize("token,expected", [(".stx", True), ("STX", True), (TOKEN, False), (None, False)])
    def test_is_stx_leg(self, token, expected):
        assert is_stx_leg(token) is expected


class TestResolveReserves:
    @pytest.fixture
    def resolver(self, warehouse, node, leases):
        return ReserveResolver(warehouse, node, leases)

    @pytest.mark.asyncio
    async def test_quote_on_vault(self, node, resolver):
        node.read_only[(VAULT, "quote")] = {"dx": 1200, "dy": 0, "dk": 7}
        result = await resolver.resolve_reserves(Pool(POOL, VAULT, TOKEN, ".stx"))
        assert result.success
        assert (result.reserves_a, result.reserves_b) == ("1200", "0")
        assert (result.version, result.method) == (VERSION_V1, METHOD_QUOTE)
        assert node.calls[0] == (VAULT, "quote", lookup_reserves_args())

    @pytest.mark.asyncio
    async def test_quote_falls_back_to_pool(self, node, resolver):
        node.read_only[(VAULT, "quote")] = {"dx": 0, "dy": 0}
        node.read_only[(POOL, "quote")] = {"dx": "10", "dy": "20"}
        result = await resolver.resolve_reserves(Pool(POOL, VAULT, TOKEN, OTHER))
        assert (result.reserves_a, result.reserves_b, result.version) == ("10", "20", VERSION_V1)

    @pytest.mark.asyncio
    async def test_balance_fallback(self, node, resolver):
        node.read_only[(TOKEN, "get-balance")] = 700
        node.stx_balances[POOL] = 5000
        result = await resolver.resolve_reserves(Pool(POOL, None, TOKEN, ".stx"))
        assert result.success
        assert (result.reserves_a, result.reserves_b) == ("700", "5000")
        assert (result.version, result.method) == (VERSION_V0, METHOD_BALANCE)

    @pytest.mark.asyncio
    async def test_stx_balance_asks_pool_when_api_fails(self, node, resolver):
        node.stx_balances[POOL] = StacksApiError("HTTP 500", status=500)
        node.read_only[(POOL, "get-stx-balance")] = 42
        node.read_only[(OTHER, "get-balance")] = 1
        result = await resolver.resolve_reserves(Pool(POOL, None, ".stx", OTHER))
        assert (result.reserves_a, result.reserves_b) == ("42", "1")

    @pytest.mark.asyncio
    async def test_failure_collects_errors(self, node, resolver):
        node.read_only[(TOKEN, "get-balance")] = 700
        result = await resolver.resolve_reserves(Pool(POOL, None, TOKEN, OTHER))
        assert not result.success
        assert "quote on" in result.error
        assert "balance B" in result.error
        assert result.to_api()["action"] == "error"

    @pytest.mark.asyncio
    async def test_no_legs(self, resolver):
        result = await resolver.resolve_reserves(Pool(POOL))
        assert not result.success
        assert "no token legs" in result.error


class TestUpdateReserves:
    @pytest.fixture
    def resolver(self, warehouse, node, leases):
        return ReserveResolver(warehouse, node, leases, refresh_sec=3600)

    @pytest.mark.asyncio
    async def test_import_and_update(self, warehouse, node, resolver):
        imported = await resolver.import_pools(
            [
                {"pool_contract_id": POOL, "vault_contract_id": VAULT, "token_a_contract_id": TOKEN,
                 "token_b_contract_id": ".stx", "protocol": "bitflow"},
                {"contract_id": f"{make_address(5)}.dead-pool"},
            ]
        )
        assert imported == 2
        node.read_only[(VAULT, "quote")] = {"dx": 5, "dy": 6}

        run = await resolver.update_reserves()
        assert run.status == STATUS_SUCCESS
        assert (run.processed, run.updated, run.errors) == (2, 1, 1)
        body = run.to_api()
        assert {r["action"] for r in body["results"]} == {"updated", "error"}

        rows = await warehouse.query("SELECT * FROM liquidity_pool_reserves")
        assert len(rows) == 1
        assert (rows[0]["pool_contract_id"], rows[0]["reserves_a"], rows[0]["reserves_b"]) == (POOL, "5", "6")

        # fresh pools are not due again until refresh_sec passes
        again = await resolver.update_reserves()
        assert again.processed == 1

    @pytest.mark.asyncio
    async def test_import_upserts(self, warehouse, resolver):
        await resolver.import_pools([{"pool_contract_id": POOL, "protocol": "alex"}])
        await resolver.import_pools([{"pool_contract_id": POOL, "protocol": "velar"}])
        rows = await warehouse.query("SELECT protocol FROM liquidity_pools")
        assert [r["protocol"] for r in rows] == ["velar"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "row",
        [
            {"pool_contract_id": "not-a-contract"},
            {"pool_contract_id": POOL, "vault_contract_id": "bad"},
            {"pool_contract_id": POOL, "token_a_contract_id": "bad"},
            "not an object",
        ],
    )
    async def test_import_rejects_invalid_rows(self, warehouse, resolver, row):
        with pytest.raises(ValueError):
            await resolver.import_pools([row])
        assert await warehouse.query("SELECT * FROM liquidity_pools") == []

    @pytest.mark.asyncio
    async def test_skipped_when_lease_held(self, resolver, leases):
        async with leases.hold("job:update_vault_reserves"):
            run = await resolver.update_reserves()
        assert run.status == STATUS_SKIPPED
