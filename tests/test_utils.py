import asyncio
from datetime import datetime, timezone

import pytest

from chainhook_lake.utils import (
    EPOCH_CURSOR,
    PathShapeError,
    chunked,
    extract_path,
    fallback_token_name,
    fallback_token_symbol,
    find_path,
    format_ts,
    is_contract_id,
    parse_ts,
    settle_all,
    split_contract_id,
)

from conftest import make_address


class TestTimestamps:
    def test_format_is_fixed_width_utc(self):
        dt = datetime(2024, 1, 2, 3, 4, 5, 6, tzinfo=timezone.utc)
        assert format_ts(dt) == "2024-01-02T03:04:05.000006Z"

    def test_naive_is_treated_as_utc(self):
        assert format_ts(datetime(1970, 1, 1)) == EPOCH_CURSOR

    def test_parse_roundtrip_orders_lexically(self):
        a = format_ts(datetime(2024, 1, 1, 0, 0, 0, 999999, tzinfo=timezone.utc))
        b = format_ts(datetime(2024, 1, 1, 0, 0, 1, 0, tzinfo=timezone.utc))
        assert a < b
        assert parse_ts(a).microsecond == 999999


class TestPaths:
    doc = {"apply": [{"block_identifier": {"hash": "0xabc", "index": 7}}], "flag": True}

    def test_extract(self):
        assert extract_path(self.doc, "apply[0].block_identifier.hash", str) == "0xabc"
        assert extract_path(self.doc, "apply[0].block_identifier.index", int) == 7

    def test_missing_is_none(self):
        assert extract_path(self.doc, "apply[3].block_identifier.hash") is None
        assert extract_path(self.doc, "rollback[0]") is None

    def test_shape_mismatch_raises(self):
        with pytest.raises(PathShapeError):
            extract_path(self.doc, "apply.block_identifier")
        with pytest.raises(PathShapeError):
            extract_path(self.doc, "apply[0].block_identifier.hash", int)

    def test_bool_is_not_int(self):
        with pytest.raises(PathShapeError):
            extract_path(self.doc, "flag", int)
        assert find_path(self.doc, "flag", int) is None

    def test_find_path_on_text_body(self):
        assert find_path("not json", "apply[0].block_identifier.hash", str) is None


class TestContractIds:
    def test_valid(self):
        cid = f"{make_address()}.my-token"
        assert is_contract_id(cid)
        assert split_contract_id(cid) == (make_address(), "my-token")

    @pytest.mark.parametrize("value", ["", "SP123.token", "ST" + "A" * 39 + ".x", None, 5])
    def test_invalid(self, value):
        assert not is_contract_id(value)

    def test_split_invalid_raises(self):
        with pytest.raises(ValueError):
            split_contract_id("nope")

    def test_fallback_display_names(self):
        cid = f"{make_address()}.wrapped-stx-token"
        assert fallback_token_name(cid) == "Wrapped Stx Token"
        assert fallback_token_symbol(cid) == "WRAP"
        assert fallback_token_symbol(f"{make_address()}.alex") == "ALEX"


class TestSettleAll:
    @pytest.mark.asyncio
    async def test_failures_do_not_abort_siblings(self):
        async def ok(v):
            await asyncio.sleep(0)
            return v

        async def boom():
            raise RuntimeError("boom")

        async def slow():
            raise asyncio.TimeoutError()

        results = await settle_all([ok(1), boom(), slow(), ok(4)])
        assert [r.ok for r in results] == [True, False, False, True]
        assert results[0].value == 1
        assert results[1].error_message == "boom"
        assert results[2].error_message == "TimeoutError"
        assert results[3].value == 4

    def test_chunked(self):
        assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
        assert list(chunked([], 3)) == []
