import json

import pytest

from chainhook_lake.ingest import EventIngestor
from chainhook_lake.streams import get_stream, stream_names
from chainhook_lake.transform import IncrementalTransformer
from chainhook_lake.utils import EPOCH_CURSOR
from chainhook_lake.watermarks import (
    STATUS_ERROR,
    STATUS_NO_NEW_DATA,
    STATUS_SKIPPED,
    STATUS_SUCCESS,
)

from conftest import make_address, make_block, make_payload, make_tx

TOKEN = f"{make_address(3)}.meme-coin"


def _operations():
    return [
        {"type": "DEBIT", "account": {"address": make_address(1)}, "amount": {"value": "-500"}},
        {"type": "CREDIT", "account": {"address": make_address(2)}, "amount": {"value": "500"}},
    ]


def _ft_event(amount="500"):
    return {
        "type": "FTTransferEvent",
        "position": {"index": 0},
        "data": {
            "sender": make_address(1),
            "recipient": make_address(2),
            "amount": amount,
            "asset_identifier": f"{TOKEN}::meme",
        },
    }


class TestStreams:
    def test_registry(self):
        assert stream_names() == ["stg_addresses", "stg_events", "stg_transactions"]
        assert get_stream("stg_events").target_table == "stg_events"
        with pytest.raises(KeyError):
            get_stream("stg_nope")


class TestIncrementalTransformer:
    @pytest.fixture
    def ingestor(self, warehouse):
        return EventIngestor(warehouse)

    @pytest.fixture
    def transformer(self, warehouse, watermarks, leases):
        return IncrementalTransformer(warehouse, watermarks, leases)

    @pytest.mark.asyncio
    async def test_transactions_from_one_event(self, warehouse, ingestor, transformer):
        tx = make_tx(tx_hash="0xfeed", fee=1000, success=True, operations=_operations())
        ingested = await ingestor.ingest([], make_payload(make_block(transactions=[tx])), {})
        event = await ingestor.get_event(ingested.event_id)

        result = await transformer.run_incremental("stg_transactions")
        assert result.status == STATUS_SUCCESS
        assert result.rows_processed == 1
        assert result.last_processed_at == event.received_at

        rows = await warehouse.query("SELECT * FROM stg_transactions")
        assert len(rows) == 1
        row = rows[0]
        assert row["tx_hash"] == "0xfeed"
        assert row["fee"] == 1000
        assert row["success"] == 1
        assert row["operation_count"] == 2
        assert row["block_hash"] == "0xb10c"
        assert row["block_index"] == 100
        assert row["received_at"] == event.received_at
        assert row["event_id"] == ingested.event_id

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, warehouse, ingestor, transformer):
        await ingestor.ingest([], make_payload(), {})
        first = await transformer.run_incremental("stg_transactions")
        second = await transformer.run_incremental("stg_transactions")

        assert first.status == STATUS_SUCCESS
        assert second.status == STATUS_NO_NEW_DATA
        assert second.last_processed_at == first.last_processed_at
        rows = await warehouse.query("SELECT COUNT(*) AS c FROM stg_transactions")
        assert rows[0]["c"] == 1

    @pytest.mark.asyncio
    async def test_replayed_window_inserts_nothing(self, warehouse, ingestor, transformer, watermarks):
        await ingestor.ingest([], make_payload(), {})
        await transformer.run_incremental("stg_transactions")
        # rewind the cursor as if the watermark write had been lost
        await warehouse.execute(
            "UPDATE processing_watermarks SET last_processed_at = ? WHERE stream_name = ?",
            (EPOCH_CURSOR, "stg_transactions"),
        )
        replay = await transformer.run_incremental("stg_transactions")
        assert replay.status == STATUS_SUCCESS
        assert replay.rows_processed == 0
        rows = await warehouse.query("SELECT COUNT(*) AS c FROM stg_transactions")
        assert rows[0]["c"] == 1
        assert (await watermarks.get("stg_transactions")).last_processed_at != EPOCH_CURSOR

    @pytest.mark.asyncio
    async def test_only_new_events_are_processed(self, warehouse, ingestor, transformer):
        await ingestor.ingest([], make_payload(make_block("0x1", 1)), {})
        await transformer.run_incremental("stg_transactions")
        second = await ingestor.ingest([], make_payload(make_block("0x2", 2)), {})

        result = await transformer.run_incremental("stg_transactions")
        assert result.rows_processed == 1
        event = await ingestor.get_event(second.event_id)
        assert result.last_processed_at == event.received_at
        rows = await warehouse.query("SELECT block_hash FROM stg_transactions ORDER BY received_at")
        assert [r["block_hash"] for r in rows] == ["0x1", "0x2"]

    @pytest.mark.asyncio
    async def test_no_data_on_empty_warehouse(self, transformer, watermarks):
        result = await transformer.run_incremental("stg_events")
        assert result.status == STATUS_NO_NEW_DATA
        assert result.last_processed_at == EPOCH_CURSOR
        assert await watermarks.get("stg_events") is None

    @pytest.mark.asyncio
    async def test_skips_events_without_blocks(self, warehouse, ingestor, transformer):
        await ingestor.ingest([], b"{broken", {})
        await ingestor.ingest([], b'{"apply": []}', {})
        await ingestor.ingest([], b'{"apply": "nope"}', {})
        result = await transformer.run_incremental("stg_transactions")
        assert result.status == STATUS_NO_NEW_DATA

    @pytest.mark.asyncio
    async def test_malformed_nested_shapes_are_ignored(self, warehouse, ingestor, transformer):
        body = {
            "apply": [
                "not a block",
                {"block_identifier": {"hash": "0x9", "index": 9}, "transactions": "nope"},
                {
                    "block_identifier": {"hash": "0xa", "index": 10},
                    "transactions": [7, make_tx(tx_hash="0xok", fee="abc", success="yes")],
                },
            ]
        }
        await ingestor.ingest([], json.dumps(body).encode(), {})
        result = await transformer.run_incremental("stg_transactions")
        assert result.status == STATUS_SUCCESS
        rows = await warehouse.query("SELECT * FROM stg_transactions")
        assert len(rows) == 1
        assert rows[0]["tx_hash"] == "0xok"
        assert rows[0]["block_position"] == 2
        assert rows[0]["tx_position"] == 1
        assert rows[0]["fee"] is None
        assert rows[0]["success"] is None

    @pytest.mark.asyncio
    async def test_events_stream(self, warehouse, ingestor, transformer):
        tx = make_tx(events=[_ft_event(), {"type": "PrintEvent", "data": {"topic": "print"}}, "junk"])
        await ingestor.ingest([], make_payload(make_block(transactions=[tx])), {})
        result = await transformer.run_incremental("stg_events")
        assert result.rows_processed == 2

        rows = await warehouse.query("SELECT * FROM stg_events ORDER BY event_position")
        ft = rows[0]
        assert ft["event_type"] == "FTTransferEvent"
        assert ft["ft_amount"] == "500"
        assert ft["ft_asset_identifier"] == f"{TOKEN}::meme"
        assert ft["ft_sender"] == make_address(1)
        assert ft["block_time"] == "2023-11-14T22:13:20.000000Z"
        assert json.loads(ft["raw_event_data"])["type"] == "FTTransferEvent"
        assert rows[1]["topic"] == "print"
        assert rows[1]["ft_amount"] is None

    @pytest.mark.asyncio
    async def test_window_ending_in_rowless_event_is_consumed(
        self, warehouse, ingestor, transformer, watermarks
    ):
        with_event = make_tx(tx_hash="0x1", events=[_ft_event()])
        await ingestor.ingest([], make_payload(make_block("0x1", 1, transactions=[with_event])), {})
        quiet = await ingestor.ingest(
            [], make_payload(make_block("0x2", 2, transactions=[make_tx(tx_hash="0x2")])), {}
        )

        first = await transformer.run_incremental("stg_events")
        assert first.rows_processed == 1
        assert first.last_processed_at == (await ingestor.get_event(quiet.event_id)).received_at
        before = await watermarks.get("stg_events")

        second = await transformer.run_incremental("stg_events")
        assert second.status == STATUS_NO_NEW_DATA
        assert await watermarks.get("stg_events") == before

    @pytest.mark.asyncio
    async def test_addresses_stream(self, warehouse, ingestor, transformer):
        call = {"contract_identifier": TOKEN, "method": "transfer", "args": ["u500"]}
        tx = make_tx(operations=_operations(), contract_call=call)
        await ingestor.ingest([], make_payload(make_block(transactions=[tx])), {})
        result = await transformer.run_incremental("stg_addresses")
        assert result.rows_processed == 2

        rows = await warehouse.query("SELECT * FROM stg_addresses ORDER BY operation_position")
        assert [r["operation_type"] for r in rows] == ["DEBIT", "CREDIT"]
        assert rows[0]["address"] == make_address(1)
        assert rows[0]["amount"] == "-500"
        assert rows[0]["contract_identifier"] == TOKEN
        assert rows[0]["function_name"] == "transfer"
        assert json.loads(rows[0]["function_args"]) == ["u500"]

    @pytest.mark.asyncio
    async def test_streams_keep_separate_watermarks(self, ingestor, transformer, watermarks):
        await ingestor.ingest([], make_payload(), {})
        await transformer.run_incremental("stg_transactions")
        assert await watermarks.get("stg_transactions") is not None
        assert await watermarks.get("stg_addresses") is None

    @pytest.mark.asyncio
    async def test_skipped_when_lease_held(self, ingestor, transformer, leases, watermarks):
        await ingestor.ingest([], make_payload(), {})
        async with leases.hold("transform:stg_transactions"):
            result = await transformer.run_incremental("stg_transactions")
        assert result.status == STATUS_SKIPPED
        assert await watermarks.get("stg_transactions") is None

    @pytest.mark.asyncio
    async def test_failure_records_error(self, warehouse, ingestor, transformer, watermarks):
        await ingestor.ingest([], make_payload(), {})
        await warehouse.execute("DROP TABLE stg_transactions")
        result = await transformer.run_incremental("stg_transactions")
        assert result.status == STATUS_ERROR
        assert result.error
        wm = await watermarks.get("stg_transactions")
        assert wm.status == STATUS_ERROR
        assert wm.last_processed_at == EPOCH_CURSOR
