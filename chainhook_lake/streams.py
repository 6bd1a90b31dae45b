from dataclasses import dataclass
from typing import Dict, List


@dataclass(frozen=True)
class StreamDefinition:
    name: str
    target_table: str
    shape_predicate: str
    insert_sql: str


# Raw bodies are always valid JSON text, so json_type/json_each on e.body is
# safe. Nested elements are only descended into when they are objects.
SHAPE_HAS_BLOCKS = (
    "json_type(e.body, '$.apply') = 'array' "
    "AND json_array_length(e.body, '$.apply') > 0"
)


def _array(src: str, path: str, src_type: str = "") -> str:
    """SQL expression yielding the array at ``path`` of ``src``, or ``'[]'``."""
    inner = (
        f"CASE WHEN json_type({src}, '{path}') = 'array' "
        f"THEN json_extract({src}, '{path}') ELSE '[]' END"
    )
    if not src_type:
        return inner
    return f"CASE WHEN {src_type} = 'object' THEN ({inner}) ELSE '[]' END"


def _text(src: str, path: str) -> str:
    return (
        f"CASE json_type({src}, '{path}') "
        f"WHEN 'text' THEN json_extract({src}, '{path}') "
        f"WHEN 'integer' THEN CAST(json_extract({src}, '{path}') AS TEXT) "
        f"WHEN 'real' THEN CAST(json_extract({src}, '{path}') AS TEXT) "
        f"WHEN 'true' THEN 'true' "
        f"WHEN 'false' THEN 'false' "
        f"END"
    )


def _int(src: str, path: str) -> str:
    return (
        f"CASE json_type({src}, '{path}') "
        f"WHEN 'integer' THEN json_extract({src}, '{path}') "
        f"WHEN 'text' THEN CASE WHEN regexp('^-?[0-9]{{1,18}}$', json_extract({src}, '{path}')) "
        f"THEN CAST(json_extract({src}, '{path}') AS INTEGER) END "
        f"END"
    )


def _uint_text(src: str, path: str) -> str:
    return (
        f"CASE json_type({src}, '{path}') "
        f"WHEN 'integer' THEN CAST(json_extract({src}, '{path}') AS TEXT) "
        f"WHEN 'text' THEN CASE WHEN regexp('^[0-9]+$', json_extract({src}, '{path}')) "
        f"THEN json_extract({src}, '{path}') END "
        f"END"
    )


def _bool(src: str, path: str) -> str:
    return (
        f"CASE json_type({src}, '{path}') "
        f"WHEN 'true' THEN 1 "
        f"WHEN 'false' THEN 0 "
        f"WHEN 'text' THEN CASE lower(json_extract({src}, '{path}')) "
        f"WHEN 'true' THEN 1 WHEN 'false' THEN 0 END "
        f"END"
    )


def _unix_ts(src: str, path: str) -> str:
    return (
        f"CASE WHEN json_type({src}, '{path}') = 'integer' "
        f"AND json_extract({src}, '{path}') BETWEEN 0 AND 253402300799 "
        f"THEN strftime('%Y-%m-%dT%H:%M:%S.000000Z', json_extract({src}, '{path}'), 'unixepoch') "
        f"END"
    )


_WINDOW = "e.received_at > :cursor AND e.received_at <= :upper"

_BLOCKS = f"json_each({_array('e.body', '$.apply')}) AS b"
_TXS = f"json_each({_array('b.value', '$.transactions', 'b.type')}) AS t"


TRANSACTIONS_SQL = f"""
INSERT OR IGNORE INTO stg_transactions(
    event_id, block_position, tx_position, block_hash, block_index,
    tx_hash, description, fee, success, operation_count,
    webhook_path, received_at
)
SELECT
    e.event_id,
    b.key,
    t.key,
    {_text('b.value', '$.block_identifier.hash')},
    {_int('b.value', '$.block_identifier.index')},
    {_text('t.value', '$.transaction_identifier.hash')},
    {_text('t.value', '$.metadata.description')},
    {_int('t.value', '$.metadata.fee')},
    {_bool('t.value', '$.metadata.success')},
    CASE WHEN json_type(t.value, '$.operations') = 'array'
         THEN json_array_length(t.value, '$.operations') END,
    e.webhook_path,
    e.received_at
FROM raw_events AS e, {_BLOCKS}, {_TXS}
WHERE {_WINDOW}
  AND {SHAPE_HAS_BLOCKS}
  AND b.type = 'object'
  AND t.type = 'object'
ORDER BY e.received_at, b.key, t.key
"""

EVENTS_SQL = f"""
INSERT OR IGNORE INTO stg_events(
    event_id, block_position, tx_position, event_position, block_hash,
    block_time, tx_hash, event_type, position_index, contract_identifier,
    topic, action, ft_sender, ft_recipient, ft_amount,
    ft_asset_identifier, raw_event_data, webhook_path, received_at
)
SELECT
    e.event_id,
    b.key,
    t.key,
    ev.key,
    {_text('b.value', '$.block_identifier.hash')},
    {_unix_ts('b.value', '$.metadata.block_time')},
    {_text('t.value', '$.transaction_identifier.hash')},
    {_text('ev.value', '$.type')},
    {_int('ev.value', '$.position.index')},
    {_text('ev.value', '$.data.contract_identifier')},
    {_text('ev.value', '$.data.topic')},
    {_text('ev.value', '$.data.value.action')},
    {_text('ev.value', '$.data.sender')},
    {_text('ev.value', '$.data.recipient')},
    {_uint_text('ev.value', '$.data.amount')},
    {_text('ev.value', '$.data.asset_identifier')},
    ev.value,
    e.webhook_path,
    e.received_at
FROM raw_events AS e, {_BLOCKS}, {_TXS},
     json_each({_array('t.value', '$.metadata.receipt.events', 't.type')}) AS ev
WHERE {_WINDOW}
  AND {SHAPE_HAS_BLOCKS}
  AND b.type = 'object'
  AND t.type = 'object'
  AND ev.type = 'object'
ORDER BY e.received_at, b.key, t.key, ev.key
"""

ADDRESSES_SQL = f"""
INSERT OR IGNORE INTO stg_addresses(
    event_id, block_position, tx_position, operation_position, block_hash,
    tx_hash, operation_type, address, amount, contract_identifier,
    function_name, function_args, webhook_path, received_at
)
SELECT
    e.event_id,
    b.key,
    t.key,
    op.key,
    {_text('b.value', '$.block_identifier.hash')},
    {_text('t.value', '$.transaction_identifier.hash')},
    {_text('op.value', '$.type')},
    {_text('op.value', '$.account.address')},
    {_text('op.value', '$.amount.value')},
    {_text('t.value', '$.metadata.kind.data.contract_identifier')},
    {_text('t.value', '$.metadata.kind.data.method')},
    CASE WHEN json_type(t.value, '$.metadata.kind.data.args') = 'array'
         THEN json_extract(t.value, '$.metadata.kind.data.args') END,
    e.webhook_path,
    e.received_at
FROM raw_events AS e, {_BLOCKS}, {_TXS},
     json_each({_array('t.value', '$.operations', 't.type')}) AS op
WHERE {_WINDOW}
  AND {SHAPE_HAS_BLOCKS}
  AND b.type = 'object'
  AND t.type = 'object'
  AND op.type = 'object'
ORDER BY e.received_at, b.key, t.key, op.key
"""


STREAMS: Dict[str, StreamDefinition] = {
    s.name: s
    for s in [
        StreamDefinition("stg_transactions", "stg_transactions", SHAPE_HAS_BLOCKS, TRANSACTIONS_SQL),
        StreamDefinition("stg_events", "stg_events", SHAPE_HAS_BLOCKS, EVENTS_SQL),
        StreamDefinition("stg_addresses", "stg_addresses", SHAPE_HAS_BLOCKS, ADDRESSES_SQL),
    ]
}


def get_stream(name: str) -> StreamDefinition:
    try:
        return STREAMS[name]
    except KeyError:
        raise KeyError(f"unknown stream: {name}") from None


def stream_names() -> List[str]:
    return sorted(STREAMS)
