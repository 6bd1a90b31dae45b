import asyncio
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Iterable, Iterator, List, Optional, Sequence, Tuple, TypeVar

T = TypeVar("T")

TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
EPOCH_CURSOR = "1970-01-01T00:00:00.000000Z"

CONTRACT_ID_PATTERN = r"S[PM][0-9A-Z]{38,42}\.[a-zA-Z0-9_-]+"
CONTRACT_ID_RE = re.compile(rf"^{CONTRACT_ID_PATTERN}$")


def format_ts(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(TS_FORMAT)


def parse_ts(value: str) -> datetime:
    return datetime.strptime(value, TS_FORMAT).replace(tzinfo=timezone.utc)


def utc_now_iso() -> str:
    return format_ts(datetime.now(timezone.utc))


def elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class PathShapeError(ValueError):
    """A JSON path crossed a value whose shape differs from the expected one."""

    def __init__(self, path: str, segment: str, expected: str, actual: Any):
        self.path = path
        self.segment = segment
        self.expected = expected
        self.actual_type = type(actual).__name__
        super().__init__(
            f"{path}: expected {expected} at {segment!r}, found {self.actual_type}"
        )


_SEGMENT_RE = re.compile(r"([^.\[\]]+)|\[(\d+)\]")


def _parse_path(path: str) -> List[Tuple[str, Any]]:
    segments: List[Tuple[str, Any]] = []
    pos = 0
    while pos < len(path):
        if path[pos] == ".":
            pos += 1
            continue
        m = _SEGMENT_RE.match(path, pos)
        if not m:
            raise ValueError(f"invalid JSON path: {path}")
        if m.group(1) is not None:
            segments.append(("key", m.group(1)))
        else:
            segments.append(("index", int(m.group(2))))
        pos = m.end()
    return segments


def extract_path(doc: Any, path: str, expected: Any = object) -> Optional[Any]:
    """Read ``path`` out of a decoded JSON document.

    ``path`` is a dotted key path with ``[n]`` list indices, e.g.
    ``apply[0].block_identifier.hash``. A missing key or out-of-range index
    yields ``None``; crossing a value of the wrong container type, or a leaf
    that is not an instance of ``expected``, raises :class:`PathShapeError`.
    ``bool`` is never accepted where ``int`` is expected.
    """
    current = doc
    for kind, seg in _parse_path(path):
        if current is None:
            return None
        if kind == "key":
            if not isinstance(current, dict):
                raise PathShapeError(path, seg, "object", current)
            current = current.get(seg)
        else:
            if not isinstance(current, list):
                raise PathShapeError(path, f"[{seg}]", "array", current)
            if seg >= len(current):
                return None
            current = current[seg]
    if current is None:
        return None
    if expected is int and isinstance(current, bool):
        raise PathShapeError(path, "<leaf>", "int", current)
    if not isinstance(current, expected):
        name = getattr(expected, "__name__", str(expected))
        raise PathShapeError(path, "<leaf>", name, current)
    return current


def find_path(doc: Any, path: str, expected: Any = object) -> Optional[Any]:
    try:
        return extract_path(doc, path, expected)
    except PathShapeError:
        return None


def is_contract_id(value: Any) -> bool:
    return isinstance(value, str) and bool(CONTRACT_ID_RE.match(value))


def split_contract_id(contract_id: str) -> Tuple[str, str]:
    if not is_contract_id(contract_id):
        raise ValueError(f"invalid contract identifier: {contract_id}")
    address, name = contract_id.split(".", 1)
    return address, name


def fallback_token_name(contract_id: str) -> str:
    name = contract_id.split(".")[-1].replace("-", " ")
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), name)


def fallback_token_symbol(contract_id: str) -> str:
    name = contract_id.split(".")[-1]
    return name.upper() if len(name) <= 5 else name[:4].upper()


@dataclass
class Settled:
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def error_message(self) -> str:
        if self.error is None:
            return ""
        text = str(self.error)
        if isinstance(self.error, asyncio.TimeoutError) or not text:
            return type(self.error).__name__
        return text


async def settle_all(aws: Iterable[Awaitable[Any]]) -> List[Settled]:
    """Await every awaitable and collect each outcome; one failure aborts nothing."""
    results = await asyncio.gather(*aws, return_exceptions=True)
    out: List[Settled] = []
    for r in results:
        if isinstance(r, asyncio.CancelledError):
            raise r
        if isinstance(r, BaseException):
            out.append(Settled(ok=False, error=r))
        else:
            out.append(Settled(ok=True, value=r))
    return out


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    size = max(1, int(size))
    for i in range(0, len(items), size):
        yield items[i : i + size]
