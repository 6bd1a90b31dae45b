"""Clarity value wire format and c32check addresses.

Only what read-only contract calls need: encoding arguments to the ``0x`` hex
form the node accepts and decoding the serialized results it returns.
"""
import hashlib
import struct
from dataclasses import dataclass
from typing import Any, List, Tuple

C32_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

TYPE_INT = 0x00
TYPE_UINT = 0x01
TYPE_BUFFER = 0x02
TYPE_TRUE = 0x03
TYPE_FALSE = 0x04
TYPE_STANDARD_PRINCIPAL = 0x05
TYPE_CONTRACT_PRINCIPAL = 0x06
TYPE_OK = 0x07
TYPE_ERR = 0x08
TYPE_NONE = 0x09
TYPE_SOME = 0x0A
TYPE_LIST = 0x0B
TYPE_TUPLE = 0x0C
TYPE_STRING_ASCII = 0x0D
TYPE_STRING_UTF8 = 0x0E

MAX_DEPTH = 64


class ClarityDecodeError(ValueError):
    pass


class ContractCallError(Exception):
    """A read-only call was rejected or returned ``(err ...)``."""

    def __init__(self, message: str, value: Any = None):
        super().__init__(message)
        self.value = value


@dataclass
class ClarityValue:
    type: str
    value: Any = None


# c32check


def _double_sha256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def c32_encode(data: bytes) -> str:
    n = int.from_bytes(data, "big")
    out = []
    while n > 0:
        n, rem = divmod(n, 32)
        out.append(C32_ALPHABET[rem])
    leading = len(data) - len(data.lstrip(b"\x00"))
    return "0" * leading + "".join(reversed(out))


def c32_normalize(text: str) -> str:
    return text.upper().replace("O", "0").replace("L", "1").replace("I", "1")


def c32_decode(text: str) -> bytes:
    text = c32_normalize(text)
    n = 0
    for ch in text:
        idx = C32_ALPHABET.find(ch)
        if idx < 0:
            raise ValueError(f"invalid c32 character: {ch!r}")
        n = n * 32 + idx
    leading = len(text) - len(text.lstrip("0"))
    raw = n.to_bytes((n.bit_length() + 7) // 8, "big") if n else b""
    return b"\x00" * leading + raw


def c32_address(version: int, hash160: bytes) -> str:
    if not 0 <= version < 32:
        raise ValueError(f"invalid address version: {version}")
    if len(hash160) != 20:
        raise ValueError("hash160 must be 20 bytes")
    checksum = _double_sha256(bytes([version]) + hash160)[:4]
    return "S" + C32_ALPHABET[version] + c32_encode(hash160 + checksum)


def c32_address_decode(address: str) -> Tuple[int, bytes]:
    """Return ``(version, hash160)`` for a Stacks address; checksum verified."""
    if len(address) < 6 or address[0] != "S":
        raise ValueError(f"invalid Stacks address: {address}")
    version = C32_ALPHABET.find(c32_normalize(address[1]))
    if version < 0:
        raise ValueError(f"invalid Stacks address version: {address}")
    data = c32_decode(address[2:])
    if len(data) != 24:
        raise ValueError(f"invalid Stacks address length: {address}")
    hash160, checksum = data[:20], data[20:]
    if _double_sha256(bytes([version]) + hash160)[:4] != checksum:
        raise ValueError(f"invalid Stacks address checksum: {address}")
    return version, hash160


# encoding


def to_hex(payload: bytes) -> str:
    return "0x" + payload.hex()


def uint_cv(value: int) -> bytes:
    if value < 0 or value >= 1 << 128:
        raise ValueError(f"uint out of range: {value}")
    return bytes([TYPE_UINT]) + value.to_bytes(16, "big")


def int_cv(value: int) -> bytes:
    return bytes([TYPE_INT]) + value.to_bytes(16, "big", signed=True)


def buffer_cv(data: bytes) -> bytes:
    return bytes([TYPE_BUFFER]) + struct.pack(">I", len(data)) + data


def none_cv() -> bytes:
    return bytes([TYPE_NONE])


def some_cv(inner: bytes) -> bytes:
    return bytes([TYPE_SOME]) + inner


def string_ascii_cv(text: str) -> bytes:
    data = text.encode("ascii")
    return bytes([TYPE_STRING_ASCII]) + struct.pack(">I", len(data)) + data


def standard_principal_cv(address: str) -> bytes:
    version, hash160 = c32_address_decode(address)
    return bytes([TYPE_STANDARD_PRINCIPAL, version]) + hash160


def contract_principal_cv(address: str, name: str) -> bytes:
    version, hash160 = c32_address_decode(address)
    encoded = name.encode("ascii")
    if not 0 < len(encoded) <= 128:
        raise ValueError(f"invalid contract name: {name}")
    return bytes([TYPE_CONTRACT_PRINCIPAL, version]) + hash160 + bytes([len(encoded)]) + encoded


def principal_cv(principal: str) -> bytes:
    if "." in principal:
        address, name = principal.split(".", 1)
        return contract_principal_cv(address, name)
    return standard_principal_cv(principal)


# decoding


class _Reader:
    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def take(self, n: int) -> bytes:
        end = self.pos + n
        if end > len(self.data):
            raise ClarityDecodeError(
                f"truncated value: need {n} bytes at offset {self.pos}, have {len(self.data) - self.pos}"
            )
        chunk = self.data[self.pos:end]
        self.pos = end
        return chunk

    def byte(self) -> int:
        return self.take(1)[0]

    def u32(self) -> int:
        return struct.unpack(">I", self.take(4))[0]


def _read_principal(r: _Reader) -> str:
    version = r.byte()
    if version >= 32:
        raise ClarityDecodeError(f"invalid principal version: {version}")
    return c32_address(version, r.take(20))


def _read_value(r: _Reader, depth: int) -> ClarityValue:
    if depth > MAX_DEPTH:
        raise ClarityDecodeError("value nested too deeply")
    type_id = r.byte()
    if type_id == TYPE_INT:
        return ClarityValue("int", int.from_bytes(r.take(16), "big", signed=True))
    if type_id == TYPE_UINT:
        return ClarityValue("uint", int.from_bytes(r.take(16), "big"))
    if type_id == TYPE_BUFFER:
        return ClarityValue("buffer", r.take(r.u32()))
    if type_id == TYPE_TRUE:
        return ClarityValue("bool", True)
    if type_id == TYPE_FALSE:
        return ClarityValue("bool", False)
    if type_id == TYPE_STANDARD_PRINCIPAL:
        return ClarityValue("principal", _read_principal(r))
    if type_id == TYPE_CONTRACT_PRINCIPAL:
        address = _read_principal(r)
        name = r.take(r.byte()).decode("ascii", errors="replace")
        return ClarityValue("principal", f"{address}.{name}")
    if type_id == TYPE_OK:
        return ClarityValue("ok", _read_value(r, depth + 1))
    if type_id == TYPE_ERR:
        return ClarityValue("err", _read_value(r, depth + 1))
    if type_id == TYPE_NONE:
        return ClarityValue("none")
    if type_id == TYPE_SOME:
        return ClarityValue("some", _read_value(r, depth + 1))
    if type_id == TYPE_LIST:
        items: List[ClarityValue] = [_read_value(r, depth + 1) for _ in range(r.u32())]
        return ClarityValue("list", items)
    if type_id == TYPE_TUPLE:
        fields = {}
        for _ in range(r.u32()):
            key = r.take(r.byte()).decode("ascii", errors="replace")
            fields[key] = _read_value(r, depth + 1)
        return ClarityValue("tuple", fields)
    if type_id == TYPE_STRING_ASCII:
        return ClarityValue("string_ascii", r.take(r.u32()).decode("ascii", errors="replace"))
    if type_id == TYPE_STRING_UTF8:
        return ClarityValue("string_utf8", r.take(r.u32()).decode("utf-8", errors="replace"))
    raise ClarityDecodeError(f"unknown type id 0x{type_id:02x} at offset {r.pos - 1}")


def decode(data: bytes) -> ClarityValue:
    r = _Reader(data)
    value = _read_value(r, 0)
    if r.pos != len(data):
        raise ClarityDecodeError(f"{len(data) - r.pos} trailing bytes after value")
    return value


def decode_hex(text: str) -> ClarityValue:
    if not isinstance(text, str):
        raise ClarityDecodeError(f"expected hex string, got {type(text).__name__}")
    body = text[2:] if text.startswith(("0x", "0X")) else text
    try:
        data = bytes.fromhex(body)
    except ValueError as e:
        raise ClarityDecodeError(f"invalid hex: {e}") from e
    if not data:
        raise ClarityDecodeError("empty value")
    return decode(data)


def to_python(value: ClarityValue) -> Any:
    """Plain Python view of a decoded value.

    ``(ok x)`` and ``(some x)`` unwrap, ``none`` is ``None``, tuples become
    dicts. ``(err x)`` raises :class:`ContractCallError` carrying the
    converted payload.
    """
    t = value.type
    if t == "ok" or t == "some":
        return to_python(value.value)
    if t == "none":
        return None
    if t == "err":
        inner = to_python_lenient(value.value)
        raise ContractCallError(f"contract returned (err {inner!r})", value=inner)
    if t == "list":
        return [to_python(v) for v in value.value]
    if t == "tuple":
        return {k: to_python(v) for k, v in value.value.items()}
    return value.value


def to_python_lenient(value: ClarityValue) -> Any:
    """Like :func:`to_python`, but nested ``err`` values are kept as ``{"err": x}``."""
    if value.type == "err":
        return {"err": to_python_lenient(value.value)}
    if value.type in ("ok", "some"):
        return to_python_lenient(value.value)
    if value.type == "none":
        return None
    if value.type == "list":
        return [to_python_lenient(v) for v in value.value]
    if value.type == "tuple":
        return {k: to_python_lenient(v) for k, v in value.value.items()}
    return value.value
