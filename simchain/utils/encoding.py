"""
Hex encodings used on the JSON-RPC surface.

Quantities are "0x"-prefixed big-endian hex without leading zeros ("0x0" for
zero); data is "0x"-prefixed hex of the raw bytes.
"""
from typing import Union

HEX_PREFIX = "0x"

# Solidity's Error(string) selector, used for revert payloads.
ERROR_STRING_SELECTOR = bytes.fromhex("08c379a0")


def to_hex(data: Union[bytes, bytearray, memoryview]) -> str:
    """Bytes -> "0x..." data string."""
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError("to_hex expects bytes-like")
    return HEX_PREFIX + bytes(data).hex()


def to_quantity(value: int) -> str:
    """Non-negative int -> "0x..." quantity string."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError("to_quantity expects int")
    if value < 0:
        raise ValueError("quantities must be non-negative")
    return hex(value)


def parse_quantity(value) -> int:
    """Accepts ints or hex/decimal strings and returns an int."""
    if isinstance(value, bool):
        raise ValueError("invalid quantity: bool")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"invalid quantity: {value}")
        return value
    if isinstance(value, str):
        try:
            if value.startswith(HEX_PREFIX):
                return int(value[2:] or "0", 16)
            return int(value, 10)
        except ValueError as e:
            raise ValueError(f"invalid quantity: {value!r}") from e
    raise ValueError(f"invalid quantity: {value!r}")


def parse_data(value) -> bytes:
    """"0x..." hex (or raw bytes) -> bytes. Odd nybble counts are rejected."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if not isinstance(value, str) or not value.startswith(HEX_PREFIX):
        raise ValueError(f"invalid data: {value!r}")
    h = value[2:]
    if len(h) % 2:
        raise ValueError(f"invalid data (odd length): {value!r}")
    try:
        return bytes.fromhex(h)
    except ValueError as e:
        raise ValueError(f"invalid data: {value!r}") from e


def parse_address(value) -> bytes:
    addr = parse_data(value)
    if len(addr) != 20:
        raise ValueError(f"address must be 20 bytes, got {len(addr)}")
    return addr


def pad32(value: Union[int, bytes]) -> bytes:
    """Left-pads an int or short byte string to a 32-byte word."""
    if isinstance(value, int):
        return value.to_bytes(32, "big")
    if len(value) > 32:
        raise ValueError("value does not fit in 32 bytes")
    return value.rjust(32, b"\x00")


def encode_error_string(reason: str) -> bytes:
    """ABI-encodes Error(string), the payload geth returns as revert data."""
    raw = reason.encode("utf-8")
    padded_len = (len(raw) + 31) // 32 * 32
    return (
        ERROR_STRING_SELECTOR
        + pad32(32)
        + pad32(len(raw))
        + raw.ljust(padded_len, b"\x00")
    )


def decode_error_string(data: bytes):
    """Returns the reason of an Error(string) payload, or None if it is not one."""
    if len(data) < 4 + 64 or data[:4] != ERROR_STRING_SELECTOR:
        return None
    body = data[4:]
    offset = int.from_bytes(body[:32], "big")
    if offset + 32 > len(body):
        return None
    length = int.from_bytes(body[offset:offset + 32], "big")
    start = offset + 32
    if start + length > len(body):
        return None
    try:
        return body[start:start + length].decode("utf-8")
    except UnicodeDecodeError:
        return None
