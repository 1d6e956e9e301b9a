from __future__ import annotations

from decimal import Decimal
from typing import Union

from tokengraph.core.errors import MalformedAmount

AMOUNT_BYTES = 8
MAX_AMOUNT = 2 ** 64 - 1


def decode_amount(hex_str: str) -> Decimal:
    """
    Decode an 8-byte big-endian quantity (two 32-bit words) into an exact Decimal.
    """
    if not isinstance(hex_str, str):
        raise MalformedAmount(f"Amount must be a hex string, got {type(hex_str).__name__}")
    try:
        raw = bytes.fromhex(hex_str)
    except ValueError as e:
        raise MalformedAmount(f"Amount is not valid hex: {hex_str!r}") from e
    if len(raw) != AMOUNT_BYTES:
        raise MalformedAmount(f"Amount must be {AMOUNT_BYTES} bytes, got {len(raw)}")

    hi = int.from_bytes(raw[:4], "big")
    lo = int.from_bytes(raw[4:], "big")
    return Decimal(hi * 2 ** 32 + lo)


def encode_amount(value: Union[Decimal, int]) -> str:
    qty = Decimal(value)
    if qty != qty.to_integral_value():
        raise MalformedAmount(f"Amount must be integral: {value}")
    n = int(qty)
    if n < 0 or n > MAX_AMOUNT:
        raise MalformedAmount(f"Amount out of range: {value}")
    return n.to_bytes(AMOUNT_BYTES, "big").hex()
