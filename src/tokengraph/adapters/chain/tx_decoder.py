"""
Minimal decoder / serializer for legacy (non-segwit) Bitcoin Cash transactions.
"""
from __future__ import annotations

import hashlib
from typing import List, Optional, Sequence, Tuple

from tokengraph.core.dto import DecodedTransaction, TxInput, TxOutput


class TxDecodeError(ValueError):
    pass


def double_sha256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def txid_of(raw: bytes) -> str:
    return double_sha256(raw)[::-1].hex()


class _Reader:
    def __init__(self, raw: bytes) -> None:
        self._raw = raw
        self._pos = 0

    def read(self, n: int) -> bytes:
        if self._pos + n > len(self._raw):
            raise TxDecodeError(f"unexpected end of transaction at byte {self._pos}")
        chunk = self._raw[self._pos:self._pos + n]
        self._pos += n
        return chunk

    def read_int(self, n: int) -> int:
        return int.from_bytes(self.read(n), "little")

    def read_varint(self) -> int:
        first = self.read_int(1)
        if first < 0xFD:
            return first
        if first == 0xFD:
            return self.read_int(2)
        if first == 0xFE:
            return self.read_int(4)
        return self.read_int(8)

    def at_end(self) -> bool:
        return self._pos == len(self._raw)


def decode_transaction(raw: bytes) -> DecodedTransaction:
    r = _Reader(raw)
    version = r.read_int(4)

    inputs: List[TxInput] = []
    for _ in range(r.read_varint()):
        prev_txid = r.read(32)[::-1].hex()
        prev_vout = r.read_int(4)
        script_sig = r.read(r.read_varint())
        sequence = r.read_int(4)
        inputs.append(TxInput(prev_txid, prev_vout, script_sig, sequence))

    outputs: List[TxOutput] = []
    for _ in range(r.read_varint()):
        value = r.read_int(8)
        script_pubkey = r.read(r.read_varint())
        outputs.append(TxOutput(value, script_pubkey))

    locktime = r.read_int(4)
    if not r.at_end():
        raise TxDecodeError("trailing bytes after locktime")

    return DecodedTransaction(
        txid=txid_of(raw),
        version=version,
        inputs=inputs,
        outputs=outputs,
        locktime=locktime,
    )


def _varint(n: int) -> bytes:
    if n < 0xFD:
        return bytes((n,))
    if n <= 0xFFFF:
        return b"\xfd" + n.to_bytes(2, "little")
    if n <= 0xFFFFFFFF:
        return b"\xfe" + n.to_bytes(4, "little")
    return b"\xff" + n.to_bytes(8, "little")


def encode_transaction(
    inputs: Sequence[TxInput],
    outputs: Sequence[TxOutput],
    version: int = 2,
    locktime: int = 0,
) -> bytes:
    parts = [version.to_bytes(4, "little"), _varint(len(inputs))]
    for i in inputs:
        parts.append(bytes.fromhex(i.prev_txid)[::-1])
        parts.append(i.prev_vout.to_bytes(4, "little"))
        parts.append(_varint(len(i.script_sig)) + i.script_sig)
        parts.append(i.sequence.to_bytes(4, "little"))
    parts.append(_varint(len(outputs)))
    for o in outputs:
        parts.append(o.value.to_bytes(8, "little"))
        parts.append(_varint(len(o.script_pubkey)) + o.script_pubkey)
    parts.append(locktime.to_bytes(4, "little"))
    return b"".join(parts)


# --- script helpers ---

def p2pkh_script(hash160: bytes) -> bytes:
    return b"\x76\xa9\x14" + hash160 + b"\x88\xac"


def script_hash160(script: bytes) -> Optional[str]:
    """hash160 hex of a p2pkh or p2sh script, None for anything else."""
    if len(script) == 25 and script[:3] == b"\x76\xa9\x14" and script[23:] == b"\x88\xac":
        return script[3:23].hex()
    if len(script) == 23 and script[:2] == b"\xa9\x14" and script[22:] == b"\x87":
        return script[2:22].hex()
    return None


def iter_pushes(script: bytes) -> List[Tuple[int, bytes]]:
    """Split a script into (opcode, pushed data) pairs; data is b"" for non-push ops."""
    out: List[Tuple[int, bytes]] = []
    r = _Reader(script)
    while not r.at_end():
        op = r.read_int(1)
        if 0x01 <= op <= 0x4B:
            out.append((op, r.read(op)))
        elif op == 0x4C:
            out.append((op, r.read(r.read_int(1))))
        elif op == 0x4D:
            out.append((op, r.read(r.read_int(2))))
        elif op == 0x4E:
            out.append((op, r.read(r.read_int(4))))
        else:
            out.append((op, b""))
    return out


def push_data(data: bytes) -> bytes:
    n = len(data)
    if n == 0:
        # SLP encodes empty fields as OP_PUSHDATA1 0x00, never OP_0
        return b"\x4c\x00"
    if n <= 0x4B:
        return bytes((n,)) + data
    if n <= 0xFF:
        return b"\x4c" + bytes((n,)) + data
    if n <= 0xFFFF:
        return b"\x4d" + n.to_bytes(2, "little") + data
    return b"\x4e" + n.to_bytes(4, "little") + data
