"""
Parser and builder for SLP OP_RETURN messages (token types 1, 65 and 129).

Parsing is strict: any malformed message raises SlpParseError, and a script
that is not an SLP envelope at all raises it too. Callers decide whether that
means "not a token transaction".
"""
from __future__ import annotations

from decimal import Decimal
from typing import List, Optional, Sequence, Union

from tokengraph.adapters.chain.tx_decoder import TxDecodeError, iter_pushes, push_data
from tokengraph.core.amount import decode_amount, encode_amount
from tokengraph.core.dto import DecodedTransaction, TokenDetails
from tokengraph.core.enums import TransactionType
from tokengraph.core.errors import MalformedAmount

LOKAD_ID = b"SLP\x00"
VALID_TOKEN_TYPES = frozenset((1, 65, 129))
OP_RETURN = 0x6A
MAX_SEND_OUTPUTS = 19


class SlpParseError(ValueError):
    pass


def _int_field(data: bytes, min_len: int, max_len: int, allow_empty: bool = False) -> Optional[int]:
    if min_len <= len(data) <= max_len:
        return int.from_bytes(data, "big")
    if not data and allow_empty:
        return None
    raise SlpParseError(f"field has wrong length {len(data)}")


def _qty_field(data: bytes) -> Decimal:
    try:
        return decode_amount(data.hex())
    except MalformedAmount as e:
        raise SlpParseError(str(e)) from e


def _text(data: bytes) -> Optional[str]:
    if not data:
        return None
    return data.decode("utf-8", errors="replace")


def parse_chunks(script: bytes) -> List[bytes]:
    try:
        ops = iter_pushes(script)
    except TxDecodeError as e:
        raise SlpParseError("bad script") from e
    if not ops or ops[0][0] != OP_RETURN:
        raise SlpParseError("no OP_RETURN")
    chunks: List[bytes] = []
    for op, data in ops[1:]:
        if op == 0x00:
            raise SlpParseError("OP_0 not allowed")
        if op > 0x4E:
            raise SlpParseError("non-push opcode")
        chunks.append(data)
    return chunks


def parse_slp_script(script: bytes, txid: str) -> TokenDetails:
    chunks = parse_chunks(script)
    if len(chunks) < 3 or chunks[0] != LOKAD_ID:
        raise SlpParseError("missing SLP lokad id")

    token_type = _int_field(chunks[1], 1, 2)
    if token_type not in VALID_TOKEN_TYPES:
        raise SlpParseError(f"unsupported token type {token_type}")

    try:
        tx_type = chunks[2].decode("ascii")
    except UnicodeDecodeError as e:
        raise SlpParseError("bad transaction type") from e

    if tx_type == "GENESIS":
        if len(chunks) != 10:
            raise SlpParseError("GENESIS with wrong number of chunks")
        if chunks[6] and len(chunks[6]) != 32:
            raise SlpParseError("document hash must be 32 bytes")
        decimals = _int_field(chunks[7], 1, 1)
        if decimals > 9:
            raise SlpParseError("decimals above 9")
        baton = _int_field(chunks[8], 1, 1, allow_empty=True)
        if baton is not None and baton < 2:
            raise SlpParseError("mint baton vout must be >= 2")
        return TokenDetails(
            transaction_type=TransactionType.GENESIS,
            token_id=txid,
            token_type=token_type,
            ticker=_text(chunks[3]),
            name=_text(chunks[4]),
            document_uri=_text(chunks[5]),
            decimals=decimals,
            baton_vout=baton,
            genesis_or_mint_quantity=_qty_field(chunks[9]),
        )

    if tx_type == "MINT":
        if len(chunks) != 6:
            raise SlpParseError("MINT with wrong number of chunks")
        if len(chunks[3]) != 32:
            raise SlpParseError("token id must be 32 bytes")
        baton = _int_field(chunks[4], 1, 1, allow_empty=True)
        if baton is not None and baton < 2:
            raise SlpParseError("mint baton vout must be >= 2")
        return TokenDetails(
            transaction_type=TransactionType.MINT,
            token_id=chunks[3].hex(),
            token_type=token_type,
            baton_vout=baton,
            genesis_or_mint_quantity=_qty_field(chunks[5]),
        )

    if tx_type == "SEND":
        if len(chunks) < 4 or len(chunks[3]) != 32:
            raise SlpParseError("token id must be 32 bytes")
        amounts = chunks[4:]
        if not 1 <= len(amounts) <= MAX_SEND_OUTPUTS:
            raise SlpParseError("SEND must carry 1 to 19 amounts")
        return TokenDetails(
            transaction_type=TransactionType.SEND,
            token_id=chunks[3].hex(),
            token_type=token_type,
            send_outputs=[Decimal(0)] + [_qty_field(a) for a in amounts],
        )

    raise SlpParseError(f"unknown transaction type {tx_type!r}")


def parse_slp_transaction(tx: DecodedTransaction) -> TokenDetails:
    """The SLP message always lives in output 0."""
    if not tx.outputs:
        raise SlpParseError("transaction has no outputs")
    return parse_slp_script(tx.outputs[0].script_pubkey, tx.txid)


# --- builders ---

def _envelope(token_type: int, tx_type: str, fields: Sequence[bytes]) -> bytes:
    parts = [bytes((OP_RETURN,)), push_data(LOKAD_ID), push_data(bytes((token_type,))),
             push_data(tx_type.encode("ascii"))]
    parts.extend(push_data(f) for f in fields)
    return b"".join(parts)


def build_genesis_script(
    quantity: Union[Decimal, int],
    ticker: str = "",
    name: str = "",
    document_uri: str = "",
    decimals: int = 0,
    baton_vout: Optional[int] = None,
    token_type: int = 1,
) -> bytes:
    return _envelope(token_type, "GENESIS", [
        ticker.encode("utf-8"),
        name.encode("utf-8"),
        document_uri.encode("utf-8"),
        b"",
        bytes((decimals,)),
        b"" if baton_vout is None else bytes((baton_vout,)),
        bytes.fromhex(encode_amount(quantity)),
    ])


def build_mint_script(
    token_id: str,
    quantity: Union[Decimal, int],
    baton_vout: Optional[int] = None,
    token_type: int = 1,
) -> bytes:
    return _envelope(token_type, "MINT", [
        bytes.fromhex(token_id),
        b"" if baton_vout is None else bytes((baton_vout,)),
        bytes.fromhex(encode_amount(quantity)),
    ])


def build_send_script(
    token_id: str,
    amounts: Sequence[Union[Decimal, int]],
    token_type: int = 1,
) -> bytes:
    return _envelope(token_type, "SEND", [bytes.fromhex(token_id)] +
                     [bytes.fromhex(encode_amount(a)) for a in amounts])
