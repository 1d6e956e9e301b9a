from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Tuple, Union

from tokengraph.core.enums import TransactionType


@dataclass(frozen=True)
class TxInput:
    prev_txid: str
    prev_vout: int
    script_sig: bytes = b""
    sequence: int = 0xFFFFFFFF


@dataclass(frozen=True)
class TxOutput:
    value: int              # satoshis
    script_pubkey: bytes


@dataclass(frozen=True)
class DecodedTransaction:
    txid: str
    version: int
    inputs: List[TxInput]
    outputs: List[TxOutput]
    locktime: int = 0


@dataclass(frozen=True)
class OutputStatus:
    unspent: bool
    value: Optional[int] = None     # satoshis, only known while unspent


@dataclass(frozen=True)
class TokenDetails:
    """
    Decoded SLP envelope of one transaction.
    """

    transaction_type: TransactionType
    token_id: str
    token_type: int = 1
    ticker: Optional[str] = None
    name: Optional[str] = None
    document_uri: Optional[str] = None
    decimals: int = 0
    baton_vout: Optional[int] = None
    genesis_or_mint_quantity: Optional[Decimal] = None
    # index == vout, index 0 is always the OP_RETURN output
    send_outputs: List[Decimal] = field(default_factory=list)


@dataclass(frozen=True)
class ValidationResult:
    txid: str
    details: TokenDetails
    valid: bool
    tx: DecodedTransaction
    invalid_reason: Optional[str] = None


@dataclass(frozen=True)
class QueryMatch:
    """
    One remote-query hit: a transaction whose inputs reference the outpoint.
    Amount fields are still hex-encoded, satoshis are per vout.
    """

    txid: str
    block: Optional[int] = None
    timestamp: Optional[str] = None
    token_id: Optional[str] = None
    transaction_type_hex: Optional[str] = None
    amounts_hex: List[Optional[str]] = field(default_factory=list)   # vout 1..19
    satoshis: List[Optional[int]] = field(default_factory=list)      # vout 0..19


@dataclass(frozen=True)
class SpentOutput:
    vout: int
    satoshis: Optional[int]
    token_qty: Decimal


@dataclass(frozen=True)
class Unspent:
    value: Optional[int] = None


@dataclass(frozen=True)
class Spent:
    spending_txid: str
    outputs: Tuple[SpentOutput, ...] = ()
    block: Optional[int] = None


SpendOutcome = Union[Unspent, Spent]
