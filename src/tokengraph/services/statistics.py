from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional

from tokengraph.core.enums import TransactionType
from tokengraph.core.models import GraphNode, TokenGraph


@dataclass(frozen=True)
class TokenStats:
    date_last_active_send: Optional[datetime]
    date_last_active_mint: Optional[datetime]
    qty_valid_txns_since_genesis: int
    qty_utxos_holding_valid_tokens: int
    qty_satoshis_holding_valid_tokens: int
    qty_token_minted: Decimal
    qty_token_burned: Decimal
    qty_token_unburned: Decimal


def _last_active(nodes: Iterable[GraphNode]) -> Optional[datetime]:
    times = [n.block_time for n in nodes if n.block_time is not None]
    if not times:
        return None
    return datetime.fromtimestamp(max(times), tz=timezone.utc)


def compute_token_stats(graph: TokenGraph) -> TokenStats:
    """
    Derive token statistics from the committed graph.

    minted   = GENESIS quantity + quantities of valid MINT transactions
    unburned = token quantity sitting in the unspent output set
    burned   = minted - unburned; exact only when ``graph.complete`` is True
    """
    valid = [n for n in graph.nodes() if n.valid]
    sends = [n for n in valid if n.transaction_type is TransactionType.SEND]
    mints = [n for n in valid if n.transaction_type.is_issuance]

    minted = sum((n.token_qty for n in mints), Decimal(0))

    unspent = graph.unspent_records()
    unburned = sum((rec.token_qty for _txid, rec in unspent), Decimal(0))
    sats = sum(rec.satoshis for _txid, rec in unspent)

    return TokenStats(
        date_last_active_send=_last_active(sends),
        date_last_active_mint=_last_active(mints),
        # the GENESIS itself is not counted
        qty_valid_txns_since_genesis=len([n for n in valid if n.txid != graph.token.genesis_txid]),
        qty_utxos_holding_valid_tokens=len(unspent),
        qty_satoshis_holding_valid_tokens=sats,
        qty_token_minted=minted,
        qty_token_burned=minted - unburned,
        qty_token_unburned=unburned,
    )
