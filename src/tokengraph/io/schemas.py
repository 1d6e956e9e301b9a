from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional

from tokengraph.core.models import TokenGraph
from tokengraph.services.statistics import TokenStats


def _dec_to_str(x: Decimal) -> str:
    # keep as string for JSON precision safety
    return format(x, "f")


def _date_to_str(d) -> Optional[str]:
    return d.isoformat() if d is not None else None


def stats_to_dict(s: TokenStats) -> Dict[str, Any]:
    return {
        "date_last_active_send": _date_to_str(s.date_last_active_send),
        "date_last_active_mint": _date_to_str(s.date_last_active_mint),
        "qty_valid_txns_since_genesis": s.qty_valid_txns_since_genesis,
        "qty_utxos_holding_valid_tokens": s.qty_utxos_holding_valid_tokens,
        "qty_satoshis_holding_valid_tokens": s.qty_satoshis_holding_valid_tokens,
        "qty_token_minted": _dec_to_str(s.qty_token_minted),
        "qty_token_burned": _dec_to_str(s.qty_token_burned),
        "qty_token_unburned": _dec_to_str(s.qty_token_unburned),
    }


def graph_to_dict(g: TokenGraph, stats: Optional[TokenStats] = None) -> Dict[str, Any]:
    t = g.token
    out: Dict[str, Any] = {
        "token": {
            "token_id": t.token_id,
            "genesis_txid": t.genesis_txid,
            "ticker": t.ticker,
            "name": t.name,
            "document_uri": t.document_uri,
            "decimals": t.decimals,
            "token_type": t.token_type,
            "initial_quantity": _dec_to_str(t.initial_quantity),
        },
        "complete": g.complete,
        "errors": [f"{e.__class__.__name__}: {e}" for e in g.errors],
        "nodes": [
            {
                "txid": n.txid,
                "type": n.transaction_type.value,
                "valid": n.valid,
                "invalid_reason": n.invalid_reason,
                "block_time": n.block_time,
                "outputs": [
                    {
                        "vout": o.vout,
                        "satoshis": o.satoshis,
                        "token_qty": _dec_to_str(o.token_qty),
                        "spend_txid": o.spend_txid,
                        "address": o.address,
                        "pending": o.pending,
                    }
                    for o in n.outputs
                ],
            }
            for n in g.nodes()
        ],
        "unspent": [f"{txid}:{vout}" for txid, vout in sorted(g.unspent)],
    }
    if stats is not None:
        out["stats"] = stats_to_dict(stats)
    return out
