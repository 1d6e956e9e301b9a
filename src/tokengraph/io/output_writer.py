from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path
from typing import Optional

from tokengraph.core.models import TokenGraph
from tokengraph.io.schemas import graph_to_dict
from tokengraph.services.statistics import TokenStats


def write_graph_json(
    graph: TokenGraph,
    out_dir: str,
    filename: str = "graph.json",
    stats: Optional[TokenStats] = None,
) -> str:
    p = Path(out_dir)
    p.mkdir(parents=True, exist_ok=True)

    out_path = p / filename
    with out_path.open("w", encoding="utf-8") as f:
        json.dump(graph_to_dict(graph, stats), f, indent=2)

    return str(out_path)


def write_summary_md(
    graph: TokenGraph,
    stats: TokenStats,
    out_dir: str,
    filename: str = "summary.md",
    top_holders: int = 10,
) -> str:
    """
    Minimal, human-readable summary of one token lineage.
    """
    p = Path(out_dir)
    p.mkdir(parents=True, exist_ok=True)

    out_path = p / filename
    token = graph.token
    scale = Decimal(10) ** token.decimals

    def fmt_qty(x: Decimal) -> str:
        return f"{(x / scale):f}"

    def short(txid: str) -> str:
        return txid if len(txid) <= 16 else f"{txid[:10]}...{txid[-4:]}"

    def fmt_date(d) -> str:
        return d.strftime("%Y-%m-%d %H:%M") if d is not None else "n/a"

    lines = []
    lines.append(f"# Token Graph Summary: {token.ticker or ''} {token.name or ''}".rstrip() + "\n\n")
    lines.append(f"- Token id: `{token.token_id}`\n")
    lines.append(f"- Transactions: **{len(graph)}**\n")
    lines.append(f"- Complete: **{'yes' if graph.complete else 'no'}**\n")
    lines.append("\n")

    lines.append("## Supply\n\n")
    lines.append(f"- Minted: **{fmt_qty(stats.qty_token_minted)}**\n")
    lines.append(f"- Unburned: **{fmt_qty(stats.qty_token_unburned)}**\n")
    lines.append(f"- Burned: **{fmt_qty(stats.qty_token_burned)}**\n")
    lines.append(f"- Unspent token outputs: **{stats.qty_utxos_holding_valid_tokens}** "
                 f"({stats.qty_satoshis_holding_valid_tokens} sats)\n")
    lines.append(f"- Valid transactions since genesis: **{stats.qty_valid_txns_since_genesis}**\n")
    lines.append(f"- Last SEND: {fmt_date(stats.date_last_active_send)}\n")
    lines.append(f"- Last MINT: {fmt_date(stats.date_last_active_mint)}\n\n")

    lines.append(f"## Top {top_holders} Holders\n\n")
    balances = sorted(graph.address_balances().values(), key=lambda b: b.token_balance, reverse=True)
    if not balances:
        lines.append("_No unspent outputs with a standard address._\n\n")
    else:
        for b in balances[:top_holders]:
            lines.append(f"- **{fmt_qty(b.token_balance)}** | {b.address} | {b.utxo_count} utxo(s)\n")
        lines.append("\n")

    invalid = [n for n in graph.nodes() if not n.valid]
    lines.append("## Burns / Invalid Spends\n\n")
    if not invalid:
        lines.append("_None recorded._\n\n")
    else:
        for n in invalid:
            lines.append(f"- {short(n.txid)} | {n.transaction_type.value} | {n.invalid_reason}\n")
        lines.append("\n")

    if graph.errors:
        lines.append("## Errors\n\n")
        for e in graph.errors:
            lines.append(f"- {e.__class__.__name__}: {e}\n")

    with out_path.open("w", encoding="utf-8") as f:
        f.writelines(lines)

    return str(out_path)
