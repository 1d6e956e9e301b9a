from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from tokengraph.core.amount import decode_amount
from tokengraph.core.dto import QueryMatch, SpendOutcome, Spent, SpentOutput, Unspent
from tokengraph.core.errors import (
    DataSourceError,
    MalformedAmount,
    SpendResolutionAmbiguous,
    SpendResolutionFailed,
)
from tokengraph.ports.node_port import NodePort
from tokengraph.ports.spend_query_port import SpendQueryPort
from tokengraph.ports.spend_source_port import SpendSourcePort

logger = logging.getLogger(__name__)

SEND_HEX = b"SEND".hex()


class NodeSpendSource(SpendSourcePort):
    """
    Full-node view. Only an unspent answer is conclusive: nodes prune spent
    outputs, so "not found" is handed to the next source.
    """

    def __init__(self, node: NodePort) -> None:
        self.node = node

    def lookup(self, txid: str, vout: int) -> Optional[SpendOutcome]:
        try:
            status = self.node.get_output_status(txid, vout)
        except DataSourceError as e:
            # retries already exhausted inside the adapter
            logger.warning("node lookup for %s:%d failed, falling back: %s", txid, vout, e)
            return None
        if status.unspent:
            return Unspent(value=status.value)
        return None


def decode_match_outputs(match: QueryMatch) -> List[SpentOutput]:
    """
    Turn the hex fields of a query hit into per-vout outputs.

    Only SEND transactions carry amounts in output 0's pushes; anything else
    is reported with zero token quantity. Raises MalformedAmount.
    """
    is_send = (match.transaction_type_hex or "").lower() == SEND_HEX
    outputs: List[SpentOutput] = []
    for vout, sats in enumerate(match.satoshis):
        if vout == 0:
            qty = Decimal(0)
        else:
            raw = match.amounts_hex[vout - 1] if vout - 1 < len(match.amounts_hex) else None
            qty = decode_amount(raw) if (is_send and raw) else Decimal(0)
        if sats is None and qty == 0:
            continue
        outputs.append(SpentOutput(vout=vout, satoshis=sats, token_qty=qty))
    return outputs


class QuerySpendSource(SpendSourcePort):
    """
    Remote indexed view. Authoritative for spends, so it always decides.
    """

    def __init__(self, query: SpendQueryPort) -> None:
        self.query = query

    def lookup(self, txid: str, vout: int) -> Optional[SpendOutcome]:
        try:
            matches = self.query.find_spending_transactions(txid, vout)
        except DataSourceError as e:
            raise SpendResolutionFailed(f"spend query for {txid}:{vout} failed: {e}") from e

        unique: Dict[str, QueryMatch] = {}
        for m in matches:
            unique.setdefault(m.txid, m)

        if len(unique) != 1:
            raise SpendResolutionAmbiguous(txid, vout, len(unique))

        match = next(iter(unique.values()))
        try:
            outputs = tuple(decode_match_outputs(match))
        except MalformedAmount as e:
            # the spender is still known; the validator decodes its amounts on its own visit
            logger.warning("undecodable amounts for %s spending %s:%d: %s", match.txid, txid, vout, e)
            outputs = ()
        return Spent(
            spending_txid=match.txid,
            outputs=outputs,
            block=match.block,
        )


class FallbackSpendResolver:
    """
    Asks each source in order and returns the first conclusive answer.
    """

    def __init__(self, sources: Sequence[SpendSourcePort]) -> None:
        if not sources:
            raise ValueError("at least one spend source is required")
        self.sources = list(sources)

    @classmethod
    def default(cls, node: NodePort, query: SpendQueryPort) -> "FallbackSpendResolver":
        return cls([NodeSpendSource(node), QuerySpendSource(query)])

    def resolve_spend(self, txid: str, vout: int) -> SpendOutcome:
        for source in self.sources:
            outcome = source.lookup(txid, vout)
            if outcome is not None:
                if isinstance(outcome, Spent):
                    logger.debug("%s:%d spent by %s", txid, vout, outcome.spending_txid)
                return outcome
        raise SpendResolutionAmbiguous(txid, vout, 0)
