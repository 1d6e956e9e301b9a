from __future__ import annotations

import threading
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

from tokengraph.core.enums import TransactionType


Outpoint = Tuple[str, int]


# Configuration model

@dataclass(frozen=True)
class GraphConfig:
    """
    Per-run knobs for building a token graph.
    """

    token_id: str
    max_workers: int = 4
    # record spends by invalid / non-token / foreign-token transactions as burns
    allow_burns: bool = False


# Graph models

@dataclass(frozen=True)
class TokenMetadata:

    token_id: str
    genesis_txid: str
    transaction_type: TransactionType
    initial_quantity: Decimal
    token_type: int = 1
    ticker: Optional[str] = None
    name: Optional[str] = None
    document_uri: Optional[str] = None
    decimals: int = 0
    baton_vout: Optional[int] = None


@dataclass(frozen=True)
class TokenOutputRecord:

    vout: int
    satoshis: int
    token_qty: Decimal
    spend_txid: Optional[str] = None
    address: Optional[str] = None       # hash160 hex for p2pkh / p2sh outputs
    # spend status could not be resolved on the last run
    pending: bool = False


@dataclass(frozen=True)
class GraphNode:

    txid: str
    transaction_type: TransactionType
    valid: bool
    outputs: Tuple[TokenOutputRecord, ...] = ()
    invalid_reason: Optional[str] = None
    block_time: Optional[int] = None

    @property
    def token_qty(self) -> Decimal:
        return sum((o.token_qty for o in self.outputs), Decimal(0))


@dataclass(frozen=True)
class AddressBalance:

    address: str
    token_balance: Decimal
    satoshi_balance: int
    utxo_count: int


@dataclass
class TokenGraph:
    """
    Token lineage state: transaction arena, alias index and unspent outputs.

    All mutation goes through ``commit`` so readers never see a node whose
    outputs disagree with the unspent set.
    """

    token: TokenMetadata
    _nodes: Dict[str, GraphNode] = field(default_factory=dict)
    _aliases: Dict[str, str] = field(default_factory=dict)
    unspent: Set[Outpoint] = field(default_factory=set)
    complete: bool = False
    errors: List[Exception] = field(default_factory=list)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    # ---------- reads ----------

    def get_node(self, key: str) -> Optional[GraphNode]:
        with self._lock:
            txid = self._aliases.get(key, key)
            return self._nodes.get(txid)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get_node(key) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)

    def nodes(self) -> List[GraphNode]:
        with self._lock:
            return list(self._nodes.values())

    def keys(self) -> List[str]:
        """Every index key, transaction ids plus aliases."""
        with self._lock:
            return list(self._nodes) + [a for a in self._aliases if a not in self._nodes]

    def unspent_records(self) -> List[Tuple[str, TokenOutputRecord]]:
        with self._lock:
            out: List[Tuple[str, TokenOutputRecord]] = []
            for txid, vout in sorted(self.unspent):
                node = self._nodes.get(txid)
                if node is None:
                    continue
                for rec in node.outputs:
                    if rec.vout == vout:
                        out.append((txid, rec))
            return out

    # ---------- writes ----------

    def begin_update(self) -> None:
        with self._lock:
            self.complete = False
            self.errors = []

    def mark_complete(self) -> None:
        with self._lock:
            self.complete = True

    def commit(self, node: GraphNode) -> None:
        """Replace the node for ``node.txid`` wholesale and sync the unspent set."""
        with self._lock:
            previous = self._nodes.get(node.txid)
            if previous is not None:
                for rec in previous.outputs:
                    self.unspent.discard((node.txid, rec.vout))

            for rec in node.outputs:
                key = (node.txid, rec.vout)
                if rec.spend_txid is None:
                    self.unspent.add(key)
                else:
                    self.unspent.discard(key)

            self._nodes[node.txid] = node
            if node.txid == self.token.genesis_txid and self.token.token_id != node.txid:
                self._aliases[self.token.token_id] = node.txid

    # ---------- checks ----------

    def check_invariants(self) -> List[str]:
        """Return a list of violations (empty when consistent)."""
        problems: List[str] = []
        with self._lock:
            expected: Set[Outpoint] = set()
            for node in self._nodes.values():
                if not node.valid and node.outputs:
                    problems.append(f"{node.txid}: invalid transaction carries token outputs")
                for rec in node.outputs:
                    if rec.token_qty < 0:
                        problems.append(f"{node.txid}:{rec.vout}: negative token quantity")
                    if rec.spend_txid is None:
                        expected.add((node.txid, rec.vout))
            for key in sorted(self.unspent - expected):
                problems.append(f"{key[0]}:{key[1]}: in unspent set but spent or unknown")
            for key in sorted(expected - self.unspent):
                problems.append(f"{key[0]}:{key[1]}: unspent but missing from unspent set")
        return problems

    def address_balances(self) -> Dict[str, AddressBalance]:
        totals: Dict[str, Tuple[Decimal, int, int]] = {}
        for _txid, rec in self.unspent_records():
            if rec.address is None:
                continue
            tok, sats, count = totals.get(rec.address, (Decimal(0), 0, 0))
            totals[rec.address] = (tok + rec.token_qty, sats + rec.satoshis, count + 1)
        return {
            addr: AddressBalance(address=addr, token_balance=t, satoshi_balance=s, utxo_count=c)
            for addr, (t, s, c) in totals.items()
        }

