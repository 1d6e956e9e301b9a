from collections import Counter
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Set, Tuple, Union

from tokengraph.adapters.chain.tx_decoder import (
    decode_transaction,
    encode_transaction,
    p2pkh_script,
    txid_of,
)
from tokengraph.adapters.validation.slp_message import (
    SlpParseError,
    build_genesis_script,
    build_mint_script,
    build_send_script,
    parse_chunks,
    parse_slp_transaction,
)
from tokengraph.core.dto import OutputStatus, QueryMatch, TokenDetails, TxInput, TxOutput
from tokengraph.core.errors import DataSourceError
from tokengraph.ports.node_port import NodePort
from tokengraph.ports.spend_query_port import SpendQueryPort
from tokengraph.ports.validator_engine_port import BytesProvider, ValidatorEnginePort

Outpoint = Tuple[str, int]
Amount = Union[Decimal, int]

DUST_SATOSHIS = 546
DEFAULT_OWNER = bytes(range(1, 21))


class StaticLedger:
    """
    In-memory ledger of real serialized transactions (dev/testing).

    Transactions are keyed by their actual txid, so everything downstream
    (decoder, SLP parser, validator adapter) runs unmodified against it.
    """

    def __init__(self) -> None:
        self.raw: Dict[str, bytes] = {}
        self.block_times: Dict[str, Optional[int]] = {}
        self.invalid: Dict[str, str] = {}
        self._spenders: Dict[Outpoint, List[str]] = {}
        self._funding = 0
        self._seq = 0

    def add_transaction(
        self,
        inputs: Sequence[Outpoint],
        outputs: Sequence[TxOutput],
        block_time: Optional[int] = None,
        invalid_reason: Optional[str] = None,
    ) -> str:
        tx_inputs = [TxInput(prev_txid=t, prev_vout=v) for t, v in inputs]
        if not tx_inputs:
            # coinbase-like funding input, unique per transaction
            self._funding += 1
            tx_inputs = [TxInput(prev_txid=f"{self._funding:064x}", prev_vout=0)]

        # distinct locktimes keep otherwise identical conflicting spends apart
        self._seq += 1
        raw = encode_transaction(tx_inputs, outputs, locktime=self._seq)
        txid = txid_of(raw)
        self.raw[txid] = raw
        self.block_times[txid] = block_time
        if invalid_reason is not None:
            self.invalid[txid] = invalid_reason
        for i in tx_inputs:
            self._spenders.setdefault((i.prev_txid, i.prev_vout), []).append(txid)
        return txid

    def add_genesis(
        self,
        quantity: Amount,
        ticker: str = "TKN",
        name: str = "Test Token",
        decimals: int = 0,
        baton_vout: Optional[int] = None,
        satoshis: int = DUST_SATOSHIS,
        owner: bytes = DEFAULT_OWNER,
        **kw,
    ) -> str:
        script = build_genesis_script(quantity, ticker=ticker, name=name,
                                      decimals=decimals, baton_vout=baton_vout)
        outputs = [TxOutput(0, script), TxOutput(satoshis, p2pkh_script(owner))]
        if baton_vout is not None:
            outputs.append(TxOutput(satoshis, p2pkh_script(owner)))
        return self.add_transaction([], outputs, **kw)

    def add_send(
        self,
        token_id: str,
        inputs: Sequence[Outpoint],
        amounts: Sequence[Amount],
        satoshis: int = DUST_SATOSHIS,
        owner: bytes = DEFAULT_OWNER,
        **kw,
    ) -> str:
        outputs = [TxOutput(0, build_send_script(token_id, amounts))]
        outputs.extend(TxOutput(satoshis, p2pkh_script(owner)) for _ in amounts)
        return self.add_transaction(inputs, outputs, **kw)

    def add_mint(
        self,
        token_id: str,
        inputs: Sequence[Outpoint],
        quantity: Amount,
        satoshis: int = DUST_SATOSHIS,
        owner: bytes = DEFAULT_OWNER,
        **kw,
    ) -> str:
        outputs = [TxOutput(0, build_mint_script(token_id, quantity)),
                   TxOutput(satoshis, p2pkh_script(owner))]
        return self.add_transaction(inputs, outputs, **kw)

    def add_plain(self, inputs: Sequence[Outpoint], satoshis: int = DUST_SATOSHIS, **kw) -> str:
        """A spend with no SLP envelope (burns any tokens it consumes)."""
        return self.add_transaction(inputs, [TxOutput(satoshis, p2pkh_script(DEFAULT_OWNER))], **kw)

    def spenders(self, txid: str, vout: int) -> List[str]:
        return list(self._spenders.get((txid, vout), []))


class StaticNodeAdapter(NodePort):
    def __init__(self, ledger: StaticLedger, unreachable: bool = False) -> None:
        self._ledger = ledger
        self.unreachable = unreachable
        self.status_calls: Counter = Counter()

    def get_raw_transaction(self, txid: str) -> bytes:
        if self.unreachable:
            raise DataSourceError("node unreachable")
        try:
            return self._ledger.raw[txid]
        except KeyError:
            raise DataSourceError(f"No such transaction {txid}") from None

    def get_output_status(self, txid: str, vout: int) -> OutputStatus:
        self.status_calls[(txid, vout)] += 1
        if self.unreachable:
            raise DataSourceError("node unreachable")
        raw = self._ledger.raw.get(txid)
        if raw is None or self._ledger.spenders(txid, vout):
            return OutputStatus(unspent=False)
        outputs = decode_transaction(raw).outputs
        if vout >= len(outputs):
            return OutputStatus(unspent=False)
        return OutputStatus(unspent=True, value=outputs[vout].value)

    def get_block_time(self, txid: str) -> Optional[int]:
        if self.unreachable:
            raise DataSourceError("node unreachable")
        return self._ledger.block_times.get(txid)


class StaticSpendQueryAdapter(SpendQueryPort):
    """
    Answers spend queries from the ledger, shaped like BitDB rows.
    ``extra_matches`` injects additional (e.g. conflicting) hits per outpoint.
    """

    def __init__(
        self,
        ledger: StaticLedger,
        extra_matches: Optional[Dict[Outpoint, List[QueryMatch]]] = None,
        failing: Optional[Set[Outpoint]] = None,
    ) -> None:
        self._ledger = ledger
        self._extra = extra_matches or {}
        self.failing: Set[Outpoint] = set(failing or ())
        self.calls: Counter = Counter()

    def _match_for(self, txid: str) -> QueryMatch:
        tx = decode_transaction(self._ledger.raw[txid])
        token_id = tx_type = None
        amounts: List[Optional[str]] = []
        try:
            chunks = parse_chunks(tx.outputs[0].script_pubkey)
            tx_type = chunks[2].hex() if len(chunks) > 2 else None
            token_id = chunks[3].hex() if len(chunks) > 3 else None
            amounts = [c.hex() for c in chunks[4:]]
        except SlpParseError:
            pass
        return QueryMatch(
            txid=txid,
            token_id=token_id,
            transaction_type_hex=tx_type,
            amounts_hex=amounts,
            satoshis=[o.value for o in tx.outputs],
        )

    def find_spending_transactions(self, txid: str, vout: int) -> List[QueryMatch]:
        self.calls[(txid, vout)] += 1
        if (txid, vout) in self.failing:
            raise DataSourceError(f"query service failed for {txid}:{vout}")
        matches = [self._match_for(s) for s in self._ledger.spenders(txid, vout)]
        matches.extend(self._extra.get((txid, vout), []))
        return matches


class StaticValidatorEngine(ValidatorEnginePort):
    """Every parseable SLP transaction is valid unless the ledger marks it invalid."""

    def __init__(self, bytes_provider: BytesProvider, ledger: StaticLedger) -> None:
        super().__init__(bytes_provider)
        self._ledger = ledger
        self.calls: Counter = Counter()

    def is_valid(self, txid: str) -> bool:
        self.calls[txid] += 1
        return txid not in self._ledger.invalid

    def invalid_reason(self, txid: str) -> Optional[str]:
        return self._ledger.invalid.get(txid)

    def get_details(self, txid: str) -> Optional[TokenDetails]:
        try:
            return parse_slp_transaction(decode_transaction(self.bytes_provider(txid)))
        except SlpParseError:
            return None
