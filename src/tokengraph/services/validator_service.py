from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Optional

from tokengraph.adapters.chain.tx_decoder import TxDecodeError, decode_transaction
from tokengraph.core.dto import ValidationResult
from tokengraph.core.errors import DataSourceError, NotTokenTransaction, ValidationUnavailable
from tokengraph.ports.node_port import NodePort
from tokengraph.ports.validator_engine_port import BytesProvider, ValidatorEnginePort

logger = logging.getLogger(__name__)

EngineFactory = Callable[[BytesProvider], ValidatorEnginePort]


class TransactionValidator:
    """
    Caching front for the external SLP validation engine.

    The engine is handed ``raw_transaction`` as its bytes provider, so every
    raw transaction it pulls (ancestors included) lands in the same cache.
    """

    def __init__(self, node: NodePort, engine_factory: EngineFactory) -> None:
        self.node = node
        self.engine = engine_factory(self.raw_transaction)
        self._raw: Dict[str, bytes] = {}
        self._results: Dict[str, ValidationResult] = {}
        self._lock = threading.Lock()

    def reset(self) -> None:
        """Drop everything cached; called at the start of a traversal run."""
        with self._lock:
            self._raw.clear()
            self._results.clear()
        self.engine.reset()

    def raw_transaction(self, txid: str) -> bytes:
        with self._lock:
            raw = self._raw.get(txid)
        if raw is not None:
            return raw
        try:
            raw = self.node.get_raw_transaction(txid)
        except DataSourceError as e:
            raise ValidationUnavailable(f"cannot fetch raw transaction {txid}: {e}") from e
        with self._lock:
            self._raw[txid] = raw
        return raw

    def block_time(self, txid: str) -> Optional[int]:
        # metadata only, an unreachable node must not fail the branch
        try:
            return self.node.get_block_time(txid)
        except DataSourceError as e:
            logger.warning("no block time for %s: %s", txid, e)
            return None

    def validate(self, txid: str) -> ValidationResult:
        with self._lock:
            cached = self._results.get(txid)
        if cached is not None:
            return cached

        raw = self.raw_transaction(txid)
        try:
            tx = decode_transaction(raw)
        except TxDecodeError as e:
            raise ValidationUnavailable(f"cannot decode transaction {txid}: {e}") from e
        if tx.txid != txid:
            raise ValidationUnavailable(f"node returned transaction {tx.txid} for {txid}")

        try:
            details = self.engine.get_details(txid)
            if details is None:
                raise NotTokenTransaction(f"{txid} carries no SLP envelope")
            valid = bool(self.engine.is_valid(txid))
            reason = None if valid else (self.engine.invalid_reason(txid) or "rejected by validator")
        except DataSourceError as e:
            raise ValidationUnavailable(f"validator unavailable for {txid}: {e}") from e

        result = ValidationResult(
            txid=txid,
            details=details,
            valid=valid,
            tx=tx,
            invalid_reason=reason,
        )
        with self._lock:
            self._results[txid] = result
        logger.debug("validated %s: %s valid=%s", txid, details.transaction_type.value, valid)
        return result
