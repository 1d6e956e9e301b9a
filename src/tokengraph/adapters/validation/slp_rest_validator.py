from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

import requests

from tokengraph.adapters.chain.rate_limiter import backoff_sleep
from tokengraph.adapters.chain.tx_decoder import TxDecodeError, decode_transaction
from tokengraph.adapters.validation.slp_message import SlpParseError, parse_slp_transaction
from tokengraph.config import settings
from tokengraph.core.dto import TokenDetails
from tokengraph.core.errors import DataSourceError
from tokengraph.ports.validator_engine_port import BytesProvider, ValidatorEnginePort

logger = logging.getLogger(__name__)


class SlpRestValidatorEngine(ValidatorEnginePort):
    """
    Validity verdicts come from a remote ``validateTxid`` endpoint which walks
    the token DAG itself; envelope details are parsed locally from the raw
    transaction.
    """

    def __init__(
        self,
        bytes_provider: BytesProvider,
        url: str = settings.SLP_VALIDATE_URL,
        timeout_sec: int = settings.SLP_VALIDATE_TIMEOUT_SEC,
        max_retries: int = settings.SLP_VALIDATE_MAX_RETRIES,
    ) -> None:
        super().__init__(bytes_provider)
        self._url = url
        self._timeout = timeout_sec
        self._max_retries = max_retries
        self._session = requests.Session()
        self._verdicts: Dict[str, Tuple[bool, Optional[str]]] = {}
        self._lock = threading.Lock()

    def _call(self, txids: List[str]) -> List[Dict[str, Any]]:
        last_err: Optional[Exception] = None
        for attempt in range(self._max_retries):
            try:
                resp = self._session.post(self._url, json={"txids": txids}, timeout=self._timeout)
            except requests.RequestException as e:
                last_err = e
                backoff_sleep(attempt)
                continue

            if resp.status_code >= 500:
                last_err = DataSourceError(f"HTTP {resp.status_code}")
                backoff_sleep(attempt)
                continue
            if resp.status_code >= 400:
                raise DataSourceError(f"SLP validator rejected the request (HTTP {resp.status_code})")

            try:
                data = resp.json()
            except ValueError as e:
                raise DataSourceError(f"Invalid validator response (HTTP {resp.status_code})") from e
            if not isinstance(data, list):
                raise DataSourceError(f"Invalid validator response: {data}")
            return data
        raise DataSourceError(f"SLP validator failed after retries: {last_err}")

    def _verdict(self, txid: str) -> Tuple[bool, Optional[str]]:
        with self._lock:
            if txid in self._verdicts:
                return self._verdicts[txid]

        for row in self._call([txid]):
            if isinstance(row, dict) and row.get("txid") == txid:
                valid = bool(row.get("valid"))
                verdict = (valid, None if valid else (row.get("invalidReason") or "invalid"))
                break
        else:
            # a missing verdict is not an invalid one, so it is never cached
            raise DataSourceError(f"SLP validator returned no verdict for {txid}")

        with self._lock:
            self._verdicts[txid] = verdict
        logger.debug("validator verdict %s -> %s", txid, verdict[0])
        return verdict

    def reset(self) -> None:
        with self._lock:
            self._verdicts.clear()

    def is_valid(self, txid: str) -> bool:
        return self._verdict(txid)[0]

    def invalid_reason(self, txid: str) -> Optional[str]:
        return self._verdict(txid)[1]

    def get_details(self, txid: str) -> Optional[TokenDetails]:
        try:
            tx = decode_transaction(self.bytes_provider(txid))
            return parse_slp_transaction(tx)
        except (TxDecodeError, SlpParseError) as e:
            logger.debug("no SLP envelope in %s: %s", txid, e)
            return None
