import base64
import json
import logging
from typing import Any, Dict, List, Optional

import requests

from tokengraph.config.settings import (
    BITDB_BASE_URL,
    BITDB_TIMEOUT_SEC,
    BITDB_REQUESTS_PER_SEC,
    BITDB_MAX_OUTPUTS,
)

from tokengraph.adapters.chain.rate_limiter import SimpleRateLimiter
from tokengraph.core.dto import QueryMatch
from tokengraph.core.errors import DataSourceError
from tokengraph.ports.spend_query_port import SpendQueryPort

logger = logging.getLogger(__name__)

# SLP pushes in out[0]: h1 lokad, h2 token type, h3 tx type, h4 token id, h5.. amounts
_FIRST_AMOUNT_PUSH = 5


def _projection(max_outputs: int) -> str:
    fields = [
        "txid: .tx.h",
        "block: (if .blk? then .blk.i else null end)",
        'timestamp: (if .blk? then (.blk.t | strftime("%Y-%m-%d %H:%M")) else null end)',
        "tokenid: .out[0].h4",
        "txtype: .out[0].h3",
    ]
    for i in range(1, max_outputs):
        fields.append(f"slp{i}: .out[0].h{_FIRST_AMOUNT_PUSH + i - 1}")
    for i in range(max_outputs):
        fields.append(f"bch{i}: .out[{i}].e.v")
    return "[ .[] | { " + ", ".join(fields) + " } ]"


class BitDbQueryAdapter(SpendQueryPort):
    """
    Finds spending transactions through a BitDB v3 endpoint.

    Requests are not retried: a failure is reported to the caller as is.
    """

    def __init__(
        self,
        base_url: str = BITDB_BASE_URL,
        timeout_sec: float = BITDB_TIMEOUT_SEC,
        requests_per_sec: float = BITDB_REQUESTS_PER_SEC,
        max_outputs: int = BITDB_MAX_OUTPUTS,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_sec
        self._max_outputs = max_outputs
        self._rl = SimpleRateLimiter(requests_per_sec)
        self._session = requests.Session()

    def build_query(self, txid: str, vout: int) -> Dict[str, Any]:
        return {
            "v": 3,
            "q": {
                "find": {
                    "in": {
                        "$elemMatch": {"e.h": txid, "e.i": vout},
                    }
                }
            },
            "r": {"f": _projection(self._max_outputs)},
        }

    def _call(self, query: Dict[str, Any]) -> Dict[str, Any]:
        encoded = base64.b64encode(json.dumps(query).encode("utf-8")).decode("ascii")
        url = f"{self._base_url}/q/{encoded}"
        try:
            self._rl.wait()
            resp = self._session.get(url, timeout=self._timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise DataSourceError(f"BitDB request failed: {e}") from e

        if not isinstance(data, dict):
            raise DataSourceError(f"Invalid BitDB response: {data}")
        if data.get("errors"):
            raise DataSourceError(f"BitDB returned errors: {data['errors']}")
        return data

    @staticmethod
    def _opt_int(val: Any) -> Optional[int]:
        if val is None:
            return None
        try:
            return int(val)
        except (TypeError, ValueError):
            return None

    def _to_match(self, row: Dict[str, Any]) -> QueryMatch:
        return QueryMatch(
            txid=str(row.get("txid") or ""),
            block=self._opt_int(row.get("block")),
            timestamp=row.get("timestamp"),
            token_id=row.get("tokenid"),
            transaction_type_hex=row.get("txtype"),
            amounts_hex=[row.get(f"slp{i}") for i in range(1, self._max_outputs)],
            satoshis=[self._opt_int(row.get(f"bch{i}")) for i in range(self._max_outputs)],
        )

    def find_spending_transactions(self, txid: str, vout: int) -> List[QueryMatch]:
        data = self._call(self.build_query(txid, vout))

        rows: List[Dict[str, Any]] = []
        # confirmed first, then mempool
        for key in ("c", "u"):
            part = data.get(key)
            if isinstance(part, list):
                rows.extend(r for r in part if isinstance(r, dict))

        matches = [self._to_match(r) for r in rows]
        logger.debug("bitdb %s:%d -> %d match(es)", txid, vout, len(matches))
        return [m for m in matches if m.txid]
