import itertools
import logging
import threading
from decimal import Decimal
from typing import Any, Dict, Optional

import requests

from tokengraph.config.settings import (
    NODE_RPC_HOST,
    NODE_RPC_PORT,
    NODE_RPC_USER,
    NODE_RPC_PASS,
    NODE_REQUESTS_PER_SEC,
    NODE_TIMEOUT_SEC,
    NODE_MAX_RETRIES,
)

from tokengraph.adapters.chain.rate_limiter import SimpleRateLimiter, backoff_sleep
from tokengraph.core.errors import DataSourceError, RateLimitError
from tokengraph.core.dto import OutputStatus
from tokengraph.ports.node_port import NodePort

logger = logging.getLogger(__name__)

SATOSHIS_PER_COIN = Decimal("100000000")

# bitcoind "loading block index" / "verifying blocks"
RPC_IN_WARMUP = -28


class RpcNodeAdapter(NodePort):

    def __init__(
        self,
        host: str = NODE_RPC_HOST,
        port: int = NODE_RPC_PORT,
        user: str = NODE_RPC_USER,
        password: str = NODE_RPC_PASS,
        timeout_sec: float = NODE_TIMEOUT_SEC,
        max_retries: int = NODE_MAX_RETRIES,
        requests_per_sec: float = NODE_REQUESTS_PER_SEC,
    ) -> None:
        self._url = f"http://{host}:{port}/"
        self._timeout = timeout_sec
        self._max_retries = max_retries

        self._rl = SimpleRateLimiter(requests_per_sec)
        self._session = requests.Session()
        if user or password:
            self._session.auth = (user, password)

        self._ids = itertools.count(1)
        self._block_time_cache: Dict[str, int] = {}
        self._cache_lock = threading.Lock()

    # ---------- internal ----------

    def _call(self, method: str, *params: Any) -> Any:
        payload = {
            "jsonrpc": "1.0",
            "id": next(self._ids),
            "method": method,
            "params": list(params),
        }

        last_err: Optional[Exception] = None

        for attempt in range(self._max_retries):
            try:
                self._rl.wait()
                resp = self._session.post(self._url, json=payload, timeout=self._timeout)
            except (requests.Timeout, requests.ConnectionError) as e:
                last_err = e
                logger.debug("node %s attempt %d failed: %s", method, attempt + 1, e)
                backoff_sleep(attempt)
                continue

            if resp.status_code in (401, 403):
                raise DataSourceError(f"Node rejected RPC credentials (HTTP {resp.status_code})")

            try:
                data = resp.json(parse_float=Decimal)
            except ValueError as e:
                raise DataSourceError(f"Invalid node response for {method} (HTTP {resp.status_code})") from e

            err = data.get("error") if isinstance(data, dict) else None
            if err:
                if err.get("code") == RPC_IN_WARMUP:
                    last_err = RateLimitError(err.get("message", "node warming up"))
                    backoff_sleep(attempt)
                    continue
                raise DataSourceError(f"Node {method} failed: {err.get('message', err)}")

            return data.get("result")

        raise DataSourceError(f"Node {method} failed after retries: {last_err}")

    # ---------- port methods ----------

    def get_raw_transaction(self, txid: str) -> bytes:
        result = self._call("getrawtransaction", txid, 1)
        if not isinstance(result, dict) or "hex" not in result:
            raise DataSourceError(f"Invalid getrawtransaction result for {txid}")

        # unconfirmed transactions have no blocktime yet and are asked again later
        blocktime = result.get("blocktime")
        if blocktime is not None:
            with self._cache_lock:
                self._block_time_cache[txid] = int(blocktime)

        try:
            return bytes.fromhex(result["hex"])
        except ValueError as e:
            raise DataSourceError(f"Invalid transaction hex for {txid}") from e

    def get_output_status(self, txid: str, vout: int) -> OutputStatus:
        # include_mempool so an unconfirmed spend already counts as spent
        result = self._call("gettxout", txid, vout, True)
        if result is None:
            return OutputStatus(unspent=False)

        value = result.get("value")
        sats = int(Decimal(value) * SATOSHIS_PER_COIN) if value is not None else None
        return OutputStatus(unspent=True, value=sats)

    def get_block_time(self, txid: str) -> Optional[int]:
        # entries are handed out once, so the cache only holds fetched-but-unasked times
        with self._cache_lock:
            if txid in self._block_time_cache:
                return self._block_time_cache.pop(txid)
        self.get_raw_transaction(txid)
        with self._cache_lock:
            return self._block_time_cache.pop(txid, None)
