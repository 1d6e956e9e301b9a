from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from tokengraph.core.dto import OutputStatus


class NodePort(ABC):
    """
    Abstract Class for the full-node facts the token graph needs.
    """

    # --- raw transactions ---

    @abstractmethod
    def get_raw_transaction(self, txid: str) -> bytes:
        raise NotImplementedError

    # --- UTXO lookup (spent outputs are usually pruned) ---

    @abstractmethod
    def get_output_status(self, txid: str, vout: int) -> OutputStatus:
        raise NotImplementedError

    # --- block time of a confirmed transaction ---

    @abstractmethod
    def get_block_time(self, txid: str) -> Optional[int]:
        raise NotImplementedError
