from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List

from tokengraph.core.dto import QueryMatch


class SpendQueryPort(ABC):
    """
    Indexed query service that can find the transaction spending an outpoint.
    """

    @abstractmethod
    def find_spending_transactions(self, txid: str, vout: int) -> List[QueryMatch]:
        raise NotImplementedError
