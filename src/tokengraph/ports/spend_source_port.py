from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from tokengraph.core.dto import SpendOutcome


class SpendSourcePort(ABC):

    # None means "cannot decide", the next source in the chain is asked
    @abstractmethod
    def lookup(self, txid: str, vout: int) -> Optional[SpendOutcome]:
        raise NotImplementedError
