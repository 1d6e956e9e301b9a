from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Optional

from tokengraph.core.dto import TokenDetails

BytesProvider = Callable[[str], bytes]


class ValidatorEnginePort(ABC):
    """
    External SLP validation engine.

    Engines fetch raw transactions through the ``bytes_provider`` they are
    built with and may validate ancestors on their own.
    """

    def __init__(self, bytes_provider: BytesProvider) -> None:
        self.bytes_provider = bytes_provider

    @abstractmethod
    def is_valid(self, txid: str) -> bool:
        raise NotImplementedError

    # None when the transaction carries no SLP envelope
    @abstractmethod
    def get_details(self, txid: str) -> Optional[TokenDetails]:
        raise NotImplementedError

    def invalid_reason(self, txid: str) -> Optional[str]:
        return None

    def reset(self) -> None:
        """Forget cached verdicts; called at the start of a traversal run."""
