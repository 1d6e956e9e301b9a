from enum import Enum


class TransactionType(str, Enum):
    GENESIS = "GENESIS"
    MINT = "MINT"
    SEND = "SEND"
    OTHER = "OTHER"

    @property
    def is_issuance(self) -> bool:
        return self in (TransactionType.GENESIS, TransactionType.MINT)


class NodeState(str, Enum):
    UNVISITED = "unvisited"
    QUEUED = "queued"
    VALIDATING = "validating"
    INVALID = "invalid"
    OUTPUTS_RESOLVED = "outputs_resolved"
    COMMITTED = "committed"
    RECURSING = "recursing"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeState.INVALID, NodeState.DONE, NodeState.FAILED)
