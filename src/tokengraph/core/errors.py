class TokenGraphError(Exception):
    pass


class DataSourceError(TokenGraphError):
    pass


class RateLimitError(DataSourceError):
    pass


class MalformedAmount(TokenGraphError):
    pass


class ValidationUnavailable(TokenGraphError):
    pass


class NotTokenTransaction(TokenGraphError):
    pass


class NotIssuanceTransaction(TokenGraphError):
    pass


class InvalidLineage(TokenGraphError):
    def __init__(self, txid: str, reason: str) -> None:
        super().__init__(f"{txid}: {reason}")
        self.txid = txid
        self.reason = reason


class NoTokenOutputs(TokenGraphError):
    pass


class SpendResolutionAmbiguous(TokenGraphError):
    def __init__(self, txid: str, vout: int, matches: int) -> None:
        super().__init__(f"{txid}:{vout} has {matches} candidate spending transactions")
        self.txid = txid
        self.vout = vout
        self.matches = matches


class SpendResolutionFailed(TokenGraphError):
    pass


class ReentrantTraversal(TokenGraphError):
    pass


class TraversalAborted(TokenGraphError):
    pass
