import unittest
from decimal import Decimal

from tokengraph.adapters.chain.static_chain_adapter import (
    StaticLedger,
    StaticNodeAdapter,
    StaticValidatorEngine,
)
from tokengraph.core.enums import TransactionType
from tokengraph.core.errors import NotTokenTransaction, ValidationUnavailable
from tokengraph.services.validator_service import TransactionValidator


class _SwappingNode(StaticNodeAdapter):
    """Serves the bytes of another transaction for one txid."""

    def __init__(self, ledger, swap) -> None:
        super().__init__(ledger)
        self._swap = swap

    def get_raw_transaction(self, txid: str) -> bytes:
        return super().get_raw_transaction(self._swap.get(txid, txid))


class _ForgetfulEngine(StaticValidatorEngine):
    def __init__(self, bytes_provider, ledger) -> None:
        super().__init__(bytes_provider, ledger)
        self.resets = 0

    def reset(self) -> None:
        self.resets += 1


class TransactionValidatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.ledger = StaticLedger()
        self.genesis = self.ledger.add_genesis(1000, block_time=1_600_000_000)

    def _validator(self, node=None) -> TransactionValidator:
        node = node or StaticNodeAdapter(self.ledger)
        return TransactionValidator(node, lambda bp: StaticValidatorEngine(bp, self.ledger))

    def test_validate_returns_details_and_decoded_outputs(self) -> None:
        v = self._validator()

        result = v.validate(self.genesis)

        self.assertTrue(result.valid)
        self.assertIsNone(result.invalid_reason)
        self.assertIs(result.details.transaction_type, TransactionType.GENESIS)
        self.assertEqual(result.details.genesis_or_mint_quantity, Decimal(1000))
        self.assertEqual(result.tx.txid, self.genesis)
        self.assertEqual(result.tx.outputs[1].value, 546)

    def test_results_are_cached_until_reset(self) -> None:
        v = self._validator()

        first = v.validate(self.genesis)
        second = v.validate(self.genesis)

        self.assertIs(first, second)
        self.assertEqual(v.engine.calls[self.genesis], 1)

        v.reset()
        v.validate(self.genesis)
        self.assertEqual(v.engine.calls[self.genesis], 2)

    def test_reset_clears_the_engine_cache_too(self) -> None:
        v = TransactionValidator(StaticNodeAdapter(self.ledger), lambda bp: _ForgetfulEngine(bp, self.ledger))

        v.reset()

        self.assertEqual(v.engine.resets, 1)

    def test_invalid_verdict_carries_reason(self) -> None:
        bad = self.ledger.add_send(self.genesis, [(self.genesis, 1)], [2000],
                                   invalid_reason="outputs exceed inputs")
        result = self._validator().validate(bad)

        self.assertFalse(result.valid)
        self.assertEqual(result.invalid_reason, "outputs exceed inputs")

    def test_unknown_transaction_is_unavailable(self) -> None:
        with self.assertRaises(ValidationUnavailable):
            self._validator().validate("ee" * 32)

    def test_mismatched_bytes_are_unavailable(self) -> None:
        other = self.ledger.add_genesis(5)
        node = _SwappingNode(self.ledger, {self.genesis: other})
        with self.assertRaises(ValidationUnavailable):
            self._validator(node).validate(self.genesis)

    def test_plain_transaction_is_not_a_token_transaction(self) -> None:
        plain = self.ledger.add_plain([(self.genesis, 1)])
        with self.assertRaises(NotTokenTransaction):
            self._validator().validate(plain)

    def test_block_time_is_best_effort(self) -> None:
        self.assertEqual(self._validator().block_time(self.genesis), 1_600_000_000)
        down = self._validator(StaticNodeAdapter(self.ledger, unreachable=True))
        self.assertIsNone(down.block_time(self.genesis))


if __name__ == "__main__":
    unittest.main()
