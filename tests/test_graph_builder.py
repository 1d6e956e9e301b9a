import dataclasses
import unittest
from decimal import Decimal

from tokengraph.adapters.chain.static_chain_adapter import (
    StaticLedger,
    StaticNodeAdapter,
    StaticSpendQueryAdapter,
    StaticValidatorEngine,
)
from tokengraph.core.amount import encode_amount
from tokengraph.core.dto import Spent, Unspent
from tokengraph.core.enums import TransactionType
from tokengraph.core.errors import (
    InvalidLineage,
    NoTokenOutputs,
    NotIssuanceTransaction,
    NotTokenTransaction,
    ReentrantTraversal,
    SpendResolutionAmbiguous,
    SpendResolutionFailed,
    TraversalAborted,
)
from tokengraph.core.models import GraphConfig
from tokengraph.services.graph_builder import TokenGraphBuilder
from tokengraph.services.spend_resolver import FallbackSpendResolver
from tokengraph.services.validator_service import TransactionValidator


class _ScriptedResolver:
    """Answers from a fixed {(txid, vout): spending txid} map."""

    def __init__(self, spends) -> None:
        self._spends = spends

    def resolve_spend(self, txid, vout):
        spender = self._spends.get((txid, vout))
        return Spent(spender) if spender else Unspent()


class _RewritingQuery(StaticSpendQueryAdapter):
    """Serves ledger matches with their amount fields replaced."""

    def __init__(self, ledger, amounts_hex) -> None:
        super().__init__(ledger)
        self._amounts_hex = amounts_hex

    def find_spending_transactions(self, txid, vout):
        return [
            dataclasses.replace(m, amounts_hex=list(self._amounts_hex))
            for m in super().find_spending_transactions(txid, vout)
        ]


class TokenGraphBuilderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.ledger = StaticLedger()
        self.genesis = self.ledger.add_genesis(1000, block_time=1_600_000_000)

    def _make_builder(self, token_id=None, query=None, resolver=None, **overrides) -> TokenGraphBuilder:
        token_id = token_id or self.genesis
        node = StaticNodeAdapter(self.ledger)
        query = query or StaticSpendQueryAdapter(self.ledger)
        self.validator = TransactionValidator(node, lambda bp: StaticValidatorEngine(bp, self.ledger))
        resolver = resolver or FallbackSpendResolver.default(node, query)
        cfg = GraphConfig(token_id=token_id, **overrides)
        return TokenGraphBuilder.for_token(cfg, self.validator, resolver)

    def assertConsistent(self, builder: TokenGraphBuilder) -> None:
        self.assertEqual(builder.graph.check_invariants(), [])

    # -------------------------
    # Issuance / end-to-end
    # -------------------------

    def test_unspent_genesis_yields_one_node(self) -> None:
        builder = self._make_builder()

        self.assertTrue(builder.extend())

        graph = builder.graph
        self.assertEqual(len(graph), 1)
        node = graph.get_node(self.genesis)
        self.assertIs(node.transaction_type, TransactionType.GENESIS)
        self.assertEqual(len(node.outputs), 1)
        rec = node.outputs[0]
        self.assertEqual((rec.vout, rec.token_qty, rec.satoshis), (1, Decimal(1000), 546))
        self.assertIsNone(rec.spend_txid)
        self.assertEqual(graph.unspent, {(self.genesis, 1)})
        self.assertTrue(graph.complete)
        self.assertConsistent(builder)

    def test_token_metadata_comes_from_genesis(self) -> None:
        token = self._make_builder().graph.token

        self.assertEqual(token.token_id, self.genesis)
        self.assertEqual(token.ticker, "TKN")
        self.assertEqual(token.initial_quantity, Decimal(1000))

    def test_issuance_is_indexed_under_token_id(self) -> None:
        builder = self._make_builder()
        builder.extend()

        self.assertIs(builder.graph.get_node(builder.graph.token.token_id),
                      builder.graph.get_node(self.genesis))

    def test_rerun_picks_up_a_new_spend(self) -> None:
        builder = self._make_builder()
        builder.extend()

        send = self.ledger.add_send(self.genesis, [(self.genesis, 1)], [0, 1000])
        builder.extend()

        graph = builder.graph
        self.assertEqual(len(graph), 2)
        self.assertEqual(graph.get_node(self.genesis).outputs[0].spend_txid, send)
        send_node = graph.get_node(send)
        self.assertEqual([(r.vout, r.token_qty) for r in send_node.outputs], [(2, Decimal(1000))])
        self.assertEqual(graph.unspent, {(send, 2)})
        self.assertConsistent(builder)

    def test_extend_twice_does_not_duplicate_nodes(self) -> None:
        self.ledger.add_send(self.genesis, [(self.genesis, 1)], [1000])
        builder = self._make_builder()

        builder.extend()
        first = sorted(builder.graph.keys())
        builder.extend()

        self.assertEqual(sorted(builder.graph.keys()), first)
        self.assertEqual(len(builder.graph), 2)

    def test_not_genesis_is_rejected(self) -> None:
        send = self.ledger.add_send(self.genesis, [(self.genesis, 1)], [1000])
        with self.assertRaises(NotIssuanceTransaction):
            self._make_builder(token_id=send)

    def test_zero_quantity_genesis_has_no_token_outputs(self) -> None:
        empty = self.ledger.add_genesis(0)
        builder = self._make_builder(token_id=empty)

        with self.assertRaises(NoTokenOutputs):
            builder.extend()
        self.assertEqual(len(builder.graph), 0)
        self.assertFalse(builder.graph.complete)

    # -------------------------
    # Fan-out / dedupe
    # -------------------------

    def test_transaction_reached_from_two_parents_is_processed_once(self) -> None:
        split = self.ledger.add_send(self.genesis, [(self.genesis, 1)], [600, 400])
        left = self.ledger.add_send(self.genesis, [(split, 1)], [600])
        right = self.ledger.add_send(self.genesis, [(split, 2)], [400])
        merge = self.ledger.add_send(self.genesis, [(left, 1), (right, 1)], [1000])
        builder = self._make_builder(max_workers=4)

        builder.extend()

        self.assertEqual(len(builder.graph), 5)
        self.assertEqual(self.validator.engine.calls[merge], 1)
        self.assertEqual(builder.graph.unspent, {(merge, 1)})
        self.assertEqual(builder.graph.get_node(left).outputs[0].spend_txid, merge)
        self.assertEqual(builder.graph.get_node(right).outputs[0].spend_txid, merge)
        self.assertConsistent(builder)

    def test_only_positive_send_outputs_are_tracked(self) -> None:
        send = self.ledger.add_send(self.genesis, [(self.genesis, 1)], [0, 250, 0, 750])
        builder = self._make_builder()

        builder.extend()

        self.assertEqual([r.vout for r in builder.graph.get_node(send).outputs], [2, 4])
        self.assertEqual(builder.graph.unspent, {(send, 2), (send, 4)})

    def test_output_addresses_are_recorded(self) -> None:
        owner = bytes([7] * 20)
        send = self.ledger.add_send(self.genesis, [(self.genesis, 1)], [1000], owner=owner)
        builder = self._make_builder()

        builder.extend()

        self.assertEqual(builder.graph.get_node(send).outputs[0].address, owner.hex())
        self.assertEqual(builder.graph.address_balances()[owner.hex()].token_balance, Decimal(1000))

    # -------------------------
    # Failures
    # -------------------------

    def test_recorded_spend_survives_a_failed_rerun(self) -> None:
        send = self.ledger.add_send(self.genesis, [(self.genesis, 1)], [0, 1000])
        query = StaticSpendQueryAdapter(self.ledger)
        builder = self._make_builder(query=query)
        builder.extend()

        query.failing.add((self.genesis, 1))
        self.assertTrue(builder.extend())

        rec = builder.graph.get_node(self.genesis).outputs[0]
        self.assertEqual(rec.spend_txid, send)
        self.assertFalse(rec.pending)
        self.assertEqual(builder.graph.unspent, {(send, 2)})
        self.assertEqual(query.calls[(self.genesis, 1)], 1)
        self.assertEqual(builder.compute_statistics().qty_token_unburned, Decimal(1000))
        self.assertConsistent(builder)

    def test_undecodable_query_amounts_keep_the_spend(self) -> None:
        send = self.ledger.add_send(self.genesis, [(self.genesis, 1)], [0, 1000])
        builder = self._make_builder(query=_RewritingQuery(self.ledger, ["zz"]))

        self.assertTrue(builder.extend())

        self.assertIn(send, builder.graph)
        self.assertEqual(builder.graph.get_node(self.genesis).outputs[0].spend_txid, send)
        self.assertEqual(builder.graph.unspent, {(send, 2)})

    def test_query_amounts_are_checked_against_the_validator(self) -> None:
        send = self.ledger.add_send(self.genesis, [(self.genesis, 1)], [0, 1000])
        query = _RewritingQuery(self.ledger, [encode_amount(0), encode_amount(999)])
        builder = self._make_builder(query=query)

        with self.assertLogs("tokengraph.services.graph_builder", level="WARNING") as logs:
            builder.extend()

        self.assertTrue(any("query service reports 999 tokens, validator 1000" in line for line in logs.output))
        # the validator's amounts are the ones recorded
        self.assertEqual(builder.graph.get_node(send).outputs[0].token_qty, Decimal(1000))

    def test_ambiguous_spend_keeps_output_pending(self) -> None:
        builder = self._make_builder()
        builder.extend()

        self.ledger.add_send(self.genesis, [(self.genesis, 1)], [1000])
        self.ledger.add_send(self.genesis, [(self.genesis, 1)], [1000])
        with self.assertRaises(SpendResolutionAmbiguous):
            builder.extend()

        rec = builder.graph.get_node(self.genesis).outputs[0]
        self.assertIsNone(rec.spend_txid)
        self.assertTrue(rec.pending)
        self.assertIn((self.genesis, 1), builder.graph.unspent)
        self.assertEqual(len(builder.graph), 1)
        self.assertFalse(builder.graph.complete)
        self.assertEqual(len(builder.graph.errors), 1)
        self.assertConsistent(builder)

    def test_sibling_branch_survives_a_failed_output(self) -> None:
        split = self.ledger.add_send(self.genesis, [(self.genesis, 1)], [600, 400])
        left = self.ledger.add_send(self.genesis, [(split, 1)], [600])
        self.ledger.add_send(self.genesis, [(split, 2)], [400])
        query = StaticSpendQueryAdapter(self.ledger, failing={(split, 2)})
        builder = self._make_builder(query=query)

        with self.assertRaises(SpendResolutionFailed):
            builder.extend()

        graph = builder.graph
        self.assertIn(left, graph)
        self.assertIn((left, 1), graph.unspent)
        failed = [r for r in graph.get_node(split).outputs if r.vout == 2][0]
        self.assertTrue(failed.pending)
        self.assertIn((split, 2), graph.unspent)
        self.assertConsistent(builder)

    def test_invalid_spend_fails_without_fabricating_tokens(self) -> None:
        bad = self.ledger.add_send(self.genesis, [(self.genesis, 1)], [5000],
                                   invalid_reason="outputs exceed inputs")
        builder = self._make_builder()

        with self.assertRaises(InvalidLineage):
            builder.extend()

        node = builder.graph.get_node(bad)
        self.assertFalse(node.valid)
        self.assertEqual(node.outputs, ())
        self.assertEqual(node.invalid_reason, "outputs exceed inputs")
        self.assertEqual(builder.graph.unspent, set())
        self.assertConsistent(builder)

    def test_invalid_spend_is_a_burn_when_allowed(self) -> None:
        self.ledger.add_send(self.genesis, [(self.genesis, 1)], [5000], invalid_reason="bad")
        builder = self._make_builder(allow_burns=True)

        self.assertTrue(builder.extend())
        self.assertTrue(builder.graph.complete)
        self.assertEqual(builder.compute_statistics().qty_token_burned, Decimal(1000))

    def test_plain_spend(self) -> None:
        plain = self.ledger.add_plain([(self.genesis, 1)])

        with self.assertRaises(NotTokenTransaction):
            self._make_builder().extend()

        builder = self._make_builder(allow_burns=True)
        builder.extend()
        node = builder.graph.get_node(plain)
        self.assertFalse(node.valid)
        self.assertIs(node.transaction_type, TransactionType.OTHER)

    def test_send_of_another_token_is_invalid_for_this_lineage(self) -> None:
        other = self.ledger.add_genesis(10)
        foreign = self.ledger.add_send(other, [(self.genesis, 1)], [10])
        builder = self._make_builder()

        with self.assertRaises(InvalidLineage) as ctx:
            builder.extend()
        self.assertIn("belongs to token", ctx.exception.reason)
        self.assertFalse(builder.graph.get_node(foreign).valid)

    def test_cycle_is_reported_as_reentrant(self) -> None:
        send = self.ledger.add_send(self.genesis, [(self.genesis, 1)], [1000])
        resolver = _ScriptedResolver({(self.genesis, 1): send, (send, 1): self.genesis})
        builder = self._make_builder(resolver=resolver, max_workers=1)

        with self.assertRaises(ReentrantTraversal):
            builder.extend()
        self.assertFalse(builder.graph.complete)

    def test_abort_leaves_graph_incomplete(self) -> None:
        send = self.ledger.add_send(self.genesis, [(self.genesis, 1)], [1000])
        builder = self._make_builder(max_workers=1)

        def _abort_on_commit(event, data):
            if event == "commit":
                builder.abort()

        builder.on_progress = _abort_on_commit
        with self.assertRaises(TraversalAborted):
            builder.extend()

        self.assertFalse(builder.graph.complete)
        self.assertNotIn(send, builder.graph)

        builder.on_progress = None
        self.assertTrue(builder.extend())
        self.assertIn(send, builder.graph)
        self.assertTrue(builder.graph.complete)

    def test_progress_events(self) -> None:
        self.ledger.add_send(self.genesis, [(self.genesis, 1)], [1000])
        builder = self._make_builder()
        events = []
        builder.on_progress = lambda event, data: events.append(event)

        builder.extend()

        self.assertEqual(events[0], "start")
        self.assertEqual(events[-1], "done")
        self.assertEqual(events.count("commit"), 2)


if __name__ == "__main__":
    unittest.main()
