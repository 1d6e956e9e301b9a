from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from tokengraph.adapters.chain.tx_decoder import script_hash160
from tokengraph.core.dto import Spent, SpentOutput, ValidationResult
from tokengraph.core.enums import NodeState, TransactionType
from tokengraph.core.errors import (
    InvalidLineage,
    MalformedAmount,
    NoTokenOutputs,
    NotIssuanceTransaction,
    NotTokenTransaction,
    ReentrantTraversal,
    SpendResolutionAmbiguous,
    SpendResolutionFailed,
    TokenGraphError,
    TraversalAborted,
)
from tokengraph.core.models import (
    GraphConfig,
    GraphNode,
    TokenGraph,
    TokenMetadata,
    TokenOutputRecord,
)
from tokengraph.services.spend_resolver import FallbackSpendResolver
from tokengraph.services.statistics import TokenStats, compute_token_stats
from tokengraph.services.validator_service import TransactionValidator

logger = logging.getLogger(__name__)

ProgressFn = Callable[[str, Dict[str, Any]], None]

# errors that only affect one output; siblings keep going
_OUTPUT_ERRORS = (MalformedAmount, SpendResolutionAmbiguous, SpendResolutionFailed)


@dataclass(frozen=True)
class _WorkItem:
    txid: str
    depth: int
    parent: Optional["_WorkItem"] = None

    def has_ancestor(self, txid: str) -> bool:
        item: Optional[_WorkItem] = self
        while item is not None:
            if item.txid == txid:
                return True
            item = item.parent
        return False


class _TraversalRun:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.idle = threading.Condition(self.lock)
        self.states: Dict[str, NodeState] = {}
        # children still running, plus one hold for the node itself while it recurses
        self.pending: Dict[str, int] = {}
        self.outstanding = 0
        self.visited = 0
        self.errors: List[Exception] = []
        # per-output amounts the query service reported for a discovered spender
        self.reported: Dict[str, Tuple[SpentOutput, ...]] = {}


class TokenGraphBuilder:
    """
    Builds and refreshes the spend graph of one token.

    - Traversal: explicit work queue drained by a bounded thread pool
    - One extension per transaction id per run; a node is committed before
      any of its children start
    - Branch errors are collected and the first one is raised from ``extend``
    """

    def __init__(
        self,
        graph: TokenGraph,
        validator: TransactionValidator,
        resolver: FallbackSpendResolver,
        cfg: GraphConfig,
        on_progress: Optional[ProgressFn] = None,
    ) -> None:
        if cfg.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.graph = graph
        self.validator = validator
        self.resolver = resolver
        self.cfg = cfg
        self.on_progress = on_progress

        self._abort = threading.Event()
        self._run_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None

    @classmethod
    def for_token(
        cls,
        cfg: GraphConfig,
        validator: TransactionValidator,
        resolver: FallbackSpendResolver,
        on_progress: Optional[ProgressFn] = None,
    ) -> "TokenGraphBuilder":
        result = validator.validate(cfg.token_id)
        d = result.details
        if d.transaction_type is not TransactionType.GENESIS:
            raise NotIssuanceTransaction(
                f"{cfg.token_id} is a {d.transaction_type.value} transaction, not GENESIS"
            )
        token = TokenMetadata(
            token_id=d.token_id,
            genesis_txid=result.txid,
            transaction_type=d.transaction_type,
            initial_quantity=d.genesis_or_mint_quantity or Decimal(0),
            token_type=d.token_type,
            ticker=d.ticker,
            name=d.name,
            document_uri=d.document_uri,
            decimals=d.decimals,
            baton_vout=d.baton_vout,
        )
        return cls(TokenGraph(token=token), validator, resolver, cfg, on_progress)

    # -------------------------
    # Public API
    # -------------------------

    def extend(self, txid: Optional[str] = None) -> bool:
        """
        Build or refresh the graph from ``txid`` (default: the GENESIS).

        Returns True once every reachable spend has been processed; raises the
        first branch error otherwise, leaving ``graph.complete`` False.
        """
        root = txid or self.graph.token.genesis_txid
        if not self._run_lock.acquire(blocking=False):
            raise ReentrantTraversal("a traversal is already running for this token")
        try:
            return self._run(root)
        finally:
            self._run_lock.release()

    def abort(self) -> None:
        self._abort.set()

    def compute_statistics(self) -> TokenStats:
        return compute_token_stats(self.graph)

    # -------------------------
    # Run loop
    # -------------------------

    def _run(self, root: str) -> bool:
        self._abort.clear()
        self.validator.reset()
        self.graph.begin_update()
        run = _TraversalRun()
        self._emit("start", {"txid": root, "workers": self.cfg.max_workers})

        self._executor = ThreadPoolExecutor(
            max_workers=self.cfg.max_workers,
            thread_name_prefix="tokengraph",
        )
        try:
            with run.lock:
                self._schedule_locked(run, _WorkItem(root, 0))
            with run.idle:
                while run.outstanding > 0 and not self._abort.is_set():
                    run.idle.wait(timeout=0.5)
        except KeyboardInterrupt:
            self.abort()
            raise
        finally:
            # queued work is dropped as a group; running workers stop at their next network call
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None

        if self._abort.is_set():
            self._emit("error", {"message": "aborted", "nodes": len(self.graph)})
            raise TraversalAborted(f"traversal from {root} aborted, graph left incomplete")

        with run.lock:
            errors = list(run.errors)
        self.graph.errors = errors

        problems = self.graph.check_invariants()
        if problems:
            raise TokenGraphError("graph invariants violated: " + "; ".join(problems))

        if errors:
            self._emit("error", {"message": str(errors[0]), "errors": len(errors)})
            raise errors[0]

        self.graph.mark_complete()
        self._emit("done", {
            "nodes": len(self.graph),
            "visited": run.visited,
            "unspent": len(self.graph.unspent),
        })
        return True

    def _schedule_locked(self, run: _TraversalRun, item: _WorkItem) -> None:
        if self._abort.is_set() or self._executor is None:
            raise TraversalAborted(f"not scheduling {item.txid}, traversal aborted")
        run.states[item.txid] = NodeState.QUEUED
        run.outstanding += 1
        if item.parent is not None:
            run.pending[item.parent.txid] += 1
        try:
            self._executor.submit(self._visit, run, item)
        except RuntimeError as e:
            # executor shut down between the abort check and submit
            run.outstanding -= 1
            if item.parent is not None:
                run.pending[item.parent.txid] -= 1
            raise TraversalAborted(f"not scheduling {item.txid}, traversal aborted") from e

    def _visit(self, run: _TraversalRun, item: _WorkItem) -> None:
        final = NodeState.FAILED
        try:
            self._check_abort()
            self._set_state(run, item.txid, NodeState.VALIDATING)
            self._emit("visit", {
                "txid": item.txid,
                "depth": item.depth,
                "visited": run.visited,
                "queue": run.outstanding,
            })

            result = self._validate(item.txid)
            if result is None:
                final = NodeState.INVALID
                return
            with run.lock:
                reported = run.reported.get(item.txid, ())
            self._reconcile(result, reported)

            records, reports, output_errors = self._resolve_outputs(result)
            self._set_state(run, item.txid, NodeState.OUTPUTS_RESOLVED)

            node = GraphNode(
                txid=item.txid,
                transaction_type=result.details.transaction_type,
                valid=True,
                outputs=tuple(records),
                block_time=self.validator.block_time(item.txid),
            )
            self._check_abort()
            self.graph.commit(node)
            self._set_state(run, item.txid, NodeState.COMMITTED)
            self._emit("commit", {"txid": item.txid, "outputs": len(records)})

            for e in output_errors:
                self._record_error(run, item, e)

            with run.lock:
                run.states[item.txid] = NodeState.RECURSING
                run.pending[item.txid] = 1
                for child, outputs in reports.items():
                    run.reported.setdefault(child, outputs)
            final = NodeState.RECURSING

            children = [r.spend_txid for r in records if r.spend_txid is not None]
            for child in dict.fromkeys(children):
                try:
                    self._discover(run, item, child)
                except ReentrantTraversal as e:
                    self._record_error(run, item, e)
        except TraversalAborted:
            logger.debug("stopping %s, traversal aborted", item.txid)
        except TokenGraphError as e:
            self._record_error(run, item, e)
        except Exception as e:
            logger.exception("unexpected failure while extending %s", item.txid)
            self._record_error(run, item, e)
        finally:
            self._finish(run, item, final)

    def _discover(self, run: _TraversalRun, item: _WorkItem, child: str) -> None:
        with run.lock:
            state = run.states.get(child, NodeState.UNVISITED)
            if state is NodeState.UNVISITED:
                self._schedule_locked(run, _WorkItem(child, item.depth + 1, item))
                return
            if not state.is_terminal and item.has_ancestor(child):
                raise ReentrantTraversal(
                    f"{child} re-entered from its own descendant {item.txid} while {state.value}"
                )
        # spends several of our outputs, another parent already took it
        logger.debug("%s already %s in this run", child, state.value)

    def _finish(self, run: _TraversalRun, item: _WorkItem, final: NodeState) -> None:
        with run.lock:
            run.visited += 1
            if final is NodeState.RECURSING:
                self._release_locked(run, item)
            else:
                run.states[item.txid] = final
                if item.parent is not None:
                    self._release_locked(run, item.parent)
            run.outstanding -= 1
            if run.outstanding <= 0:
                run.idle.notify_all()

    @staticmethod
    def _release_locked(run: _TraversalRun, item: Optional[_WorkItem]) -> None:
        while item is not None:
            run.pending[item.txid] -= 1
            if run.pending[item.txid] > 0:
                return
            run.states[item.txid] = NodeState.DONE
            item = item.parent

    # -------------------------
    # Per-transaction steps
    # -------------------------

    def _validate(self, txid: str) -> Optional[ValidationResult]:
        """Validated result, or None when the spend was recorded as a burn."""
        try:
            result = self.validator.validate(txid)
        except NotTokenTransaction as e:
            if not self.cfg.allow_burns:
                raise
            self._commit_invalid(txid, TransactionType.OTHER, str(e))
            return None

        reason: Optional[str] = None
        if not result.valid:
            reason = result.invalid_reason or "rejected by validator"
        elif result.details.token_id != self.graph.token.token_id:
            reason = f"belongs to token {result.details.token_id}"

        if reason is None:
            return result

        # never record token outputs for a rejected transaction
        self._commit_invalid(txid, result.details.transaction_type, reason)
        if self.cfg.allow_burns:
            logger.info("%s burns tokens: %s", txid, reason)
            return None
        raise InvalidLineage(txid, reason)

    def _commit_invalid(self, txid: str, tx_type: TransactionType, reason: str) -> None:
        self.graph.commit(GraphNode(
            txid=txid,
            transaction_type=tx_type,
            valid=False,
            outputs=(),
            invalid_reason=reason,
            block_time=self.validator.block_time(txid),
        ))

    @staticmethod
    def _token_outputs(result: ValidationResult) -> List[Tuple[int, Decimal]]:
        d = result.details
        if d.transaction_type.is_issuance:
            qty = d.genesis_or_mint_quantity or Decimal(0)
            return [(1, qty)] if qty > 0 else []
        if d.transaction_type is TransactionType.SEND:
            return [(vout, qty) for vout, qty in enumerate(d.send_outputs) if qty > 0]
        return []

    def _resolve_outputs(
        self, result: ValidationResult
    ) -> Tuple[List[TokenOutputRecord], Dict[str, Tuple[SpentOutput, ...]], List[Exception]]:
        txid = result.txid
        wanted = self._token_outputs(result)
        if not wanted:
            raise NoTokenOutputs(f"{txid} ({result.details.transaction_type.value}) has no token outputs")

        # a spend, once recorded, is never reversed
        previous = self.graph.get_node(txid)
        known: Dict[int, str] = {}
        if previous is not None and previous.txid == txid:
            known = {r.vout: r.spend_txid for r in previous.outputs if r.spend_txid is not None}

        records: List[TokenOutputRecord] = []
        reports: Dict[str, Tuple[SpentOutput, ...]] = {}
        errors: List[Exception] = []
        for vout, qty in wanted:
            if vout >= len(result.tx.outputs):
                logger.warning("%s: amount for missing output %d is burned", txid, vout)
                continue

            self._check_abort()
            out = result.tx.outputs[vout]
            spend_txid: Optional[str] = known.get(vout)
            pending = False
            if spend_txid is None:
                try:
                    outcome = self.resolver.resolve_spend(txid, vout)
                    if isinstance(outcome, Spent):
                        spend_txid = outcome.spending_txid
                        if outcome.outputs:
                            reports.setdefault(spend_txid, outcome.outputs)
                except _OUTPUT_ERRORS as e:
                    logger.warning("could not resolve spend of %s:%d: %s", txid, vout, e)
                    pending = True
                    errors.append(e)

            records.append(TokenOutputRecord(
                vout=vout,
                satoshis=out.value,
                token_qty=qty,
                spend_txid=spend_txid,
                address=script_hash160(out.script_pubkey),
                pending=pending,
            ))

        if not records:
            raise NoTokenOutputs(f"{txid} has token amounts only for missing outputs")
        return records, reports, errors

    @staticmethod
    def _reconcile(result: ValidationResult, reported: Tuple[SpentOutput, ...]) -> None:
        """Compare the query service's view of a SEND with the validator's; the validator wins."""
        d = result.details
        if not reported or d.transaction_type is not TransactionType.SEND:
            return
        for out in reported:
            if out.vout == 0:
                continue
            expected = d.send_outputs[out.vout] if out.vout < len(d.send_outputs) else Decimal(0)
            if out.token_qty != expected:
                logger.warning(
                    "%s:%d: query service reports %s tokens, validator %s",
                    result.txid, out.vout, out.token_qty, expected,
                )

    # -------------------------
    # Helpers
    # -------------------------

    def _check_abort(self) -> None:
        if self._abort.is_set():
            raise TraversalAborted("traversal aborted")

    @staticmethod
    def _set_state(run: _TraversalRun, txid: str, state: NodeState) -> None:
        with run.lock:
            run.states[txid] = state

    def _record_error(self, run: _TraversalRun, item: _WorkItem, err: Exception) -> None:
        logger.warning("branch %s (depth %d) failed: %s", item.txid, item.depth, err)
        with run.lock:
            run.errors.append(err)
        self._emit("branch_error", {"txid": item.txid, "message": str(err)})

    def _emit(self, event: str, data: Dict[str, Any]) -> None:
        if self.on_progress is not None:
            self.on_progress(event, data)
