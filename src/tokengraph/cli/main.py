from __future__ import annotations

import argparse
import datetime as dt
import logging
import sys
import time

from tokengraph.config import settings
from tokengraph.core.errors import TokenGraphError, TraversalAborted
from tokengraph.core.models import GraphConfig
from tokengraph.services.graph_builder import TokenGraphBuilder
from tokengraph.services.spend_resolver import FallbackSpendResolver
from tokengraph.services.validator_service import TransactionValidator
from tokengraph.io.output_writer import write_graph_json, write_summary_md

from tokengraph.adapters.chain.rpc_node_adapter import RpcNodeAdapter
from tokengraph.adapters.chain.bitdb_query_adapter import BitDbQueryAdapter
from tokengraph.adapters.validation.slp_rest_validator import SlpRestValidatorEngine


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="tokengraph", description="SLP token spend graph builder")
    p.add_argument("--token-id", required=True, help="GENESIS txid of the token")
    p.add_argument("--from-txid", help="Refresh only from this transaction (default: the GENESIS)")
    p.add_argument("--out", default=settings.GRAPH_OUT_DIR, help="Output folder")
    p.add_argument("--workers", type=int, default=settings.GRAPH_MAX_WORKERS, help="Concurrent transaction workers")
    p.add_argument("--allow-burns", action="store_true", help="Record spends by invalid/non-token transactions as burns instead of failing")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return p


def _make_progress_reporter(cfg: GraphConfig):
    start_time = time.time()
    last_print = 0.0
    is_tty = sys.stdout.isatty()

    def _short(txid: str) -> str:
        if not txid:
            return ""
        if len(txid) <= 12:
            return txid
        return f"{txid[:6]}...{txid[-4:]}"

    def _ts() -> str:
        return dt.datetime.now().strftime("%H:%M:%S")

    def _print_line(message: str) -> None:
        if is_tty:
            sys.stdout.write("\r" + message.ljust(88))
            sys.stdout.flush()
        else:
            print(message)

    def _clear_line() -> None:
        if is_tty:
            sys.stdout.write("\r" + (" " * 88) + "\r")
            sys.stdout.flush()

    def progress(event: str, data: dict) -> None:
        nonlocal last_print
        now = time.time()
        if event == "start":
            print(f"[{_ts()}] Building graph for {_short(cfg.token_id)} from {_short(data['txid'])} "
                  f"• {data['workers']} worker(s)")
            return
        if event == "visit":
            if not is_tty and data["visited"] % 100 != 0:
                return
            if is_tty and now - last_print < 0.2:
                return
            msg = (
                f"Depth {data['depth']} • "
                f"queue {data['queue']} • "
                f"visited {data['visited']} • "
                f"tx {_short(data['txid'])}"
            )
            _print_line(msg)
            last_print = now
            return
        if event == "branch_error":
            _clear_line()
            print(f"[{_ts()}] Branch {_short(data['txid'])} failed: {data['message']}", file=sys.stderr)
            return
        if event == "done":
            _clear_line()
            elapsed = time.time() - start_time
            print(
                f"[{_ts()}] Done in {elapsed:.1f}s • "
                f"{data['nodes']} transactions • {data['unspent']} unspent token outputs"
            )
            return
        if event == "error":
            _clear_line()
            print(f"[{_ts()}] Error: {data.get('message', 'Unknown error')}", file=sys.stderr)

    return progress


def main() -> int:
    args = build_arg_parser().parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cfg = GraphConfig(
        token_id=args.token_id,
        max_workers=args.workers,
        allow_burns=args.allow_burns,
    )
    progress = _make_progress_reporter(cfg)

    # Ports
    node = RpcNodeAdapter()
    query = BitDbQueryAdapter()
    validator = TransactionValidator(node, SlpRestValidatorEngine)
    resolver = FallbackSpendResolver.default(node, query)

    try:
        builder = TokenGraphBuilder.for_token(cfg, validator, resolver, on_progress=progress)
    except TokenGraphError as exc:
        progress("error", {"message": f"{exc.__class__.__name__}: {exc}"})
        return 2

    status = 0
    try:
        builder.extend(args.from_txid)
    except KeyboardInterrupt:
        progress("error", {"message": "Interrupted, graph is incomplete"})
        return 130
    except TraversalAborted as exc:
        progress("error", {"message": str(exc)})
        return 1
    except TokenGraphError as exc:
        # the partial graph is still written, flagged "complete": false
        progress("error", {"message": f"{exc.__class__.__name__}: {exc}"})
        status = 1

    # Outputs
    stats = builder.compute_statistics()
    print("Writing outputs...")
    graph_path = write_graph_json(builder.graph, args.out, stats=stats)
    summary_path = write_summary_md(builder.graph, stats, args.out)
    print(f"Wrote: {graph_path}")
    print(f"Wrote: {summary_path}")
    return status


if __name__ == "__main__":
    raise SystemExit(main())
