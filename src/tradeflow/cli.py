"""CLI entry point for tradeflow.

Provides commands for operating the workflow:
  - serve: Run the HTTP service
  - migrate: Run database migrations
  - start / retry / cancel: Drive a run through the coordinator
  - status: Show a run's phase, steps and decision
  - detect-stale: Reactivate runs that stopped making progress
  - simulate: Run a whole analysis in-process against an in-memory store
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable

from tradeflow.config import AppConfig, load_config
from tradeflow.invoker import LocalInvoker
from tradeflow.models.run import AnalysisRecord
from tradeflow.pipeline import Pipeline, build_pipeline
from tradeflow.registry.db import Database
from tradeflow.registry.memory import InMemoryRegistry
from tradeflow.registry.queries import Registry
from tradeflow.workflow import sequencer


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _print_json(data: dict) -> None:
    print(json.dumps(data, indent=2, default=str))


def _print_record(record: AnalysisRecord) -> None:
    print(f"Analysis {record.id}: {record.ticker} [{record.status}] phase={record.current_phase}")
    if record.error_reason:
        print(f"  Reason: {record.error_reason}")
    for step in record.workflow_steps:
        marker = f" (attempt {step.attempt})" if step.attempt else ""
        line = f"  {step.phase:9s} {step.agent:22s} {step.status}{marker}"
        if step.error:
            line += f"  !! {step.error_type}: {step.error[:80]}"
        print(line)
    complete = len(record.complete_rounds())
    if record.debate_rounds:
        print(f"  Debate: {complete} complete round(s) of {len(record.debate_rounds)} opened")
    if record.decision:
        print(f"  Decision: {record.decision} (confidence {record.confidence:.0f})")


def _run_with_pipeline(
    config: AppConfig,
    pipeline: Pipeline,
    action: Callable[[Pipeline], Awaitable[dict]],
) -> dict:
    """Run one coordinator action; with the local invoker, also run every agent it starts."""

    async def _run() -> dict:
        await pipeline.start()
        try:
            result = await action(pipeline)
            if isinstance(pipeline.invoker, LocalInvoker):
                per_agent = config.agent_timeout_seconds * (config.agent_max_retries + 1)
                timeout = per_agent * len(sequencer.all_agents())
                if not await pipeline.run_until_idle(timeout=timeout):
                    logging.warning("Pipeline still busy after %.0fs; giving up", timeout)
            return result
        finally:
            await pipeline.close()

    return asyncio.run(_run())


def _db_pipeline(config: AppConfig) -> tuple[Database, Pipeline]:
    db = Database(config.db_dsn)
    db.connect()
    return db, build_pipeline(config, Registry(db))


def cmd_serve(args: argparse.Namespace) -> None:
    """Run the HTTP service."""
    import uvicorn

    uvicorn.run("tradeflow.api.app:create_app", factory=True, host=args.host, port=args.port)


def cmd_migrate(args: argparse.Namespace) -> None:
    """Run database migrations."""
    config = load_config()
    with Database(config.db_dsn) as db:
        applied = db.run_migrations()
    print(f"Migrations complete ({len(applied)} applied).")


def cmd_start(args: argparse.Namespace) -> None:
    """Start an analysis for a ticker."""
    config = load_config()
    db, pipeline = _db_pipeline(config)
    settings = {"debate_rounds": args.rounds} if args.rounds else {}
    if args.provider:
        settings["ai_provider"] = args.provider
    try:
        result = _run_with_pipeline(
            config,
            pipeline,
            lambda p: p.coordinator.start_analysis(args.ticker, args.user, settings),
        )
    finally:
        db.close()
    _print_json(result)


def cmd_retry(args: argparse.Namespace) -> None:
    """Resume a failed (or stalled) analysis."""
    config = load_config()
    db, pipeline = _db_pipeline(config)
    action = "reactivate" if args.reactivate else "retry"
    try:
        result = _run_with_pipeline(
            config, pipeline, lambda p: p.coordinator.resume(args.analysis_id, None, action)
        )
    finally:
        db.close()
    _print_json(result)


def cmd_cancel(args: argparse.Namespace) -> None:
    """Cancel a running analysis."""
    config = load_config()
    with Database(config.db_dsn) as db:
        pipeline = build_pipeline(config, Registry(db))
        result = pipeline.coordinator.cancel(args.analysis_id)
    _print_json(result)


def cmd_status(args: argparse.Namespace) -> None:
    """Show a run's phase, steps and decision."""
    config = load_config()
    with Database(config.db_dsn) as db:
        record = Registry(db).get_run(args.analysis_id)
    if record is None:
        print(f"Analysis not found: {args.analysis_id}")
        sys.exit(1)
    if args.json:
        _print_json(record.to_dict())
    else:
        _print_record(record)


def cmd_detect_stale(args: argparse.Namespace) -> None:
    """Reactivate running analyses that have not been updated recently."""
    config = load_config()
    db, pipeline = _db_pipeline(config)
    try:
        report = _run_with_pipeline(
            config, pipeline, lambda p: _report(p.detector.detect_and_reactivate())
        )
    finally:
        db.close()
    _print_json(report)


async def _report(pending: Awaitable) -> dict:
    return (await pending).to_dict()


def cmd_simulate(args: argparse.Namespace) -> None:
    """Run one analysis end to end in this process."""
    config = load_config()
    store = InMemoryRegistry()
    pipeline = build_pipeline(config, store, invoker=LocalInvoker())
    settings = {"debate_rounds": args.rounds} if args.rounds else {}
    if args.provider:
        settings["ai_provider"] = args.provider

    result = _run_with_pipeline(
        config,
        pipeline,
        lambda p: p.coordinator.start_analysis(args.ticker, args.user, settings),
    )
    if not result.get("success"):
        _print_json(result)
        sys.exit(1)

    record = store.get_run(result["analysisId"])
    if args.json:
        _print_json(record.to_dict())
    else:
        _print_record(record)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="tradeflow",
        description="Multi-agent trading analysis workflow",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    subs = parser.add_subparsers(dest="command", required=True)

    # serve
    p_serve = subs.add_parser("serve", help="Run the HTTP service")
    p_serve.add_argument("--host", default="0.0.0.0", help="Bind address")
    p_serve.add_argument("--port", type=int, default=8000, help="Bind port")

    # migrate
    subs.add_parser("migrate", help="Run database migrations")

    # start / simulate
    for name, help_text in (
        ("start", "Start an analysis for a ticker"),
        ("simulate", "Run an analysis in-process with an in-memory store"),
    ):
        p = subs.add_parser(name, help=help_text)
        p.add_argument("ticker", type=str.upper, help="Ticker symbol")
        p.add_argument("--user", default="cli", help="User id that owns the run")
        p.add_argument("--rounds", type=int, default=None, help="Debate rounds for this run")
        p.add_argument("--provider", default=None, help="LLM provider for this run")
        if name == "simulate":
            p.add_argument("--json", action="store_true", help="Print the full record as JSON")

    # retry
    p_retry = subs.add_parser("retry", help="Resume a failed analysis")
    p_retry.add_argument("analysis_id", help="Analysis id")
    p_retry.add_argument(
        "--reactivate", action="store_true", help="Resume a running analysis that stalled"
    )

    # cancel
    p_cancel = subs.add_parser("cancel", help="Cancel an analysis")
    p_cancel.add_argument("analysis_id", help="Analysis id")

    # status
    p_status = subs.add_parser("status", help="Show an analysis")
    p_status.add_argument("analysis_id", help="Analysis id")
    p_status.add_argument("--json", action="store_true", help="Print the full record as JSON")

    # detect-stale
    subs.add_parser("detect-stale", help="Reactivate stalled running analyses")

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    commands = {
        "serve": cmd_serve,
        "migrate": cmd_migrate,
        "start": cmd_start,
        "retry": cmd_retry,
        "cancel": cmd_cancel,
        "status": cmd_status,
        "detect-stale": cmd_detect_stale,
        "simulate": cmd_simulate,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
