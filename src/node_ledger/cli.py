"""
Node Ledger CLI

Commands:
  serve     - Run the metered inference server
  sync      - Run task sync, earnings sync and the stale sweep once
  sweep     - Fail local tasks stuck in running
  summary   - Show task statistics and reward totals
  rates     - Show the rate catalog
"""

import argparse
import asyncio
import json
import logging
import os
import sys

import structlog


def configure_logging(level: str = "INFO") -> None:
    """Send structured logs to stderr, keeping stdout for command output."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


def _load_state(args):
    from .api.server import AppState
    from .config import DeviceIdentity, NodeSettings

    settings = NodeSettings.from_env()
    if getattr(args, "database_url", None):
        settings.database_url = args.database_url
    return AppState(settings, DeviceIdentity.from_env())


def cmd_serve(args):
    """Run the metered inference server."""
    from .api.server import run
    from .config import NodeSettings

    port = args.port or NodeSettings.from_env().port
    print(f"Starting Node Ledger on {args.host}:{port}")
    run(host=args.host, port=port, reload=args.reload)


def cmd_sync(args):
    """Run every sync job once."""
    state = _load_state(args)
    try:
        if not state.device.can_sync():
            print("Device is not registered with a gateway; only the stale sweep will run.")
        results = asyncio.run(state.engine.run_once())
        for name, result in results.items():
            r = result.to_dict()
            if not r["ran"]:
                print(f"{name:<9} skipped")
                continue
            print(
                f"{name:<9} fetched={r['fetched']} created={r['created']} "
                f"updated={r['updated']} skipped={r['skipped']} errors={r['errors']}"
            )
            if r["error"]:
                print(f"          error: {r['error']}")
        if any(r.error for r in results.values()):
            sys.exit(1)
    finally:
        asyncio.run(state.close())


def cmd_sweep(args):
    """Fail local tasks stuck in running past the timeout."""
    state = _load_state(args)
    try:
        timeout = args.timeout if args.timeout is not None else state.settings.stale_task_timeout
        swept = state.tasks.sweep_stale(timeout)
        print(f"Swept {swept} stale task(s) older than {int(timeout)}s")
    finally:
        asyncio.run(state.close())


def cmd_summary(args):
    """Show task statistics and reward totals."""
    state = _load_state(args)
    try:
        device_id = state.device.device_id
        stats = state.tasks.statistics(device_id)
        earnings = state.earnings.summary(device_id)

        if args.json:
            print(json.dumps({"tasks": stats, "earnings": earnings}, indent=2))
            return

        print(f"Node Ledger Summary ({device_id})")
        print("=" * 40)
        print(f"Tasks: {stats['total']}")
        for status in ("pending", "running", "completed", "failed"):
            print(f"  {status:<10} {stats[status]}")
        print(f"Earnings: {earnings['count']}")
        print(f"  Job rewards:   {earnings['job_rewards']:.6f}")
        print(f"  Block rewards: {earnings['block_rewards']:.6f}")
        print(f"  Today:         {earnings['today']:.6f}")
        print(f"  This week:     {earnings['week']:.6f}")
        print(f"  This month:    {earnings['month']:.6f}")
    finally:
        asyncio.run(state.close())


def cmd_rates(args):
    """Show the rate catalog."""
    from .billing import RateCatalog

    catalog = RateCatalog()
    if args.json:
        print(json.dumps(catalog.to_dict(), indent=2))
        return

    print(f"{'family':<8} {'kind':<18} {'input':>8} {'output':>8} {'base':>8}")
    for family in catalog.families():
        for kind in catalog.kinds(family):
            rate = catalog.lookup(family, kind)
            print(f"{family:<8} {kind:<18} {rate.input:>8} {rate.output:>8} {rate.base:>8}")
    default = catalog.default_rate
    print(f"{'default':<27} {default.input:>8} {default.output:>8} {default.base:>8}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Node Ledger - Task & Earnings Ledger for Inference Nodes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")

    # sync
    sync_parser = subparsers.add_parser("sync", help="Run gateway sync once")
    sync_parser.add_argument("--database-url", help="Override DATABASE_URL")

    # sweep
    sweep_parser = subparsers.add_parser("sweep", help="Fail stale running tasks")
    sweep_parser.add_argument("--timeout", type=float, default=None, help="Stale timeout in seconds")
    sweep_parser.add_argument("--database-url", help="Override DATABASE_URL")

    # summary
    summary_parser = subparsers.add_parser("summary", help="Show ledger summary")
    summary_parser.add_argument("--json", action="store_true")
    summary_parser.add_argument("--database-url", help="Override DATABASE_URL")

    # rates
    rates_parser = subparsers.add_parser("rates", help="Show rate catalog")
    rates_parser.add_argument("--json", action="store_true")

    args = parser.parse_args(argv)
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"))

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "sync":
        cmd_sync(args)
    elif args.command == "sweep":
        cmd_sweep(args)
    elif args.command == "summary":
        cmd_summary(args)
    elif args.command == "rates":
        cmd_rates(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
