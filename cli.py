#!/usr/bin/env python3
"""
Rate History CLI
Scrape live rates, harvest historical rates from the Wayback Machine,
and validate or preview per-lender history files.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from pipelines import historical, live, validate
from ratehistory.builder import preview_history
from ratehistory.config import Settings
from ratehistory.logs import setup as setup_logs
from ratehistory.providers import load_providers
from ratehistory.store import HistoryStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rate-history",
        description="Append-only mortgage rate history with Wayback Machine backfill."
    )
    parser.add_argument("--data-dir", type=Path, help="Directory of current rates files")
    parser.add_argument("--health", type=Path, help="Where to write the run health JSON")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ...")
    sub = parser.add_subparsers(dest="cmd", required=True)

    # ───────────────────────── LIVE SCRAPE ─────────────────────────
    ps = sub.add_parser("scrape", help="Scrape current rates and record changes")
    ps.add_argument("lenders", nargs="*", help="Lender ids (default: all)")
    ps.add_argument("--providers", required=True, help="Provider registry as module:ATTR")

    # ───────────────────────── HISTORICAL ─────────────────────────
    ph = sub.add_parser("historical", help="Harvest archived rates for one lender")
    ph.add_argument("lender")
    ph.add_argument("--providers", required=True, help="Provider registry as module:ATTR")
    ph.add_argument("--from", dest="from_date", help="Start date, YYYY-MM-DD")
    ph.add_argument("--to", dest="to_date", help="End date, YYYY-MM-DD")
    ph.add_argument("--max", dest="max_snapshots", type=int, help="Maximum snapshots per URL")
    ph.add_argument("--dry-run", action="store_true", help="List snapshots without fetching")
    ph.add_argument("--build", action="store_true", help="Build and save the history file")
    ph.add_argument("--merge", action="store_true", help="Merge with existing history (with --build)")

    # ───────────────────────── VALIDATE ─────────────────────────
    pv = sub.add_parser("validate", help="Check history files against current rates")
    pv.add_argument("lenders", nargs="*", help="Lender ids (default: all found)")
    pv.add_argument("--providers", help="Provider registry as module:ATTR, for discontinued flags")
    pv.add_argument("--discontinued", nargs="+", default=[], metavar="LENDER",
                    help="Lenders that are retired: history only, no rates file")

    # ───────────────────────── PREVIEW ─────────────────────────
    pp = sub.add_parser("preview", help="Summarize a lender's history file")
    pp.add_argument("lender")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = Settings.from_env().override(
            data_dir=args.data_dir,
            health_path=args.health,
            log_level=args.log_level,
        )
    except ValidationError as e:
        parser.error(f"invalid configuration: {e}")
    log = setup_logs(level=getattr(logging, settings.log_level, logging.INFO), pipeline=args.cmd)

    # ───────────────────────── DISPATCH COMMANDS ─────────────────────────
    if args.cmd == "scrape":
        providers = load_providers(args.providers)
        outcomes = asyncio.run(live.run_all(providers, settings, args.lenders))
        return 1 if any(v is not None for v in outcomes.values()) else 0

    if args.cmd == "historical":
        providers = load_providers(args.providers)
        provider = providers.get(args.lender)
        if provider is None:
            log.error(f"Unknown lender: {args.lender}. Available: {', '.join(sorted(providers))}")
            return 2
        if not provider.supports_historical():
            log.error(f"Provider {args.lender} does not support historical scraping")
            return 2

        options = historical.HistoricalScrapeOptions(
            from_date=args.from_date,
            to_date=args.to_date,
            max_snapshots=args.max_snapshots,
            dry_run=args.dry_run,
        )
        report, _ = asyncio.run(
            historical.run(provider, settings, options, build=args.build, merge=args.merge)
        )
        return 1 if report.merge_error else 0

    if args.cmd == "validate":
        discontinued = set(args.discontinued)
        if args.providers:
            providers = load_providers(args.providers)
            discontinued |= {lid for lid, p in providers.items() if p.discontinued}
        results = validate.run(settings, args.lenders, discontinued)
        return 0 if all(r.success for r in results) else 1

    if args.cmd == "preview":
        history = HistoryStore(settings.history_dir).load(args.lender)
        if history is None:
            print(f"No history file for {args.lender}")
            return 2
        print("\n".join(preview_history(history)))
        return 0

    parser.print_help()
    return 2


if __name__ == "__main__":
    sys.exit(main())
