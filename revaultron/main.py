from __future__ import annotations

import argparse
import json
import logging
from dataclasses import replace
from typing import Sequence

from revaultron.config import AppSettings, load_settings
from revaultron.errors import RevaultronError
from revaultron.logging_setup import configure_logging
from revaultron.services.hermes import HermesClient
from revaultron.simulation import run_simulation
from revaultron.units import bps_to_percent, format_tinybars
from revaultron.volatility_index import normalize_price

LOGGER = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="revaultron",
        description="Volatility-gated vault rebalancing",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Override REVAULT_LOG_LEVEL",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    simulate = sub.add_parser(
        "simulate",
        help="Run one rebalance against an in-memory deployment",
    )
    simulate.add_argument(
        "--volatility-bps",
        type=int,
        default=None,
        help="Volatility figure published to the index",
    )
    simulate.add_argument(
        "--target-hbar-bps",
        type=int,
        default=None,
        help="Target native-currency allocation in basis points",
    )
    simulate.add_argument(
        "--history-db",
        type=str,
        default=None,
        help="Persist rebalance history to this SQLite file",
    )
    simulate.add_argument(
        "--json",
        action="store_true",
        help="Print the summary as JSON",
    )

    price = sub.add_parser(
        "hermes-price",
        help="Fetch the latest price update for a feed from Hermes",
    )
    price.add_argument(
        "--feed",
        type=str,
        default=None,
        help="Price feed id (default: REVAULT_PRICE_FEED_ID or HBAR/USD)",
    )
    return parser.parse_args(argv)


def _apply_overrides(settings: AppSettings, args: argparse.Namespace) -> AppSettings:
    sim = settings.simulation
    if getattr(args, "volatility_bps", None) is not None:
        sim = replace(sim, volatility_bps=args.volatility_bps)
    if getattr(args, "target_hbar_bps", None) is not None:
        sim = replace(sim, target_hbar_bps=args.target_hbar_bps)
    if getattr(args, "history_db", None):
        sim = replace(sim, history_db_path=args.history_db)
    settings = replace(settings, simulation=sim)
    if args.log_level:
        settings = replace(settings, log_level=args.log_level)
    return settings


def _simulate(settings: AppSettings, as_json: bool) -> int:
    summary = run_simulation(settings)
    if as_json:
        print(json.dumps(summary.to_dict(), indent=2, sort_keys=True))
        return 0
    print(f"vault               {summary.vault}")
    print(f"volatility          {bps_to_percent(summary.volatility_bps)}")
    print(f"drift               {bps_to_percent(summary.drift_bps)} (rebalance needed: {summary.needed})")
    print(f"native balance      {format_tinybars(summary.native_before)} -> {format_tinybars(summary.native_after)}")
    print(f"quote balance       {summary.quote_before} -> {summary.quote_after}")
    print(
        "native allocation   "
        f"{bps_to_percent(summary.native_allocation_before_bps)} -> "
        f"{bps_to_percent(summary.native_allocation_after_bps)}"
    )
    if summary.record is not None:
        print(f"sold                {summary.record.amount_sold} of {summary.record.asset_sold}")
        print(f"bought              {summary.record.amount_bought} of {summary.record.asset_bought}")
    return 0


def _hermes_price(settings: AppSettings, feed: str | None) -> int:
    feed_id = feed or settings.hermes.default_feed
    with HermesClient(settings.hermes) as client:
        bundle = client.latest_price_updates([feed_id])
    for feed_key, quote in sorted(bundle.quotes.items()):
        print(
            f"{feed_key} price={quote.price} conf={quote.conf} expo={quote.expo} "
            f"publish_time={quote.publish_time} normalized={normalize_price(max(quote.price, 0), quote.expo)}"
        )
    print(f"payloads: {len(bundle.payloads)} ({sum(len(p) for p in bundle.payloads)} bytes)")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    settings = _apply_overrides(load_settings(), args)
    configure_logging(settings.log_level)

    try:
        if args.command == "simulate":
            return _simulate(settings, args.json)
        if args.command == "hermes-price":
            return _hermes_price(settings, args.feed)
    except RevaultronError as exc:
        LOGGER.error("%s failed: %s", args.command, exc)
        print(json.dumps(exc.to_dict(), sort_keys=True, default=str))
        return 1
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
