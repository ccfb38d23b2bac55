import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from .common.config import get_settings
from .common.logging_setup import setup_logging
from services.chains import CHAIN_CONFIGS, parse_chains
from services.errors import ConfigurationError
from services.historical.orchestrator import build_service
from services.timeframes import Timeframe


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _history(args: argparse.Namespace) -> None:
    chains = [c.strip() for c in args.chains.split(",") if c.strip()] if args.chains else None
    service = build_service(get_settings())
    try:
        result = await service.get_historical_portfolio(
            args.wallet,
            args.timeframe,
            chains=chains,
            skip_cache=args.skip_cache,
            request_id=args.request_id,
            current_value=args.current_value,
        )
    finally:
        await service.close()
    _print_json(result.to_dict())


async def _progress(args: argparse.Namespace) -> None:
    service = build_service(get_settings())
    try:
        record = await service.get_progress(args.request_id)
    finally:
        await service.close()
    _print_json(record.to_dict() if record else None)


def cmd_history(args: argparse.Namespace) -> None:
    setup_logging()
    logging.info(f"reconstructing {args.timeframe} history for {args.wallet}")
    asyncio.run(_history(args))


def cmd_progress(args: argparse.Namespace) -> None:
    setup_logging()
    asyncio.run(_progress(args))


def cmd_chains(_: argparse.Namespace) -> None:
    settings = get_settings()
    setup_logging()
    rows = []
    for chain in parse_chains(None):
        config = CHAIN_CONFIGS[chain]
        tiers = []
        if settings.enable_event_replay and settings.envio_api_token and config.hypersync_url \
                and settings.covalent_api_key:
            tiers.append("event_replay")
        if settings.covalent_api_key and config.goldrush_name:
            tiers.append("snapshot")
        if config.allow_list:
            tiers.append("chain_source")
        rows.append({
            "chain": chain.value,
            "chain_id": config.chain_id,
            "native_symbol": config.native_symbol,
            "allow_listed_tokens": len(config.allow_list),
            "tiers": tiers,
        })
    _print_json(rows)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser("portfolio-history")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_hist = sub.add_parser("history")
    p_hist.add_argument("wallet")
    p_hist.add_argument("--timeframe", default=Timeframe.WEEK.value,
                        choices=[t.value for t in Timeframe])
    p_hist.add_argument("--chains", help="comma-separated chain names or ids")
    p_hist.add_argument("--current-value", type=float)
    p_hist.add_argument("--skip-cache", action="store_true")
    p_hist.add_argument("--request-id")
    p_hist.set_defaults(func=cmd_history)

    p_prog = sub.add_parser("progress")
    p_prog.add_argument("request_id")
    p_prog.set_defaults(func=cmd_progress)

    sub.add_parser("chains").set_defaults(func=cmd_chains)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        args.func(args)
    except ConfigurationError as e:
        logging.error(f"configuration error: {e}")
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
