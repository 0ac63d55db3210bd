"""Command-line interface for the borrow optimizer."""
from __future__ import annotations

import argparse
import asyncio
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path

from .config import AppConfig, load_config
from .engine import Engine, build_engine
from .logging_setup import configure_logging
from .models import ENTRY_KIND_EXACT_PROPORTION_1, EntryData
from .state_store import apply_snapshot, load_state, save_state, take_snapshot


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse CLI parser."""
    parser = argparse.ArgumentParser(
        prog="borrow-optimizer",
        description="Multi-venue borrowing optimizer and keeper",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: config.yaml in project root)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    sub = parser.add_subparsers(dest="command")

    quote_parser = sub.add_parser("quote", help="Rank venues for a conversion")
    quote_parser.add_argument("collateral", help="Collateral asset symbol")
    quote_parser.add_argument("amount", help="Amount, in whole tokens (e.g. 1.5)")
    quote_parser.add_argument("borrow", help="Asset to borrow")
    quote_parser.add_argument(
        "--blocks",
        type=int,
        default=None,
        help="Period in blocks (default: one day of blocks)",
    )
    quote_parser.add_argument(
        "--kind",
        type=int,
        default=0,
        choices=[0, 1, 2],
        help="0: all collateral, 1: proportion, 2: amount is the borrow amount",
    )
    quote_parser.add_argument(
        "--proportion",
        nargs=2,
        type=int,
        default=(1, 1),
        metavar=("X", "Y"),
        help="Kept:borrowed USD proportion for --kind 1",
    )

    keeper_parser = sub.add_parser("keeper", help="Run the keeper loop")
    keeper_parser.add_argument(
        "interval",
        nargs="?",
        type=int,
        default=None,
        help="Run interval in minutes (overrides config)",
    )
    keeper_parser.add_argument(
        "--once", action="store_true", help="Run a single keeper pass and exit"
    )

    sub.add_parser("status", help="Show risk configuration and venues")

    return parser


def to_native_amount(amount: str, decimals: int) -> int:
    try:
        value = Decimal(amount)
    except InvalidOperation:
        raise ValueError(f"Invalid amount '{amount}'") from None
    if value <= 0:
        raise ValueError("Amount must be positive")
    return int(value * 10**decimals)


def format_amount(amount: int, decimals: int) -> str:
    return f"{Decimal(amount) / Decimal(10**decimals):f}"


def format_apr(apr18: int) -> str:
    return f"{Decimal(apr18) / Decimal(10**16):.4f}%"


async def _quote(engine: Engine, config: AppConfig, args: argparse.Namespace) -> None:
    collateral = config.assets[args.collateral]
    borrow = config.assets[args.borrow]
    amount_decimals = borrow.decimals if args.kind == 2 else collateral.decimals
    amount = to_native_amount(args.amount, amount_decimals)
    blocks = args.blocks or config.risk.blocks_per_day
    entry = EntryData(kind=args.kind)
    if args.kind == ENTRY_KIND_EXACT_PROPORTION_1:
        entry = EntryData(kind=args.kind, part_x=args.proportion[0], part_y=args.proportion[1])

    strategies = await engine.converter.find_borrow_strategies(
        entry, collateral.address, amount, borrow.address, blocks
    )
    if not len(strategies):
        print(f"No venue can convert {args.collateral} to {args.borrow}")
        return

    names = {venue.converter: name for name, venue in engine.venues.items()}
    print(f"{args.collateral} -> {args.borrow} over {blocks} blocks")
    for rank, (converter, collateral_out, borrow_out, apr18) in enumerate(
        zip(
            strategies.converters,
            strategies.collateral_amounts_out,
            strategies.amount_to_borrows_out,
            strategies.aprs18,
        ),
        start=1,
    ):
        print(
            f"{rank}. {names.get(converter, converter)}: "
            f"collateral {format_amount(collateral_out, collateral.decimals)} {args.collateral}, "
            f"borrow {format_amount(borrow_out, borrow.decimals)} {args.borrow}, "
            f"apr {format_apr(apr18)}"
        )


def _status(engine: Engine) -> None:
    risk = engine.controller.risk
    print("Risk configuration")
    print(f"  min health factor:    {risk.min_health_factor2 / 100:.2f}")
    print(f"  target health factor: {risk.target_health_factor2 / 100:.2f}")
    print(f"  max health factor:    {risk.max_health_factor2 / 100:.2f}")
    print(f"  threshold apr:        {risk.threshold_apr}%")
    print(f"  threshold blocks:     {risk.threshold_count_blocks}")
    print("Venues")
    for name, venue in engine.venues.items():
        state = "frozen" if engine.borrow_manager.is_frozen(venue) else "active"
        if venue.paused:
            state = "paused"
        print(f"  {name} ({venue.address}): {state}")
    print(f"Open positions: {engine.debt_monitor.get_count_positions()}")


async def _keeper(engine: Engine, config: AppConfig, args: argparse.Namespace) -> None:
    state_file = Path(config.state_file) if config.state_file else None
    if state_file is not None and state_file.exists():
        await apply_snapshot(
            load_state(state_file),
            engine.controller,
            engine.borrow_manager,
            engine.debt_monitor,
            engine.keeper,
        )

    try:
        if args.once:
            await engine.keeper.run_once()
        else:
            await engine.keeper.run_continuous(args.interval)
    finally:
        if state_file is not None:
            save_state(
                state_file,
                take_snapshot(
                    engine.controller, engine.borrow_manager, engine.debt_monitor, engine.keeper
                ),
            )


async def _run(args: argparse.Namespace) -> None:
    """Execute the selected command."""
    configure_logging(args.log_level)
    config = load_config(args.config)
    engine = build_engine(config)

    if args.command == "quote":
        await _quote(engine, config, args)
    elif args.command == "keeper":
        await _keeper(engine, config, args)
    elif args.command == "status":
        _status(engine)
    else:
        build_parser().print_help()
        sys.exit(1)


def main() -> None:
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    asyncio.run(_run(args))
