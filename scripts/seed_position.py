"""Seed a synthetic position in the local SQLite state."""

from __future__ import annotations

import argparse

from solders.pubkey import Pubkey

from solana_launch_sniper.config.settings import get_app_config
from solana_launch_sniper.datalake.schemas import Position
from solana_launch_sniper.datalake.storage import SQLiteStorage
from solana_launch_sniper.utils.constants import LAMPORTS_PER_SOL, utc_now


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed a synthetic position for dry-run testing.")
    parser.add_argument("mint", help="Token mint address")
    parser.add_argument("tokens", type=int, help="Token amount held, in base units")
    parser.add_argument("cost_sol", type=float, help="SOL spent on the entry")
    parser.add_argument(
        "--entry-price",
        type=float,
        default=None,
        help="Entry price in lamports per base unit (defaults to cost / tokens)",
    )
    parser.add_argument("--platform", default="letsbonk", help="Launch platform label")
    parser.add_argument(
        "--tier",
        type=int,
        choices=[1, 2],
        action="append",
        default=[],
        help="Mark a profit tier as already sold (repeatable)",
    )
    args = parser.parse_args()

    try:
        Pubkey.from_string(args.mint)
    except ValueError as exc:
        raise SystemExit(f"Invalid mint address {args.mint!r}") from exc
    if args.tokens <= 0:
        raise SystemExit("tokens must be positive")

    config = get_app_config()
    storage = SQLiteStorage(config.storage.database_path)
    entry_price = args.entry_price
    if entry_price is None:
        entry_price = args.cost_sol * LAMPORTS_PER_SOL / args.tokens

    position = Position(
        mint=args.mint,
        entry_price=entry_price,
        entry_amount=args.tokens,
        remaining_amount=args.tokens,
        cost_basis_sol=args.cost_sol,
        entry_time=utc_now(),
        platform=args.platform,
        tier1_sold=1 in args.tier,
        tier2_sold=2 in args.tier,
    )
    storage.upsert_position(position)
    tiers = ", ".join(f"tier{tier}" for tier in sorted(set(args.tier))) or "none"
    print(
        f"Seeded position for {args.mint}: {args.tokens} units at {entry_price:.4f} lamports/unit"
        f" (sold tiers: {tiers}) into {storage.path}"
    )


if __name__ == "__main__":
    main()
