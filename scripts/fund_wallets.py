#!/usr/bin/env python3
"""
Generate and fund SafeVote bot wallets outside a harness run.

Usage:
    python fund_wallets.py --generate
    python fund_wallets.py --check-only
    python fund_wallets.py --fund-all
    python fund_wallets.py --fund-range 0-100

Reads the same environment as the harness (NETWORK, RPC_URL,
FUNDING_PRIVATE_KEY, WALLETS_FILE, ELECTION_BOTS, ELIGIBLE_VOTER_BOTS,
INELIGIBLE_VOTER_BOTS, BOT_WALLET_FUNDING).
"""

import argparse
import asyncio
import sys
from typing import Tuple

from web3 import Web3

from safevote_bots.config import Settings
from safevote_bots.errors import HarnessError
from safevote_bots.models import PopulationCounts
from safevote_bots.wallet_manager import WalletManager


def parse_range(value: str) -> Tuple[int, int]:
    """Parse 'START-END' into a half-open position range."""
    try:
        start, end = (int(part) for part in value.split('-', 1))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected START-END, got {value!r}")
    if start < 0 or end < start:
        raise argparse.ArgumentTypeError(f"invalid range {value!r}")
    return start, end


def generate_wallets(settings: Settings) -> int:
    manager = WalletManager(settings)
    counts = PopulationCounts(settings.ELECTION_BOTS, settings.ELIGIBLE_VOTER_BOTS,
                              settings.INELIGIBLE_VOTER_BOTS)
    pool = manager.generate(counts, manager.load())
    manager.persist(pool)

    print(f"\n✅ {len(pool)} identities saved to {settings.WALLETS_FILE}")
    print(f"   Creators: {len(pool.creators)}")
    print(f"   Eligible voters: {len(pool.eligible)}")
    print(f"   Ineligible voters: {len(pool.ineligible)}")
    return 0


async def check_funding_needs(settings: Settings) -> int:
    manager = WalletManager(settings)
    await manager.initialize()
    pool = manager.load()
    if pool is None:
        print(f"\n⚠️  No identity file at {settings.WALLETS_FILE}, run with --generate first")
        return 1

    need_funding = 0
    for identity in pool:
        if await manager.check_balance(identity.address) == 0:
            need_funding += 1

    symbol = settings.network.symbol
    required = manager.required_funds(pool, Web3.to_wei(settings.BOT_WALLET_FUNDING, 'ether'))
    print("\n" + "-" * 60)
    print(f"  Need funding (zero balance): {need_funding}")
    print(f"  Already funded: {len(pool) - need_funding}")
    print(f"  Not marked funded: {len(pool.unfunded())}")
    print(f"  Total: {len(pool)}")
    print(f"  Required to fund unmarked wallets: {Web3.from_wei(required, 'ether')} {symbol}")
    print("-" * 60)
    return 0


async def fund_wallets(settings: Settings, position_range=None) -> int:
    manager = WalletManager(settings)
    await manager.initialize()
    pool = manager.load()
    if pool is None:
        print(f"\n⚠️  No identity file at {settings.WALLETS_FILE}, run with --generate first")
        return 1

    identities = None
    if position_range is not None:
        identities = pool.select_range(*position_range)
        print(f"\n🎯 Funding identities {position_range[0]}-{position_range[1]} ({len(identities)} selected)")

    symbol = settings.network.symbol
    balance = await manager.check_balance(manager.funding_account.address)
    print(f"\n💰 Funding wallet {manager.funding_account.address}: {balance} {symbol}")

    report = await manager.fund(pool, identities=identities)

    print("\n📊 Results:")
    print(f"   Successful: {report.successful}")
    print(f"   Skipped: {report.skipped}")
    print(f"   Failed: {report.failed}")
    print(f"   Total: {report.total}")

    if report.failed:
        print("\n⚠️  Some wallets failed to fund. Check logs for details.")
        return 1
    print("\n✅ All selected wallets funded")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description='SafeVote wallet funding utility',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create (or top up) the identity file
  python fund_wallets.py --generate

  # Fund the first 100 identities
  python fund_wallets.py --fund-range 0-100
        """
    )
    action = parser.add_mutually_exclusive_group(required=True)
    action.add_argument('--generate', action='store_true', help='Generate missing wallets')
    action.add_argument('--fund-all', action='store_true', help='Fund every unfunded wallet')
    action.add_argument('--fund-range', type=parse_range, metavar='START-END',
                        help='Fund wallets at positions START to END (END excluded)')
    action.add_argument('--check-only', action='store_true', help='Only report which wallets need funding')
    args = parser.parse_args()

    settings = Settings()
    try:
        if args.generate:
            return generate_wallets(settings)
        if args.check_only:
            return asyncio.run(check_funding_needs(settings))
        return asyncio.run(fund_wallets(settings, args.fund_range))
    except HarnessError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
