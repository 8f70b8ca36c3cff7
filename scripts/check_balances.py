#!/usr/bin/env python3
"""
Show the funding wallet balance and a sample of bot wallet balances.

Usage:
    python check_balances.py [--sample N]

Reads the same environment as the harness (NETWORK, RPC_URL,
FUNDING_PRIVATE_KEY, WALLETS_FILE).
"""

import argparse
import asyncio
import sys

from safevote_bots.config import Settings
from safevote_bots.errors import HarnessError
from safevote_bots.wallet_manager import WalletManager


async def check_balances(settings: Settings, sample: int) -> int:
    manager = WalletManager(settings)
    await manager.initialize()
    network = settings.network

    funding = await manager.check_balance(manager.funding_account.address)
    print(f"\n🌐 Network: {network.name} (chain {network.chain_id})")
    print(f"💰 Funding wallet {manager.funding_account.address}: {funding} {network.symbol}")

    pool = manager.load()
    if pool is None:
        print(f"\n⚠️  No identity file at {settings.WALLETS_FILE}")
        return 0

    counts = pool.counts()
    print(f"\n👥 Identities: {counts.creators} creators, {counts.eligible} eligible, "
          f"{counts.ineligible} ineligible ({len(pool.unfunded())} unfunded)")

    balances = await manager.check_all_balances(pool, sample=sample)
    for role, entries in balances.items():
        print(f"\n{role}:")
        for address, balance in entries:
            print(f"   {address}: {balance} {network.symbol}")
    return 0


def main():
    parser = argparse.ArgumentParser(description='Check SafeVote bot wallet balances')
    parser.add_argument(
        '--sample',
        type=int,
        default=5,
        help='Wallets to show per role (default: 5)'
    )
    args = parser.parse_args()

    try:
        return asyncio.run(check_balances(Settings(), args.sample))
    except HarnessError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
