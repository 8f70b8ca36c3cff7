#!/usr/bin/env python3
"""
Verify elections and vote tallies directly on the SafeVoteV2 contract.

Usage:
    python verify_onchain.py                      # summary of every election
    python verify_onchain.py --election 3         # details and results for one election
    python verify_onchain.py --uuid elec-1234     # resolve the on-chain id via the backend
    python verify_onchain.py --report reports/run_20250101_120000.json
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime
from typing import List, Optional

from safevote_bots.api_client import APIClient
from safevote_bots.blockchain import BlockchainService
from safevote_bots.config import Settings
from safevote_bots.errors import HarnessError


async def show_election(chain: BlockchainService, on_chain_id: int, with_results: bool = True) -> None:
    election = await chain.get_election(on_chain_id)
    start = datetime.fromtimestamp(election['start_time'])
    end = datetime.fromtimestamp(election['end_time'])
    print(f"\n🗳️  Election {on_chain_id}: {election['title']}")
    print(f"   Creator: {election['creator']}")
    print(f"   Window: {start:%Y-%m-%d %H:%M} -> {end:%Y-%m-%d %H:%M}")
    print(f"   Votes: {election['total_votes_cast']}/{election['total_registered_voters']}")
    print(f"   Merkle root: {election['voter_merkle_root']}")

    if not with_results:
        return
    for index, position in enumerate(election['positions']):
        results = await chain.get_election_results(on_chain_id, index)
        print(f"   📈 {position.title}:")
        for candidate, votes in results.as_dict().items():
            print(f"      - {candidate}: {votes}")


async def resolve_uuid(settings: Settings, chain: BlockchainService, election_uuid: str) -> Optional[int]:
    """On-chain id the backend holds for `election_uuid`, or None if it is out of range."""
    async with APIClient(settings) as api:
        on_chain_id = await api.get_onchain_id(election_uuid)
    total = await chain.get_total_elections()
    print(f"Backend says {election_uuid} is on-chain id {on_chain_id} (contract holds {total})")
    if not 1 <= on_chain_id <= total:
        print(f"❌ On-chain id out of range 1-{total}: the election was not deployed")
        return None
    return on_chain_id


async def verify(settings: Settings, args: argparse.Namespace) -> int:
    chain = BlockchainService(settings)
    await chain.initialize()
    info = chain.get_network_info()
    print(f"🌐 {info['name']} (chain {info['chain_id']}), block {await chain.get_block_number()}")

    election_id = args.election
    if args.uuid:
        election_id = await resolve_uuid(settings, chain, args.uuid)
        if election_id is None:
            return 1

    if election_id is not None:
        await show_election(chain, election_id)
        return 0

    if args.report:
        with open(args.report) as f:
            report = json.load(f)
        ids: List[int] = [e['onChainId'] for e in report.get('elections', []) if e.get('onChainId') is not None]
        print(f"Verifying {len(ids)} elections from {args.report}")
    else:
        total = await chain.get_total_elections()
        print(f"Total elections on contract: {total}")
        ids = list(range(1, total + 1))

    for on_chain_id in ids:
        await show_election(chain, on_chain_id, with_results=False)
    return 0


def main():
    parser = argparse.ArgumentParser(description='Verify SafeVote elections on-chain')
    target = parser.add_mutually_exclusive_group()
    target.add_argument(
        '--election',
        type=int,
        default=None,
        help='On-chain election id to inspect in detail'
    )
    target.add_argument(
        '--uuid',
        type=str,
        default=None,
        help='Backend election UUID to resolve and inspect'
    )
    target.add_argument(
        '--report',
        type=str,
        default=None,
        help='Run report JSON whose elections should be verified'
    )
    args = parser.parse_args()

    try:
        return asyncio.run(verify(Settings(), args))
    except HarnessError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
