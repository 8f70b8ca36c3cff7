"""Election creator bot."""

import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional

from .. import metrics
from ..election_data import calculate_eligible_voters, generate_election, select_voter_set
from ..errors import HarnessError
from ..models import ElectionSpec, Role
from .base import BaseAgent

logger = logging.getLogger(__name__)


class ElectionCreatorAgent(BaseAgent):
    """
    Creates one synthetic election per call.

    Steps: generate content, pick the registered voter set, register the
    election, generate voter keys (Merkle root), deploy on-chain, then sync
    the deployment back to the key service. Any failure ends the attempt;
    elections are never retried automatically.
    """

    role = Role.CREATOR

    def __init__(self, identity, api, chain, settings, eligible_addresses: List[str], **kwargs):
        super().__init__(identity, api, chain, settings, **kwargs)
        self.eligible_addresses = list(eligible_addresses)
        self.elections: List[ElectionSpec] = []
        self.failures: List[Dict[str, Any]] = []
        self.total_gas_used = 0

    def select_voters(self) -> List[str]:
        count = calculate_eligible_voters(
            self.settings.total_voters,
            self.settings.ELIGIBLE_VOTER_PERCENTAGE,
            len(self.eligible_addresses),
        )
        return select_voter_set(self.eligible_addresses, count, self.rng)

    async def create_election(self) -> Optional[ElectionSpec]:
        """Run the creation workflow. Returns the deployed election, or None on failure."""
        spec = generate_election(self.index, self.clock(), self.rng)
        spec = replace(spec, creator=self.address)
        step = 'generate'

        try:
            logger.info(f"Creator #{self.index} creating election {spec.uuid}: {spec.title}")
            logger.info(f"  Positions: {len(spec.positions)}, "
                        f"duration: {(spec.end_time - spec.start_time) // 86400} days")

            step = 'select_voters'
            voters = self.select_voters()
            if not voters:
                raise HarnessError("No eligible voter identities to register")
            spec = replace(spec, total_voters=len(voters))
            logger.info(f"  Registered voters: {len(voters)}")

            step = 'register'
            await self.api.create_election(spec, voters)

            step = 'generate_keys'
            keys = await self.api.generate_voter_keys(spec.uuid, voters)
            spec = replace(spec, merkle_root=keys.merkle_root)
            logger.info(f"  Keys generated: {keys.total_keys}, Merkle root {keys.merkle_root[:20]}...")

            step = 'deploy'
            receipt = await self.chain.create_election(self.account, spec)
            spec = replace(
                spec,
                on_chain_id=receipt.on_chain_id,
                tx_hash=receipt.tx_hash,
                block_number=receipt.block_number,
                gas_used=receipt.gas_used,
            )

            step = 'sync'
            await self.api.sync_chain_deployment(
                spec.uuid, self.chain.chain_id, receipt.on_chain_id, receipt.tx_hash
            )

        except HarnessError as e:
            logger.error(f"Creator #{self.index} failed at step '{step}' for {spec.uuid}: {e}")
            self.failures.append({'election_uuid': spec.uuid, 'step': step, 'error': str(e)})
            metrics.elections_created.labels(status='failed').inc()
            return None

        self.elections.append(spec)
        self.total_gas_used += spec.gas_used
        metrics.elections_created.labels(status='success').inc()
        logger.info(f"Creator #{self.index} deployed {spec.uuid} as on-chain id {spec.on_chain_id}")
        return spec

    def get_stats(self) -> Dict[str, Any]:
        return {
            'bot_index': self.index,
            'address': self.address,
            'elections_created': len(self.elections),
            'elections_failed': len(self.failures),
            'total_gas_used': self.total_gas_used,
        }
