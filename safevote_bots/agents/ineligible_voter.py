"""
Ineligible voter bot (security probe).

Success is inverted here: the bot is expected to be refused. A returned
voter key or an accepted vote is a CRITICAL probe and is recorded at once,
never retried away.
"""

import logging
import secrets
from typing import Any, Dict, List, Optional

from .. import metrics
from ..api_client import VoterLookup, VoterLookupStatus
from ..errors import ChainError, ChainTimeout, ErrorKind, RunCancelled, ServiceError
from ..models import ElectionSpec, ProbeResult, Role, SecurityProbe, Severity
from ..retry import RetryPolicy
from .base import BaseAgent

logger = logging.getLogger(__name__)


class IneligibleVoterAgent(BaseAgent):
    """Checks that an unregistered identity cannot obtain voting data or vote."""

    role = Role.INELIGIBLE_VOTER

    def __init__(self, identity, api, chain, settings, **kwargs):
        super().__init__(identity, api, chain, settings, **kwargs)
        self.retry_policy = RetryPolicy.from_settings(settings)
        self.probes: List[SecurityProbe] = []
        # election uuid -> hashes of fabricated votes whose confirmation timed out
        self._timed_out: Dict[str, List[str]] = {}

    async def attempt_vote(self, election: ElectionSpec) -> SecurityProbe:
        """Probe `election` and return the final SecurityProbe."""
        logger.info(f"Security test: ineligible #{self.index} against {election.uuid} (expected: rejected)")
        probe: Optional[SecurityProbe] = None

        for attempt_index in range(self.retry_policy.max_attempts):
            probe = await self._probe_once(election, attempt_index + 1)
            if probe.actual is not ProbeResult.UNEXPECTED_ERROR:
                break
            accepted = await self._check_timed_out_votes(election, probe.attempts)
            if accepted is not None:
                probe = accepted
                break
            if not self.retry_policy.should_retry(attempt_index):
                break

            delay = self.retry_delay()
            logger.warning(f"Ineligible #{self.index}: unexpected error on {election.uuid}, "
                           f"retrying in {delay:.0f}s to confirm it is blocked: {probe.error}")
            try:
                await self.cancel_token.sleep(delay)
            except RunCancelled:
                break

        if probe.severity is not Severity.CRITICAL:
            probe = await self._check_timed_out_votes(election, probe.attempts) or probe
        self._record(probe)
        return probe

    async def _probe_once(self, election: ElectionSpec, attempts: int) -> SecurityProbe:
        try:
            lookup = await self.api.get_voter_data(election.uuid, self.address)
        except ServiceError as e:
            if e.retryable:
                return self._probe(election, ProbeResult.UNEXPECTED_ERROR, Severity.WARNING, attempts, str(e))
            # A definitive 4xx refusal is the expected outcome
            return self._probe(election, ProbeResult.REJECTED_API_ERROR, Severity.NONE, attempts, str(e))

        if lookup.status is VoterLookupStatus.NOT_ELIGIBLE:
            result = ProbeResult.REJECTED_NOT_REGISTERED
        elif lookup.status is VoterLookupStatus.ALREADY_VOTED:
            result = ProbeResult.REJECTED_ALREADY_VOTED
        else:
            return self._breach(election, attempts, lookup)

        if self.settings.PROBE_ONCHAIN_VOTE:
            return await self._probe_chain(election, attempts)
        return self._probe(election, result, Severity.NONE, attempts)

    def _breach(self, election: ElectionSpec, attempts: int, lookup: VoterLookup) -> SecurityProbe:
        logger.critical(
            f"SECURITY BREACH: ineligible voter {self.address} received voting data for {election.uuid} "
            f"(key {str(lookup.voter_key)[:10]}..., proof {len(lookup.merkle_proof)} hashes)"
        )
        return self._probe(election, ProbeResult.DATA_EXPOSED, Severity.CRITICAL, attempts,
                           "Ineligible voter gained access to voting keys")

    async def _probe_chain(self, election: ElectionSpec, attempts: int) -> SecurityProbe:
        """Submit a vote with a fabricated key and proof; the contract must revert it."""
        on_chain_id = election.on_chain_id
        try:
            if on_chain_id is None:
                on_chain_id = await self.api.get_onchain_id(election.uuid)
            fake_key = '0x' + secrets.token_hex(32)
            fake_proof = ['0x' + secrets.token_hex(32)]
            selections = [[0] for _ in election.positions] or [[0]]
            receipt = await self.chain.cast_vote(self.account, on_chain_id, fake_key, fake_proof, selections)
        except ChainTimeout as e:
            if e.tx_hash:
                self._timed_out.setdefault(election.uuid, []).append(e.tx_hash)
            return self._probe(election, ProbeResult.UNEXPECTED_ERROR, Severity.WARNING, attempts, str(e))
        except ChainError as e:
            if e.kind is ErrorKind.REVERTED:
                logger.info(f"Ineligible #{self.index}: fabricated vote reverted on-chain (expected)")
                return self._probe(election, ProbeResult.REJECTED_ON_CHAIN, Severity.NONE, attempts)
            return self._probe(election, ProbeResult.UNEXPECTED_ERROR, Severity.WARNING, attempts, str(e))
        except ServiceError as e:
            return self._probe(election, ProbeResult.UNEXPECTED_ERROR, Severity.WARNING, attempts, str(e))

        logger.critical(f"SECURITY BREACH: fabricated vote by {self.address} accepted in {election.uuid}: "
                        f"tx {receipt.tx_hash}")
        return self._probe(election, ProbeResult.VOTE_ACCEPTED, Severity.CRITICAL, attempts,
                           f"Fabricated vote accepted in tx {receipt.tx_hash}")

    async def _check_timed_out_votes(self, election: ElectionSpec, attempts: int) -> Optional[SecurityProbe]:
        """
        Look up fabricated votes whose confirmation timed out.

        Returns a CRITICAL probe if any of them was mined successfully.
        """
        for tx_hash in self._timed_out.get(election.uuid, []):
            try:
                receipt = await self.chain.get_transaction_receipt(tx_hash)
            except ChainError as e:
                logger.warning(f"Ineligible #{self.index}: cannot look up timed-out vote {tx_hash}: {e}")
                continue
            if receipt is not None and receipt['status'] == 1:
                logger.critical(f"SECURITY BREACH: timed-out fabricated vote by {self.address} was mined in "
                                f"{election.uuid}: tx {tx_hash}")
                return self._probe(election, ProbeResult.VOTE_ACCEPTED, Severity.CRITICAL, attempts,
                                   f"Fabricated vote accepted in tx {tx_hash}")
        return None

    def _probe(self, election: ElectionSpec, result: ProbeResult, severity: Severity,
               attempts: int, error: Optional[str] = None) -> SecurityProbe:
        return SecurityProbe(
            election_uuid=election.uuid,
            voter_address=self.address,
            actual=result,
            severity=severity,
            attempts=attempts,
            error=error,
        )

    def _record(self, probe: SecurityProbe) -> None:
        self.probes.append(probe)
        metrics.security_probes.labels(result=probe.actual.value, severity=probe.severity.value).inc()
        if probe.passed:
            logger.info(f"Security check passed for {probe.election_uuid}: {probe.actual.value}")
        elif probe.passed is None:
            logger.warning(f"Security check inconclusive for {probe.election_uuid}: {probe.error}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            'bot_index': self.index,
            'address': self.address,
            'total': len(self.probes),
            'passed': sum(1 for p in self.probes if p.passed is True),
            'failed': sum(1 for p in self.probes if p.passed is False),
            'unknown': sum(1 for p in self.probes if p.passed is None),
        }
