"""
Eligible voter bot.

Each vote() call walks a fixed state machine:

    CHECK_ELIGIBILITY -> FETCH_VOTER_DATA -> SELECT_CANDIDATES ->
    RESOLVE_ON_CHAIN_ID -> SUBMIT_VOTE -> RECORD_OFFCHAIN -> DONE

Eligibility outcomes (not started, ended, already voted, not eligible) are
final. Transient failures in later steps restart the whole workflow after
a random delay, at most MAX_RETRIES times.
"""

import logging
import random
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .. import metrics
from ..api_client import VoterLookupStatus
from ..errors import (
    ChainError,
    ChainTimeout,
    ErrorKind,
    InvalidElectionData,
    InvalidVoteInput,
    RunCancelled,
    ServiceError,
)
from ..models import ElectionSpec, Position, RejectReason, Role, VoteAttempt, VoteOutcome
from ..retry import RetryPolicy
from .base import BaseAgent

logger = logging.getLogger(__name__)


class VoterState(str, Enum):
    CHECK_ELIGIBILITY = "check_eligibility"
    FETCH_VOTER_DATA = "fetch_voter_data"
    SELECT_CANDIDATES = "select_candidates"
    RESOLVE_ON_CHAIN_ID = "resolve_on_chain_id"
    SUBMIT_VOTE = "submit_vote"
    RECORD_OFFCHAIN = "record_offchain"
    DONE = "done"


def select_candidates(positions: Sequence[Position], rng: Optional[random.Random] = None) -> List[List[int]]:
    """
    Pick one candidate index per position, uniformly at random.

    Raises:
        InvalidElectionData: If there are no positions or a position has no candidates
    """
    rng = rng or random.Random()
    if not positions:
        raise InvalidElectionData("Election has no positions")

    selections = []
    for i, position in enumerate(positions):
        candidates = getattr(position, 'candidates', None)
        if not candidates or not isinstance(candidates, (list, tuple)):
            raise InvalidElectionData(f"Position {i} is invalid or has no candidates")
        selections.append([rng.randrange(len(candidates))])
    return selections


class EligibleVoterAgent(BaseAgent):
    """Casts one vote per election with bounded whole-workflow retries."""

    role = Role.ELIGIBLE_VOTER

    def __init__(self, identity, api, chain, settings, **kwargs):
        super().__init__(identity, api, chain, settings, **kwargs)
        self.retry_policy = RetryPolicy.from_settings(settings)
        self.attempts: List[VoteAttempt] = []
        self.results: List[VoteAttempt] = []
        self.state = VoterState.CHECK_ELIGIBILITY
        # election uuid -> (tx hash, voter key, on-chain id) of votes whose confirmation timed out
        self._pending: Dict[str, List[Tuple[str, str, int]]] = {}

    async def vote(self, election: ElectionSpec) -> VoteAttempt:
        """Vote in `election`, returning the terminal attempt."""
        attempt: Optional[VoteAttempt] = None

        for attempt_index in range(self.retry_policy.max_attempts):
            attempt = await self._run_once(election, attempt_index + 1)
            self.attempts.append(attempt)
            metrics.vote_attempts.labels(outcome=attempt.outcome.value).inc()

            if attempt.is_terminal:
                break
            if not self.retry_policy.should_retry(attempt_index):
                attempt.outcome = VoteOutcome.FAILED
                logger.error(f"Voter #{self.index} gave up on {election.uuid} after "
                             f"{attempt.attempt_number} attempts: {attempt.error}")
                break

            delay = self.retry_delay()
            logger.warning(f"Voter #{self.index} retrying {election.uuid} in {delay:.0f}s "
                           f"({attempt_index + 1}/{self.retry_policy.max_retries}): {attempt.error}")
            try:
                await self.cancel_token.sleep(delay)
            except RunCancelled:
                attempt.outcome = VoteOutcome.FAILED
                attempt.reason = 'cancelled'
                break

        self.results.append(attempt)
        return attempt

    def _attempt(self, election: ElectionSpec, number: int, outcome: VoteOutcome,
                 reason: Optional[str] = None, **fields: Any) -> VoteAttempt:
        if outcome is VoteOutcome.SUCCESS:
            self.state = VoterState.DONE
        return VoteAttempt(
            election_uuid=election.uuid,
            voter_address=self.address,
            attempt_number=number,
            outcome=outcome,
            reason=reason,
            **fields,
        )

    def _rejected(self, election: ElectionSpec, number: int, reason: RejectReason, **fields: Any) -> VoteAttempt:
        logger.warning(f"Voter #{self.index} cannot vote in {election.uuid}: {reason.value}")
        return self._attempt(election, number, VoteOutcome.REJECTED, reason.value, **fields)

    def _from_error(self, election: ElectionSpec, number: int, error: Exception, **fields: Any) -> VoteAttempt:
        """Classify an error raised after the eligibility gate."""
        kind = getattr(error, 'kind', ErrorKind.UNKNOWN)
        retryable = isinstance(error, (ServiceError, ChainError)) and error.retryable
        outcome = VoteOutcome.TRANSIENT_FAILURE if retryable else VoteOutcome.FAILED
        return self._attempt(election, number, outcome, kind.value, error=str(error), **fields)

    def _window_reason(self, election: ElectionSpec) -> Optional[RejectReason]:
        now = self.clock()
        if not election.has_started(now):
            return RejectReason.NOT_STARTED
        if election.has_ended(now):
            return RejectReason.ENDED
        return None

    async def _run_once(self, election: ElectionSpec, number: int) -> VoteAttempt:
        pending = self._pending.get(election.uuid)
        if pending:
            settled = await self._settle_pending(election, number, pending)
            if settled is not None:
                return settled

        # CHECK_ELIGIBILITY
        self.state = VoterState.CHECK_ELIGIBILITY
        reason = self._window_reason(election)
        if reason is not None:
            return self._rejected(election, number, reason)

        try:
            if await self.api.has_voted(election.uuid, self.address):
                return self._rejected(election, number, RejectReason.ALREADY_VOTED)
            lookup = await self.api.get_voter_data(election.uuid, self.address)
        except ServiceError as e:
            logger.error(f"Voter #{self.index} eligibility check failed for {election.uuid}: {e}")
            return self._attempt(election, number, VoteOutcome.FAILED, 'eligibility_check_failed', error=str(e))

        if lookup.status is VoterLookupStatus.ALREADY_VOTED:
            return self._rejected(election, number, RejectReason.ALREADY_VOTED)
        if lookup.status is VoterLookupStatus.NOT_ELIGIBLE:
            return self._rejected(election, number, RejectReason.NOT_ELIGIBLE)

        selections: List[List[int]] = []
        try:
            # FETCH_VOTER_DATA
            self.state = VoterState.FETCH_VOTER_DATA
            logger.debug(f"Voter #{self.index} key {lookup.voter_key[:10]}..., proof {len(lookup.merkle_proof)} hashes")
            positions = election.positions
            if not positions:
                positions = (await self.api.get_election(election.uuid)).positions

            # SELECT_CANDIDATES
            self.state = VoterState.SELECT_CANDIDATES
            selections = select_candidates(positions, self.rng)

            # RESOLVE_ON_CHAIN_ID
            self.state = VoterState.RESOLVE_ON_CHAIN_ID
            on_chain_id = election.on_chain_id
            if on_chain_id is None:
                on_chain_id = await self.api.get_onchain_id(election.uuid)

            # SUBMIT_VOTE
            self.state = VoterState.SUBMIT_VOTE
            reason = self._window_reason(election)
            if reason is not None:
                return self._rejected(election, number, reason, selections=selections)

            try:
                receipt = await self.chain.cast_vote(
                    self.account,
                    on_chain_id,
                    lookup.voter_key,
                    lookup.merkle_proof,
                    selections,
                    position_count=len(positions),
                )
            except ChainTimeout as e:
                if e.tx_hash:
                    self._pending.setdefault(election.uuid, []).append((e.tx_hash, lookup.voter_key, on_chain_id))
                raise
            except ChainError as e:
                if e.kind is ErrorKind.REVERTED:
                    return await self._rejected_on_chain(election, number, on_chain_id, lookup.voter_key,
                                                         selections, e)
                raise

            # RECORD_OFFCHAIN
            self.state = VoterState.RECORD_OFFCHAIN
            self._pending.pop(election.uuid, None)
            await self.api.record_vote(
                election.uuid, self.address, self.chain.chain_id,
                receipt.tx_hash, receipt.block_number, on_chain_id,
            )

        except InvalidVoteInput as e:
            logger.error(f"Voter #{self.index} built invalid vote input for {election.uuid}: {e}")
            return self._attempt(election, number, VoteOutcome.REJECTED, RejectReason.INVALID_INPUT.value,
                                 selections=selections, error=str(e))
        except InvalidElectionData as e:
            logger.error(f"Voter #{self.index} cannot vote in malformed election {election.uuid}: {e}")
            return self._attempt(election, number, VoteOutcome.FAILED, 'invalid_election_data', error=str(e))
        except (ServiceError, ChainError) as e:
            return self._from_error(election, number, e, selections=selections)

        logger.info(f"Voter #{self.index} voted in {election.uuid}: tx {receipt.tx_hash}, "
                    f"block {receipt.block_number}")
        return self._attempt(
            election, number, VoteOutcome.SUCCESS,
            selections=selections,
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            gas_used=receipt.gas_used,
        )

    async def _rejected_on_chain(self, election, number, on_chain_id, voter_key, selections, error) -> VoteAttempt:
        landed = await self._earlier_vote_landed(election, number)
        if landed is not None:
            return landed

        reason = RejectReason.CHAIN_REJECTED
        try:
            if await self.chain.has_voter_key_been_used(on_chain_id, voter_key):
                reason = RejectReason.ALREADY_VOTED
        except ChainError as e:
            logger.debug(f"Could not check voter key after revert: {e}")
        return self._rejected(election, number, reason, selections=selections, tx_hash=error.tx_hash,
                              error=str(error))

    async def _earlier_vote_landed(self, election: ElectionSpec, number: int) -> Optional[VoteAttempt]:
        """Record a success if a timed-out submission for `election` has since been mined."""
        for tx_hash, _, on_chain_id in self._pending.get(election.uuid, []):
            try:
                receipt = await self.chain.get_transaction_receipt(tx_hash)
            except ChainError as e:
                logger.debug(f"Could not look up earlier vote {tx_hash}: {e}")
                continue
            if receipt is not None and receipt['status'] == 1:
                return await self._record_mined(election, number, tx_hash, receipt, on_chain_id)
        return None

    async def _settle_pending(self, election: ElectionSpec, number: int,
                              pending: List[Tuple[str, str, int]]) -> Optional[VoteAttempt]:
        """
        Resolve votes whose confirmation timed out before submitting again.

        Returns the final attempt if an earlier transaction decided the
        outcome, or None if a new submission is needed. Unmined
        transactions stay tracked, since they may still land after the
        new submission.
        """
        unmined = []
        reverted = None
        for tx_hash, voter_key, on_chain_id in pending:
            try:
                receipt = await self.chain.get_transaction_receipt(tx_hash)
            except ChainError as e:
                return self._from_error(election, number, e, tx_hash=tx_hash)
            if receipt is None:
                unmined.append((tx_hash, voter_key, on_chain_id))
            elif receipt['status'] == 1:
                return await self._record_mined(election, number, tx_hash, receipt, on_chain_id)
            else:
                reverted = tx_hash

        if reverted is not None and not unmined:
            del self._pending[election.uuid]
            return self._rejected(election, number, RejectReason.CHAIN_REJECTED, tx_hash=reverted)

        self._pending[election.uuid] = unmined
        tx_hash, voter_key, on_chain_id = unmined[-1]
        try:
            if await self.chain.has_voter_key_been_used(on_chain_id, voter_key):
                del self._pending[election.uuid]
                return self._rejected(election, number, RejectReason.ALREADY_VOTED, tx_hash=tx_hash)
        except ChainError as e:
            return self._from_error(election, number, e, tx_hash=tx_hash)

        logger.info(f"Voter #{self.index}: earlier vote {tx_hash} is not mined yet, submitting again")
        return None

    async def _record_mined(self, election: ElectionSpec, number: int, tx_hash: str, receipt,
                            on_chain_id: int) -> VoteAttempt:
        self._pending.pop(election.uuid, None)
        await self.api.record_vote(
            election.uuid, self.address, self.chain.chain_id, tx_hash, receipt['blockNumber'], on_chain_id,
        )
        self.state = VoterState.DONE
        logger.info(f"Voter #{self.index}: earlier vote {tx_hash} confirmed in block {receipt['blockNumber']}")
        return self._attempt(
            election, number, VoteOutcome.SUCCESS,
            tx_hash=tx_hash,
            block_number=receipt['blockNumber'],
            gas_used=receipt['gasUsed'],
        )

    def get_stats(self) -> Dict[str, Any]:
        successful = [a for a in self.results if a.outcome is VoteOutcome.SUCCESS]
        return {
            'bot_index': self.index,
            'address': self.address,
            'votes_cast': len(successful),
            'votes_rejected': sum(1 for a in self.results if a.outcome is VoteOutcome.REJECTED),
            'votes_failed': sum(1 for a in self.results if a.outcome is VoteOutcome.FAILED),
            'attempts': len(self.attempts),
            'total_gas_used': sum(a.gas_used for a in successful),
        }
