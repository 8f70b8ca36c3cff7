"""
Run orchestration.

Phases: initialize -> provision identities -> fund -> create elections ->
vote -> security test -> report. Every agent phase runs through
run_in_windows(), so at most MAX_CONCURRENT_OPERATIONS agent operations
are in flight at any time. Retries belong to the agents and clients; the
orchestrator never retries on their behalf.
"""

import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from tqdm import tqdm

from . import metrics
from .agents import ElectionCreatorAgent, EligibleVoterAgent, IneligibleVoterAgent
from .api_client import APIClient
from .blockchain import BlockchainService
from .concurrency import CancelToken, WindowResult, run_in_windows
from .config import Settings
from .errors import ConfigurationError, RunCancelled, ServiceError
from .models import ElectionSpec, IdentityPool, PopulationCounts, Role, SecurityProbe, VoteAttempt, VoteOutcome
from .rate_limiter import RateLimiter
from .report import PhaseSummary, RunReport
from .wallet_manager import WalletManager

logger = logging.getLogger(__name__)


class RunMode(str, Enum):
    FULL = "full"
    ELECTIONS_ONLY = "elections-only"
    VOTING_ONLY = "voting-only"
    SECURITY_ONLY = "security-only"

    @property
    def creates_elections(self) -> bool:
        return self in (RunMode.FULL, RunMode.ELECTIONS_ONLY)

    @property
    def votes(self) -> bool:
        return self in (RunMode.FULL, RunMode.VOTING_ONLY)

    @property
    def tests_security(self) -> bool:
        return self in (RunMode.FULL, RunMode.SECURITY_ONLY)


@dataclass
class RunOptions:
    """Command-line choices for one run."""
    mode: RunMode = RunMode.FULL
    skip_funding: bool = False
    election_uuid: Optional[str] = None
    active_only: bool = False
    regenerate_wallets: bool = False
    counts: Optional[PopulationCounts] = None


class Orchestrator:
    """Sequences the phases of a bot run and aggregates their results."""

    def __init__(
        self,
        settings: Settings,
        options: Optional[RunOptions] = None,
        wallet_manager: Optional[WalletManager] = None,
        api: Optional[APIClient] = None,
        chain: Optional[BlockchainService] = None,
        cancel_token: Optional[CancelToken] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.options = options or RunOptions()
        self.cancel_token = cancel_token or CancelToken()
        self.wallet_manager = wallet_manager or WalletManager(settings, self.cancel_token)
        self.api = api or APIClient(
            settings, RateLimiter(settings.REQUEST_DELAY_SECONDS), cancel_token=self.cancel_token
        )
        self.chain = chain or BlockchainService(settings)
        self.rng = rng or random.Random()
        self.clock = clock

        self.counts = self.options.counts or PopulationCounts(
            settings.ELECTION_BOTS, settings.ELIGIBLE_VOTER_BOTS, settings.INELIGIBLE_VOTER_BOTS
        )
        self.pool: Optional[IdentityPool] = None
        self.elections: List[ElectionSpec] = []
        self.creators: List[ElectionCreatorAgent] = []
        self.voters: List[EligibleVoterAgent] = []
        self.ineligible_voters: List[IneligibleVoterAgent] = []
        self.report = RunReport(mode=self.options.mode.value, network=settings.NETWORK)
        self.in_flight = 0
        self.max_in_flight = 0

    async def run(self, web3=None) -> RunReport:
        """Execute every phase enabled by the run mode and return the report."""
        mode = self.options.mode
        logger.info(f"Starting SafeVote bot run: mode={mode.value}, network={self.settings.NETWORK}")

        try:
            await self.initialize(web3)
            await self.setup_wallets()
            if self.options.skip_funding:
                logger.info("Skipping wallet funding (as requested)")
            else:
                await self.fund_wallets()

            if mode.creates_elections:
                await self.create_elections()
            if mode.votes:
                await self.run_voting()
            if mode.tests_security:
                await self.run_security_tests()
        except RunCancelled as e:
            logger.warning(f"Run cancelled: {e}")
        finally:
            if self.pool is not None:
                self.wallet_manager.persist(self.pool)
            self.report.finished_at = time.time()
            self.report.cancelled = self.cancel_token.cancelled
            self.report.elections = [election.to_dict() for election in self.elections]

        return self.report

    async def close(self) -> None:
        await self.api.close()

    # ------------------------------------------------------------------
    # Setup phases
    # ------------------------------------------------------------------

    async def initialize(self, web3=None) -> None:
        """
        Validate configuration and connect subsystems.

        Raises:
            ConfigurationError: If any required setting is missing or invalid
        """
        errors = self.settings.validate_for_run()
        if errors:
            for error in errors:
                logger.error(f"  - {error}")
            raise ConfigurationError("Invalid configuration: " + "; ".join(errors))
        logger.info("Configuration validated")

        await self.wallet_manager.initialize(web3)
        await self.chain.initialize(web3 or self.wallet_manager.web3)
        logger.info("All systems initialized")

    async def setup_wallets(self) -> IdentityPool:
        existing = None if self.options.regenerate_wallets else self.wallet_manager.load()
        self.pool = self.wallet_manager.generate(self.counts, existing)
        self.wallet_manager.persist(self.pool)
        return self.pool

    async def fund_wallets(self):
        self._check_cancelled()
        funding = await self.wallet_manager.fund(self.pool)
        self.report.funding = funding
        if funding.failed:
            logger.warning(f"{funding.failed} wallets failed to fund. Check logs for details.")
        return funding

    def _identities(self, role: Role):
        return self.pool.by_role(role)[:self.counts.for_role(role)]

    def _agent_kwargs(self):
        return {
            'cancel_token': self.cancel_token,
            'rng': random.Random(self.rng.getrandbits(64)),
            'clock': self.clock,
        }

    # ------------------------------------------------------------------
    # Agent phases
    # ------------------------------------------------------------------

    async def create_elections(self) -> List[ElectionSpec]:
        self._check_cancelled()
        eligible_addresses = [identity.address for identity in self._identities(Role.ELIGIBLE_VOTER)]
        self.creators = [
            ElectionCreatorAgent(identity, self.api, self.chain, self.settings,
                                 eligible_addresses=eligible_addresses, **self._agent_kwargs()).initialize()
            for identity in self._identities(Role.CREATOR)
        ]
        logger.info(f"Election creation phase: {len(self.creators)} creator bots")

        def record(phase: PhaseSummary, agent: ElectionCreatorAgent, result: Any) -> None:
            if isinstance(result, ElectionSpec):
                self.elections.append(result)
                phase.record(True, gas_used=result.gas_used)
            elif isinstance(result, BaseException):
                phase.record(False, type(result).__name__)
            else:
                step = agent.failures[-1]['step'] if agent.failures else 'unknown'
                phase.record(False, f"failed_at_{step}")

        phase = await self._run_phase(
            'election_creation',
            self.creators,
            lambda agent: agent.create_election(),
            self.settings.ELECTION_BATCH_DELAY_SECONDS,
            record,
        )
        logger.info(f"Election creation complete: {phase.succeeded} successful, {phase.failed} failed")
        return self.elections

    async def load_existing_elections(self) -> List[ElectionSpec]:
        """Fetch elections from the backend, applying the target filters."""
        logger.info("Loading existing elections from backend...")
        try:
            elections = await self.api.list_elections()
        except ServiceError as e:
            logger.error(f"Failed to load existing elections: {e}")
            return []

        if self.options.election_uuid:
            elections = [e for e in elections if e.uuid == self.options.election_uuid]
            if not elections:
                logger.warning(f"Election {self.options.election_uuid} not found in backend")

        now = self.clock()
        logger.info(f"Found {len(elections)} elections: "
                    f"{sum(1 for e in elections if e.is_open(now))} active, "
                    f"{sum(1 for e in elections if not e.has_started(now))} upcoming, "
                    f"{sum(1 for e in elections if e.has_ended(now))} ended")

        if self.options.active_only:
            elections = [e for e in elections if e.is_open(now)]
        return elections

    async def _target_elections(self) -> List[ElectionSpec]:
        if not self.elections:
            logger.info("No elections in memory, loading from backend...")
            self.elections = await self.load_existing_elections()
            return self.elections

        elections = self.elections
        if self.options.election_uuid:
            elections = [e for e in elections if e.uuid == self.options.election_uuid]
        if self.options.active_only:
            now = self.clock()
            elections = [e for e in elections if e.is_open(now)]
        return elections

    async def run_voting(self) -> None:
        self._check_cancelled()
        elections = await self._target_elections()
        if not elections:
            logger.warning("No elections available for voting. Skipping voting phase.")
            return

        await self._wait_for_start(elections)

        self.voters = [
            EligibleVoterAgent(identity, self.api, self.chain, self.settings, **self._agent_kwargs()).initialize()
            for identity in self._identities(Role.ELIGIBLE_VOTER)
        ]
        logger.info(f"Voting phase: {len(self.voters)} voter bots, {len(elections)} elections")

        def record(phase: PhaseSummary, agent: EligibleVoterAgent, result: Any) -> None:
            if isinstance(result, VoteAttempt):
                phase.record(
                    result.outcome is VoteOutcome.SUCCESS,
                    result.reason,
                    gas_used=result.gas_used,
                    rejected=result.outcome is VoteOutcome.REJECTED,
                )
            else:
                phase.record(False, type(result).__name__)

        for election in elections:
            self._check_cancelled()
            logger.info(f"Voting in election: {election.title} ({election.uuid}), "
                        f"{len(election.positions)} positions")
            await self._run_phase(
                'voting',
                self.voters,
                lambda agent, election=election: agent.vote(election),
                self.settings.BATCH_DELAY_SECONDS,
                record,
            )

        phase = self.report.phase('voting')
        logger.info(f"Voting phase complete: {phase.succeeded} votes cast of {phase.total} attempts")

    async def run_security_tests(self) -> None:
        self._check_cancelled()
        elections = await self._target_elections()
        if not elections:
            logger.warning("No elections available for security testing. Skipping.")
            return

        self.ineligible_voters = [
            IneligibleVoterAgent(identity, self.api, self.chain, self.settings, **self._agent_kwargs()).initialize()
            for identity in self._identities(Role.INELIGIBLE_VOTER)
        ]
        logger.info(f"Security testing phase: {len(self.ineligible_voters)} ineligible bots")

        def record(phase: PhaseSummary, agent: IneligibleVoterAgent, result: Any) -> None:
            if isinstance(result, SecurityProbe):
                self.report.probes.append(result)
                phase.record(result.passed is True, result.actual.value)
            else:
                phase.record(False, type(result).__name__)

        for election in elections:
            self._check_cancelled()
            await self._run_phase(
                'security_testing',
                self.ineligible_voters,
                lambda agent, election=election: agent.attempt_vote(election),
                self.settings.BATCH_DELAY_SECONDS,
                record,
            )

        phase = self.report.phase('security_testing')
        logger.info(f"Security testing complete: {phase.succeeded}/{phase.total} passed")
        if self.report.critical_probes:
            logger.error(f"SECURITY ISSUES DETECTED: {len(self.report.critical_probes)} critical probes")

    async def _run_phase(
        self,
        name: str,
        agents: Sequence[Any],
        worker: Callable[[Any], Awaitable[Any]],
        delay: float,
        record: Callable[[PhaseSummary, Any, Any], None],
    ) -> PhaseSummary:
        """Run `worker` over `agents` in windows and fold results into the phase summary."""
        phase = self.report.phase(name)
        started = time.time()
        offset = 0
        progress = tqdm(total=len(agents), desc=name.replace('_', ' ').title(), unit="bot",
                        disable=not self.settings.SHOW_PROGRESS)

        async def tracked(agent):
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            metrics.operations_in_flight.inc()
            try:
                return await worker(agent)
            finally:
                self.in_flight -= 1
                metrics.operations_in_flight.dec()

        def on_window(window: WindowResult) -> None:
            nonlocal offset
            phase.windows.append(window.size)
            for agent, result in zip(agents[offset:offset + window.size], window.results):
                record(phase, agent, result)
            offset += window.size
            progress.update(window.size)

        try:
            await run_in_windows(
                agents,
                tracked,
                window_size=self.settings.MAX_CONCURRENT_OPERATIONS,
                delay=delay,
                cancel_token=self.cancel_token,
                on_window=on_window,
            )
        finally:
            progress.close()
            phase.duration += time.time() - started
        return phase

    async def _wait_for_start(self, elections: Sequence[ElectionSpec]) -> None:
        """Sleep until every election that has not ended has opened."""
        now = self.clock()
        pending = [e.start_time for e in elections if not e.has_ended(now) and not e.has_started(now)]
        if not pending:
            return
        wait = max(pending) - now
        logger.info(f"Waiting {wait / 60:.1f} minutes for elections to start...")
        await self.cancel_token.sleep(wait)

    def _check_cancelled(self) -> None:
        self.cancel_token.raise_if_cancelled()
