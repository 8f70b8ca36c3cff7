"""Pytest fixtures for the SafeVote bot harness.

Nothing here talks to a network: the backend, key service, RPC node and
contract are replaced by in-memory fakes that record what the harness
asked of them.
"""

import asyncio
import itertools
import random
import time
from collections import defaultdict
from typing import Dict, List, Optional, Set, Tuple

import pytest
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound

from safevote_bots.api_client import KeyGenResult, VoterLookup, VoterLookupStatus
from safevote_bots.blockchain import BlockchainService, CreationReceipt, VoteReceipt
from safevote_bots.config import Settings
from safevote_bots.errors import ChainError, ChainTimeout, ErrorKind
from safevote_bots.models import ElectionSpec, PopulationCounts, Position
from safevote_bots.wallet_manager import WalletManager

FUNDING_KEY = '0x' + '11' * 32
CONTRACT_ADDRESS = '0x' + '22' * 20
MERKLE_ROOT = '0x' + '33' * 32


# ----------------------------------------------------------------------
# RPC node / contract fakes
# ----------------------------------------------------------------------

class FakeEth:
    """Stand-in for AsyncWeb3.eth with a single auto-mining node."""

    def __init__(self, chain_id: int = 421614, block_number: int = 100,
                 gas_price: int = 10 ** 9, balance: int = 10 ** 20):
        self._chain_id = chain_id
        self._block_number = block_number
        self._gas_price = gas_price
        self.balance = balance
        self.sent: List[str] = []
        self.receipts: Dict[str, dict] = {}
        self.send_errors: List[Exception] = []
        self.unmined = 0
        self.statuses: List[int] = []
        self.gas_used = 21000

    @property
    async def chain_id(self) -> int:
        return self._chain_id

    @property
    async def block_number(self) -> int:
        return self._block_number

    @property
    async def gas_price(self) -> int:
        return self._gas_price

    async def get_balance(self, address) -> int:
        return self.balance

    async def get_transaction_count(self, address, block_identifier='latest') -> int:
        return len(self.sent)

    async def send_raw_transaction(self, raw) -> HexBytes:
        if self.send_errors:
            raise self.send_errors.pop(0)
        tx_hash = HexBytes(Web3.keccak(bytes(raw)))
        key = tx_hash.to_0x_hex()
        self.sent.append(key)
        if self.unmined > 0:
            self.unmined -= 1
        else:
            self._block_number += 1
            status = self.statuses.pop(0) if self.statuses else 1
            self.receipts[key] = {
                'status': status,
                'blockNumber': self._block_number,
                'gasUsed': self.gas_used,
                'transactionHash': tx_hash,
            }
        return tx_hash

    async def wait_for_transaction_receipt(self, tx_hash, timeout=120, poll_latency=0.1):
        key = HexBytes(tx_hash).to_0x_hex()
        if key not in self.receipts:
            raise TimeExhausted(f"Transaction {key} is not in the chain after {timeout} seconds")
        return self.receipts[key]

    async def get_transaction_receipt(self, tx_hash):
        key = HexBytes(tx_hash).to_0x_hex()
        if key not in self.receipts:
            raise TransactionNotFound(f"Transaction with hash: '{key}' not found.")
        return self.receipts[key]


class FakeWeb3:
    def __init__(self, **kwargs):
        self.eth = FakeEth(**kwargs)


class FakeFunction:
    def __init__(self, contract: 'FakeContract', name: str, args: tuple):
        self.contract = contract
        self.name = name
        self.args = args

    async def estimate_gas(self, transaction) -> int:
        if self.contract.estimate_error is not None:
            raise self.contract.estimate_error
        return self.contract.gas_estimate

    async def build_transaction(self, transaction) -> dict:
        self.contract.built.append((self.name, self.args, dict(transaction)))
        return {
            'to': CONTRACT_ADDRESS,
            'data': '0x',
            'value': 0,
            'gas': transaction['gas'],
            'gasPrice': transaction['gasPrice'],
            'nonce': transaction['nonce'],
            'chainId': transaction['chainId'],
        }

    async def call(self):
        self.contract.calls.append((self.name, self.args))
        result = self.contract.call_results[self.name]
        return result(*self.args) if callable(result) else result


class FakeFunctions:
    def __init__(self, contract: 'FakeContract'):
        self._contract = contract

    def __getattr__(self, name):
        return lambda *args: FakeFunction(self._contract, name, args)


class FakeEvent:
    def __init__(self, contract: 'FakeContract'):
        self.contract = contract

    def process_receipt(self, receipt, errors=None):
        return list(self.contract.created_events)


class FakeEvents:
    def __init__(self, contract: 'FakeContract'):
        self._contract = contract

    def ElectionCreatedV2(self):
        return FakeEvent(self._contract)


class FakeContract:
    def __init__(self):
        self.functions = FakeFunctions(self)
        self.events = FakeEvents(self)
        self.gas_estimate = 100_000
        self.estimate_error: Optional[Exception] = None
        self.created_events = [{'args': {'electionId': 7}}]
        self.call_results: Dict[str, object] = {}
        self.built: List[tuple] = []
        self.calls: List[tuple] = []


# ----------------------------------------------------------------------
# Service-level fakes used by agent and orchestrator tests
# ----------------------------------------------------------------------

class FakeAPIClient:
    """In-memory backend and key service."""

    def __init__(self):
        self.lookups: Dict[Tuple[str, str], VoterLookup] = {}
        self.voted: Set[Tuple[str, str]] = set()
        self.issued_keys: Set[str] = set()
        self.leaking: Set[str] = set()
        self.elections: List[ElectionSpec] = []
        self.onchain_ids: Dict[str, int] = {}
        self.errors: Dict[str, List[Exception]] = defaultdict(list)
        self.calls: Dict[str, int] = defaultdict(int)
        self.created: List[Tuple[ElectionSpec, List[str]]] = []
        self.recorded: List[dict] = []
        self._keys = itertools.count(1)

    def _enter(self, name: str) -> None:
        self.calls[name] += 1
        if self.errors[name]:
            raise self.errors[name].pop(0)

    def register(self, election_uuid: str, address: str) -> VoterLookup:
        """Issue a voter key for `address` in `election_uuid`."""
        key = f"0x{next(self._keys):064x}"
        self.issued_keys.add(key)
        lookup = VoterLookup(
            VoterLookupStatus.FOUND,
            voter_key=key,
            merkle_proof=['0x' + 'cd' * 32, '0x' + 'ef' * 32],
            merkle_root=MERKLE_ROOT,
            status_code=200,
        )
        self.lookups[(election_uuid, address.lower())] = lookup
        return lookup

    async def create_election(self, spec, voter_addresses):
        self._enter('create_election')
        self.created.append((spec, list(voter_addresses)))
        return {'success': True}

    async def generate_voter_keys(self, election_uuid, voter_addresses):
        self._enter('generate_voter_keys')
        for address in voter_addresses:
            self.register(election_uuid, address)
        return KeyGenResult(MERKLE_ROOT, len(voter_addresses), len(voter_addresses))

    async def get_voter_data(self, election_uuid, voter_address):
        self._enter('get_voter_data')
        address = voter_address.lower()
        if address in self.leaking:
            return self.register(election_uuid, voter_address)
        if (election_uuid, address) in self.voted:
            return VoterLookup(VoterLookupStatus.ALREADY_VOTED, status_code=403)
        lookup = self.lookups.get((election_uuid, address))
        if lookup is None:
            return VoterLookup(VoterLookupStatus.NOT_ELIGIBLE, status_code=404)
        return lookup

    async def get_election(self, election_uuid):
        self._enter('get_election')
        for election in self.elections:
            if election.uuid == election_uuid:
                return election
        raise AssertionError(f"unknown election {election_uuid}")

    async def get_onchain_id(self, election_uuid):
        self._enter('get_onchain_id')
        return self.onchain_ids[election_uuid]

    async def list_elections(self):
        self._enter('list_elections')
        return list(self.elections)

    async def sync_chain_deployment(self, election_uuid, chain_id, on_chain_id, tx_hash):
        self._enter('sync_chain_deployment')
        self.onchain_ids[election_uuid] = on_chain_id
        return True

    async def record_vote(self, election_uuid, voter_address, chain_id, tx_hash, block_number, on_chain_id):
        self._enter('record_vote')
        self.voted.add((election_uuid, voter_address.lower()))
        self.recorded.append({'election': election_uuid, 'voter': voter_address, 'tx_hash': tx_hash})
        return True

    async def has_voted(self, election_uuid, voter_address):
        self._enter('has_voted')
        return (election_uuid, voter_address.lower()) in self.voted

    async def close(self):
        pass


class FakeChain:
    """In-memory SafeVoteV2 contract that accepts only keys issued by the API fake."""

    def __init__(self, valid_keys: Set[str], latency: float = 0.0):
        self.valid_keys = valid_keys
        self.latency = latency
        self.chain_id = 421614
        self.initialized = False
        self.accept_unregistered = False
        self.used_keys: Set[Tuple[int, str]] = set()
        self.votes: List[Tuple[int, str, list]] = []
        self.receipts: Dict[str, Optional[dict]] = {}
        self.vote_errors: List[Exception] = []
        self.create_errors: List[Exception] = []
        self.cast_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self._ids = itertools.count(1)
        self._txs = itertools.count(1)

    def _tx_hash(self) -> str:
        return f"0x{next(self._txs):064x}"

    async def initialize(self, web3=None, contract=None):
        self.initialized = True

    async def create_election(self, account, spec):
        await asyncio.sleep(self.latency)
        if self.create_errors:
            raise self.create_errors.pop(0)
        return CreationReceipt(self._tx_hash(), 1000, next(self._ids), 450_000)

    async def cast_vote(self, account, on_chain_id, voter_key, merkle_proof, selections,
                        delegate=None, position_count=None):
        self.cast_calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.latency)
            if self.vote_errors:
                raise self.vote_errors.pop(0)
            BlockchainService.validate_vote_input(voter_key, merkle_proof, selections, position_count)
            tx_hash = self._tx_hash()
            if (on_chain_id, voter_key) in self.used_keys:
                raise ChainError("execution reverted: Voter key already used", ErrorKind.REVERTED, tx_hash)
            if voter_key not in self.valid_keys and not self.accept_unregistered:
                raise ChainError("execution reverted: Invalid Merkle proof", ErrorKind.REVERTED, tx_hash)
            self.used_keys.add((on_chain_id, voter_key))
            self.votes.append((on_chain_id, account.address, selections))
            return VoteReceipt(tx_hash, 2000, 120_000)
        finally:
            self.in_flight -= 1

    def timeout_but_mine(self, on_chain_id: int, voter_key: str) -> ChainTimeout:
        """A ChainTimeout whose transaction did land."""
        tx_hash = self._tx_hash()
        self.used_keys.add((on_chain_id, voter_key))
        self.receipts[tx_hash] = {'status': 1, 'blockNumber': 2001, 'gasUsed': 118_000}
        return ChainTimeout("Transaction confirmation timeout after 5s", tx_hash)

    async def has_voter_key_been_used(self, on_chain_id, voter_key):
        return (on_chain_id, voter_key) in self.used_keys

    async def get_transaction_receipt(self, tx_hash):
        return self.receipts.get(tx_hash)


class FakeClock:
    """Settable wall clock whose sleep advances time instantly."""

    def __init__(self, now: Optional[float] = None):
        self.now = now if now is not None else time.time()
        self.slept: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        self.now += max(0.0, seconds)


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------

def make_settings(tmp_path, **overrides) -> Settings:
    """Settings with zero delays and files under `tmp_path`."""
    values = dict(
        NETWORK='arbitrum-sepolia',
        CONTRACT_ADDRESS=CONTRACT_ADDRESS,
        FUNDING_PRIVATE_KEY=FUNDING_KEY,
        ELECTION_BOTS=2,
        ELIGIBLE_VOTER_BOTS=8,
        INELIGIBLE_VOTER_BOTS=4,
        MAX_CONCURRENT_OPERATIONS=3,
        REQUEST_DELAY_SECONDS=0,
        FUNDING_DELAY_SECONDS=0,
        ELECTION_BATCH_DELAY_SECONDS=0,
        BATCH_DELAY_SECONDS=0,
        MAX_RETRIES=3,
        RETRY_BACKOFF_BASE_SECONDS=0,
        RETRY_BACKOFF_CAP_SECONDS=0,
        VOTE_RETRY_DELAY_MIN_SECONDS=0,
        VOTE_RETRY_DELAY_MAX_SECONDS=0,
        TX_TIMEOUT_SECONDS=5,
        WALLET_SEED='unit-test-seed',
        WALLETS_FILE=str(tmp_path / 'data' / 'wallets.json'),
        REPORTS_DIR=str(tmp_path / 'reports'),
        SAVE_REPORTS=False,
        SHOW_PROGRESS=False,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings for a small run: 2 creators, 8 eligible, 4 ineligible."""
    return make_settings(tmp_path)


@pytest.fixture
def settings_factory(tmp_path):
    """Build settings with overrides on top of the test defaults."""
    def _make(**overrides) -> Settings:
        return make_settings(tmp_path, **overrides)
    return _make


@pytest.fixture
def pool(settings):
    """Deterministic identity pool matching the settings populations."""
    counts = PopulationCounts(settings.ELECTION_BOTS, settings.ELIGIBLE_VOTER_BOTS,
                              settings.INELIGIBLE_VOTER_BOTS)
    return WalletManager(settings).generate(counts)


@pytest.fixture
def web3() -> FakeWeb3:
    return FakeWeb3()


@pytest.fixture
def contract() -> FakeContract:
    return FakeContract()


@pytest.fixture
def api() -> FakeAPIClient:
    return FakeAPIClient()


@pytest.fixture
def chain(api) -> FakeChain:
    return FakeChain(api.issued_keys)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def open_election(clock) -> ElectionSpec:
    """Election that opened a minute ago and runs for another hour."""
    return ElectionSpec(
        uuid='elec-open',
        title='Student Council Election',
        positions=[
            Position('President', ['Mary Smith', 'John Brown']),
            Position('Treasurer', ['Linda Lee', 'Mark Young', 'Susan Clark']),
        ],
        start_time=int(clock.now) - 60,
        end_time=int(clock.now) + 3600,
        total_voters=8,
        merkle_root=MERKLE_ROOT,
        on_chain_id=1,
    )


@pytest.fixture
def merkle_root() -> str:
    return MERKLE_ROOT


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers",
        "unit: fast tests with no network access"
    )
    config.addinivalue_line(
        "markers",
        "integration: tests that drive several components together through fakes"
    )
