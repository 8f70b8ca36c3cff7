"""
SafeVote contract client.

Wraps the contract binding to create elections, cast votes and read state.
Every transaction is signed locally by the calling identity, given a
buffered gas limit and awaited against TX_TIMEOUT_SECONDS. A timeout is
raised as ChainTimeout because the transaction may still be mined.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from eth_account.signers.local import LocalAccount
from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TimeExhausted, TransactionNotFound
from web3.logs import DISCARD

from . import metrics
from .config import Settings
from .contract_abi import ELECTION_FIELDS, SAFE_VOTE_V2_ABI
from .errors import (
    ChainError,
    ChainTimeout,
    ConfigurationError,
    ErrorKind,
    InvalidVoteInput,
    to_chain_error,
)
from .gas import apply_gas_buffer, sample_gas_price
from .models import ElectionSpec, Position

logger = logging.getLogger(__name__)

ZERO_ADDRESS = '0x0000000000000000000000000000000000000000'
BYTES32_PATTERN = re.compile(r'^0x[0-9a-fA-F]{64}$')


@dataclass
class CreationReceipt:
    tx_hash: str
    block_number: int
    on_chain_id: int
    gas_used: int


@dataclass
class VoteReceipt:
    tx_hash: str
    block_number: int
    gas_used: int


@dataclass
class ElectionResults:
    position_index: int
    candidates: List[str] = field(default_factory=list)
    votes: List[int] = field(default_factory=list)

    def as_dict(self) -> Dict[str, int]:
        return dict(zip(self.candidates, self.votes))


class BlockchainService:
    """Contract client shared by every agent of a run."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.web3 = None
        self.contract = None
        self.chain_id: Optional[int] = None
        self.poll_interval = 1.0

    @property
    def network(self):
        return self.settings.network

    async def initialize(self, web3=None, contract=None) -> None:
        """
        Connect to the configured network and bind the contract.

        Raises:
            ConfigurationError: If NETWORK is unknown or CONTRACT_ADDRESS is not configured
        """
        if not self.settings.CONTRACT_ADDRESS:
            raise ConfigurationError('CONTRACT_ADDRESS not set in environment')

        logger.info(f"Connecting to {self.network.name}...")
        self.web3 = web3 or AsyncWeb3(AsyncHTTPProvider(self.network.rpc_url))

        try:
            block_number = await self.web3.eth.block_number
            self.chain_id = await self.web3.eth.chain_id
        except Exception as e:
            raise to_chain_error(e, f"Cannot reach {self.network.rpc_url}") from e

        if self.chain_id != self.network.chain_id:
            logger.warning(f"RPC reports chain id {self.chain_id}, expected {self.network.chain_id}")
        logger.info(f"Connected to blockchain (block: {block_number})")

        self.contract = contract or self.web3.eth.contract(
            address=Web3.to_checksum_address(self.settings.CONTRACT_ADDRESS),
            abi=SAFE_VOTE_V2_ABI,
        )
        logger.info(f"Contract initialized at {self.settings.CONTRACT_ADDRESS}")

    def _require_initialized(self) -> None:
        if self.contract is None:
            raise ConfigurationError("BlockchainService.initialize() must be called first")

    async def get_gas_price(self) -> int:
        return await sample_gas_price(
            self.web3, self.settings.GAS_PRICE_MULTIPLIER, self.settings.FALLBACK_GAS_PRICE_GWEI
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def create_election(self, account: LocalAccount, spec: ElectionSpec) -> CreationReceipt:
        """
        Deploy `spec` to the contract and return its on-chain id.

        Raises:
            ChainError: MISSING_EVENT if the receipt has no ElectionCreatedV2 event,
                REVERTED on a failed transaction, or the classified RPC error
            ChainTimeout: If confirmation does not arrive in time
        """
        self._require_initialized()
        if not spec.merkle_root:
            raise ChainError(f"Election {spec.uuid} has no Merkle root", ErrorKind.INVALID_INPUT)

        logger.info(f"Creating election on-chain: {spec.title}")
        function = self.contract.functions.createElection(
            spec.title,
            spec.description,
            spec.location,
            spec.start_time,
            spec.end_time,
            spec.total_voters,
            HexBytes(spec.merkle_root),
            spec.is_public,
            spec.allow_anonymous,
            spec.allow_delegation,
            [(p.title, list(p.candidates), p.max_selections) for p in spec.positions],
        )

        tx_hash, receipt = await self._transact(account, function, self.settings.ELECTION_GAS_LIMIT)

        events = self.contract.events.ElectionCreatedV2().process_receipt(receipt, errors=DISCARD)
        if not events:
            raise ChainError(
                "Could not extract election ID from transaction receipt", ErrorKind.MISSING_EVENT, tx_hash
            )

        result = CreationReceipt(
            tx_hash=tx_hash,
            block_number=receipt['blockNumber'],
            on_chain_id=int(events[0]['args']['electionId']),
            gas_used=receipt['gasUsed'],
        )
        metrics.gas_used.labels(phase='create_election').inc(result.gas_used)
        logger.info(f"Election deployed on-chain: id {result.on_chain_id}, block {result.block_number}, "
                    f"gas {result.gas_used}")
        return result

    async def cast_vote(
        self,
        account: LocalAccount,
        on_chain_id: int,
        voter_key: str,
        merkle_proof: Sequence[str],
        selections: Sequence[Sequence[int]],
        delegate: Optional[str] = None,
        position_count: Optional[int] = None,
    ) -> VoteReceipt:
        """
        Submit a vote.

        Input shape is validated first, so malformed input costs no gas.

        Raises:
            InvalidVoteInput: On a malformed key, proof or selection array
            ChainTimeout: If confirmation does not arrive in time
            ChainError: On revert or another RPC failure
        """
        self._require_initialized()
        self.validate_vote_input(voter_key, merkle_proof, selections, position_count)

        logger.info(f"Casting vote for election {on_chain_id}")
        logger.debug(f"Merkle proof length: {len(merkle_proof)}, votes: {selections}")
        function = self.contract.functions.vote(
            on_chain_id,
            HexBytes(voter_key),
            [HexBytes(node) for node in merkle_proof],
            [[int(choice) for choice in position] for position in selections],
            Web3.to_checksum_address(delegate) if delegate else ZERO_ADDRESS,
        )

        tx_hash, receipt = await self._transact(account, function, self.settings.VOTE_GAS_LIMIT)
        result = VoteReceipt(tx_hash=tx_hash, block_number=receipt['blockNumber'], gas_used=receipt['gasUsed'])
        metrics.gas_used.labels(phase='vote').inc(result.gas_used)
        logger.info(f"Vote confirmed: block {result.block_number}, gas {result.gas_used}")
        return result

    @staticmethod
    def validate_vote_input(
        voter_key: Any,
        merkle_proof: Any,
        selections: Any,
        position_count: Optional[int] = None,
    ) -> None:
        """Raise InvalidVoteInput unless the vote arguments are well-formed."""
        if not isinstance(voter_key, str) or not BYTES32_PATTERN.match(voter_key):
            raise InvalidVoteInput(f"Invalid voterKey format: {voter_key!r}")

        if not isinstance(merkle_proof, (list, tuple)):
            raise InvalidVoteInput("Merkle proof must be an array")
        if not merkle_proof:
            raise InvalidVoteInput("Merkle proof is empty - voter may not be registered")
        for node in merkle_proof:
            if not isinstance(node, str) or not BYTES32_PATTERN.match(node):
                raise InvalidVoteInput(f"Invalid Merkle proof node: {node!r}")

        if not isinstance(selections, (list, tuple)):
            raise InvalidVoteInput("Votes must be an array")
        if position_count is not None and len(selections) != position_count:
            raise InvalidVoteInput(f"Expected votes for {position_count} positions, got {len(selections)}")
        for position in selections:
            if not isinstance(position, (list, tuple)):
                raise InvalidVoteInput("Each position vote must be an array")
            if not position:
                raise InvalidVoteInput("Each position vote must select at least one candidate")
            for choice in position:
                if isinstance(choice, bool) or not isinstance(choice, int) or choice < 0:
                    raise InvalidVoteInput(f"Invalid candidate index: {choice!r}")

    async def _transact(self, account: LocalAccount, function, fallback_gas: int) -> Tuple[str, Any]:
        """Estimate, sign, send and confirm one contract call."""
        gas_price = await self.get_gas_price()

        try:
            estimate = await function.estimate_gas({'from': account.address})
            gas_limit = apply_gas_buffer(estimate, self.settings.GAS_LIMIT_BUFFER)
        except Exception as e:
            logger.warning(f"Gas estimation failed, using default limit {fallback_gas}: {e}")
            gas_limit = fallback_gas
        logger.debug(f"Gas limit: {gas_limit}, gas price: {gas_price}")

        try:
            nonce = await self.web3.eth.get_transaction_count(account.address, 'pending')
            tx = await function.build_transaction({
                'from': account.address,
                'nonce': nonce,
                'gas': gas_limit,
                'gasPrice': gas_price,
                'chainId': self.chain_id,
            })
            signed = account.sign_transaction(tx)
            tx_hash = HexBytes(await self.web3.eth.send_raw_transaction(signed.raw_transaction)).to_0x_hex()
        except Exception as e:
            raise to_chain_error(e, "Transaction submission failed") from e

        logger.info(f"Transaction submitted: {tx_hash}")
        receipt = await self._await_confirmation(tx_hash)
        return tx_hash, receipt

    async def _await_confirmation(self, tx_hash: str):
        """Wait for the receipt and the configured confirmations, bounded by TX_TIMEOUT_SECONDS."""
        confirmations = self.settings.confirmations
        timeout = self.settings.TX_TIMEOUT_SECONDS

        async def wait():
            receipt = await self.web3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout, poll_latency=self.poll_interval
            )
            if receipt['status'] != 1:
                raise ChainError(f"Transaction {tx_hash} reverted", ErrorKind.REVERTED, tx_hash)
            while confirmations > 1:
                head = await self.web3.eth.block_number
                if head - receipt['blockNumber'] + 1 >= confirmations:
                    break
                await asyncio.sleep(self.poll_interval)
            return receipt

        try:
            return await asyncio.wait_for(wait(), timeout=timeout)
        except ChainError:
            raise
        except (asyncio.TimeoutError, TimeExhausted) as e:
            raise ChainTimeout(f"Transaction confirmation timeout after {timeout}s", tx_hash) from e
        except Exception as e:
            raise to_chain_error(e, "Waiting for confirmation failed", tx_hash) from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_election(self, on_chain_id: int) -> Dict[str, Any]:
        self._require_initialized()
        try:
            raw = await self.contract.functions.getElection(on_chain_id).call()
        except Exception as e:
            raise to_chain_error(e, f"Failed to get election {on_chain_id}") from e

        election = dict(zip(ELECTION_FIELDS, raw))
        election['positions'] = [
            Position(title=p[0], candidates=list(p[1]), max_selections=int(p[2]))
            for p in election.get('positions', [])
        ]
        merkle_root = election.get('voter_merkle_root')
        if isinstance(merkle_root, (bytes, bytearray)):
            election['voter_merkle_root'] = HexBytes(merkle_root).to_0x_hex()
        return election

    async def get_election_results(self, on_chain_id: int, position_index: int) -> ElectionResults:
        self._require_initialized()
        try:
            candidates, votes = await self.contract.functions.getElectionResults(on_chain_id, position_index).call()
        except Exception as e:
            raise to_chain_error(e, f"Failed to get results for election {on_chain_id}") from e
        return ElectionResults(position_index, list(candidates), [int(v) for v in votes])

    async def get_total_elections(self) -> int:
        self._require_initialized()
        try:
            return int(await self.contract.functions.getTotalElections().call())
        except Exception as e:
            raise to_chain_error(e, "Failed to get total elections") from e

    async def has_voter_key_been_used(self, on_chain_id: int, voter_key: str) -> bool:
        self._require_initialized()
        key_hash = Web3.solidity_keccak(['bytes32'], [voter_key])
        try:
            return bool(await self.contract.functions.usedVoterKeys(on_chain_id, key_hash).call())
        except Exception as e:
            raise to_chain_error(e, "Failed to check voter key status") from e

    async def get_transaction_receipt(self, tx_hash: str):
        """Receipt of `tx_hash`, or None if it has not been mined."""
        try:
            return await self.web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise to_chain_error(e, f"Failed to get receipt for {tx_hash}", tx_hash) from e

    async def get_block_number(self) -> int:
        return await self.web3.eth.block_number

    def get_network_info(self) -> Dict[str, Any]:
        return {
            'name': self.network.name,
            'chain_id': self.network.chain_id,
            'rpc_url': self.network.rpc_url,
            'explorer': self.network.explorer,
        }
