"""
Identity provisioning: generate, persist, load and fund test wallets.

The funding identity is the only account shared by every transfer, so all
funding goes through one WalletManager. Sequential mode reads the pending
nonce before each transfer; parallel mode hands out nonces from a
NonceAllocator owned by the manager.
"""

import asyncio
import json
import logging
import os
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from eth_account import Account
from eth_account.signers.local import LocalAccount
from hexbytes import HexBytes
from tqdm import tqdm
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound

from . import metrics
from .concurrency import CancelToken, run_in_windows
from .config import Settings
from .errors import (
    ChainError,
    ConfigurationError,
    ErrorKind,
    ProvisioningError,
    RunCancelled,
    to_chain_error,
)
from .gas import sample_gas_price
from .models import (
    FundingReport,
    FundingResult,
    Identity,
    IdentityPool,
    PopulationCounts,
    Role,
)
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

TRANSFER_GAS = 21000
# Replacement transactions must outbid the pending one by at least 10%
REPLACEMENT_BUMP = Decimal('1.125')


class NonceAllocator:
    """Hands out consecutive nonces for one sender."""

    def __init__(self, web3, address: str):
        self.web3 = web3
        self.address = address
        self._lock = asyncio.Lock()
        self._next: Optional[int] = None

    async def next(self) -> int:
        async with self._lock:
            if self._next is None:
                self._next = await self.web3.eth.get_transaction_count(self.address, 'pending')
            nonce = self._next
            self._next += 1
            return nonce

    async def reset(self) -> None:
        """Forget the cached nonce so the next call re-reads it from the node."""
        async with self._lock:
            self._next = None


class WalletManager:
    """Owns the identity pool file and the operator funding account."""

    def __init__(self, settings: Settings, cancel_token: Optional[CancelToken] = None):
        self.settings = settings
        self.cancel_token = cancel_token or CancelToken()
        self.retry_policy = RetryPolicy.from_settings(settings)
        self.web3 = None
        self.funding_account: Optional[LocalAccount] = None
        self.chain_id: Optional[int] = None

    async def initialize(self, web3=None) -> None:
        """
        Connect to the network and load the funding account.

        Raises:
            ConfigurationError: If FUNDING_PRIVATE_KEY is not configured
        """
        if not self.settings.FUNDING_PRIVATE_KEY:
            raise ConfigurationError('FUNDING_PRIVATE_KEY not set in environment')

        self.web3 = web3 or AsyncWeb3(AsyncHTTPProvider(self.settings.network.rpc_url))
        try:
            self.funding_account = Account.from_key(self.settings.FUNDING_PRIVATE_KEY)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid FUNDING_PRIVATE_KEY: {e}") from e

        self.chain_id = await self.web3.eth.chain_id
        balance = await self.check_balance(self.funding_account.address)
        logger.info(f"Funding wallet: {self.funding_account.address}")
        logger.info(f"Funding wallet balance: {balance} {self.settings.network.symbol}")

    # ------------------------------------------------------------------
    # Generation and persistence
    # ------------------------------------------------------------------

    def _new_account(self, role: Role, index: int) -> LocalAccount:
        seed = self.settings.WALLET_SEED
        if seed:
            return Account.from_key(Web3.keccak(text=f"{seed}:{role.value}:{index}"))
        return Account.create()

    def generate(self, counts: PopulationCounts, existing: Optional[IdentityPool] = None) -> IdentityPool:
        """
        Build a pool with `counts` identities per role.

        Slots already present in `existing` are kept untouched, including their
        funding state; only missing slots get new key material.

        Raises:
            ProvisioningError: If key material cannot be created
        """
        pool = existing or IdentityPool()
        created = 0

        for role in Role:
            identities = pool.by_role(role)
            for index in range(counts.for_role(role)):
                if pool.get(role, index) is not None:
                    continue
                try:
                    account = self._new_account(role, index)
                except Exception as e:
                    raise ProvisioningError(f"Failed to create key for {role.value}#{index}: {e}") from e
                identities.append(Identity(
                    role=role,
                    index=index,
                    address=account.address,
                    private_key=HexBytes(account.key).to_0x_hex(),
                ))
                created += 1
            identities.sort(key=lambda identity: identity.index)

        try:
            pool.validate()
        except ValueError as e:
            raise ProvisioningError(str(e)) from e

        logger.info(
            f"Identity pool ready: {len(pool.creators)} creators, {len(pool.eligible)} eligible, "
            f"{len(pool.ineligible)} ineligible ({created} newly generated)"
        )
        return pool

    def persist(self, pool: IdentityPool) -> None:
        """Write the pool atomically to WALLETS_FILE."""
        path = self.settings.WALLETS_FILE
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        tmp_path = f"{path}.tmp"
        with open(tmp_path, 'w') as f:
            json.dump(pool.to_dict(), f, indent=2)
        os.replace(tmp_path, path)
        logger.debug(f"Saved {len(pool)} identities to {path}")

    def load(self) -> Optional[IdentityPool]:
        """
        Read the pool from WALLETS_FILE.

        Returns:
            The stored pool, or None when no pool has been saved yet

        Raises:
            ProvisioningError: If the file exists but cannot be parsed
        """
        path = self.settings.WALLETS_FILE
        if not os.path.exists(path):
            logger.info(f"No saved identities at {path}")
            return None

        try:
            with open(path, 'r') as f:
                pool = IdentityPool.from_dict(json.load(f))
        except (OSError, ValueError, KeyError) as e:
            raise ProvisioningError(f"Failed to load identities from {path}: {e}") from e

        logger.info(f"Loaded {len(pool)} identities from {path}")
        return pool

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    @staticmethod
    def required_funds(pool: IdentityPool, amount_wei: int) -> int:
        """Total wei needed to fund every identity not yet funded."""
        return len(pool.unfunded()) * amount_wei

    async def fund(self, pool: IdentityPool, amount: Optional[Decimal] = None,
                   identities: Optional[List[Identity]] = None) -> FundingReport:
        """
        Send `amount` native units to every unfunded identity.

        When `identities` is given only those members of the pool are
        considered. Already-funded identities are skipped. Individual failures are
        recorded and never abort the pass. The pool is persisted afterwards
        even if the pass is cancelled.
        """
        self._require_initialized()
        amount = amount if amount is not None else self.settings.BOT_WALLET_FUNDING
        amount_wei = Web3.to_wei(amount, 'ether')
        report = FundingReport()

        to_fund = []
        for identity in (identities if identities is not None else pool):
            if identity.funded:
                report.add(FundingResult(address=identity.address, success=True, skipped=True,
                                         tx_hash=identity.funding_tx))
                metrics.funding_transfers.labels(status='skipped').inc()
            else:
                to_fund.append(identity)

        logger.info(f"Funding {len(to_fund)} wallets with {amount} {self.settings.network.symbol} each "
                    f"({report.skipped} already funded)")
        if not to_fund:
            return report

        required = len(to_fund) * amount_wei
        balance = await self.web3.eth.get_balance(self.funding_account.address)
        if balance < required:
            logger.warning(
                f"Funding wallet may be short: balance {Web3.from_wei(balance, 'ether')}, "
                f"required {Web3.from_wei(required, 'ether')} (continuing)"
            )

        gas_price = await sample_gas_price(
            self.web3, self.settings.GAS_PRICE_MULTIPLIER, self.settings.FALLBACK_GAS_PRICE_GWEI
        )

        try:
            if self.settings.FUNDING_MODE == 'parallel':
                await self._fund_parallel(to_fund, amount_wei, gas_price, report)
            else:
                await self._fund_sequential(to_fund, amount_wei, gas_price, report)
        finally:
            self.persist(pool)

        logger.info(f"Funding complete: {report.successful} funded, {report.failed} failed, "
                    f"{report.skipped} skipped")
        return report

    async def _fund_sequential(self, identities: List[Identity], amount_wei: int, gas_price: int,
                               report: FundingReport) -> None:
        progress = tqdm(total=len(identities), desc="Funding", unit="wallet",
                        disable=not self.settings.SHOW_PROGRESS)
        try:
            for position, identity in enumerate(identities):
                if self.cancel_token.cancelled:
                    logger.warning(f"Funding cancelled with {len(identities) - position} wallets left")
                    break
                report.add(await self._fund_one(identity, amount_wei, gas_price))
                progress.update(1)

                if position < len(identities) - 1 and self.settings.FUNDING_DELAY_SECONDS > 0:
                    try:
                        await self.cancel_token.sleep(self.settings.FUNDING_DELAY_SECONDS)
                    except RunCancelled:
                        continue
        finally:
            progress.close()

    async def _fund_parallel(self, identities: List[Identity], amount_wei: int, gas_price: int,
                             report: FundingReport) -> None:
        allocator = NonceAllocator(self.web3, self.funding_account.address)

        async def worker(identity: Identity) -> FundingResult:
            return await self._fund_one(identity, amount_wei, gas_price, allocator)

        windows = await run_in_windows(
            identities,
            worker,
            window_size=self.settings.MAX_CONCURRENT_OPERATIONS,
            delay=self.settings.FUNDING_DELAY_SECONDS,
            cancel_token=self.cancel_token,
        )
        offset = 0
        for window in windows:
            for identity, result in zip(identities[offset:offset + window.size], window.results):
                if isinstance(result, BaseException):
                    result = FundingResult(address=identity.address, success=False, error=str(result))
                report.add(result)
            offset += window.size

    async def _fund_one(self, identity: Identity, amount_wei: int, gas_price: int,
                        allocator: Optional[NonceAllocator] = None) -> FundingResult:
        """Fund one identity, retrying retryable failures with backoff."""
        sent: List[str] = []
        nonce: Optional[int] = None
        last_error: Optional[ChainError] = None
        attempt = 0

        for attempt in range(self.retry_policy.max_attempts):
            try:
                mined = await self._find_mined(sent)
                if mined:
                    return self._mark_funded(identity, mined, attempt + 1)

                if sent and nonce is not None:
                    # Replace the unconfirmed transfer instead of sending a second one
                    gas_price = int(Decimal(gas_price) * REPLACEMENT_BUMP)
                elif allocator is not None:
                    nonce = await allocator.next()
                else:
                    nonce = await self.web3.eth.get_transaction_count(self.funding_account.address, 'pending')

                tx = {
                    'to': identity.address,
                    'value': amount_wei,
                    'gas': TRANSFER_GAS,
                    'gasPrice': gas_price,
                    'nonce': nonce,
                    'chainId': self.chain_id,
                }
                signed = self.funding_account.sign_transaction(tx)
                tx_hash = HexBytes(await self.web3.eth.send_raw_transaction(signed.raw_transaction)).to_0x_hex()
                sent.append(tx_hash)
                logger.debug(f"Funding tx for {identity.address}: {tx_hash}")

                receipt = await self.web3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=self.settings.TX_TIMEOUT_SECONDS
                )
                if receipt['status'] != 1:
                    raise ChainError("Funding transfer reverted", ErrorKind.REVERTED, tx_hash)
                return self._mark_funded(identity, tx_hash, attempt + 1)

            except Exception as e:
                last_error = to_chain_error(e, "Funding transfer", sent[-1] if sent else None)

            if last_error.kind is ErrorKind.NONCE:
                nonce = None
                if allocator is not None:
                    await allocator.reset()
            elif last_error.kind is ErrorKind.UNDERPRICED:
                gas_price = int(Decimal(gas_price) * REPLACEMENT_BUMP)

            if not last_error.retryable or not self.retry_policy.should_retry(attempt):
                break

            delay = self.retry_policy.backoff(attempt)
            logger.warning(
                f"Funding {identity.address} failed ({last_error.kind.value}), "
                f"retry {attempt + 1}/{self.retry_policy.max_retries} in {delay:.1f}s: {last_error}"
            )
            try:
                await self.cancel_token.sleep(delay)
            except RunCancelled:
                break

        # A transfer that timed out may still have landed
        try:
            mined = await self._find_mined(sent)
        except Exception as e:
            logger.warning(f"Could not re-check funding transfers for {identity.address}: {e}")
            mined = None
        if mined:
            return self._mark_funded(identity, mined, attempt + 1)

        error = str(last_error) if last_error else "cancelled"
        identity.funding_error = error
        metrics.funding_transfers.labels(status='failed').inc()
        logger.error(f"Failed to fund {identity.address}: {error}")
        return FundingResult(address=identity.address, success=False, attempts=attempt + 1, error=error)

    async def _find_mined(self, tx_hashes: List[str]) -> Optional[str]:
        """Return the hash of a successfully mined transfer among `tx_hashes`."""
        for tx_hash in tx_hashes:
            try:
                receipt = await self.web3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                continue
            if receipt and receipt['status'] == 1:
                return tx_hash
        return None

    def _mark_funded(self, identity: Identity, tx_hash: str, attempts: int) -> FundingResult:
        identity.funded = True
        identity.funding_tx = tx_hash
        identity.funding_error = None
        metrics.funding_transfers.labels(status='success').inc()
        logger.info(f"Funded {identity.role.value}#{identity.index} {identity.address}: {tx_hash}")
        return FundingResult(address=identity.address, success=True, tx_hash=tx_hash, attempts=attempts)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def check_balance(self, address: str) -> Decimal:
        """Balance of `address` in native units."""
        self._require_initialized()
        balance = await self.web3.eth.get_balance(address)
        return Decimal(Web3.from_wei(balance, 'ether'))

    async def check_all_balances(self, pool: IdentityPool, sample: int = 5) -> Dict[str, List[Tuple[str, Decimal]]]:
        """Balances of the first `sample` identities of each role."""
        balances = {}
        for role in Role:
            balances[role.value] = [
                (identity.address, await self.check_balance(identity.address))
                for identity in pool.by_role(role)[:sample]
            ]
        return balances

    @staticmethod
    def get_account(identity: Identity) -> LocalAccount:
        return Account.from_key(identity.private_key)

    def _require_initialized(self) -> None:
        if self.web3 is None:
            raise ConfigurationError("WalletManager.initialize() must be called first")
