"""Configuration management for the SafeVote bot harness."""
import os
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, List, Literal, Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

load_dotenv()


@dataclass(frozen=True)
class NetworkConfig:
    """Static description of a target network."""
    key: str
    name: str
    chain_id: int
    rpc_url: str
    explorer: str
    symbol: str
    gas_price_gwei: Decimal
    confirmations: int = 1


NETWORKS: Dict[str, NetworkConfig] = {
    'arbitrum-sepolia': NetworkConfig(
        key='arbitrum-sepolia',
        name='Arbitrum Sepolia',
        chain_id=421614,
        rpc_url=os.getenv('ARBITRUM_SEPOLIA_RPC', 'https://sepolia-rollup.arbitrum.io/rpc'),
        explorer='https://sepolia.arbiscan.io',
        symbol='ETH',
        gas_price_gwei=Decimal('0.1'),
    ),
    'base-sepolia': NetworkConfig(
        key='base-sepolia',
        name='Base Sepolia',
        chain_id=84532,
        rpc_url=os.getenv('BASE_SEPOLIA_RPC', 'https://sepolia.base.org'),
        explorer='https://sepolia.basescan.org',
        symbol='ETH',
        gas_price_gwei=Decimal('0.05'),
    ),
    'eth-sepolia': NetworkConfig(
        key='eth-sepolia',
        name='Ethereum Sepolia',
        chain_id=11155111,
        rpc_url=os.getenv('ETH_SEPOLIA_RPC', 'https://rpc.sepolia.org'),
        explorer='https://sepolia.etherscan.io',
        symbol='ETH',
        gas_price_gwei=Decimal('20'),
        confirmations=2,
    ),
    'sei-testnet': NetworkConfig(
        key='sei-testnet',
        name='SEI Testnet',
        chain_id=1328,
        rpc_url=os.getenv('SEI_TESTNET_RPC', 'https://evm-rpc-arctic-1.sei-apis.com'),
        explorer='https://seitrace.com',
        symbol='SEI',
        gas_price_gwei=Decimal('0.01'),
    ),
}


def get_network(name: str) -> NetworkConfig:
    """Look up a network by key, raising ConfigurationError with the valid choices."""
    try:
        return NETWORKS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown network: {name}. Available: {', '.join(sorted(NETWORKS))}"
        ) from None


class Settings(BaseSettings):
    """Harness settings loaded from environment variables and .env."""

    model_config = SettingsConfigDict(env_file='.env', case_sensitive=True, extra='ignore')

    # Network / contract
    NETWORK: str = 'arbitrum-sepolia'
    RPC_URL: Optional[str] = None
    CONTRACT_ADDRESS: Optional[str] = None
    CONFIRMATIONS: Optional[int] = None

    # Operator funding identity
    FUNDING_PRIVATE_KEY: Optional[str] = None
    BOT_WALLET_FUNDING: Decimal = Decimal('0.01')
    FUNDING_MODE: Literal['sequential', 'parallel'] = 'sequential'
    FUNDING_DELAY_SECONDS: float = 0.2

    # Backend services
    BACKEND_API: str = 'http://localhost:3001'
    KEYGEN_API: str = 'http://localhost:3002'
    REQUEST_DELAY_SECONDS: float = 2.0
    REQUEST_TIMEOUT_SECONDS: float = 30.0

    # Populations
    ELECTION_BOTS: int = 50
    ELIGIBLE_VOTER_BOTS: int = 750
    INELIGIBLE_VOTER_BOTS: int = 250
    ELIGIBLE_VOTER_PERCENTAGE: float = 0.75

    # Batching
    MAX_CONCURRENT_OPERATIONS: int = 10
    ELECTION_BATCH_DELAY_SECONDS: float = 60.0
    BATCH_DELAY_SECONDS: float = 2.0

    # Retry configuration
    MAX_RETRIES: int = 3
    RETRY_BACKOFF_BASE_SECONDS: float = 1.0
    RETRY_BACKOFF_CAP_SECONDS: float = 10.0
    VOTE_RETRY_DELAY_MIN_SECONDS: float = 300.0
    VOTE_RETRY_DELAY_MAX_SECONDS: float = 420.0

    # Transactions / gas
    TX_TIMEOUT_SECONDS: float = 120.0
    GAS_PRICE_MULTIPLIER: float = 1.2
    GAS_LIMIT_BUFFER: float = 1.2
    ELECTION_GAS_LIMIT: int = 800_000
    VOTE_GAS_LIMIT: int = 500_000
    FALLBACK_GAS_PRICE_GWEI: Decimal = Decimal('20')

    # Identities and outputs
    WALLET_SEED: Optional[str] = None
    WALLETS_FILE: str = 'data/wallets.json'
    REPORTS_DIR: str = 'reports'
    SAVE_REPORTS: bool = True

    # Security testing
    PROBE_ONCHAIN_VOTE: bool = False

    # Observability
    METRICS_PORT: Optional[int] = None
    LOG_LEVEL: str = 'INFO'
    SHOW_PROGRESS: bool = True

    @property
    def network(self) -> NetworkConfig:
        """Resolved network, with RPC_URL taking precedence over the table."""
        network = get_network(self.NETWORK)
        if self.RPC_URL:
            return replace(network, rpc_url=self.RPC_URL)
        return network

    @property
    def confirmations(self) -> int:
        if self.CONFIRMATIONS is not None:
            return self.CONFIRMATIONS
        return self.network.confirmations

    @property
    def total_voters(self) -> int:
        return self.ELIGIBLE_VOTER_BOTS + self.INELIGIBLE_VOTER_BOTS

    def validate_for_run(self) -> List[str]:
        """
        Check the settings a full run depends on.

        Returns:
            List of configuration errors; empty when the run may start.
        """
        errors = []

        if self.NETWORK not in NETWORKS:
            errors.append(f"Unknown network: {self.NETWORK}")
        if not self.CONTRACT_ADDRESS:
            errors.append('CONTRACT_ADDRESS not set in environment')
        if not self.FUNDING_PRIVATE_KEY:
            errors.append('FUNDING_PRIVATE_KEY not set in environment')

        if self.ELECTION_BOTS < 1:
            errors.append('Must have at least 1 election creator bot')
        if self.total_voters < 10:
            errors.append('Must have at least 10 total voter bots')
        if not 0.5 <= self.ELIGIBLE_VOTER_PERCENTAGE <= 1.0:
            errors.append('Eligible voter percentage must be between 0.5 and 1.0')
        if self.BOT_WALLET_FUNDING < Decimal('0.00001'):
            errors.append('Wallet funding too low (minimum 0.00001)')

        if self.MAX_CONCURRENT_OPERATIONS < 1:
            errors.append('MAX_CONCURRENT_OPERATIONS must be at least 1')
        if self.MAX_RETRIES < 0:
            errors.append('MAX_RETRIES cannot be negative')
        if self.RETRY_BACKOFF_CAP_SECONDS < self.RETRY_BACKOFF_BASE_SECONDS:
            errors.append('RETRY_BACKOFF_CAP_SECONDS must be >= RETRY_BACKOFF_BASE_SECONDS')
        if self.VOTE_RETRY_DELAY_MAX_SECONDS < self.VOTE_RETRY_DELAY_MIN_SECONDS:
            errors.append('VOTE_RETRY_DELAY_MAX_SECONDS must be >= VOTE_RETRY_DELAY_MIN_SECONDS')

        return errors
