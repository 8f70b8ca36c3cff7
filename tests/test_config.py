"""Tests for settings, network table and run validation."""

from decimal import Decimal

import pytest

from safevote_bots.config import NETWORKS, Settings, get_network
from safevote_bots.errors import ConfigurationError


@pytest.mark.unit
class TestNetworks:
    """Static network table."""

    def test_known_networks(self):
        assert set(NETWORKS) == {'arbitrum-sepolia', 'base-sepolia', 'eth-sepolia', 'sei-testnet'}
        assert get_network('base-sepolia').chain_id == 84532

    def test_unknown_network_lists_choices(self):
        with pytest.raises(ConfigurationError) as exc_info:
            get_network('mainnet')
        assert 'arbitrum-sepolia' in str(exc_info.value)


@pytest.mark.unit
class TestSettings:
    """Settings loading and derived properties."""

    def test_constructor_values_override_defaults(self):
        settings = Settings(_env_file=None, BOT_WALLET_FUNDING='0.5', MAX_CONCURRENT_OPERATIONS=4)
        assert settings.BOT_WALLET_FUNDING == Decimal('0.5')
        assert settings.MAX_CONCURRENT_OPERATIONS == 4

    def test_rpc_url_overrides_network_default(self, settings_factory):
        settings = settings_factory(RPC_URL='http://127.0.0.1:8545')
        assert settings.network.rpc_url == 'http://127.0.0.1:8545'
        assert settings.network.chain_id == 421614
        assert NETWORKS['arbitrum-sepolia'].rpc_url != 'http://127.0.0.1:8545'

    def test_confirmations_follow_network_unless_overridden(self, settings_factory):
        assert settings_factory(NETWORK='eth-sepolia').confirmations == 2
        assert settings_factory(NETWORK='arbitrum-sepolia').confirmations == 1
        assert settings_factory(NETWORK='eth-sepolia', CONFIRMATIONS=5).confirmations == 5

    def test_total_voters(self, settings):
        assert settings.total_voters == 12


@pytest.mark.unit
class TestValidateForRun:
    """Pre-run configuration checks."""

    def test_valid_settings(self, settings):
        assert settings.validate_for_run() == []

    def test_missing_contract_and_key(self, settings_factory):
        errors = settings_factory(CONTRACT_ADDRESS=None, FUNDING_PRIVATE_KEY=None).validate_for_run()
        assert 'CONTRACT_ADDRESS not set in environment' in errors
        assert 'FUNDING_PRIVATE_KEY not set in environment' in errors

    def test_population_limits(self, settings_factory):
        errors = settings_factory(ELECTION_BOTS=0, ELIGIBLE_VOTER_BOTS=5, INELIGIBLE_VOTER_BOTS=2).validate_for_run()
        assert 'Must have at least 1 election creator bot' in errors
        assert 'Must have at least 10 total voter bots' in errors

    @pytest.mark.parametrize('percentage', [0.4, 1.1])
    def test_eligible_percentage_range(self, settings_factory, percentage):
        errors = settings_factory(ELIGIBLE_VOTER_PERCENTAGE=percentage).validate_for_run()
        assert 'Eligible voter percentage must be between 0.5 and 1.0' in errors

    def test_unknown_network(self, settings_factory):
        assert 'Unknown network: mainnet' in settings_factory(NETWORK='mainnet').validate_for_run()

    def test_concurrency_and_retry_bounds(self, settings_factory):
        errors = settings_factory(MAX_CONCURRENT_OPERATIONS=0, MAX_RETRIES=-1).validate_for_run()
        assert 'MAX_CONCURRENT_OPERATIONS must be at least 1' in errors
        assert 'MAX_RETRIES cannot be negative' in errors
