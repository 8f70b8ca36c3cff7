"""Tests for identity provisioning, persistence and funding."""

import json

import pytest
from web3.exceptions import TimeExhausted

from safevote_bots.concurrency import CancelToken
from safevote_bots.errors import ConfigurationError, ProvisioningError
from safevote_bots.models import IdentityPool, PopulationCounts, Role
from safevote_bots.wallet_manager import WalletManager


class RecordingAccount:
    """Wraps the funding account to capture every signed transaction."""

    def __init__(self, account):
        self._account = account
        self.address = account.address
        self.signed = []

    def sign_transaction(self, tx):
        self.signed.append(dict(tx))
        return self._account.sign_transaction(tx)


async def initialized_manager(settings, web3, cancel_token=None):
    manager = WalletManager(settings, cancel_token)
    await manager.initialize(web3)
    manager.funding_account = RecordingAccount(manager.funding_account)
    return manager


@pytest.mark.unit
class TestGeneration:
    """Identity generation and persistence."""

    def test_generate_counts(self, settings):
        pool = WalletManager(settings).generate(PopulationCounts(2, 8, 4))
        assert [i.index for i in pool.eligible] == list(range(8))
        assert all(i.role is Role.INELIGIBLE_VOTER for i in pool.ineligible)
        assert len(set(a.lower() for a in pool.addresses())) == 14

    def test_seeded_generation_is_reproducible(self, settings):
        first = WalletManager(settings).generate(PopulationCounts(1, 5, 5))
        second = WalletManager(settings).generate(PopulationCounts(1, 5, 5))
        assert first.addresses() == second.addresses()

    def test_unseeded_generation_is_random(self, settings_factory):
        settings = settings_factory(WALLET_SEED=None)
        first = WalletManager(settings).generate(PopulationCounts(1, 5, 5))
        second = WalletManager(settings).generate(PopulationCounts(1, 5, 5))
        assert set(first.addresses()).isdisjoint(second.addresses())

    def test_existing_slots_are_kept(self, settings, pool):
        pool.eligible[0].funded = True
        pool.eligible[0].funding_tx = '0x' + 'aa' * 32
        grown = WalletManager(settings).generate(PopulationCounts(2, 10, 4), existing=pool)

        assert len(grown.eligible) == 10
        assert grown.eligible[0].funded
        assert grown.eligible[0].funding_tx == '0x' + 'aa' * 32

    def test_private_key_matches_address(self, pool):
        identity = pool.creators[1]
        assert WalletManager.get_account(identity).address == identity.address

    def test_persist_and_load(self, settings, pool):
        manager = WalletManager(settings)
        pool.ineligible[2].funded = True
        manager.persist(pool)

        loaded = manager.load()
        assert loaded.addresses() == pool.addresses()
        assert loaded.ineligible[2].funded
        with open(settings.WALLETS_FILE) as f:
            assert set(json.load(f)) == {'election_creators', 'eligible_voters', 'ineligible_voters'}

    def test_load_missing_file(self, settings):
        assert WalletManager(settings).load() is None

    def test_load_corrupt_file(self, settings, pool):
        manager = WalletManager(settings)
        manager.persist(pool)
        with open(settings.WALLETS_FILE, 'w') as f:
            f.write('{not json')
        with pytest.raises(ProvisioningError):
            manager.load()

    def test_required_funds(self, pool):
        pool.creators[0].funded = True
        assert WalletManager.required_funds(pool, 10) == (len(pool) - 1) * 10

    def test_select_range_spans_roles(self, pool):
        selected = pool.select_range(1, 4)
        assert selected == list(pool)[1:4]
        assert selected[0] is pool.creators[1]
        assert selected[-1] is pool.eligible[1]

    def test_select_range_rejects_reversed_bounds(self, pool):
        with pytest.raises(ValueError):
            pool.select_range(5, 2)


@pytest.mark.unit
@pytest.mark.asyncio
class TestFunding:
    """Funding transfers against the fake node."""

    async def test_initialize_requires_key(self, settings_factory, web3):
        with pytest.raises(ConfigurationError):
            await WalletManager(settings_factory(FUNDING_PRIVATE_KEY=None)).initialize(web3)

    async def test_initialize_rejects_bad_key(self, settings_factory, web3):
        with pytest.raises(ConfigurationError):
            await WalletManager(settings_factory(FUNDING_PRIVATE_KEY='0x1234')).initialize(web3)

    async def test_funds_every_unfunded_identity(self, settings, web3, pool):
        manager = await initialized_manager(settings, web3)
        report = await manager.fund(pool)

        assert report.successful == len(pool)
        assert report.failed == 0
        assert len(web3.eth.sent) == len(pool)
        assert all(identity.funded and identity.funding_tx for identity in pool)
        assert manager.load().unfunded() == []

    async def test_funding_is_idempotent(self, settings, web3, pool):
        manager = await initialized_manager(settings, web3)
        await manager.fund(pool)
        sent = len(web3.eth.sent)

        report = await manager.fund(pool)

        assert len(web3.eth.sent) == sent
        assert report.skipped == len(pool)
        assert report.successful == 0

    async def test_funds_only_the_selected_range(self, settings, web3, pool):
        manager = await initialized_manager(settings, web3)
        selected = pool.select_range(0, 3)

        report = await manager.fund(pool, identities=selected)

        assert report.successful == 3
        assert len(web3.eth.sent) == 3
        assert all(identity.funded for identity in selected)
        assert len(manager.load().unfunded()) == len(pool) - 3

    async def test_timed_out_transfer_that_mined_is_not_resent(self, settings, web3, pool):
        manager = await initialized_manager(settings, web3)
        target = pool.creators[0]
        original_wait = web3.eth.wait_for_transaction_receipt
        calls = []

        async def slow_wait(tx_hash, timeout=120, poll_latency=0.1):
            calls.append(tx_hash)
            if len(calls) == 1:
                raise TimeExhausted('not yet')
            return await original_wait(tx_hash, timeout=timeout, poll_latency=poll_latency)

        web3.eth.wait_for_transaction_receipt = slow_wait
        result = await manager._fund_one(target, 10 ** 15, 10 ** 9)

        assert result.success
        assert len(web3.eth.sent) == 1
        assert target.funding_tx == web3.eth.sent[0]

    async def test_unconfirmed_transfer_is_replaced_with_same_nonce(self, settings, web3, pool):
        manager = await initialized_manager(settings, web3)
        web3.eth.unmined = 1
        result = await manager._fund_one(pool.eligible[0], 10 ** 15, 10 ** 9)

        signed = manager.funding_account.signed
        assert result.success
        assert len(signed) == 2
        assert signed[0]['nonce'] == signed[1]['nonce']
        assert signed[1]['gasPrice'] > signed[0]['gasPrice']

    async def test_nonce_error_is_retried(self, settings, web3, pool):
        manager = await initialized_manager(settings, web3)
        web3.eth.send_errors = [ValueError('nonce too low')]
        result = await manager._fund_one(pool.eligible[1], 10 ** 15, 10 ** 9)
        assert result.success
        assert result.attempts == 2

    async def test_non_retryable_failure_is_recorded(self, settings, web3, pool):
        manager = await initialized_manager(settings, web3)
        web3.eth.send_errors = [ValueError('insufficient funds for gas * price + value')]
        report = await manager.fund(pool)

        assert report.failed == 1
        assert report.successful == len(pool) - 1
        failed = [i for i in pool if not i.funded]
        assert len(failed) == 1
        assert 'insufficient funds' in failed[0].funding_error
        assert len(manager.funding_account.signed) == len(pool)

    async def test_parallel_mode_uses_distinct_nonces(self, settings_factory, web3, pool):
        settings = settings_factory(FUNDING_MODE='parallel', MAX_CONCURRENT_OPERATIONS=4)
        manager = await initialized_manager(settings, web3)
        report = await manager.fund(pool)

        nonces = [tx['nonce'] for tx in manager.funding_account.signed]
        assert report.successful == len(pool)
        assert sorted(nonces) == list(range(len(pool)))

    async def test_cancelled_funding_persists_pool(self, settings, web3, pool):
        token = CancelToken()
        token.cancel('operator interrupt')
        manager = await initialized_manager(settings, web3, cancel_token=token)

        report = await manager.fund(pool)

        assert web3.eth.sent == []
        assert report.successful == 0
        assert isinstance(manager.load(), IdentityPool)

    async def test_check_all_balances(self, settings, web3, pool):
        manager = await initialized_manager(settings, web3)
        balances = await manager.check_all_balances(pool, sample=2)
        assert set(balances) == {role.value for role in Role}
        assert len(balances[Role.ELIGIBLE_VOTER.value]) == 2
        assert balances[Role.CREATOR.value][0][1] == 100
