"""Tests for shared data models and election content generation."""

import random

import pytest

from safevote_bots.election_data import (
    CANDIDATES_RANGE,
    DURATION_RANGE,
    POSITIONS_RANGE,
    START_DELAY_RANGE,
    calculate_eligible_voters,
    generate_election,
    select_voter_set,
)
from safevote_bots.models import (
    ElectionSpec,
    FundingReport,
    FundingResult,
    Identity,
    IdentityPool,
    Position,
    ProbeResult,
    Role,
    SecurityProbe,
    Severity,
    parse_timestamp,
)


@pytest.mark.unit
class TestElectionSpec:
    """Voting window and backend record parsing."""

    def test_window_is_half_open(self):
        spec = ElectionSpec(uuid='e', title='t', positions=[], start_time=100, end_time=200)
        assert not spec.is_open(99)
        assert spec.is_open(100)
        assert spec.is_open(199)
        assert not spec.is_open(200)
        assert spec.has_ended(200)
        assert not spec.has_started(99)

    def test_from_backend_record(self):
        spec = ElectionSpec.from_dict({
            'electionId': 'elec-42',
            'title': 'Annual Board Election',
            'startTime': '2025-01-01T00:00:00Z',
            'endTime': 1735776000,
            'onChainElectionId': '9',
            'positions': [{'title': 'President', 'candidates': ['A', 'B'], 'maxSelections': 1}],
        })
        assert spec.uuid == 'elec-42'
        assert spec.start_time == 1735689600
        assert spec.end_time == 1735776000
        assert spec.on_chain_id == 9
        assert spec.positions == [Position('President', ['A', 'B'], 1)]

    def test_from_dict_reads_to_dict_output(self, open_election):
        assert ElectionSpec.from_dict(open_election.to_dict()) == open_election

    def test_record_without_identifier_is_rejected(self):
        with pytest.raises(ValueError):
            ElectionSpec.from_dict({'title': 'x', 'startTime': 1, 'endTime': 2})

    def test_parse_timestamp_forms(self):
        assert parse_timestamp(1700000000) == 1700000000
        assert parse_timestamp('1700000000') == 1700000000
        assert parse_timestamp('2023-11-14T22:13:20+00:00') == 1700000000
        with pytest.raises(ValueError):
            parse_timestamp(None)


@pytest.mark.unit
class TestIdentityPool:
    """Pool invariants and persistence format."""

    def _identity(self, role, index, address):
        return Identity(role=role, index=index, address=address, private_key='0x' + '01' * 32)

    def test_duplicate_slot_is_invalid(self):
        pool = IdentityPool(creators=[
            self._identity(Role.CREATOR, 0, '0x' + 'aa' * 20),
            self._identity(Role.CREATOR, 0, '0x' + 'bb' * 20),
        ])
        with pytest.raises(ValueError, match='Duplicate identity slot'):
            pool.validate()

    def test_shared_address_is_invalid(self):
        pool = IdentityPool(
            eligible=[self._identity(Role.ELIGIBLE_VOTER, 0, '0x' + 'aa' * 20)],
            ineligible=[self._identity(Role.INELIGIBLE_VOTER, 0, '0x' + 'AA' * 20)],
        )
        with pytest.raises(ValueError, match='more than one identity'):
            pool.validate()

    def test_persisted_layout(self, pool):
        data = pool.to_dict()
        assert set(data) == {'election_creators', 'eligible_voters', 'ineligible_voters'}
        assert len(data['eligible_voters']) == 8
        restored = IdentityPool.from_dict(data)
        assert restored.addresses() == pool.addresses()
        assert restored.find(pool.eligible[3].address.lower()) == pool.eligible[3]

    def test_unfunded_and_counts(self, pool):
        pool.creators[0].funded = True
        assert len(pool.unfunded()) == len(pool) - 1
        counts = pool.counts()
        assert (counts.creators, counts.eligible, counts.ineligible) == (2, 8, 4)


@pytest.mark.unit
class TestOutcomes:
    """Probe and funding aggregates."""

    @pytest.mark.parametrize('actual,severity,expected', [
        (ProbeResult.REJECTED_NOT_REGISTERED, Severity.NONE, True),
        (ProbeResult.REJECTED_ON_CHAIN, Severity.NONE, True),
        (ProbeResult.DATA_EXPOSED, Severity.CRITICAL, False),
        (ProbeResult.VOTE_ACCEPTED, Severity.CRITICAL, False),
        (ProbeResult.UNEXPECTED_ERROR, Severity.WARNING, None),
    ])
    def test_probe_passed(self, actual, severity, expected):
        probe = SecurityProbe(election_uuid='e', voter_address='0x1', actual=actual, severity=severity)
        assert probe.passed is expected
        assert probe.to_dict()['actual'] == actual.value

    def test_funding_report_counts(self):
        report = FundingReport()
        report.add(FundingResult(address='a', success=True, tx_hash='0x1'))
        report.add(FundingResult(address='b', success=True, skipped=True))
        report.add(FundingResult(address='c', success=False, error='insufficient funds'))
        assert (report.successful, report.skipped, report.failed, report.total) == (1, 1, 1, 3)
        assert report.failures() == {'c': 'insufficient funds'}


@pytest.mark.unit
class TestElectionData:
    """Synthetic election generation."""

    def test_generated_election_shape(self):
        rng = random.Random(7)
        spec = generate_election(3, now=1_700_000_000, rng=rng)
        assert spec.uuid.startswith('elec-')
        assert POSITIONS_RANGE[0] <= len(spec.positions) <= POSITIONS_RANGE[1]
        for position in spec.positions:
            assert CANDIDATES_RANGE[0] <= len(position.candidates) <= CANDIDATES_RANGE[1]
        assert START_DELAY_RANGE[0] <= spec.start_time - 1_700_000_000 <= START_DELAY_RANGE[1]
        assert DURATION_RANGE[0] <= spec.end_time - spec.start_time <= DURATION_RANGE[1]

    def test_eligible_voter_count_is_capped_by_pool(self):
        assert calculate_eligible_voters(1000, 0.75, 750) == 750
        assert calculate_eligible_voters(1000, 0.5, 750) == 500
        assert calculate_eligible_voters(12, 0.75, 8) == 8

    def test_voter_set_has_no_duplicates(self):
        addresses = [f"0x{i:040x}" for i in range(20)]
        selected = select_voter_set(addresses, 10, random.Random(1))
        assert len(selected) == len(set(selected)) == 10
        assert set(selected) <= set(addresses)
