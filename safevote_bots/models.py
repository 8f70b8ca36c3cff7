"""
Shared data models for the SafeVote bot harness.

This module contains:
- Identity / IdentityPool: test wallets partitioned by role
- ElectionSpec / Position: synthetic elections created by creator bots
- VoteAttempt / SecurityProbe: per-agent outcomes collected for the report
- FundingResult / FundingReport: outcome of the funding phase
"""

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional


class Role(str, Enum):
    """Role of a test identity."""
    CREATOR = "election_creator"
    ELIGIBLE_VOTER = "eligible_voter"
    INELIGIBLE_VOTER = "ineligible_voter"


# Persisted pool keys, one list per role
POOL_KEYS = {
    Role.CREATOR: "election_creators",
    Role.ELIGIBLE_VOTER: "eligible_voters",
    Role.INELIGIBLE_VOTER: "ineligible_voters",
}


@dataclass
class Identity:
    """
    A test-controlled key pair.

    Attributes:
        role: Which workflow the identity drives
        index: Slot number within its role
        address: Checksummed address
        private_key: Hex-encoded secret key
        funded: True once the funding transfer confirmed
        funding_tx: Hash of the funding transfer
        funding_error: Last funding error, if funding failed
    """
    role: Role
    index: int
    address: str
    private_key: str
    funded: bool = False
    funding_tx: Optional[str] = None
    funding_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "address": self.address,
            "private_key": self.private_key,
            "funded": self.funded,
            "funding_tx": self.funding_tx,
            "funding_error": self.funding_error,
        }

    @classmethod
    def from_dict(cls, role: Role, data: Dict[str, Any]) -> 'Identity':
        return cls(
            role=role,
            index=int(data["index"]),
            address=data["address"],
            private_key=data["private_key"],
            funded=bool(data.get("funded", False)),
            funding_tx=data.get("funding_tx"),
            funding_error=data.get("funding_error"),
        )


@dataclass(frozen=True)
class PopulationCounts:
    """Number of identities requested per role."""
    creators: int
    eligible: int
    ineligible: int

    def for_role(self, role: Role) -> int:
        return {
            Role.CREATOR: self.creators,
            Role.ELIGIBLE_VOTER: self.eligible,
            Role.INELIGIBLE_VOTER: self.ineligible,
        }[role]

    @property
    def total(self) -> int:
        return self.creators + self.eligible + self.ineligible


@dataclass
class IdentityPool:
    """All identities of a run, keyed by role."""
    creators: List[Identity] = field(default_factory=list)
    eligible: List[Identity] = field(default_factory=list)
    ineligible: List[Identity] = field(default_factory=list)

    def by_role(self, role: Role) -> List[Identity]:
        return {
            Role.CREATOR: self.creators,
            Role.ELIGIBLE_VOTER: self.eligible,
            Role.INELIGIBLE_VOTER: self.ineligible,
        }[role]

    def get(self, role: Role, index: int) -> Optional[Identity]:
        for identity in self.by_role(role):
            if identity.index == index:
                return identity
        return None

    def __iter__(self) -> Iterator[Identity]:
        yield from self.creators
        yield from self.eligible
        yield from self.ineligible

    def __len__(self) -> int:
        return len(self.creators) + len(self.eligible) + len(self.ineligible)

    def select_range(self, start: int, end: int) -> List[Identity]:
        """Identities at positions [start, end) in creator, eligible, ineligible order."""
        if start < 0 or end < start:
            raise ValueError(f"Invalid identity range: {start}-{end}")
        return list(self)[start:end]

    def find(self, address: str) -> Optional[Identity]:
        wanted = address.lower()
        for identity in self:
            if identity.address.lower() == wanted:
                return identity
        return None

    def addresses(self, role: Optional[Role] = None) -> List[str]:
        identities = self.by_role(role) if role else list(self)
        return [identity.address for identity in identities]

    def unfunded(self) -> List[Identity]:
        return [identity for identity in self if not identity.funded]

    def counts(self) -> PopulationCounts:
        return PopulationCounts(len(self.creators), len(self.eligible), len(self.ineligible))

    def validate(self) -> None:
        """
        Check pool invariants.

        Raises:
            ValueError: on a duplicated (role, index) slot or a shared address
        """
        seen_slots = set()
        seen_addresses = set()
        for identity in self:
            slot = (identity.role, identity.index)
            if slot in seen_slots:
                raise ValueError(f"Duplicate identity slot: {identity.role.value}#{identity.index}")
            seen_slots.add(slot)

            address = identity.address.lower()
            if address in seen_addresses:
                raise ValueError(f"Address used by more than one identity: {identity.address}")
            seen_addresses.add(address)

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            POOL_KEYS[role]: [identity.to_dict() for identity in self.by_role(role)]
            for role in Role
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'IdentityPool':
        pool = cls()
        for role in Role:
            for entry in data.get(POOL_KEYS[role], []):
                pool.by_role(role).append(Identity.from_dict(role, entry))
        pool.validate()
        return pool


@dataclass(frozen=True)
class Position:
    """A contested position and its candidates."""
    title: str
    candidates: List[str]
    max_selections: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "candidates": list(self.candidates),
            "maxSelections": self.max_selections,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Position':
        return cls(
            title=data.get("title", ""),
            candidates=list(data.get("candidates") or []),
            max_selections=int(data.get("maxSelections", data.get("max_selections", 1))),
        )


@dataclass(frozen=True)
class ElectionSpec:
    """
    An election as seen by the harness.

    The backend and the chain hold the authoritative copy; the harness
    never mutates a spec once created, it derives new ones with
    dataclasses.replace().
    """
    uuid: str
    title: str
    positions: List[Position]
    start_time: int
    end_time: int
    total_voters: int = 0
    merkle_root: Optional[str] = None
    description: str = ""
    location: str = ""
    is_public: bool = True
    allow_anonymous: bool = False
    allow_delegation: bool = False
    creator: Optional[str] = None
    on_chain_id: Optional[int] = None
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: int = 0

    def is_open(self, now: float) -> bool:
        """True while `now` lies in the voting window [start_time, end_time)."""
        return self.start_time <= now < self.end_time

    def has_started(self, now: float) -> bool:
        return now >= self.start_time

    def has_ended(self, now: float) -> bool:
        return now >= self.end_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uuid": self.uuid,
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "totalVoters": self.total_voters,
            "merkleRoot": self.merkle_root,
            "isPublic": self.is_public,
            "allowAnonymous": self.allow_anonymous,
            "allowDelegation": self.allow_delegation,
            "creator": self.creator,
            "onChainId": self.on_chain_id,
            "txHash": self.tx_hash,
            "blockNumber": self.block_number,
            "gasUsed": self.gas_used,
            "positions": [position.to_dict() for position in self.positions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ElectionSpec':
        """Build a spec from a backend record (camelCase) or a saved to_dict() payload."""
        uuid = data.get("uuid") or data.get("electionId") or data.get("id")
        if not uuid:
            raise ValueError("Election record has no identifier")

        on_chain_id = data.get("onChainId", data.get("onChainElectionId"))
        return cls(
            uuid=str(uuid),
            title=data.get("title") or "Untitled Election",
            positions=[Position.from_dict(p) for p in data.get("positions") or []],
            start_time=parse_timestamp(data.get("startTime", data.get("start_time"))),
            end_time=parse_timestamp(data.get("endTime", data.get("end_time"))),
            total_voters=int(data.get("totalVoters") or 0),
            merkle_root=data.get("merkleRoot"),
            description=data.get("description") or "",
            location=data.get("location") or "",
            is_public=bool(data.get("isPublic", True)),
            allow_anonymous=bool(data.get("allowAnonymous", False)),
            allow_delegation=bool(data.get("allowDelegation", False)),
            creator=data.get("creator"),
            on_chain_id=int(on_chain_id) if on_chain_id is not None else None,
            tx_hash=data.get("txHash"),
            block_number=data.get("blockNumber"),
            gas_used=int(data.get("gasUsed") or 0),
        )


def parse_timestamp(value: Any) -> int:
    """Unix seconds from an int, a numeric string or an ISO-8601 string."""
    if value is None:
        raise ValueError("Missing timestamp")
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


class VoteOutcome(str, Enum):
    """Outcome of a single vote attempt."""
    SUCCESS = "success"
    REJECTED = "rejected"
    TRANSIENT_FAILURE = "transient_failure"
    FAILED = "failed"


class RejectReason(str, Enum):
    """Why a vote attempt was definitively rejected."""
    NOT_STARTED = "not_started"
    ENDED = "ended"
    ALREADY_VOTED = "already_voted"
    NOT_ELIGIBLE = "not_eligible"
    INVALID_INPUT = "invalid_input"
    CHAIN_REJECTED = "chain_rejected"


@dataclass
class VoteAttempt:
    """
    One pass of an eligible voter through its workflow.

    Attributes:
        election_uuid: Backend identifier of the election
        voter_address: Address of the voting identity
        attempt_number: 1 for the first pass, incremented on each retry
        outcome: Terminal or transient classification
        reason: RejectReason value or short error classification
        selections: Candidate indexes per position
        tx_hash: Hash of the submitted vote, if any
        block_number: Inclusion block of a confirmed vote
        gas_used: Gas consumed by a confirmed vote
        error: Error message for failed attempts
        timestamp: Unix time the attempt finished
    """
    election_uuid: str
    voter_address: str
    attempt_number: int
    outcome: VoteOutcome
    reason: Optional[str] = None
    selections: List[List[int]] = field(default_factory=list)
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: int = 0
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.outcome is not VoteOutcome.TRANSIENT_FAILURE

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        return data


class ProbeResult(str, Enum):
    """What happened when an ineligible identity tried to vote."""
    REJECTED_NOT_REGISTERED = "rejected_not_registered"
    REJECTED_ALREADY_VOTED = "rejected_already_voted"
    REJECTED_API_ERROR = "rejected_api_error"
    REJECTED_ON_CHAIN = "rejected_on_chain"
    UNEXPECTED_ERROR = "unexpected_error"
    DATA_EXPOSED = "data_exposed"
    VOTE_ACCEPTED = "vote_accepted"


class Severity(str, Enum):
    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class SecurityProbe:
    """
    A deliberate voting attempt by an identity that must be refused.

    A probe with CRITICAL severity means the ineligible identity obtained
    voting data or had a vote accepted.
    """
    election_uuid: str
    voter_address: str
    actual: ProbeResult
    severity: Severity
    expected: str = "rejected"
    attempts: int = 1
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def passed(self) -> Optional[bool]:
        """True when blocked, False on a breach, None when the outcome is unknown."""
        if self.severity is Severity.CRITICAL:
            return False
        if self.actual is ProbeResult.UNEXPECTED_ERROR:
            return None
        return True

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["actual"] = self.actual.value
        data["severity"] = self.severity.value
        return data


@dataclass
class FundingResult:
    """Outcome of funding a single identity."""
    address: str
    success: bool
    skipped: bool = False
    tx_hash: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None


@dataclass
class FundingReport:
    """Aggregate outcome of a funding pass."""
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    results: List[FundingResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.successful + self.failed + self.skipped

    def add(self, result: FundingResult) -> None:
        self.results.append(result)
        if result.skipped:
            self.skipped += 1
        elif result.success:
            self.successful += 1
        else:
            self.failed += 1

    def failures(self) -> Dict[str, str]:
        return {
            result.address: result.error or "unknown error"
            for result in self.results
            if not result.success and not result.skipped
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "total": self.total,
            "failures": self.failures(),
        }
