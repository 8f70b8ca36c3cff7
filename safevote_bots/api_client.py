"""
HTTP client for the election backend and the key generation service.

All calls share one RateLimiter and go through APIClient.request(), which
retries network errors, timeouts, 429 and 5xx responses with exponential
backoff. Any other 4xx is raised immediately as a ServiceError.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import httpx

from . import metrics
from .concurrency import CancelToken
from .config import Settings
from .errors import ErrorKind, ServiceError, status_to_kind
from .models import ElectionSpec
from .rate_limiter import RateLimiter
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class ServiceResponse:
    status_code: int
    data: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class VoterLookupStatus(str, Enum):
    FOUND = "found"
    NOT_ELIGIBLE = "not_eligible"
    ALREADY_VOTED = "already_voted"


@dataclass
class VoterLookup:
    """Result of a voter key lookup. Only FOUND carries key material."""
    status: VoterLookupStatus
    voter_key: Optional[str] = None
    merkle_proof: List[str] = field(default_factory=list)
    merkle_root: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def found(self) -> bool:
        return self.status is VoterLookupStatus.FOUND


@dataclass
class KeyGenResult:
    merkle_root: str
    total_keys: int = 0
    voters_processed: int = 0


class APIClient:
    """Rate-limited, retrying client for every backend call the bots make."""

    def __init__(
        self,
        settings: Settings,
        rate_limiter: Optional[RateLimiter] = None,
        cancel_token: Optional[CancelToken] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.backend_api = settings.BACKEND_API.rstrip('/')
        self.keygen_api = settings.KEYGEN_API.rstrip('/')
        self.rate_limiter = rate_limiter or RateLimiter(settings.REQUEST_DELAY_SECONDS)
        self.cancel_token = cancel_token or CancelToken()
        self.retry_policy = RetryPolicy.from_settings(settings)
        self.client = httpx.AsyncClient(
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            headers={'Content-Type': 'application/json'},
            transport=transport,
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> 'APIClient':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def request_count(self) -> int:
        return self.rate_limiter.request_count

    async def request(
        self,
        method: str,
        url: str,
        body: Optional[Dict[str, Any]] = None,
        accept_status: Iterable[int] = (),
    ) -> ServiceResponse:
        """
        Issue a request with rate limiting and bounded retries.

        Args:
            method: HTTP method
            url: Absolute URL
            body: JSON body, if any
            accept_status: Error statuses returned to the caller instead of raised

        Returns:
            ServiceResponse with the decoded JSON body

        Raises:
            ServiceError: On a non-retryable status or once retries are exhausted
            RunCancelled: If the run is cancelled while waiting to retry
        """
        accept_status = set(accept_status)
        last_error: Optional[ServiceError] = None

        for attempt in range(self.retry_policy.max_attempts):
            self.cancel_token.raise_if_cancelled()
            await self.rate_limiter.acquire()
            logger.debug(f"{method} {url} (attempt {attempt + 1})")

            try:
                response = await self.client.request(method, url, json=body)
            except httpx.TimeoutException as e:
                metrics.api_requests.labels(method=method, status='error').inc()
                last_error = ServiceError(f"{method} {url} timed out: {e}", ErrorKind.TIMEOUT)
            except httpx.TransportError as e:
                metrics.api_requests.labels(method=method, status='error').inc()
                last_error = ServiceError(f"{method} {url} failed: {e}", ErrorKind.NETWORK)
            else:
                metrics.api_requests.labels(method=method, status=metrics.status_class(response.status_code)).inc()
                if response.status_code < 400 or response.status_code in accept_status:
                    return ServiceResponse(response.status_code, self._decode(response, method, url))

                last_error = ServiceError(
                    f"{method} {url} returned {response.status_code}: {response.text[:200]}",
                    status_to_kind(response.status_code),
                    response.status_code,
                )
                if not last_error.retryable:
                    raise last_error

            if not self.retry_policy.should_retry(attempt):
                break

            delay = self.retry_policy.backoff(attempt)
            logger.warning(f"Request failed ({last_error.kind.value}), retrying in {delay:.1f}s: {last_error}")
            await self.cancel_token.sleep(delay)

        raise last_error

    @staticmethod
    def _decode(response: httpx.Response, method: str, url: str) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ServiceError(
                f"{method} {url} returned invalid JSON: {e}", ErrorKind.INVALID_RESPONSE, response.status_code
            ) from e

    # ------------------------------------------------------------------
    # Election lifecycle
    # ------------------------------------------------------------------

    async def create_election(self, spec: ElectionSpec, voter_addresses: List[str]) -> Any:
        """Register the election record and its voter set with the key service."""
        logger.debug(f"Creating election in database: {spec.uuid}")
        response = await self.request('POST', f"{self.keygen_api}/api/elections/create", {
            'electionId': spec.uuid,
            'title': spec.title,
            'description': spec.description,
            'location': spec.location,
            'creator': spec.creator or '0x0000000000000000000000000000000000000000',
            'startTime': spec.start_time,
            'endTime': spec.end_time,
            'totalVoters': len(voter_addresses),
            'isPublic': spec.is_public,
            'allowAnonymous': spec.allow_anonymous,
            'allowDelegation': spec.allow_delegation,
            'positions': [position.to_dict() for position in spec.positions],
            'voterAddresses': voter_addresses,
        })
        return response.data

    async def generate_voter_keys(self, election_uuid: str, voter_addresses: List[str]) -> KeyGenResult:
        response = await self.request('POST', f"{self.keygen_api}/api/elections/keys/generate", {
            'electionId': election_uuid,
            'numVoters': len(voter_addresses),
            'voterAddresses': voter_addresses,
        })
        data = response.data or {}
        if not data.get('success') or not data.get('merkleRoot'):
            raise ServiceError(
                f"Key generation for {election_uuid} returned no Merkle root",
                ErrorKind.INVALID_RESPONSE,
                response.status_code,
            )
        return KeyGenResult(
            merkle_root=data['merkleRoot'],
            total_keys=int(data.get('totalKeys') or 0),
            voters_processed=int(data.get('votersProcessed') or 0),
        )

    async def get_voter_data(self, election_uuid: str, voter_address: str) -> VoterLookup:
        """
        Look up a voter's key and Merkle proof.

        404 means the address is not registered and 403 means it already
        voted; both are returned as a status, not raised.
        """
        response = await self.request(
            'GET',
            f"{self.keygen_api}/api/elections/{election_uuid}/keys/{voter_address}",
            accept_status=(403, 404),
        )
        if response.status_code == 404:
            return VoterLookup(VoterLookupStatus.NOT_ELIGIBLE, status_code=404)
        if response.status_code == 403:
            return VoterLookup(VoterLookupStatus.ALREADY_VOTED, status_code=403)

        data = response.data or {}
        voter_key = data.get('voterKey') or data.get('key')
        if not voter_key or data.get('success') is False:
            return VoterLookup(VoterLookupStatus.NOT_ELIGIBLE, status_code=response.status_code)

        return VoterLookup(
            VoterLookupStatus.FOUND,
            voter_key=voter_key,
            merkle_proof=list(data.get('merkleProof') or data.get('proof') or []),
            merkle_root=data.get('merkleRoot'),
            status_code=response.status_code,
        )

    async def get_election(self, election_uuid: str) -> ElectionSpec:
        response = await self.request('GET', f"{self.backend_api}/api/elections/{election_uuid}")
        try:
            return ElectionSpec.from_dict(response.data or {})
        except (ValueError, TypeError) as e:
            raise ServiceError(f"Malformed election {election_uuid}: {e}", ErrorKind.INVALID_RESPONSE) from e

    async def get_onchain_id(self, election_uuid: str) -> int:
        response = await self.request('GET', f"{self.backend_api}/api/elections/{election_uuid}/onchain-id")
        value = (response.data or {}).get('onChainElectionId')
        if value is None:
            raise ServiceError(f"On-chain election ID not found for {election_uuid}", ErrorKind.INVALID_RESPONSE)
        return int(value)

    async def list_elections(self) -> List[ElectionSpec]:
        response = await self.request('GET', f"{self.backend_api}/api/elections")
        records = response.data or []
        if isinstance(records, dict):
            records = records.get('elections', [])

        elections = []
        for record in records:
            try:
                elections.append(ElectionSpec.from_dict(record))
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed election record: {e}")
        return elections

    # ------------------------------------------------------------------
    # Best-effort bookkeeping
    # ------------------------------------------------------------------

    async def sync_chain_deployment(self, election_uuid: str, chain_id: int, on_chain_id: int, tx_hash: str) -> bool:
        """Tell the key service where the election was deployed. Never raises ServiceError."""
        try:
            await self.request('POST', f"{self.keygen_api}/api/elections/sync-deployment", {
                'electionId': election_uuid,
                'chainId': chain_id,
                'onChainElectionId': int(on_chain_id),
                'txHash': tx_hash,
            })
            return True
        except ServiceError as e:
            logger.warning(f"Failed to sync chain deployment (non-fatal): {e}")
            return False

    async def record_vote(
        self,
        election_uuid: str,
        voter_address: str,
        chain_id: int,
        tx_hash: str,
        block_number: int,
        on_chain_id: int,
    ) -> bool:
        """Record a confirmed vote in the backend. Never raises ServiceError."""
        try:
            await self.request('POST', f"{self.backend_api}/api/votes/record", {
                'electionId': election_uuid,
                'voterAddress': voter_address.lower(),
                'chainId': chain_id,
                'txHash': tx_hash,
                'blockNumber': block_number,
                'onChainElectionId': on_chain_id,
            })
            return True
        except ServiceError as e:
            logger.warning(f"Failed to record vote in database (non-fatal): {e}")
            return False

    async def has_voted(self, election_uuid: str, voter_address: str) -> bool:
        response = await self.request('GET', f"{self.backend_api}/api/votes/{election_uuid}", accept_status=(404,))
        if response.status_code == 404:
            return False

        votes = response.data or []
        if isinstance(votes, dict):
            votes = votes.get('votes', [])
        wanted = voter_address.lower()
        return any(
            (vote.get('voter_address') or vote.get('voterAddress') or '').lower() == wanted
            for vote in votes
        )
