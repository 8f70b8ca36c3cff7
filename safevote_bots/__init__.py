"""
SafeVote bot harness.

Drives synthetic election creators, eligible voters and ineligible
(security probe) voters against a SafeVote deployment:
- Identity provisioning and funding (wallet_manager)
- Backend and key service clients (api_client)
- SafeVoteV2 contract access (blockchain)
- Windowed run orchestration and reporting (orchestrator, report)
"""

from .config import Settings, NetworkConfig, NETWORKS, get_network
from .errors import (
    HarnessError,
    ConfigurationError,
    ProvisioningError,
    ServiceError,
    ChainError,
    ChainTimeout,
    InvalidVoteInput,
    RunCancelled,
    ErrorKind,
)
from .models import (
    Role,
    Identity,
    IdentityPool,
    PopulationCounts,
    Position,
    ElectionSpec,
    VoteAttempt,
    VoteOutcome,
    SecurityProbe,
    ProbeResult,
    Severity,
)
from .orchestrator import Orchestrator, RunMode, RunOptions
from .report import RunReport, save_results

__all__ = [
    'Settings',
    'NetworkConfig',
    'NETWORKS',
    'get_network',
    'HarnessError',
    'ConfigurationError',
    'ProvisioningError',
    'ServiceError',
    'ChainError',
    'ChainTimeout',
    'InvalidVoteInput',
    'RunCancelled',
    'ErrorKind',
    'Role',
    'Identity',
    'IdentityPool',
    'PopulationCounts',
    'Position',
    'ElectionSpec',
    'VoteAttempt',
    'VoteOutcome',
    'SecurityProbe',
    'ProbeResult',
    'Severity',
    'Orchestrator',
    'RunMode',
    'RunOptions',
    'RunReport',
    'save_results',
]

__version__ = '1.0.0'
