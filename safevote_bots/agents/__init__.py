"""
Bot agents, one class per identity role.

- ElectionCreatorAgent: creates and deploys synthetic elections
- EligibleVoterAgent: votes through the eligibility state machine
- IneligibleVoterAgent: probes that unregistered identities are refused
"""

from .base import BaseAgent
from .creator import ElectionCreatorAgent
from .eligible_voter import EligibleVoterAgent, VoterState, select_candidates
from .ineligible_voter import IneligibleVoterAgent

__all__ = [
    'BaseAgent',
    'ElectionCreatorAgent',
    'EligibleVoterAgent',
    'IneligibleVoterAgent',
    'VoterState',
    'select_candidates',
]
