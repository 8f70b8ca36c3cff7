"""Shared plumbing for bot agents."""

import logging
import random
import time
from typing import Any, Callable, Dict, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount

from ..concurrency import CancelToken
from ..config import Settings
from ..errors import ProvisioningError
from ..models import Identity, Role

logger = logging.getLogger(__name__)


class BaseAgent:
    """
    One bot bound to one identity.

    Agents receive their collaborators explicitly so tests can swap in fake
    service and chain clients. Identities are read, never modified.
    """

    role: Role

    def __init__(
        self,
        identity: Identity,
        api,
        chain,
        settings: Settings,
        cancel_token: Optional[CancelToken] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ):
        if identity.role is not self.role:
            raise ProvisioningError(
                f"{type(self).__name__} needs a {self.role.value} identity, got {identity.role.value}"
            )
        self.identity = identity
        self.api = api
        self.chain = chain
        self.settings = settings
        self.cancel_token = cancel_token or CancelToken()
        self.rng = rng or random.Random()
        self.clock = clock
        self.account: Optional[LocalAccount] = None

    @property
    def index(self) -> int:
        return self.identity.index

    @property
    def address(self) -> str:
        return self.identity.address

    @property
    def label(self) -> str:
        return f"{self.role.value}#{self.index}"

    def initialize(self) -> 'BaseAgent':
        """Load the signing key for this identity."""
        try:
            account = Account.from_key(self.identity.private_key)
        except (ValueError, TypeError) as e:
            raise ProvisioningError(f"Bad key material for {self.label}: {e}") from e
        if account.address.lower() != self.identity.address.lower():
            raise ProvisioningError(f"Key for {self.label} does not match address {self.identity.address}")
        self.account = account
        logger.debug(f"{self.label} initialized at {self.address}")
        return self

    def retry_delay(self) -> float:
        """Random pause between whole-workflow retries."""
        return self.rng.uniform(
            self.settings.VOTE_RETRY_DELAY_MIN_SECONDS,
            self.settings.VOTE_RETRY_DELAY_MAX_SECONDS,
        )

    def get_stats(self) -> Dict[str, Any]:
        raise NotImplementedError
