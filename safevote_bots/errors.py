"""
Exception hierarchy and retry classification for the harness.

Retry decisions are made on ErrorKind values, never on message text.
The one place that inspects RPC error text is classify_chain_exception(),
because JSON-RPC nodes only report nonce and pricing problems as strings.
"""

import asyncio
from enum import Enum
from typing import Optional

import aiohttp
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3RPCError


class ErrorKind(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    SERVER = "server"
    CLIENT = "client"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    NONCE = "nonce"
    UNDERPRICED = "underpriced"
    REVERTED = "reverted"
    INVALID_INPUT = "invalid_input"
    INVALID_RESPONSE = "invalid_response"
    MISSING_EVENT = "missing_event"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({
    ErrorKind.NETWORK,
    ErrorKind.TIMEOUT,
    ErrorKind.RATE_LIMITED,
    ErrorKind.SERVER,
    ErrorKind.NONCE,
    ErrorKind.UNDERPRICED,
})


def is_retryable(kind: ErrorKind) -> bool:
    """Return True when an error of this kind may succeed on a later attempt."""
    return kind in RETRYABLE_KINDS


class HarnessError(Exception):
    """Base class for all harness errors."""


class ConfigurationError(HarnessError):
    """Required configuration is missing or invalid. Aborts the run."""


class ProvisioningError(HarnessError):
    """Identity generation or lookup failed."""


class RunCancelled(HarnessError):
    """The operator aborted the run."""


class ServiceError(HarnessError):
    """A backend call failed after the client's own retries."""

    def __init__(self, message: str, kind: ErrorKind, status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return is_retryable(self.kind)


class ChainError(HarnessError):
    """A contract call or transaction failed."""

    def __init__(self, message: str, kind: ErrorKind, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.tx_hash = tx_hash

    @property
    def retryable(self) -> bool:
        return is_retryable(self.kind)


class ChainTimeout(ChainError):
    """Confirmation did not arrive in time; the on-chain outcome is unknown."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message, ErrorKind.TIMEOUT, tx_hash)


class InvalidVoteInput(HarnessError):
    """Vote arguments were malformed and were rejected before submission."""


class InvalidElectionData(HarnessError):
    """Election content cannot be voted on, e.g. a position without candidates."""


def status_to_kind(status_code: int) -> ErrorKind:
    """Map an HTTP status code to an ErrorKind."""
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code >= 500:
        return ErrorKind.SERVER
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code == 403:
        return ErrorKind.FORBIDDEN
    return ErrorKind.CLIENT


def classify_chain_exception(exc: BaseException) -> ErrorKind:
    """
    Classify an exception raised by web3, its HTTP transport or asyncio.

    Args:
        exc: Exception raised while talking to the RPC node

    Returns:
        ErrorKind describing the failure
    """
    if isinstance(exc, ChainError):
        return exc.kind
    if isinstance(exc, (TimeExhausted, asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, ContractLogicError):
        return ErrorKind.REVERTED
    if isinstance(exc, TransactionNotFound):
        return ErrorKind.NOT_FOUND
    if isinstance(exc, (aiohttp.ClientError, ConnectionError, OSError)):
        return ErrorKind.NETWORK

    message = str(exc).lower()
    if isinstance(exc, (Web3RPCError, ValueError)):
        if 'nonce too low' in message or 'already known' in message:
            return ErrorKind.NONCE
        if 'underpriced' in message or 'replacement fee too low' in message:
            return ErrorKind.UNDERPRICED
        if 'execution reverted' in message:
            return ErrorKind.REVERTED
        if 'insufficient funds' in message:
            return ErrorKind.CLIENT
        if 'rate limit' in message or 'too many requests' in message:
            return ErrorKind.RATE_LIMITED
    return ErrorKind.UNKNOWN


def to_chain_error(exc: BaseException, context: str, tx_hash: Optional[str] = None) -> ChainError:
    """Wrap an RPC-level exception into a classified ChainError."""
    if isinstance(exc, ChainError):
        return exc
    kind = classify_chain_exception(exc)
    return ChainError(f"{context}: {exc}", kind, tx_hash)
