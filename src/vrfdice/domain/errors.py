from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Closed taxonomy every failure is mapped into before it reaches a user."""
    USER_REJECTED = "user_rejected"
    NETWORK_UNAVAILABLE = "network_unavailable"
    WRONG_NETWORK = "wrong_network"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INSUFFICIENT_ALLOWANCE = "insufficient_allowance"
    CONTRACT_REVERTED = "contract_reverted"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ClassifiedError:
    kind: ErrorKind
    user_message: str
    detail: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.NETWORK_UNAVAILABLE


class InvalidTransition(Exception):
    """Raised when a lifecycle transition or user action is not allowed now."""


class SubmissionInFlight(Exception):
    """Raised when a transaction of the same kind is already in flight."""


class BetValidationError(ValueError):
    """Raised for bet input outside the configured bounds."""


class WrongNetworkError(Exception):
    """Raised when the connected identity is on an unsupported chain."""

    def __init__(self, expected_chain_id: int, actual_chain_id: int):
        super().__init__(
            f"wrong network: connected to chain {actual_chain_id}, expected {expected_chain_id}"
        )
        self.expected_chain_id = expected_chain_id
        self.actual_chain_id = actual_chain_id


class LedgerReadError(Exception):
    """Raised when an authoritative read could not be completed."""
