from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


class TxKind(Enum):
    APPROVE = "approve"
    PLACE_BET = "place_bet"
    RESOLVE = "resolve"
    RECOVER = "recover"


class TxOutcome(Enum):
    """
    Transaction outcome classification.

    TIMED_OUT means "we stopped waiting", not "it failed": the transaction may
    still land, so it is never retried blindly.
    """
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class TxReceipt:
    """Ledger receipt with the game events decoded from its logs."""
    tx_hash: str
    status: int
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    events: List["LedgerEvent"] = field(default_factory=list)
    revert_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass
class TransactionRecord:
    """Tracks one state-changing submission from start to a known outcome."""
    kind: TxKind
    identity: str
    outcome: TxOutcome = TxOutcome.PENDING
    hash: Optional[str] = None
    gas_limit: Optional[int] = None
    submitted_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    receipt: Optional[TxReceipt] = None
    error: Optional["ClassifiedError"] = None

    @property
    def is_success(self) -> bool:
        return self.outcome == TxOutcome.CONFIRMED

    @property
    def is_terminal(self) -> bool:
        return self.outcome in (TxOutcome.CONFIRMED, TxOutcome.FAILED)

    @property
    def is_safe_to_retry(self) -> bool:
        """True only when we KNOW the transaction did not land."""
        return self.outcome == TxOutcome.FAILED

    @property
    def needs_reconciliation(self) -> bool:
        return self.outcome == TxOutcome.TIMED_OUT

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        if self.submitted_at is None:
            return 0.0
        now = now or datetime.now(timezone.utc)
        return (now - self.submitted_at).total_seconds()
