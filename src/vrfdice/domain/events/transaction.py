from dataclasses import dataclass


@dataclass
class TransactionSettled:
    """A timed-out submission whose outcome became known during reconciliation."""

    record: "TransactionRecord"
