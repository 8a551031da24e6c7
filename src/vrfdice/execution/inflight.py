from typing import Dict, List, Optional, Tuple

from loguru import logger

from ..domain.errors import SubmissionInFlight
from ..domain.models import TransactionRecord, TxKind, TxOutcome


class InflightRegistry:
    """One tracked submission per (identity, kind).

    A record leaves the registry once its outcome is known. TIMED_OUT records
    stay until reconciliation proves they confirmed or failed, and keep
    blocking new submissions of the same kind meanwhile.
    """

    def __init__(self):
        self._records: Dict[Tuple[str, TxKind], TransactionRecord] = {}

    def claim(self, identity: str, kind: TxKind) -> TransactionRecord:
        key = (identity.lower(), kind)
        existing = self._records.get(key)
        if existing is not None:
            raise SubmissionInFlight(
                f"{kind.value} already in flight for {identity} "
                f"(outcome={existing.outcome.value}, hash={existing.hash})"
            )
        record = TransactionRecord(kind=kind, identity=identity)
        self._records[key] = record
        return record

    def release(self, record: TransactionRecord) -> None:
        key = (record.identity.lower(), record.kind)
        if self._records.get(key) is record:
            del self._records[key]
            logger.debug(f"INFLIGHT | released | kind={record.kind.value} | outcome={record.outcome.value}")

    def get(self, identity: str, kind: TxKind) -> Optional[TransactionRecord]:
        return self._records.get((identity.lower(), kind))

    def is_in_flight(self, identity: str, kind: TxKind) -> bool:
        return (identity.lower(), kind) in self._records

    def any_in_flight(self, identity: str) -> bool:
        key = identity.lower()
        return any(owner == key for owner, _ in self._records)

    def timed_out(self) -> List[TransactionRecord]:
        return [r for r in self._records.values() if r.outcome == TxOutcome.TIMED_OUT]

    def records(self, identity: Optional[str] = None) -> List[TransactionRecord]:
        if identity is None:
            return list(self._records.values())
        key = identity.lower()
        return [r for (owner, _), r in self._records.items() if owner == key]
