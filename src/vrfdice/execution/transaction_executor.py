"""
transaction_executor.py - The only path that submits state-changing calls.

Never retry without proving the prior attempt failed:

1. One in-flight record per (identity, kind); a second submission is refused
2. Gas estimate x multiplier, falling back to a fixed limit when estimation fails
3. The receipt wait is bounded; running out of time gives TIMED_OUT, not FAILED
4. TIMED_OUT records are re-checked by reconcile_timed_out() until the ledger
   says what happened (or the record is too old to ever be found)

Usage:
    record = await executor.execute(identity, TxKind.PLACE_BET, play_dice(3, wager))

    if record.is_success:
        ...  # fold record.receipt
    elif record.is_safe_to_retry:
        ...  # verified failure, undo optimistic state
    elif record.needs_reconciliation:
        ...  # outcome unknown, keep waiting for the ledger
"""

import asyncio
from typing import List, Optional

from loguru import logger

from ..application.event_bus import EventBus
from ..application.services.notifications import Notifier
from ..config import TransactionSettings
from ..domain.errors import ClassifiedError, ErrorKind
from ..domain.events import NotificationLevel, TransactionSettled
from ..domain.models import Clock, TransactionRecord, TxKind, TxOutcome, utc_now
from ..ports.ledger import ContractCall, LedgerPort
from .error_classifier import GENERIC_MESSAGES, classify, revert_error
from .inflight import InflightRegistry


class TransactionExecutor:
    def __init__(
        self,
        ledger: LedgerPort,
        registry: InflightRegistry,
        bus: EventBus,
        notifier: Notifier,
        settings: TransactionSettings,
        clock: Clock = utc_now,
    ):
        self.ledger = ledger
        self.registry = registry
        self.bus = bus
        self.notifier = notifier
        self.settings = settings
        self._clock = clock

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    async def estimate_gas_limit(self, call: ContractCall, sender: str, value: int = 0) -> int:
        try:
            estimate = await self.ledger.estimate_gas(call, sender, value)
        except Exception as e:
            logger.warning(
                f"GAS_ESTIMATE | failed, using fallback | call={call.describe()} | "
                f"fallback={self.settings.fallback_gas_limit} | {e}"
            )
            return self.settings.fallback_gas_limit
        return int(estimate * self.settings.gas_multiplier)

    async def execute(
        self,
        identity: str,
        kind: TxKind,
        call: ContractCall,
        value: int = 0,
        timeout_seconds: Optional[float] = None,
    ) -> TransactionRecord:
        """Submit ``call`` and wait (bounded) for its receipt.

        Raises SubmissionInFlight before touching the ledger when a record of
        the same kind is still tracked. Every other failure is classified,
        reported on the notification channel and returned on the record.
        """
        record = self.registry.claim(identity, kind)
        timeout = timeout_seconds if timeout_seconds is not None else self.settings.timeout_seconds

        try:
            record.gas_limit = await self.estimate_gas_limit(call, identity, value)
            tx_hash = await self.ledger.send_transaction(call, identity, record.gas_limit, value)
        except asyncio.CancelledError:
            self.registry.release(record)
            raise
        except Exception as e:
            # Nothing reached the ledger: a verified failure.
            return self._fail(record, classify(e))

        record.hash = tx_hash
        record.submitted_at = self._clock()
        logger.info(
            f"TX_SENT | kind={kind.value} | call={call.describe()} | hash={tx_hash} | gas_limit={record.gas_limit}"
        )

        try:
            receipt = await asyncio.wait_for(self.ledger.wait_for_receipt(tx_hash), timeout=timeout)
        except asyncio.TimeoutError:
            return self._time_out(record, f"no receipt after {timeout:.0f}s")
        except asyncio.CancelledError:
            self._time_out(record, "receipt wait cancelled")
            raise
        except Exception as e:
            # Sent but lost track of it: the transaction may still land.
            return self._time_out(record, f"receipt wait failed: {e}")

        record.receipt = receipt
        if not receipt.succeeded:
            return self._fail(record, revert_error(receipt.revert_reason))

        record.outcome = TxOutcome.CONFIRMED
        record.confirmed_at = self._clock()
        self.registry.release(record)
        logger.info(
            f"TX_CONFIRMED | kind={kind.value} | hash={tx_hash} | block={receipt.block_number} | "
            f"gas_used={receipt.gas_used}"
        )
        return record

    def _fail(self, record: TransactionRecord, error: ClassifiedError) -> TransactionRecord:
        record.outcome = TxOutcome.FAILED
        record.error = error
        self.registry.release(record)
        self.notifier.report_error(
            error,
            f"TX_FAILED | kind={record.kind.value} | hash={record.hash}",
            key=f"tx-failed:{record.hash}" if record.hash else None,
            identity=record.identity,
        )
        return record

    def _time_out(self, record: TransactionRecord, detail: str) -> TransactionRecord:
        record.outcome = TxOutcome.TIMED_OUT
        record.error = ClassifiedError(
            kind=ErrorKind.TIMEOUT,
            user_message=GENERIC_MESSAGES[ErrorKind.TIMEOUT],
            detail=detail,
        )
        logger.warning(f"TX_TIMEOUT | kind={record.kind.value} | hash={record.hash} | {detail}")
        self.notifier.notify(
            NotificationLevel.WARNING,
            record.error.user_message,
            key=f"tx-timeout:{record.hash}",
            error=record.error,
            identity=record.identity,
        )
        return record

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    async def reconcile_timed_out(self) -> List[TransactionRecord]:
        """Re-check every TIMED_OUT record; returns the ones whose outcome is now known.

        Settled records are dropped from the registry and published as
        TransactionSettled so the session can fold late confirmations.
        """
        settled: List[TransactionRecord] = []
        now = self._clock()

        for record in self.registry.timed_out():
            try:
                receipt = await self.ledger.get_receipt(record.hash)
            except Exception as e:
                logger.warning(f"TX_RECONCILE | receipt lookup failed | hash={record.hash} | {e}")
                continue

            if receipt is None:
                age = record.age_seconds(now)
                if age <= self.settings.max_reconcile_age_seconds:
                    logger.debug(f"TX_RECONCILE | still unknown | hash={record.hash} | age={age:.0f}s")
                    continue
                logger.warning(f"TX_RECONCILE | never found, giving up | hash={record.hash} | age={age:.0f}s")
                self._fail(
                    record,
                    ClassifiedError(
                        kind=ErrorKind.TIMEOUT,
                        user_message="Transaction was not found on the ledger; it can be submitted again",
                        detail=f"not found after {age:.0f}s",
                    ),
                )
            elif receipt.succeeded:
                record.receipt = receipt
                record.outcome = TxOutcome.CONFIRMED
                record.confirmed_at = now
                record.error = None
                self.registry.release(record)
                logger.info(
                    f"TX_LATE_CONFIRM | kind={record.kind.value} | hash={record.hash} | block={receipt.block_number}"
                )
            else:
                record.receipt = receipt
                self._fail(record, revert_error(receipt.revert_reason))

            settled.append(record)
            self.bus.publish(TransactionSettled(record=record))

        return settled
