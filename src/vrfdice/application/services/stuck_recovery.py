import asyncio
from typing import Awaitable, Callable, Dict, Optional

from loguru import logger

from ...config import RecoverySettings
from ...domain.errors import InvalidTransition, SubmissionInFlight
from ...domain.events import NotificationLevel
from ...domain.models import (
    STUCK_ELIGIBLE_PHASES,
    Clock,
    GamePhase,
    GameSession,
    PatchSource,
    SessionPatch,
    TransactionRecord,
    TxKind,
    utc_now,
)
from ...execution.calls import recover_stuck_game
from ...execution.inflight import InflightRegistry
from ...execution.transaction_executor import TransactionExecutor
from .notifications import Notifier
from .session_fold import fold_events
from .session_store import GameSessionStore


class StuckGameRecovery:
    """Flags games waiting on randomness for too long and runs the recovery call.

    Recovery is a separate ledger operation from resolve. A failed recovery
    keeps the game flagged, records the error and leaves the phase alone.
    """

    def __init__(
        self,
        store: GameSessionStore,
        executor: TransactionExecutor,
        registry: InflightRegistry,
        notifier: Notifier,
        settings: RecoverySettings,
        clock: Clock = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.executor = executor
        self.registry = registry
        self.notifier = notifier
        self.settings = settings
        self._clock = clock
        self._sleep = sleep
        self._last_attempt_at: Dict[str, float] = {}
        self._task: Optional[asyncio.Task] = None

    def check(self) -> bool:
        """Evaluate the stuck condition once; returns the session's stuck flag."""
        session = self.store.get()
        if not session.identity:
            return False
        if session.stuck:
            if session.phase not in STUCK_ELIGIBLE_PHASES:
                self.store.mark_stuck(False)
                return False
            return True
        if session.phase not in STUCK_ELIGIBLE_PHASES:
            return False

        age = session.age_in_phase(self._clock())
        if age < self.settings.threshold_seconds:
            return False

        if self.store.mark_stuck(True):
            logger.warning(
                f"RECOVERY | game stuck | phase={session.phase.value} | age={age:.0f}s | "
                f"request_id={session.randomness_request_id}"
            )
            self.notifier.notify(
                NotificationLevel.WARNING,
                "Your game seems stuck waiting for randomness. You can recover it.",
                key=f"stuck:{session.identity.lower()}:{session.randomness_request_id}",
                identity=session.identity,
            )
        return True

    def cooldown_remaining(self, identity: str) -> float:
        last = self._last_attempt_at.get(identity.lower())
        if last is None:
            return 0.0
        return max(0.0, self.settings.cooldown_seconds - (self._clock().timestamp() - last))

    def can_recover(self, session: Optional[GameSession] = None) -> bool:
        session = session or self.store.get()
        return (
            session.stuck
            and not self.registry.is_in_flight(session.identity, TxKind.RECOVER)
            and self.cooldown_remaining(session.identity) == 0.0
        )

    async def recover(self, identity: str) -> TransactionRecord:
        session = self.store.get()
        if not session.stuck:
            raise InvalidTransition("no stuck game to recover")
        if self.registry.is_in_flight(identity, TxKind.RECOVER):
            raise SubmissionInFlight(f"recover already in flight for {identity}")
        remaining = self.cooldown_remaining(identity)
        if remaining > 0:
            raise InvalidTransition(f"recovery cooldown, retry in {remaining:.1f}s")

        self._last_attempt_at[identity.lower()] = self._clock().timestamp()
        logger.info(f"RECOVERY | attempt | identity={identity} | request_id={session.randomness_request_id}")
        record = await self.executor.execute(identity, TxKind.RECOVER, recover_stuck_game(identity))
        self.fold_outcome(record)
        return record

    def fold_outcome(self, record: TransactionRecord) -> GameSession:
        if record.is_success:
            session = fold_events(self.store, record.receipt.events, PatchSource.RECOVERY)
            if not session.is_terminal:
                session = self.store.apply(
                    SessionPatch(
                        identity=session.identity,
                        phase=GamePhase.CANCELLED,
                        randomness_request_id=session.randomness_request_id,
                    ),
                    PatchSource.RECOVERY,
                )
            logger.info(f"RECOVERY | recovered | phase={session.phase.value} | hash={record.hash}")
            self.notifier.notify(
                NotificationLevel.SUCCESS,
                "Game recovered successfully",
                key=f"recovered:{record.hash}",
                identity=record.identity,
            )
            return session

        if record.needs_reconciliation:
            # outcome unknown; counted once the reconciled record settles
            logger.warning(f"RECOVERY | outcome unknown | hash={record.hash}")
            return self.store.get()

        logger.warning(f"RECOVERY | failed | outcome={record.outcome.value} | hash={record.hash}")
        return self.store.record_recovery_failure(record.error)

    # ------------------------------------------------------------------
    # Watch loop
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.ensure_future(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while True:
            try:
                self.check()
            except Exception as e:
                logger.exception(f"RECOVERY | check error | {e}")
            await self._sleep(self.settings.check_interval_seconds)
