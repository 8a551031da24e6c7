"""
polling_fallback.py - Periodic authoritative reads for when events go missing.

Events can be silent; this loop guarantees the session eventually reflects
the ledger. A read that keeps failing raises a "state unknown" condition
rather than leaving a frozen session on screen.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from loguru import logger

from ...config import PollingSettings
from ...domain.errors import LedgerReadError
from ...domain.events import NotificationLevel
from ...domain.models import Clock, LedgerSnapshot, PatchSource, utc_now
from ...execution.error_classifier import classify
from ...execution.transaction_executor import TransactionExecutor
from ...ports.ledger import LedgerPort
from .notifications import Notifier
from .session_fold import patch_from_snapshot
from .session_store import GameSessionStore


class PollingFallback:
    def __init__(
        self,
        ledger: LedgerPort,
        store: GameSessionStore,
        executor: TransactionExecutor,
        notifier: Notifier,
        settings: PollingSettings,
        spender: str,
        clock: Clock = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ledger = ledger
        self.store = store
        self.executor = executor
        self.notifier = notifier
        self.settings = settings
        self.spender = spender
        self._clock = clock
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._outages = 0
        self.state_unknown = False
        self.last_snapshot: Optional[LedgerSnapshot] = None

    def current_interval(self) -> float:
        if self.store.get().is_active:
            return self.settings.active_interval_seconds
        return self.settings.idle_interval_seconds

    async def read_snapshot(self, identity: str) -> LedgerSnapshot:
        """Every authoritative read for ``identity``; raises LedgerReadError if any fails."""
        try:
            game, request, allowance, stats, totals, history, can_start, pending = await asyncio.gather(
                self.ledger.get_current_game(identity),
                self.ledger.get_request_details(identity),
                self.ledger.get_allowance(identity, self.spender),
                self.ledger.get_player_stats(identity),
                self.ledger.get_player_totals(identity),
                self.ledger.get_previous_bets(identity, self.settings.history_size),
                self.ledger.can_start_new_game(identity),
                self.ledger.has_pending_request(identity),
            )
        except Exception as e:
            raise LedgerReadError(f"snapshot read failed for {identity}: {e}") from e
        return LedgerSnapshot(
            identity=identity,
            game=game,
            request=request,
            read_at=self._clock(),
            allowance=allowance,
            stats=stats,
            totals=totals,
            history=list(history)[: self.settings.history_size],
            can_start_new_game=can_start,
            has_pending_request=pending,
        )

    async def poll_once(self) -> Optional[LedgerSnapshot]:
        """One read with bounded exponential backoff, folded into the store."""
        identity = self.store.identity
        if not identity:
            return None

        snapshot = None
        for attempt in range(self.settings.max_attempts):
            try:
                snapshot = await self.read_snapshot(identity)
                break
            except LedgerReadError as e:
                error = classify(e.__cause__ or e)
                logger.warning(
                    f"POLL | read failed | attempt={attempt + 1}/{self.settings.max_attempts} | "
                    f"kind={error.kind.value} | {error.detail}"
                )
                if attempt < self.settings.max_attempts - 1:
                    await self._sleep(self.settings.backoff_base_seconds * (2 ** attempt))

        if snapshot is None:
            self._mark_unknown(identity)
            return None

        if identity != self.store.identity:
            logger.debug(f"POLL | identity changed during read, dropped | identity={identity}")
            return None

        if self.state_unknown:
            self.state_unknown = False
            logger.info(f"POLL | state known again | identity={identity}")
            self.notifier.notify(NotificationLevel.INFO, "Connection restored", identity=identity)

        self.last_snapshot = snapshot
        patch = patch_from_snapshot(self.store.get(), snapshot)
        if patch is not None:
            self.store.apply(patch, PatchSource.POLL)

        await self.executor.reconcile_timed_out()
        return snapshot

    def _mark_unknown(self, identity: str) -> None:
        if self.state_unknown:
            return
        self.state_unknown = True
        self._outages += 1
        logger.error(f"POLL | state unknown after {self.settings.max_attempts} attempts | identity={identity}")
        self.notifier.notify(
            NotificationLevel.ERROR,
            "Unable to read game state from the network. Showing last known state.",
            key=f"state-unknown:{identity.lower()}:{self._outages}",
            identity=identity,
        )

    # ------------------------------------------------------------------
    # Loop
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
                await self.poll_once()
            except Exception as e:
                logger.exception(f"POLL | tick error | {e}")
            await self._sleep(self.current_interval())
