import asyncio
from contextlib import contextmanager
from typing import Dict, Optional, Set, Tuple

from loguru import logger

from ...config import RecoverySettings
from ...domain.errors import InvalidTransition, SubmissionInFlight
from ...domain.models import (
    Clock,
    GamePhase,
    GameSession,
    PatchSource,
    SessionPatch,
    TransactionRecord,
    TxKind,
    utc_now,
)
from ...execution.approval import ApprovalCoordinator
from ...execution.calls import play_dice, resolve_game
from ...execution.inflight import InflightRegistry
from ...execution.transaction_executor import TransactionExecutor
from .session_fold import fold_events
from .session_store import GameSessionStore


ACTION_PLACE_BET = "place_bet"
ACTION_RESOLVE = "resolve"
ACTION_RECOVER = "recover"
ACTION_RESET = "reset"


class BetLifecycleMachine:
    """Drives client-initiated steps of a game with explicit transition rules.

    Ledger-observed progress (events, polls) goes straight into the store;
    this machine only guards and performs the steps the player asks for.
    """

    def __init__(
        self,
        store: GameSessionStore,
        approvals: ApprovalCoordinator,
        executor: TransactionExecutor,
        registry: InflightRegistry,
        spender: str,
        settings: Optional[RecoverySettings] = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.approvals = approvals
        self.executor = executor
        self.registry = registry
        self.spender = spender
        self.settings = settings or RecoverySettings()
        self._clock = clock
        self._claimed: Set[Tuple[str, str]] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._last_resolve_at: Dict[str, float] = {}
        self._transitions = {
            GamePhase.IDLE: {GamePhase.APPROVING, GamePhase.PLACING_BET},
            GamePhase.APPROVING: {GamePhase.PLACING_BET, GamePhase.IDLE},
            GamePhase.PLACING_BET: {GamePhase.AWAITING_RANDOMNESS, GamePhase.IDLE},
            GamePhase.AWAITING_RANDOMNESS: {
                GamePhase.READY_TO_RESOLVE,
                GamePhase.COMPLETED_WIN,
                GamePhase.COMPLETED_LOSS,
                GamePhase.CANCELLED,
            },
            GamePhase.READY_TO_RESOLVE: {
                GamePhase.RESOLVING,
                GamePhase.COMPLETED_WIN,
                GamePhase.COMPLETED_LOSS,
                GamePhase.CANCELLED,
            },
            GamePhase.RESOLVING: {
                GamePhase.READY_TO_RESOLVE,
                GamePhase.COMPLETED_WIN,
                GamePhase.COMPLETED_LOSS,
                GamePhase.CANCELLED,
            },
            GamePhase.COMPLETED_WIN: {GamePhase.IDLE},
            GamePhase.COMPLETED_LOSS: {GamePhase.IDLE},
            GamePhase.CANCELLED: {GamePhase.IDLE},
        }

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------
    def can_transition(self, from_phase: GamePhase, to_phase: GamePhase) -> bool:
        return to_phase in self._transitions.get(from_phase, set())

    def check_transition(self, from_phase: GamePhase, to_phase: GamePhase) -> None:
        if not self.can_transition(from_phase, to_phase):
            raise InvalidTransition(f"{from_phase.value} -> {to_phase.value}")

    def allowed_actions(self, session: Optional[GameSession] = None) -> Set[str]:
        """Actions the player may request right now."""
        session = session or self.store.get()
        identity = session.identity
        actions: Set[str] = set()
        if not identity:
            return actions

        in_flight = self.registry.any_in_flight(identity)
        if (
            (session.phase is GamePhase.IDLE or session.is_terminal)
            and not in_flight
            and not self.is_claimed(identity, ACTION_PLACE_BET)
        ):
            actions.add(ACTION_PLACE_BET)
        if (
            session.phase is GamePhase.READY_TO_RESOLVE
            and not self.registry.is_in_flight(identity, TxKind.RESOLVE)
            and not self.is_claimed(identity, ACTION_RESOLVE)
        ):
            actions.add(ACTION_RESOLVE)
        if (
            session.stuck
            and not self.registry.is_in_flight(identity, TxKind.RECOVER)
            and not self.is_claimed(identity, ACTION_RECOVER)
        ):
            actions.add(ACTION_RECOVER)
        if session.is_terminal and not in_flight:
            actions.add(ACTION_RESET)
        return actions

    def is_claimed(self, identity: str, action: str) -> bool:
        return (identity.lower(), action) in self._claimed

    @contextmanager
    def claim(self, identity: str, action: str):
        """Refuse a second request for ``action`` by ``identity`` while the first is running."""
        key = (identity.lower(), action)
        if key in self._claimed:
            raise InvalidTransition(f"{action} already in progress")
        self._claimed.add(key)
        try:
            yield
        finally:
            self._claimed.discard(key)

    # ------------------------------------------------------------------
    # Player actions
    # ------------------------------------------------------------------
    async def place_bet(self, identity: str, chosen_value: int, wager: int) -> Optional[TransactionRecord]:
        """Idle -> (Approving ->) PlacingBet -> AwaitingRandomness.

        Returns the PLACE_BET record, or None when the approval did not
        confirm and no bet was sent.
        """
        with self.claim(identity, ACTION_PLACE_BET):
            session = self.store.get()
            if session.is_terminal:
                self.reset(identity)
                session = self.store.get()
            if session.phase is not GamePhase.IDLE:
                raise InvalidTransition(f"cannot place a bet while {session.phase.value}")
            for kind in (TxKind.APPROVE, TxKind.PLACE_BET):
                if self.registry.is_in_flight(identity, kind):
                    raise SubmissionInFlight(f"{kind.value} already in flight for {identity}")

            def _approving() -> None:
                self._advance(identity, GamePhase.APPROVING, chosen_value=chosen_value, wager_amount=wager)

            try:
                approved = await self.approvals.ensure_allowance(identity, self.spender, wager, _approving)
            except Exception:
                self.store.revert_optimistic(identity, GamePhase.APPROVING, GamePhase.IDLE)
                raise
            if not approved:
                self.store.revert_optimistic(identity, GamePhase.APPROVING, GamePhase.IDLE)
                return None

            self._advance(identity, GamePhase.PLACING_BET, chosen_value=chosen_value, wager_amount=wager)
            record = await self.executor.execute(identity, TxKind.PLACE_BET, play_dice(chosen_value, wager))
            self.fold_outcome(record)
            return record

    async def resolve(self, identity: str) -> TransactionRecord:
        with self.claim(identity, ACTION_RESOLVE):
            session = self.store.get()
            self.check_transition(session.phase, GamePhase.RESOLVING)
            if self.registry.is_in_flight(identity, TxKind.RESOLVE):
                raise SubmissionInFlight(f"resolve already in flight for {identity}")

            self._last_resolve_at[identity.lower()] = self._clock().timestamp()
            self._advance(identity, GamePhase.RESOLVING)
            try:
                record = await self.executor.execute(identity, TxKind.RESOLVE, resolve_game())
            finally:
                # the cooldown runs from when the attempt settled
                self._last_resolve_at[identity.lower()] = self._clock().timestamp()
            self.fold_outcome(record)
            return record

    def reset(self, identity: str) -> GameSession:
        """Terminal -> Idle, once nothing is in flight for the identity."""
        session = self.store.get()
        self.check_transition(session.phase, GamePhase.IDLE)
        if self.registry.any_in_flight(identity):
            raise SubmissionInFlight(f"cannot reset while a transaction is in flight for {identity}")
        self.store.reset()
        return self.store.get()

    def fold_outcome(self, record: TransactionRecord) -> GameSession:
        """Fold a PLACE_BET or RESOLVE record whose outcome is known (or not)."""
        if record.is_success:
            session = fold_events(self.store, record.receipt.events, PatchSource.EVENT)
            if record.kind is TxKind.PLACE_BET and session.phase is GamePhase.PLACING_BET:
                logger.warning(f"LIFECYCLE | bet confirmed without a start event | hash={record.hash}")
            return session

        if record.is_safe_to_retry:
            if record.kind is TxKind.PLACE_BET:
                self.store.revert_optimistic(record.identity, GamePhase.PLACING_BET, GamePhase.IDLE)
            elif record.kind is TxKind.RESOLVE:
                self.store.revert_optimistic(record.identity, GamePhase.RESOLVING, GamePhase.READY_TO_RESOLVE)
        # TIMED_OUT: keep the optimistic phase until the ledger says otherwise
        return self.store.get()

    # ------------------------------------------------------------------
    # Auto-resolve
    # ------------------------------------------------------------------
    def on_session_changed(self, previous: GameSession, current: GameSession, source: PatchSource) -> None:
        """Start a resolve when the ledger shows the randomness has arrived."""
        if not self.settings.auto_resolve:
            return
        if current.phase is not GamePhase.READY_TO_RESOLVE or previous.phase is GamePhase.READY_TO_RESOLVE:
            return
        # only ledger observations count; a failed resolve falling back is not one
        if source is PatchSource.OPTIMISTIC or previous.phase is GamePhase.RESOLVING:
            return
        if previous.identity.lower() != current.identity.lower():
            return

        last = self._last_resolve_at.get(current.identity.lower())
        now = self._clock().timestamp()
        if last is not None and now - last < self.settings.resolve_cooldown_seconds:
            logger.info(
                f"LIFECYCLE | auto-resolve skipped, cooldown | remaining="
                f"{self.settings.resolve_cooldown_seconds - (now - last):.1f}s"
            )
            return
        task = asyncio.ensure_future(self._auto_resolve(current.identity))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _auto_resolve(self, identity: str) -> None:
        try:
            await self.resolve(identity)
        except (InvalidTransition, SubmissionInFlight) as e:
            logger.info(f"LIFECYCLE | auto-resolve not started | {e}")
        except Exception as e:
            logger.exception(f"LIFECYCLE | auto-resolve error | {e}")

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    def _advance(self, identity: str, phase: GamePhase, **fields) -> None:
        current = self.store.get()
        self.check_transition(current.phase, phase)
        self.store.apply(SessionPatch(identity=identity, phase=phase, **fields), PatchSource.OPTIMISTIC)
