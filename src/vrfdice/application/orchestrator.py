"""
orchestrator.py - One ledger connection, one player, one consistent game view.

Wires the session store, lifecycle machine, approval coordinator, executor,
event reconciler, polling fallback and stuck recovery together, and owns the
lifetime of every background task and subscription they start.
"""

import asyncio
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable, List, Optional, Set

from loguru import logger

from ..config import AppConfig
from ..domain.errors import (
    BetValidationError,
    ClassifiedError,
    ErrorKind,
    InvalidTransition,
    SubmissionInFlight,
    WrongNetworkError,
)
from ..domain.events import NotificationLevel, SessionChanged, TransactionSettled
from ..domain.models import (
    BetHistoryEntry,
    Clock,
    GamePhase,
    GameSession,
    IdentityContext,
    PatchSource,
    PlayerStats,
    PlayerTotals,
    TokenAllowance,
    TransactionRecord,
    TxKind,
    utc_now,
)
from ..execution.approval import ApprovalCoordinator
from ..execution.error_classifier import REVERT_MESSAGES, classify
from ..execution.inflight import InflightRegistry
from ..execution.transaction_executor import TransactionExecutor
from ..ports.ledger import LedgerPort
from .event_bus import EventBus
from .services.bet_lifecycle import ACTION_PLACE_BET, ACTION_RECOVER, BetLifecycleMachine
from .services.event_reconciler import EventReconciler
from .services.notifications import Notifier
from .services.polling_fallback import PollingFallback
from .services.session_store import GameSessionStore
from .services.stuck_recovery import StuckGameRecovery


@dataclass
class SessionView:
    """Everything a front-end needs to render the current game."""

    session: GameSession
    allowed_actions: Set[str]
    state_unknown: bool
    wrong_network: bool
    identity: Optional[IdentityContext] = None
    allowance: Optional[TokenAllowance] = None
    stats: Optional[PlayerStats] = None
    totals: Optional[PlayerTotals] = None
    history: List[BetHistoryEntry] = field(default_factory=list)
    in_flight: List[TransactionRecord] = field(default_factory=list)
    recovery_cooldown_seconds: float = 0.0


class GameOrchestrator:
    def __init__(
        self,
        ledger: LedgerPort,
        config: AppConfig,
        bus: Optional[EventBus] = None,
        clock: Clock = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ledger = ledger
        self.config = config
        self.bus = bus or EventBus()
        self._clock = clock

        spender = config.contracts.dice
        self.notifier = Notifier(self.bus, clock=clock)
        self.store = GameSessionStore(clock=clock)
        self.registry = InflightRegistry()
        self.executor = TransactionExecutor(
            ledger, self.registry, self.bus, self.notifier, config.transactions, clock=clock
        )
        self.approvals = ApprovalCoordinator(ledger, self.executor, self.notifier, config.approval, clock=clock)
        self.lifecycle = BetLifecycleMachine(
            self.store, self.approvals, self.executor, self.registry, spender, config.recovery, clock=clock
        )
        self.reconciler = EventReconciler(ledger, self.store, self.notifier)
        self.poller = PollingFallback(
            ledger, self.store, self.executor, self.notifier, config.polling, spender, clock=clock, sleep=sleep
        )
        self.recovery = StuckGameRecovery(
            self.store, self.executor, self.registry, self.notifier, config.recovery, clock=clock, sleep=sleep
        )

        self.identity: Optional[IdentityContext] = None
        self.wrong_network = False
        self._unsubscribers = [
            self.store.subscribe(self._on_session_changed),
            self.bus.subscribe(TransactionSettled, self._on_transaction_settled),
        ]

    # =========================================================================
    # CONNECTION LIFECYCLE
    # =========================================================================

    async def connect(self, identity: IdentityContext) -> None:
        """Bind ``identity`` and start events, polling and stuck detection."""
        await self._teardown()
        self.identity = identity
        self.store.bind_identity(identity.address)

        if identity.chain_id != self.config.network.chain_id:
            self._enter_wrong_network(identity.chain_id)
            return
        self.wrong_network = False

        logger.info(f"ORCHESTRATOR | connect | identity={identity.short()} | chain_id={identity.chain_id}")
        await self.reconciler.attach(identity.address)
        try:
            await self.approvals.attach(identity.address)
        except Exception as e:
            logger.warning(f"ORCHESTRATOR | approval events unavailable | {e}")
        await self.poller.start()
        await self.recovery.start()

    async def switch_identity(self, identity: IdentityContext) -> None:
        previous = self.identity.short() if self.identity else None
        logger.info(f"ORCHESTRATOR | identity switch | from={previous} | to={identity.short()}")
        await self.connect(identity)

    async def on_chain_changed(self, chain_id: int) -> None:
        if self.identity is None:
            return
        await self.connect(IdentityContext(address=self.identity.address, chain_id=chain_id))

    async def on_connection_changed(self) -> None:
        """Transport reconnected: resubscribe and re-read right away."""
        if self.identity is None or self.wrong_network:
            return
        await self.reconciler.rebind(self.identity.address)
        await self.poller.poll_once()

    async def disconnect(self) -> None:
        await self._teardown()
        self.identity = None
        self.wrong_network = False

    async def close(self) -> None:
        await self.disconnect()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        await self.bus.stop()

    async def _teardown(self) -> None:
        await self.poller.stop()
        await self.recovery.stop()
        await self.lifecycle.stop()
        await self.reconciler.detach()
        await self.approvals.detach()

    def _enter_wrong_network(self, chain_id: int) -> None:
        self.wrong_network = True
        error = classify(WrongNetworkError(self.config.network.chain_id, chain_id))
        self.notifier.report_error(
            error,
            f"ORCHESTRATOR | wrong network | chain_id={chain_id}",
            key=f"wrong-network:{chain_id}",
            identity=self.identity.address if self.identity else None,
        )

    # =========================================================================
    # PLAYER ACTIONS
    # =========================================================================

    async def place_bet(self, chosen_value: int, amount) -> Optional[TransactionRecord]:
        """Validate, check balance, approve if needed and place the bet.

        Raises BetValidationError for bad input and InvalidTransition /
        SubmissionInFlight when the action is not available now. Ledger
        failures are reported on the notification channel and give None.
        """
        identity = self._require_ready()
        wager = self.validate_bet(chosen_value, amount)
        session = self.store.get()
        if ACTION_PLACE_BET not in self.lifecycle.allowed_actions(session):
            raise InvalidTransition(f"cannot place a bet while {session.phase.value}")

        try:
            balance = await self.ledger.get_token_balance(identity)
        except Exception as e:
            self.notifier.report_error(classify(e), "ORCHESTRATOR | balance read failed", identity=identity)
            return None
        if balance < wager:
            self.notifier.report_error(
                ClassifiedError(
                    kind=ErrorKind.INSUFFICIENT_BALANCE,
                    user_message="Insufficient token balance for this bet",
                    detail=f"balance={balance} wager={wager}",
                ),
                "ORCHESTRATOR | bet refused",
                identity=identity,
            )
            return None

        try:
            can_start = await self.ledger.can_start_new_game(identity)
        except Exception as e:
            logger.warning(f"ORCHESTRATOR | can_start_new_game unknown | {e}")
            can_start = None
        if can_start is False:
            self.notifier.report_error(
                ClassifiedError(
                    kind=ErrorKind.CONTRACT_REVERTED,
                    user_message=REVERT_MESSAGES["game already active"],
                    detail="canStartNewGame returned false",
                ),
                "ORCHESTRATOR | bet refused",
                identity=identity,
            )
            return None

        try:
            return await self.lifecycle.place_bet(identity, chosen_value, wager)
        except (InvalidTransition, SubmissionInFlight):
            raise
        except Exception as e:
            self.notifier.report_error(classify(e), "ORCHESTRATOR | place_bet failed", identity=identity)
            return None

    async def resolve(self) -> TransactionRecord:
        identity = self._require_ready()
        return await self.lifecycle.resolve(identity)

    async def recover(self) -> TransactionRecord:
        identity = self._require_ready()
        with self.lifecycle.claim(identity, ACTION_RECOVER):
            return await self.recovery.recover(identity)

    def reset(self) -> GameSession:
        identity = self._require_ready()
        return self.lifecycle.reset(identity)

    async def refresh(self):
        self._require_ready()
        return await self.poller.poll_once()

    def view(self) -> SessionView:
        session = self.store.get()
        snapshot = self.poller.last_snapshot
        allowance = None
        if self.identity is not None:
            allowance = self.approvals.cached_allowance(self.identity.address, self.config.contracts.dice)
        return SessionView(
            session=session,
            allowed_actions=set() if self.wrong_network else self.lifecycle.allowed_actions(session),
            state_unknown=self.poller.state_unknown,
            wrong_network=self.wrong_network,
            identity=self.identity,
            allowance=allowance or (snapshot.allowance if snapshot else None),
            stats=snapshot.stats if snapshot else None,
            totals=snapshot.totals if snapshot else None,
            history=list(snapshot.history) if snapshot else [],
            in_flight=self.registry.records(session.identity) if session.identity else [],
            recovery_cooldown_seconds=(
                self.recovery.cooldown_remaining(session.identity) if session.identity else 0.0
            ),
        )

    def validate_bet(self, chosen_value: int, amount) -> int:
        """Check bet input against the configured bounds; returns the wager in base units."""
        limits = self.config.wager
        try:
            chosen = int(chosen_value)
        except (TypeError, ValueError):
            raise BetValidationError(f"chosen number must be an integer, got {chosen_value!r}")
        if chosen != chosen_value or not limits.min_choice <= chosen <= limits.max_choice:
            raise BetValidationError(
                f"chosen number must be between {limits.min_choice} and {limits.max_choice}"
            )
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise BetValidationError(f"invalid bet amount: {amount!r}")
        if not value.is_finite():
            raise BetValidationError(f"invalid bet amount: {amount!r}")
        if not limits.min_bet <= value <= limits.max_bet:
            raise BetValidationError(f"bet amount must be between {limits.min_bet} and {limits.max_bet}")
        try:
            return limits.to_base_units(value)
        except ValueError as e:
            raise BetValidationError(f"invalid bet amount: {e}")

    def _require_ready(self) -> str:
        if self.identity is None:
            raise InvalidTransition("no connected identity")
        if self.wrong_network:
            raise WrongNetworkError(self.config.network.chain_id, self.identity.chain_id)
        return self.identity.address

    # =========================================================================
    # REACTIONS
    # =========================================================================

    def _on_session_changed(self, previous: GameSession, current: GameSession, source: PatchSource) -> None:
        self.bus.publish(SessionChanged(previous=previous, current=current, source=source))
        if previous.phase is not current.phase:
            self._announce(current)
        self.lifecycle.on_session_changed(previous, current, source)

    def _announce(self, session: GameSession) -> None:
        request_id = session.randomness_request_id
        if request_id is None:
            return
        limits = self.config.wager
        if session.phase is GamePhase.AWAITING_RANDOMNESS:
            level, message, key = NotificationLevel.SUCCESS, "Bet placed! Waiting for the dice roll", "started"
        elif session.phase is GamePhase.READY_TO_RESOLVE:
            level, message, key = NotificationLevel.INFO, "Dice rolled. Ready to resolve", "fulfilled"
        elif session.phase is GamePhase.COMPLETED_WIN:
            payout = limits.from_base_units(session.payout or 0)
            level, message, key = NotificationLevel.SUCCESS, f"You won {payout} tokens!", "completed"
        elif session.phase is GamePhase.COMPLETED_LOSS:
            level, message, key = NotificationLevel.INFO, "Better luck next time", "completed"
        elif session.phase is GamePhase.CANCELLED:
            level, message, key = NotificationLevel.WARNING, "Game cancelled", "completed"
        else:
            return
        self.notifier.notify(level, message, key=f"{key}:{request_id}", identity=session.identity)

    def _on_transaction_settled(self, event: TransactionSettled) -> None:
        record = event.record
        if self.store.identity is None or record.identity.lower() != self.store.identity.lower():
            logger.info(f"ORCHESTRATOR | settled record for inactive identity | hash={record.hash}")
            return
        if record.kind in (TxKind.PLACE_BET, TxKind.RESOLVE):
            self.lifecycle.fold_outcome(record)
        elif record.kind is TxKind.RECOVER:
            self.recovery.fold_outcome(record)
