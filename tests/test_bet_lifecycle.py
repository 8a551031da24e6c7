import asyncio

import pytest

from vrfdice.application.event_bus import EventBus
from vrfdice.application.services.bet_lifecycle import (
    ACTION_PLACE_BET,
    ACTION_RECOVER,
    ACTION_RESET,
    ACTION_RESOLVE,
    BetLifecycleMachine,
)
from vrfdice.application.services.notifications import Notifier
from vrfdice.application.services.session_store import GameSessionStore
from vrfdice.domain.errors import InvalidTransition, SubmissionInFlight
from vrfdice.domain.models import GamePhase, PatchSource, SessionPatch, TxKind
from vrfdice.execution.approval import ApprovalCoordinator
from vrfdice.execution.inflight import InflightRegistry
from vrfdice.execution.transaction_executor import TransactionExecutor

from fakes import DICE, OTHER_PLAYER, PLAYER, UNIT, FakeClock, FakeLedger, make_config


def build(ledger=None, **recovery):
    ledger = ledger or FakeLedger()
    clock = FakeClock()
    bus = EventBus()
    notifier = Notifier(bus, clock=clock)
    config = make_config(recovery=recovery)
    store = GameSessionStore(PLAYER, clock=clock)
    registry = InflightRegistry()
    executor = TransactionExecutor(ledger, registry, bus, notifier, config.transactions, clock=clock)
    approvals = ApprovalCoordinator(ledger, executor, notifier, config.approval, clock=clock)
    machine = BetLifecycleMachine(store, approvals, executor, registry, DICE, config.recovery, clock=clock)
    phases = []
    store.subscribe(lambda prev, cur, src: phases.append(cur.phase))
    return machine, ledger, store, clock, phases


def ready(store, request_id=100):
    store.apply(
        SessionPatch(
            identity=PLAYER,
            phase=GamePhase.READY_TO_RESOLVE,
            chosen_value=3,
            wager_amount=50 * UNIT,
            randomness_request_id=request_id,
            randomness_fulfilled=True,
        ),
        PatchSource.EVENT,
    )


def test_transition_table():
    machine, _, _, _, _ = build()
    assert machine.can_transition(GamePhase.IDLE, GamePhase.APPROVING)
    assert machine.can_transition(GamePhase.RESOLVING, GamePhase.READY_TO_RESOLVE)
    assert machine.can_transition(GamePhase.CANCELLED, GamePhase.IDLE)
    assert not machine.can_transition(GamePhase.IDLE, GamePhase.RESOLVING)
    assert not machine.can_transition(GamePhase.AWAITING_RANDOMNESS, GamePhase.RESOLVING)
    assert not machine.can_transition(GamePhase.COMPLETED_WIN, GamePhase.AWAITING_RANDOMNESS)
    with pytest.raises(InvalidTransition):
        machine.check_transition(GamePhase.IDLE, GamePhase.COMPLETED_WIN)


@pytest.mark.anyio
async def test_bet_with_approval_walks_the_phases():
    machine, ledger, store, _, phases = build(FakeLedger(allowance=0))
    record = await machine.place_bet(PLAYER, 3, 50 * UNIT)

    assert record.is_success
    assert ledger.sent_functions() == ["approve", "playDice"]
    assert phases == [GamePhase.APPROVING, GamePhase.PLACING_BET, GamePhase.AWAITING_RANDOMNESS]
    session = store.get()
    assert session.randomness_request_id == 100
    assert session.wager_amount == 50 * UNIT


@pytest.mark.anyio
async def test_bet_with_allowance_skips_approving():
    machine, ledger, _, _, phases = build(FakeLedger(allowance=1000 * UNIT))
    await machine.place_bet(PLAYER, 3, 50 * UNIT)
    assert ledger.sent_functions() == ["playDice"]
    assert phases == [GamePhase.PLACING_BET, GamePhase.AWAITING_RANDOMNESS]


@pytest.mark.anyio
async def test_failed_approval_returns_to_idle():
    ledger = FakeLedger(allowance=0)
    ledger.send_error = Exception("User denied transaction signature")
    machine, _, store, _, phases = build(ledger)

    assert await machine.place_bet(PLAYER, 3, 50 * UNIT) is None
    assert phases == [GamePhase.APPROVING, GamePhase.IDLE]
    assert store.get().chosen_value is None


@pytest.mark.anyio
async def test_rejected_bet_reverts_optimistic_phase():
    ledger = FakeLedger(allowance=1000 * UNIT)
    ledger.revert_reason = "Invalid bet amount"
    machine, _, store, _, _ = build(ledger)

    record = await machine.place_bet(PLAYER, 3, 50 * UNIT)
    assert record.is_safe_to_retry
    assert store.get().phase is GamePhase.IDLE
    assert ACTION_PLACE_BET in machine.allowed_actions()


@pytest.mark.anyio
async def test_timed_out_bet_keeps_placing_and_blocks_another():
    ledger = FakeLedger(allowance=1000 * UNIT)
    ledger.auto_mine = False
    machine, _, store, _, _ = build(ledger)

    record = await machine.place_bet(PLAYER, 3, 50 * UNIT)
    assert record.needs_reconciliation
    assert store.get().phase is GamePhase.PLACING_BET
    assert ACTION_PLACE_BET not in machine.allowed_actions()
    with pytest.raises(InvalidTransition):
        await machine.place_bet(PLAYER, 3, 50 * UNIT)
    assert ledger.sent_functions() == ["playDice"]


@pytest.mark.anyio
async def test_concurrent_place_bet_is_refused():
    ledger = FakeLedger(allowance=1000 * UNIT)
    ledger.auto_mine = False
    machine, _, _, _, _ = build(ledger)

    first = asyncio.ensure_future(machine.place_bet(PLAYER, 3, 50 * UNIT))
    await asyncio.sleep(0)
    with pytest.raises((InvalidTransition, SubmissionInFlight)):
        await machine.place_bet(PLAYER, 4, 50 * UNIT)
    ledger.mine_held()
    await first
    assert ledger.sent_functions() == ["playDice"]


@pytest.mark.anyio
async def test_resolve_only_from_ready():
    machine, ledger, _, _, _ = build(FakeLedger(allowance=1000 * UNIT))
    with pytest.raises(InvalidTransition):
        await machine.resolve(PLAYER)
    assert ledger.sent == []


@pytest.mark.anyio
async def test_resolve_completes_the_game():
    ledger = FakeLedger(allowance=1000 * UNIT)
    machine, _, store, _, phases = build(ledger)
    await machine.place_bet(PLAYER, 3, 50 * UNIT)
    ledger.fulfill()
    ready(store)
    ledger.next_roll = 3

    record = await machine.resolve(PLAYER)
    assert record.is_success
    assert phases[-2:] == [GamePhase.RESOLVING, GamePhase.COMPLETED_WIN]
    assert store.get().payout == 300 * UNIT
    assert machine.allowed_actions() == {ACTION_PLACE_BET, ACTION_RESET}


@pytest.mark.anyio
async def test_failed_resolve_returns_to_ready():
    ledger = FakeLedger()
    ledger.revert_reason = "No active game"
    machine, _, store, _, _ = build(ledger)
    ready(store)

    record = await machine.resolve(PLAYER)
    assert record.is_safe_to_retry
    assert store.get().phase is GamePhase.READY_TO_RESOLVE
    assert ACTION_RESOLVE in machine.allowed_actions()


def test_reset_only_from_terminal():
    machine, _, store, _, _ = build()
    ready(store)
    with pytest.raises(InvalidTransition):
        machine.reset(PLAYER)
    store.apply(
        SessionPatch(identity=PLAYER, phase=GamePhase.COMPLETED_LOSS, payout=0, randomness_request_id=100),
        PatchSource.EVENT,
    )
    assert machine.reset(PLAYER).phase is GamePhase.IDLE


def test_allowed_actions_for_stuck_game():
    machine, _, store, _, _ = build()
    ready(store)
    store.mark_stuck(True)
    assert machine.allowed_actions() == {ACTION_RESOLVE, ACTION_RECOVER}
    with machine.claim(PLAYER, ACTION_RECOVER):
        assert ACTION_RECOVER not in machine.allowed_actions()
        with pytest.raises(InvalidTransition):
            with machine.claim(PLAYER, ACTION_RECOVER):
                pass


@pytest.mark.anyio
async def test_auto_resolve_on_ready():
    ledger = FakeLedger(allowance=1000 * UNIT)
    machine, _, store, _, _ = build(ledger, auto_resolve=True)
    store.subscribe(machine.on_session_changed)
    await machine.place_bet(PLAYER, 3, 50 * UNIT)

    ledger.fulfill()
    ready(store)
    for _ in range(20):
        if store.get().is_terminal:
            break
        await asyncio.sleep(0.01)

    assert ledger.sent_functions() == ["playDice", "resolveGame"]
    assert store.get().phase is GamePhase.COMPLETED_WIN
    await machine.stop()


@pytest.mark.anyio
async def test_auto_resolve_respects_cooldown():
    ledger = FakeLedger()
    ledger.revert_reason = "No active game"
    machine, _, store, clock, _ = build(ledger, auto_resolve=True, resolve_cooldown_seconds=5)
    store.subscribe(machine.on_session_changed)
    ready(store)
    await asyncio.sleep(0.05)
    # failed resolve: RESOLVING -> READY re-enters READY within the cooldown
    assert ledger.sent_functions() == ["resolveGame"]
    assert store.get().phase is GamePhase.READY_TO_RESOLVE
    await machine.stop()


class SlowRevertingLedger(FakeLedger):
    """Every resolve reverts, and each submission takes longer than the cooldown."""

    def __init__(self):
        super().__init__()
        self.revert_reason = "Randomness not ready"
        self.clock = None

    async def send_transaction(self, call, sender, gas_limit, value=0):
        self.clock.advance(6)
        return await super().send_transaction(call, sender, gas_limit, value)


@pytest.mark.anyio
async def test_failed_slow_resolve_does_not_retrigger_auto_resolve():
    ledger = SlowRevertingLedger()
    machine, _, store, clock, _ = build(ledger, auto_resolve=True, resolve_cooldown_seconds=5)
    ledger.clock = clock
    store.subscribe(machine.on_session_changed)

    ready(store)
    await asyncio.sleep(0.3)

    assert ledger.sent_functions() == ["resolveGame"]
    assert store.get().phase is GamePhase.READY_TO_RESOLVE
    assert ACTION_RESOLVE in machine.allowed_actions()
    await machine.stop()


@pytest.mark.anyio
async def test_auto_resolve_ignores_optimistic_ready():
    ledger = FakeLedger()
    machine, _, store, _, _ = build(ledger, auto_resolve=True)
    store.subscribe(machine.on_session_changed)
    store.apply(
        SessionPatch(identity=PLAYER, phase=GamePhase.READY_TO_RESOLVE, randomness_request_id=100),
        PatchSource.OPTIMISTIC,
    )
    await asyncio.sleep(0.05)
    assert ledger.sent == []
    await machine.stop()


def test_claims_are_per_identity():
    machine, _, store, _, _ = build()
    ready(store)
    with machine.claim(PLAYER, ACTION_RESOLVE):
        assert ACTION_RESOLVE not in machine.allowed_actions()
        assert not machine.is_claimed(OTHER_PLAYER, ACTION_RESOLVE)
        with machine.claim(OTHER_PLAYER, ACTION_RESOLVE):
            assert machine.is_claimed(OTHER_PLAYER, ACTION_RESOLVE)
    assert ACTION_RESOLVE in machine.allowed_actions()


@pytest.mark.anyio
async def test_failed_bet_after_identity_switch_leaves_new_session_alone():
    ledger = FakeLedger(allowance=1000 * UNIT)
    ledger.auto_mine = False
    ledger.revert_reason = "Invalid bet amount"
    machine, _, store, _, _ = build(ledger)

    bet = asyncio.ensure_future(machine.place_bet(PLAYER, 3, 50 * UNIT))
    await asyncio.sleep(0.02)
    store.bind_identity(OTHER_PLAYER)
    store.apply(
        SessionPatch(identity=OTHER_PLAYER, phase=GamePhase.PLACING_BET, chosen_value=2, wager_amount=UNIT),
        PatchSource.OPTIMISTIC,
    )
    ledger.mine_held()
    record = await bet

    assert record.is_safe_to_retry
    assert store.get().identity == OTHER_PLAYER
    assert store.get().phase is GamePhase.PLACING_BET
