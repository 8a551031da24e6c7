import asyncio

import pytest

from vrfdice.application.event_bus import EventBus
from vrfdice.application.services.notifications import Notifier
from vrfdice.application.services.session_store import GameSessionStore
from vrfdice.application.services.stuck_recovery import StuckGameRecovery
from vrfdice.domain.errors import ErrorKind, InvalidTransition, SubmissionInFlight
from vrfdice.domain.events import Notification, NotificationLevel
from vrfdice.domain.models import (
    GamePhase,
    LedgerGame,
    LedgerGameStatus,
    PatchSource,
    RandomnessRequest,
    SessionPatch,
)
from vrfdice.execution.inflight import InflightRegistry
from vrfdice.execution.transaction_executor import TransactionExecutor

from fakes import PLAYER, FakeClock, FakeLedger, RecordingSleep, make_config


def build(**recovery):
    ledger = FakeLedger()
    ledger.game = LedgerGame(
        is_active=True, chosen_number=3, result=0, amount=50, timestamp=1, payout=0,
        status=LedgerGameStatus.PENDING_VRF,
    )
    ledger.request = RandomnessRequest(request_id=7, active=True, fulfilled=False)
    clock = FakeClock()
    bus = EventBus()
    notes = []
    bus.subscribe(Notification, notes.append)
    notifier = Notifier(bus, clock=clock)
    config = make_config(recovery=recovery)
    store = GameSessionStore(PLAYER, clock=clock)
    registry = InflightRegistry()
    executor = TransactionExecutor(ledger, registry, bus, notifier, config.transactions, clock=clock)
    recovery = StuckGameRecovery(
        store, executor, registry, notifier, config.recovery, clock=clock, sleep=RecordingSleep()
    )
    store.apply(
        SessionPatch(
            identity=PLAYER,
            phase=GamePhase.AWAITING_RANDOMNESS,
            chosen_value=3,
            wager_amount=50,
            randomness_request_id=7,
        ),
        PatchSource.EVENT,
    )
    return recovery, ledger, store, clock, notes


def test_not_stuck_before_threshold():
    recovery, _, store, clock, notes = build(threshold_seconds=300)
    clock.advance(299)
    assert not recovery.check()
    assert not store.get().stuck
    assert notes == []


def test_stuck_after_threshold_notifies_once():
    recovery, _, store, clock, notes = build(threshold_seconds=300)
    clock.advance(301)
    assert recovery.check()
    assert recovery.check()
    assert store.get().stuck
    assert store.get().phase is GamePhase.AWAITING_RANDOMNESS
    assert [n.level for n in notes] == [NotificationLevel.WARNING]
    assert recovery.can_recover()


def test_progress_clears_stuck_flag():
    recovery, _, store, clock, _ = build()
    clock.advance(301)
    recovery.check()
    store.apply(
        SessionPatch(identity=PLAYER, phase=GamePhase.COMPLETED_LOSS, payout=0, randomness_request_id=7),
        PatchSource.EVENT,
    )
    assert not recovery.check()
    assert not store.get().stuck


@pytest.mark.anyio
async def test_recover_requires_stuck_game():
    recovery, ledger, _, _, _ = build()
    with pytest.raises(InvalidTransition):
        await recovery.recover(PLAYER)
    assert ledger.sent == []


@pytest.mark.anyio
async def test_successful_recovery_cancels_the_game():
    recovery, ledger, store, clock, notes = build()
    clock.advance(301)
    recovery.check()

    record = await recovery.recover(PLAYER)
    session = store.get()
    assert record.is_success
    assert ledger.sent_functions() == ["recoverStuckGame"]
    assert session.phase is GamePhase.CANCELLED
    assert not session.stuck
    assert notes[-1].level is NotificationLevel.SUCCESS


@pytest.mark.anyio
async def test_recovery_without_cancel_event_still_concludes():
    recovery, ledger, store, clock, _ = build()
    ledger.request = RandomnessRequest(request_id=0, active=False, fulfilled=False)
    clock.advance(301)
    recovery.check()

    await recovery.recover(PLAYER)
    assert store.get().phase is GamePhase.CANCELLED


@pytest.mark.anyio
async def test_failed_recovery_keeps_phase_and_records_error():
    recovery, ledger, store, clock, _ = build(cooldown_seconds=5)
    ledger.revert_reason = "Game not stuck yet"
    clock.advance(301)
    recovery.check()

    record = await recovery.recover(PLAYER)
    session = store.get()
    assert not record.is_success
    assert session.phase is GamePhase.AWAITING_RANDOMNESS
    assert session.stuck
    assert session.recovery_attempts == 1
    assert session.last_error.kind is ErrorKind.CONTRACT_REVERTED


@pytest.mark.anyio
async def test_cooldown_allows_one_submission():
    recovery, ledger, _, clock, _ = build(cooldown_seconds=5)
    ledger.revert_reason = "Game not stuck yet"
    clock.advance(301)
    recovery.check()

    await recovery.recover(PLAYER)
    with pytest.raises(InvalidTransition):
        await recovery.recover(PLAYER)
    assert len(ledger.sent) == 1
    assert recovery.cooldown_remaining(PLAYER) == 5.0

    clock.advance(5)
    await recovery.recover(PLAYER)
    assert len(ledger.sent) == 2


@pytest.mark.anyio
async def test_concurrent_recover_submits_once():
    recovery, ledger, _, clock, _ = build()
    ledger.auto_mine = False
    clock.advance(301)
    recovery.check()

    first = asyncio.ensure_future(recovery.recover(PLAYER))
    await asyncio.sleep(0)
    with pytest.raises((SubmissionInFlight, InvalidTransition)):
        await recovery.recover(PLAYER)
    ledger.mine_held()
    await first
    assert ledger.sent_functions() == ["recoverStuckGame"]


@pytest.mark.anyio
async def test_watch_loop_flags_stuck_game():
    recovery, _, store, clock, _ = build()
    clock.advance(301)
    await recovery.start()
    await asyncio.sleep(0.01)
    await recovery.stop()
    assert store.get().stuck
    assert not recovery.running


@pytest.mark.anyio
async def test_timed_out_recovery_is_not_counted_as_failure():
    recovery, ledger, store, clock, _ = build(cooldown_seconds=5)
    ledger.auto_mine = False
    clock.advance(301)
    recovery.check()

    record = await recovery.recover(PLAYER)
    session = store.get()
    assert record.needs_reconciliation
    assert session.stuck
    assert session.phase is GamePhase.AWAITING_RANDOMNESS
    assert session.recovery_attempts == 0
    assert session.last_error is None
    assert not recovery.can_recover()
