import asyncio

import pytest

from vrfdice.application.event_bus import EventBus
from vrfdice.application.services.notifications import Notifier
from vrfdice.config import MAX_UINT256
from vrfdice.domain.errors import ErrorKind
from vrfdice.domain.events import Approval, Notification
from vrfdice.domain.models import TxKind
from vrfdice.execution.approval import ApprovalCoordinator
from vrfdice.execution.inflight import InflightRegistry
from vrfdice.execution.transaction_executor import TransactionExecutor

from fakes import DICE, PLAYER, TOKEN, UNIT, FakeClock, FakeLedger, make_config


def build(ledger, **approval):
    clock = FakeClock()
    bus = EventBus()
    config = make_config(approval=approval)
    notifier = Notifier(bus, clock=clock)
    executor = TransactionExecutor(ledger, InflightRegistry(), bus, notifier, config.transactions, clock=clock)
    return ApprovalCoordinator(ledger, executor, notifier, config.approval, clock=clock), clock


@pytest.mark.anyio
async def test_sufficient_allowance_sends_nothing():
    ledger = FakeLedger(allowance=100 * UNIT)
    coordinator, _ = build(ledger)
    assert await coordinator.ensure_allowance(PLAYER, DICE, 50 * UNIT)
    assert ledger.sent == []


@pytest.mark.anyio
async def test_every_decision_reads_the_ledger():
    ledger = FakeLedger(allowance=100 * UNIT)
    coordinator, _ = build(ledger)
    await coordinator.ensure_allowance(PLAYER, DICE, 50 * UNIT)
    await coordinator.ensure_allowance(PLAYER, DICE, 50 * UNIT)
    assert ledger.reads["get_allowance"] == 2


@pytest.mark.anyio
async def test_max_policy_approves_unbounded_amount_once():
    ledger = FakeLedger(allowance=0)
    coordinator, _ = build(ledger, policy="max")
    needed = []

    assert await coordinator.ensure_allowance(PLAYER, DICE, 50 * UNIT, lambda: needed.append(True))
    assert needed == [True]
    assert ledger.sent_functions() == ["approve"]
    assert ledger.sent[0].args == (DICE, MAX_UINT256)

    assert await coordinator.ensure_allowance(PLAYER, DICE, 500 * UNIT)
    assert len(ledger.sent) == 1


@pytest.mark.anyio
async def test_exact_policy_approves_the_wager():
    ledger = FakeLedger(allowance=0)
    coordinator, _ = build(ledger, policy="exact")
    assert await coordinator.ensure_allowance(PLAYER, DICE, 50 * UNIT)
    assert ledger.sent[0].args == (DICE, 50 * UNIT)


@pytest.mark.anyio
async def test_concurrent_requests_share_one_approval():
    ledger = FakeLedger(allowance=0)
    ledger.auto_mine = False
    coordinator, _ = build(ledger)

    first = asyncio.ensure_future(coordinator.ensure_allowance(PLAYER, DICE, 50 * UNIT))
    second = asyncio.ensure_future(coordinator.ensure_allowance(PLAYER, DICE, 50 * UNIT))
    await asyncio.sleep(0.02)
    ledger.mine_held()

    assert await first
    assert await second
    assert ledger.sent_functions() == ["approve"]


@pytest.mark.anyio
async def test_unconfirmed_approval_reports_false():
    ledger = FakeLedger(allowance=0)
    ledger.revert_reason = "ERC20: approve to the zero address"
    coordinator, _ = build(ledger)
    assert not await coordinator.ensure_allowance(PLAYER, DICE, 50 * UNIT)
    assert not coordinator.executor.registry.is_in_flight(PLAYER, TxKind.APPROVE)


@pytest.mark.anyio
async def test_cached_view_follows_events_and_expires():
    ledger = FakeLedger(allowance=0)
    coordinator, clock = build(ledger, freshness_seconds=15)
    await coordinator.attach(PLAYER)
    assert len(ledger.subscriptions) == 1

    ledger.emit(Approval("0x9", 5, PLAYER, DICE, 42))
    assert coordinator.cached_allowance(PLAYER, DICE).amount == 42

    clock.advance(16)
    assert coordinator.cached_allowance(PLAYER, DICE) is None

    await coordinator.detach()
    assert ledger.subscriptions == []


class UnreachableAllowanceLedger(FakeLedger):
    async def get_allowance(self, owner, spender):
        raise ConnectionError("connection refused")


@pytest.mark.anyio
async def test_failed_allowance_read_is_reported_not_raised():
    ledger = UnreachableAllowanceLedger()
    coordinator, _ = build(ledger)
    notes = []
    coordinator.notifier.bus.subscribe(Notification, notes.append)

    assert await coordinator.ensure_allowance(PLAYER, DICE, 50 * UNIT) is False
    assert ledger.sent == []
    assert [n.error.kind for n in notes] == [ErrorKind.NETWORK_UNAVAILABLE]


@pytest.mark.anyio
async def test_approval_already_tracked_gives_false():
    ledger = FakeLedger(allowance=0)
    coordinator, _ = build(ledger)
    notes = []
    coordinator.notifier.bus.subscribe(Notification, notes.append)
    coordinator.executor.registry.claim(PLAYER, TxKind.APPROVE)

    assert await coordinator.ensure_allowance(PLAYER, DICE, 50 * UNIT) is False
    assert ledger.sent == []
    assert len(notes) == 1
