from datetime import datetime, timezone

import pytest

from vrfdice.application.orchestrator import GameOrchestrator, SessionView
from vrfdice.cli import build_parser, format_view, main, run_command
from vrfdice.domain.models import GamePhase, GameSession, IdentityContext
from vrfdice.domain.models.session import with_changes

from fakes import CHAIN_ID, PLAYER, UNIT, FakeClock, FakeLedger, RecordingSleep, make_config


def test_bet_arguments():
    args = build_parser().parse_args(["--log-level", "DEBUG", "bet", "--number", "3", "--amount", "12.5"])
    assert args.command == "bet"
    assert args.number == 3
    assert args.amount == "12.5"
    assert args.log_level == "DEBUG"


def test_no_command_prints_help(capsys):
    assert main([]) == 0
    assert "usage" in capsys.readouterr().out


def test_format_view_shows_round_in_token_units():
    session = with_changes(
        GameSession.idle(PLAYER, datetime(2024, 11, 13, tzinfo=timezone.utc)),
        phase=GamePhase.COMPLETED_WIN,
        chosen_value=3,
        wager_amount=50 * UNIT,
        rolled_value=3,
        payout=300 * UNIT,
        randomness_request_id=100,
    )
    view = SessionView(
        session=session,
        allowed_actions={"reset", "place_bet"},
        state_unknown=True,
        wrong_network=False,
        identity=IdentityContext(PLAYER, CHAIN_ID),
    )
    text = format_view(view, make_config())
    assert "phase           : COMPLETED_WIN" in text
    assert "payout          : 300" in text
    assert "UNKNOWN" in text
    assert "actions         : place_bet, reset" in text


async def connected_orchestrator(ledger):
    orchestrator = GameOrchestrator(ledger, make_config(), clock=FakeClock(), sleep=RecordingSleep())
    await orchestrator.connect(IdentityContext(PLAYER, CHAIN_ID))
    await orchestrator.poller.stop()
    await orchestrator.recovery.stop()
    return orchestrator


@pytest.mark.anyio
async def test_bet_that_is_not_placed_exits_nonzero(capsys):
    ledger = FakeLedger(allowance=1000 * UNIT, balance=5 * UNIT)
    orchestrator = await connected_orchestrator(ledger)
    args = build_parser().parse_args(["bet", "--number", "3", "--amount", "10"])

    assert await run_command(orchestrator, args) == 1
    assert ledger.sent == []
    assert "phase           : IDLE" in capsys.readouterr().out
    await orchestrator.close()


@pytest.mark.anyio
async def test_placed_bet_exits_zero():
    ledger = FakeLedger(allowance=1000 * UNIT)
    orchestrator = await connected_orchestrator(ledger)
    args = build_parser().parse_args(["bet", "--number", "3", "--amount", "10", "--wait", "0"])

    assert await run_command(orchestrator, args) == 0
    assert ledger.sent_functions() == ["playDice"]
    await orchestrator.close()


@pytest.mark.anyio
async def test_refused_resolve_exits_nonzero():
    orchestrator = await connected_orchestrator(FakeLedger())
    args = build_parser().parse_args(["resolve"])
    assert await run_command(orchestrator, args) == 1
    await orchestrator.close()
