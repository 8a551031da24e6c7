"""
cli.py - Command line front-end for the dice game client.

    vrfdice status
    vrfdice bet --number 3 --amount 50
    vrfdice resolve
    vrfdice recover
    vrfdice watch

The signer key is read from VRFDICE_PRIVATE_KEY (a .env file is loaded first).
Without a key, --address gives a read-only session for status/watch.
"""

import argparse
import asyncio
import os
import sys
from typing import Optional

from dotenv import load_dotenv
from eth_account import Account
from loguru import logger

from .adapters.ledger import Web3LedgerAdapter
from .adapters.notifications import LogNotificationSink
from .application.orchestrator import GameOrchestrator, SessionView
from .config import AppConfig
from .domain.errors import BetValidationError, InvalidTransition, SubmissionInFlight, WrongNetworkError
from .domain.events import SessionChanged
from .domain.models import GamePhase, IdentityContext
from .utils.log_setup import configure_logging


PRIVATE_KEY_ENV = "VRFDICE_PRIVATE_KEY"


def format_view(view: SessionView, config: AppConfig) -> str:
    session = view.session
    limits = config.wager
    lines = [
        f"identity        : {view.identity.address if view.identity else '-'}",
        f"phase           : {session.phase.value}{' (STUCK)' if session.stuck else ''}",
    ]
    if session.chosen_value is not None:
        lines.append(f"chosen number   : {session.chosen_value}")
    if session.wager_amount is not None:
        lines.append(f"wager           : {limits.from_base_units(session.wager_amount)}")
    if session.randomness_request_id is not None:
        lines.append(f"request id      : {session.randomness_request_id}")
    if session.rolled_value is not None:
        lines.append(f"rolled          : {session.rolled_value}")
    if session.payout is not None:
        lines.append(f"payout          : {limits.from_base_units(session.payout)}")
    if session.last_error is not None:
        lines.append(f"last error      : {session.last_error.user_message}")
    if view.stats is not None:
        lines.append(
            f"stats           : won={view.stats.games_won} lost={view.stats.games_lost} "
            f"win_rate={view.stats.win_rate}"
        )
    if view.totals is not None:
        lines.append(
            f"totals          : games={view.totals.total_games} "
            f"won={limits.from_base_units(view.totals.total_winnings)} "
            f"lost={limits.from_base_units(view.totals.total_losses)}"
        )
    if view.allowance is not None:
        lines.append(f"allowance       : {limits.from_base_units(view.allowance.amount)}")
    for record in view.in_flight:
        lines.append(f"in flight       : {record.kind.value} {record.outcome.value} {record.hash}")
    if view.state_unknown:
        lines.append("state           : UNKNOWN (network reads failing)")
    if view.wrong_network:
        lines.append(f"network         : WRONG (expected chain {config.network.chain_id})")
    lines.append(f"actions         : {', '.join(sorted(view.allowed_actions)) or '-'}")
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vrfdice", description="VRF dice game client")
    parser.add_argument("--config", default=os.getenv("VRFDICE_CONFIG", "config/settings.toml"))
    parser.add_argument("--env-file", default=".env")
    parser.add_argument("--address", help="Read-only identity when no signer key is configured")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-file", default=None)

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("status", help="Show the current game")

    parser_bet = subparsers.add_parser("bet", help="Place a bet and follow it")
    parser_bet.add_argument("--number", type=int, required=True, help="Chosen number (1-6)")
    parser_bet.add_argument("--amount", required=True, help="Wager in token units")
    parser_bet.add_argument("--wait", type=float, default=600.0, help="Seconds to follow the game")

    subparsers.add_parser("resolve", help="Resolve a game whose randomness arrived")
    subparsers.add_parser("recover", help="Recover a stuck game")
    subparsers.add_parser("watch", help="Follow the game until interrupted")
    return parser


async def _wait_until_settled(orchestrator: GameOrchestrator, timeout: float) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        session = orchestrator.store.get()
        if session.is_terminal or session.stuck or session.phase is GamePhase.IDLE:
            return
        await asyncio.sleep(1.0)


async def run_command(orchestrator: GameOrchestrator, args: argparse.Namespace) -> int:
    """Run one subcommand on a connected orchestrator; returns the exit code."""
    config = orchestrator.config
    try:
        if args.command == "bet":
            record = await orchestrator.place_bet(args.number, args.amount)
            if record is None or record.is_safe_to_retry:
                logger.error("CLI | bet not placed")
                print(format_view(orchestrator.view(), config))
                return 1
            if record.is_success:
                await _wait_until_settled(orchestrator, args.wait)
        elif args.command == "resolve":
            await orchestrator.resolve()
        elif args.command == "recover":
            if orchestrator.recovery.check():
                await orchestrator.recover()
            else:
                logger.info("CLI | no stuck game to recover")
        elif args.command == "watch":
            orchestrator.bus.subscribe(
                SessionChanged,
                lambda e: print(f"{e.previous.phase.value} -> {e.current.phase.value} ({e.source.value})"),
            )
            while True:
                await asyncio.sleep(3600)
    except (BetValidationError, InvalidTransition, SubmissionInFlight, WrongNetworkError) as e:
        logger.error(f"CLI | {args.command} refused | {e}")
        return 1

    print(format_view(orchestrator.view(), config))
    return 0


async def run(args: argparse.Namespace) -> int:
    config = AppConfig.load(args.config)

    private_key = os.getenv(PRIVATE_KEY_ENV)
    account = Account.from_key(private_key) if private_key else None
    address: Optional[str] = account.address if account else args.address
    if address is None:
        logger.error(f"CLI | no identity: set {PRIVATE_KEY_ENV} or pass --address")
        return 2

    ledger = Web3LedgerAdapter(
        config.network.rpc_url,
        config.contracts.dice,
        config.contracts.token,
        account=account,
    )
    orchestrator = GameOrchestrator(ledger, config)
    orchestrator.notifier.attach_sink(LogNotificationSink())

    try:
        chain_id = await ledger.get_chain_id()
        await orchestrator.connect(IdentityContext(address=address, chain_id=chain_id))
        await orchestrator.refresh()
        return await run_command(orchestrator, args)
    except WrongNetworkError as e:
        logger.error(f"CLI | {args.command} refused | {e}")
        return 1
    finally:
        await orchestrator.close()
        await ledger.close()


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    configure_logging(args.log_level, args.log_file)
    load_dotenv(args.env_file)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
