"""
web3_ledger.py - LedgerPort over an EVM JSON-RPC endpoint (web3.py AsyncWeb3).

Transactions are signed locally with an eth-account key. Event subscriptions
are log filters polled on a background task per subscription, which works on
plain HTTP endpoints that do not support eth_subscribe.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from eth_account.signers.local import LocalAccount
from loguru import logger
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TransactionNotFound
from web3.logs import DISCARD

from ...domain.events import (
    Approval,
    LedgerEvent,
    RandomnessFulfilled,
    SessionCancelled,
    SessionCompleted,
    SessionStarted,
)
from ...domain.models import (
    BetHistoryEntry,
    LedgerGame,
    LedgerGameStatus,
    PlayerStats,
    PlayerTotals,
    RandomnessRequest,
    TokenAllowance,
    TxReceipt,
    utc_now,
)
from ...ports.ledger import ContractCall, EventHandler, LedgerPort, Subscription
from .abi import DICE_ABI, TOKEN_ABI


# domain event -> (contract, on-chain event name)
EVENT_SOURCES: Dict[Type[LedgerEvent], Tuple[str, str]] = {
    SessionStarted: ("dice", "GameStarted"),
    SessionCompleted: ("dice", "GameCompleted"),
    SessionCancelled: ("dice", "GameCancelled"),
    RandomnessFulfilled: ("dice", "RequestFulfilled"),
    Approval: ("token", "Approval"),
}

RECEIPT_EVENTS = ("GameStarted", "GameCompleted", "GameCancelled", "RequestFulfilled")


def decode_event(name: str, log: Any) -> Optional[LedgerEvent]:
    """Build a domain event from a decoded web3 event log."""
    args = log["args"]
    tx_hash = AsyncWeb3.to_hex(log["transactionHash"])
    block = int(log["blockNumber"])

    if name == "GameStarted":
        return SessionStarted(
            tx_hash=tx_hash,
            block_number=block,
            player=args["player"],
            request_id=int(args["requestId"]),
            chosen_number=int(args["chosenNumber"]),
            amount=int(args["amount"]),
        )
    if name == "GameCompleted":
        return SessionCompleted(
            tx_hash=tx_hash,
            block_number=block,
            player=args["player"],
            request_id=int(args["requestId"]),
            chosen_number=int(args["chosenNumber"]),
            rolled_number=int(args["result"]),
            amount=int(args["amount"]),
            payout=int(args["payout"]),
            status=int(args["status"]),
        )
    if name == "GameCancelled":
        return SessionCancelled(
            tx_hash=tx_hash,
            block_number=block,
            player=args["player"],
            request_id=int(args["requestId"]),
            reason=str(args["reason"]),
        )
    if name == "RequestFulfilled":
        return RandomnessFulfilled(tx_hash=tx_hash, block_number=block, request_id=int(args["requestId"]))
    if name == "Approval":
        return Approval(
            tx_hash=tx_hash,
            block_number=block,
            owner=args["owner"],
            spender=args["spender"],
            amount=int(args["value"]),
        )
    return None


class LogPollSubscription(Subscription):
    """Polls eth_getLogs for one event from the block after subscription onward."""

    def __init__(
        self,
        w3: AsyncWeb3,
        contract_event: Any,
        event_name: str,
        argument_filters: Dict[str, Any],
        handler: EventHandler,
        poll_interval: float,
    ):
        self._w3 = w3
        self._contract_event = contract_event
        self._event_name = event_name
        self._filters = argument_filters
        self._handler = handler
        self._poll_interval = poll_interval
        self._next_block: Optional[int] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._next_block = await self._w3.eth.block_number + 1
        self._task = asyncio.ensure_future(self._run())
        logger.debug(f"WEB3_SUB | start | event={self._event_name} | from_block={self._next_block}")

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
            logger.debug(f"WEB3_SUB | closed | event={self._event_name}")

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                await self._poll()
            except Exception as e:
                logger.warning(f"WEB3_SUB | poll failed | event={self._event_name} | {e}")

    async def _poll(self) -> None:
        latest = await self._w3.eth.block_number
        if latest < self._next_block:
            return
        logs = await self._contract_event.get_logs(
            argument_filters=self._filters or None,
            from_block=self._next_block,
            to_block=latest,
        )
        self._next_block = latest + 1
        for log in logs:
            event = decode_event(self._event_name, log)
            if event is None:
                continue
            try:
                self._handler(event)
            except Exception as e:
                logger.exception(f"WEB3_SUB | handler error | event={self._event_name} | {e}")


class Web3LedgerAdapter(LedgerPort):
    def __init__(
        self,
        rpc_url: str,
        dice_address: str,
        token_address: str,
        account: Optional[LocalAccount] = None,
        log_poll_interval: float = 2.0,
        receipt_poll_latency: float = 1.0,
        w3: Optional[AsyncWeb3] = None,
    ):
        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self._dice_address = AsyncWeb3.to_checksum_address(dice_address)
        self._token_address = AsyncWeb3.to_checksum_address(token_address)
        self.dice = self.w3.eth.contract(address=self._dice_address, abi=DICE_ABI)
        self.token = self.w3.eth.contract(address=self._token_address, abi=TOKEN_ABI)
        self.account = account
        self.log_poll_interval = log_poll_interval
        self.receipt_poll_latency = receipt_poll_latency
        self._subscriptions: List[LogPollSubscription] = []
        logger.info(
            f"WEB3 | init | dice={self._dice_address} | token={self._token_address} | "
            f"signer={account.address if account else '<read-only>'}"
        )

    @property
    def dice_address(self) -> str:
        return self._dice_address

    @property
    def token_address(self) -> str:
        return self._token_address

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            await subscription.close()
        self._subscriptions.clear()
        disconnect: Optional[Callable] = getattr(self.w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()

    # =========================================================================
    # READS
    # =========================================================================

    async def get_chain_id(self) -> int:
        return int(await self.w3.eth.chain_id)

    async def get_current_game(self, player: str) -> LedgerGame:
        raw = await self.dice.functions.getCurrentGame(self._cs(player)).call()
        is_active, chosen, result, amount, timestamp, payout, random_word, status = raw
        return LedgerGame(
            is_active=bool(is_active),
            chosen_number=int(chosen),
            result=int(result),
            amount=int(amount),
            timestamp=int(timestamp),
            payout=int(payout),
            status=LedgerGameStatus.from_code(status),
            random_word=int(random_word),
        )

    async def get_request_details(self, player: str) -> RandomnessRequest:
        request_id, fulfilled, active = await self.dice.functions.getCurrentRequestDetails(
            self._cs(player)
        ).call()
        return RandomnessRequest(request_id=int(request_id), active=bool(active), fulfilled=bool(fulfilled))

    async def get_allowance(self, owner: str, spender: str) -> TokenAllowance:
        amount = await self.token.functions.allowance(self._cs(owner), self._cs(spender)).call()
        return TokenAllowance(owner=owner, spender=spender, amount=int(amount), last_checked_at=utc_now())

    async def get_token_balance(self, owner: str) -> int:
        return int(await self.token.functions.balanceOf(self._cs(owner)).call())

    async def get_player_stats(self, player: str) -> PlayerStats:
        win_rate, average_bet, won, lost = await self.dice.functions.getPlayerStats(self._cs(player)).call()
        return PlayerStats(
            win_rate=int(win_rate),
            average_bet=int(average_bet),
            games_won=int(won),
            games_lost=int(lost),
        )

    async def get_player_totals(self, player: str) -> PlayerTotals:
        games, bets, winnings, losses, last_played = await self.dice.functions.getUserData(
            self._cs(player)
        ).call()
        return PlayerTotals(
            total_games=int(games),
            total_bets=int(bets),
            total_winnings=int(winnings),
            total_losses=int(losses),
            last_played=int(last_played),
        )

    async def get_previous_bets(self, player: str, limit: int) -> List[BetHistoryEntry]:
        raw = await self.dice.functions.getPreviousBets(self._cs(player)).call()
        entries = [
            BetHistoryEntry(
                chosen_number=int(chosen),
                rolled_number=int(rolled),
                amount=int(amount),
                timestamp=int(timestamp),
            )
            for chosen, rolled, amount, timestamp in raw
        ]
        # newest first
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries[:limit]

    async def can_start_new_game(self, player: str) -> bool:
        return bool(await self.dice.functions.canStartNewGame(self._cs(player)).call())

    async def has_pending_request(self, player: str) -> bool:
        return bool(await self.dice.functions.hasPendingRequest(self._cs(player)).call())

    # =========================================================================
    # SUBMISSIONS
    # =========================================================================

    def _function(self, call: ContractCall):
        contract = self.dice if call.contract == "dice" else self.token
        args = tuple(self._cs(a) if isinstance(a, str) and a.startswith("0x") else a for a in call.args)
        return getattr(contract.functions, call.function)(*args)

    async def estimate_gas(self, call: ContractCall, sender: str, value: int = 0) -> int:
        return int(await self._function(call).estimate_gas({"from": self._cs(sender), "value": value}))

    async def send_transaction(self, call: ContractCall, sender: str, gas_limit: int, value: int = 0) -> str:
        if self.account is None:
            raise ValueError("no signer configured: cannot send transactions")
        if self.account.address.lower() != sender.lower():
            raise ValueError(f"signer {self.account.address} does not match sender {sender}")

        sender_cs = self._cs(sender)
        nonce = await self.w3.eth.get_transaction_count(sender_cs, "pending")
        tx = await self._function(call).build_transaction(
            {
                "from": sender_cs,
                "gas": gas_limit,
                "nonce": nonce,
                "value": value,
                "chainId": await self.get_chain_id(),
            }
        )
        signed = self.account.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return self.w3.to_hex(tx_hash)

    async def wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        # Unbounded here: the executor owns the timeout.
        while True:
            receipt = await self.get_receipt(tx_hash)
            if receipt is not None:
                return receipt
            await asyncio.sleep(self.receipt_poll_latency)

    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        try:
            raw = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        return await self._to_receipt(raw)

    async def _to_receipt(self, raw: Any) -> TxReceipt:
        events: List[Tuple[int, LedgerEvent]] = []
        for name in RECEIPT_EVENTS:
            for log in getattr(self.dice.events, name)().process_receipt(raw, errors=DISCARD):
                event = decode_event(name, log)
                if event is not None:
                    events.append((int(log["logIndex"]), event))
        events.sort(key=lambda pair: pair[0])

        status = int(raw["status"])
        return TxReceipt(
            tx_hash=self.w3.to_hex(raw["transactionHash"]),
            status=status,
            block_number=int(raw["blockNumber"]),
            gas_used=int(raw["gasUsed"]),
            events=[event for _, event in events],
            revert_reason=None if status == 1 else await self._revert_reason(raw),
        )

    async def _revert_reason(self, raw: Any) -> Optional[str]:
        """Replay a reverted transaction as a call to recover its reason string."""
        try:
            tx = await self.w3.eth.get_transaction(raw["transactionHash"])
            await self.w3.eth.call(
                {"from": tx["from"], "to": tx["to"], "data": tx["input"], "value": tx.get("value", 0)},
                block_identifier=int(raw["blockNumber"]) - 1,
            )
        except ContractLogicError as e:
            return str(e.message or e)
        except Exception as e:
            logger.debug(f"WEB3 | revert reason unavailable | {e}")
        return None

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    async def subscribe(
        self,
        event_type: Type[LedgerEvent],
        argument_filters: Dict[str, Any],
        handler: EventHandler,
    ) -> Subscription:
        contract_name, event_name = EVENT_SOURCES[event_type]
        contract = self.dice if contract_name == "dice" else self.token
        filters = {k: self._cs(v) if isinstance(v, str) and v.startswith("0x") else v for k, v in argument_filters.items()}
        subscription = LogPollSubscription(
            self.w3,
            getattr(contract.events, event_name)(),
            event_name,
            filters,
            handler,
            self.log_poll_interval,
        )
        await subscription.start()
        self._subscriptions = [s for s in self._subscriptions if s.active]
        self._subscriptions.append(subscription)
        return subscription

    @staticmethod
    def _cs(address: str) -> str:
        return AsyncWeb3.to_checksum_address(address)
