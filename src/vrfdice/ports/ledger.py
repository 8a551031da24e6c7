from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from ..domain.events import LedgerEvent
from ..domain.models import (
    BetHistoryEntry,
    LedgerGame,
    PlayerStats,
    PlayerTotals,
    RandomnessRequest,
    TokenAllowance,
    TxReceipt,
)


@dataclass(frozen=True)
class ContractCall:
    """A state-changing contract function call, resolved by the adapter."""

    contract: str  # "dice" | "token"
    function: str
    args: Tuple[Any, ...] = ()

    def describe(self) -> str:
        return f"{self.contract}.{self.function}"


EventHandler = Callable[[LedgerEvent], None]


class Subscription(ABC):
    """Handle for one live event subscription."""

    @abstractmethod
    async def close(self) -> None:
        ...

    @property
    @abstractmethod
    def active(self) -> bool:
        ...


class LedgerPort(ABC):
    """Ledger client abstraction: reads, submissions, event subscriptions.

    Implementations are assumed correct but slow, sometimes unavailable, and
    sometimes silent (a subscribed event may never be delivered).
    """

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    @abstractmethod
    async def get_chain_id(self) -> int:
        ...

    @abstractmethod
    async def get_current_game(self, player: str) -> LedgerGame:
        ...

    @abstractmethod
    async def get_request_details(self, player: str) -> RandomnessRequest:
        ...

    @abstractmethod
    async def get_allowance(self, owner: str, spender: str) -> TokenAllowance:
        ...

    @abstractmethod
    async def get_token_balance(self, owner: str) -> int:
        ...

    @abstractmethod
    async def get_player_stats(self, player: str) -> PlayerStats:
        ...

    @abstractmethod
    async def get_player_totals(self, player: str) -> PlayerTotals:
        ...

    @abstractmethod
    async def get_previous_bets(self, player: str, limit: int) -> List[BetHistoryEntry]:
        ...

    @abstractmethod
    async def can_start_new_game(self, player: str) -> bool:
        ...

    @abstractmethod
    async def has_pending_request(self, player: str) -> bool:
        ...

    # ------------------------------------------------------------------
    # Submissions (only the TransactionExecutor calls these)
    # ------------------------------------------------------------------
    @abstractmethod
    async def estimate_gas(self, call: ContractCall, sender: str, value: int = 0) -> int:
        ...

    @abstractmethod
    async def send_transaction(
        self, call: ContractCall, sender: str, gas_limit: int, value: int = 0
    ) -> str:
        """Submit and return the transaction hash."""
        ...

    @abstractmethod
    async def wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        """Block until the transaction is mined. Callers bound this with a timeout."""
        ...

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        """Non-blocking receipt lookup; None while unknown or pending."""
        ...

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    @abstractmethod
    async def subscribe(
        self,
        event_type: Type[LedgerEvent],
        argument_filters: Dict[str, Any],
        handler: EventHandler,
    ) -> Subscription:
        ...

    @property
    def dice_address(self) -> str:
        raise NotImplementedError

    @property
    def token_address(self) -> str:
        raise NotImplementedError
