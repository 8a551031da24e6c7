from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class LedgerGameStatus(Enum):
    """Status code of the game struct as stored by the dice contract."""
    IDLE = 0
    ACTIVE = 1
    PENDING_VRF = 2
    COMPLETED = 3
    FAILED = 4

    @classmethod
    def from_code(cls, code: int) -> "LedgerGameStatus":
        try:
            return cls(int(code))
        except ValueError:
            return cls.IDLE


@dataclass(frozen=True)
class LedgerGame:
    is_active: bool
    chosen_number: int
    result: int
    amount: int
    timestamp: int
    payout: int
    status: LedgerGameStatus
    random_word: int = 0


@dataclass(frozen=True)
class RandomnessRequest:
    """Ledger-side VRF bookkeeping; the client never fabricates these values."""
    request_id: int
    active: bool
    fulfilled: bool


@dataclass(frozen=True)
class TokenAllowance:
    owner: str
    spender: str
    amount: int
    last_checked_at: datetime

    def is_fresh(self, now: datetime, freshness_seconds: float) -> bool:
        return (now - self.last_checked_at).total_seconds() <= freshness_seconds

    def covers(self, amount: int) -> bool:
        return self.amount >= amount


@dataclass(frozen=True)
class PlayerStats:
    win_rate: int
    average_bet: int
    games_won: int
    games_lost: int

    @property
    def games_played(self) -> int:
        return self.games_won + self.games_lost


@dataclass(frozen=True)
class PlayerTotals:
    """Lifetime counters the dice contract keeps per player (amounts in base units)."""
    total_games: int
    total_bets: int
    total_winnings: int
    total_losses: int
    last_played: int

    @property
    def net_result(self) -> int:
        return self.total_winnings - self.total_losses


@dataclass(frozen=True)
class BetHistoryEntry:
    chosen_number: int
    rolled_number: int
    amount: int
    timestamp: int

    @property
    def won(self) -> bool:
        return self.chosen_number == self.rolled_number


@dataclass(frozen=True)
class LedgerSnapshot:
    """One full authoritative read of everything the poller folds."""
    identity: str
    game: LedgerGame
    request: RandomnessRequest
    read_at: datetime
    allowance: Optional[TokenAllowance] = None
    stats: Optional[PlayerStats] = None
    totals: Optional[PlayerTotals] = None
    history: List[BetHistoryEntry] = field(default_factory=list)
    can_start_new_game: Optional[bool] = None
    has_pending_request: Optional[bool] = None
