from dataclasses import dataclass

from .base import LedgerEvent


@dataclass
class SessionStarted(LedgerEvent):
    player: str
    request_id: int
    chosen_number: int
    amount: int


@dataclass
class SessionCompleted(LedgerEvent):
    player: str
    request_id: int
    chosen_number: int
    rolled_number: int
    amount: int
    payout: int
    status: int

    @property
    def won(self) -> bool:
        return self.payout > 0


@dataclass
class SessionCancelled(LedgerEvent):
    player: str
    request_id: int
    reason: str


@dataclass
class RandomnessFulfilled(LedgerEvent):
    # The oracle callback event carries no player index.
    request_id: int
