from dataclasses import dataclass, fields, replace
from datetime import datetime
from enum import Enum
from typing import Dict, Optional


class GamePhase(Enum):
    IDLE = "IDLE"
    APPROVING = "APPROVING"
    PLACING_BET = "PLACING_BET"
    AWAITING_RANDOMNESS = "AWAITING_RANDOMNESS"
    READY_TO_RESOLVE = "READY_TO_RESOLVE"
    RESOLVING = "RESOLVING"
    COMPLETED_WIN = "COMPLETED_WIN"
    COMPLETED_LOSS = "COMPLETED_LOSS"
    CANCELLED = "CANCELLED"

    @property
    def rank(self) -> int:
        return PHASE_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES

    @property
    def is_active(self) -> bool:
        """True while a game is in progress for the identity."""
        return self is not GamePhase.IDLE and not self.is_terminal


PHASE_RANK: Dict[GamePhase, int] = {
    GamePhase.IDLE: 0,
    GamePhase.APPROVING: 1,
    GamePhase.PLACING_BET: 2,
    GamePhase.AWAITING_RANDOMNESS: 3,
    GamePhase.READY_TO_RESOLVE: 4,
    GamePhase.RESOLVING: 5,
    GamePhase.COMPLETED_WIN: 6,
    GamePhase.COMPLETED_LOSS: 6,
    GamePhase.CANCELLED: 6,
}

TERMINAL_PHASES = frozenset(
    {GamePhase.COMPLETED_WIN, GamePhase.COMPLETED_LOSS, GamePhase.CANCELLED}
)

# Phases the client enters on its own before the ledger has seen anything.
PRE_REQUEST_PHASES = frozenset({GamePhase.APPROVING, GamePhase.PLACING_BET})

STUCK_ELIGIBLE_PHASES = frozenset(
    {GamePhase.AWAITING_RANDOMNESS, GamePhase.READY_TO_RESOLVE}
)


class PatchSource(Enum):
    EVENT = "event"
    POLL = "poll"
    OPTIMISTIC = "optimistic"
    RECOVERY = "recovery"


@dataclass(frozen=True)
class GameSession:
    """Canonical per-identity game state. Replaced, never mutated."""

    identity: str
    phase: GamePhase
    last_transition_at: datetime
    chosen_value: Optional[int] = None
    wager_amount: Optional[int] = None
    rolled_value: Optional[int] = None
    payout: Optional[int] = None
    randomness_request_id: Optional[int] = None
    randomness_fulfilled: bool = False
    started_at: Optional[datetime] = None
    last_error: Optional["ClassifiedError"] = None
    stuck: bool = False
    recovery_attempts: int = 0

    @classmethod
    def idle(cls, identity: str, now: datetime) -> "GameSession":
        return cls(identity=identity, phase=GamePhase.IDLE, last_transition_at=now)

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    @property
    def is_active(self) -> bool:
        return self.phase.is_active

    @property
    def won(self) -> Optional[bool]:
        if self.phase is GamePhase.COMPLETED_WIN:
            return True
        if self.phase is GamePhase.COMPLETED_LOSS:
            return False
        return None

    def age_in_phase(self, now: datetime) -> float:
        return (now - self.last_transition_at).total_seconds()


@dataclass(frozen=True)
class SessionPatch:
    """A partial observation about one identity's game.

    ``None`` means "this source says nothing about the field".
    """

    identity: str
    phase: Optional[GamePhase] = None
    chosen_value: Optional[int] = None
    wager_amount: Optional[int] = None
    rolled_value: Optional[int] = None
    payout: Optional[int] = None
    randomness_request_id: Optional[int] = None
    randomness_fulfilled: Optional[bool] = None

    def values(self) -> Dict[str, object]:
        """Fields this patch actually carries (identity and phase excluded)."""
        out: Dict[str, object] = {}
        for f in fields(self):
            if f.name in ("identity", "phase"):
                continue
            value = getattr(self, f.name)
            if value is not None:
                out[f.name] = value
        return out

    @property
    def is_terminal(self) -> bool:
        return self.phase is not None and self.phase.is_terminal


def with_changes(session: GameSession, **changes) -> GameSession:
    return replace(session, **changes)
