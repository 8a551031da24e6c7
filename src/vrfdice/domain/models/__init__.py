from .session import (
    PHASE_RANK,
    PRE_REQUEST_PHASES,
    STUCK_ELIGIBLE_PHASES,
    TERMINAL_PHASES,
    GamePhase,
    GameSession,
    PatchSource,
    SessionPatch,
)
from .transaction import TxKind, TxOutcome, TxReceipt, TransactionRecord
from .ledger_state import (
    BetHistoryEntry,
    LedgerGame,
    LedgerGameStatus,
    LedgerSnapshot,
    PlayerStats,
    PlayerTotals,
    RandomnessRequest,
    TokenAllowance,
)
from .identity import IdentityContext
from .clock import Clock, utc_now

__all__ = [
    "GamePhase",
    "GameSession",
    "PatchSource",
    "SessionPatch",
    "PHASE_RANK",
    "PRE_REQUEST_PHASES",
    "STUCK_ELIGIBLE_PHASES",
    "TERMINAL_PHASES",
    "TxKind",
    "TxOutcome",
    "TxReceipt",
    "TransactionRecord",
    "BetHistoryEntry",
    "LedgerGame",
    "LedgerGameStatus",
    "LedgerSnapshot",
    "PlayerStats",
    "PlayerTotals",
    "RandomnessRequest",
    "TokenAllowance",
    "IdentityContext",
    "Clock",
    "utc_now",
]
