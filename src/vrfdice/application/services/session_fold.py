"""
session_fold.py - Translate ledger observations into SessionPatches.

Events, polled snapshots and transaction receipts all go through these
functions, so an event and a later poll describing the same fact produce the
same patch and the store treats the second as a no-op.
"""

from typing import Iterable, Optional

from ...domain.events import (
    LedgerEvent,
    RandomnessFulfilled,
    SessionCancelled,
    SessionCompleted,
    SessionStarted,
)
from ...domain.models import (
    GamePhase,
    GameSession,
    LedgerGameStatus,
    LedgerSnapshot,
    PatchSource,
    SessionPatch,
)


def _same_player(session: GameSession, player: str) -> bool:
    return bool(player) and player.lower() == session.identity.lower()


def patch_from_event(session: GameSession, event: LedgerEvent) -> Optional[SessionPatch]:
    """Minimal patch for one decoded event, or None when it does not concern us."""
    if isinstance(event, SessionStarted):
        if not _same_player(session, event.player):
            return None
        return SessionPatch(
            identity=session.identity,
            phase=GamePhase.AWAITING_RANDOMNESS,
            chosen_value=event.chosen_number,
            wager_amount=event.amount,
            randomness_request_id=event.request_id,
        )

    if isinstance(event, SessionCompleted):
        if not _same_player(session, event.player):
            return None
        return SessionPatch(
            identity=session.identity,
            phase=GamePhase.COMPLETED_WIN if event.won else GamePhase.COMPLETED_LOSS,
            chosen_value=event.chosen_number,
            wager_amount=event.amount,
            rolled_value=event.rolled_number,
            payout=event.payout,
            randomness_request_id=event.request_id,
        )

    if isinstance(event, SessionCancelled):
        if not _same_player(session, event.player):
            return None
        return SessionPatch(
            identity=session.identity,
            phase=GamePhase.CANCELLED,
            randomness_request_id=event.request_id,
        )

    if isinstance(event, RandomnessFulfilled):
        # No player index on this event: only our own request id identifies it.
        if session.randomness_request_id is None or event.request_id != session.randomness_request_id:
            return None
        return SessionPatch(
            identity=session.identity,
            phase=GamePhase.READY_TO_RESOLVE,
            randomness_request_id=event.request_id,
            randomness_fulfilled=True,
        )

    return None


def patch_from_snapshot(session: GameSession, snapshot: LedgerSnapshot) -> Optional[SessionPatch]:
    """Fold one authoritative read.

    An inactive game is only reported as finished when the ledger status says
    so for the request we are tracking. "Not active yet" while a bet is being
    placed is never read as cancelled.
    """
    game = snapshot.game
    request = snapshot.request
    request_id = request.request_id or None

    if game.is_active:
        return SessionPatch(
            identity=session.identity,
            phase=GamePhase.READY_TO_RESOLVE if request.fulfilled else GamePhase.AWAITING_RANDOMNESS,
            chosen_value=game.chosen_number or None,
            wager_amount=game.amount or None,
            randomness_request_id=request_id,
            randomness_fulfilled=True if request.fulfilled else None,
        )

    if request_id is None or request_id != session.randomness_request_id:
        return None

    if game.status is LedgerGameStatus.COMPLETED:
        return SessionPatch(
            identity=session.identity,
            phase=GamePhase.COMPLETED_WIN if game.payout > 0 else GamePhase.COMPLETED_LOSS,
            rolled_value=game.result,
            payout=game.payout,
            randomness_request_id=request_id,
        )

    if game.status is LedgerGameStatus.FAILED:
        return SessionPatch(
            identity=session.identity,
            phase=GamePhase.CANCELLED,
            randomness_request_id=request_id,
        )

    return None


def fold_events(store: "GameSessionStore", events: Iterable[LedgerEvent], source: PatchSource) -> GameSession:
    """Apply events one at a time, each against the session the previous one produced."""
    for event in events:
        patch = patch_from_event(store.get(), event)
        if patch is not None:
            store.apply(patch, source)
    return store.get()
