"""
session_store.py - The single owner of per-identity GameSession state.

Every producer (ledger events, polling, optimistic client updates, recovery)
goes through apply(). The merge is phase-monotonic: the most advanced phase
wins regardless of arrival order, so any interleaving of event and poll
folds converges on the same session.
"""

from collections import defaultdict
from typing import Callable, Dict, List, Optional, Set

from loguru import logger

from ...domain.errors import ClassifiedError
from ...domain.models import (
    PRE_REQUEST_PHASES,
    STUCK_ELIGIBLE_PHASES,
    Clock,
    GamePhase,
    GameSession,
    PatchSource,
    SessionPatch,
    utc_now,
)
from ...domain.models.session import with_changes


SessionSubscriber = Callable[[GameSession, GameSession, PatchSource], None]

# (expected phase, phase to return to) pairs a failed optimistic step may undo
_OPTIMISTIC_REVERTS = {
    (GamePhase.APPROVING, GamePhase.IDLE),
    (GamePhase.PLACING_BET, GamePhase.IDLE),
    (GamePhase.RESOLVING, GamePhase.READY_TO_RESOLVE),
}

_ROUND_FIELDS = (
    "chosen_value",
    "wager_amount",
    "rolled_value",
    "payout",
    "randomness_request_id",
)


class GameSessionStore:
    """Per-identity session store. apply() never raises."""

    def __init__(self, identity: Optional[str] = None, clock: Clock = utc_now):
        self._clock = clock
        self._sessions: Dict[str, GameSession] = {}
        # request ids already concluded or superseded, per identity
        self._closed_requests: Dict[str, Set[int]] = defaultdict(set)
        self._subscribers: List[SessionSubscriber] = []
        self._identity: Optional[str] = None
        if identity is not None:
            self.bind_identity(identity)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    @property
    def identity(self) -> Optional[str]:
        return self._identity

    def get(self) -> GameSession:
        if self._identity is None:
            return GameSession.idle("", self._clock())
        return self._sessions[self._key(self._identity)]

    def is_closed_request(self, request_id: int) -> bool:
        if self._identity is None:
            return False
        return request_id in self._closed_requests[self._key(self._identity)]

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------
    def subscribe(self, callback: SessionSubscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def bind_identity(self, identity: str) -> GameSession:
        """Make ``identity`` current. Sessions of other identities are kept."""
        key = self._key(identity)
        if key not in self._sessions:
            self._sessions[key] = GameSession.idle(identity, self._clock())
        if self._identity is None or self._key(self._identity) != key:
            logger.info(f"STORE | identity bound | identity={identity}")
        self._identity = identity
        return self._sessions[key]

    def apply(self, patch: SessionPatch, source: PatchSource) -> GameSession:
        """Fold a patch into the current session; returns the resulting session."""
        current = self.get()
        try:
            if self._identity is None or self._key(patch.identity) != self._key(self._identity):
                logger.debug(f"STORE | foreign identity ignored | identity={patch.identity} | source={source.value}")
                return current

            merged = self._merge(current, patch, source)
            if merged is None or merged == current:
                logger.debug(
                    f"STORE | no-op | phase={current.phase.value} | source={source.value} | "
                    f"request_id={patch.randomness_request_id}"
                )
                return current
            self._commit(current, merged, source)
            return merged
        except Exception as exc:
            logger.exception(f"STORE | apply failed | source={source.value} | {exc}")
            return current

    def reset(self) -> bool:
        """Terminal -> Idle. Refused in every other phase."""
        current = self.get()
        if self._identity is None or not current.is_terminal:
            return False
        self._commit(current, GameSession.idle(current.identity, self._clock()), PatchSource.OPTIMISTIC)
        return True

    def revert_optimistic(self, identity: str, expected: GamePhase, to: GamePhase) -> bool:
        """Undo an optimistic phase after its transaction verifiably failed.

        Only the session of ``identity`` is touched, and only while it is
        the current one.
        """
        current = self.get()
        if self._identity is None or self._key(identity) != self._key(self._identity):
            logger.debug(f"STORE | revert for inactive identity ignored | identity={identity}")
            return False
        if (expected, to) not in _OPTIMISTIC_REVERTS or current.phase is not expected:
            return False
        if to is GamePhase.IDLE:
            reverted = GameSession.idle(current.identity, self._clock())
        else:
            reverted = with_changes(current, phase=to, last_transition_at=self._clock())
        self._commit(current, reverted, PatchSource.OPTIMISTIC)
        return True

    def mark_stuck(self, stuck: bool) -> bool:
        current = self.get()
        if current.stuck == stuck:
            return False
        if stuck and current.phase not in STUCK_ELIGIBLE_PHASES:
            return False
        self._commit(current, with_changes(current, stuck=stuck), PatchSource.RECOVERY)
        return True

    def record_recovery_failure(self, error: ClassifiedError) -> GameSession:
        """Keep phase and stuck flag; remember the error and count the attempt."""
        current = self.get()
        if self._identity is None:
            return current
        updated = with_changes(
            current,
            last_error=error,
            recovery_attempts=current.recovery_attempts + 1,
        )
        self._commit(current, updated, PatchSource.RECOVERY)
        return updated

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------
    def _merge(
        self, current: GameSession, patch: SessionPatch, source: PatchSource
    ) -> Optional[GameSession]:
        key = self._key(current.identity)
        closed = self._closed_requests[key]
        request_id = patch.randomness_request_id
        current_request = current.randomness_request_id
        base = current

        if request_id is not None and request_id != current_request:
            if request_id in closed:
                logger.debug(f"STORE | stale request ignored | request_id={request_id} | source={source.value}")
                return None
            if patch.is_terminal:
                # A conclusion only counts for the round we are tracking,
                # or for the submission whose request id we have not learned yet.
                if not (current_request is None and current.phase in PRE_REQUEST_PHASES):
                    logger.warning(
                        f"STORE | terminal fact for untracked request ignored | "
                        f"request_id={request_id} | current={current_request}"
                    )
                    return None
            elif current_request is None and current.phase in PRE_REQUEST_PHASES:
                pass
            elif current.is_terminal or current.phase is GamePhase.IDLE:
                if current_request is not None:
                    closed.add(current_request)
                base = GameSession.idle(current.identity, self._clock())
            else:
                logger.warning(
                    f"STORE | foreign request ignored | request_id={request_id} | "
                    f"current={current_request} | phase={current.phase.value}"
                )
                return None

        advances = patch.phase is not None and patch.phase.rank > base.phase.rank
        changes: Dict[str, object] = {}
        for name, value in patch.values().items():
            existing = getattr(base, name)
            if name == "randomness_fulfilled":
                if value and not existing:
                    changes[name] = True
                continue
            if existing is None or (advances and name in _ROUND_FIELDS and existing != value):
                changes[name] = value

        if advances:
            now = self._clock()
            changes["phase"] = patch.phase
            changes["last_transition_at"] = now
            changes["stuck"] = False
            if base.started_at is None and patch.phase is not GamePhase.IDLE:
                changes["started_at"] = now

        if not changes and base is current:
            return None
        return with_changes(base, **changes)

    def _commit(self, previous: GameSession, current: GameSession, source: PatchSource) -> None:
        key = self._key(current.identity)
        self._sessions[key] = current
        if current.is_terminal and current.randomness_request_id is not None:
            self._closed_requests[key].add(current.randomness_request_id)

        if previous.phase is not current.phase:
            logger.info(
                f"STORE | {previous.phase.value} -> {current.phase.value} | source={source.value} | "
                f"request_id={current.randomness_request_id}"
            )

        for subscriber in list(self._subscribers):
            try:
                subscriber(previous, current, source)
            except Exception as exc:
                logger.exception(f"STORE | subscriber error | {exc}")

    @staticmethod
    def _key(identity: str) -> str:
        return identity.lower()
