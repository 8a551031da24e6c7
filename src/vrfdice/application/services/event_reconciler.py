from typing import List, Optional

from loguru import logger

from ...domain.events import (
    LedgerEvent,
    RandomnessFulfilled,
    SessionCancelled,
    SessionCompleted,
    SessionStarted,
)
from ...domain.models import PatchSource
from ...execution.error_classifier import classify
from ...ports.ledger import LedgerPort, Subscription
from .notifications import Notifier
from .session_fold import patch_from_event
from .session_store import GameSessionStore


PLAYER_EVENTS = (SessionStarted, SessionCompleted, SessionCancelled)


class EventReconciler:
    """Folds live ledger events into the store for the bound identity."""

    def __init__(self, ledger: LedgerPort, store: GameSessionStore, notifier: Notifier):
        self.ledger = ledger
        self.store = store
        self.notifier = notifier
        self._subscriptions: List[Subscription] = []
        self._identity: Optional[str] = None

    @property
    def identity(self) -> Optional[str]:
        return self._identity

    @property
    def subscription_count(self) -> int:
        return sum(1 for s in self._subscriptions if s.active)

    async def attach(self, identity: str) -> None:
        """Subscribe for ``identity``; any previous subscriptions are closed first.

        A failed subscription is reported and skipped: polling still covers
        the session, only later.
        """
        await self.detach()
        self._identity = identity

        requests = [(event_type, {"player": identity}) for event_type in PLAYER_EVENTS]
        # The fulfilment event carries no player index; the fold matches it by request id.
        requests.append((RandomnessFulfilled, {}))

        for event_type, filters in requests:
            try:
                subscription = await self.ledger.subscribe(event_type, filters, self.on_event)
            except Exception as e:
                self.notifier.report_error(
                    classify(e),
                    f"EVENTS | subscribe failed | event={event_type.__name__}",
                    identity=identity,
                )
                continue
            self._subscriptions.append(subscription)

        logger.info(f"EVENTS | attached | identity={identity} | subscriptions={len(self._subscriptions)}")

    async def detach(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            try:
                await subscription.close()
            except Exception as e:
                logger.warning(f"EVENTS | close failed | {e}")
        if subscriptions:
            logger.info(f"EVENTS | detached | identity={self._identity} | closed={len(subscriptions)}")
        self._identity = None

    async def rebind(self, identity: str) -> None:
        await self.attach(identity)

    def on_event(self, event: LedgerEvent) -> None:
        if self._identity is None or self.store.identity is None:
            return
        if self._identity.lower() != self.store.identity.lower():
            logger.debug(f"EVENTS | event for previous identity dropped | type={type(event).__name__}")
            return
        patch = patch_from_event(self.store.get(), event)
        if patch is None:
            logger.debug(f"EVENTS | not ours | type={type(event).__name__} | tx={event.tx_hash}")
            return
        self.store.apply(patch, PatchSource.EVENT)
