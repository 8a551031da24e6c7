import asyncio
from typing import Callable, Dict, Optional, Tuple

from loguru import logger

from ..application.services.notifications import Notifier
from ..config import ApprovalSettings
from ..domain.events import Approval
from ..domain.models import Clock, TokenAllowance, TxKind, utc_now
from ..ports.ledger import LedgerPort, Subscription
from .calls import approve
from .error_classifier import classify
from .transaction_executor import TransactionExecutor


class ApprovalCoordinator:
    """Makes sure the dice contract may pull a wager before it is placed.

    Decisions are always taken on a fresh ledger read. The cached view kept
    here (updated by reads and Approval events) is for display only.
    """

    def __init__(
        self,
        ledger: LedgerPort,
        executor: TransactionExecutor,
        notifier: Notifier,
        settings: ApprovalSettings,
        clock: Clock = utc_now,
    ):
        self.ledger = ledger
        self.executor = executor
        self.notifier = notifier
        self.settings = settings
        self._clock = clock
        self._inflight: Dict[Tuple[str, str], asyncio.Task] = {}
        self._view: Dict[Tuple[str, str], TokenAllowance] = {}
        self._subscription: Optional[Subscription] = None

    async def read_allowance(self, owner: str, spender: str) -> TokenAllowance:
        allowance = await self.ledger.get_allowance(owner, spender)
        self._view[self._key(owner, spender)] = allowance
        logger.debug(f"APPROVAL | read | owner={owner} | spender={spender} | amount={allowance.amount}")
        return allowance

    def cached_allowance(self, owner: str, spender: str) -> Optional[TokenAllowance]:
        """Last known allowance while it is still within the freshness window."""
        allowance = self._view.get(self._key(owner, spender))
        if allowance is None or not allowance.is_fresh(self._clock(), self.settings.freshness_seconds):
            return None
        return allowance

    async def ensure_allowance(
        self,
        owner: str,
        spender: str,
        amount: int,
        on_approval_needed: Optional[Callable[[], None]] = None,
    ) -> bool:
        """True once ``spender`` may pull ``amount`` from ``owner``.

        Concurrent callers for the same pair wait on the approval already
        being submitted instead of sending another one. Ledger failures are
        reported on the notification channel and give False.
        """
        key = self._key(owner, spender)
        pending = self._inflight.get(key)
        if pending is not None:
            logger.info(f"APPROVAL | joining in-flight approval | owner={owner} | spender={spender}")
            await asyncio.shield(pending)
            return await self._covers(owner, spender, amount)

        task = asyncio.ensure_future(self._ensure(owner, spender, amount, on_approval_needed))
        self._inflight[key] = task
        task.add_done_callback(lambda _: self._inflight.pop(key, None))
        return await asyncio.shield(task)

    async def _ensure(
        self,
        owner: str,
        spender: str,
        amount: int,
        on_approval_needed: Optional[Callable[[], None]],
    ) -> bool:
        try:
            allowance = await self.read_allowance(owner, spender)
        except Exception as e:
            self._report(e, "APPROVAL | allowance read failed", owner)
            return False
        if allowance.covers(amount):
            return True

        bound = self.settings.approval_amount(amount)
        logger.info(
            f"APPROVAL | needed | owner={owner} | have={allowance.amount} | need={amount} | "
            f"policy={self.settings.policy}"
        )
        if on_approval_needed is not None:
            on_approval_needed()

        try:
            record = await self.executor.execute(owner, TxKind.APPROVE, approve(spender, bound))
        except Exception as e:
            self._report(e, "APPROVAL | not submitted", owner)
            return False
        if not record.is_success:
            logger.warning(f"APPROVAL | not confirmed | outcome={record.outcome.value} | hash={record.hash}")
            return False

        covered = await self._covers(owner, spender, amount)
        if not covered:
            logger.warning(f"APPROVAL | confirmed but allowance still short | owner={owner}")
        return covered

    async def _covers(self, owner: str, spender: str, amount: int) -> bool:
        try:
            allowance = await self.read_allowance(owner, spender)
        except Exception as e:
            self._report(e, "APPROVAL | allowance read failed", owner)
            return False
        return allowance.covers(amount)

    def _report(self, exc: Exception, context: str, owner: str) -> None:
        self.notifier.report_error(classify(exc), context, identity=owner)

    # ------------------------------------------------------------------
    # Approval events (view only)
    # ------------------------------------------------------------------
    async def attach(self, owner: str) -> None:
        await self.detach()
        self._subscription = await self.ledger.subscribe(Approval, {"owner": owner}, self.on_approval_event)

    async def detach(self) -> None:
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None

    def on_approval_event(self, event: Approval) -> None:
        self._view[self._key(event.owner, event.spender)] = TokenAllowance(
            owner=event.owner,
            spender=event.spender,
            amount=event.amount,
            last_checked_at=self._clock(),
        )
        logger.debug(f"APPROVAL | event | owner={event.owner} | spender={event.spender} | amount={event.amount}")

    @staticmethod
    def _key(owner: str, spender: str) -> Tuple[str, str]:
        return owner.lower(), spender.lower()
