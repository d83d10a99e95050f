import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quota_app.failure_logger import log_refresh_failure
from quota_app.reconciler import AccountNotFoundError, RefreshOutcome, UsageReconciler
from quota_app.usage_store import list_refreshable_account_ids
from quota_library.error_handler import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_BULK_CONCURRENCY = 5

_SENTINEL = object()


@dataclass(slots=True)
class BatchReport:
    trigger: str
    outcomes: list[RefreshOutcome] = field(default_factory=list)
    skipped_busy: list[int] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.ok and not o.skipped)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.skipped) + len(self.skipped_busy)


class BoundedWorkerPool:
    """Runs a handler over items with at most `concurrency` in flight."""

    def __init__(self, concurrency: int):
        self._concurrency = max(1, concurrency)

    async def run(self, items: Iterable[int], handler: Callable[[int], Awaitable[None]]) -> None:
        queue: asyncio.Queue[int | object] = asyncio.Queue()
        for item in items:
            queue.put_nowait(item)
        workers = min(self._concurrency, queue.qsize())
        for _ in range(workers):
            queue.put_nowait(_SENTINEL)
        await asyncio.gather(*(self._run_worker(queue, handler) for _ in range(workers)))

    async def _run_worker(
        self, queue: asyncio.Queue, handler: Callable[[int], Awaitable[None]]
    ) -> None:
        while True:
            item = await queue.get()
            if item is _SENTINEL:
                return
            await handler(item)


class RefreshService:
    """
    Serializes refreshes per account and fans out bulk refreshes.

    A manual refresh waits for an in-flight refresh of the same account;
    scheduled and bulk refreshes skip accounts that are already busy.
    """

    def __init__(
        self,
        reconciler: UsageReconciler,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        default_concurrency: int = DEFAULT_BULK_CONCURRENCY,
    ):
        self._reconciler = reconciler
        self._session_maker = session_maker
        self._default_concurrency = default_concurrency
        self._locks: dict[int, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()

    @property
    def reconciler(self) -> UsageReconciler:
        return self._reconciler

    async def _get_lock(self, account_id: int) -> asyncio.Lock:
        async with self._locks_lock:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[account_id] = lock
            return lock

    async def refresh_account(self, account_id: int) -> RefreshOutcome:
        """Manual refresh; provider errors propagate to the caller."""
        lock = await self._get_lock(account_id)
        async with lock:
            return await self._reconciler.refresh_account(account_id)

    async def refresh_isolated(self, account_id: int, *, trigger: str) -> RefreshOutcome | None:
        """
        Refresh one account without letting its failure escape.

        Returns None when the account was skipped because it is already
        being refreshed.
        """
        lock = await self._get_lock(account_id)
        if lock.locked():
            logger.info("Account %d is already refreshing; skipping (%s)", account_id, trigger)
            return None

        async with lock:
            try:
                return await self._reconciler.refresh_account(account_id)
            except (ProviderError, AccountNotFoundError) as e:
                log_refresh_failure(account_id, e, trigger=trigger)
                return RefreshOutcome(
                    account_id=account_id, account_type="", ok=False, error=str(e)
                )
            except Exception as e:
                logger.exception("Unexpected error refreshing account %d (%s)", account_id, trigger)
                log_refresh_failure(account_id, e, trigger=trigger)
                return RefreshOutcome(
                    account_id=account_id, account_type="", ok=False, error=str(e)
                )

    async def refresh_all(
        self, *, concurrency: int | None = None, trigger: str = "bulk"
    ) -> BatchReport:
        async with self._session_maker() as session:
            account_ids = await list_refreshable_account_ids(session)

        report = BatchReport(trigger=trigger)

        async def _handle(account_id: int) -> None:
            outcome = await self.refresh_isolated(account_id, trigger=trigger)
            if outcome is None:
                report.skipped_busy.append(account_id)
            else:
                report.outcomes.append(outcome)

        pool = BoundedWorkerPool(concurrency or self._default_concurrency)
        await pool.run(account_ids, _handle)

        logger.info(
            "%s refresh finished: %d ok, %d failed, %d skipped",
            trigger.capitalize(),
            report.succeeded,
            report.failed,
            report.skipped,
        )
        return report
