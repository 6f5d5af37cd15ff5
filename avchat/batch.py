"""Time-boxed, page-by-page sweeps over every user account."""

import asyncio
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterator, List

from . import config, store
from .errors import SweepAlreadyRunningError
from .preferences import UserAccount, to_iso
from .reconciler import reconcile_and_store


logger = logging.getLogger(__name__)

OPERATION_RESET = "reset"
OPERATION_LOGOUT = "logout"

PROGRESS_LOG_EVERY_PAGES = 10

ProcessUser = Callable[[UserAccount], Awaitable[bool]]


def _monotonic() -> float:
    """Return monotonic seconds (wrapper to simplify deterministic tests)."""
    return time.monotonic()


@dataclass
class SweepProgress:
    """Live counters of the sweep in flight, readable while it runs."""

    operation: str | None = None
    running: bool = False
    checked: int = 0
    affected: int = 0
    errors: int = 0
    started_at: float = 0.0
    started_at_iso: str | None = None

    def start(self, operation: str) -> None:
        self.operation = operation
        self.running = True
        self.checked = 0
        self.affected = 0
        self.errors = 0
        self.started_at = _monotonic()
        self.started_at_iso = to_iso(datetime.now(timezone.utc))

    def finish(self) -> None:
        self.running = False

    def elapsed_ms(self) -> int:
        if not self.started_at:
            return 0
        return int((_monotonic() - self.started_at) * 1000)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "running": self.running,
            "checked": self.checked,
            "affected": self.affected,
            "errors": self.errors,
            "startedAt": self.started_at_iso,
            "elapsed": f"{self.elapsed_ms()}ms",
        }


class SweepLock:
    """
    Re-entrancy guard shared by every bulk sweep in this process.

    Claiming is a check-and-set with no await in between, so it is atomic
    on the event loop. It does not coordinate across processes; deployments
    running several workers must route sweeps to a single one.
    """

    def __init__(self):
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    @contextmanager
    def claim(self, progress: SweepProgress) -> Iterator[None]:
        if self._held:
            raise SweepAlreadyRunningError(progress.snapshot())
        self._held = True
        try:
            yield
        finally:
            self._held = False


SWEEP_LOCK = SweepLock()
SWEEP_PROGRESS = SweepProgress()


@dataclass
class SweepSummary:
    operation: str
    checked_count: int = 0
    affected_count: int = 0
    error_count: int = 0
    timeout_reached: bool = False
    duration_ms: int = 0
    affected_users: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def skipped_count(self) -> int:
        return max(0, self.checked_count - self.affected_count - self.error_count)


async def _process_one(
    account: UserAccount,
    process_user: ProcessUser,
    user_timeout_seconds: float,
    summary: SweepSummary,
    progress: SweepProgress,
) -> None:
    """Run one user's work, recording failures instead of raising them."""
    summary.checked_count += 1
    progress.checked = summary.checked_count
    try:
        affected = await asyncio.wait_for(process_user(account), timeout=user_timeout_seconds)
    except asyncio.TimeoutError:
        summary.error_count += 1
        progress.errors = summary.error_count
        summary.errors.append(f"User {account.id}: timed out")
        logger.error("Timed out processing user %s", account.id)
        return
    except Exception as error:
        summary.error_count += 1
        progress.errors = summary.error_count
        summary.errors.append(f"User {account.id}: {error}")
        logger.error("Failed to process user %s: %s", account.id, error)
        return

    if affected:
        summary.affected_count += 1
        progress.affected = summary.affected_count
        summary.affected_users.append(account.id)


async def run_sweep(
    process_user: ProcessUser,
    *,
    operation: str,
    batch_size: int,
    max_time_seconds: float,
    user_timeout_seconds: float | None = None,
    lock: SweepLock | None = None,
    progress: SweepProgress | None = None,
) -> SweepSummary:
    """
    Walk every user page by page and apply ``process_user`` to each one.

    Users in one page run concurrently and the page boundary is the sync
    point. The sweep stops after a short or empty page, or before fetching a
    new page once ``max_time_seconds`` has elapsed. A second call while a
    sweep holds the lock raises ``SweepAlreadyRunningError``.
    """
    sweep_lock = lock or SWEEP_LOCK
    sweep_progress = progress or SWEEP_PROGRESS
    per_user_timeout = user_timeout_seconds or config.SWEEP_USER_TIMEOUT_SECONDS
    page_size = max(1, min(int(batch_size), store.MAX_PAGE_SIZE))

    with sweep_lock.claim(sweep_progress):
        sweep_progress.start(operation)
        summary = SweepSummary(operation=operation)
        started_at = _monotonic()
        offset = 0
        pages = 0
        logger.info(
            "Starting %s sweep (batch size %d, max %ss)",
            operation,
            page_size,
            max_time_seconds,
        )

        try:
            while True:
                elapsed = _monotonic() - started_at
                if elapsed > max_time_seconds:
                    summary.timeout_reached = True
                    logger.warning(
                        "%s sweep stopped at time budget after %dms",
                        operation,
                        int(elapsed * 1000),
                    )
                    break

                page = await store.list_users(page_size, offset)
                if not page:
                    break

                logger.info(
                    "Processing %s batch: users %d-%d",
                    operation,
                    offset + 1,
                    offset + len(page),
                )
                await asyncio.gather(
                    *(
                        _process_one(
                            account,
                            process_user,
                            per_user_timeout,
                            summary,
                            sweep_progress,
                        )
                        for account in page
                    )
                )

                pages += 1
                if pages % PROGRESS_LOG_EVERY_PAGES == 0:
                    logger.info(
                        "%s progress: %d checked, %d affected, %d errors",
                        operation,
                        summary.checked_count,
                        summary.affected_count,
                        summary.error_count,
                    )

                if len(page) < page_size:
                    break
                offset += page_size
        finally:
            summary.duration_ms = int((_monotonic() - started_at) * 1000)
            sweep_progress.finish()

    logger.info(
        "%s sweep finished: %d/%d affected, %d errors in %dms%s",
        operation,
        summary.affected_count,
        summary.checked_count,
        summary.error_count,
        summary.duration_ms,
        " (timeout reached)" if summary.timeout_reached else "",
    )
    return summary


async def _reset_user(account: UserAccount) -> bool:
    result = await reconcile_and_store(account)
    return result.changed


async def _logout_user(account: UserAccount) -> bool:
    sessions = await store.list_user_sessions(account.id)
    if not sessions:
        return False
    await store.delete_user_sessions(account.id)
    return True


async def run_reset_sweep(
    *,
    batch_size: int | None = None,
    max_time_seconds: float | None = None,
    lock: SweepLock | None = None,
    progress: SweepProgress | None = None,
) -> SweepSummary:
    """Reconcile every user whose credits are due for a reset."""
    return await run_sweep(
        _reset_user,
        operation=OPERATION_RESET,
        batch_size=batch_size or config.RESET_BATCH_SIZE,
        max_time_seconds=max_time_seconds or config.RESET_MAX_TIME_SECONDS,
        lock=lock,
        progress=progress,
    )


async def run_logout_sweep(
    *,
    batch_size: int,
    max_time_seconds: float,
    lock: SweepLock | None = None,
    progress: SweepProgress | None = None,
) -> SweepSummary:
    """Sign every user out of all of their sessions."""
    return await run_sweep(
        _logout_user,
        operation=OPERATION_LOGOUT,
        batch_size=batch_size,
        max_time_seconds=max_time_seconds,
        lock=lock,
        progress=progress,
    )
