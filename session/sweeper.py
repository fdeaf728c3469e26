"""
Background expiration sweeper.

Periodically drains every due bucket of the expiration index and asks the
repository to re-validate each candidate. The sweeper is what turns a
lapsed session into a SessionExpiredEvent while its record is still
readable; the store's native TTLs only reclaim space afterwards.

Several processes may run a sweeper against the same store. Draining a
bucket is atomic, so a given bucket is handed to one sweeper, and the
repository's guarded delete keeps a candidate from being expired twice.
"""

import asyncio
import logging
import time
import uuid
from contextlib import aclosing
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from errors.exceptions import AppException
from session.repository import ReapOutcome, SessionRepository
from session.session import utcnow
from telemetry.service import (
    create_span,
    record_metric,
    reset_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_PERIOD = timedelta(seconds=60)


@dataclass
class SweepResult:
    """Counts for one sweep cycle."""
    candidates: int = 0
    expired: int = 0
    retracked: int = 0
    absent: int = 0
    failed: int = 0
    stopped_early: bool = False

    def record(self, outcome: ReapOutcome) -> None:
        if outcome == ReapOutcome.EXPIRED:
            self.expired += 1
        elif outcome == ReapOutcome.RETRACKED:
            self.retracked += 1
        elif outcome == ReapOutcome.CORRUPT:
            self.failed += 1
        else:
            self.absent += 1

    def to_dict(self) -> dict:
        return {
            "candidates": self.candidates,
            "expired": self.expired,
            "retracked": self.retracked,
            "absent": self.absent,
            "failed": self.failed,
            "stopped_early": self.stopped_early,
        }


class ExpirationSweeper:
    """
    Runs expiration cycles on demand or on a fixed period.

    Example:
        sweeper = ExpirationSweeper(repository, period=timedelta(seconds=30))
        sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(
        self,
        repository: SessionRepository,
        period: Union[timedelta, float] = DEFAULT_SWEEP_PERIOD,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the sweeper.

        Args:
            repository: Repository whose expiration index is swept
            period: Pause between the end of one cycle and the next
            clock: Source of the current time for each cycle
        """
        if not isinstance(period, timedelta):
            period = timedelta(seconds=period)
        if period <= timedelta(0):
            raise ValueError("Sweep period must be positive")
        self.repository = repository
        self.period = period
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._stop_requested = asyncio.Event()
        self.last_result: Optional[SweepResult] = None
        self.last_run_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_cycle(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Expire every session whose bucket is due at `now`.

        A store failure on a single candidate is logged and counted, and
        the candidate is requeued for the next cycle; this one moves on.

        Returns:
            Counts of candidates and their outcomes.

        Raises:
            StoreUnavailable: If the expiration index itself cannot be read.
        """
        if now is None:
            now = self._clock()
        result = SweepResult()
        token = set_correlation_id(f"sweep-{uuid.uuid4().hex[:12]}")
        started = time.monotonic()
        try:
            with create_span("session.sweep", {"sweep.now": now.isoformat()}) as span:
                candidates = self.repository.index.poll_due_buckets(now)
                failed_ids: list[str] = []
                try:
                    async with aclosing(candidates):
                        async for session_id in candidates:
                            result.candidates += 1
                            if not await self._reap_one(session_id, now, result):
                                failed_ids.append(session_id)
                            if self._stop_requested.is_set():
                                result.stopped_early = True
                                break
                finally:
                    # Drained buckets are gone from the store; failed ids go back
                    await self.repository.index.retry(failed_ids, now)
                span.set_attribute("sweep.expired", result.expired)
                span.set_attribute("sweep.candidates", result.candidates)

            duration_ms = (time.monotonic() - started) * 1000
            log = logger.info if result.candidates else logger.debug
            log(
                "Expiration sweep finished",
                extra={"extra_data": {**result.to_dict(), "duration_ms": round(duration_ms, 2)}}
            )
            record_metric("session_sweep_duration_ms", duration_ms)
            record_metric("session_sweep_expired", result.expired)
            record_metric("session_sweep_failed", result.failed)
            self.last_result = result
            self.last_run_at = now
            return result
        finally:
            reset_correlation_id(token)

    async def _reap_one(self, session_id: str, now: datetime, result: SweepResult) -> bool:
        """Reap one candidate; False when the store failed and it must be retried."""
        try:
            outcome = await self.repository.reap(session_id, now)
        except AppException as e:
            result.failed += 1
            logger.warning(
                "Failed to expire session candidate, retrying next cycle",
                extra={"extra_data": {"session_id": session_id, "error": e.message}}
            )
            return False
        result.record(outcome)
        return True

    def start(self) -> asyncio.Task:
        """Start the periodic loop on the running event loop."""
        if self.is_running:
            return self._task
        self._stop_requested.clear()
        self._task = asyncio.create_task(self._run(), name="session-expiration-sweeper")
        logger.info(
            "Expiration sweeper started",
            extra={"extra_data": {"period_seconds": self.period.total_seconds()}}
        )
        return self._task

    async def stop(self) -> None:
        """
        Stop the periodic loop and wait for it to finish.

        A candidate being processed is completed first; ids of the current
        bucket that were not reached are put back in the index.
        """
        if self._task is None:
            return
        self._stop_requested.set()
        try:
            await self._task
        finally:
            self._task = None
        logger.info("Expiration sweeper stopped")

    async def _run(self) -> None:
        while not self._stop_requested.is_set():
            try:
                await self.run_cycle()
                self.last_error = None
            except AppException as e:
                self.last_error = e.message
                logger.error(
                    "Expiration sweep failed, retrying next period",
                    extra={"extra_data": {"error": e.message, "error_code": e.error_code.value}}
                )
            except Exception as e:
                self.last_error = str(e)
                logger.exception("Unexpected error in expiration sweep")
            try:
                await asyncio.wait_for(
                    self._stop_requested.wait(),
                    timeout=self.period.total_seconds(),
                )
            except asyncio.TimeoutError:
                pass
