"""
Exam Gate - Periodic Re-verification Scheduler

Cooperative asyncio timer that demands a fresh face verification every
interval while an exam is active. The next deadline always counts from the
last successful verification, and no prompt fires while one is pending.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class ReverificationScheduler:
    """
    Re-verification timer.

    Args:
        interval_minutes: Minutes between required verifications
        on_due: Coroutine function run when the interval elapses; returns
            True when the learner re-verified successfully
        clock: Monotonic clock in seconds
        poll_seconds: Upper bound on sleep between due checks
    """

    def __init__(
        self,
        interval_minutes: int,
        on_due: Callable[[], Awaitable[bool]],
        clock: Callable[[], float] = time.monotonic,
        poll_seconds: float = 1.0
    ):
        if interval_minutes <= 0:
            raise ValueError("Re-verification interval must be positive")

        self.interval_seconds = interval_minutes * 60.0
        self.on_due = on_due
        self.clock = clock
        self.poll_seconds = poll_seconds

        self._last_verified_at: Optional[float] = None
        self._running = False
        self._prompt_pending = False
        self._prompt_task: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None
        self.prompts_fired = 0

    # ==================== STATE ====================

    @property
    def running(self) -> bool:
        return self._running

    @property
    def prompt_pending(self) -> bool:
        return self._prompt_pending

    @property
    def last_verified_at(self) -> Optional[float]:
        return self._last_verified_at

    @property
    def next_due_at(self) -> Optional[float]:
        if self._last_verified_at is None:
            return None
        return self._last_verified_at + self.interval_seconds

    def is_overdue(self, now: Optional[float] = None) -> bool:
        """True once the current verification window has expired."""
        due = self.next_due_at
        if due is None:
            return False
        return (self.clock() if now is None else now) >= due

    # ==================== LIFECYCLE ====================

    def start(self, verified_at: Optional[float] = None, run_loop: bool = True):
        """
        Arm the timer from a successful verification.

        Args:
            verified_at: Clock time of that verification (default: now)
            run_loop: Also start the background polling loop (needs a
                running event loop)
        """
        self._last_verified_at = self.clock() if verified_at is None else verified_at
        self._prompt_pending = False
        self._running = True
        if run_loop and (self._loop_task is None or self._loop_task.done()):
            self._loop_task = asyncio.ensure_future(self._run())
        logger.info(f"Re-verification scheduled every {self.interval_seconds / 60:.0f} min")

    def stop(self):
        """Tear down: no further prompts fire."""
        self._running = False
        self._prompt_pending = False
        for task in (self._loop_task, self._prompt_task):
            if task is not None and not task.done():
                task.cancel()
        self._loop_task = None
        self._prompt_task = None
        logger.info("Re-verification scheduler stopped")

    def mark_verified(self, at: Optional[float] = None):
        """Record a successful verification; the timer restarts from it."""
        self._last_verified_at = self.clock() if at is None else at
        self._prompt_pending = False
        logger.debug(f"Next re-verification due at {self.next_due_at:.1f}")

    # ==================== TIMER ====================

    def tick(self, now: Optional[float] = None) -> bool:
        """
        Fire the verification prompt if the window has expired.

        Must be called from within the event loop.

        Returns:
            True if a prompt was fired by this tick
        """
        if not self._running or self._prompt_pending:
            return False
        if not self.is_overdue(now):
            return False

        self._prompt_pending = True
        self.prompts_fired += 1
        logger.info("Re-verification due, prompting learner")
        self._prompt_task = asyncio.ensure_future(self._prompt())
        return True

    async def _prompt(self):
        try:
            verified = await self.on_due()
        except Exception:
            # Prompt stays pending until a manual re-verification succeeds
            logger.exception("Re-verification prompt failed")
            return
        # on_due may already have recorded the verification
        if verified and self._running and self._prompt_pending:
            self.mark_verified()

    async def _run(self):
        while self._running:
            self.tick()
            due = self.next_due_at
            if self._prompt_pending or due is None:
                delay = self.poll_seconds
            else:
                delay = min(self.poll_seconds, max(0.0, due - self.clock()))
            await asyncio.sleep(delay)
