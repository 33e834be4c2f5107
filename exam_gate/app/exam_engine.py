"""
Exam Gate - Exam Engine

Exam session lifecycle: eligibility gate, entry verification, periodic
re-verification, answer drafting and submission.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from exam_gate.app.eligibility import EligibilityResult
from exam_gate.app.errors import InvalidTransitionError
from exam_gate.app.verification.controller import (
    FrameSourceFactory, VerificationAttempt, VerificationController
)
from exam_gate.app.verification.scheduler import ReverificationScheduler

logger = logging.getLogger(__name__)


class ExamStatus(str, Enum):
    NOT_STARTED = "not_started"
    AWAITING_VERIFICATION = "awaiting_verification"
    ACTIVE = "active"
    BLOCKED = "blocked"
    SUBMITTED = "submitted"


# Active -> Active only after re-verification inside the window; an expired
# window always passes through Blocked.
_TRANSITIONS = {
    ExamStatus.NOT_STARTED: {ExamStatus.AWAITING_VERIFICATION},
    ExamStatus.AWAITING_VERIFICATION: {ExamStatus.ACTIVE},
    ExamStatus.ACTIVE: {ExamStatus.ACTIVE, ExamStatus.BLOCKED, ExamStatus.SUBMITTED},
    ExamStatus.BLOCKED: {ExamStatus.ACTIVE, ExamStatus.SUBMITTED},
    ExamStatus.SUBMITTED: set(),
}


@dataclass
class ExamSession:
    """Current exam session state."""
    learner_id: Optional[str] = None
    status: ExamStatus = ExamStatus.NOT_STARTED
    started_at: Optional[datetime] = None
    last_verified_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    time_limit_minutes: Optional[int] = None
    answers: Dict[str, Any] = field(default_factory=dict)

    @property
    def can_answer(self) -> bool:
        return self.status == ExamStatus.ACTIVE


class ExamEngine:
    """
    Central exam orchestration engine.

    Coordinates:
    - Eligibility gate before entry
    - Entry face verification (AwaitingVerification -> Active)
    - Periodic re-verification (Active -> Blocked -> Active)
    - Answer drafting while Active
    - Submission (scheduler torn down, in-flight verification discarded)
    """

    def __init__(
        self,
        controller: VerificationController,
        learner_id: Optional[str] = None,
        interval_minutes: Optional[int] = None,
        time_limit_minutes: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        poll_seconds: Optional[float] = None,
        auto_schedule: bool = True,
        on_state_change: Optional[Callable[[ExamSession], None]] = None,
        on_verification_prompt: Optional[Callable[[ExamSession], None]] = None,
        audit=None
    ):
        """
        Args:
            controller: Verification controller for this learner
            learner_id: Authenticated learner
            interval_minutes: Re-verification interval (1-60)
            time_limit_minutes: Exam duration, if timed
            clock: Monotonic clock driving the re-verification timer
            poll_seconds: Scheduler polling bound
            auto_schedule: Run the scheduler's polling loop on entry
            on_state_change: Callback when session status changes
            on_verification_prompt: Callback when re-verification is demanded
            audit: Audit logger
        """
        from exam_gate.app.config import get_config_manager
        manager = get_config_manager()
        v = manager.config.verification

        self.controller = controller
        self.session = ExamSession(learner_id=learner_id, time_limit_minutes=time_limit_minutes)
        self.interval_minutes = manager.clamp_interval(
            interval_minutes if interval_minutes is not None else v.DEFAULT_INTERVAL_MINUTES
        )
        self.auto_schedule = auto_schedule
        self.on_state_change = on_state_change
        self.on_verification_prompt = on_verification_prompt

        if audit is None:
            from exam_gate.app.utils.logger import get_audit_logger
            audit = get_audit_logger()
        self.audit = audit

        self.scheduler = ReverificationScheduler(
            interval_minutes=self.interval_minutes,
            on_due=self._on_reverification_due,
            clock=clock,
            poll_seconds=poll_seconds if poll_seconds is not None else v.SCHEDULER_POLL_SECONDS,
        )

    # ==================== TRANSITIONS ====================

    @property
    def status(self) -> ExamStatus:
        return self.session.status

    def _transition(self, new_status: ExamStatus, reason: str = ""):
        old_status = self.session.status
        if new_status not in _TRANSITIONS[old_status]:
            raise InvalidTransitionError(
                f"Exam session cannot move {old_status.value} -> {new_status.value}"
            )
        self.session.status = new_status

        logger.info(f"Exam session {old_status.value} -> {new_status.value} {reason}".rstrip())
        self.audit.log_event(
            action="EXAM_SESSION_TRANSITION",
            entity="exam_session",
            actor_id=self.session.learner_id,
            evidence={"from": old_status.value, "to": new_status.value, "reason": reason}
        )
        self._notify_state_change()

    def _notify_state_change(self):
        """Notify listeners of state change."""
        if self.on_state_change:
            self.on_state_change(self.session)

    def _block_if_window_expired(self) -> bool:
        if self.status == ExamStatus.ACTIVE and self.scheduler.is_overdue():
            self._transition(ExamStatus.BLOCKED, "(re-verification window expired)")
        return self.status == ExamStatus.BLOCKED

    # ==================== ENTRY ====================

    def request_entry(self, eligibility: EligibilityResult) -> bool:
        """
        Open entry verification if the learner is eligible.

        Returns:
            True if the session now awaits entry verification
        """
        if not eligibility.exam_eligible:
            logger.warning(
                f"Exam entry refused: {len(eligibility.incomplete_courses)} incomplete course(s)"
                + (f", source error: {eligibility.error}" if eligibility.error else "")
            )
            return False

        if self.status == ExamStatus.AWAITING_VERIFICATION:
            return True

        self._transition(ExamStatus.AWAITING_VERIFICATION)
        return True

    async def verify_entry(self, frame_source: Optional[FrameSourceFactory] = None) -> VerificationAttempt:
        """
        Verify identity at exam entry. Retry by calling again on failure.

        Returns:
            The resolved attempt; on success the session is Active
        """
        if self.status != ExamStatus.AWAITING_VERIFICATION:
            raise InvalidTransitionError(
                f"Entry verification not expected in state {self.status.value}"
            )

        attempt = await self.controller.run_attempt(frame_source)

        if attempt.verified and self.status == ExamStatus.AWAITING_VERIFICATION:
            now = datetime.now(timezone.utc)
            self.session.started_at = now
            self.session.last_verified_at = now
            self._transition(ExamStatus.ACTIVE, "(entry verified)")
            self.scheduler.start(run_loop=self.auto_schedule)

        return attempt

    # ==================== RE-VERIFICATION ====================

    async def reverify(self, frame_source: Optional[FrameSourceFactory] = None) -> VerificationAttempt:
        """
        Re-verify during the exam (scheduled prompt or learner retry).

        Success resumes the exam with answers intact; failure blocks it.
        """
        if self.status not in (ExamStatus.ACTIVE, ExamStatus.BLOCKED):
            raise InvalidTransitionError(
                f"Re-verification not possible in state {self.status.value}"
            )

        self._block_if_window_expired()

        attempt = await self.controller.run_attempt(frame_source)

        if self.status not in (ExamStatus.ACTIVE, ExamStatus.BLOCKED) or attempt.discarded:
            return attempt

        if attempt.verified:
            self.session.last_verified_at = datetime.now(timezone.utc)
            self.scheduler.mark_verified()
            self._transition(ExamStatus.ACTIVE, "(re-verified)")
        elif self.status == ExamStatus.ACTIVE:
            self._transition(ExamStatus.BLOCKED, f"({attempt.reason.value})")

        return attempt

    async def _on_reverification_due(self) -> bool:
        """Scheduler callback: suspend the exam and re-verify."""
        if self.status == ExamStatus.ACTIVE:
            self._transition(ExamStatus.BLOCKED, "(re-verification due)")

        if self.on_verification_prompt:
            self.on_verification_prompt(self.session)

        attempt = await self.reverify()
        return attempt.verified

    # ==================== ANSWERS ====================

    def save_answer(self, question_id: str, answer: Any) -> bool:
        """
        Save an answer draft.

        Returns:
            False (answer not saved) unless the session is Active
        """
        self._block_if_window_expired()

        if not self.session.can_answer:
            logger.warning(f"Answer to {question_id} rejected: session {self.status.value}")
            return False

        self.session.answers[question_id] = answer
        return True

    def submit_exam(self) -> bool:
        """
        Submit the exam.

        Returns:
            True if submitted
        """
        if self.status not in (ExamStatus.ACTIVE, ExamStatus.BLOCKED):
            logger.warning(f"Submit ignored in state {self.status.value}")
            return False

        self.scheduler.stop()
        self.controller.cancel()
        self.session.submitted_at = datetime.now(timezone.utc)
        self._transition(ExamStatus.SUBMITTED)
        return True

    def get_remaining_time(self) -> Optional[int]:
        """Remaining time in seconds, or None for untimed exams."""
        if self.session.time_limit_minutes is None:
            return None
        if not self.session.started_at:
            return self.session.time_limit_minutes * 60

        elapsed = (datetime.now(timezone.utc) - self.session.started_at).total_seconds()
        remaining = (self.session.time_limit_minutes * 60) - elapsed
        return max(0, int(remaining))

    def is_exam_active(self) -> bool:
        """Check if exam is currently active."""
        return self.status == ExamStatus.ACTIVE
