"""
Exam Gate - Verification Session Controller

Runs one verification attempt at a time:
Idle -> Capturing -> Extracting -> Submitting -> Verified | Failed.

Every failure is turned into attempt state with a distinct reason; nothing
raised below this boundary escapes to the exam UI.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, ContextManager, Optional

import numpy as np

from exam_gate.app.ai.descriptor import FaceDescriptor, NotFound
from exam_gate.app.ai.face_extractor import DescriptorExtractor, get_descriptor_extractor
from exam_gate.app.camera.capture import CameraSession
from exam_gate.app.errors import (
    CameraUnavailableError, FailureReason, ModelLoadError, NetworkError, ServerError
)
from exam_gate.app.storage.exam_api_client import ExamApiClient

logger = logging.getLogger(__name__)


class VerificationState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    EXTRACTING = "extracting"
    SUBMITTING = "submitting"
    VERIFIED = "verified"
    FAILED = "failed"


class AttemptResult(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


@dataclass(frozen=True)
class VerificationAttempt:
    """One capture-to-decision cycle. Immutable once resolved."""
    attempt_id: str
    captured_at: Optional[datetime] = None
    descriptor: Optional[FaceDescriptor] = None
    result: AttemptResult = AttemptResult.PENDING
    reason: Optional[FailureReason] = None
    message: str = ""
    distance: Optional[float] = None

    @property
    def verified(self) -> bool:
        return self.result == AttemptResult.VERIFIED

    @property
    def is_fatal(self) -> bool:
        return self.reason is not None and self.reason.is_fatal

    @property
    def discarded(self) -> bool:
        return self.reason == FailureReason.CANCELLED


FrameSourceFactory = Callable[[], ContextManager]
StateListener = Callable[[VerificationState, VerificationAttempt], None]


class VerificationController:
    """
    Capture/extract/submit state machine for one learner.

    - A second run_attempt() while one is in flight joins the in-flight one.
    - cancel() discards the in-flight attempt: it may still finish extracting,
      but produces no state change, no submission and no listener call.
    - After max_consecutive_mismatches mismatches in a row (policy key
      `max_consecutive_mismatches`) the controller locks out until
      reset_lockout() (proctor action). No-face, transport and internal
      failures do not count toward the lockout.
    """

    def __init__(
        self,
        api_client: ExamApiClient,
        extractor: Optional[DescriptorExtractor] = None,
        camera_factory: Optional[FrameSourceFactory] = None,
        max_consecutive_mismatches: Optional[int] = None,
        learner_id: Optional[str] = None,
        audit=None,
        on_state_change: Optional[StateListener] = None
    ):
        self.api = api_client
        self.extractor = extractor or get_descriptor_extractor()
        self.learner_id = learner_id
        self.on_state_change = on_state_change

        if camera_factory is None or max_consecutive_mismatches is None:
            from exam_gate.app.config import get_config
            config = get_config()
            if camera_factory is None:
                camera_index = config.camera_index
                camera_factory = lambda: CameraSession(camera_index)  # noqa: E731
            if max_consecutive_mismatches is None:
                max_consecutive_mismatches = config.verification.MAX_CONSECUTIVE_MISMATCHES
        self._camera_factory = camera_factory

        if max_consecutive_mismatches <= 0:
            raise ValueError("max_consecutive_mismatches must be positive")
        self.max_consecutive_mismatches = max_consecutive_mismatches

        if audit is None:
            from exam_gate.app.utils.logger import get_audit_logger
            audit = get_audit_logger()
        self.audit = audit

        self._state = VerificationState.IDLE
        self._last_attempt: Optional[VerificationAttempt] = None
        self._consecutive_mismatches = 0
        self._generation = 0
        self._inflight: Optional[asyncio.Future] = None

    # ==================== STATE ====================

    @property
    def state(self) -> VerificationState:
        return self._state

    @property
    def last_attempt(self) -> Optional[VerificationAttempt]:
        return self._last_attempt

    @property
    def consecutive_mismatches(self) -> int:
        return self._consecutive_mismatches

    @property
    def is_locked_out(self) -> bool:
        return self._consecutive_mismatches >= self.max_consecutive_mismatches

    @property
    def is_busy(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def _set_state(self, generation: int, state: VerificationState, attempt: VerificationAttempt):
        if generation != self._generation:
            return
        self._state = state
        if self.on_state_change:
            self.on_state_change(state, attempt)

    # ==================== OPERATIONS ====================

    async def run_attempt(
        self,
        frame_source: Optional[FrameSourceFactory] = None
    ) -> VerificationAttempt:
        """
        Run a fresh verification attempt (or join the one in flight).

        Args:
            frame_source: Factory for a context-managed frame source;
                defaults to the configured camera

        Returns:
            The resolved VerificationAttempt
        """
        if self.is_busy:
            logger.info("Verification already in progress, joining it")
            return await asyncio.shield(self._inflight)

        self._inflight = asyncio.ensure_future(
            self._run(self._generation, frame_source or self._camera_factory)
        )
        return await asyncio.shield(self._inflight)

    def cancel(self):
        """Discard the in-flight attempt (modal closed, exam submitted)."""
        if self.is_busy:
            logger.info("Discarding in-flight verification attempt")
        self._generation += 1
        self._inflight = None
        self._state = VerificationState.IDLE

    def reset_lockout(self):
        """Clear the mismatch lockout."""
        logger.info(f"Verification lockout reset for learner {self.learner_id}")
        self._consecutive_mismatches = 0
        self.audit.log_event(
            action="FACE_VERIFICATION_LOCKOUT_RESET",
            entity="learner",
            entity_id=self.learner_id,
        )

    # ==================== PIPELINE ====================

    @staticmethod
    def _grab_frame(factory: FrameSourceFactory) -> np.ndarray:
        with factory() as source:
            return source.read_frame()

    async def _run(self, generation: int, frame_source: FrameSourceFactory) -> VerificationAttempt:
        attempt = VerificationAttempt(attempt_id=uuid.uuid4().hex[:12])

        if self.is_locked_out:
            return self._fail(generation, attempt, FailureReason.LOCKED_OUT)

        # Capture
        self._set_state(generation, VerificationState.CAPTURING, attempt)
        loop = asyncio.get_running_loop()
        try:
            frame = await loop.run_in_executor(None, self._grab_frame, frame_source)
        except CameraUnavailableError as e:
            logger.warning(f"Capture failed: {e}")
            return self._fail(generation, attempt, FailureReason.CAMERA_UNAVAILABLE, str(e))
        except Exception as e:
            logger.exception("Unexpected error while capturing a frame")
            return self._fail(generation, attempt, FailureReason.INTERNAL_ERROR, repr(e))

        attempt = replace(attempt, captured_at=datetime.now(timezone.utc))
        if generation != self._generation:
            return self._discard(attempt)

        # Extract
        self._set_state(generation, VerificationState.EXTRACTING, attempt)
        try:
            extracted = await self.extractor.extract_async(frame)
        except ModelLoadError as e:
            return self._fail(generation, attempt, FailureReason.MODEL_LOAD_FAILURE, str(e))
        except Exception as e:
            logger.exception("Unexpected error while extracting the face descriptor")
            return self._fail(generation, attempt, FailureReason.INTERNAL_ERROR, repr(e))

        if generation != self._generation:
            return self._discard(attempt)

        if isinstance(extracted, NotFound):
            return self._fail(generation, attempt, FailureReason.NO_FACE_DETECTED, extracted.reason)

        # Submit
        attempt = replace(attempt, descriptor=extracted)
        self._set_state(generation, VerificationState.SUBMITTING, attempt)
        try:
            response = await self.api.verify_face(extracted)
        except NetworkError as e:
            return self._fail(generation, attempt, FailureReason.NETWORK_ERROR, str(e))
        except ServerError as e:
            return self._fail(generation, attempt, FailureReason.SERVER_ERROR, str(e))
        except Exception as e:
            logger.exception("Unexpected error while submitting the face descriptor")
            return self._fail(generation, attempt, FailureReason.INTERNAL_ERROR, repr(e))

        if generation != self._generation:
            return self._discard(attempt)

        if not response.success:
            self._consecutive_mismatches += 1
            return self._fail(
                generation, attempt, FailureReason.MISMATCH,
                response.message, distance=response.distance
            )

        self._consecutive_mismatches = 0
        resolved = replace(
            attempt,
            descriptor=None,
            result=AttemptResult.VERIFIED,
            message=response.message or "Face verified",
            distance=response.distance
        )
        return self._resolve(generation, resolved, VerificationState.VERIFIED)

    def _fail(
        self,
        generation: int,
        attempt: VerificationAttempt,
        reason: FailureReason,
        detail: str = "",
        distance: Optional[float] = None
    ) -> VerificationAttempt:
        if detail:
            logger.info(f"Verification attempt {attempt.attempt_id} failed ({reason.value}): {detail}")
        resolved = replace(
            attempt,
            descriptor=None,
            result=AttemptResult.FAILED,
            reason=reason,
            message=reason.user_message,
            distance=distance
        )
        return self._resolve(generation, resolved, VerificationState.FAILED)

    def _discard(self, attempt: VerificationAttempt) -> VerificationAttempt:
        logger.debug(f"Verification attempt {attempt.attempt_id} discarded")
        return replace(
            attempt,
            descriptor=None,
            result=AttemptResult.FAILED,
            reason=FailureReason.CANCELLED,
            message=FailureReason.CANCELLED.user_message
        )

    def _resolve(
        self,
        generation: int,
        attempt: VerificationAttempt,
        state: VerificationState
    ) -> VerificationAttempt:
        if generation != self._generation:
            return self._discard(attempt)

        self._last_attempt = attempt
        self.audit.log_event(
            action="FACE_VERIFICATION",
            entity="exam_session",
            entity_id=attempt.attempt_id,
            actor_id=self.learner_id,
            evidence={
                "result": attempt.result.value,
                "reason": attempt.reason.value if attempt.reason else None,
                "distance": attempt.distance,
                "captured_at": attempt.captured_at.isoformat() if attempt.captured_at else None,
                "consecutive_mismatches": self._consecutive_mismatches,
            }
        )
        self._set_state(generation, state, attempt)
        return attempt
