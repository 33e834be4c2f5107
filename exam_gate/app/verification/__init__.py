"""Face verification flow for Exam Gate"""

from exam_gate.app.verification.controller import (
    VerificationController,
    VerificationAttempt,
    VerificationState,
    AttemptResult,
)
from exam_gate.app.verification.scheduler import ReverificationScheduler

__all__ = [
    "VerificationController", "VerificationAttempt",
    "VerificationState", "AttemptResult",
    "ReverificationScheduler",
]
