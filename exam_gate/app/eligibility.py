"""
Exam Gate - Exam Eligibility

A learner may enter the exam room only when every purchased course is at
100% completion and at least one purchased course exists. Computed fresh on
every check; an unreachable progress source fails closed.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple

from exam_gate.app.errors import ApiError, EligibilitySourceUnreachable

logger = logging.getLogger(__name__)


class CourseStatus(str, Enum):
    NOT_PURCHASED = "not_purchased"
    ACTIVE = "active"
    COMPLETED = "completed"


@dataclass(frozen=True)
class CourseProgress:
    """Per-course completion, as reported by the enrollment backend."""
    course_id: str
    completion_rate: float  # 0-100
    status: CourseStatus
    course_name: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "CourseProgress":
        """
        Parse one `{courseId, courseName, completionRate, status}` entry.

        Raises:
            ValueError: on a missing/unknown field value
        """
        rate = data.get("completionRate")
        if isinstance(rate, bool) or not isinstance(rate, (int, float)):
            raise ValueError(f"Invalid completionRate: {rate!r}")
        if not 0 <= rate <= 100:
            raise ValueError(f"completionRate out of range: {rate!r}")
        return cls(
            course_id=str(data.get("courseId", "")),
            completion_rate=float(rate),
            status=CourseStatus(data.get("status")),
            course_name=data.get("courseName") or "",
        )

    @property
    def is_purchased(self) -> bool:
        return self.status in (CourseStatus.ACTIVE, CourseStatus.COMPLETED)

    @property
    def is_complete(self) -> bool:
        return self.completion_rate == 100


@dataclass(frozen=True)
class EligibilityResult:
    """Derived eligibility. Never stored."""
    exam_eligible: bool
    courses: Tuple[CourseProgress, ...] = field(default_factory=tuple)
    error: Optional[str] = None  # Soft error banner text when failing closed

    @property
    def purchased_courses(self) -> Tuple[CourseProgress, ...]:
        return tuple(c for c in self.courses if c.is_purchased)

    @property
    def incomplete_courses(self) -> Tuple[CourseProgress, ...]:
        """Purchased courses still blocking the exam."""
        return tuple(c for c in self.purchased_courses if not c.is_complete)


def evaluate(courses: Iterable[CourseProgress]) -> EligibilityResult:
    """
    Decide exam eligibility from course progress.

    not_purchased courses are informational only.
    """
    courses = tuple(courses)
    purchased = [c for c in courses if c.is_purchased]
    eligible = bool(purchased) and all(c.is_complete for c in purchased)
    return EligibilityResult(exam_eligible=eligible, courses=courses)


class EligibilityService:
    """Fetches course progress and evaluates eligibility, failing closed."""

    SOURCE_ERROR_MESSAGE = (
        "Course progress could not be loaded. Exam entry is unavailable for now."
    )

    def __init__(self, api_client, audit=None):
        self.api = api_client
        if audit is None:
            from exam_gate.app.utils.logger import get_audit_logger
            audit = get_audit_logger()
        self.audit = audit

    async def fetch_progress(self) -> Tuple[Tuple[CourseProgress, ...], Optional[bool]]:
        """
        Fetch course progress from the backend.

        Returns:
            (courses, server-reported examEligible flag)

        Raises:
            EligibilitySourceUnreachable: on transport, status or parse failure
        """
        try:
            body = await self.api.get_exam_eligibility()
            courses = tuple(CourseProgress.from_api(c) for c in body.get("courses", []))
        except (ApiError, ValueError, AttributeError) as e:
            raise EligibilitySourceUnreachable(str(e)) from e

        reported = body.get("examEligible")
        return courses, reported if isinstance(reported, bool) else None

    async def check(self, learner_id: Optional[str] = None) -> EligibilityResult:
        """Evaluate eligibility now. Never raises; fails closed."""
        try:
            courses, reported = await self.fetch_progress()
        except EligibilitySourceUnreachable as e:
            logger.error(f"Eligibility source unreachable: {e}")
            result = EligibilityResult(exam_eligible=False, error=self.SOURCE_ERROR_MESSAGE)
            self._audit(learner_id, result, source_error=str(e))
            return result

        result = evaluate(courses)
        if reported is not None and reported != result.exam_eligible:
            logger.warning(
                f"Backend reported examEligible={reported}, "
                f"local evaluation gives {result.exam_eligible}"
            )
        self._audit(learner_id, result)
        return result

    def _audit(self, learner_id: Optional[str], result: EligibilityResult, source_error: str = None):
        self.audit.log_event(
            action="EXAM_ELIGIBILITY_CHECK",
            entity="learner",
            entity_id=learner_id,
            evidence={
                "exam_eligible": result.exam_eligible,
                "purchased": len(result.purchased_courses),
                "incomplete": [c.course_id for c in result.incomplete_courses],
                "source_error": source_error,
            }
        )
