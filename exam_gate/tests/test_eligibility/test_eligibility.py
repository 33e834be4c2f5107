"""
Unit tests for exam eligibility evaluation.
"""

import asyncio
from unittest.mock import MagicMock

import pytest


def _course(rate, status, course_id="c"):
    from exam_gate.app.eligibility import CourseProgress, CourseStatus
    return CourseProgress(course_id, rate, CourseStatus(status))


class TestEvaluate:
    """Tests for the pure eligibility rule."""

    def test_no_courses_not_eligible(self):
        """Test an empty course list is never eligible."""
        from exam_gate.app.eligibility import evaluate

        assert evaluate([]).exam_eligible is False

    def test_only_unpurchased_courses_not_eligible(self):
        """Test not_purchased courses alone do not qualify."""
        from exam_gate.app.eligibility import evaluate

        result = evaluate([_course(0, "not_purchased"), _course(100, "not_purchased")])

        assert result.exam_eligible is False
        assert result.purchased_courses == ()

    def test_all_purchased_complete_is_eligible(self):
        """Test every purchased course at 100% qualifies."""
        from exam_gate.app.eligibility import evaluate

        result = evaluate([_course(100, "completed", "a"), _course(100, "active", "b")])

        assert result.exam_eligible is True
        assert result.incomplete_courses == ()

    def test_one_incomplete_purchase_blocks(self):
        """Test a single incomplete purchased course blocks the exam."""
        from exam_gate.app.eligibility import evaluate

        result = evaluate([_course(100, "completed", "a"), _course(99.5, "active", "b")])

        assert result.exam_eligible is False
        assert [c.course_id for c in result.incomplete_courses] == ["b"]

    def test_unpurchased_courses_ignored(self):
        """Test incomplete not_purchased courses do not matter."""
        from exam_gate.app.eligibility import evaluate

        result = evaluate([_course(100, "completed", "a"), _course(0, "not_purchased", "b")])

        assert result.exam_eligible is True

    def test_adding_unpurchased_course_never_changes_result(self):
        """Test eligibility is monotone in not_purchased entries."""
        from exam_gate.app.eligibility import evaluate

        base = [_course(100, "completed", "a"), _course(30, "active", "b")]
        extra = base + [_course(100, "not_purchased", "x")]

        assert evaluate(base).exam_eligible == evaluate(extra).exam_eligible

    def test_order_does_not_matter(self):
        """Test course order has no effect."""
        from exam_gate.app.eligibility import evaluate

        courses = [_course(100, "completed", "a"), _course(10, "active", "b"), _course(0, "not_purchased", "c")]

        assert evaluate(courses).exam_eligible == evaluate(list(reversed(courses))).exam_eligible


class TestCourseProgressParsing:
    """Tests for parsing backend course entries."""

    def test_from_api(self):
        """Test a well-formed entry."""
        from exam_gate.app.eligibility import CourseProgress, CourseStatus

        course = CourseProgress.from_api({
            "courseId": 42,
            "courseName": "Intro",
            "completionRate": 100,
            "status": "completed",
        })

        assert course.course_id == "42"
        assert course.course_name == "Intro"
        assert course.status == CourseStatus.COMPLETED
        assert course.is_complete is True

    @pytest.mark.parametrize("rate", [None, "100", True, -1, 100.01])
    def test_invalid_rate_rejected(self, rate):
        """Test missing, non-numeric or out-of-range rates."""
        from exam_gate.app.eligibility import CourseProgress

        with pytest.raises(ValueError):
            CourseProgress.from_api({"courseId": "c", "completionRate": rate, "status": "active"})

    def test_unknown_status_rejected(self):
        """Test an unknown status value is rejected."""
        from exam_gate.app.eligibility import CourseProgress

        with pytest.raises(ValueError):
            CourseProgress.from_api({"courseId": "c", "completionRate": 100, "status": "refunded"})


class FakeApi:
    def __init__(self, body=None, error=None):
        self.body = body
        self.error = error

    async def get_exam_eligibility(self):
        if self.error is not None:
            raise self.error
        return self.body


class TestEligibilityService:
    """Tests for fetching and evaluating eligibility."""

    def test_eligible_from_backend(self):
        """Test a complete learner is eligible."""
        from exam_gate.app.eligibility import EligibilityService

        api = FakeApi({
            "success": True,
            "examEligible": True,
            "courses": [{"courseId": "a", "completionRate": 100, "status": "completed"}],
        })
        result = asyncio.run(EligibilityService(api, audit=MagicMock()).check())

        assert result.exam_eligible is True
        assert result.error is None

    def test_unreachable_source_fails_closed(self):
        """Test a network failure is ineligible with a soft error."""
        from exam_gate.app.eligibility import EligibilityService
        from exam_gate.app.errors import NetworkError

        service = EligibilityService(FakeApi(error=NetworkError("timeout")), audit=MagicMock())
        result = asyncio.run(service.check())

        assert result.exam_eligible is False
        assert result.error == EligibilityService.SOURCE_ERROR_MESSAGE

    def test_malformed_course_fails_closed(self):
        """Test a bad course entry is treated as an unreachable source."""
        from exam_gate.app.eligibility import EligibilityService

        api = FakeApi({"courses": [{"courseId": "a", "completionRate": "lots", "status": "active"}]})
        result = asyncio.run(EligibilityService(api, audit=MagicMock()).check())

        assert result.exam_eligible is False
        assert result.error is not None

    def test_fetch_progress_raises_unreachable(self):
        """Test fetch_progress surfaces EligibilitySourceUnreachable."""
        from exam_gate.app.eligibility import EligibilityService
        from exam_gate.app.errors import EligibilitySourceUnreachable, ServerError

        service = EligibilityService(FakeApi(error=ServerError("down", 503)), audit=MagicMock())

        with pytest.raises(EligibilitySourceUnreachable):
            asyncio.run(service.fetch_progress())

    def test_local_evaluation_wins_over_backend_flag(self):
        """Test the backend flag never overrides the local rule."""
        from exam_gate.app.eligibility import EligibilityService

        api = FakeApi({
            "examEligible": True,
            "courses": [{"courseId": "a", "completionRate": 50, "status": "active"}],
        })
        result = asyncio.run(EligibilityService(api, audit=MagicMock()).check())

        assert result.exam_eligible is False

    def test_check_is_audited(self):
        """Test each decision is written to the audit trail."""
        from exam_gate.app.eligibility import EligibilityService

        audit = MagicMock()
        api = FakeApi({"courses": [{"courseId": "a", "completionRate": 20, "status": "active"}]})
        asyncio.run(EligibilityService(api, audit=audit).check(learner_id="learner-1"))

        kwargs = audit.log_event.call_args.kwargs
        assert kwargs["action"] == "EXAM_ELIGIBILITY_CHECK"
        assert kwargs["entity_id"] == "learner-1"
        assert kwargs["evidence"]["incomplete"] == ["a"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
