"""Tests for activity processors and the processor registry."""

import pytest
from unittest.mock import AsyncMock, Mock, patch

from imspilot.course.models import VIDEO_TYPES, ActivityType, CourseActivity
from imspilot.course.processors import (
    ExamProcessor,
    LaneContentProcessor,
    ProcessorContext,
    ProcessorServices,
    build_registry,
)
from imspilot.exam.engine import ExamOutcome, ExamState
from imspilot.exam.models import ExamInfo, Subject, SubjectType
from imspilot.exceptions import ExamExhaustedError


@pytest.fixture
def exam_api():
    api = Mock()
    api.get_exam = AsyncMock(return_value=ExamInfo(id=5, title="Quiz", submit_limit=None))
    api.get_subjects_summary = AsyncMock(return_value=[
        Subject(id=1, type=SubjectType.SINGLE_SELECTION),
        Subject(id=2, type=SubjectType.TEXT),
    ])
    return api


@pytest.fixture
def services(exam_api):
    return ProcessorServices(exam_api=exam_api, answer_model=Mock(), configs={})


@pytest.fixture
def activity():
    return CourseActivity(course_id=1, module_id="10", module_name="Unit 1", type=ActivityType.EXAM,
                          activity_id=5, activity_name="Quiz")


class TestExamProcessorCondition:

    @pytest.mark.asyncio
    async def test_runnable_exam(self, services, activity):
        processor = ExamProcessor(services, ActivityType.EXAM)
        assert await processor.condition(activity) is True
        assert processor.skip_reason is None

    @pytest.mark.asyncio
    async def test_no_ai_configured(self, exam_api, activity):
        processor = ExamProcessor(ProcessorServices(exam_api, None, {}), ActivityType.EXAM)

        assert await processor.condition(activity) is False
        assert processor.skip_reason == "AI is not configured"
        exam_api.get_exam.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_submissions_not_allowed(self, services, exam_api, activity):
        exam_api.get_exam.return_value = ExamInfo(id=5, submit_limit=0)
        processor = ExamProcessor(services, ActivityType.EXAM)

        assert await processor.condition(activity) is False
        assert "does not accept" in processor.skip_reason
        exam_api.get_subjects_summary.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_submission_limit_reached(self, services, exam_api, activity):
        exam_api.get_exam.return_value = ExamInfo(id=5, submit_limit=3, submitted_count=3)
        processor = ExamProcessor(services, ActivityType.EXAM)

        assert await processor.condition(activity) is False
        assert processor.skip_reason == "submission limit reached (3/3)"

    @pytest.mark.asyncio
    async def test_unsupported_subject_types(self, services, exam_api, activity):
        """Sub-subjects of random slots are checked too."""
        exam_api.get_subjects_summary.return_value = [
            Subject(id=1, type=SubjectType.SINGLE_SELECTION),
            Subject(id=2, type=SubjectType.RANDOM, sub_subjects=[Subject(id=3, type=SubjectType.MATCHING)]),
        ]
        processor = ExamProcessor(services, ActivityType.CLASSROOM)

        with patch("imspilot.course.processors.has_resolver", side_effect=lambda t: t != SubjectType.MATCHING):
            assert await processor.condition(activity) is False

        assert processor.skip_reason == "unsupported subject types: matching"

    @pytest.mark.asyncio
    async def test_empty_random_slot_is_supported(self, services, exam_api, activity):
        exam_api.get_subjects_summary.return_value = [Subject(id=2, type=SubjectType.RANDOM)]
        processor = ExamProcessor(services, ActivityType.EXAM)

        assert await processor.condition(activity) is True


class TestExamProcessorExec:

    @pytest.mark.asyncio
    @patch("imspilot.course.processors.ExamEngine")
    async def test_exhausted_becomes_skip(self, engine_cls, services, activity):
        engine_cls.return_value.run = AsyncMock(
            return_value=ExamOutcome(state=ExamState.EXHAUSTED, attempts=3, best_score=60.0)
        )
        processor = ExamProcessor(services, ActivityType.EXAM)

        with pytest.raises(ExamExhaustedError, match="3 attempts"):
            await processor.exec(ProcessorContext(activity=activity, lane=Mock()))

        engine_cls.assert_called_once_with(5, services.exam_api, services.answer_model, services.configs)

    @pytest.mark.asyncio
    @patch("imspilot.course.processors.ExamEngine")
    async def test_pass(self, engine_cls, services, activity):
        engine_cls.return_value.run = AsyncMock(
            return_value=ExamOutcome(state=ExamState.PASS, attempts=1, best_score=100.0)
        )
        processor = ExamProcessor(services, ActivityType.EXAM)

        await processor.exec(ProcessorContext(activity=activity, lane=Mock()))


@pytest.mark.asyncio
async def test_lane_content_processor_delegates(services, activity):
    lane = Mock()
    lane.complete_activity = AsyncMock()
    processor = LaneContentProcessor(services, ActivityType.PAGE)

    await processor.exec(ProcessorContext(activity=activity, lane=lane))

    lane.complete_activity.assert_awaited_once_with(activity)
    assert not hasattr(processor, "condition")


class TestRegistry:

    def test_fresh_instance_per_call(self, services):
        """Processors carry per-activity state, so every lookup builds a new one."""
        registry = build_registry(services, {})

        first = registry.create(ActivityType.EXAM)
        second = registry.create(ActivityType.EXAM)

        assert isinstance(first, ExamProcessor)
        assert first is not second
        assert first.activity_type == ActivityType.EXAM

    def test_classroom_uses_exam_processor(self, services):
        processor = build_registry(services, {}).create(ActivityType.CLASSROOM)
        assert isinstance(processor, ExamProcessor)
        assert processor.activity_type == ActivityType.CLASSROOM

    def test_unregistered_type(self, services):
        registry = build_registry(services, {})
        assert registry.create(ActivityType.HOMEWORK) is None
        assert not registry.supports(ActivityType.UNKNOWN)

    def test_feature_toggles(self, services):
        configs = {"features": {"enable_exam": False, "enable_video": False}}
        registry = build_registry(services, configs)

        assert not registry.supports(ActivityType.EXAM)
        assert registry.supports(ActivityType.CLASSROOM)
        assert registry.supports(ActivityType.PAGE)
        for video_type in VIDEO_TYPES:
            assert not registry.supports(video_type)

    def test_toggles_default_to_services_configs(self, exam_api):
        services = ProcessorServices(exam_api, None, {"features": {"enable_page": False}})
        registry = build_registry(services)

        assert not registry.supports(ActivityType.PAGE)
        assert registry.supports(ActivityType.MATERIAL)
