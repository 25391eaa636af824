"""Per-activity-type processors and the registry that hands out fresh instances."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from imspilot.exam.answer_model import AnswerModel
from imspilot.exam.api import ExamApi
from imspilot.exam.engine import ExamEngine, ExamState
from imspilot.exam.models import SUBJECT_TYPE_NAMES, Subject, SubjectType
from imspilot.exam.resolvers import has_resolver
from imspilot.exceptions import ExamExhaustedError
from imspilot.libs.config_loader import ConfigType, get_config
from .lanes import Lane
from .models import VIDEO_TYPES, ActivityType, CourseActivity

LOG = logging.getLogger(__name__)


@dataclass
class ProcessorServices:
    """Handles shared by all processors, built once at startup."""
    exam_api: ExamApi
    answer_model: Optional[AnswerModel]
    configs: ConfigType


@dataclass
class ProcessorContext:
    activity: CourseActivity
    lane: Lane
    group_title: str = ""


class Processor:
    """
    Handles one kind of activity.

    Subclasses may define ``async condition(activity) -> bool``; when it is
    absent the activity is always executed. A processor that declines an
    activity explains why in ``skip_reason``.
    """

    def __init__(self, services: ProcessorServices, activity_type: ActivityType):
        self.services = services
        self.activity_type = activity_type
        self.skip_reason: Optional[str] = None

    async def exec(self, context: ProcessorContext) -> None:
        raise NotImplementedError


def _is_supported(subject: Subject) -> bool:
    if subject.type == SubjectType.TEXT:
        return True
    if subject.type == SubjectType.RANDOM:
        # A random slot is drawn from its sub-subjects; an empty pool is left to the service.
        return all(_is_supported(sub) for sub in subject.sub_subjects)
    return has_resolver(subject.type)


class ExamProcessor(Processor):
    """Graded exams and in-class quizzes, answered by the exam engine."""

    async def condition(self, activity: CourseActivity) -> bool:
        if self.services.answer_model is None:
            self.skip_reason = "AI is not configured"
            return False

        exam_api = self.services.exam_api
        info = await exam_api.get_exam(activity.activity_id)
        LOG.info("Exam %s '%s': submitted %d/%s, total points %s, scores %s",
                 info.id, info.title, info.submitted_count,
                 info.submit_limit if info.submit_limit is not None else "unlimited",
                 info.total_points, info.announce_score_status)

        if info.submit_limit == 0:
            self.skip_reason = "exam does not accept submissions"
            return False
        if info.submit_limit is not None and info.submitted_count >= info.submit_limit:
            self.skip_reason = f"submission limit reached ({info.submitted_count}/{info.submit_limit})"
            return False

        subjects = await exam_api.get_subjects_summary(activity.activity_id)
        unsupported = self._unsupported_types(subjects)
        if unsupported:
            self.skip_reason = f"unsupported subject types: {', '.join(unsupported)}"
            return False
        return True

    @staticmethod
    def _unsupported_types(subjects: Iterable[Subject]) -> List[str]:
        names = []
        for subject in subjects:
            candidates = subject.sub_subjects if subject.type == SubjectType.RANDOM else [subject]
            for s in candidates:
                if not _is_supported(s):
                    name = SUBJECT_TYPE_NAMES.get(s.type, s.type.value)
                    if name not in names:
                        names.append(name)
        return names

    async def exec(self, context: ProcessorContext) -> None:
        activity = context.activity
        engine = ExamEngine(
            activity.activity_id,
            self.services.exam_api,
            self.services.answer_model,
            self.services.configs,
        )
        outcome = await engine.run()
        if outcome.state == ExamState.EXHAUSTED:
            raise ExamExhaustedError(
                f"no passing score after {outcome.attempts} attempts (best {outcome.best_score})"
            )


class LaneContentProcessor(Processor):
    """Content activities (videos, pages, materials ...) completed by the lane's browser driver."""

    async def exec(self, context: ProcessorContext) -> None:
        await context.lane.complete_activity(context.activity)


ProcessorFactory = Callable[[ProcessorServices, ActivityType], Processor]

PROCESSOR_TABLE: Dict[ActivityType, ProcessorFactory] = {
    ActivityType.EXAM: ExamProcessor,
    ActivityType.CLASSROOM: ExamProcessor,
    ActivityType.PAGE: LaneContentProcessor,
    ActivityType.MATERIAL: LaneContentProcessor,
    ActivityType.FORUM: LaneContentProcessor,
    ActivityType.WEB_LINK: LaneContentProcessor,
    **{t: LaneContentProcessor for t in VIDEO_TYPES},
}

FEATURE_FLAGS: Dict[ActivityType, str] = {
    ActivityType.EXAM: "features.enable_exam",
    ActivityType.CLASSROOM: "features.enable_classroom",
    ActivityType.PAGE: "features.enable_page",
    ActivityType.MATERIAL: "features.enable_material",
    ActivityType.FORUM: "features.enable_forum",
    ActivityType.WEB_LINK: "features.enable_web_link",
    **{t: "features.enable_video" for t in VIDEO_TYPES},
}


class ProcessorRegistry:
    """Maps activity types to processor factories; every lookup builds a new processor."""

    def __init__(self, services: ProcessorServices, table: Dict[ActivityType, ProcessorFactory]):
        self.services = services
        self._table = dict(table)

    @property
    def types(self) -> List[ActivityType]:
        return list(self._table)

    def supports(self, activity_type: ActivityType) -> bool:
        return activity_type in self._table

    def create(self, activity_type: ActivityType) -> Optional[Processor]:
        factory = self._table.get(activity_type)
        if factory is None:
            return None
        return factory(self.services, activity_type)


def build_registry(services: ProcessorServices, configs: Optional[ConfigType] = None) -> ProcessorRegistry:
    """Registry of every processor whose feature toggle is on."""
    configs = configs if configs is not None else services.configs
    table = {}
    for activity_type, factory in PROCESSOR_TABLE.items():
        flag = FEATURE_FLAGS.get(activity_type)
        if flag and not get_config(flag, configs, default=True):
            LOG.info("Processor for %s disabled by %s", activity_type.value, flag)
            continue
        table[activity_type] = factory

    LOG.info("Registered processors: %s", ", ".join(t.value for t in table) or "none")
    return ProcessorRegistry(services, table)
