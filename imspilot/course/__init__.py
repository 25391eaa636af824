"""Course discovery, progress events, processors and the lane orchestrator."""

from .directory import CourseDirectory, LmsCourseDirectory
from .events import ProgressBus
from .lanes import ApiLane, Lane
from .models import ActivityType, CourseActivity, CourseGroup
from .orchestrator import CourseOrchestrator, GroupPolicy
from .processors import ProcessorRegistry, ProcessorServices, build_registry

__all__ = [
    "CourseDirectory",
    "LmsCourseDirectory",
    "ProgressBus",
    "ApiLane",
    "Lane",
    "ActivityType",
    "CourseActivity",
    "CourseGroup",
    "CourseOrchestrator",
    "GroupPolicy",
    "ProcessorRegistry",
    "ProcessorServices",
    "build_registry",
]
