"""Pydantic models for course groups and their activities."""

import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

_PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)")


class ActivityType(str, Enum):
    """Activity tags used by the learning platform."""
    WEB_LINK = "web_link"
    MATERIAL = "material"
    HOMEWORK = "homework"
    FORUM = "forum"
    ONLINE_VIDEO = "online_video"
    SLIDE = "slide"
    LESSON = "lesson"
    LESSON_REPLAY = "lesson_replay"
    EXAM = "exam"
    CHATROOM = "chatroom"
    CLASSROOM = "classroom"
    QUESTIONNAIRE = "questionnaire"
    PAGE = "page"
    SCORM = "scorm"
    INTERACTION = "interaction"
    FEEDBACK = "feedback"
    VIRTUAL_CLASSROOM = "virtual_classroom"
    TENCENT_MEETING = "tencent_meeting"
    LIVE_RECORD = "live_record"
    VIRTUAL_EXPERIMENT = "virtual_experiment"
    MIX_TASK = "mix_task"
    VOCABULARY = "vocabulary"
    UNKNOWN = "unknown"

    @classmethod
    def normalize(cls, value) -> "ActivityType":
        """Map a raw tag ("online-video", "exam", None, ...) to a member, ``UNKNOWN`` if unrecognised."""
        tag = str(value or "").strip().replace("-", "_").lower()
        try:
            return cls(tag)
        except ValueError:
            return cls.UNKNOWN


VIDEO_TYPES = frozenset({
    ActivityType.ONLINE_VIDEO,
    ActivityType.LESSON,
    ActivityType.LESSON_REPLAY,
    ActivityType.SLIDE,
})


class Progress(str, Enum):
    FULL = "full"
    PART = "part"
    NONE = "none"


class CourseActivity(BaseModel):
    """One activity of a course group, as discovered by the directory."""
    model_config = ConfigDict(frozen=True)

    course_id: int = Field(description="Course group id, used to build activity URLs")
    module_id: str
    module_name: str = ""
    syllabus_id: Optional[str] = None
    syllabus_name: Optional[str] = None
    type: ActivityType
    activity_id: int
    activity_name: str = ""
    progress: Progress = Progress.NONE
    sort: int = 0

    def summary(self) -> str:
        return f"{self.module_name} / {self.activity_name} [{self.type.value}]"


class CourseGroup(BaseModel):
    """A course the learner is enrolled in."""
    model_config = ConfigDict(frozen=True)

    id: int
    title: str
    percent: Optional[str] = Field(default=None, description='Completion as shown by the platform, e.g. "37%"')

    @property
    def completion(self) -> Optional[float]:
        if self.percent is None:
            return None
        match = _PERCENT_RE.search(str(self.percent))
        return float(match.group(1)) if match else None

    @property
    def finished(self) -> bool:
        return self.completion is not None and self.completion >= 100
