"""Progress events emitted while courses are worked through, and the bus that delivers them."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Annotated, Callable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

LOG = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    ts: datetime = Field(default_factory=_now)
    group: str = Field(default="", description="Title of the course group")


class GroupStart(_Event):
    kind: Literal["groupStart"] = "groupStart"
    total: int = 0
    concurrency: int = 1


class GroupEnd(_Event):
    kind: Literal["groupEnd"] = "groupEnd"
    total: int = 0


class GroupError(_Event):
    kind: Literal["groupError"] = "groupError"
    message: str = ""


class LaneError(_Event):
    kind: Literal["laneError"] = "laneError"
    lane: str = ""
    message: str = ""


class _CourseEvent(_Event):
    lane: str = ""
    index: int = 0
    total: int = 0
    activity: str = Field(default="", description="Human-readable activity summary")


class CourseStart(_CourseEvent):
    kind: Literal["courseStart"] = "courseStart"


class CourseDone(_CourseEvent):
    kind: Literal["courseDone"] = "courseDone"


class CourseSkip(_CourseEvent):
    kind: Literal["courseSkip"] = "courseSkip"
    reason: str = ""


class CourseError(_CourseEvent):
    kind: Literal["courseError"] = "courseError"
    message: str = ""


ProgressEvent = Annotated[
    Union[GroupStart, GroupEnd, GroupError, LaneError, CourseStart, CourseDone, CourseSkip, CourseError],
    Field(discriminator="kind"),
]

Listener = Callable[[ProgressEvent], None]


class ProgressBus:
    """Synchronous fan-out of progress events to subscribers, in subscription order."""

    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; the returned callable removes it again."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: ProgressEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                LOG.debug("progress listener %r failed on %s: %s", listener, event.kind, e)


def describe(event: ProgressEvent) -> Optional[str]:
    """One-line rendering of an event for console output."""
    if isinstance(event, GroupStart):
        return f"== {event.group}: {event.total} activities, {event.concurrency} lane(s)"
    if isinstance(event, GroupEnd):
        return f"== {event.group}: done"
    if isinstance(event, GroupError):
        return f"!! {event.group}: {event.message}"
    if isinstance(event, LaneError):
        return f"!! {event.group} [{event.lane}]: {event.message}"
    if isinstance(event, CourseStart):
        return None
    position = f"[{event.lane}] {event.index}/{event.total} {event.activity}"
    if isinstance(event, CourseDone):
        return f"{position}: done"
    if isinstance(event, CourseSkip):
        return f"{position}: skipped ({event.reason})"
    if isinstance(event, CourseError):
        return f"{position}: failed ({event.message})"
    return None
