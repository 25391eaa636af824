"""Execution lanes: one per concurrently processed activity stream."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

from imspilot.exceptions import UnsupportedActivityError
from .models import CourseActivity, CourseGroup

LOG = logging.getLogger(__name__)


class Lane(ABC):
    """
    An isolated worker context, typically one browser tab.

    Lanes are long-lived: the orchestrator creates them once, opens them on
    each course group in turn and closes them at the end. Everything a lane
    does stays local to it, so a broken lane never affects its siblings.
    """

    def __init__(self, tag: str):
        self.tag = tag
        self.group: Optional[CourseGroup] = None

    async def open(self, group: CourseGroup) -> None:
        """Navigate to ``group``."""
        self.group = group

    @abstractmethod
    async def reload(self) -> None:
        """Bring the lane back to a clean state after a failed attempt."""

    @abstractmethod
    async def complete_activity(self, activity: CourseActivity) -> None:
        """Work through a content activity (video, page, material ...)."""

    async def close(self) -> None:
        self.group = None


class ApiLane(Lane):
    """Lane without a browser: only API-driven activities (exams) can be completed."""

    async def open(self, group: CourseGroup) -> None:
        await super().open(group)
        LOG.debug("lane %s opened on %s", self.tag, group.title)

    async def reload(self) -> None:
        LOG.debug("lane %s reload", self.tag)

    async def complete_activity(self, activity: CourseActivity) -> None:
        raise UnsupportedActivityError(
            f"{activity.type.value} activities need a browser lane"
        )
