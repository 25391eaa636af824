"""Fan the activities of each course group out over concurrent lanes."""

from __future__ import annotations

import asyncio
import logging
import traceback
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence

from imspilot.exceptions import FatalActivityError, GroupSelectionError, ImsPilotError, SkipActivity
from imspilot.libs.config_loader import ConfigType, get_config
from .directory import CourseDirectory
from .events import (
    CourseDone,
    CourseError,
    CourseSkip,
    CourseStart,
    GroupEnd,
    GroupError,
    GroupStart,
    LaneError,
    ProgressBus,
)
from .lanes import ApiLane, Lane
from .models import ActivityType, CourseActivity, CourseGroup, Progress
from .processors import ProcessorContext, ProcessorRegistry

LOG = logging.getLogger(__name__)

MAX_LANES = 6


@dataclass(frozen=True)
class GroupPolicy:
    """Which groups to run: a 1-based ``index`` (0 = all), a ``title`` substring, or neither."""
    index: Optional[int] = None
    title: Optional[str] = None


def resolve_concurrency(configured: int, total: int) -> int:
    """Number of lanes for ``total`` items; ``configured == 0`` means one lane per item."""
    if total <= 0:
        return 0
    desired = min(total, MAX_LANES) if configured <= 0 else min(configured, MAX_LANES)
    return min(max(desired, 1), total)


class CourseOrchestrator:
    """
    Runs course groups one after another; inside a group, lanes work through
    the activities concurrently.

    Lanes are created on demand and reused for later groups. Failures are
    contained at the smallest possible scope: an item failure is reported and
    the lane moves on; a group failure is reported and the next group runs.
    """

    def __init__(self, directory: CourseDirectory, registry: ProcessorRegistry,
                 bus: Optional[ProgressBus] = None, configs: Optional[ConfigType] = None,
                 lane_factory: Callable[[str], Lane] = ApiLane,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        configs = configs or {}
        self.directory = directory
        self.registry = registry
        self.bus = bus or ProgressBus()
        self.lane_factory = lane_factory
        self._sleep = sleep

        self.concurrency = int(get_config("runner.concurrency", configs, default=1) or 0)
        self.item_retries = max(1, int(get_config("runner.item_retries", configs, default=3)))
        self.lane_stagger = float(get_config("runner.lane_stagger_seconds", configs, default=0.4))

        self.lanes: List[Lane] = []

    # -----------------------------
    # Group selection
    # -----------------------------

    @staticmethod
    def select_groups(candidates: Sequence[CourseGroup], policy: Optional[GroupPolicy] = None) -> List[CourseGroup]:
        policy = policy or GroupPolicy()
        candidates = list(candidates)

        if policy.index is not None:
            if policy.index == 0:
                return candidates
            if not 1 <= policy.index <= len(candidates):
                raise GroupSelectionError(
                    f"group index {policy.index} out of range (1-{len(candidates)})"
                )
            return [candidates[policy.index - 1]]

        if policy.title:
            needle = policy.title.lower()
            matched = [g for g in candidates if needle in g.title.lower()]
            if not matched:
                raise GroupSelectionError(f"no group title contains {policy.title!r}")
            return matched

        unfinished = [g for g in candidates if not g.finished]
        if not unfinished:
            LOG.info("Every group is complete, running all of them")
            return candidates
        # Missing completion counts as 0%.
        return sorted(unfinished, key=lambda g: g.completion or 0.0)

    # -----------------------------
    # Running
    # -----------------------------

    async def run(self, groups: Sequence[CourseGroup]) -> None:
        for group in groups:
            try:
                await self.run_group(group)
            except Exception as e:
                LOG.error("Group %s failed: %s", group.title, e)
                LOG.debug(traceback.format_exc())
                self.bus.emit(GroupError(group=group.title, message=str(e)))

    def pending_activities(self, activities: Sequence[CourseActivity]) -> List[CourseActivity]:
        pending = [a for a in activities if a.progress != Progress.FULL or a.type == ActivityType.EXAM]
        supported = [a for a in pending if self.registry.supports(a.type)]
        if len(supported) < len(pending):
            LOG.info("Skipping %d activities without a processor", len(pending) - len(supported))
        return supported

    async def run_group(self, group: CourseGroup) -> None:
        items = self.pending_activities(await self.directory.list_unfinished(group))
        concurrency = resolve_concurrency(self.concurrency, len(items))
        self.bus.emit(GroupStart(group=group.title, total=len(items), concurrency=concurrency))

        if not items:
            LOG.info("%s: nothing to do", group.title)
            self.bus.emit(GroupEnd(group=group.title, total=0))
            return

        lanes = await self._open_lanes(group, concurrency)

        queue: asyncio.Queue = asyncio.Queue()
        for index, activity in enumerate(items, start=1):
            queue.put_nowait((index, activity))

        async def drive(lane: Lane) -> None:
            while True:
                try:
                    index, activity = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                await self.process_item(lane, group, activity, index, len(items))

        await asyncio.gather(*(drive(lane) for lane in lanes))
        self.bus.emit(GroupEnd(group=group.title, total=len(items)))

    async def _open_lanes(self, group: CourseGroup, count: int) -> List[Lane]:
        while len(self.lanes) < count:
            self.lanes.append(self.lane_factory(f"W{len(self.lanes) + 1}"))

        async def open_lane(i: int, lane: Lane) -> Optional[Lane]:
            await self._sleep(i * self.lane_stagger)
            try:
                await lane.open(group)
                return lane
            except Exception as e:
                LOG.warning("Lane %s could not open %s: %s", lane.tag, group.title, e)
                self.bus.emit(LaneError(group=group.title, lane=lane.tag, message=f"could not open: {e}"))
                return None

        opened = await asyncio.gather(*(open_lane(i, lane) for i, lane in enumerate(self.lanes[:count])))
        lanes = [lane for lane in opened if lane is not None]
        if not lanes:
            raise ImsPilotError(f"no lane could open {group.title}")
        return lanes

    async def process_item(self, lane: Lane, group: CourseGroup, activity: CourseActivity,
                           index: int, total: int) -> None:
        """Run one activity on ``lane``. Never raises: every outcome becomes an event."""
        where = dict(group=group.title, lane=lane.tag, index=index, total=total, activity=activity.summary())
        self.bus.emit(CourseStart(**where))

        processor = self.registry.create(activity.type)
        if processor is None:
            self.bus.emit(CourseSkip(reason=f"no processor for {activity.type.value}", **where))
            return

        try:
            condition = getattr(processor, "condition", None)
            if condition is not None and not await condition(activity):
                reason = processor.skip_reason or "condition=false"
                LOG.info("[%s] skipping %s: %s", lane.tag, activity.activity_name, reason)
                self.bus.emit(CourseSkip(reason=reason, **where))
                return

            context = ProcessorContext(activity=activity, lane=lane, group_title=group.title)
            await self._exec_with_retry(processor, context)
        except SkipActivity as e:
            LOG.info("[%s] skipped %s: %s", lane.tag, activity.activity_name, e)
            self.bus.emit(CourseSkip(reason=str(e), **where))
            return
        except Exception as e:
            LOG.error("[%s] %s failed: %s", lane.tag, activity.activity_name, e)
            LOG.debug(traceback.format_exc())
            self.bus.emit(CourseError(message=f"{type(e).__name__}: {e}", **where))
            return

        self.bus.emit(CourseDone(**where))

    async def _exec_with_retry(self, processor, context: ProcessorContext) -> None:
        lane = context.lane
        for attempt in range(1, self.item_retries + 1):
            try:
                await processor.exec(context)
                return
            except (SkipActivity, FatalActivityError):
                raise
            except Exception as e:
                if attempt >= self.item_retries:
                    raise
                LOG.warning("[%s] %s failed (attempt %d/%d): %s",
                            lane.tag, context.activity.activity_name, attempt, self.item_retries, e)
                await lane.reload()

    async def close(self) -> None:
        for lane in self.lanes:
            try:
                await lane.close()
            except Exception as e:
                LOG.warning("Closing lane %s failed: %s", lane.tag, e)
        self.lanes = []
