"""Course discovery: which groups exist and which of their activities are unfinished."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from imspilot.exceptions import ImsPilotError
from imspilot.libs.config_loader import ConfigType, get_config
from .models import ActivityType, CourseActivity, CourseGroup, Progress

LOG = logging.getLogger(__name__)

ACTIVITY_KINDS = "learning_activities,exams,classrooms"
PAGE_SIZE = 100


class CourseDirectory(ABC):

    @abstractmethod
    async def list_groups(self) -> List[CourseGroup]:
        ...

    @abstractmethod
    async def list_unfinished(self, group: CourseGroup) -> List[CourseActivity]:
        """Activities of ``group`` in course order, with their completion state."""

    async def close(self) -> None:
        return None


def _progress(value: Any) -> Progress:
    try:
        return Progress(str(value or "none"))
    except ValueError:
        return Progress.NONE


class LmsCourseDirectory(CourseDirectory):
    """:class:`CourseDirectory` backed by the learning platform's JSON API."""

    def __init__(self, base_url: str, *, session_cookie: Optional[str] = None,
                 client: Optional[httpx.AsyncClient] = None, timeout: float = 20.0):
        if client is None:
            self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout)
            self._owns_client = True
        else:
            self._client = client
            self._owns_client = False
        self._session_cookie = session_cookie

    @classmethod
    def from_config(cls, configs: ConfigType, client: Optional[httpx.AsyncClient] = None) -> "LmsCourseDirectory":
        return cls(
            get_config("lms.base_url", configs),
            session_cookie=get_config("lms.session_cookie", configs, default=None),
            client=client,
            timeout=float(get_config("lms.timeout_seconds", configs, default=20)),
        )

    def _build_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._session_cookie:
            headers["Cookie"] = f"session={self._session_cookie}"
        return headers

    async def _get(self, path: str, **params) -> Any:
        try:
            response = await self._client.get(path, params=params or None, headers=self._build_headers())
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ImsPilotError(f"GET {path} failed: {exc}") from exc
        try:
            return response.json()
        except ValueError as exc:
            raise ImsPilotError(f"GET {path} returned non-JSON payload") from exc

    async def list_groups(self) -> List[CourseGroup]:
        groups: List[CourseGroup] = []
        page = 1
        while True:
            data = await self._get(
                "/api/my-courses",
                conditions=json.dumps({"status": ["ongoing"], "keyword": ""}),
                fields="id,name,display_name,completeness",
                page=page,
                page_size=PAGE_SIZE,
            )
            courses = data.get("courses") or []
            for course in courses:
                completeness = course.get("completeness")
                groups.append(CourseGroup(
                    id=int(course["id"]),
                    title=course.get("display_name") or course.get("name") or str(course["id"]),
                    percent=f"{completeness}%" if completeness is not None else None,
                ))
            if len(courses) < PAGE_SIZE or page >= int(data.get("pages") or page):
                break
            page += 1
        LOG.info("Found %d course groups", len(groups))
        return groups

    async def list_unfinished(self, group: CourseGroup) -> List[CourseActivity]:
        data = await self._get(f"/api/courses/{group.id}/modules")
        modules = data.get("modules") or []
        if not modules:
            LOG.warning("Course %s has no modules", group.title)
            return []

        module_names = {m["id"]: m.get("name") or "" for m in modules}
        module_order = {str(m["id"]): i for i, m in enumerate(modules)}

        data = await self._get(
            f"/api/course/{group.id}/all-activities",
            module_ids=f"[{','.join(str(m) for m in module_names)}]",
            activity_types=ACTIVITY_KINDS,
        )
        activities = []
        for kind in ("learning_activities", "exams", "classrooms"):
            activities.extend(data.get(kind) or [])
        activities.extend(data.get("activities") or [])

        completeness = await self._get(f"/api/course/{group.id}/my-completeness")
        completed = (completeness.get("completed_result") or {}).get("completed") or {}
        done = {int(i) for key in ("learning_activity", "exam_activity") for i in completed.get(key) or []}

        result = []
        for act in activities:
            act_id = int(act["id"])
            module_id = act.get("module_id")
            progress = Progress.FULL if act_id in done else _progress(act.get("completeness"))
            result.append(CourseActivity(
                course_id=group.id,
                module_id=str(module_id),
                module_name=module_names.get(module_id, ""),
                syllabus_id=str(act["syllabus_id"]) if act.get("syllabus_id") else None,
                type=ActivityType.normalize(act.get("type") or act.get("activity_type")),
                activity_id=act_id,
                activity_name=act.get("title") or act.get("name") or "",
                progress=progress,
                sort=int(act.get("sort") or 0),
            ))

        result.sort(key=lambda a: (module_order.get(a.module_id, len(module_order)), a.sort))
        LOG.info("%s: %d activities, %d unfinished", group.title, len(result),
                 sum(1 for a in result if a.progress != Progress.FULL))
        return result

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
