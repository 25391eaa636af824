"""REST collaborator for the exam grading service."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from imspilot.exceptions import ExamApiError, RateLimitedError, SubmissionRejectedError
from imspilot.libs.config_loader import ConfigType, get_config
from imspilot.libs.labels import strip_html
from .models import (
    AnsweredSubject,
    Distribution,
    ExamInfo,
    Option,
    Subject,
    SubjectType,
    SubmissionDetail,
    SubmissionHistory,
    SubmissionRecord,
    SubmittedAnswer,
)

LOG = logging.getLogger(__name__)


class ExamApi(ABC):
    """Everything the exam engine needs from the grading service."""

    @abstractmethod
    async def get_exam(self, exam_id: int) -> ExamInfo:
        ...

    @abstractmethod
    async def get_subjects_summary(self, exam_id: int) -> List[Subject]:
        """All subjects of the exam (without answers), used to check support up front."""

    @abstractmethod
    async def get_submissions(self, exam_id: int) -> SubmissionHistory:
        ...

    @abstractmethod
    async def get_distribute(self, exam_id: int) -> Distribution:
        """Hand out a fresh paper instance."""

    @abstractmethod
    async def open_attempt(self, exam_id: int, paper_instance_id: int,
                           subjects: List[Subject]) -> Optional[int]:
        """Start an attempt; returns the submission id or None when none was issued."""

    @abstractmethod
    async def post_submission(self, exam_id: int, paper_instance_id: int, submission_id: int,
                              answers: List[AnsweredSubject], total_subjects: int) -> None:
        ...

    @abstractmethod
    async def get_submission_detail(self, exam_id: int, submission_id: int) -> SubmissionDetail:
        ...

    async def close(self) -> None:
        return None


def parse_subject(raw: Dict[str, Any], parent_description: Optional[str] = None) -> Subject:
    """Build a :class:`Subject` from the service payload, stripping HTML from all text."""
    description = strip_html(raw.get("description") or "")
    try:
        subject_type = SubjectType(raw.get("type"))
    except ValueError:
        LOG.warning("Unknown subject type %r on subject %s", raw.get("type"), raw.get("id"))
        subject_type = SubjectType.TEXT

    return Subject(
        id=int(raw["id"]),
        type=subject_type,
        description=description,
        options=[
            Option(id=int(opt["id"]), content=strip_html(opt.get("content") or ""))
            for opt in raw.get("options") or []
        ],
        point=float(raw.get("point") or 0),
        last_updated_at=str(raw.get("last_updated_at") or ""),
        parent_description=parent_description,
        sub_subjects=[
            parse_subject(sub, parent_description=description or None)
            for sub in raw.get("sub_subjects") or []
        ],
    )


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _score(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class HttpExamApi(ExamApi):
    """:class:`ExamApi` over httpx, authenticated with the LMS session cookie."""

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
    def from_config(cls, configs: ConfigType, client: Optional[httpx.AsyncClient] = None) -> "HttpExamApi":
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

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, headers=self._build_headers(), **kwargs)
        except httpx.HTTPError as exc:
            raise ExamApiError(f"{method} {path} failed: {exc}") from exc

        if response.status_code == 429:
            raise RateLimitedError(f"{method} {path} rate limited", status_code=429)
        if response.status_code == 400:
            raise SubmissionRejectedError(
                f"{method} {path} rejected: {response.text[:200]}",
                status_code=400, payload=response.text,
            )
        if response.is_error:
            raise ExamApiError(f"{method} {path} returned HTTP {response.status_code}",
                               status_code=response.status_code, payload=response.text)

        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ExamApiError(f"{method} {path} returned non-JSON payload",
                               status_code=response.status_code) from exc

    async def get_exam(self, exam_id: int) -> ExamInfo:
        data = await self._request("GET", f"/api/exams/{exam_id}")
        # The service uses either spelling for the submission counters.
        submit_limit = data.get("submit_limit", data.get("submit_times"))
        submitted = data.get("submitted_count", data.get("submitted_times"))
        return ExamInfo(
            id=int(data.get("id", exam_id)),
            title=data.get("title") or "",
            submit_limit=int(submit_limit) if submit_limit is not None else None,
            submitted_count=int(submitted or 0),
            total_points=float(data.get("total_points") or 100),
            announce_score_status=data.get("announce_score_status"),
            completion_criterion=data.get("completion_criterion"),
        )

    async def get_subjects_summary(self, exam_id: int) -> List[Subject]:
        data = await self._request("GET", f"/api/exams/{exam_id}/subjects-summary",
                                   params={"forAllSubjects": "true"})
        return [parse_subject(raw) for raw in data.get("subjects") or []]

    async def get_submissions(self, exam_id: int) -> SubmissionHistory:
        data = await self._request("GET", f"/api/exams/{exam_id}/submissions")
        return SubmissionHistory(
            best_score=_score(data.get("exam_score")),
            submissions=[
                SubmissionRecord(
                    id=int(sub["id"]),
                    score=_score(sub.get("score")),
                    submitted_at=_parse_datetime(sub.get("submitted_at")),
                )
                for sub in data.get("submissions") or []
            ],
        )

    async def get_distribute(self, exam_id: int) -> Distribution:
        data = await self._request("GET", f"/api/exams/{exam_id}/distribute")
        paper_instance_id = data.get("exam_paper_instance_id")
        if paper_instance_id is None:
            raise ExamApiError(f"exam {exam_id}: distribute returned no paper instance", payload=data)
        return Distribution(
            paper_instance_id=int(paper_instance_id),
            subjects=[parse_subject(raw) for raw in data.get("subjects") or []],
        )

    async def open_attempt(self, exam_id: int, paper_instance_id: int,
                           subjects: List[Subject]) -> Optional[int]:
        payload = {
            "exam_paper_instance_id": paper_instance_id,
            "subjects": [
                {"subject_id": s.id, "subject_updated_at": s.last_updated_at}
                for s in subjects
            ],
        }
        data = await self._request("POST", f"/api/exams/{exam_id}/submissions/storage", json=payload)
        submission_id = data.get("id") if isinstance(data, dict) else None
        return int(submission_id) if submission_id is not None else None

    async def post_submission(self, exam_id: int, paper_instance_id: int, submission_id: int,
                              answers: List[AnsweredSubject], total_subjects: int) -> None:
        payload = {
            "exam_paper_instance_id": paper_instance_id,
            "exam_submission_id": submission_id,
            "subjects": [
                {
                    "subject_id": a.subject_id,
                    "answer_option_ids": a.answer_option_ids,
                    "answer": a.answer_text,
                    "updated_at": a.updated_at,
                }
                for a in answers
            ],
            "progress": {
                "answered_num": len(answers),
                "total_subjects": total_subjects,
            },
            "reason": "submit",
        }
        await self._request("POST", f"/api/exams/{exam_id}/submissions", json=payload)
        LOG.debug("exam %s: submitted %d answers", exam_id, len(answers))

    async def get_submission_detail(self, exam_id: int, submission_id: int) -> SubmissionDetail:
        data = await self._request("GET", f"/api/exams/{exam_id}/submissions/{submission_id}")
        subjects = [parse_subject(raw) for raw in (data.get("subjects_data") or {}).get("subjects") or []]

        answers = [
            SubmittedAnswer(subject_id=int(a["subject_id"]),
                            answer_option_ids=[int(i) for i in a.get("answer_option_ids") or []],
                            answer_text=a.get("answer") or None)
            for a in (data.get("submission_data") or {}).get("subjects") or []
        ]

        # Per-subject scores are already percentages of the subject.
        scores: Dict[int, float] = {}
        for subject_id, value in (data.get("submission_score_data") or {}).items():
            score = _score(value)
            if score is not None:
                scores[int(subject_id)] = score

        return SubmissionDetail(subjects=subjects, answers=answers, scores=scores)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
