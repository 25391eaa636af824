"""Tests for the httpx grading-service client."""

import json

import httpx
import pytest

from imspilot.exam.api import HttpExamApi, parse_subject
from imspilot.exam.models import AnsweredSubject, SubjectType
from imspilot.exceptions import ExamApiError, RateLimitedError, SubmissionRejectedError


def make_api(handler, cookie="abc123"):
    client = httpx.AsyncClient(base_url="https://lms.example.org", transport=httpx.MockTransport(handler))
    return HttpExamApi("https://lms.example.org", session_cookie=cookie, client=client), client


class TestParsing:

    def test_parse_subject_strips_html(self):
        subject = parse_subject({
            "id": 7,
            "type": "single_selection",
            "description": "<p>What is <b>2+2</b>?</p>",
            "options": [{"id": 1, "content": "<span>3</span>"}, {"id": 2, "content": "4"}],
            "point": "2.5",
            "last_updated_at": "2024-01-01T00:00:00Z",
        })

        assert subject.type == SubjectType.SINGLE_SELECTION
        assert subject.description == "What is 2+2?"
        assert [o.content for o in subject.options] == ["3", "4"]
        assert subject.point == 2.5

    def test_sub_subjects_carry_parent_description(self):
        subject = parse_subject({
            "id": 1,
            "type": "cloze",
            "description": "The sky is ___.",
            "sub_subjects": [{"id": 2, "type": "single_selection", "description": "blank 1",
                              "options": [{"id": 3, "content": "blue"}]}],
        })

        assert subject.sub_subjects[0].parent_description == "The sky is ___."
        assert subject.sub_subjects[0].full_description.endswith("Question: blank 1")

    def test_unknown_type_becomes_text(self):
        assert parse_subject({"id": 1, "type": "hologram"}).type == SubjectType.TEXT


class TestHttpExamApi:

    @pytest.mark.asyncio
    async def test_get_exam_and_cookie(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["cookie"] = request.headers.get("cookie")
            return httpx.Response(200, json={
                "id": 5, "title": "Quiz 1", "submit_times": 3, "submitted_times": 1, "total_points": 120,
            })

        api, client = make_api(handler)
        async with client:
            info = await api.get_exam(5)

        assert seen == {"path": "/api/exams/5", "cookie": "session=abc123"}
        assert info.title == "Quiz 1"
        assert info.submit_limit == 3
        assert info.submitted_count == 1
        assert info.total_points == 120

    @pytest.mark.asyncio
    async def test_unlimited_submissions(self):
        api, client = make_api(lambda request: httpx.Response(200, json={"id": 5, "submit_limit": None}))
        async with client:
            info = await api.get_exam(5)

        assert info.submit_limit is None
        assert info.submitted_count == 0

    @pytest.mark.asyncio
    async def test_get_submissions(self):
        payload = {
            "exam_score": 80,
            "submissions": [
                {"id": 1, "score": "60", "submitted_at": "2024-01-01T10:00:00Z"},
                {"id": 2, "score": 80, "submitted_at": "2024-01-02T10:00:00Z"},
                {"id": 3, "score": None, "submitted_at": "2024-01-03T10:00:00Z"},
            ],
        }
        api, client = make_api(lambda request: httpx.Response(200, json=payload))
        async with client:
            history = await api.get_submissions(5)

        assert history.best_score == 80
        assert [s.score for s in history.submissions] == [60, 80, None]
        assert history.pending
        assert history.latest_score is None

    @pytest.mark.asyncio
    async def test_distribute_and_open_attempt(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.path.endswith("/distribute"):
                return httpx.Response(200, json={
                    "exam_paper_instance_id": 42,
                    "subjects": [{"id": 1, "type": "true_or_false", "last_updated_at": "t1",
                                  "options": [{"id": 10, "content": "T"}, {"id": 11, "content": "F"}]}],
                })
            return httpx.Response(200, json={"id": 900})

        api, client = make_api(handler)
        async with client:
            distribution = await api.get_distribute(5)
            submission_id = await api.open_attempt(5, distribution.paper_instance_id, distribution.subjects)

        assert distribution.paper_instance_id == 42
        assert submission_id == 900
        assert requests[1].url.path == "/api/exams/5/submissions/storage"
        body = json.loads(requests[1].content)
        assert body == {"exam_paper_instance_id": 42,
                        "subjects": [{"subject_id": 1, "subject_updated_at": "t1"}]}

    @pytest.mark.asyncio
    async def test_open_attempt_without_id(self):
        api, client = make_api(lambda request: httpx.Response(200, json={}))
        async with client:
            assert await api.open_attempt(5, 42, []) is None

    @pytest.mark.asyncio
    async def test_post_submission_payload(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["method"] = request.method
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"ok": True})

        api, client = make_api(handler)
        answers = [
            AnsweredSubject(subject_id=1, answer_option_ids=[10], updated_at="t1"),
            AnsweredSubject(subject_id=2, answer_text="Paris", updated_at="t2"),
        ]
        async with client:
            await api.post_submission(5, 42, 900, answers, total_subjects=3)

        body = captured["body"]
        assert captured["method"] == "POST"
        assert body["exam_paper_instance_id"] == 42
        assert body["exam_submission_id"] == 900
        assert body["reason"] == "submit"
        assert body["progress"] == {"answered_num": 2, "total_subjects": 3}
        assert body["subjects"][1] == {"subject_id": 2, "answer_option_ids": [], "answer": "Paris",
                                       "updated_at": "t2"}

    @pytest.mark.asyncio
    async def test_submission_detail(self):
        payload = {
            "subjects_data": {"subjects": [
                {"id": 1, "type": "single_selection", "options": [{"id": 10}, {"id": 11}]},
            ]},
            "submission_data": {"subjects": [
                {"subject_id": 1, "answer_option_ids": [11], "answer": ""},
                {"subject_id": 2, "answer_option_ids": [], "answer": "Paris"},
            ]},
            "submission_score_data": {"1": "100", "2": None},
        }
        api, client = make_api(lambda request: httpx.Response(200, json=payload))
        async with client:
            detail = await api.get_submission_detail(5, 900)

        assert detail.answers[0].answer_option_ids == [11]
        assert detail.answers[0].answer_text is None
        assert detail.answers[1].answer_text == "Paris"
        assert detail.scores == {1: 100.0}
        assert detail.subjects[0].option_ids() == [10, 11]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error", [
        (429, RateLimitedError),
        (400, SubmissionRejectedError),
        (500, ExamApiError),
        (404, ExamApiError),
    ])
    async def test_status_mapping(self, status, error):
        api, client = make_api(lambda request: httpx.Response(status, text="nope"))
        async with client:
            with pytest.raises(error) as excinfo:
                await api.post_submission(5, 42, 900, [], total_subjects=0)

        assert excinfo.value.status_code == status

    @pytest.mark.asyncio
    async def test_non_json_payload(self):
        api, client = make_api(lambda request: httpx.Response(200, text="<html>login</html>"))
        async with client:
            with pytest.raises(ExamApiError, match="non-JSON"):
                await api.get_submissions(5)

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        api, client = make_api(handler)
        async with client:
            with pytest.raises(ExamApiError, match="refused"):
                await api.get_exam(5)

    def test_from_config(self):
        api = HttpExamApi.from_config({"lms": {"base_url": "https://lms.example.org", "session_cookie": "s"}})
        assert api._owns_client
        assert api._build_headers()["Cookie"] == "session=s"
