"""Exam resolution loop: fetch history, open an attempt, answer, submit, repeat."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from imspilot.exceptions import MissingAttemptTokenError, RateLimitedError
from imspilot.libs.config_loader import ConfigType, get_config
from imspilot.libs.labels import index_to_label
from .answer_model import AnswerModel
from .api import ExamApi
from .models import (
    AnsweredSubject,
    SUBJECT_TYPE_NAMES,
    Subject,
    SubjectType,
    SubmissionDetail,
    SubmissionHistory,
)
from .resolvers import SubjectResolver, create_resolver, has_resolver

LOG = logging.getLogger(__name__)

# Upper bound of the random delay added before each submission (seconds).
SUBMIT_JITTER = 0.5


class ExamState(str, Enum):
    FETCH_HISTORY = "fetch_history"
    OPEN_ATTEMPT = "open_attempt"
    RESOLVE_ANSWERS = "resolve_answers"
    SUBMIT = "submit"
    PASS = "pass"
    EXHAUSTED = "exhausted"


TERMINAL_STATES = frozenset({ExamState.PASS, ExamState.EXHAUSTED})


@dataclass
class ExamSession:
    """Mutable state of one exam run. Lives exactly as long as :meth:`ExamEngine.run`."""
    exam_id: int
    total_points_threshold: float = 100
    paper_instance_id: Optional[int] = None
    submission_id: Optional[int] = None
    subjects: List[Subject] = field(default_factory=list)
    best_historical_score: Optional[float] = None
    attempt_count: int = 0
    history: Optional[SubmissionHistory] = None
    answers: List[AnsweredSubject] = field(default_factory=list)


@dataclass(frozen=True)
class ExamOutcome:
    state: ExamState
    attempts: int
    best_score: Optional[float]

    @property
    def passed(self) -> bool:
        return self.state == ExamState.PASS


def answerable_subjects(subjects: List[Subject]) -> List[Subject]:
    """Subjects that receive an answer: compound subjects contribute their sub-questions."""
    result = []
    for subject in subjects:
        candidates = subject.sub_subjects or [subject]
        for s in candidates:
            if s.type == SubjectType.TEXT:
                continue
            if not has_resolver(s.type):
                LOG.warning("No resolver for subject %s of type %s, leaving it blank", s.id, s.type.value)
                continue
            result.append(s)
    return result


class ExamEngine:
    """
    Drive one exam until the pass threshold or the attempt ceiling is reached.

    The engine is an explicit state machine: :meth:`step` performs the work of
    one state and returns the next one. Resolvers are kept across attempts so
    that every scored submission narrows down the answers of the next.
    """

    def __init__(self, exam_id: int, exam_api: ExamApi, answer_model: AnswerModel,
                 configs: Optional[ConfigType] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 jitter: Callable[[], float] = random.random):
        configs = configs or {}
        self.exam_id = exam_id
        self.exam_api = exam_api
        self.answer_model = answer_model
        self._sleep = sleep
        self._jitter = jitter

        self.max_retries = int(get_config("exam.max_retries", configs, default=2))
        self.pass_threshold = float(get_config("exam.pass_threshold", configs, default=100))
        self.poll_attempts = int(get_config("exam.grading_poll_attempts", configs, default=5))
        self.poll_interval = float(get_config("exam.grading_poll_interval", configs, default=10))
        self.rate_limit_attempts = int(get_config("exam.rate_limit_attempts", configs, default=5))
        self.rate_limit_backoff = float(get_config("exam.rate_limit_backoff", configs, default=10))
        self.submit_delay_per_subject = float(get_config("exam.submit_delay_per_subject", configs, default=0.2))
        self.retry_delay_per_subject = float(get_config("exam.retry_delay_per_subject", configs, default=1.0))

        self.session = ExamSession(exam_id=exam_id, total_points_threshold=self.pass_threshold)
        self.resolvers: Dict[int, SubjectResolver] = {}
        self._details: Dict[int, SubmissionDetail] = {}

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    async def run(self) -> ExamOutcome:
        state = ExamState.FETCH_HISTORY
        while state not in TERMINAL_STATES:
            state = await self.step(state)

        outcome = ExamOutcome(state=state, attempts=self.session.attempt_count,
                              best_score=self.session.best_historical_score)
        LOG.info("Exam %s finished: %s after %d attempt(s), best score %s",
                 self.exam_id, state.value, outcome.attempts, outcome.best_score)
        return outcome

    async def step(self, state: ExamState) -> ExamState:
        handlers = {
            ExamState.FETCH_HISTORY: self._fetch_history,
            ExamState.OPEN_ATTEMPT: self._open_attempt,
            ExamState.RESOLVE_ANSWERS: self._resolve_answers,
            ExamState.SUBMIT: self._submit,
        }
        handler = handlers.get(state)
        if handler is None:
            raise ValueError(f"no transition out of state {state}")
        return await handler()

    # -----------------------------
    # States
    # -----------------------------

    async def _fetch_history(self) -> ExamState:
        session = self.session
        history = await self.exam_api.get_submissions(self.exam_id)

        polls = 0
        while history.pending and polls < self.poll_attempts:
            LOG.info("Exam %s: waiting for grading...", self.exam_id)
            await self._sleep(self.poll_interval)
            history = await self.exam_api.get_submissions(self.exam_id)
            polls += 1

        session.history = history
        session.best_historical_score = history.best_score
        if history.best_score is not None:
            LOG.info("Exam %s score (latest/best/threshold): %s/%s/%s",
                     self.exam_id, history.latest_score, history.best_score, session.total_points_threshold)

        if history.best_score is not None and history.best_score >= session.total_points_threshold:
            return ExamState.PASS

        if session.attempt_count >= self.max_attempts:
            LOG.warning("Exam %s: reached %d attempts without passing", self.exam_id, session.attempt_count)
            return ExamState.EXHAUSTED

        if session.attempt_count > 0:
            delay = len(session.subjects) * self.retry_delay_per_subject
            LOG.info("Exam %s: score below threshold, retrying in %.1fs (attempt %d/%d)",
                     self.exam_id, delay, session.attempt_count + 1, self.max_attempts)
            await self._sleep(delay)

        return ExamState.OPEN_ATTEMPT

    async def _open_attempt(self) -> ExamState:
        session = self.session
        distribution = await self.exam_api.get_distribute(self.exam_id)
        session.paper_instance_id = distribution.paper_instance_id
        session.subjects = distribution.subjects

        submission_id = await self.exam_api.open_attempt(
            self.exam_id, distribution.paper_instance_id, distribution.subjects
        )
        if not submission_id:
            raise MissingAttemptTokenError(f"exam {self.exam_id}: no submission id for the new attempt")
        session.submission_id = submission_id
        return ExamState.RESOLVE_ANSWERS

    async def _resolve_answers(self) -> ExamState:
        session = self.session
        questions = answerable_subjects(session.subjects)
        self._sync_resolvers(questions)

        if session.history and session.history.submissions:
            LOG.info("Exam %s: collecting answers from %d earlier submission(s)",
                     self.exam_id, len(session.history.submissions))
            for record in session.history.submissions:
                detail = self._details.get(record.id)
                if detail is None:
                    detail = await self.exam_api.get_submission_detail(self.exam_id, record.id)
                    self._details[record.id] = detail
                self._apply_detail(detail)

        await self._prefetch(questions)

        async def answer(subject: Subject) -> AnsweredSubject:
            resolver = self.resolvers[subject.id]
            option_ids = await resolver.get_answer()
            text = await resolver.get_answer_text()
            if not resolver.is_pass():
                self._log_answer(subject, option_ids, text)
            return AnsweredSubject(subject_id=subject.id, answer_option_ids=option_ids,
                                   answer_text=text, updated_at=subject.last_updated_at)

        session.answers = list(await asyncio.gather(*(answer(s) for s in questions)))
        return ExamState.SUBMIT

    async def _submit(self) -> ExamState:
        session = self.session
        total = len(session.subjects)
        delay = total * self.submit_delay_per_subject + self._jitter() * SUBMIT_JITTER
        LOG.info("Exam %s: submitting %d answers in %.2fs", self.exam_id, len(session.answers), delay)
        await self._sleep(delay)

        for attempt in range(1, self.rate_limit_attempts + 1):
            try:
                await self.exam_api.post_submission(
                    self.exam_id, session.paper_instance_id, session.submission_id,
                    session.answers, total,
                )
                break
            except RateLimitedError:
                if attempt >= self.rate_limit_attempts:
                    raise
                LOG.warning("Exam %s: rate limited, waiting %ss (%d/%d)",
                            self.exam_id, self.rate_limit_backoff, attempt, self.rate_limit_attempts)
                await self._sleep(self.rate_limit_backoff)

        session.attempt_count += 1
        return ExamState.FETCH_HISTORY

    # -----------------------------
    # Helpers
    # -----------------------------

    def _sync_resolvers(self, questions: List[Subject]) -> None:
        for subject in questions:
            resolver = self.resolvers.get(subject.id)
            if resolver is None:
                self.resolvers[subject.id] = create_resolver(subject, self.answer_model)
            elif resolver.subject.last_updated_at != subject.last_updated_at:
                LOG.info("Subject %s was updated, discarding what was learned about it", subject.id)
                resolver.rebind(subject)

    def _apply_detail(self, detail: SubmissionDetail) -> None:
        subjects = {}
        for s in detail.subjects:
            subjects[s.id] = s
            for sub in s.sub_subjects:
                subjects[sub.id] = sub

        for submitted in detail.answers:
            resolver = self.resolvers.get(submitted.subject_id)
            score = detail.scores.get(submitted.subject_id)
            if resolver is None or score is None:
                continue

            graded = subjects.get(submitted.subject_id)
            if graded is None:
                continue
            if graded.last_updated_at and graded.last_updated_at != resolver.subject.last_updated_at:
                continue

            chosen = set(submitted.answer_option_ids)
            if score != 0:
                wrong = [opt.id for opt in graded.options if opt.id not in chosen]
            else:
                wrong = list(submitted.answer_option_ids)
            resolver.add_answer_filter(score, *wrong)
            if submitted.answer_text:
                resolver.add_text_evidence(score, submitted.answer_text)

    async def _prefetch(self, questions: List[Subject]) -> None:
        requests = []
        for subject in questions:
            data = self.resolvers[subject.id].get_batch_request_data()
            if data is not None:
                requests.append(data)

        if not requests:
            LOG.info("Exam %s: every subject already has an answer, no AI batch needed", self.exam_id)
            return

        results = await self.answer_model.batch_request(requests)
        for subject_id, result in results.items():
            resolver = self.resolvers.get(subject_id)
            if resolver is not None:
                resolver.set_prefetched_result(result)

    def _log_answer(self, subject: Subject, option_ids: List[int], text: Optional[str]) -> None:
        labels = [index_to_label(i) for i, opt in enumerate(subject.options) if opt.id in option_ids]
        LOG.info("[%s] %s -> %s%s", SUBJECT_TYPE_NAMES.get(subject.type, subject.type.value),
                 subject.description[:80], ",".join(labels) or "-",
                 f" / {text}" if text else "")
