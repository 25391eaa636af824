"""Exam answering: resolvers, the AI batch dispatcher and the resolution engine."""

from .answer_model import AnswerModel
from .api import ExamApi, HttpExamApi
from .engine import ExamEngine, ExamOutcome, ExamSession, ExamState
from .models import Subject, SubjectType
from .resolvers import create_resolver, has_resolver

__all__ = [
    "AnswerModel",
    "ExamApi",
    "HttpExamApi",
    "ExamEngine",
    "ExamOutcome",
    "ExamSession",
    "ExamState",
    "Subject",
    "SubjectType",
    "create_resolver",
    "has_resolver",
]
