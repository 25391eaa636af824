"""Pydantic models for exams, subjects and submissions."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SubjectType(str, Enum):
    """Question shapes served by the grading service."""
    RANDOM = "random"
    TEXT = "text"
    TRUE_OR_FALSE = "true_or_false"
    SINGLE_SELECTION = "single_selection"
    MULTIPLE_SELECTION = "multiple_selection"
    SHORT_ANSWER = "short_answer"
    FILL_IN_BLANK = "fill_in_blank"
    CLOZE = "cloze"
    MATCHING = "matching"
    ANALYSIS = "analysis"


SUBJECT_TYPE_NAMES: Dict[SubjectType, str] = {
    SubjectType.RANDOM: "random pick",
    SubjectType.TEXT: "text",
    SubjectType.TRUE_OR_FALSE: "true/false",
    SubjectType.SINGLE_SELECTION: "single choice",
    SubjectType.MULTIPLE_SELECTION: "multiple choice",
    SubjectType.SHORT_ANSWER: "short answer",
    SubjectType.FILL_IN_BLANK: "fill in the blank",
    SubjectType.CLOZE: "cloze",
    SubjectType.MATCHING: "matching",
    SubjectType.ANALYSIS: "analysis",
}


class Option(BaseModel):
    """One selectable answer of a subject."""
    id: int = Field(description="Option id used when submitting")
    content: str = Field(default="", description="Option text")


class Subject(BaseModel):
    """A single graded question of an exam paper."""
    id: int
    type: SubjectType
    description: str = Field(default="", description="Question text")
    options: List[Option] = Field(default_factory=list)
    point: float = Field(default=0, description="Weight of the subject in percent of the paper")
    last_updated_at: str = Field(default="", description="ISO timestamp echoed back on submission")
    parent_description: Optional[str] = Field(
        default=None,
        description="Stem of the compound question this subject belongs to (cloze passages)"
    )
    sub_subjects: List["Subject"] = Field(default_factory=list)

    @property
    def full_description(self) -> str:
        if self.parent_description:
            return f"{self.parent_description}\n\nQuestion: {self.description}"
        return self.description

    def option_ids(self) -> List[int]:
        return [opt.id for opt in self.options]


Subject.model_rebuild()


class BatchRequestItem(BaseModel):
    """A question rendered for the batch dispatcher."""
    id: int
    type: SubjectType
    description: str
    options: List[str] = Field(default_factory=list)


class BatchResult(BaseModel):
    """Answer for one batch item: option indices for choice types, text otherwise."""
    indices: Optional[List[int]] = None
    text: Optional[str] = None


class ExamInfo(BaseModel):
    """Exam settings that decide whether answering is worthwhile."""
    model_config = ConfigDict(extra="ignore")

    id: int
    title: str = ""
    submit_limit: Optional[int] = Field(default=None, description="None means unlimited")
    submitted_count: int = 0
    total_points: float = 100
    announce_score_status: Optional[str] = None
    completion_criterion: Optional[str] = None


class SubmissionRecord(BaseModel):
    id: int
    score: Optional[float] = Field(default=None, description="None while grading is pending")
    submitted_at: Optional[datetime] = None


class SubmissionHistory(BaseModel):
    """Prior submissions of an exam and the best score so far (percent)."""
    best_score: Optional[float] = None
    submissions: List[SubmissionRecord] = Field(default_factory=list)

    @property
    def pending(self) -> bool:
        return any(s.score is None for s in self.submissions)

    @property
    def latest_score(self) -> Optional[float]:
        dated = [s for s in self.submissions if s.submitted_at is not None]
        if not dated:
            return self.submissions[-1].score if self.submissions else None
        return max(dated, key=lambda s: s.submitted_at).score


class Distribution(BaseModel):
    """A fresh paper instance handed out by the grading service."""
    paper_instance_id: int
    subjects: List[Subject] = Field(default_factory=list)


class SubmittedAnswer(BaseModel):
    subject_id: int
    answer_option_ids: List[int] = Field(default_factory=list)
    answer_text: Optional[str] = Field(default=None, description="Free-text answer as submitted")


class SubmissionDetail(BaseModel):
    """What was submitted in one attempt and how each subject scored."""
    subjects: List[Subject] = Field(default_factory=list)
    answers: List[SubmittedAnswer] = Field(default_factory=list)
    scores: Dict[int, float] = Field(default_factory=dict, description="Per-subject score in percent")


class AnsweredSubject(BaseModel):
    subject_id: int
    answer_option_ids: List[int] = Field(default_factory=list)
    answer_text: Optional[str] = None
    updated_at: str = ""
