"""Per-question answer strategies that learn from scored attempts."""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple

from imspilot.exceptions import ResolverStateError
from .answer_model import AnswerModel
from .models import BatchRequestItem, BatchResult, Subject, SubjectType

LOG = logging.getLogger(__name__)

# Direct inference attempts a free-text resolver makes before giving up.
TEXT_ATTEMPTS = 3
# Larger option lists are not searched exhaustively for an untried combination.
MAX_SUBSET_SEARCH_OPTIONS = 12


def normalize_text(text: str) -> str:
    return " ".join(str(text or "").split())


class SubjectResolver:
    """
    Extension point for one question type.

    A resolver lives for one exam run and sees the same subject on every
    attempt. ``add_answer_filter`` feeds it the scored outcome of earlier
    attempts; ``get_answer`` / ``get_answer_text`` produce the next answer,
    preferring a result prefetched by the batch dispatcher.
    """

    def __init__(self, subject: Subject, answer_model: AnswerModel):
        self._subject = subject
        self._answer_model = answer_model
        self._prefetched: Optional[BatchResult] = None

    @property
    def subject(self) -> Subject:
        return self._subject

    @property
    def answer_model(self) -> AnswerModel:
        return self._answer_model

    def add_answer_filter(self, score: float, *option_ids: int) -> None:
        """
        Merge scored evidence from an earlier attempt.

        Args:
            score: Score of this subject in that attempt (percent)
            option_ids: Wrong option ids. For a non-zero score these are the
                options the attempt did not choose, otherwise the chosen ones.
        """
        raise NotImplementedError

    def add_text_evidence(self, score: float, text: Optional[str]) -> None:
        """Merge a scored free-text answer from an earlier attempt. Choice types ignore it."""
        return None

    def get_batch_request_data(self) -> Optional[BatchRequestItem]:
        """Question rendered for the batch dispatcher, or None when no AI call is needed."""
        if self.is_pass():
            return None
        return BatchRequestItem(
            id=self._subject.id,
            type=self._subject.type,
            description=self._subject.description,
            options=[opt.content for opt in self._subject.options],
        )

    def set_prefetched_result(self, result: BatchResult) -> None:
        self._prefetched = result

    def clear_prefetched_result(self) -> None:
        self._prefetched = None

    def _take_prefetched(self) -> Optional[BatchResult]:
        result, self._prefetched = self._prefetched, None
        return result

    async def get_answer(self) -> List[int]:
        raise NotImplementedError

    async def get_answer_text(self) -> Optional[str]:
        return None

    def is_pass(self) -> bool:
        raise NotImplementedError

    def reset(self) -> None:
        """Forget everything learned so far."""
        raise NotImplementedError

    def rebind(self, subject: Subject) -> None:
        """Point the resolver at a re-published version of its subject and start over."""
        self._subject = subject
        self.reset()


class ChoiceResolver(SubjectResolver):
    """Single choice and true/false: exactly one option is correct."""

    def __init__(self, subject: Subject, answer_model: AnswerModel):
        super().__init__(subject, answer_model)
        self._excluded: Set[int] = set()
        self._requested: List[int] = []

    @property
    def excluded(self) -> Set[int]:
        return set(self._excluded)

    def remaining_options(self):
        return [opt for opt in self.subject.options if opt.id not in self._excluded]

    def add_answer_filter(self, score: float, *option_ids: int) -> None:
        # A zero score only says that this exact pick was wrong; nothing is eliminated.
        if not score:
            return
        known = set(self.subject.option_ids())
        for opt_id in option_ids:
            if opt_id not in known:
                LOG.warning("Subject %s has no option %s, ignoring", self.subject.id, opt_id)
                continue
            self._excluded.add(opt_id)

    def is_pass(self) -> bool:
        return len(self.subject.options) - len(self._excluded) == 1

    def get_batch_request_data(self) -> Optional[BatchRequestItem]:
        if self.is_pass():
            return None
        remaining = self.remaining_options()
        self._requested = [opt.id for opt in remaining]
        return BatchRequestItem(
            id=self.subject.id,
            type=self.subject.type,
            description=self.subject.full_description,
            options=[opt.content for opt in remaining],
        )

    async def get_answer(self) -> List[int]:
        remaining = self.remaining_options()
        if not remaining:
            raise ResolverStateError(f"every option of subject {self.subject.id} was eliminated")

        if self.is_pass():
            self.clear_prefetched_result()
            return [remaining[0].id]

        prefetched = self._take_prefetched()
        remaining_ids = [opt.id for opt in remaining]
        if prefetched and prefetched.indices and self._requested == remaining_ids:
            idx = prefetched.indices[0]
            if 0 <= idx < len(remaining):
                return [remaining[idx].id]

        try:
            idx = await self.answer_model.choose_one(
                self.subject.type,
                self.subject.full_description,
                [opt.content for opt in remaining],
            )
        except Exception as e:
            LOG.warning("AI answer failed for subject %s (%s), using the first option: %s",
                        self.subject.id, self.subject.type.value, e)
            idx = 0

        if not 0 <= idx < len(remaining):
            idx = 0
        return [remaining[idx].id]

    def reset(self) -> None:
        self._excluded.clear()
        self._requested = []
        self.clear_prefetched_result()


class MultipleChoiceResolver(SubjectResolver):
    """Multiple choice; never submits the same combination twice."""

    def __init__(self, subject: Subject, answer_model: AnswerModel):
        super().__init__(subject, answer_model)
        self._pass = False
        self._solved: Optional[List[int]] = None
        self._tried: Set[Tuple[int, ...]] = set()

    @staticmethod
    def normalize(option_ids) -> Tuple[int, ...]:
        return tuple(sorted(set(option_ids)))

    @property
    def tried(self) -> Set[Tuple[int, ...]]:
        return set(self._tried)

    def add_answer_filter(self, score: float, *option_ids: int) -> None:
        if score:
            # Assumes all-or-nothing scoring: whatever was not wrong is the answer.
            wrong = set(option_ids)
            solved = [opt.id for opt in self.subject.options if opt.id not in wrong]
            self._solved = solved
            self._pass = True
            self._tried.add(self.normalize(solved))
            return

        if option_ids:
            self._tried.add(self.normalize(option_ids))

    def is_pass(self) -> bool:
        return self._pass

    async def get_answer(self) -> List[int]:
        if self._pass and self._solved is not None:
            self.clear_prefetched_result()
            return list(self._solved)

        options = self.subject.options
        prefetched = self._take_prefetched()
        if prefetched and prefetched.indices:
            ids = [options[i].id for i in prefetched.indices if 0 <= i < len(options)]
            key = self.normalize(ids)
            if ids and key not in self._tried:
                self._tried.add(key)
                return list(key)

        try:
            indices = await self.answer_model.choose_many(
                self.subject.description,
                [opt.content for opt in options],
            )
            ids = [options[i].id for i in indices if 0 <= i < len(options)]
        except Exception as e:
            LOG.warning("AI answer failed for multiple choice subject %s, using fallback: %s",
                        self.subject.id, e)
            ids = [opt.id for opt in options[:min(2, len(options))]]

        key = self.normalize(ids)
        if key in self._tried:
            key = self._perturb(key)
        self._tried.add(key)
        return list(key)

    def _perturb(self, key: Tuple[int, ...]) -> Tuple[int, ...]:
        """Nearest untried combination: toggle one option, last option first."""
        all_ids = self.subject.option_ids()
        for opt_id in reversed(all_ids):
            candidate = self.normalize(set(key) ^ {opt_id})
            if candidate and candidate not in self._tried:
                return candidate

        if len(all_ids) <= MAX_SUBSET_SEARCH_OPTIONS:
            for size in range(1, len(all_ids) + 1):
                for combo in itertools.combinations(all_ids, size):
                    candidate = self.normalize(combo)
                    if candidate not in self._tried:
                        return candidate

        LOG.warning("Subject %s: every option combination was already tried", self.subject.id)
        return key

    def reset(self) -> None:
        self._pass = False
        self._solved = None
        self._tried.clear()
        self.clear_prefetched_result()


@dataclass(frozen=True)
class FreeTextStyle:
    """How a free-text question type is put to the model."""
    name: str
    include_options: bool = False
    instruction: str = ""

    def render(self, subject: Subject) -> str:
        parts = [subject.full_description]
        if self.include_options and subject.options:
            listing = "\n".join(f"{i}. {opt.content}" for i, opt in enumerate(subject.options, start=1))
            parts.append(f"Choices:\n{listing}")
        if self.instruction:
            parts.append(self.instruction)
        return "\n\n".join(parts)


FREE_TEXT_STYLES: Dict[SubjectType, FreeTextStyle] = {
    SubjectType.SHORT_ANSWER: FreeTextStyle("short answer"),
    SubjectType.FILL_IN_BLANK: FreeTextStyle("fill in the blank"),
    SubjectType.CLOZE: FreeTextStyle("cloze"),
    SubjectType.ANALYSIS: FreeTextStyle(
        "analysis", instruction="Give the key points of the analysis."
    ),
    SubjectType.MATCHING: FreeTextStyle(
        "matching", include_options=True,
        instruction="State the correct pairing for every item."
    ),
}


class FreeTextResolver(SubjectResolver):
    """Text answers; one strategy shared by every free-text question type."""

    def __init__(self, subject: Subject, answer_model: AnswerModel,
                 style: Optional[FreeTextStyle] = None):
        super().__init__(subject, answer_model)
        self.style = style or FREE_TEXT_STYLES.get(subject.type, FREE_TEXT_STYLES[SubjectType.SHORT_ANSWER])
        self._pass = False
        self._tried: Set[str] = set()
        self._cached: Optional[str] = None

    def add_answer_filter(self, score: float, *option_ids: int) -> None:
        if score:
            self._pass = True

    def add_text_evidence(self, score: float, text: Optional[str]) -> None:
        text = normalize_text(text)
        if not text:
            return
        self._tried.add(text)
        if score:
            self._pass = True
            self._cached = text

    def is_pass(self) -> bool:
        return self._pass

    def _needs_answer(self) -> bool:
        # Passed without knowing the text (scored answer was not returned): ask again.
        return not self._pass or self._cached is None

    def get_batch_request_data(self) -> Optional[BatchRequestItem]:
        if not self._needs_answer():
            return None
        return BatchRequestItem(
            id=self.subject.id,
            type=SubjectType.SHORT_ANSWER,
            description=self.style.render(self.subject),
            options=[],
        )

    async def get_answer(self) -> List[int]:
        return []

    async def get_answer_text(self) -> Optional[str]:
        if not self._needs_answer():
            return self._cached

        prefetched = self._take_prefetched()
        if prefetched and prefetched.text:
            text = normalize_text(prefetched.text)
            if text and text not in self._tried:
                return self._remember(text)

        for attempt in range(1, TEXT_ATTEMPTS + 1):
            try:
                raw = await self.answer_model.answer_text(self.style.render(self.subject))
            except Exception as e:
                LOG.warning("AI %s answer failed (attempt %d/%d) for subject %s: %s",
                            self.style.name, attempt, TEXT_ATTEMPTS, self.subject.id, e)
                continue

            text = normalize_text(raw)
            if text and text not in self._tried:
                return self._remember(text)

        return self._cached or self.answer_model.fallback_text

    def _remember(self, text: str) -> str:
        self._tried.add(text)
        self._cached = text
        return text

    def reset(self) -> None:
        self._pass = False
        self._tried.clear()
        self._cached = None
        self.clear_prefetched_result()


ResolverFactory = Callable[[Subject, AnswerModel], SubjectResolver]

RESOLVER_TABLE: Dict[SubjectType, ResolverFactory] = {
    SubjectType.SINGLE_SELECTION: ChoiceResolver,
    SubjectType.TRUE_OR_FALSE: ChoiceResolver,
    SubjectType.MULTIPLE_SELECTION: MultipleChoiceResolver,
    SubjectType.SHORT_ANSWER: FreeTextResolver,
    SubjectType.FILL_IN_BLANK: FreeTextResolver,
    SubjectType.CLOZE: FreeTextResolver,
    SubjectType.MATCHING: FreeTextResolver,
    SubjectType.ANALYSIS: FreeTextResolver,
}


def has_resolver(subject_type: SubjectType) -> bool:
    return subject_type in RESOLVER_TABLE


def create_resolver(subject: Subject, answer_model: AnswerModel) -> SubjectResolver:
    factory = RESOLVER_TABLE.get(subject.type)
    if factory is None:
        raise ValueError(f"No resolver found for type {subject.type.value}")
    return factory(subject, answer_model)
