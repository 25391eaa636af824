"""Rate-limited access to the answering model, single calls and QPS-sized batches."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from imspilot.exceptions import AIInferenceError
from imspilot.libs.config_loader import ConfigType, get_config
from imspilot.libs.labels import clean_answer_text, extract_labels, index_to_label, resolve_label_indices
from imspilot.libs.llm import AIClient
from .models import BatchRequestItem, BatchResult, SubjectType

LOG = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_FALLBACK_TEXT = "Unable to determine an answer"

# Seconds between two consecutive batches.
BATCH_INTERVAL = 1.0
# Extra seconds added to 1/qps when a direct call had to queue.
PACING_OVERHEAD = 0.3

CHOICE_KINDS = {
    SubjectType.SINGLE_SELECTION: "single-choice",
    SubjectType.TRUE_OR_FALSE: "true/false",
    SubjectType.MULTIPLE_SELECTION: "multiple-choice",
}

SINGLE_DIRECTIVE = "Reply with the letter of the correct option only."
MULTI_DIRECTIVE = (
    "There may be several correct options. Reply only with the letters of all "
    "correct options, separated by commas, for example A,C or B,D,E."
)
TEXT_SYSTEM = (
    "You will answer a short-answer question. Give a concise, direct answer "
    "(one to three sentences) in the language of the question, without extra "
    "explanation or formatting."
)


def render_question(kind: str, description: str, options: Sequence[str]) -> str:
    lines = [
        f"Answer the following {kind} question with option letters only.",
        f"Question: {description}",
        "Options:",
    ]
    lines.extend(f"\t{index_to_label(i)}. {opt}" for i, opt in enumerate(options))
    return "\n".join(lines)


def choice_system_prompt(kind: str, option_count: int) -> str:
    labels = ",".join(index_to_label(i) for i in range(option_count))
    return f"You will answer a {kind} question. Reply only with option letters ({labels})."


class AnswerModel:
    """
    Shared front door to the AI collaborator.

    Every call goes through one FIFO gate: a caller waits until all earlier
    calls have finished and, if it had to wait, for a pacing interval derived
    from ``qps`` before it issues its own request. Batches hold the gate for
    their whole run and pace themselves batch by batch.
    """

    def __init__(self, client: AIClient, qps: int = 1,
                 fallback_text: str = DEFAULT_FALLBACK_TEXT,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        if qps < 1:
            raise ValueError(f"qps must be >= 1, got {qps}")
        self.client = client
        self.qps = int(qps)
        self.fallback_text = fallback_text
        self._sleep = sleep
        self._gate = asyncio.Lock()

    @classmethod
    def from_config(cls, configs: ConfigType, client: Optional[AIClient] = None) -> "AnswerModel":
        return cls(
            client=client or AIClient(configs),
            qps=int(get_config("openai.qps", configs, default=1) or 1),
            fallback_text=get_config("openai.fallback_text", configs, default=DEFAULT_FALLBACK_TEXT),
        )

    @property
    def pacing_interval(self) -> float:
        return 1.0 / self.qps + PACING_OVERHEAD

    async def _gated(self, call: Callable[[], Awaitable[T]]) -> T:
        waited = self._gate.locked()
        async with self._gate:
            if waited:
                await self._sleep(self.pacing_interval)
            return await call()

    # -----------------------------
    # Direct calls (gated)
    # -----------------------------

    async def choose_one(self, subject_type: SubjectType, description: str, options: Sequence[str]) -> int:
        """Index of the single correct option, relative to ``options``."""
        return await self._gated(lambda: self._ask_one(subject_type, description, options))

    async def choose_many(self, description: str, options: Sequence[str]) -> List[int]:
        """Sorted indices of all options the model considers correct."""
        return await self._gated(lambda: self._ask_many(description, options))

    async def answer_text(self, prompt: str) -> str:
        return await self._gated(lambda: self._ask_text(prompt))

    # -----------------------------
    # Batches
    # -----------------------------

    async def batch_request(self, items: Sequence[BatchRequestItem]) -> Dict[int, BatchResult]:
        """
        Answer many questions, ``qps`` at a time.

        Items within a batch run concurrently; batches are separated by a fixed
        delay (none after the last one). A failing item gets a deterministic
        fallback instead of failing the batch.

        Returns:
            Results keyed by item id
        """
        if not items:
            return {}
        return await self._gated(lambda: self._run_batches(list(items)))

    async def _run_batches(self, items: List[BatchRequestItem]) -> Dict[int, BatchResult]:
        batches = [items[i:i + self.qps] for i in range(0, len(items), self.qps)]
        LOG.info("AI batch: %d requests in %d batches (qps=%d)", len(items), len(batches), self.qps)

        results: Dict[int, BatchResult] = {}
        for batch_idx, batch in enumerate(batches):
            LOG.debug("  batch %d/%d: %d requests", batch_idx + 1, len(batches), len(batch))
            answers = await asyncio.gather(*(self._answer_item(item) for item in batch))
            for item, answer in zip(batch, answers):
                results[item.id] = answer

            if batch_idx < len(batches) - 1:
                await self._sleep(BATCH_INTERVAL)

        LOG.info("AI batch finished with %d results", len(results))
        return results

    async def _answer_item(self, item: BatchRequestItem) -> BatchResult:
        try:
            if item.type == SubjectType.MULTIPLE_SELECTION:
                return BatchResult(indices=await self._ask_many(item.description, item.options))
            if item.type in CHOICE_KINDS:
                return BatchResult(indices=[await self._ask_one(item.type, item.description, item.options)])
            return BatchResult(text=await self._ask_text(item.description))
        except Exception as e:
            LOG.warning("AI batch request %s failed, using fallback: %s", item.id, e)
            return self.fallback_for(item)

    def fallback_for(self, item: BatchRequestItem) -> BatchResult:
        if item.type in CHOICE_KINDS:
            return BatchResult(indices=[0])
        return BatchResult(text=self.fallback_text)

    # -----------------------------
    # Raw model calls
    # -----------------------------

    async def _ask_one(self, subject_type: SubjectType, description: str, options: Sequence[str]) -> int:
        if not options:
            raise AIInferenceError("choice question without options")
        kind = CHOICE_KINDS.get(subject_type, "single-choice")
        raw = await self.client.complete(
            choice_system_prompt(kind, len(options)),
            render_question(kind, description, options),
            SINGLE_DIRECTIVE,
        )
        indices = resolve_label_indices(extract_labels(raw), len(options))
        if not indices:
            raise AIInferenceError(f"no valid option letter in answer: {raw!r}")
        return indices[0]

    async def _ask_many(self, description: str, options: Sequence[str]) -> List[int]:
        if not options:
            raise AIInferenceError("choice question without options")
        kind = CHOICE_KINDS[SubjectType.MULTIPLE_SELECTION]
        raw = await self.client.complete(
            choice_system_prompt(kind, len(options)),
            render_question(kind, description, options),
            MULTI_DIRECTIVE,
        )
        indices = sorted(resolve_label_indices(extract_labels(raw), len(options)))
        if not indices:
            raise AIInferenceError(f"no valid option letters in answer: {raw!r}")
        return indices

    async def _ask_text(self, prompt: str) -> str:
        raw = await self.client.complete(TEXT_SYSTEM, f"Question: {prompt}")
        text = clean_answer_text(raw)
        if not text:
            raise AIInferenceError("empty text answer")
        return text
