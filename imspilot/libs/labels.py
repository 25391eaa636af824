"""Option labels (A, B, ..., Z, AA, AB, ...) and model-output cleanup helpers."""

from __future__ import annotations

import html
import re
from typing import Iterable, List

_ANSWER_PREFIX_RE = re.compile(r"^\s*(答案[:：]?|answer\s*[:：]|the answer is)\s*", re.IGNORECASE)
_INLINE_PREFIX_RE = re.compile(r"答案[:：]?", re.IGNORECASE)
# Uppercase runs that are not part of a longer Latin word ("Answer", "OK.").
_LABEL_RUN_RE = re.compile(r"(?<![A-Za-z])[A-Z]+(?![A-Za-z])")
_TAG_RE = re.compile(r"<[^>]+>")
_BLOCK_TAG_RE = re.compile(r"<\s*(br|/p|/div|/li)\s*/?>", re.IGNORECASE)
_SCRIPT_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_WS_RE = re.compile(r"\s+")


def index_to_label(index: int) -> str:
    """Convert a zero-based option index into its letter label.

    0 -> "A", 25 -> "Z", 26 -> "AA", 27 -> "AB" (bijective base 26).
    """
    if not isinstance(index, int) or isinstance(index, bool) or index < 0:
        raise ValueError(f"invalid index: {index!r}")

    n = index + 1
    label = ""
    while n > 0:
        n -= 1
        label = chr(n % 26 + ord("A")) + label
        n //= 26
    return label


def label_to_index(label: str) -> int:
    """Inverse of :func:`index_to_label`. Case-insensitive."""
    text = str(label or "").strip().upper()
    if not text or not text.isascii() or not text.isalpha():
        raise ValueError(f"invalid label: {label!r}")

    n = 0
    for ch in text:
        n = n * 26 + (ord(ch) - ord("A") + 1)
    return n - 1


def extract_labels(text: str) -> List[str]:
    """Pull candidate option labels out of free-form model output.

    Accepts shapes like "A", "B,C", "A C", "答案：AC" or "Answer: B". Runs of
    several letters are returned whole; :func:`resolve_label_indices` decides
    whether "AC" means option 28 or options A and C.
    """
    raw = _INLINE_PREFIX_RE.sub(" ", _ANSWER_PREFIX_RE.sub(" ", str(text or "")))
    return _LABEL_RUN_RE.findall(raw)


def resolve_label_indices(tokens: Iterable[str], option_count: int) -> List[int]:
    """Map label tokens to option indices, dropping anything out of range.

    A multi-letter token is read as one label first. Only when that index is
    out of range is it split into single letters. Duplicates are dropped and
    the first-seen order is kept.
    """
    indices: List[int] = []
    for token in tokens:
        try:
            idx = label_to_index(token)
        except ValueError:
            continue
        if 0 <= idx < option_count:
            candidates = [idx]
        elif len(token) > 1:
            candidates = [label_to_index(ch) for ch in token]
        else:
            candidates = []
        for c in candidates:
            if 0 <= c < option_count and c not in indices:
                indices.append(c)
    return indices


def clean_answer_text(text: str) -> str:
    """Strip an "answer:" prefix and collapse whitespace."""
    return _WS_RE.sub(" ", _ANSWER_PREFIX_RE.sub("", str(text or ""))).strip()


def strip_html(content: str) -> str:
    """Reduce a rich-text question body to plain text."""
    if not content:
        return ""
    text = _SCRIPT_RE.sub(" ", content)
    text = _BLOCK_TAG_RE.sub("\n", text)
    text = _TAG_RE.sub("", text)
    text = html.unescape(text).replace("\xa0", " ")
    lines = [_WS_RE.sub(" ", line).strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line)
