"""
Naive keyword-overlap ranking used to pick which chunks answer a question.
"""
from __future__ import annotations

import re
from typing import Protocol, Sequence

from .config import RELEVANT_CHUNK_LIMIT

_UNICODE_WORD_RE = re.compile(r"\w+", flags=re.UNICODE)


def tokenize_for_matching(text: str, *, min_len: int = 1, limit: int | None = None) -> list[str]:
    """
    Tokenizes text with Unicode-aware word boundaries, normalized via casefold().
    Returns unique tokens in first-seen order.
    """
    safe_min_len = max(1, int(min_len))
    max_tokens = int(limit) if limit is not None else None

    out: list[str] = []
    seen: set[str] = set()
    for raw in _UNICODE_WORD_RE.findall(str(text or "").casefold()):
        token = raw.strip("_")
        if len(token) < safe_min_len or token in seen:
            continue
        seen.add(token)
        out.append(token)
        if max_tokens is not None and len(out) >= max_tokens:
            break
    return out


def question_keywords(question: str) -> list[str]:
    """Lowercased question words longer than three characters."""
    return tokenize_for_matching(question, min_len=4)


class RelevanceScorer(Protocol):
    def score(self, question: str, chunk: str) -> float:
        ...


class KeywordOverlapScorer:
    """
    Counts chunk words that contain any question keyword as a substring.
    Substring containment loosely tolerates plural and tense differences.
    """

    def score(self, question: str, chunk: str) -> float:
        keywords = question_keywords(question)
        if not keywords:
            return 0.0
        return float(
            sum(1 for word in str(chunk or "").lower().split() if any(k in word for k in keywords))
        )


def select_relevant_chunks(
    question: str,
    chunks: Sequence[str],
    max_chunks: int = RELEVANT_CHUNK_LIMIT,
    scorer: RelevanceScorer | None = None,
) -> list[str]:
    """
    Returns the top `max_chunks` chunks by score, restored to document order.
    Falls back to the leading chunks when nothing overlaps the question.
    """
    if not chunks:
        return []
    limit = max(1, int(max_chunks))
    if len(chunks) <= limit:
        return list(chunks)

    scorer = scorer or KeywordOverlapScorer()
    scored = [(scorer.score(question, chunk), idx) for idx, chunk in enumerate(chunks)]
    if all(score <= 0 for score, _ in scored):
        return list(chunks[:limit])

    top = sorted(scored, key=lambda item: (-item[0], item[1]))[:limit]
    return [chunks[idx] for _, idx in sorted(top, key=lambda item: item[1])]
