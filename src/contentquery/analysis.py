"""
Content analysis and question answering on top of the fallback invoker.

Long content is chunked: analysis fans out one call per (sampled) chunk and
consolidates the partial results with a final call; question answering sends
only the chunks most relevant to the question.
"""
from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Iterable, Protocol, Sequence

from .chunking import chunk_text, spread_evenly
from .config import (
    ANALYSIS_CONCURRENCY,
    ANALYSIS_MAX_CHUNKS,
    CHUNK_OVERLAP,
    CONVERSATION_HISTORY_LIMIT,
    MAX_CHUNK_SIZE,
    RELEVANT_CHUNK_LIMIT,
)
from .errors import MalformedModelOutputError
from .model_output import parse_json_object, strip_code_fences
from .model_router import ChatMessage, InvocationResult
from .observability import get_logger
from .relevance import RelevanceScorer, select_relevant_chunks

logger = get_logger(__name__)

WORDS_PER_MINUTE = 200
DEFAULT_TITLE = "Extracted Content"
DEGRADED_KEY_POINTS = ["Analysis completed", "Content extracted", "Ready for questions"]
EMPTY_ANSWER = "I couldn't process your question. Please try again."
MAX_KEY_POINTS = 5
_CHUNK_SEPARATOR = "\n\n---\n\n"


class CompletionInvoker(Protocol):
    async def invoke(
        self,
        messages: Sequence[ChatMessage],
        preferred_model: str | None = None,
    ) -> InvocationResult:
        ...


@dataclass(frozen=True)
class ContentAnalysis:
    title: str
    summary: str
    key_points: list[str]
    word_count: int
    read_time: int
    model_used: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "summary": self.summary,
            "keyPoints": list(self.key_points),
            "wordCount": self.word_count,
            "readTime": self.read_time,
            "modelUsed": self.model_used,
        }


@dataclass(frozen=True)
class Answer:
    text: str
    model_used: str


def count_words(text: str) -> int:
    return len(str(text or "").split())


def estimate_read_time(words: int) -> int:
    return max(1, math.ceil(int(words) / WORDS_PER_MINUTE))


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

def _analysis_prompt(content: str, topic: str) -> str:
    return f"""You are an expert content analyst. Analyze the following content and provide a JSON response with:
- title: Extract or generate a descriptive title
- summary: A concise summary (2-3 sentences)
- keyPoints: Array of 3-5 key points from the content

Focus the analysis on the topic: {topic}

IMPORTANT: Respond with valid JSON only, no additional text.

Content to analyze:
{content}"""


def _chunk_analysis_prompt(chunk: str, topic: str, index: int, total: int) -> str:
    return f"""You are an expert content analyst. The text below is part {index} of {total} of a longer document.
Provide a JSON response with:
- title: A descriptive title for the whole document if this part reveals it, otherwise an empty string
- summary: A concise summary of this part (2-3 sentences)
- keyPoints: Array of up to 5 key points from this part

Focus the analysis on the topic: {topic}

IMPORTANT: Respond with valid JSON only, no additional text.

Content part {index}/{total}:
{chunk}"""


def _consolidation_prompt(partials: list[dict[str, Any]], topic: str) -> str:
    sections = []
    for idx, partial in enumerate(partials, start=1):
        points = "\n".join(f"  - {point}" for point in partial.get("keyPoints", []))
        sections.append(
            f"Part {idx}:\n  title: {partial.get('title', '')}\n  summary: {partial.get('summary', '')}\n"
            f"  keyPoints:\n{points}"
        )
    joined = "\n\n".join(sections)
    return f"""You are an expert content analyst. The analyses below cover consecutive parts of one document.
Merge them into a single JSON response with:
- title: A descriptive title for the whole document
- summary: A concise summary of the whole document (2-3 sentences)
- keyPoints: Array of 3-5 key points covering the whole document

Focus the analysis on the topic: {topic}

IMPORTANT: Respond with valid JSON only, no additional text.

Partial analyses:
{joined}"""


def _grounded_system_prompt(content: str, topic: str) -> str:
    return f"""You are an expert assistant in the field of {topic}. A user will ask questions based on the provided content. Your job is to:

1. Answer questions using ONLY the information from the provided content
2. Keep all responses relevant to the topic: {topic}
3. If the user asks something off-topic, gently redirect them back to the topic
4. If something is not in the content, explicitly say you don't have that information
5. Do not invent facts that are not mentioned in the content

Content:
{content}"""


def _open_discussion_system_prompt(topic: str) -> str:
    return f"""You are an expert assistant in the field of {topic}. There is no source document for this conversation; answer from your general knowledge. Your job is to:

1. Give accurate, well-explained answers about {topic}
2. Keep all responses relevant to the topic: {topic}
3. If the user asks something off-topic, gently redirect them back to the topic
4. Say so plainly when you are unsure instead of guessing"""


# ---------------------------------------------------------------------------
# Result interpretation
# ---------------------------------------------------------------------------

def _clean_points(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    points = []
    for item in value:
        text = str(item or "").strip()
        if text and text not in points:
            points.append(text)
    return points


def _interpret_analysis(raw: str) -> dict[str, Any]:
    """Parses an analysis reply, degrading to a labeled placeholder when it is not JSON."""
    try:
        payload = parse_json_object(raw)
    except MalformedModelOutputError:
        logger.warning("analysis_output_unparseable", chars=len(str(raw or "")))
        text = strip_code_fences(raw)
        return {
            "title": DEFAULT_TITLE,
            "summary": (text[:200] + "...") if len(text) > 200 else text,
            "keyPoints": list(DEGRADED_KEY_POINTS),
            "degraded": True,
        }
    return {
        "title": str(payload.get("title") or "").strip(),
        "summary": str(payload.get("summary") or "").strip(),
        "keyPoints": _clean_points(payload.get("keyPoints")),
        "degraded": False,
    }


def _merge_partials(partials: list[dict[str, Any]]) -> dict[str, Any]:
    title = next((p["title"] for p in partials if p.get("title") and p["title"] != DEFAULT_TITLE), "")
    summary = " ".join(p["summary"] for p in partials if p.get("summary") and not p.get("degraded"))
    points: list[str] = []
    for partial in partials:
        if partial.get("degraded"):
            continue
        for point in partial.get("keyPoints", []):
            if point not in points:
                points.append(point)
    return {"title": title, "summary": summary, "keyPoints": points[:MAX_KEY_POINTS]}


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

async def gather_in_order(awaitables: Iterable[Awaitable[Any]]) -> list[Any]:
    """
    Runs awaitables concurrently and returns results in submission order.
    The first failure cancels the siblings still running before it propagates.
    """
    tasks = [asyncio.ensure_future(awaitable) for awaitable in awaitables]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


async def _analyze_chunks(
    invoker: CompletionInvoker,
    chunks: list[str],
    topic: str,
    preferred_model: str | None,
    concurrency: int,
) -> list[dict[str, Any]]:
    semaphore = asyncio.Semaphore(max(1, int(concurrency)))
    total = len(chunks)

    async def _one(index: int, chunk: str) -> dict[str, Any]:
        async with semaphore:
            result = await invoker.invoke(
                [{"role": "user", "content": _chunk_analysis_prompt(chunk, topic, index, total)}],
                preferred_model,
            )
        return _interpret_analysis(result.text)

    return await gather_in_order(_one(idx, chunk) for idx, chunk in enumerate(chunks, start=1))


async def analyze_content(
    invoker: CompletionInvoker,
    content: str,
    topic: str,
    preferred_model: str | None = None,
    *,
    max_chunk_size: int = MAX_CHUNK_SIZE,
    overlap: int = CHUNK_OVERLAP,
    max_chunks: int = ANALYSIS_MAX_CHUNKS,
    concurrency: int = ANALYSIS_CONCURRENCY,
) -> ContentAnalysis:
    """Produces title, summary and key points for extracted content."""
    words = count_words(content)
    chunks = chunk_text(content, max_chunk_size, overlap)

    if len(chunks) == 1:
        result = await invoker.invoke(
            [{"role": "user", "content": _analysis_prompt(chunks[0], topic)}],
            preferred_model,
        )
        interpreted = _interpret_analysis(result.text)
        model_used = result.model_used
    else:
        selected = spread_evenly(chunks, max_chunks)
        logger.info("analysis_fan_out", chunks=len(chunks), analyzed=len(selected))
        partials = await _analyze_chunks(invoker, selected, topic, preferred_model, concurrency)
        result = await invoker.invoke(
            [{"role": "user", "content": _consolidation_prompt(partials, topic)}],
            preferred_model,
        )
        interpreted = _interpret_analysis(result.text)
        if interpreted.get("degraded"):
            merged = _merge_partials(partials)
            interpreted = {
                "title": merged["title"] or DEFAULT_TITLE,
                "summary": merged["summary"] or interpreted["summary"],
                "keyPoints": merged["keyPoints"] or list(DEGRADED_KEY_POINTS),
            }
        model_used = result.model_used

    return ContentAnalysis(
        title=interpreted.get("title") or DEFAULT_TITLE,
        summary=interpreted.get("summary", ""),
        key_points=list(interpreted.get("keyPoints") or [])[:MAX_KEY_POINTS],
        word_count=words,
        read_time=estimate_read_time(words),
        model_used=model_used,
    )


def topic_session_overview(topic: str, model_used: str) -> ContentAnalysis:
    """Canned analysis for topic-only sessions; no model call is made."""
    return ContentAnalysis(
        title=f"Discussion about {topic}",
        summary=f"Ready to discuss {topic}",
        key_points=[f"Open discussion about {topic}"],
        word_count=0,
        read_time=0,
        model_used=model_used,
    )


def _turn_field(turn: Any, name: str) -> Any:
    if isinstance(turn, dict):
        return turn.get(name)
    return getattr(turn, name, None)


def build_question_messages(
    question: str,
    content: str | None,
    topic: str,
    history: Sequence[Any] = (),
    *,
    max_chunk_size: int = MAX_CHUNK_SIZE,
    overlap: int = CHUNK_OVERLAP,
    max_chunks: int = RELEVANT_CHUNK_LIMIT,
    history_limit: int = CONVERSATION_HISTORY_LIMIT,
    scorer: RelevanceScorer | None = None,
) -> list[ChatMessage]:
    """
    Builds the chat payload for one question.
    `content=None` means an open discussion scoped to the topic.
    """
    if content is None:
        system_prompt = _open_discussion_system_prompt(topic)
    else:
        chunks = chunk_text(content, max_chunk_size, overlap)
        if len(chunks) > 1:
            chunks = select_relevant_chunks(question, chunks, max_chunks, scorer=scorer)
        system_prompt = _grounded_system_prompt(_CHUNK_SEPARATOR.join(chunks), topic)

    messages: list[ChatMessage] = [{"role": "system", "content": system_prompt}]
    recent = list(history)[-history_limit:] if history_limit > 0 else []
    for turn in recent:
        role = _turn_field(turn, "role")
        text = _turn_field(turn, "content")
        if role in {"user", "assistant"} and text:
            messages.append({"role": role, "content": str(text)})
    messages.append({"role": "user", "content": question})
    return messages


async def answer_question(
    invoker: CompletionInvoker,
    question: str,
    content: str | None,
    topic: str,
    history: Sequence[Any] = (),
    preferred_model: str | None = None,
    **options: Any,
) -> Answer:
    messages = build_question_messages(question, content, topic, history, **options)
    result = await invoker.invoke(messages, preferred_model)
    text = str(result.text or "").strip() or EMPTY_ANSWER
    return Answer(text=text, model_used=result.model_used)
