"""
Multiple-choice question generation.

Questions come back from the model as a JSON array; replies are cleaned up
tolerantly, normalized to exactly four options per question, and truncated to
the requested count. Unusable replies are replaced by a deterministic,
clearly flagged placeholder set instead of failing the request.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

from .analysis import CompletionInvoker, gather_in_order
from .chunking import chunk_text, spread_evenly
from .config import CHUNK_OVERLAP, MAX_CHUNK_SIZE, MCQ_MAX_CHUNKS
from .errors import MalformedModelOutputError
from .model_output import parse_json_array
from .observability import get_logger

logger = get_logger(__name__)

DIFFICULTY_LEVELS = ("easy", "medium", "hard")
OPTION_COUNT = 4
PLACEHOLDER_OPTIONS = ["Option A", "Option B", "Option C", "Option D"]
RULE = "=" * 50


@dataclass(frozen=True)
class MCQQuestion:
    question: str
    options: list[str]
    correct_answer: int
    explanation: str | None = None

    def __post_init__(self):
        if len(self.options) != OPTION_COUNT:
            raise ValueError(f"MCQ questions need exactly {OPTION_COUNT} options")
        if not 0 <= int(self.correct_answer) < OPTION_COUNT:
            raise ValueError(f"correct_answer out of range: {self.correct_answer}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "question": self.question,
            "options": list(self.options),
            "correctAnswer": self.correct_answer,
            "explanation": self.explanation,
        }


@dataclass(frozen=True)
class MCQRequest:
    topic: str
    number_of_questions: int
    difficulty_level: str = "medium"
    include_answers: bool = False
    content: str | None = None
    subtopic: str | None = None
    custom_header: str | None = None
    language: str = "english"
    preferred_model: str | None = None


@dataclass(frozen=True)
class MCQResult:
    questions: list[MCQQuestion]
    model_used: str
    requested_count: int
    fallback_used: bool = False
    warnings: list[str] = field(default_factory=list)
    # Models whose output made it into `questions`, in question order.
    models_used: list[str] = field(default_factory=list)

    @property
    def generated_count(self) -> int:
        return len(self.questions)


# ---------------------------------------------------------------------------
# Language instructions
# ---------------------------------------------------------------------------
# Languages the models tend to drift into English on get a stricter instruction.
_STRICT_LANGUAGES = {
    "spanish": "Español", "french": "Français", "german": "Deutsch", "italian": "Italiano",
    "portuguese": "Português", "russian": "Русский", "swedish": "Svenska", "norwegian": "Norsk",
    "danish": "Dansk", "finnish": "Suomi", "polish": "Polski", "greek": "Ελληνικά",
    "hebrew": "עברית", "thai": "ไทย", "vietnamese": "Tiếng Việt", "malay": "Bahasa Melayu",
    "indonesian": "Bahasa Indonesia", "filipino": "Tagalog", "romanian": "Română",
    "czech": "Čeština", "hungarian": "Magyar", "slovak": "Slovenčina", "bulgarian": "Български",
    "croatian": "Hrvatski", "serbian": "Српски", "slovenian": "Slovenščina",
    "ukrainian": "Українська", "latvian": "Latviešu", "lithuanian": "Lietuvių", "estonian": "Eesti",
}
_PLAIN_LANGUAGES = {
    "chinese": "中文", "japanese": "日本語", "korean": "한국어", "arabic": "العربية",
    "hindi": "हिन्दी", "bengali": "বাংলা", "urdu": "اردو", "turkish": "Türkçe", "dutch": "Nederlands",
}


def language_instructions(language: str | None) -> tuple[str, str]:
    """Returns (system, user) prompt instructions for the output language."""
    key = str(language or "english").strip().lower()
    if key in _STRICT_LANGUAGES:
        label = f"{key.capitalize()} ({_STRICT_LANGUAGES[key]})"
        return (
            f"You MUST generate all questions and answers in {label}. Do not use English.",
            f"CRITICAL: Generate ALL questions, options, and explanations in {label}. "
            f"Do not use any English words. The entire response must be in {key.capitalize()}.",
        )
    if key in _PLAIN_LANGUAGES:
        label = f"{key.capitalize()} ({_PLAIN_LANGUAGES[key]})"
        return (
            f"Generate all questions and answers in {label}.",
            f"Generate all questions, options, and explanations in {label}.",
        )
    return (
        "Generate all questions and answers in English.",
        "Generate all questions, options, and explanations in English.",
    )


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------
_JSON_SHAPE = """IMPORTANT: Respond with ONLY a valid JSON array. Do not include any markdown formatting, code blocks, or additional text. The response must be a valid JSON array that can be parsed directly.

Format your response as a JSON array of objects with this exact structure:
[
  {
    "question": "Question text",
    "options": ["Option A", "Option B", "Option C", "Option D"],
    "correctAnswer": 0,
    "explanation": "Brief explanation of why this is correct"
  }
]"""


def build_mcq_messages(request: MCQRequest, count: int, content: str | None) -> list[dict[str, str]]:
    system_lang, user_lang = language_instructions(request.language)
    difficulty = request.difficulty_level
    header = f"Custom Header: {request.custom_header}\n\n" if request.custom_header else ""
    focus = f' focusing on "{request.subtopic}"' if request.subtopic else ""

    if not content or not content.strip():
        system_prompt = (
            f"You are an expert educator specializing in creating multiple choice questions about "
            f"{request.topic}. Generate {count} high-quality MCQ questions at {difficulty} difficulty level. "
            f"{system_lang}"
        )
        user_prompt = f"""LANGUAGE REQUIREMENT: {user_lang}

Create {count} multiple choice questions about "{request.topic}"{focus} at {difficulty} difficulty level.

Requirements:
1. Each question should have 4 options (A, B, C, D)
2. Only one correct answer per question
3. Include brief explanations for correct answers
4. Questions should be at {difficulty} difficulty level
5. Cover different aspects of the topic
6. Avoid ambiguous or trick questions

{header}{_JSON_SHAPE}

Generate exactly {count} questions. Return only the JSON array, nothing else."""
    else:
        system_prompt = (
            f"You are an expert educator creating multiple choice questions based on provided content about "
            f"{request.topic}. Generate {count} high-quality MCQ questions at {difficulty} difficulty level "
            f"using ONLY information from the provided content. {system_lang}"
        )
        user_prompt = f"""LANGUAGE REQUIREMENT: {user_lang}

Based on the following content about "{request.topic}"{focus}, create {count} multiple choice questions at {difficulty} difficulty level.

Requirements:
1. Each question should have 4 options (A, B, C, D)
2. Only one correct answer per question
3. Include brief explanations for correct answers
4. Questions should be at {difficulty} difficulty level
5. Use ONLY information from the provided content
6. Cover different aspects mentioned in the content
7. Avoid ambiguous or trick questions

{header}Content:
{content}

{_JSON_SHAPE}

Generate exactly {count} questions based on the content. Return only the JSON array, nothing else."""

    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]


# ---------------------------------------------------------------------------
# Parsing & normalization
# ---------------------------------------------------------------------------

def normalize_question(raw: Any, index: int) -> MCQQuestion:
    item = raw if isinstance(raw, dict) else {}
    question = str(item.get("question") or "").strip() or f"Question {index + 1}"

    options = item.get("options")
    if isinstance(options, list) and len(options) == OPTION_COUNT:
        options = [str(option) for option in options]
    else:
        options = list(PLACEHOLDER_OPTIONS)

    answer = item.get("correctAnswer")
    if isinstance(answer, bool) or not isinstance(answer, int) or not 0 <= answer < OPTION_COUNT:
        answer = 0

    explanation = str(item.get("explanation") or "").strip() or "No explanation provided"
    return MCQQuestion(question=question, options=options, correct_answer=answer, explanation=explanation)


def parse_mcq_response(raw: str, requested: int) -> list[MCQQuestion]:
    """
    Parses and normalizes a reply, truncated to min(available, requested).
    Raises MalformedModelOutputError when no question array can be recovered.
    """
    items = parse_json_array(raw)
    if not items:
        raise MalformedModelOutputError("Model returned an empty question list", raw=raw)
    questions = [normalize_question(item, idx) for idx, item in enumerate(items)]
    return questions[: max(0, int(requested))]


# ---------------------------------------------------------------------------
# Placeholders
# ---------------------------------------------------------------------------
_PLACEHOLDER_BANK: dict[str, list[tuple[str, list[str], str]]] = {
    "science": [
        (
            "What is the scientific method?",
            [
                "A systematic approach to understanding the natural world through observation and experimentation",
                "A way to memorize scientific facts",
                "A method for writing scientific papers",
                "A technique for drawing scientific diagrams",
            ],
            "The scientific method is a systematic approach involving observation, hypothesis formation, "
            "experimentation, and analysis.",
        ),
        (
            "What is photosynthesis?",
            [
                "The process by which plants convert sunlight into energy",
                "The process by which animals digest food",
                "The process by which rocks are formed",
                "The process by which water evaporates",
            ],
            "Photosynthesis is the process by which plants use sunlight, carbon dioxide, and water to produce "
            "glucose and oxygen.",
        ),
    ],
    "technology": [
        (
            "What is artificial intelligence?",
            [
                "Computer systems that can perform tasks requiring human intelligence",
                "A type of computer hardware",
                "A programming language",
                "A method for storing data",
            ],
            "AI refers to computer systems that can perform tasks that typically require human intelligence.",
        ),
        (
            "What is cloud computing?",
            [
                "Delivering computing services over the internet",
                "Computing in cloudy weather",
                "A type of computer monitor",
                "A method for cooling computers",
            ],
            "Cloud computing delivers computing services including servers, storage, databases, and software "
            "over the internet.",
        ),
    ],
    "business": [
        (
            "What is a business plan?",
            [
                "A written document describing a business's goals and strategies",
                "A list of business contacts",
                "A schedule of business meetings",
                "A collection of business cards",
            ],
            "A business plan is a formal written document containing business goals and the methods to "
            "achieve them.",
        ),
        (
            "What is market research?",
            [
                "The process of gathering information about customers and markets",
                "The process of setting prices",
                "The process of hiring employees",
                "The process of manufacturing products",
            ],
            "Market research involves gathering information about customers, competitors, and market conditions.",
        ),
    ],
    "health": [
        (
            "What is a balanced diet?",
            [
                "A diet that includes all essential nutrients in proper proportions",
                "A diet that only includes vegetables",
                "A diet that excludes all fats",
                "A diet that only includes protein",
            ],
            "A balanced diet provides all essential nutrients including carbohydrates, proteins, fats, "
            "vitamins, and minerals.",
        ),
        (
            "What is cardiovascular exercise?",
            [
                "Exercise that strengthens the heart and improves circulation",
                "Exercise that only uses the arms",
                "Exercise that only uses the legs",
                "Exercise that only uses the core muscles",
            ],
            "Cardiovascular exercise increases heart rate and improves the efficiency of the cardiovascular "
            "system.",
        ),
    ],
    "education": [
        (
            "What is active learning?",
            [
                "Learning through participation and engagement",
                "Learning while sleeping",
                "Learning only from books",
                "Learning without any interaction",
            ],
            "Active learning involves students participating in the learning process through discussion, "
            "problem-solving, and hands-on activities.",
        ),
        (
            "What is formative assessment?",
            [
                "Assessment used to monitor student learning during instruction",
                "Assessment used only at the end of a course",
                "Assessment used to grade final exams",
                "Assessment used to rank students",
            ],
            "Formative assessment provides ongoing feedback to improve teaching and learning during the "
            "instructional process.",
        ),
    ],
}


def _generic_placeholders(topic: str) -> list[tuple[str, list[str], str]]:
    return [
        (
            f"What is the main focus of {topic}?",
            [
                f"Understanding and applying principles of {topic}",
                f"Memorizing facts about {topic}",
                f"Avoiding {topic} concepts",
                f"Simplifying {topic} to basic terms",
            ],
            f"The main focus of {topic} involves understanding its core principles and applications.",
        ),
        (
            f"Which of the following is most important in {topic}?",
            [
                "Understanding fundamental concepts",
                "Memorizing technical terms",
                "Avoiding complex topics",
                "Focusing only on practical applications",
            ],
            f"Understanding fundamental concepts is crucial for mastering {topic}.",
        ),
    ]


def placeholder_questions(topic: str, requested: int) -> list[MCQQuestion]:
    """Deterministic stand-in questions used when the model reply cannot be parsed."""
    bank = _PLACEHOLDER_BANK.get(str(topic or "").strip().lower()) or _generic_placeholders(topic)
    return [
        MCQQuestion(question=q, options=list(opts), correct_answer=0, explanation=f"[Placeholder] {why}")
        for q, opts, why in bank[: max(0, int(requested))]
    ]


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

def _distribute(total: int, parts: int) -> list[int]:
    base, extra = divmod(int(total), int(parts))
    return [base + (1 if idx < extra else 0) for idx in range(parts)]


async def _generate_part(
    invoker: CompletionInvoker,
    request: MCQRequest,
    count: int,
    content: str | None,
) -> tuple[list[MCQQuestion] | None, str]:
    result = await invoker.invoke(build_mcq_messages(request, count, content), request.preferred_model)
    try:
        return parse_mcq_response(result.text, count), result.model_used
    except MalformedModelOutputError as exc:
        logger.warning("mcq_output_unparseable", model=result.model_used, error=exc.message, chars=len(exc.raw))
        return None, result.model_used


async def generate_mcqs(
    invoker: CompletionInvoker,
    request: MCQRequest,
    *,
    max_chunk_size: int = MAX_CHUNK_SIZE,
    overlap: int = CHUNK_OVERLAP,
    max_chunks: int = MCQ_MAX_CHUNKS,
) -> MCQResult:
    requested = int(request.number_of_questions)
    content = request.content if request.content and request.content.strip() else None

    if content is None:
        parts: list[tuple[int, str | None]] = [(requested, None)]
    else:
        chunks = chunk_text(content, max_chunk_size, overlap)
        selected = spread_evenly(chunks, min(max_chunks, requested))
        parts = [
            (count, chunk)
            for count, chunk in zip(_distribute(requested, len(selected)), selected)
            if count > 0
        ]

    if len(parts) > 1:
        logger.info("mcq_fan_out", parts=len(parts), requested=requested)
    outcomes = await gather_in_order(
        _generate_part(invoker, request, count, chunk) for count, chunk in parts
    )

    produced: list[tuple[MCQQuestion, str]] = []
    unparseable = 0
    for parsed, model in outcomes:
        if parsed is None:
            unparseable += 1
            continue
        produced.extend((question, model) for question in parsed)

    if not produced:
        return MCQResult(
            questions=placeholder_questions(request.topic, requested),
            model_used=outcomes[0][1],
            requested_count=requested,
            fallback_used=True,
            warnings=["Model output could not be parsed; placeholder questions returned."],
        )

    produced = produced[:requested]
    questions = [question for question, _ in produced]
    models_used = list(dict.fromkeys(model for _, model in produced))
    warnings = []
    if unparseable:
        warnings.append(f"{unparseable} of {len(parts)} generation parts returned unparseable output.")
    if len(questions) < requested:
        warnings.append(f"Generated {len(questions)} of {requested} requested questions.")
    return MCQResult(
        questions=questions,
        model_used=models_used[0],
        requested_count=requested,
        warnings=warnings,
        models_used=models_used,
    )


def format_mcqs_for_display(
    questions: Sequence[MCQQuestion],
    include_answers: bool = False,
    custom_header: str | None = None,
) -> str:
    lines: list[str] = []
    if custom_header:
        lines += [custom_header, ""]
    lines += ["Multiple Choice Questions", RULE, ""]

    for index, question in enumerate(questions, start=1):
        lines += [f"{index}. {question.question}", ""]
        for opt_index, option in enumerate(question.options):
            lines.append(f"   {chr(65 + opt_index)}) {option}")
        lines.append("")

    if include_answers:
        lines += ["", RULE, "ANSWER KEY", RULE, ""]
        for index, question in enumerate(questions, start=1):
            letter = chr(65 + question.correct_answer)
            lines.append(f"{index}. {letter}) {question.options[question.correct_answer]}")
            if question.explanation:
                lines.append(f"   Explanation: {question.explanation}")
            lines.append("")

    return "\n".join(lines) + "\n"
