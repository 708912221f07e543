"""
Model-fallback invoker for the OpenAI-compatible completion endpoint.

Each call walks an ordered candidate list (preferred model first, then the
configured priority order) and returns the first non-empty completion together
with the model that produced it. Per-model failures are logged and skipped;
only a fully exhausted list is reported as an error.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .config import (
    COMPLETION_APP_TITLE,
    COMPLETION_APP_URL,
    COMPLETION_BASE_URL,
    COMPLETION_MAX_TOKENS,
    COMPLETION_TEMPERATURE,
    LLM_REQUEST_TIMEOUT_S,
    ModelCredential,
)
from .errors import AllModelsExhaustedError, ConfigurationError, ContentQueryError
from .metrics import MetricsCollector, metrics_collector
from .observability import get_logger

logger = get_logger(__name__)

ChatMessage = dict[str, str]
ChatModelFactory = Callable[[ModelCredential], Any]

_MESSAGE_TYPES = {
    "system": SystemMessage,
    "user": HumanMessage,
    "assistant": AIMessage,
}


@dataclass(frozen=True)
class InvocationResult:
    text: str
    model_used: str


@dataclass(frozen=True)
class InvocationFailure:
    attempts: tuple[tuple[str, str], ...]

    def to_error(self) -> AllModelsExhaustedError:
        return AllModelsExhaustedError(list(self.attempts))


def to_langchain_messages(messages: Sequence[ChatMessage]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for message in messages:
        role = str(message.get("role", "")).strip().lower()
        message_type = _MESSAGE_TYPES.get(role)
        if message_type is None:
            raise ValueError(f"Unsupported message role: {role!r}")
        converted.append(message_type(content=str(message.get("content", ""))))
    return converted


def _reply_text(reply: Any) -> str:
    content = getattr(reply, "content", reply)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    return str(content or "")


def _describe_failure(exc: BaseException, timeout_s: float) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return f"timed out after {timeout_s:g}s"
    if isinstance(exc, ContentQueryError):
        return f"{type(exc).__name__}: {exc.message}"
    status = getattr(exc, "status_code", None)
    if status is not None:
        return f"HTTP {status}: {exc}"
    return f"{type(exc).__name__}: {exc}"


class ModelFallbackInvoker:
    """Stateless per call; holds only configuration and cached chat clients."""

    def __init__(
        self,
        credentials: Sequence[ModelCredential],
        *,
        base_url: str = COMPLETION_BASE_URL,
        temperature: float = COMPLETION_TEMPERATURE,
        max_tokens: int = COMPLETION_MAX_TOKENS,
        timeout_s: float = LLM_REQUEST_TIMEOUT_S,
        chat_model_factory: ChatModelFactory | None = None,
        metrics: MetricsCollector | None = None,
    ):
        if not credentials:
            raise ConfigurationError("ModelFallbackInvoker requires at least one model credential")
        self._credentials = {cred.model_id: cred for cred in credentials}
        self._default_order = list(self._credentials)
        self._base_url = base_url
        self._temperature = float(temperature)
        self._max_tokens = int(max_tokens)
        self._timeout_s = float(timeout_s)
        self._chat_model_factory = chat_model_factory or self._build_chat_model
        self._chat_models: dict[str, Any] = {}
        self._metrics = metrics or metrics_collector

    @property
    def models(self) -> list[str]:
        return list(self._default_order)

    def candidate_order(self, preferred_model: str | None = None) -> list[str]:
        preferred = str(preferred_model or "").strip()
        if not preferred:
            return list(self._default_order)
        if preferred not in self._credentials:
            # Unconfigured ids come from request bodies; never try or count them.
            logger.warning("preferred_model_unconfigured", model=preferred[:100])
            return list(self._default_order)
        return [preferred] + [model for model in self._default_order if model != preferred]

    def _build_chat_model(self, credential: ModelCredential) -> ChatOpenAI:
        return ChatOpenAI(
            model=credential.model_id,
            api_key=credential.api_key,
            base_url=self._base_url,
            temperature=self._temperature,
            max_tokens=self._max_tokens,
            timeout=self._timeout_s,
            max_retries=0,
            default_headers={
                "HTTP-Referer": COMPLETION_APP_URL,
                "X-Title": COMPLETION_APP_TITLE,
            },
        )

    def _chat_model_for(self, model_id: str):
        cached = self._chat_models.get(model_id)
        if cached is not None:
            return cached
        credential = self._credentials.get(model_id)
        if credential is None:
            raise ConfigurationError(f"No credential configured for model {model_id}")
        chat_model = self._chat_model_factory(credential)
        self._chat_models[model_id] = chat_model
        return chat_model

    async def _complete(self, model_id: str, messages: list[BaseMessage]) -> str:
        chat_model = self._chat_model_for(model_id)
        reply = await asyncio.wait_for(chat_model.ainvoke(messages), timeout=self._timeout_s)
        text = _reply_text(reply).strip()
        if not text:
            raise ValueError("empty completion")
        return text

    async def attempt(
        self,
        messages: Sequence[ChatMessage],
        preferred_model: str | None = None,
    ) -> InvocationResult | InvocationFailure:
        """Tries each candidate in order; never raises for per-model failures."""
        lc_messages = to_langchain_messages(messages)
        attempts: list[tuple[str, str]] = []
        for position, model_id in enumerate(self.candidate_order(preferred_model)):
            try:
                text = await self._complete(model_id, lc_messages)
            except Exception as exc:
                reason = _describe_failure(exc, self._timeout_s)
                attempts.append((model_id, reason))
                self._metrics.record_model_attempt(model_id, success=False)
                logger.warning("model_attempt_failed", model=model_id, position=position, error=reason)
                continue

            self._metrics.record_model_attempt(model_id, success=True)
            if position > 0:
                self._metrics.record_fallback()
            logger.info("model_attempt_succeeded", model=model_id, position=position, chars=len(text))
            return InvocationResult(text=text, model_used=model_id)

        logger.error("all_models_failed", attempts=[model for model, _ in attempts])
        return InvocationFailure(attempts=tuple(attempts))

    async def invoke(
        self,
        messages: Sequence[ChatMessage],
        preferred_model: str | None = None,
    ) -> InvocationResult:
        outcome = await self.attempt(messages, preferred_model)
        if isinstance(outcome, InvocationFailure):
            raise outcome.to_error()
        return outcome
