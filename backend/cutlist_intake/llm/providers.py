"""
Provider contract and the ordered provider chain.

The orchestrator only ever talks to ExtractionProvider:

    response = await provider.extract(payload, prompt=None)
    response.items               # best-effort parsed item dicts (wire shape)
    response.raw_response_text   # what the model actually returned
    response.tokens_used         # TokenUsage | None

ChatModelProvider adapts any langchain-core BaseChatModel (ChatOpenAI,
AzureChatOpenAI, ChatBedrock, fakes in tests) to that contract.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence, runtime_checkable

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from cutlist_intake.core.exceptions import ConfigurationError, ContentFilterError
from cutlist_intake.llm.prompts import EXTRACTION_PROMPT, EXTRACTION_SYSTEM_PROMPT
from cutlist_intake.processing.parsing import extract_item_dicts, parse_response_json
from cutlist_intake.schemas.extraction import InputKind

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Payload / response
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExtractionPayload:
    """
    content:   base64 image data (kind=IMAGE) or plain text (PDF text layer, pasted text)
    mime_type: only meaningful for images
    """
    content:   str
    kind:      InputKind = InputKind.IMAGE
    mime_type: str = "image/jpeg"

    @property
    def size_bytes(self) -> int:
        if self.kind == InputKind.IMAGE:
            return len(self.content) * 3 // 4
        return len(self.content.encode("utf-8"))


@dataclass
class TokenUsage:
    input_tokens:  int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class ProviderResponse:
    items:             list[dict[str, Any]] = field(default_factory=list)
    raw_response_text: str = ""
    tokens_used:       TokenUsage | None = None


@runtime_checkable
class ExtractionProvider(Protocol):
    async def extract(
        self, payload: ExtractionPayload, prompt: str | None = None
    ) -> ProviderResponse: ...


# ---------------------------------------------------------------------------
# LangChain adapter
# ---------------------------------------------------------------------------

_REFUSAL_MARKERS = (
    "i'm sorry",
    "i am sorry",
    "i can't assist",
    "i cannot assist",
    "i can't help with",
    "unable to process this image",
)


def _flatten_content(content: Any) -> str:
    """AIMessage.content is either a string or a list of content blocks."""
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(str(block.get("text", "")))
    return "".join(parts)


def _looks_like_refusal(text: str) -> bool:
    head = text.strip()[:200].lower()
    if head.startswith(("[", "{", "```")):
        return False
    return any(marker in head for marker in _REFUSAL_MARKERS)


class ChatModelProvider:
    """
    Usage::

        provider = ChatModelProvider(ChatOpenAI(model="gpt-4o"), name="openai")
        response = await provider.extract(ExtractionPayload(b64, InputKind.IMAGE, "image/png"))

    A `prompt` passed to extract() replaces the default instruction; the
    system message stays the same.
    """

    def __init__(
        self,
        llm: BaseChatModel,
        name: str = "provider",
        default_prompt: str = EXTRACTION_PROMPT,
        system_prompt: str = EXTRACTION_SYSTEM_PROMPT,
    ) -> None:
        self._llm = llm
        self.name = name
        self._default_prompt = default_prompt
        self._system_prompt = system_prompt

    def build_messages(self, payload: ExtractionPayload, prompt: str | None = None) -> list:
        instruction = prompt or self._default_prompt
        if payload.kind == InputKind.IMAGE:
            human = HumanMessage(content=[
                {"type": "text", "text": instruction},
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{payload.mime_type};base64,{payload.content}"},
                },
            ])
        else:
            human = HumanMessage(content=f"{instruction}\n\n--- DOCUMENT ---\n{payload.content}")
        return [SystemMessage(content=self._system_prompt), human]

    async def extract(
        self, payload: ExtractionPayload, prompt: str | None = None
    ) -> ProviderResponse:
        message = await self._llm.ainvoke(self.build_messages(payload, prompt))
        text = _flatten_content(message.content)

        if _looks_like_refusal(text):
            raise ContentFilterError(f"{self.name} refused the input: {text[:120]}", provider=self.name)

        usage = getattr(message, "usage_metadata", None) or {}
        tokens = None
        if usage:
            tokens = TokenUsage(
                input_tokens=int(usage.get("input_tokens", 0)),
                output_tokens=int(usage.get("output_tokens", 0)),
            )

        items: list[dict[str, Any]] = []
        parsed = parse_response_json(text)
        if parsed is not None:
            items = extract_item_dicts(parsed) or []

        logger.debug(
            "ChatModelProvider | provider=%s chars=%d items=%d tokens=%s",
            self.name, len(text), len(items), tokens.total_tokens if tokens else None,
        )
        return ProviderResponse(items=items, raw_response_text=text, tokens_used=tokens)


# ---------------------------------------------------------------------------
# Chain
# ---------------------------------------------------------------------------

@dataclass
class ProviderHandle:
    name:   str
    client: ExtractionProvider
    model:  str | None = None


class ProviderChain:
    """
    Ordered `[preferred, fallback, ...]` provider policy.

    The configured order is the default; a caller-preferred provider is moved
    to the front. With fallback disabled only the head of the chain is used.
    """

    def __init__(self, handles: Sequence[ProviderHandle]) -> None:
        if not handles:
            raise ConfigurationError("Provider chain needs at least one provider")
        self._handles = list(handles)

    @property
    def names(self) -> list[str]:
        return [h.name for h in self._handles]

    @property
    def primary(self) -> ProviderHandle:
        return self._handles[0]

    def get(self, name: str) -> ProviderHandle:
        for handle in self._handles:
            if handle.name == name:
                return handle
        raise ConfigurationError(f"Unknown provider '{name}'. Configured: {self.names}")

    def ordered(self, preferred: str | None = None, enable_fallback: bool = True) -> list[ProviderHandle]:
        handles = list(self._handles)
        if preferred:
            head = self.get(preferred)
            handles = [head] + [h for h in handles if h is not head]
        return handles if enable_fallback else handles[:1]
