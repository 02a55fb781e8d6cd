"""Data models for the RAG pipeline.

This module defines Pydantic models for fragments, retrieval results,
generation requests, answers and chat sessions.
"""

from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class FragmentOffsets(BaseModel):
    """Character offsets of a fragment within its source text.

    Attributes:
        start: Inclusive start offset.
        end: Exclusive end offset.
    """

    model_config = ConfigDict(frozen=True)

    start: int
    end: int


class Fragment(BaseModel):
    """Indexed slice of a document's text with source attribution.

    Attributes:
        id: Identifier, unique within an index generation.
        text: Fragment text content (non-empty).
        source: Name of the originating document.
        page_number: Page in the source document, when known.
        metadata: Offsets into the source text.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    text: str = Field(min_length=1)
    source: str
    page_number: int | None = None
    metadata: FragmentOffsets | None = None


class IndexStats(BaseModel):
    """Corpus statistics of the current index generation.

    Attributes:
        count: Number of fragments.
        average_text_length: Mean fragment length in characters, rounded.
        distinct_source_count: Number of distinct source documents.
    """

    count: int = 0
    average_text_length: int = 0
    distinct_source_count: int = 0


class RankedResult(BaseModel):
    """Fragment paired with its relevance score."""

    fragment: Fragment
    score: float


class ConversationTurn(BaseModel):
    """Single chat turn.

    Attributes:
        role: Either "user" or "assistant".
        text: Turn content. Older exports call this field "content".
        citations: Sources used to ground an assistant turn.
        error: Generation failure shown with an assistant turn, if any.
        timestamp: Creation time in milliseconds since the epoch.
    """

    role: Literal["user", "assistant"]
    text: str = Field(validation_alias=AliasChoices("text", "content"))
    citations: list[str] = Field(default_factory=list)
    error: str | None = None
    timestamp: int = 0


class ChatSession(BaseModel):
    """Stored conversation.

    Attributes:
        id: Session identifier.
        title: Display title.
        turns: Ordered turns, newest last.
        last_timestamp: Last update time in milliseconds since the epoch.
    """

    id: str
    title: str
    turns: list[ConversationTurn] = Field(
        default_factory=list, validation_alias=AliasChoices("turns", "messages")
    )
    last_timestamp: int = Field(
        default=0, validation_alias=AliasChoices("last_timestamp", "lastTimestamp")
    )


class RequestTurn(BaseModel):
    """Turn in the generation service's role vocabulary."""

    role: Literal["user", "model"]
    text: str


class SamplingConfig(BaseModel):
    """Sampling parameters sent with a generation request."""

    temperature: float
    top_p: float = 0.9
    top_k: int = 40
    max_new_tokens: int = 2048


class GenerationRequest(BaseModel):
    """Everything the generation service needs for one answer.

    Attributes:
        system_instruction: Grounding protocol including the context block.
        turns: History followed by the new user turn.
        sampling: Sampling configuration.
        tools: Optional tool definitions (web search in hybrid mode).
    """

    system_instruction: str
    turns: list[RequestTurn]
    sampling: SamplingConfig
    tools: list[dict] = Field(default_factory=list)


class Answer(BaseModel):
    """Completed (or interrupted) assistant answer.

    Attributes:
        text: Full accumulated text as streamed.
        prose: Answer text without the transparency block.
        fields: Transparency block fields, None if the delimiter was missing.
        citations: Distinct sources of the grounding context, in order.
        retrieved: Ranked fragments that grounded the answer, best first.
        error: Failure message when the stream broke off.
        cancelled: Whether consumption was stopped early.
    """

    text: str = ""
    prose: str = ""
    fields: dict[str, str] | None = None
    citations: list[str] = Field(default_factory=list)
    retrieved: list[RankedResult] = Field(default_factory=list)
    error: str | None = None
    cancelled: bool = False
