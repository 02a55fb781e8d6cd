"""Grounded prompt assembly.

Builds the system instruction, the ordered turns and the sampling
configuration for one answer from retrieval results and mode flags.
"""

from typing import List, Sequence

from apexrag.models import (
    ConversationTurn,
    Fragment,
    GenerationRequest,
    RequestTurn,
    SamplingConfig,
)

METADATA_DELIMITER = "---REASONING_METADATA---"
CONTEXT_SEPARATOR = "\n\n---\n\n"
NO_CONTEXT_SENTINEL = "No relevant internal data streams found."
NOT_FOUND_PHRASE = "I couldn't find this information in the provided data."

STRICT_TEMPERATURE = 0.0
HYBRID_TEMPERATURE = 0.6
TOP_P = 0.9
TOP_K = 40
HISTORY_WINDOW = 6

WEB_SEARCH_TOOL = {
    "type": "function",
    "function": {
        "name": "web_search",
        "description": "Search the public web for information missing from the provided context.",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query."}
            },
            "required": ["query"],
        },
    },
}

STRICT_GUARDRAIL = (
    "STRICT MODE ACTIVE.\n"
    "- Use ONLY the provided CONTEXT.\n"
    f'- If unsure, say "{NOT_FOUND_PHRASE}"'
)

HYBRID_GUARDRAIL = (
    "HYBRID MODE. Supplement CONTEXT with general knowledge if necessary, "
    "but label it clearly."
)

SYSTEM_TEMPLATE = """[PROTOCOL: MODALITY CLASSIFIER]
Identify the modality of the provided CONTEXT (text, pdf, image, table, code, mixed).

[PROTOCOL: MULTI-SOURCE REASONING]
Synthesize all data points within the CONTEXT. Cross-reference information to find patterns.

[PROTOCOL: HALLUCINATION GUARDRAIL]
{guardrail}

[PROTOCOL: EXPLAINABILITY & TRANSPARENCY]
Every response MUST conclude with a structured "Transparency Block" starting with the delimiter "{delimiter}".
Within this block, provide exactly these three fields:
1. SOURCES USED: List filenames of the chunks you actually used to formulate the answer.
2. REASONING PATH: A 1-sentence summary of how you connected the sources to the user's query.
3. CONFIDENCE LEVEL: State "High", "Medium", or "Low" based on the clarity and relevance of the context.

CONTEXT DATA STREAM:
{context}"""


def build_context(fragments: Sequence[Fragment]) -> str:
    """Join fragments into the context block, or return the no-data sentinel."""
    if not fragments:
        return NO_CONTEXT_SENTINEL
    return CONTEXT_SEPARATOR.join(
        f"[SOURCE: {f.source}]\n{f.text}" for f in fragments
    )


def build_system_instruction(context: str, strict_mode: bool) -> str:
    guardrail = STRICT_GUARDRAIL if strict_mode else HYBRID_GUARDRAIL
    return SYSTEM_TEMPLATE.format(
        guardrail=guardrail, delimiter=METADATA_DELIMITER, context=context
    )


class PromptAssembler:
    """Turns a question, ranked fragments and history into a generation request."""

    def __init__(self, history_window: int = HISTORY_WINDOW, max_new_tokens: int = 2048):
        self.history_window = history_window
        self.max_new_tokens = max_new_tokens

    def sampling_config(self, strict_mode: bool) -> SamplingConfig:
        return SamplingConfig(
            temperature=STRICT_TEMPERATURE if strict_mode else HYBRID_TEMPERATURE,
            top_p=TOP_P,
            top_k=TOP_K,
            max_new_tokens=self.max_new_tokens,
        )

    def map_history(self, history: Sequence[ConversationTurn]) -> List[RequestTurn]:
        """Map the trailing history window to the user/model vocabulary."""
        window = list(history)[-self.history_window :] if self.history_window > 0 else []
        return [
            RequestTurn(role="user" if turn.role == "user" else "model", text=turn.text)
            for turn in window
        ]

    def build_request(
        self,
        question: str,
        fragments: Sequence[Fragment],
        history: Sequence[ConversationTurn] = (),
        use_search: bool = False,
        strict_mode: bool = True,
    ) -> GenerationRequest:
        """Assemble the grounded request for one answer.

        Args:
            question: New user question.
            fragments: Ranked fragments, best first.
            history: Previous turns, newest last. Only the trailing window is sent.
            use_search: Ask for the web search tool.
            strict_mode: Answer only from the context. Disables web search.

        Returns:
            GenerationRequest ready for the generation client.
        """
        context = build_context(fragments)
        turns = self.map_history(history)
        turns.append(RequestTurn(role="user", text=question))

        # Web search is never offered in strict mode.
        tools = [WEB_SEARCH_TOOL] if use_search and not strict_mode else []

        return GenerationRequest(
            system_instruction=build_system_instruction(context, strict_mode),
            turns=turns,
            sampling=self.sampling_config(strict_mode),
            tools=tools,
        )
