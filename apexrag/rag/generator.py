import json
import logging
from typing import Callable, Iterator, Optional

from ibm_watsonx_ai import APIClient, Credentials
from ibm_watsonx_ai.foundation_models import ModelInference
from ibm_watsonx_ai.foundation_models.utils import Toolkit

from apexrag.config import Settings
from apexrag.errors import GenerationError
from apexrag.models import GenerationRequest

logger = logging.getLogger(__name__)

ROLE_MAP = {"user": "user", "model": "assistant"}
WEB_SEARCH_TOOL_NAME = "web_search"
SEARCH_MAX_RESULTS = 3

SearchFn = Callable[[str], str]


class WebSearch:
    """Runs queries through the watsonx.ai GoogleSearch utility tool."""

    def __init__(self, api_client: APIClient, max_results: int = SEARCH_MAX_RESULTS):
        self.tool = Toolkit(api_client=api_client).get_tool(tool_name="GoogleSearch")
        self.max_results = max_results

    def __call__(self, query: str) -> str:
        result = self.tool.run(input=query, config={"maxResults": self.max_results})
        output = result.get("output", result) if isinstance(result, dict) else result
        if isinstance(output, str):
            return output
        return json.dumps(output, default=str)


class GeneratorClient:
    def __init__(self, settings: Settings, search: Optional[SearchFn] = None):
        self.settings = settings
        self.credentials = Credentials(
            api_key=settings.ibm_cloud_api_key,
            url=f"https://{settings.watsonx_region}.ml.cloud.ibm.com",
        )
        self.client = ModelInference(
            model_id=settings.watsonx_gen_model,
            project_id=settings.watsonx_project_id,
            credentials=self.credentials,
        )
        self._search = search

    @property
    def search(self) -> SearchFn:
        if self._search is None:
            api_client = APIClient(
                credentials=self.credentials, project_id=self.settings.watsonx_project_id
            )
            self._search = WebSearch(api_client)
        return self._search

    def build_messages(self, request: GenerationRequest) -> list[dict]:
        """Render the request as chat messages, system instruction first."""
        messages = [{"role": "system", "content": request.system_instruction}]
        for turn in request.turns:
            messages.append({"role": ROLE_MAP[turn.role], "content": turn.text})
        return messages

    def build_params(self, request: GenerationRequest) -> dict:
        # The chat API has no top_k; it only applies to text generation.
        sampling = request.sampling
        return {
            "temperature": float(sampling.temperature),
            "top_p": float(sampling.top_p),
            "max_tokens": sampling.max_new_tokens,
        }

    def _stream_round(self, messages: list[dict], params: dict, tools: Optional[list[dict]]):
        """Yield delta texts of one chat round and return its tool calls."""
        calls: dict[int, dict] = {}
        finish_reason = None
        chunks = self.client.chat_stream(messages=messages, params=params, tools=tools)
        for chunk in chunks:
            choices = chunk.get("choices") or []
            if not choices:
                continue
            choice = choices[0]
            finish_reason = choice.get("finish_reason") or finish_reason
            delta = choice.get("delta") or {}
            for call in delta.get("tool_calls") or []:
                # Tool calls arrive in pieces keyed by index.
                slot = calls.setdefault(
                    call.get("index", 0),
                    {"id": "", "type": "function", "function": {"name": "", "arguments": ""}},
                )
                if call.get("id"):
                    slot["id"] = call["id"]
                function = call.get("function") or {}
                slot["function"]["name"] += function.get("name") or ""
                slot["function"]["arguments"] += function.get("arguments") or ""
            content = delta.get("content")
            if content:
                yield content
        if finish_reason == "tool_calls" and not calls:
            raise GenerationError("Model stopped for a tool call but sent none")
        return [calls[i] for i in sorted(calls)]

    def run_tool_call(self, call: dict) -> str:
        """Execute one requested tool call and return its result text."""
        name = call["function"]["name"]
        if name != WEB_SEARCH_TOOL_NAME:
            raise GenerationError(f"Model requested unknown tool: {name}")
        try:
            arguments = json.loads(call["function"]["arguments"] or "{}")
        except json.JSONDecodeError as e:
            raise GenerationError(f"Malformed {name} arguments: {e}") from e
        query = arguments.get("query") if isinstance(arguments, dict) else None
        if not query:
            raise GenerationError(f"{name} call without a query")
        logger.info(f"Running web search: {query}")
        return self.search(query)

    def stream(self, request: GenerationRequest) -> Iterator[str]:
        """Yield answer text fragments in order until the stream ends.

        When the model calls the web search tool, the search runs and its
        results are sent back as ``tool`` messages; the answer is then
        streamed from a second round without tools.

        Errors from the service propagate to the consumer, which turns them
        into a failed answer.
        """
        messages = self.build_messages(request)
        params = self.build_params(request)
        logger.info(
            f"Streaming {self.settings.watsonx_gen_model} with {len(messages)} messages, "
            f"tools={[t['function']['name'] for t in request.tools]}"
        )
        calls = yield from self._stream_round(messages, params, request.tools or None)
        if not calls:
            return

        messages.append({"role": "assistant", "tool_calls": calls})
        for call in calls:
            messages.append(
                {"role": "tool", "tool_call_id": call["id"], "content": self.run_tool_call(call)}
            )
        # One tool round only; the follow-up must answer.
        calls = yield from self._stream_round(messages, params, None)
        if calls:
            raise GenerationError("Model requested another tool call after search results")
