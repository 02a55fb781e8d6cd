"""
Tests for the ingestion and query pipelines with a scripted generation source.
"""
from dataclasses import replace
from unittest.mock import patch

import pytest

from apexrag.errors import InvalidConfigurationError, UnsupportedFormatError
from apexrag.models import ConversationTurn
from apexrag.rag.generator import GeneratorClient
from apexrag.rag.index import FragmentIndex
from apexrag.rag.pipeline import IngestionPipeline, QueryPipeline
from apexrag.rag.prompt import NO_CONTEXT_SENTINEL, WEB_SEARCH_TOOL
from apexrag.rag.streaming import CancellationToken

BIOLOGY = ("Photosynthesis converts light energy into chemical energy. " * 25)[:1200]
CELLS = ("Ribosomes translate messenger RNA into polypeptide chains. " * 10)[:400]

SCRIPTED_ANSWER = [
    "Ribosomes build proteins ",
    "from messenger RNA.",
    "---REASONING_METADATA---\n",
    "SOURCES USED: cells.txt\n",
    "REASONING PATH: The cells document describes translation.\n",
    "CONFIDENCE LEVEL: High",
]


class ScriptedGenerator:
    def __init__(self, fragments=SCRIPTED_ANSWER, error=None):
        self.fragments = fragments
        self.error = error
        self.requests = []

    def stream(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        yield from self.fragments


@pytest.fixture
def index():
    return FragmentIndex()


class TestIngestionPipeline:
    """Tests for IngestionPipeline."""

    def test_ingest_texts_replaces_corpus_and_reports_progress(self, settings, index):
        """Each ingestion should reset the index and notify per document."""
        pipeline = IngestionPipeline(settings, index)
        progress = []
        pipeline.ingest_texts([("stale text", "old.txt")])

        count = pipeline.ingest_texts(
            [(BIOLOGY, "biology.txt"), (CELLS, "cells.txt")],
            progress=lambda done, total, source: progress.append((done, total, source)),
        )

        assert count == 3
        assert index.sources() == ["biology.txt", "cells.txt"]
        assert progress == [(1, 2, "biology.txt"), (2, 2, "cells.txt")]

    def test_failing_progress_callback_does_not_stop_ingestion(self, settings, index):
        """Progress notifications are side effects only."""
        def broken(done, total, source):
            raise RuntimeError("ui gone")

        count = IngestionPipeline(settings, index).ingest_texts(
            [(BIOLOGY, "biology.txt"), (CELLS, "cells.txt")], progress=broken
        )

        assert count == 3
        assert index.stats().distinct_source_count == 2

    def test_ingest_files_extracts_text(self, settings, index):
        """Files should go through the extractor before chunking."""
        IngestionPipeline(settings, index).ingest_files([("cells.txt", CELLS.encode("utf-8"))])

        assert index.stats().count == 1
        assert index.snapshot().fragments[0].text == CELLS

    def test_unsupported_file_leaves_index_intact(self, settings, index):
        """A bad file anywhere in the batch should fail before indexing."""
        pipeline = IngestionPipeline(settings, index)
        pipeline.ingest_texts([(CELLS, "cells.txt")])

        with pytest.raises(UnsupportedFormatError):
            pipeline.ingest_files([("ok.txt", b"fine"), ("scan.png", b"\x89PNG")])

        assert index.sources() == ["cells.txt"]

    def test_queries_see_old_corpus_until_ingestion_completes(self, settings, index):
        """Retrieval during a re-index should see the complete previous corpus."""
        ingestion = IngestionPipeline(settings, index)
        ingestion.ingest_texts([(CELLS, "cells.txt")])
        query = QueryPipeline(settings, index, generator=ScriptedGenerator())
        seen = []

        def on_progress(done, total, source):
            seen.append((done, [f.source for f in query.retrieve("ribosomes")]))

        ingestion.ingest_texts([(BIOLOGY, "biology.txt"), (CELLS, "cells.txt")], progress=on_progress)

        assert seen == [(1, ["cells.txt"]), (2, ["cells.txt"])]
        assert index.sources() == ["biology.txt", "cells.txt"]

    def test_same_named_files_get_distinct_ids(self, settings, index):
        """Two uploads sharing a name should not collide in one generation."""
        IngestionPipeline(settings, index).ingest_files(
            [("notes.txt", CELLS.encode("utf-8")), ("notes.txt", BIOLOGY.encode("utf-8"))]
        )

        ids = [f.id for f in index.snapshot().fragments]
        assert len(ids) == 3
        assert len(set(ids)) == len(ids)

    def test_invalid_chunk_settings_are_rejected(self, settings, index):
        """overlap >= chunk_size should be refused up front."""
        with pytest.raises(InvalidConfigurationError):
            IngestionPipeline(replace(settings, chunk_overlap=1000), index)


class TestQueryPipeline:
    """Tests for QueryPipeline.answer."""

    def _pipelines(self, settings, index, generator):
        IngestionPipeline(settings, index).ingest_texts([(BIOLOGY, "biology.txt"), (CELLS, "cells.txt")])
        return QueryPipeline(settings, index, generator=generator)

    def test_end_to_end_answer(self, settings, index):
        """Retrieval, streaming and parsing should produce a grounded answer."""
        generator = ScriptedGenerator()
        pipeline = self._pipelines(settings, index, generator)
        updates = []

        answer = pipeline.answer("How do ribosomes work?", on_update=updates.append)

        assert answer.citations == ["cells.txt"]
        assert answer.prose == "Ribosomes build proteins from messenger RNA."
        assert answer.fields["CONFIDENCE LEVEL"] == "High"
        assert answer.fields["SOURCES USED"] == "cells.txt"
        assert updates[-1] == answer.text
        assert len(updates) == len(SCRIPTED_ANSWER)

        request = generator.requests[0]
        assert "[SOURCE: cells.txt]" in request.system_instruction
        assert "[SOURCE: biology.txt]" not in request.system_instruction
        assert request.sampling.temperature == 0.0

    def test_retrieve_respects_top_k(self, settings, index):
        """Retrieval should be bounded by the configured top_k."""
        pipeline = self._pipelines(settings, index, ScriptedGenerator())
        pipeline.settings = replace(settings, top_k=1)

        assert len(pipeline.retrieve("energy light chemical")) == 1

    def test_no_matches_uses_sentinel_and_no_citations(self, settings, index):
        """Without relevant fragments the context should say so."""
        generator = ScriptedGenerator(fragments=["Not found."])
        pipeline = self._pipelines(settings, index, generator)

        answer = pipeline.answer("quantum chromodynamics")

        assert answer.citations == []
        assert answer.fields is None
        assert answer.prose == "Not found."
        assert NO_CONTEXT_SENTINEL in generator.requests[0].system_instruction

    def test_history_and_mode_overrides(self, settings, index):
        """History and hybrid-mode search should reach the request."""
        generator = ScriptedGenerator()
        pipeline = self._pipelines(settings, index, generator)
        history = [
            ConversationTurn(role="user", text="Hello"),
            ConversationTurn(role="assistant", text="Hi there"),
        ]

        pipeline.answer("ribosomes?", history=history, use_search=True, strict_mode=False)

        request = generator.requests[0]
        assert [t.role for t in request.turns] == ["user", "model", "user"]
        assert request.tools == [WEB_SEARCH_TOOL]
        assert request.sampling.temperature == 0.6

    def test_generation_failure_is_reported_on_answer(self, settings, index):
        """A generator that fails on call should yield an error answer, not raise."""
        pipeline = self._pipelines(settings, index, ScriptedGenerator(error=ConnectionError("offline")))

        answer = pipeline.answer("ribosomes")

        assert answer.error == "Generation failed: offline"
        assert answer.text == ""
        assert answer.citations == ["cells.txt"]

    def test_cancellation_keeps_partial_answer(self, settings, index):
        """Stopping early should keep the text published so far."""
        token = CancellationToken()
        pipeline = self._pipelines(settings, index, ScriptedGenerator())

        def on_update(text):
            token.cancel()

        answer = pipeline.answer("ribosomes", on_update=on_update, cancel_token=token)

        assert answer.cancelled is True
        assert answer.text == SCRIPTED_ANSWER[0]
        assert answer.prose == SCRIPTED_ANSWER[0]

    def test_answer_carries_ranked_fragments(self, settings, index):
        """The fragments behind an answer should match what retrieve returns."""
        pipeline = self._pipelines(settings, index, ScriptedGenerator())

        answer = pipeline.answer("How do ribosomes work?")

        assert [hit.fragment for hit in answer.retrieved] == pipeline.retrieve("How do ribosomes work?")
        assert [hit.fragment.source for hit in answer.retrieved] == ["cells.txt"]
        assert all(hit.score > 0 for hit in answer.retrieved)


def _search_call_chunks():
    return [
        {"choices": [{"delta": {"tool_calls": [
            {"index": 0, "id": "call-1", "type": "function",
             "function": {"name": "web_search", "arguments": '{"query": "ribosome size"}'}}
        ]}, "finish_reason": "tool_calls"}]},
    ]


class TestQueryPipelineWebSearch:
    """Tests for hybrid-mode web search through the watsonx.ai client."""

    @pytest.fixture
    def chat_stream(self):
        with patch("apexrag.rag.generator.Credentials"), patch(
            "apexrag.rag.generator.ModelInference"
        ) as inference:
            yield inference.return_value.chat_stream

    def _pipeline(self, settings, index, search):
        IngestionPipeline(settings, index).ingest_texts([(CELLS, "cells.txt")])
        return QueryPipeline(settings, index, generator=GeneratorClient(settings, search=search))

    def test_search_call_is_answered(self, settings, index, chat_stream):
        """A tool-call-only first round should lead to a streamed answer."""
        chat_stream.side_effect = [
            iter(_search_call_chunks()),
            iter([{"choices": [{"delta": {"content": "About 20 nm across."}}]}]),
        ]
        pipeline = self._pipeline(settings, index, search=lambda query: "ribosomes are ~20 nm")

        answer = pipeline.answer("ribosomes size", use_search=True, strict_mode=False)

        assert answer.text == "About 20 nm across."
        assert answer.error is None
        assert chat_stream.call_args_list[1].kwargs["messages"][-1]["content"] == "ribosomes are ~20 nm"

    def test_failed_search_is_reported_on_answer(self, settings, index, chat_stream):
        """A search failure should end the answer with an error, not silently."""
        chat_stream.return_value = iter(_search_call_chunks())

        def search(query):
            raise RuntimeError("search quota exceeded")

        pipeline = self._pipeline(settings, index, search=search)

        answer = pipeline.answer("ribosomes size", use_search=True, strict_mode=False)

        assert answer.text == ""
        assert answer.error == "Generation failed: search quota exceeded"
        assert answer.cancelled is False
