"""RAG pipeline for document ingestion and question answering.

This module provides the IngestionPipeline and QueryPipeline classes
that wire the chunker, index, scorer, prompt assembler and streaming
aggregator together.
"""

import logging
from typing import Callable, Iterable, Iterator, Optional, Protocol, Sequence, Tuple

from apexrag.config import Settings
from apexrag.models import Answer, ConversationTurn, Fragment, GenerationRequest
from apexrag.rag.bm25_store import BM25Store
from apexrag.rag.chunker import split_text
from apexrag.rag.extractor import extract_text
from apexrag.rag.generator import GeneratorClient
from apexrag.rag.index import FragmentIndex
from apexrag.rag.metadata import collect_citations, parse_reasoning
from apexrag.rag.prompt import PromptAssembler
from apexrag.rag.streaming import CancellationToken, StreamAggregator

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]


class TextStream(Protocol):
    def stream(self, request: GenerationRequest) -> Iterable[str]: ...


class IngestionPipeline:
    """Pipeline for extracting, chunking and indexing documents.

    Every ingestion replaces the whole corpus. Documents are chunked one
    after another and the finished corpus is published in a single swap.
    """

    def __init__(self, settings: Settings, index: FragmentIndex) -> None:
        """Initialize ingestion pipeline.

        Args:
            settings: Application settings.
            index: Index that receives the fragments.
        """
        self.settings = settings.validate()
        self.index = index

    def _notify(self, progress: Optional[ProgressCallback], done: int, total: int, source: str) -> None:
        if progress is None:
            return
        try:
            progress(done, total, source)
        except Exception as e:
            logger.warning(f"Progress callback failed for {source}: {e}")

    def ingest_texts(
        self,
        documents: Sequence[Tuple[str, str]],
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Replace the corpus with the given documents.

        Args:
            documents: ``(raw_text, source_name)`` pairs.
            progress: Called with ``(done, total, source_name)`` after each
                document is chunked. The index still holds the previous
                corpus at that point.

        Returns:
            Total number of fragments indexed.
        """
        corpus: list[Fragment] = []
        for done, (text, source) in enumerate(documents, start=1):
            fragments = split_text(
                text,
                source,
                chunk_size=self.settings.chunk_size,
                overlap=self.settings.chunk_overlap,
                document_index=done - 1,
            )
            corpus.extend(fragments)
            logger.info(f"Chunked {len(fragments)} fragments from {source}")
            self._notify(progress, done, len(documents), source)

        # Queries keep reading the old corpus until this single swap.
        total = self.index.replace(corpus)

        stats = self.index.stats()
        logger.info(
            f"Index ready: {stats.count} fragments from "
            f"{stats.distinct_source_count} sources, avg {stats.average_text_length} chars"
        )
        return total

    def ingest_files(
        self,
        files: Sequence[Tuple[str, bytes]],
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Extract and index uploaded files, replacing the corpus.

        Args:
            files: ``(filename, content)`` pairs.
            progress: See :meth:`ingest_texts`.

        Returns:
            Total number of fragments indexed.

        Raises:
            UnsupportedFormatError: If any file has an unsupported extension.
                Raised before the index is touched.
        """
        documents = [(extract_text(name, data), name) for name, data in files]
        return self.ingest_texts(documents, progress)


class QueryPipeline:
    """Pipeline for answering questions from the indexed corpus.

    Handles retrieval, grounded prompt assembly, streamed generation and
    answer post-processing.
    """

    def __init__(
        self,
        settings: Settings,
        index: FragmentIndex,
        generator: Optional[TextStream] = None,
    ) -> None:
        """Initialize query pipeline.

        Args:
            settings: Application settings.
            index: Index to retrieve from.
            generator: Streaming text source. Defaults to the watsonx.ai client.
        """
        self.settings = settings
        self.store = BM25Store(index)
        self.assembler = PromptAssembler(
            history_window=settings.history_window,
            max_new_tokens=settings.max_new_tokens,
        )
        self.gen = generator if generator is not None else GeneratorClient(settings)

    def _fragments(self, request: GenerationRequest) -> Iterator[str]:
        # Defers the call so connection errors surface inside the aggregator.
        yield from self.gen.stream(request)

    def retrieve(self, question: str) -> list[Fragment]:
        return self.store.retrieve(question, top_k=self.settings.top_k)

    def answer(
        self,
        question: str,
        history: Sequence[ConversationTurn] = (),
        use_search: Optional[bool] = None,
        strict_mode: Optional[bool] = None,
        on_update: Optional[Callable[[str], None]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Answer:
        """Answer a question grounded in the retrieved fragments.

        Args:
            question: User question.
            history: Previous turns, newest last.
            use_search: Override the configured web search flag.
            strict_mode: Override the configured strict mode flag.
            on_update: Receives the whole partial answer after each fragment.
            cancel_token: Stops streaming early; the partial answer is kept.

        Returns:
            Answer with prose, transparency fields, citations and the
            ranked fragments it was grounded on.
        """
        if use_search is None:
            use_search = self.settings.use_search
        if strict_mode is None:
            strict_mode = self.settings.strict_mode

        ranked = self.store.rank(question, top_k=self.settings.top_k)
        fragments = [hit.fragment for hit in ranked]
        citations = collect_citations(fragments)
        request = self.assembler.build_request(
            question,
            fragments,
            history=history,
            use_search=use_search,
            strict_mode=strict_mode,
        )

        aggregator = StreamAggregator(on_update=on_update)
        answer = aggregator.consume(self._fragments(request), cancel_token=cancel_token)

        parsed = parse_reasoning(answer.text)
        return answer.model_copy(
            update={
                "prose": parsed.prose,
                "fields": parsed.fields,
                "citations": citations,
                "retrieved": ranked,
            }
        )
