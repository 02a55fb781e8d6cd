"""In-memory fragment index.

The index holds one generation of fragments at a time. Every write
builds a new immutable generation and swaps it in under a lock, so a
reader that took a snapshot keeps a consistent corpus while ingestion
rebuilds the index.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Iterable, List, Tuple

from apexrag.models import Fragment, IndexStats

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexGeneration:
    """Immutable fragment set with statistics derived from it."""

    fragments: Tuple[Fragment, ...] = ()
    average_text_length: float = 0.0
    sources: Tuple[str, ...] = field(default=())

    @classmethod
    def build(cls, fragments: Tuple[Fragment, ...]) -> "IndexGeneration":
        # Full recompute over every fragment: O(n) per add.
        if not fragments:
            return cls()
        total = sum(len(f.text) for f in fragments)
        sources = tuple(dict.fromkeys(f.source for f in fragments))
        return cls(
            fragments=fragments,
            average_text_length=total / len(fragments),
            sources=sources,
        )


class FragmentIndex:
    """Fragment store with corpus-level statistics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._generation = IndexGeneration()

    def add(self, fragments: Iterable[Fragment]) -> int:
        """Append fragments and recompute statistics over the whole corpus.

        Args:
            fragments: Fragments to append, in order.

        Returns:
            Number of fragments added.
        """
        new = tuple(fragments)
        with self._lock:
            combined = self._generation.fragments + new
            self._generation = IndexGeneration.build(combined)
        logger.debug(f"Added {len(new)} fragments, corpus size {len(combined)}")
        return len(new)

    def replace(self, fragments: Iterable[Fragment]) -> int:
        """Swap in a whole new corpus as one generation.

        Readers see either the previous corpus or the complete new one,
        never a partially rebuilt one.

        Args:
            fragments: Every fragment of the new corpus, in order.

        Returns:
            Number of fragments in the new corpus.
        """
        generation = IndexGeneration.build(tuple(fragments))
        with self._lock:
            self._generation = generation
        logger.debug(f"Replaced corpus with {len(generation.fragments)} fragments")
        return len(generation.fragments)

    def reset(self) -> None:
        """Discard all fragments and statistics."""
        with self._lock:
            self._generation = IndexGeneration()

    def snapshot(self) -> IndexGeneration:
        """Return the current generation for a consistent read."""
        return self._generation

    def stats(self) -> IndexStats:
        generation = self._generation
        return IndexStats(
            count=len(generation.fragments),
            average_text_length=round(generation.average_text_length),
            distinct_source_count=len(generation.sources),
        )

    def sources(self) -> List[str]:
        """Distinct source names in first-seen order."""
        return list(self._generation.sources)

    def __len__(self) -> int:
        return len(self._generation.fragments)
