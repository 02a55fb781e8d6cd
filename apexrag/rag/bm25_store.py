import logging
import math
import re
from typing import List

from apexrag.models import Fragment, RankedResult
from apexrag.rag.index import FragmentIndex

logger = logging.getLogger(__name__)

K1 = 1.5
B = 0.75


def tokenize(query: str) -> List[str]:
    """Lowercase, split on non-word characters and drop tokens of 2 chars or less."""
    return [t for t in re.split(r"\W+", query.lower()) if len(t) > 2]


def count_occurrences(text: str, term: str) -> int:
    """Count substring occurrences of term, overlapping ones included."""
    count = 0
    pos = text.find(term)
    while pos != -1:
        count += 1
        pos = text.find(term, pos + 1)
    return count


class BM25Store:
    def __init__(self, index: FragmentIndex, k1: float = K1, b: float = B):
        """BM25-lite ranking over the fragments of an index.

        Term matching is substring based and document length is measured in
        characters, not tokens.
        """
        self.index = index
        self.k1 = k1
        self.b = b

    def rank(self, query: str, top_k: int = 4) -> List[RankedResult]:
        """Score every fragment and return the best positive ones, best first."""
        generation = self.index.snapshot()
        fragments = generation.fragments
        if not fragments or top_k <= 0:
            return []

        terms = tokenize(query)
        if not terms:
            return []

        avg_len = generation.average_text_length
        if avg_len == 0:
            return []

        texts = [f.text.lower() for f in fragments]
        n = len(texts)
        idf = {}
        for term in set(terms):
            n_t = sum(1 for text in texts if term in text)
            idf[term] = math.log((n - n_t + 0.5) / (n_t + 0.5) + 1)

        scored = []
        for position, (fragment, text) in enumerate(zip(fragments, texts)):
            norm = self.k1 * (1 - self.b + self.b * (len(text) / avg_len))
            score = 0.0
            for term in terms:
                tf = count_occurrences(text, term)
                if tf:
                    score += idf[term] * (tf * (self.k1 + 1)) / (tf + norm)
            if score > 0:
                scored.append((score, position, fragment))

        # Ties keep insertion order.
        scored.sort(key=lambda item: (-item[0], item[1]))
        hits = [
            RankedResult(fragment=fragment, score=score)
            for score, _, fragment in scored[:top_k]
        ]
        logger.info(f"BM25 retrieved {len(hits)} of {n} fragments for query")
        return hits

    def retrieve(self, query: str, top_k: int = 4) -> List[Fragment]:
        """Return at most top_k fragments relevant to query, best first."""
        return [hit.fragment for hit in self.rank(query, top_k)]
