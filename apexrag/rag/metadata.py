"""Answer post-processing.

Transparency block parsing, citation tracking and query-term highlighting
of retrieved fragments.
"""

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from apexrag.models import Fragment
from apexrag.rag.bm25_store import tokenize
from apexrag.rag.prompt import METADATA_DELIMITER

HIGHLIGHT_TEMPLATE = ":green-background[{}]"


@dataclass
class ParsedAnswer:
    prose: str
    fields: Optional[Dict[str, str]] = None


def parse_reasoning(full_text: str) -> ParsedAnswer:
    """Split an answer into prose and its transparency block fields.

    Without the delimiter the whole text is prose and ``fields`` is None.
    Block lines are split on their first colon; keys are uppercased, later
    duplicates win and lines without a colon are ignored.
    """
    if METADATA_DELIMITER not in full_text:
        return ParsedAnswer(prose=full_text)

    prose, raw_meta = full_text.split(METADATA_DELIMITER, 1)
    fields: Dict[str, str] = {}
    for line in raw_meta.split("\n"):
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        fields[key.strip().upper()] = value.strip()
    return ParsedAnswer(prose=prose.strip(), fields=fields)


def collect_citations(fragments: Iterable[Fragment]) -> List[str]:
    """Distinct fragment sources in order of first appearance."""
    return list(dict.fromkeys(f.source for f in fragments))


def highlight_terms(text: str, query: str, template: str = HIGHLIGHT_TEMPLATE) -> str:
    """Wrap every case-insensitive occurrence of a query term in ``template``.

    Terms come from the same tokenizer the scorer uses, so the marked
    spans are the substrings that contributed to the fragment's score.
    """
    terms = sorted(set(tokenize(query)), key=len, reverse=True)
    if not terms:
        return text
    pattern = re.compile("|".join(re.escape(t) for t in terms), re.IGNORECASE)
    return pattern.sub(lambda m: template.format(m.group(0)), text)
