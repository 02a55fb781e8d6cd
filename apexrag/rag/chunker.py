"""Text chunking utilities.

This module provides the sliding-window splitter that turns extracted
document text into fragments.
"""

from typing import List, Optional

from apexrag.errors import InvalidConfigurationError
from apexrag.models import Fragment, FragmentOffsets


def split_text(
    text: str,
    source_name: str,
    chunk_size: int = 1000,
    overlap: int = 200,
    document_index: Optional[int] = None,
) -> List[Fragment]:
    """Split text into overlapping fixed-size fragments.

    Fragment ids are built from ``(source_name, start, end)`` so that
    re-chunking the same input yields the same ids. When the document's
    position in an ingestion batch is given it leads the id, so two
    documents sharing a name still get distinct ids.

    Args:
        text: Extracted document text.
        source_name: Name of the originating document.
        chunk_size: Maximum fragment length in characters.
        overlap: Characters shared by consecutive fragments.
        document_index: Position of the document in its ingestion batch.

    Returns:
        Fragments covering ``[0, len(text))`` in order. For non-empty text
        there are ``max(1, ceil((len(text) - overlap) / (chunk_size - overlap)))``
        of them.

    Raises:
        InvalidConfigurationError: If the window would not advance.
    """
    if chunk_size <= 0 or overlap < 0 or overlap >= chunk_size:
        raise InvalidConfigurationError(
            f"overlap ({overlap}) must be non-negative and smaller than "
            f"chunk_size ({chunk_size})"
        )

    prefix = "" if document_index is None else f"{document_index}-"
    step = chunk_size - overlap
    fragments: List[Fragment] = []
    start = 0
    while start < len(text):
        end = min(start + chunk_size, len(text))
        fragments.append(
            Fragment(
                id=f"{prefix}{source_name}-{start}-{end}",
                text=text[start:end],
                source=source_name,
                metadata=FragmentOffsets(start=start, end=end),
            )
        )
        if end == len(text):
            # Any further window would lie inside this one.
            break
        start += step
    return fragments
