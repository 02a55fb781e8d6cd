"""Streaming answer aggregation.

Consumes text fragments from the generation stream one at a time and
republishes the whole accumulated answer after each fragment.
"""

import logging
import threading
from typing import Callable, Iterable, Optional

from apexrag.models import Answer

logger = logging.getLogger(__name__)


class CancellationToken:
    """Flag checked by the aggregator before each fragment."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class StreamAggregator:
    """Accumulates a streamed answer and exposes its partial state.

    Args:
        on_update: Called with the entire accumulated text after every
            non-empty fragment. Observers overwrite, never append.
    """

    def __init__(self, on_update: Optional[Callable[[str], None]] = None):
        self.on_update = on_update
        self.text = ""

    def _publish(self) -> None:
        if self.on_update is not None:
            self.on_update(self.text)

    def consume(
        self,
        fragments: Iterable[Optional[str]],
        cancel_token: Optional[CancellationToken] = None,
    ) -> Answer:
        """Consume the stream until it ends, fails or is cancelled.

        Stream failures do not propagate: they end the answer with the
        partial text kept and ``error`` set.

        Args:
            fragments: Ordered text fragments from the generation source.
            cancel_token: Optional token that stops consumption early.

        Returns:
            Answer holding the final (or last partial) text.
        """
        self.text = ""
        iterator = iter(fragments)
        while True:
            if cancel_token is not None and cancel_token.cancelled:
                logger.info(f"Stream cancelled after {len(self.text)} characters")
                return Answer(text=self.text, cancelled=True)
            try:
                fragment = next(iterator)
            except StopIteration:
                break
            except Exception as e:
                logger.error(f"Generation stream failed: {e}")
                return Answer(text=self.text, error=f"Generation failed: {e}")
            if not fragment:
                continue
            self.text += fragment
            self._publish()
        return Answer(text=self.text)
