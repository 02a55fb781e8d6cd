"""Exceptions raised at the ingestion, chunking, generation and session-import seams."""


class ApexRagError(Exception):
    """Base class for application errors."""


class UnsupportedFormatError(ApexRagError):
    """The file extension has no text extractor."""

    def __init__(self, extension: str):
        self.extension = extension
        super().__init__(f"Format [{extension}] is not supported")


class InvalidConfigurationError(ApexRagError):
    """Chunking parameters cannot produce a gap-free cover of the text."""


class ImportFailedError(ApexRagError):
    """A session import payload is malformed; nothing was applied."""


class GenerationError(ApexRagError):
    """The generation stream ended in a state that yields no answer."""
