"""Text extraction for uploaded documents.

Each supported extension maps to a function turning the raw file bytes
into readable text. Unsupported extensions fail before anything is
indexed.
"""

import io
import json
import logging
from pathlib import PurePath

from bs4 import BeautifulSoup
from docx import Document
from pypdf import PdfReader

from apexrag.errors import UnsupportedFormatError

logger = logging.getLogger(__name__)

PLAIN_TEXT_EXTENSIONS = {"txt", "md", "yaml", "yml", "xml"}
SUPPORTED_EXTENSIONS = PLAIN_TEXT_EXTENSIONS | {"csv", "json", "pdf", "docx", "html", "htm"}


def _decode(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def extension_of(filename: str) -> str:
    return PurePath(filename).suffix.lstrip(".").lower()


def extract_pdf(data: bytes) -> str:
    reader = PdfReader(io.BytesIO(data))
    pages = [page.extract_text() or "" for page in reader.pages]
    return "\n".join(" ".join(p.split()) for p in pages)


def extract_docx(data: bytes) -> str:
    doc = Document(io.BytesIO(data))
    return "\n".join(para.text for para in doc.paragraphs)


def extract_html(data: bytes) -> str:
    soup = BeautifulSoup(_decode(data), "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    body = soup.body or soup
    return body.get_text()


def extract_json(filename: str, data: bytes) -> str:
    text = _decode(data)
    try:
        obj = json.loads(text)
    except json.JSONDecodeError:
        logger.warning(f"{filename} is not valid JSON, indexing raw text")
        return text
    return f"JSON Structure ({filename}):\n{json.dumps(obj, indent=2)}"


def extract_text(filename: str, data: bytes) -> str:
    """Extract readable text from a file.

    Args:
        filename: Original file name; its extension selects the extractor.
        data: Raw file content.

    Returns:
        Extracted text.

    Raises:
        UnsupportedFormatError: If the extension is not supported.
    """
    ext = extension_of(filename)
    if ext not in SUPPORTED_EXTENSIONS:
        raise UnsupportedFormatError(ext)

    if ext in PLAIN_TEXT_EXTENSIONS:
        return _decode(data)
    if ext == "csv":
        return f"CSV Data ({filename}):\n{_decode(data)}"
    if ext == "json":
        return extract_json(filename, data)
    if ext == "pdf":
        return extract_pdf(data)
    if ext == "docx":
        return extract_docx(data)
    return extract_html(data)
