"""Text extraction for uploaded lesson materials."""

import io
import logging
import os
from typing import Optional

import pdfplumber
from docx import Document

logger = logging.getLogger(__name__)

PDF = "pdf"
WORD = "word"
TEXT = "text"
UNSUPPORTED = "unsupported"

WORD_MIME_TYPES = (
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
)


def get_file_type(file_name: str, mime_type: Optional[str] = None) -> str:
    """Classify a file by MIME type, falling back to its extension."""
    if mime_type == "application/pdf":
        return PDF
    if mime_type in WORD_MIME_TYPES:
        return WORD
    if mime_type == "text/plain":
        return TEXT

    extension = os.path.splitext(file_name or "")[1].lower()
    if extension == ".pdf":
        return PDF
    if extension in (".doc", ".docx"):
        return WORD
    if extension in (".txt", ".md"):
        return TEXT
    return UNSUPPORTED


def extract_text_from_pdf(data: bytes) -> str:
    pages = []
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        for page in pdf.pages:
            text = page.extract_text()
            if text:
                pages.append(text)
    return "\n\n".join(pages)


def extract_text_from_word(data: bytes) -> str:
    document = Document(io.BytesIO(data))
    return "\n\n".join(p.text for p in document.paragraphs if p.text.strip())


def extract_text_from_txt(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def extract_text(data: bytes, file_name: str, mime_type: Optional[str] = None) -> str:
    """
    Extract plain text from an uploaded file.

    Returns "" for unsupported types or unreadable files; the material is
    still saved, it just has no text to summarize.
    """
    file_type = get_file_type(file_name, mime_type)
    extractors = {
        PDF: extract_text_from_pdf,
        WORD: extract_text_from_word,
        TEXT: extract_text_from_txt,
    }
    extractor = extractors.get(file_type)
    if extractor is None:
        logger.warning(f"⚠️ Unsupported file type for {file_name} ({mime_type})")
        return ""
    try:
        text = extractor(data)
    except Exception as e:
        logger.error(f"❌ Could not extract text from {file_name}: {e}")
        return ""
    logger.info(f"📄 Extracted {len(text)} characters from {file_name}")
    return text
