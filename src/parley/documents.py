"""
Document ingestion: extract text from an uploaded file and attach it to a
conversation session so later turns can answer questions about it.

Supports .txt/.md natively, .pdf via PyPDF2 and .docx via python-docx.
"""
from __future__ import annotations

import os
import zipfile
from io import BytesIO
from typing import Iterable, Optional

import docx
import PyPDF2
from docx.opc.exceptions import PackageNotFoundError
from PyPDF2.errors import PdfReadError

from .error_handler import ValidationError
from .logging_utils import setup_logger
from .session_store import DocumentAttachment, SessionStore
from .validation import InputValidator, get_validator

logger = setup_logger("parley.documents", "logs/parley.log")


def extract_pdf_text(data: bytes) -> str:
    reader = PyPDF2.PdfReader(BytesIO(data))
    return "\n".join(page.extract_text() or "" for page in reader.pages).strip()


def extract_docx_text(data: bytes) -> str:
    document = docx.Document(BytesIO(data))
    return "\n".join(p.text for p in document.paragraphs if p.text).strip()


def extract_plain_text(data: bytes) -> str:
    try:
        return data.decode("utf-8").strip()
    except UnicodeDecodeError:
        return data.decode("latin-1", errors="ignore").strip()


_EXTRACTORS = {
    ".pdf": extract_pdf_text,
    ".docx": extract_docx_text,
    ".txt": extract_plain_text,
    ".md": extract_plain_text,
}


class DocumentIngestor:
    def __init__(self, store: SessionStore, max_bytes: int = 10 * 1024 * 1024,
                 allowed_extensions: Optional[Iterable[str]] = None,
                 validator: Optional[InputValidator] = None):
        self.store = store
        self.max_bytes = max_bytes
        self.allowed_extensions = {e.lower() for e in (allowed_extensions or _EXTRACTORS.keys())}
        self.validator = validator or get_validator()

    def ingest(self, session_token: Optional[str], file_bytes: bytes, filename: str) -> DocumentAttachment:
        """Extract text and attach it to the session.

        Raises ValidationError with a `reason` code for every rejection.
        """
        token = self.validator.validate_session_token(session_token)
        filename = self.validator.validate_filename(filename or "")
        ext = os.path.splitext(filename)[1].lower()
        if ext not in self.allowed_extensions or ext not in _EXTRACTORS:
            allowed = ", ".join(sorted(self.allowed_extensions & set(_EXTRACTORS)))
            raise ValidationError(f"Unsupported file type '{ext or filename}'. Supported: {allowed}",
                                  reason="unsupported_type", component="documents", operation="ingest")
        self.validator.validate_upload_size(len(file_bytes or b""), self.max_bytes)

        try:
            content = _EXTRACTORS[ext](file_bytes)
        except (PdfReadError, PackageNotFoundError, zipfile.BadZipFile, ValueError, KeyError, OSError) as e:
            logger.error(f"Could not read {filename}: {e}")
            raise ValidationError(f"Could not read {filename}", reason="unreadable_document",
                                  component="documents", operation="ingest") from e

        if content:
            # extracted text ends up in prompts, so strip markup and control characters
            content = self.validator.validate_text_input(content, max_length=len(content))
        if not content:
            raise ValidationError(f"{filename} contains no extractable text", reason="empty_document",
                                  component="documents", operation="ingest")

        attachment = self.store.attach_document(token, filename, content, len(file_bytes))
        logger.info(f"Ingested {filename} for {token}: {len(content)} chars from {len(file_bytes)} bytes")
        return attachment


def ingestor_from_config(store: SessionStore) -> DocumentIngestor:
    from . import config as CFG

    return DocumentIngestor(store, max_bytes=CFG.get_document_max_bytes(),
                            allowed_extensions=CFG.get_document_allowed_extensions())
