"""
File Processor Service - plain-text extraction for knowledge base uploads
"""

import io
from pathlib import Path
from typing import Any, Dict

import docx
import PyPDF2

from app.errors import ValidationError
from app.logger import get_logger

# Postgres text columns reject NUL; very large documents are truncated
MAX_TEXT_CHARS = 500_000


class FileProcessorService:
    """Extracts text from uploaded fitness documents (PDF, Word, plain text)"""

    def __init__(self):
        self.supported_formats = {".pdf", ".txt", ".md", ".docx"}
        self.logger = get_logger("file_processor")

    def is_supported(self, filename: str) -> bool:
        return Path(filename).suffix.lower() in self.supported_formats

    def parse(self, buffer: bytes, filename: str) -> Dict[str, Any]:
        """Return {"text", "pages", "format"} for the uploaded bytes"""
        suffix = Path(filename).suffix.lower()
        if suffix not in self.supported_formats:
            raise ValidationError(f"Unsupported file type: {suffix or 'unknown'}")
        if not buffer:
            raise ValidationError("Uploaded file is empty")

        if suffix == ".pdf":
            text, pages = self._read_pdf(buffer)
        elif suffix == ".docx":
            text, pages = self._read_word_doc(buffer), None
        else:
            text, pages = self._read_text(buffer), None

        text = self._clean(text)
        if not text:
            raise ValidationError("No text could be extracted from the file")

        self.logger.info(
            "Extracted document text",
            extra={"file_name": filename, "chars": len(text), "pages": pages or "-"},
        )
        return {"text": text, "pages": pages, "format": suffix.lstrip(".")}

    def _read_pdf(self, buffer: bytes):
        try:
            reader = PyPDF2.PdfReader(io.BytesIO(buffer))
            text = "\n".join((page.extract_text() or "") for page in reader.pages)
        except PyPDF2.errors.PdfReadError as exc:
            raise ValidationError(f"Could not read PDF: {exc}") from exc
        return text, len(reader.pages)

    def _read_word_doc(self, buffer: bytes) -> str:
        try:
            document = docx.Document(io.BytesIO(buffer))
        except Exception as exc:
            # python-docx raises zipfile/KeyError/ValueError for corrupt files
            raise ValidationError(f"Could not read Word document: {exc}") from exc
        return "\n".join(paragraph.text for paragraph in document.paragraphs)

    def _read_text(self, buffer: bytes) -> str:
        try:
            return buffer.decode("utf-8")
        except UnicodeDecodeError:
            return buffer.decode("utf-8", errors="ignore")

    def _clean(self, text: str) -> str:
        text = text.replace("\x00", "").strip()
        if len(text) > MAX_TEXT_CHARS:
            text = text[:MAX_TEXT_CHARS]
        return text
