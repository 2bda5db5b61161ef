"""
PDF buffer extraction with security screening.

The size guard runs before the buffer is handed to the parser, and the
security screen runs before any page text is read.
"""

import io
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import psutil
from pypdf import PasswordType, PdfReader
from pypdf.errors import PyPdfError
from pypdf.generic import ArrayObject, DictionaryObject

from ..config import PdfConfig
from ..utils.logging import get_logger
from .exceptions import ParsingError, ScraperError, SecurityError, ValidationError
from .models import ExtractionResult

logger = get_logger(__name__)


@dataclass
class PdfExtractionOptions:
    """Per-call PDF limits and security policy."""

    extract_metadata: bool = True
    max_file_size: int = 50 * 1024 * 1024
    page_range: Optional[List[str]] = None
    max_pages: int = 1000
    allow_encrypted: bool = False
    allow_javascript: bool = False
    allow_external_links: bool = True
    password: Optional[str] = None

    @classmethod
    def from_config(cls, config: PdfConfig) -> "PdfExtractionOptions":
        return cls(
            extract_metadata=config.extract_metadata,
            max_file_size=config.max_file_size,
            page_range=list(config.page_range) if config.page_range else None,
            max_pages=config.max_pages,
            allow_encrypted=config.allow_encrypted,
            allow_javascript=config.allow_javascript,
            allow_external_links=config.allow_external_links,
        )


def parse_page_range(page_range: List[str], page_count: int) -> List[int]:
    """
    Turn ``["1-3", "5"]`` into sorted zero-based page indices.

    Pages outside the document are ignored.

    Raises:
        ValueError: If an entry is not a page number or a ``start-end`` range.
    """
    indices = set()
    for entry in page_range:
        entry = str(entry).strip()
        if "-" in entry:
            start_text, end_text = entry.split("-", 1)
            start, end = int(start_text), int(end_text)
        else:
            start = end = int(entry)
        if start < 1 or end < start:
            raise ValueError(f"Invalid page range: '{entry}'")
        indices.update(range(start - 1, min(end, page_count)))
    return sorted(indices)


def _resolve(obj: Any) -> Any:
    return obj.get_object() if obj is not None and hasattr(obj, "get_object") else obj


def _is_javascript_action(action: Any) -> bool:
    action = _resolve(action)
    if not isinstance(action, DictionaryObject):
        return False
    if "/JS" in action or action.get("/S") == "/JavaScript":
        return True
    return _is_javascript_action(action.get("/Next"))


def _has_javascript_in_actions(actions: Any) -> bool:
    """True if an additional-actions (/AA) dictionary holds any script."""
    actions = _resolve(actions)
    if not isinstance(actions, DictionaryObject):
        return False
    return any(_is_javascript_action(actions[trigger]) for trigger in actions)


def screen_document(reader: PdfReader) -> Tuple[bool, bool]:
    """
    Scan catalog, pages and annotations for scripts and external links.

    Returns:
        ``(has_javascript, has_external_links)``
    """
    has_javascript = False
    has_external_links = False

    catalog = _resolve(reader.trailer["/Root"])
    names = _resolve(catalog.get("/Names"))
    if isinstance(names, DictionaryObject) and "/JavaScript" in names:
        has_javascript = True
    if _is_javascript_action(catalog.get("/OpenAction")) or _has_javascript_in_actions(catalog.get("/AA")):
        has_javascript = True

    for page in reader.pages:
        if _has_javascript_in_actions(page.get("/AA")):
            has_javascript = True
        annotations = _resolve(page.get("/Annots"))
        if not isinstance(annotations, ArrayObject):
            continue
        for annotation in annotations:
            annotation = _resolve(annotation)
            if not isinstance(annotation, DictionaryObject):
                continue
            action = _resolve(annotation.get("/A"))
            if _is_javascript_action(action) or _has_javascript_in_actions(annotation.get("/AA")):
                has_javascript = True
            if isinstance(action, DictionaryObject) and (action.get("/S") == "/URI" or "/URI" in action):
                has_external_links = True
        if has_javascript and has_external_links:
            break

    return has_javascript, has_external_links


def _format_date(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class PdfExtractor:
    """Extracts text and document metadata from an in-memory PDF."""

    def __init__(self, options: Optional[PdfExtractionOptions] = None):
        self.options = options or PdfExtractionOptions()
        self._process = psutil.Process()

    def extract(self, buffer: bytes, options: Optional[PdfExtractionOptions] = None) -> ExtractionResult:
        """
        Extract text (and optionally metadata) from ``buffer``.

        Args:
            buffer: Raw PDF bytes
            options: Overrides the extractor's default options for this call

        Returns:
            ExtractionResult with ``fields["text"]``. Security violations and
            oversize buffers come back as blocking errors; a metadata failure
            is a warning and the extracted text is kept.
        """
        options = options or self.options
        result = ExtractionResult()
        started_at = datetime.now(timezone.utc)
        started = time.perf_counter()
        page_count = 0
        pages_processed = 0
        file_size = len(buffer) if isinstance(buffer, (bytes, bytearray, memoryview)) else 0

        try:
            if not isinstance(buffer, (bytes, bytearray, memoryview)):
                result.errors.append(ValidationError("Invalid PDF input: expected a bytes buffer"))
                return result
            if file_size == 0:
                result.errors.append(ValidationError("Invalid PDF input: empty buffer"))
                return result
            if file_size > options.max_file_size:
                result.errors.append(ValidationError(
                    f"PDF exceeds maximum file size: {file_size} > {options.max_file_size} bytes",
                    field="file_size",
                    value=file_size,
                ))
                return result

            try:
                reader = PdfReader(io.BytesIO(bytes(buffer)))
            except (PyPdfError, ValueError) as e:
                result.errors.append(ParsingError(f"Failed to open PDF: {e}"))
                return result

            security_error = self._screen(reader, options, result)
            if security_error is not None:
                result.errors.append(security_error)
                return result

            page_count = len(reader.pages)
            text, pages_processed = self._extract_text(reader, page_count, options, result)
            result.fields["text"] = text

            if options.extract_metadata:
                try:
                    result.metadata = self._extract_metadata(reader, page_count)
                except Exception as e:
                    logger.warning("PDF metadata extraction failed", error=str(e))
                    result.warnings.append(ParsingError(f"Failed to extract PDF metadata: {e}"))

            result.success = not result.errors
        finally:
            finished = time.perf_counter()
            processing_ms = (finished - started) * 1000
            result.metrics = {
                "start_time": started_at.isoformat(),
                "end_time": datetime.now(timezone.utc).isoformat(),
                "processing_time": processing_ms,
                "elapsed_ms": processing_ms,
                "page_count": page_count,
                "item_count": pages_processed,
                "file_size": file_size,
                "memory_usage": self._process.memory_info().rss,
            }

        return result

    def _screen(
        self, reader: PdfReader, options: PdfExtractionOptions, result: ExtractionResult
    ) -> Optional[ScraperError]:
        if reader.is_encrypted:
            result.validation.security_flags.append("encrypted")
            if not options.allow_encrypted:
                return SecurityError("PDF is encrypted and encrypted documents are not allowed")
            try:
                decrypted = reader.decrypt(options.password or "")
            except (PyPdfError, NotImplementedError) as e:
                return SecurityError(f"Failed to decrypt PDF: {e}")
            if decrypted == PasswordType.NOT_DECRYPTED:
                return SecurityError("PDF could not be decrypted with the supplied password")

        try:
            has_javascript, has_external_links = screen_document(reader)
        except (PyPdfError, KeyError, ValueError) as e:
            return ParsingError(f"Failed to inspect PDF structure: {e}")

        if has_javascript:
            result.validation.security_flags.append("javascript")
            if not options.allow_javascript:
                return SecurityError("PDF contains JavaScript and scripted documents are not allowed")
        if has_external_links:
            result.validation.security_flags.append("external_links")
            if not options.allow_external_links:
                result.warnings.append(SecurityError("PDF contains external links"))
        return None

    def _extract_text(
        self, reader: PdfReader, page_count: int, options: PdfExtractionOptions, result: ExtractionResult
    ) -> Tuple[str, int]:
        if options.page_range:
            try:
                indices = parse_page_range(options.page_range, page_count)
            except ValueError as e:
                result.errors.append(ValidationError(str(e), field="page_range", value=options.page_range))
                return "", 0
        else:
            indices = list(range(page_count))
        # Pages beyond the cap are skipped silently.
        indices = [index for index in indices if index < options.max_pages]

        chunks = []
        for index in indices:
            try:
                chunks.append(reader.pages[index].extract_text() or "")
            except Exception as e:
                result.errors.append(ParsingError(
                    f"Failed to extract text from page {index + 1}: {e}",
                    context={"page": index + 1},
                ))
        return "\n".join(chunks).strip(), len(indices)

    def _extract_metadata(self, reader: PdfReader, page_count: int) -> Dict[str, Any]:
        info = reader.metadata
        metadata: Dict[str, Any] = {
            "page_count": page_count,
            "pdf_version": reader.pdf_header.replace("%PDF-", ""),
            "is_encrypted": reader.is_encrypted,
        }
        if info is None:
            return metadata
        keywords = info.get("/Keywords")
        metadata.update({
            "title": info.title,
            "author": info.author,
            "subject": info.subject,
            "keywords": str(keywords) if keywords else None,
            "creation_date": _format_date(info.creation_date),
            "modification_date": _format_date(info.modification_date),
        })
        return metadata
