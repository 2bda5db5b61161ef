"""
Selector-based HTML extraction.

Parses a page once with BeautifulSoup and applies a CSS selector per field.
A field with no match is recorded as empty (non-fatal); a selector the engine
cannot evaluate is a per-field parse error.
"""

import re
import time
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import soupsieve
from bs4 import BeautifulSoup, Tag

from ..utils.logging import get_logger
from .exceptions import ParsingError, ValidationError
from .models import (
    CustomTransform,
    DefaultExtract,
    ExtractionResult,
    ExtractionRule,
    FieldValue,
    MultiValueExtract,
)

logger = get_logger(__name__)

# Bare tag names (``div``, ``p``) and the universal selector match far too much.
_GENERIC_SELECTOR = re.compile(r"^\s*(\*|[a-zA-Z][a-zA-Z0-9-]*)\s*$")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_WHITESPACE = re.compile(r"\s+")


def clean_text(text: str) -> str:
    """
    Clean and normalize text content.

    Args:
        text: Raw text content

    Returns:
        Text with control characters removed and whitespace collapsed.
    """
    if not text:
        return ""
    text = _CONTROL_CHARS.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


def validate_selectors(selectors: Mapping[str, str]) -> Tuple[List[str], List[str]]:
    """
    Pre-validate selectors without touching any document.

    Returns:
        ``(invalid, warnings)``: fields whose selector does not compile, and
        human-readable warnings for invalid or too-generic selectors.
    """
    invalid: List[str] = []
    warnings: List[str] = []
    for field_name, selector in selectors.items():
        if not isinstance(selector, str) or not selector.strip():
            invalid.append(field_name)
            warnings.append(f"Invalid selector syntax for {field_name}: empty selector")
            continue
        try:
            soupsieve.compile(selector)
        except soupsieve.SelectorSyntaxError as e:
            invalid.append(field_name)
            warnings.append(f"Invalid selector syntax for {field_name}: {e}")
            continue
        if _GENERIC_SELECTOR.match(selector):
            warnings.append(f"Selector for {field_name} is too generic: '{selector.strip()}'")
    return invalid, warnings


class HtmlExtractor:
    """Extracts named fields from HTML with CSS selectors."""

    def __init__(self, parser: str = "lxml", validate_selectors: bool = True):
        self.parser = parser
        self.validate_selectors = validate_selectors

    def extract(
        self,
        html: str,
        selectors: Mapping[str, str],
        institution_rules: Optional[Mapping[str, ExtractionRule]] = None,
    ) -> ExtractionResult:
        """
        Extract one value per selector.

        Args:
            html: Raw HTML content
            selectors: Field name to CSS selector
            institution_rules: Per-field rule overriding the default
                "first match / list of matches" behaviour

        Returns:
            ExtractionResult. ``success`` is False if any selector failed or
            if every field came back empty.
        """
        started = time.perf_counter()
        institution_rules = institution_rules or {}
        result = ExtractionResult()
        counters = {
            "total_elements": 0,
            "successful_extractions": 0,
            "failed_extractions": 0,
        }

        try:
            if not isinstance(html, str) or not html.strip():
                result.errors.append(ValidationError("Invalid HTML input: expected a non-empty string"))
                return result
            if not selectors:
                result.errors.append(ValidationError("At least one selector must be specified"))
                return result

            if self.validate_selectors:
                invalid, warnings = validate_selectors(selectors)
                result.validation.invalid_selectors.extend(invalid)
                result.warnings.extend(ValidationError(message) for message in warnings)

            soup = BeautifulSoup(html, self.parser)
            result.metadata = self._page_metadata(soup)

            for field_name, selector in selectors.items():
                counters["total_elements"] += 1
                try:
                    elements = soup.select(selector)
                    if not elements:
                        result.validation.empty_results.append(field_name)
                        continue
                    result.fields[field_name] = self._apply_rule(
                        institution_rules.get(field_name, DefaultExtract()), elements
                    )
                    counters["successful_extractions"] += 1
                except Exception as e:
                    counters["failed_extractions"] += 1
                    if field_name not in result.validation.invalid_selectors:
                        result.validation.invalid_selectors.append(field_name)
                    result.errors.append(ParsingError(
                        f"Failed to extract {field_name}: {e}",
                        selector=selector,
                        field=field_name,
                    ))

            all_empty = len(result.validation.empty_results) == counters["total_elements"]
            result.success = counters["failed_extractions"] == 0 and not all_empty
        finally:
            total = counters["total_elements"]
            result.metrics = {
                "elapsed_ms": (time.perf_counter() - started) * 1000,
                "item_count": len(result.fields),
                **counters,
                "success_rate": (counters["successful_extractions"] / total * 100) if total else 0.0,
            }

        if result.validation.empty_results:
            logger.debug("Selectors matched nothing", fields=result.validation.empty_results)
        return result

    def _apply_rule(self, rule: ExtractionRule, elements: Sequence[Tag]) -> FieldValue:
        if isinstance(rule, CustomTransform):
            return rule.fn(elements)
        texts = [clean_text(element.get_text(" ")) for element in elements]
        if isinstance(rule, MultiValueExtract):
            return texts
        if isinstance(rule, DefaultExtract):
            return texts[0] if len(texts) == 1 else texts
        raise TypeError(f"Unsupported extraction rule: {rule!r}")

    def extract_metadata(self, html: str) -> Dict[str, str]:
        """Title and meta tags of a page."""
        return self._page_metadata(BeautifulSoup(html, self.parser))

    @staticmethod
    def _page_metadata(soup: BeautifulSoup) -> Dict[str, str]:
        metadata: Dict[str, str] = {}
        title_tag = soup.find("title")
        if title_tag:
            metadata["title"] = clean_text(title_tag.get_text())
        for meta in soup.find_all("meta"):
            name = meta.get("name") or meta.get("property")
            content = meta.get("content")
            if name and content:
                metadata[name] = clean_text(content)
        return metadata
