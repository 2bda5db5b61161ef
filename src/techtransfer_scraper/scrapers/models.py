"""
Data carried through a scrape: targets, extraction rules and results.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from bs4 import Tag

from ..types import EngineType, InstitutionClass
from .exceptions import ScraperError

FieldValue = Union[str, List[str]]


@dataclass(frozen=True)
class DefaultExtract:
    """First match as trimmed text; several matches as a list of trimmed texts."""


@dataclass(frozen=True)
class MultiValueExtract:
    """Always a list of trimmed texts, one per match."""


@dataclass(frozen=True)
class CustomTransform:
    """Institution-specific transform over the matched tags."""

    fn: Callable[[Sequence[Tag]], FieldValue]


ExtractionRule = Union[DefaultExtract, MultiValueExtract, CustomTransform]


@dataclass(frozen=True)
class ScrapeTarget:
    """One URL of one institution, with the selectors to apply. Immutable once dispatched."""

    url: str
    institution_key: str
    institution_class: InstitutionClass = InstitutionClass.DEFAULT
    selectors: Mapping[str, str] = field(default_factory=dict)
    engine_hint: EngineType = EngineType.STATIC
    field_rules: Mapping[str, ExtractionRule] = field(default_factory=dict)

    def __post_init__(self):
        if not self.url:
            raise ValueError("ScrapeTarget.url is required")
        if not self.institution_key:
            raise ValueError("ScrapeTarget.institution_key is required")
        # Unknown class names fall back to the default courtesy tier.
        try:
            institution_class = InstitutionClass(self.institution_class)
        except ValueError:
            institution_class = InstitutionClass.DEFAULT
        object.__setattr__(self, "institution_class", institution_class)
        object.__setattr__(self, "engine_hint", EngineType(self.engine_hint))
        object.__setattr__(self, "selectors", MappingProxyType(dict(self.selectors)))
        object.__setattr__(self, "field_rules", MappingProxyType(dict(self.field_rules)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "institution_key": self.institution_key,
            "institution_class": self.institution_class.value,
            "selectors": dict(self.selectors),
            "engine_hint": self.engine_hint.value,
        }


@dataclass
class ValidationReport:
    """Validation findings attached to an extraction."""

    invalid_selectors: List[str] = field(default_factory=list)
    empty_results: List[str] = field(default_factory=list)
    security_flags: List[str] = field(default_factory=list)


@dataclass
class ExtractionResult:
    """
    Output of one extraction call.

    ``errors`` are blocking; ``warnings`` (for example a failed metadata read
    or a too-generic selector) never change ``success``.
    """

    fields: Dict[str, FieldValue] = field(default_factory=dict)
    success: bool = False
    errors: List[ScraperError] = field(default_factory=list)
    warnings: List[ScraperError] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    metrics: Dict[str, Any] = field(default_factory=lambda: {"elapsed_ms": 0.0, "item_count": 0})
    validation: ValidationReport = field(default_factory=ValidationReport)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fields": dict(self.fields),
            "success": self.success,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "metadata": dict(self.metadata),
            "metrics": dict(self.metrics),
            "validation": {
                "invalid_selectors": list(self.validation.invalid_selectors),
                "empty_results": list(self.validation.empty_results),
                "security_flags": list(self.validation.security_flags),
            },
        }


@dataclass
class FetchResult:
    """Raw payload returned by a fetch engine."""

    url: str
    final_url: str
    status_code: Optional[int]
    content: Union[str, bytes]
    content_type: str
    elapsed_ms: float
    engine: EngineType

    @property
    def is_pdf(self) -> bool:
        if "application/pdf" in (self.content_type or "").lower():
            return True
        head = self.content[:1024]
        if isinstance(head, str):
            return head.lstrip().startswith("%PDF-")
        return head.lstrip().startswith(b"%PDF-")

    @property
    def size(self) -> int:
        return len(self.content)


class DispatchState(str, Enum):
    PENDING = "pending"
    RATE_LIMITED = "rate_limited"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    SUCCEEDED = "succeeded"
    RETRYING = "retrying"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({DispatchState.SUCCEEDED, DispatchState.FAILED, DispatchState.CANCELLED})


@dataclass
class ScrapeOutcome:
    """Terminal outcome of dispatching one target."""

    target: ScrapeTarget
    state: DispatchState
    result: Optional[ExtractionResult] = None
    error: Optional[ScraperError] = None
    attempts: int = 0
    engine: Optional[EngineType] = None
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.state == DispatchState.SUCCEEDED

    def raise_for_error(self) -> None:
        """Raise the terminal error, if the dispatch failed."""
        if self.error is not None:
            raise self.error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target.to_dict(),
            "state": self.state.value,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error.to_dict() if self.error else None,
            "attempts": self.attempts,
            "engine": self.engine.value if self.engine else None,
            "duration_ms": round(self.duration_ms, 2),
        }
