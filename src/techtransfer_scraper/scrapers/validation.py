"""
Validation of extracted records against configured field rules.
"""

import re
from typing import Dict, List, Optional
from urllib.parse import urlparse

from ..config import FieldValidationRule, ValidationConfig
from .exceptions import ValidationError
from .models import ExtractionResult, FieldValue


def _is_valid_url(url: str) -> bool:
    """Check if URL is valid."""
    try:
        result = urlparse(url)
        return all([result.scheme in ("http", "https"), result.netloc])
    except ValueError:
        return False


def _host_allowed(url: str, allowed_domains: List[str]) -> bool:
    host = (urlparse(url).hostname or "").lower()
    return any(host == domain or host.endswith("." + domain) for domain in allowed_domains)


class RecordValidator:
    """
    Applies required-field and per-field rules to an extraction result.

    Missing required fields are blocking errors. Rule violations are
    warnings: the record is still usable, just suspect.
    """

    def __init__(self, config: Optional[ValidationConfig] = None):
        config = config or ValidationConfig()
        self.required_fields = list(config.required_fields)
        self.field_rules: Dict[str, FieldValidationRule] = dict(config.field_rules)
        self._patterns = {
            name: re.compile(rule.pattern)
            for name, rule in self.field_rules.items()
            if rule.pattern
        }

    def check_field(self, name: str, value: FieldValue) -> List[ValidationError]:
        """Violations of the rule configured for ``name``; empty if none or no rule."""
        rule = self.field_rules.get(name)
        if rule is None:
            return []

        problems = []
        values = value if isinstance(value, list) else [value]
        for item in values:
            text = str(item)
            if rule.min_length is not None and len(text) < rule.min_length:
                problems.append(ValidationError(
                    f"Field '{name}' is too short (min {rule.min_length})", field=name, value=text
                ))
            if rule.max_length is not None and len(text) > rule.max_length:
                problems.append(ValidationError(
                    f"Field '{name}' is too long (max {rule.max_length})", field=name, value=text
                ))
            pattern = self._patterns.get(name)
            if pattern is not None and not pattern.search(text):
                problems.append(ValidationError(
                    f"Field '{name}' does not match pattern {rule.pattern}", field=name, value=text
                ))
            if rule.url:
                if not _is_valid_url(text):
                    problems.append(ValidationError(f"Field '{name}' is not a valid URL", field=name, value=text))
                elif rule.allowed_domains and not _host_allowed(text, rule.allowed_domains):
                    problems.append(ValidationError(
                        f"Field '{name}' points outside the allowed domains", field=name, value=text
                    ))
        return problems

    def validate(self, result: ExtractionResult) -> ExtractionResult:
        """Attach validation findings to ``result`` and return it."""
        for name in self.required_fields:
            value = result.fields.get(name)
            if value is None or value == "" or value == []:
                result.errors.append(ValidationError(f"Required field '{name}' is missing", field=name))

        for name, value in result.fields.items():
            result.warnings.extend(self.check_field(name, value))

        if result.errors:
            result.success = False
        return result
