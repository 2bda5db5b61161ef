"""Closed enumerations shared by configuration and the scraping core."""

from enum import Enum


class InstitutionClass(str, Enum):
    """Courtesy tier determining rate-limit aggressiveness."""

    PRIMARY_DOMESTIC = "primary_domestic"
    INTERNATIONAL_ACADEMIC = "international_academic"
    FEDERAL_LAB = "federal_lab"
    DEFAULT = "default"


class EngineType(str, Enum):
    """Available fetch strategies."""

    STATIC = "static"
    HEADLESS_BROWSER = "headless_browser"
    CRAWL_FRAMEWORK = "crawl_framework"


class ErrorClassification(str, Enum):
    """Taxonomy bucket assigned to every scraping error."""

    NETWORK_TIMEOUT = "network_timeout"
    RATE_LIMITED = "rate_limited"
    PARSE_ERROR = "parse_error"
    AUTHENTICATION_ERROR = "auth_error"
    VALIDATION_ERROR = "validation_error"
    SECURITY_ERROR = "security_error"


# Classifications that require human or configuration-level intervention.
FATAL_CLASSIFICATIONS = frozenset({
    ErrorClassification.AUTHENTICATION_ERROR,
    ErrorClassification.SECURITY_ERROR,
})
