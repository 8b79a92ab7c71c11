"""
Shared validation vocabulary.

Severity levels and issue categories used by the ERD validator, the auto-fix
engine, and the service layer. Kept in one place so that every consumer
agrees on the serialized string values.

Usage:
    from shared.utilities.validation import Severity, IssueCategory

    if warning.severity == Severity.ERROR:
        ...
"""

from enum import Enum
from typing import Any, Dict, Iterable


class Severity(str, Enum):
    """Severity of a validation finding."""
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    def __str__(self) -> str:
        return self.value


class IssueCategory(str, Enum):
    """Category of a validation finding."""
    STRUCTURE = "structure"
    NAMING = "naming"
    RELATIONSHIPS = "relationships"
    CDM = "cdm"
    SYSTEM = "system"

    def __str__(self) -> str:
        return self.value


def count_by_severity(items: Iterable[Any]) -> Dict[str, int]:
    """Count findings per severity.

    Args:
        items: Objects exposing a ``severity`` attribute.

    Returns:
        Dictionary with ``errors``, ``warnings`` and ``info`` keys.
    """
    counts = {"errors": 0, "warnings": 0, "info": 0}
    for item in items:
        severity = Severity(item.severity)
        if severity == Severity.ERROR:
            counts["errors"] += 1
        elif severity == Severity.WARNING:
            counts["warnings"] += 1
        else:
            counts["info"] += 1
    return counts
