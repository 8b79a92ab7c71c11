"""
Shared utilities.

- validation: Severity and IssueCategory enums shared by validators
- result: Result record threaded through fixers and services
"""

from .validation import Severity, IssueCategory, count_by_severity
from .result import Result

__all__ = [
    "Severity",
    "IssueCategory",
    "count_by_severity",
    "Result",
]
