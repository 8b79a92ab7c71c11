"""
Validators for inputs accepted by the CLI and the request handlers.

- input.py: InputValidator - ERD file/content validation with path security
- rate_limiter.py: ValidationRateLimiter, ValidationContext - admission control

Usage:
    from core.validators import InputValidator, ValidationRateLimiter
"""

from .input import InputValidator
from .rate_limiter import ValidationRateLimiter, ValidationContext

__all__ = [
    # Input validation
    'InputValidator',
    # Admission control
    'ValidationRateLimiter',
    'ValidationContext',
]
