"""
Utils Package

Provides utility modules for:
- parsing: Won amounts, statement dates and the week-ending Sunday
- validation_errors: Structured error response bodies
"""

from .parsing import parse_amount, parse_date, week_ending_sunday
from .validation_errors import ValidationErrorResponse, request_validation_body

__all__ = [
    'parse_amount',
    'parse_date',
    'week_ending_sunday',
    'ValidationErrorResponse',
    'request_validation_body',
]
