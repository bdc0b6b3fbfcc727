"""
Phone number normalization for imported donor records.

Donor phone numbers are stored as bare digit strings; formatting for display
is the consumer's concern.
"""

import re
from typing import Any, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

MIN_COMPLETE_DIGITS = 10


def normalize_phone(value: Any) -> Tuple[Optional[str], Optional[str]]:
    """
    Strip every non-digit character from a phone value.

    Handles input such as:
    - (415) 555-1234
    - 415.555.1234
    - +1 415 555 1234

    Returns:
        Tuple of (digits, warning). ``digits`` is None when the value is empty
        or contains no digits at all; ``warning`` is set when fewer than ten
        digits remain. Short numbers are kept, never rejected.
    """
    if value is None:
        return None, None

    text = str(value).strip()
    if not text:
        return None, None

    digits = re.sub(r'\D', '', text)
    if not digits:
        return None, f"Phone number '{text}' contains no digits"

    if len(digits) < MIN_COMPLETE_DIGITS:
        logger.debug("Phone number '%s' has only %d digits", text, len(digits))
        return digits, f"Phone number '{text}' may be incomplete ({len(digits)} digits)"

    return digits, None


def detect_phone_column(values: list) -> bool:
    """
    Detect if a column contains phone number values based on pattern analysis.

    Args:
        values: List of sample values from the column

    Returns:
        True if at least half of the non-empty values look like phone numbers
    """
    non_empty = [str(v).strip() for v in values if v is not None and str(v).strip()]
    if not non_empty:
        return False

    phone_patterns = [
        r'^\d{3}[-.\s]\d{3}[-.\s]\d{4}$',  # 415-555-1234, 415.555.1234, 415 555 1234
        r'^\(\d{3}\)\s*\d{3}[-.\s]?\d{4}$',  # (415) 555-1234
        r'^\+?\d{1,3}[\s.-]?\(?\d{2,4}\)?[\s.-]?\d{3,4}[\s.-]?\d{4}$',  # International formats
        r'^\d{10}$',  # 4155551234
    ]

    total_checked = min(len(non_empty), 20)
    matches = 0
    for value in non_empty[:total_checked]:
        if any(re.match(pattern, value) for pattern in phone_patterns):
            matches += 1

    return (matches / total_checked) >= 0.5
