# WORKFLOW: Rate-format classification and rate-value sanity parsing.
# Used by: Rate validator
# Functions:
# 1. classify_rate() - Classify rate text against the ordered pattern table
# 2. extract_percentages() - Percent values (with sign) mentioned in rate text
# 3. extract_specific_amounts() - Dollar amounts of specific duties (cents converted)
# 4. find_reversed_ranges() - Percentage ranges whose low bound exceeds the high bound
#
# Classification flow: Rate text -> Normalize -> Pattern table (first match wins) -> Ambiguity check
# Several matches are reported as ambiguous unless the winning class subsumes the others.

"""
Rate-format classification for HTS rate text.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from etl.formula_compiler import normalize_rate_text

logger = logging.getLogger(__name__)

FREE = "FREE"
COMPOUND = "COMPOUND"
RANGE = "RANGE"
SURCHARGE = "SURCHARGE"
AD_VALOREM = "AD_VALOREM"
CENTS_SPECIFIC = "CENTS_SPECIFIC"
SPECIFIC = "SPECIFIC"
PARENTHETICAL = "PARENTHETICAL"
FOOTNOTE_REFERENCE = "FOOTNOTE_REFERENCE"
BARE_NUMERIC = "BARE_NUMERIC"

_NUMBER = r'\d+(?:\.\d+)?'

# Ordered pattern table: first match wins.
RATE_PATTERNS: List[Tuple[str, re.Pattern]] = [
    (FREE, re.compile(r'^free\b')),
    (COMPOUND, re.compile(
        rf'{_NUMBER}\s*%.*\+.*(?:¢|cents?|\$|/)|(?:¢|cents?|\$|/).*\+.*{_NUMBER}\s*%'
    )),
    (RANGE, re.compile(rf'^{_NUMBER}\s*%\s*(?:-|to)\s*{_NUMBER}\s*%$')),
    (SURCHARGE, re.compile(
        rf'duty provided in the applicable subheading|^(?:\+|plus)\s*{_NUMBER}\s*%'
    )),
    (AD_VALOREM, re.compile(rf'^-?\s*{_NUMBER}\s*(?:%|percent)')),
    (CENTS_SPECIFIC, re.compile(rf'{_NUMBER}\s*(?:¢|cents?)\b|{_NUMBER}\s*¢')),
    (SPECIFIC, re.compile(rf'\$\s*{_NUMBER}|{_NUMBER}\s*(?:/|per\s)\s*[a-z]|{_NUMBER}\s*(?:each|doz|pr)\b')),
    (PARENTHETICAL, re.compile(r'\(([^)]+)\)')),
    (FOOTNOTE_REFERENCE, re.compile(r'\bnotes?\b|\bsee\b|\b99\d{2}\.\d{2}')),
    (BARE_NUMERIC, re.compile(rf'^{_NUMBER}$')),
]

SUBSUMES = {
    FREE: {PARENTHETICAL},
    COMPOUND: {AD_VALOREM, CENTS_SPECIFIC, SPECIFIC, PARENTHETICAL},
    RANGE: {AD_VALOREM},
    SURCHARGE: {AD_VALOREM, PARENTHETICAL},
    AD_VALOREM: {PARENTHETICAL},
    CENTS_SPECIFIC: {SPECIFIC, PARENTHETICAL},
    SPECIFIC: {PARENTHETICAL},
    PARENTHETICAL: set(),
    FOOTNOTE_REFERENCE: {PARENTHETICAL},
    BARE_NUMERIC: set(),
}

PERCENT_VALUE = re.compile(rf'(?<![\d%.])(-)?\s*({_NUMBER})\s*(?:%|percent)')
DOLLAR_VALUE = re.compile(rf'(?<![\d%.])(-)?\s*\$\s*({_NUMBER})')
CENTS_VALUE = re.compile(rf'(?<![\d%.])(-)?\s*({_NUMBER})\s*(?:¢|cents?\b)')
RANGE_VALUE = re.compile(rf'({_NUMBER})\s*%\s*(?:-|to)\s*({_NUMBER})\s*%')


def classify_rate(rate_text: Optional[str]) -> Dict[str, Any]:
    """
    Classify rate text against the ordered pattern table.

    Args:
        rate_text: Raw rate text

    Returns:
        Dictionary with classification (None if nothing matched), all matches and ambiguity flag
    """
    text = normalize_rate_text(rate_text or "")
    if not text:
        return {"classification": None, "matches": [], "ambiguous": False, "empty": True}

    matches = [name for name, pattern in RATE_PATTERNS if pattern.search(text)]
    if not matches:
        return {"classification": None, "matches": [], "ambiguous": False, "empty": False}

    winner = matches[0]
    unexplained = [name for name in matches[1:] if name not in SUBSUMES[winner]]
    return {
        "classification": winner,
        "matches": matches,
        "ambiguous": bool(unexplained),
        "empty": False,
    }


def extract_percentages(rate_text: Optional[str]) -> List[float]:
    """Signed percentage values mentioned in the text ("-5%" -> -5.0)."""
    values = []
    for match in PERCENT_VALUE.finditer(normalize_rate_text(rate_text or "")):
        value = float(match.group(2))
        values.append(-value if match.group(1) else value)
    return values


def extract_specific_amounts(rate_text: Optional[str]) -> List[float]:
    """Signed specific-duty amounts in dollars; cents are divided by 100."""
    text = normalize_rate_text(rate_text or "")
    amounts = []
    for match in DOLLAR_VALUE.finditer(text):
        value = float(match.group(2))
        amounts.append(-value if match.group(1) else value)
    for match in CENTS_VALUE.finditer(text):
        value = float(match.group(2)) / 100
        amounts.append(-value if match.group(1) else value)
    return amounts


def find_reversed_ranges(rate_text: Optional[str]) -> List[Tuple[float, float]]:
    """Percentage ranges written high-to-low ("10%-5%")."""
    reversed_ranges = []
    for match in RANGE_VALUE.finditer(normalize_rate_text(rate_text or "")):
        low, high = float(match.group(1)), float(match.group(2))
        if low > high:
            reversed_ranges.append((low, high))
    return reversed_ranges
