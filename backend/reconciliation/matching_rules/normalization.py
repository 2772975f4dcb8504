"""
Text normalization shared by rules, suppression and duplicate detection.

Korean bank statements mix full-width and half-width forms (e.g. "ＮＨ카드"
vs "NH카드"), so all comparison text is NFKC-normalized, case-folded,
whitespace-collapsed and trimmed.
"""

import re
import unicodedata
from typing import List

_WHITESPACE = re.compile(r"\s+")
_DIGITS = re.compile(r"\d+")
_NON_WORD = re.compile(r"[^\w\sㄱ-ㅎ가-힣]")
_REGEX_META = re.compile(r"[\\^$.|?*+()\[\]{}]")

BANK_NAMES = ["국민", "신한", "우리", "하나", "농협", "NH", "KB", "SC"]
TRANSFER_CHANNEL_TOKENS = ["G-", "S-", "E-", "PC", "폰", "NH콕송금", "오픈뱅킹"]
KEY_PATTERN_MAX_LENGTH = 15


def normalize_text(value) -> str:
    if not value:
        return ""
    text = unicodedata.normalize("NFKC", str(value)).casefold()
    return _WHITESPACE.sub(" ", text).strip()


def searchable_fields(tx) -> List[str]:
    """Normalized description, detail and memo of a transaction."""
    return [normalize_text(tx.description), normalize_text(tx.detail), normalize_text(tx.memo)]


def searchable_text(tx) -> str:
    """The text rules are evaluated against: non-empty fields joined by one space."""
    return " ".join(f for f in searchable_fields(tx) if f)


def strip_regex_meta(pattern: str) -> str:
    return _REGEX_META.sub("", pattern)


def extract_key_pattern(text: str) -> str:
    """
    Reduce a statement description to a short, reusable rule pattern.

    Drops digits, bank names and transfer-channel tokens ("NH콕송금",
    "오픈뱅킹", ...), replaces punctuation with spaces and keeps at most
    15 characters. Falls back to the first 10 characters of the input
    when nothing survives.
    """
    pattern = _DIGITS.sub("", text)

    for token in TRANSFER_CHANNEL_TOKENS:
        pattern = pattern.replace(token, "", 1)

    for bank in BANK_NAMES:
        pattern = re.sub(re.escape(bank), "", pattern, flags=re.IGNORECASE)

    pattern = _NON_WORD.sub(" ", pattern)
    pattern = _WHITESPACE.sub(" ", pattern.strip())

    if len(pattern) > KEY_PATTERN_MAX_LENGTH:
        pattern = pattern[:KEY_PATTERN_MAX_LENGTH].strip()

    return pattern or text[:10].strip()
