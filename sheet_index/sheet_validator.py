# sheet_validator.py
from __future__ import annotations

import re
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple


log = logging.getLogger("SheetValidator")


class RejectionReason(str, Enum):
    LABEL_PREFIX_ONLY = "label_prefix_only"
    SCALE_JUNK = "scale_junk"
    STAMP_JUNK = "stamp_junk"
    TOO_SHORT = "too_short"
    INVALID_NUMBER_PATTERN = "invalid_number_pattern"
    TOO_LONG = "too_long"
    INSUFFICIENT_LETTERS = "insufficient_letters"
    BOILERPLATE = "boilerplate"
    OTHER = "other"


# -------------------------
# Sheet-number patterns (ordered, with priority)
# -------------------------
SHEET_NUMBER_PATTERNS: List[Tuple[re.Pattern, int]] = [
    (re.compile(r"\b([A-Z]{1,2})(\d{3,4}(?:\.\d{1,2})?)\b", re.IGNORECASE), 3),
    (re.compile(r"\b([A-Z]{1,2})[-.](\d{2,4}(?:\.\d{1,2})?)\b", re.IGNORECASE), 3),
    (re.compile(r"\b([A-Z]{1,2})(\d)[-.](\d{2,3})\b", re.IGNORECASE), 2),
    (re.compile(r"\b(FP|FA|FS|ID|LP|EL)[-.]?(\d{2,4})\b", re.IGNORECASE), 2),
    (re.compile(r"\b([A-Z])[-.]?(\d{2,4})\b", re.IGNORECASE), 1),
]
TOP_TIER_PRIORITY = 3

_NUMBER_PREFIX = re.compile(
    r"^(SHEET\s*(NO\.?|NUMBER|#)\s*[:.]?\s*"
    r"|DRAWING\s*(NO\.?|NUMBER)\s*[:.]?\s*"
    r"|DWG\.?\s*(NO\.?|NUMBER)\s*[:.]?\s*"
    r"|SHT\.?\s*(NO\.?|NUMBER)\s*[:.]?\s*)",
    re.IGNORECASE,
)
_TITLE_PREFIX = re.compile(
    r"^(SHEET\s*(TITLE|NAME)\s*[:.]?\s*|DRAWING\s*TITLE\s*[:.]?\s*|TITLE\s*[:.]?\s*)",
    re.IGNORECASE,
)

_SCALE_JUNK = re.compile(r"^(NOT\s*TO\s*SCALE|SCALE\s*[:.].*)$", re.IGNORECASE)
_STAMP_JUNK = re.compile(
    r"^(ISSUED\s*FOR\b.*|NOT\s*FOR\s*CONSTRUCTION|PRELIMINARY|BID\s*SET|REVIEW\s*SET|FOR\s*REVIEW)$",
    re.IGNORECASE,
)
_LABEL_REMNANT = re.compile(r"^(SHEET|DRAWING|DWG|SHT|TITLE)\b[:.]?$", re.IGNORECASE)

TRUNCATION_ENDINGS = {"AND", "PROJECT", "INFORMATION", "THE", "TO", "FOR", "OF", "IN", "AT", "WITH"}

# Title-block legal/admin text that is never a real sheet title
BOILERPLATE_PHRASES = [
    "use only below this line",
    "not for construction",
    "for permit",
    "owner review",
    "preliminary",
    "for approval",
    "for review",
    "seattle dci",
    "building department",
    "planning department",
    "dimensions must be checked",
    "verified on site",
    "verify on site",
    "shop drawings",
    "before commencing",
    "contractor shall",
    "refer to specification",
    "all dimensions are in",
    "do not scale",
    "for construction",
    "copyright",
    "proprietary",
    "confidential",
    "revision",
    "date issued",
    "drawn by",
    "checked by",
    "approved by",
    "project number",
    "job number",
]

AEC_TITLE_KEYWORDS = [
    "PLAN", "FLOOR", "ROOF", "RCP", "REFLECTED", "CEILING",
    "SCHEDULE", "DETAIL", "SECTION", "ELEVATION", "LEGEND",
    "MECHANICAL", "ELECTRICAL", "PLUMBING", "STRUCTURAL",
    "LEVEL", "SITE", "BASEMENT", "GROUND", "TYPICAL",
    "ENLARGED", "PARTIAL", "KEY", "NOTES", "GENERAL",
    "PARTITION", "ASSEMBLY", "WALL", "DOOR", "WINDOW",
    "COVER", "INDEX", "SHEET LIST", "ABBREVIATION", "SYMBOL",
]

TITLE_MIN_LEN = 6
TITLE_MAX_LEN = 80
TITLE_MAX_WORDS = 12


@dataclass
class NumberValidation:
    valid: bool
    value: Optional[str] = None
    priority: int = 0
    rejection_reason: Optional[RejectionReason] = None


@dataclass
class TitleValidation:
    valid: bool
    value: Optional[str] = None
    score: float = 0.0
    rejection_reason: Optional[RejectionReason] = None
    truncation_suspected: bool = False
    had_prefix: bool = False

    @property
    def clean(self) -> bool:
        return self.valid and not self.had_prefix and not self.truncation_suspected


# -------------------------
# Normalization
# -------------------------
def normalize_candidate(raw: Optional[str]) -> str:
    if not raw:
        return ""
    s = re.sub(r"\s+", " ", raw).strip()
    s = re.sub(r"^[:\-.,;]+\s*", "", s)
    s = re.sub(r"\s*[:\-.,;]+$", "", s)
    return s


def strip_number_prefix(candidate: str) -> Tuple[str, bool]:
    stripped = _NUMBER_PREFIX.sub("", candidate, count=1).strip()
    return stripped, stripped != candidate


def strip_title_prefix(candidate: str) -> Tuple[str, bool]:
    stripped = _TITLE_PREFIX.sub("", candidate, count=1).strip()
    return stripped, stripped != candidate


def _junk_reason(s: str) -> Optional[RejectionReason]:
    if _SCALE_JUNK.match(s):
        return RejectionReason.SCALE_JUNK
    if _STAMP_JUNK.match(s):
        return RejectionReason.STAMP_JUNK
    return None


def number_priority(value: Optional[str]) -> int:
    """Priority of the first pattern tier that matches an already-normalized number."""
    if not value:
        return 0
    for pattern, priority in SHEET_NUMBER_PATTERNS:
        if pattern.search(value):
            return priority
    return 0


# -------------------------
# Sheet-number validation
# -------------------------
def validate_sheet_number(candidate: Optional[str]) -> NumberValidation:
    """
    Strip-then-validate a sheet-number candidate.

    Label prefixes ("SHEET NO.:") are removed first, then known junk
    (scale annotations, stamps) is rejected before the pattern tiers are tried
    in priority order. The returned value is upper-cased with separators dropped
    (A1.01 -> A101).
    """
    normalized = normalize_candidate(candidate)
    stripped, had_prefix = strip_number_prefix(normalized)

    if not stripped:
        reason = RejectionReason.LABEL_PREFIX_ONLY if had_prefix else RejectionReason.TOO_SHORT
        return NumberValidation(False, rejection_reason=reason)
    junk = _junk_reason(stripped)
    if junk is not None:
        return NumberValidation(False, rejection_reason=junk)
    if _LABEL_REMNANT.match(stripped):
        return NumberValidation(False, rejection_reason=RejectionReason.LABEL_PREFIX_ONLY)
    if len(stripped) < 2:
        return NumberValidation(False, rejection_reason=RejectionReason.TOO_SHORT)

    for pattern, priority in SHEET_NUMBER_PATTERNS:
        m = pattern.search(stripped)
        if m:
            value = "".join(g for g in m.groups() if g).upper()
            value = value.replace("-", "").replace(".", "")
            return NumberValidation(True, value=value, priority=priority)

    return NumberValidation(False, rejection_reason=RejectionReason.INVALID_NUMBER_PATTERN)


# -------------------------
# Sheet-title validation
# -------------------------
def _title_rule_violation(title: str) -> Optional[RejectionReason]:
    if len(title) < TITLE_MIN_LEN:
        return RejectionReason.TOO_SHORT
    if len(title) > TITLE_MAX_LEN:
        return RejectionReason.TOO_LONG
    if len(title.split()) > TITLE_MAX_WORDS:
        return RejectionReason.OTHER
    if title.count(",") > 2 or title.count(".") > 1:
        return RejectionReason.OTHER
    if len(re.findall(r"[A-Za-z]", title)) < 4:
        return RejectionReason.INSUFFICIENT_LETTERS
    lower = title.lower()
    if any(phrase in lower for phrase in BOILERPLATE_PHRASES):
        return RejectionReason.BOILERPLATE
    return None


def has_aec_keyword(text: str) -> bool:
    upper = text.upper()
    return any(kw in upper for kw in AEC_TITLE_KEYWORDS)


def score_title(title: str) -> float:
    """Positional-free title score: AEC keywords, caps ratio, typical length, word count."""
    score = 0.0
    if has_aec_keyword(title):
        score += 30
    upper_ratio = len(re.findall(r"[A-Z]", title)) / max(len(title), 1)
    if upper_ratio > 0.5:
        score += 20
    if 8 <= len(title) <= 45:
        score += 15
    if 2 <= len(title.split()) <= 6:
        score += 10
    return score


def validate_sheet_title(candidate: Optional[str]) -> TitleValidation:
    normalized = normalize_candidate(candidate)
    stripped, had_prefix = strip_title_prefix(normalized)

    if not stripped:
        reason = RejectionReason.LABEL_PREFIX_ONLY if had_prefix else RejectionReason.TOO_SHORT
        return TitleValidation(False, rejection_reason=reason, had_prefix=had_prefix)
    junk = _junk_reason(stripped)
    if junk is not None:
        return TitleValidation(False, rejection_reason=junk, had_prefix=had_prefix)
    if _LABEL_REMNANT.match(stripped):
        return TitleValidation(False, rejection_reason=RejectionReason.LABEL_PREFIX_ONLY, had_prefix=had_prefix)

    violation = _title_rule_violation(stripped)
    if violation is not None:
        return TitleValidation(False, rejection_reason=violation, had_prefix=had_prefix)

    last_word = stripped.upper().split()[-1]
    truncated = last_word in TRUNCATION_ENDINGS

    score = score_title(stripped)
    if not had_prefix:
        score += 2
    if not truncated:
        score += 2

    return TitleValidation(
        True,
        value=stripped,
        score=score,
        truncation_suspected=truncated,
        had_prefix=had_prefix,
    )


def is_valid_title(title: Optional[str]) -> bool:
    if not title:
        return False
    return _title_rule_violation(title.strip()) is None


def title_rejection_reason(title: Optional[str]) -> Optional[str]:
    if not title:
        return "empty"
    violation = _title_rule_violation(title.strip())
    return violation.value if violation else None


# -------------------------
# Cross-sheet boilerplate
# -------------------------
def detect_boilerplate_titles(
    titles: Iterable[Tuple[int, Optional[str]]],
    min_length: int = 30,
    max_repeats: int = 8,
) -> Set[int]:
    """
    Flag sheets whose (long) title repeats across more than `max_repeats` sheets.

    `titles` is an iterable of (source_index, title). Must be run after every
    page's first-pass title is known.
    """
    by_title: Dict[str, List[int]] = {}
    for source_index, title in titles:
        if title and len(title) > min_length:
            by_title.setdefault(title.lower().strip(), []).append(source_index)

    flagged: Set[int] = set()
    for title, indices in by_title.items():
        if len(indices) > max_repeats:
            log.debug("Boilerplate title on %d sheets: %r", len(indices), title[:60])
            flagged.update(indices)
    return flagged
