from __future__ import annotations

import re
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sheet_index.geometry import TextItem
from sheet_index.label_detector import is_label_text
from sheet_index.sheet_validator import is_valid_title, score_title, title_rejection_reason


log = logging.getLogger("HeuristicExtractor")

# Looser than the anchored tiers: no label anchor backs these up.
HEURISTIC_NUMBER_PATTERNS = [
    re.compile(r"\b([A-Z]{1,3})[-.]?(\d{2,4}(?:\.\d{1,2})?)\b", re.IGNORECASE),
    re.compile(r"\b([A-Z]{1,2})(\d)[-.](\d{2,3})\b", re.IGNORECASE),
    re.compile(r"\b(FP|FA|FS|ID|LP|EL)[-.]?(\d{2,4})\b", re.IGNORECASE),
]

TITLE_BLOCK_MIN_X = 0.75
TITLE_BLOCK_MAX_Y = 0.25
NUMBER_FOUND_WEIGHT = 0.40
TITLE_FOUND_WEIGHT = 0.35
DENSE_TEXT_WEIGHT = 0.10
DENSE_TEXT_MIN_ITEMS = 50
HEURISTIC_CAP = 0.90


@dataclass
class HeuristicResult:
    sheet_number: Optional[str]
    sheet_title: Optional[str]
    confidence: float
    number_position: Optional[Tuple[float, float]] = None  # PDF space
    notes: Dict[str, Any] = field(default_factory=dict)


def _number_candidates(items: List[TextItem], viewport_h: float) -> List[Tuple[float, str, TextItem]]:
    out = []
    for item in items:
        for pattern in HEURISTIC_NUMBER_PATTERNS:
            m = pattern.search(item.text)
            if m:
                value = m.group(0).upper().replace("-", "").replace(".", "")
                # bottom-right bias: larger x, smaller PDF y
                out.append((item.x + (viewport_h - item.y), value, item))
    return out


def extract_from_text_items(items: List[TextItem], viewport_w: float, viewport_h: float) -> HeuristicResult:
    """
    Whole-page fallback used when label anchoring yields nothing.

    The sheet number is the most bottom-right pattern match. Title candidates
    are scored by content, with bonuses for sitting in the bottom-right title
    block quadrant or next to the number.
    """
    items = [i for i in items if (i.text or "").strip()]
    notes: Dict[str, Any] = {}
    confidence = 0.0

    sheet_number: Optional[str] = None
    number_pos: Optional[Tuple[float, float]] = None
    candidates = _number_candidates(items, viewport_h)
    if candidates:
        candidates.sort(key=lambda c: -c[0])
        _, sheet_number, best_item = candidates[0]
        number_pos = (best_item.x, best_item.y)
        confidence += NUMBER_FOUND_WEIGHT
        notes["sheet_number_candidates"] = len(candidates)

    title_candidates: List[Tuple[float, str]] = []
    for item in items:
        text = item.text.strip()
        if sheet_number and sheet_number in text.upper():
            continue
        if is_label_text(text) or not is_valid_title(text):
            continue
        score = score_title(text)
        if item.x >= viewport_w * TITLE_BLOCK_MIN_X and item.y <= viewport_h * TITLE_BLOCK_MAX_Y:
            score += 30
        if number_pos is not None:
            if abs(item.x - number_pos[0]) < viewport_w * 0.15 and abs(item.y - number_pos[1]) < viewport_h * 0.10:
                score += 25
        if score > 0:
            title_candidates.append((score, text))

    sheet_title: Optional[str] = None
    if title_candidates:
        title_candidates.sort(key=lambda c: -c[0])
        sheet_title = title_candidates[0][1]
        confidence += TITLE_FOUND_WEIGHT
    else:
        # report why the most title-like text was turned down
        rejected = [i.text.strip() for i in items if not is_label_text(i.text) and not (sheet_number and sheet_number in i.text.upper())]
        if rejected:
            rejected.sort(key=score_title, reverse=True)
            notes["title_rejected"] = True
            notes["rejection_reason"] = title_rejection_reason(rejected[0])

    if len(items) >= DENSE_TEXT_MIN_ITEMS:
        confidence += DENSE_TEXT_WEIGHT

    return HeuristicResult(
        sheet_number=sheet_number,
        sheet_title=sheet_title,
        confidence=min(confidence, HEURISTIC_CAP),
        number_position=number_pos,
        notes=notes,
    )
