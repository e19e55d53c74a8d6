from __future__ import annotations

import re
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sheet_index.geometry import PixelBBox, TextItem, to_render_px


log = logging.getLogger("LabelDetector")


# -------------------------
# Label lexicon
# -------------------------
# A bare "SHEET" is deliberately absent from every tier.
NUMBER_LABEL_PATTERNS = [
    re.compile(r"\bSHEET\s*(NO\.?|NUMBER|#)(?![A-Z0-9])", re.IGNORECASE),
    re.compile(r"\bDRAWING\s*(NO\.?|NUMBER)(?![A-Z0-9])", re.IGNORECASE),
    re.compile(r"\bDWG\.?\s*(NO\.?|NUMBER)(?![A-Z0-9])", re.IGNORECASE),
    re.compile(r"\bSHT\.?\s*(NO\.?|NUMBER)(?![A-Z0-9])", re.IGNORECASE),
]

TITLE_LABEL_PATTERNS = [
    re.compile(r"\bSHEET\s*TITLE\b", re.IGNORECASE),
    re.compile(r"\bDRAWING\s*TITLE\b", re.IGNORECASE),
    re.compile(r"\bTITLE\s*:", re.IGNORECASE),
]

MODERATE_LABEL_PATTERNS = [
    re.compile(r"^TITLE$", re.IGNORECASE),
]

# (label_type, weight, patterns) in priority order
_TIERS: List[Tuple[str, int, List[re.Pattern]]] = [
    ("number", 3, NUMBER_LABEL_PATTERNS),
    ("title", 3, TITLE_LABEL_PATTERNS),
    ("moderate", 2, MODERATE_LABEL_PATTERNS),
]

MIN_LABEL_W = 50.0
MIN_LABEL_H = 20.0


@dataclass
class LabelHit:
    text: str
    label_type: str  # number | title | moderate
    weight: int
    bbox: PixelBBox
    center: Tuple[float, float] = field(default=(0.0, 0.0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "label_type": self.label_type,
            "weight": self.weight,
            "bbox": self.bbox.to_dict(),
            "center": {"x": round(self.center[0], 2), "y": round(self.center[1], 2)},
        }


def classify_label(text: str) -> Optional[Tuple[str, int]]:
    """Return (label_type, weight) for the first matching tier, or None."""
    s = (text or "").strip()
    if not s:
        return None
    for label_type, weight, patterns in _TIERS:
        if any(p.search(s) for p in patterns):
            return label_type, weight
    return None


def is_label_text(text: str) -> bool:
    return classify_label(text) is not None


def detect_label_hits(items: Iterable[TextItem], viewport_h: float, scale: float) -> List[LabelHit]:
    """
    Scan text items for strong label phrases.

    Each item is classified by at most one tier (number > title > moderate).
    Label boxes are raised from the baseline and given minimum dimensions since
    vector-layer label spans are often degenerate-thin.
    """
    hits: List[LabelHit] = []
    for item in items:
        text = (item.text or "").strip()
        if not text:
            continue
        cls = classify_label(text)
        if cls is None:
            continue
        label_type, weight = cls
        px = to_render_px(item, viewport_h, scale)
        bbox = PixelBBox(
            x=px.x,
            y=px.y - px.h,
            w=max(px.w, MIN_LABEL_W),
            h=max(px.h, MIN_LABEL_H),
        )
        hits.append(LabelHit(text=text, label_type=label_type, weight=weight, bbox=bbox, center=bbox.center))
    log.debug("Detected %d label hits", len(hits))
    return hits


def _median(values: List[float], default: float) -> float:
    if not values:
        return default
    vals = sorted(values)
    mid = len(vals) // 2
    if len(vals) % 2 == 0:
        return (vals[mid - 1] + vals[mid]) / 2.0
    return vals[mid]


def median_label_height(hits: List[LabelHit]) -> float:
    return _median([h.bbox.h for h in hits], 30.0)


def median_label_width(hits: List[LabelHit]) -> float:
    return _median([h.bbox.w for h in hits], 100.0)
