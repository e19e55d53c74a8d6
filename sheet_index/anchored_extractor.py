from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from sheet_index.geometry import PixelBBox, TextItem, clamp, visual_center
from sheet_index.label_detector import LabelHit, is_label_text
from sheet_index.sheet_validator import (
    NumberValidation,
    TitleValidation,
    normalize_candidate,
    strip_number_prefix,
    strip_title_prefix,
    validate_sheet_number,
    validate_sheet_title,
)


log = logging.getLogger("AnchoredExtractor")

ANCHORED_BONUS = 0.05


# -------------------------
# Types
# -------------------------
@dataclass
class AnchoredRegion:
    """One search attempt adjacent to a label. Recorded whether it passed or not."""
    region_type: str  # right_of | below
    label_used: str
    bbox: PixelBBox
    candidates: List[str] = field(default_factory=list)
    chosen: Optional[str] = None
    passed: bool = False
    rejection_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "region_type": self.region_type,
            "label_used": self.label_used,
            "bbox": self.bbox.to_dict(),
            "candidates": list(self.candidates),
            "chosen": self.chosen,
            "pass": self.passed,
        }
        if self.rejection_reason:
            d["rejection_reason"] = self.rejection_reason
        return d


@dataclass
class AnchoredNumber:
    value: Optional[str]
    priority: int
    confidence_bonus: float
    regions: List[AnchoredRegion]
    item: Optional[TextItem] = None  # text span the number was read from


@dataclass
class AnchoredTitle:
    value: Optional[str]
    score: float
    truncation_suspected: bool
    clean: bool
    confidence_bonus: float
    regions: List[AnchoredRegion]


# -------------------------
# Region derivation
# -------------------------
def right_of_region(label: LabelHit) -> PixelBBox:
    lw, lh = label.bbox.w, label.bbox.h
    return PixelBBox(
        x=label.bbox.x + lw + clamp(0.25 * lw, 10, 30),
        y=label.bbox.y - clamp(0.50 * lh, 10, 40),
        w=clamp(6.0 * lw, 250, 900),
        h=clamp(2.5 * lh, 80, 220),
    )


def below_region(label: LabelHit, is_title: bool = False) -> PixelBBox:
    # titles wrap onto a second line below the label; numbers do not
    lw, lh = label.bbox.w, label.bbox.h
    mult, floor, ceiling = (7.0, 200, 650) if is_title else (5.0, 140, 520)
    return PixelBBox(
        x=label.bbox.x - clamp(0.25 * lw, 10, 40),
        y=label.bbox.bottom + clamp(0.25 * lh, 8, 25),
        w=clamp(10.0 * lw, 450, 1400),
        h=clamp(mult * lh, floor, ceiling),
    )


def _items_in_region(
    items: List[TextItem], region: PixelBBox, viewport_h: float, scale: float,
) -> List[Tuple[TextItem, str]]:
    out: List[Tuple[TextItem, str]] = []
    for item in items:
        cx, cy = visual_center(item, viewport_h, scale)
        if region.contains_point(cx, cy):
            text = normalize_candidate(item.text)
            if text:
                out.append((item, text))
    return out


def text_in_region(items: List[TextItem], region: PixelBBox, viewport_h: float, scale: float) -> List[str]:
    """Normalized text of every item whose visual center lies inside `region`, in page order."""
    return [text for _, text in _items_in_region(items, region, viewport_h, scale)]


# -------------------------
# Region scan (shared by number/title)
# -------------------------
def _is_bare_label(text: str) -> bool:
    if not is_label_text(text):
        return False
    rest, _ = strip_number_prefix(text)
    rest, _ = strip_title_prefix(rest)
    return not rest


def _scan_region(
    region_type: str,
    label: LabelHit,
    region: PixelBBox,
    items: List[TextItem],
    viewport_h: float,
    scale: float,
    validate: Callable[[str], Any],
) -> Tuple[AnchoredRegion, Optional[Tuple[Any, TextItem]]]:
    found = _items_in_region(items, region, viewport_h, scale)
    trace = AnchoredRegion(region_type=region_type, label_used=label.text, bbox=region, candidates=[t for _, t in found])
    for item, text in found:
        if _is_bare_label(text):
            # a neighbouring label is never the value
            continue
        result = validate(text)
        if result.valid and result.value:
            trace.chosen = result.value
            trace.passed = True
            return trace, (result, item)
        if trace.rejection_reason is None and result.rejection_reason is not None:
            trace.rejection_reason = result.rejection_reason.value
    return trace, None


def _scan_label(
    label: LabelHit,
    items: List[TextItem],
    viewport_h: float,
    scale: float,
    is_title: bool,
    validate: Callable[[str], Any],
) -> List[Tuple[AnchoredRegion, Optional[Tuple[Any, TextItem]]]]:
    return [
        _scan_region("right_of", label, right_of_region(label), items, viewport_h, scale, validate),
        _scan_region("below", label, below_region(label, is_title), items, viewport_h, scale, validate),
    ]


# -------------------------
# Anchored extraction
# -------------------------
def extract_sheet_number_anchored(
    number_labels: List[LabelHit],
    items: List[TextItem],
    viewport_h: float,
    scale: float,
) -> AnchoredNumber:
    regions: List[AnchoredRegion] = []
    accepted: List[Tuple[NumberValidation, TextItem]] = []
    for label in number_labels:
        for trace, found in _scan_label(label, items, viewport_h, scale, False, validate_sheet_number):
            regions.append(trace)
            if found is not None:
                accepted.append(found)

    if not accepted:
        return AnchoredNumber(None, 0, 0.0, regions)

    # priority dominates; shorter wins ties so trailing noise is not swallowed
    accepted.sort(key=lambda f: (-f[0].priority, len(f[0].value or "")))
    best, item = accepted[0]
    log.debug("Anchored number %s (priority %d) from %d candidates", best.value, best.priority, len(accepted))
    return AnchoredNumber(best.value, best.priority, ANCHORED_BONUS, regions, item)


def extract_sheet_title_anchored(
    title_labels: List[LabelHit],
    items: List[TextItem],
    viewport_h: float,
    scale: float,
) -> AnchoredTitle:
    regions: List[AnchoredRegion] = []
    accepted: List[TitleValidation] = []
    for label in title_labels:
        for trace, found in _scan_label(label, items, viewport_h, scale, True, validate_sheet_title):
            regions.append(trace)
            if found is not None:
                accepted.append(found[0])

    if not accepted:
        return AnchoredTitle(None, 0.0, False, False, 0.0, regions)

    # stable sort keeps page/label order among equal scores
    accepted.sort(key=lambda r: -r.score)
    best = accepted[0]
    return AnchoredTitle(
        value=best.value,
        score=best.score,
        truncation_suspected=best.truncation_suspected,
        clean=best.clean,
        confidence_bonus=ANCHORED_BONUS,
        regions=regions,
    )


def split_label_hits(hits: List[LabelHit]) -> Tuple[List[LabelHit], List[LabelHit]]:
    """
    Split hits into (number labels, title labels).

    A bare "TITLE" (moderate) only anchors title search when the page also
    carries a number label.
    """
    numbers = [h for h in hits if h.label_type == "number"]
    titles = [h for h in hits if h.label_type == "title"]
    if numbers:
        titles += [h for h in hits if h.label_type == "moderate"]
    return numbers, titles
