from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sheet_index.sheet_validator import TOP_TIER_PRIORITY, number_priority, title_rejection_reason


# -------------------------
# Confidence bases by extraction source
# -------------------------
CONFIDENCE_BASE: Dict[str, float] = {
    "vector_anchored": 0.95,
    "vector_heuristic": 0.80,
    "ocr_crop": 0.75,
    "vision_crop": 0.70,
    "vision_full": 0.60,
    "fail_crop": 0.30,
    "unknown": 0.20,
}

EXTRACTION_SOURCES = ("vector_text", "vision_titleblock", "template_fields", "fail_crop", "unknown")

AUTO_ACCEPT_MIN = 0.85
MANUAL_BELOW = 0.30

VISION_SUCCESS_CAP = 0.95
VISION_FAILURE_CAP = 0.40
FAIL_CROP_CAP = 0.30
TEMPLATE_SUCCESS_CAP = 0.97


@dataclass
class ConfidenceResult:
    confidence: float
    flag_for_review: bool
    manual_flag: bool
    breakdown: List[str] = field(default_factory=list)

    @property
    def routing(self) -> str:
        if self.manual_flag:
            return "manual_flag"
        if self.flag_for_review:
            return "flag_for_review"
        return "auto_accept"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "confidence": self.confidence,
            "flag_for_review": self.flag_for_review,
            "manual_flag": self.manual_flag,
            "breakdown": list(self.breakdown),
        }


def resolve_source_key(extraction_source: str, anchored: bool = False) -> str:
    if extraction_source == "vector_text":
        return "vector_anchored" if anchored else "vector_heuristic"
    if extraction_source == "vision_titleblock":
        return "vision_crop"
    if extraction_source == "template_fields":
        return "ocr_crop"
    if extraction_source in CONFIDENCE_BASE:
        return extraction_source
    return "unknown"


def _route(confidence: float) -> Tuple[bool, bool, str]:
    """(flag_for_review, manual_flag, breakdown entry); tiers are exclusive."""
    if confidence < MANUAL_BELOW:
        return False, True, "→ manual_flag"
    if confidence < AUTO_ACCEPT_MIN:
        return True, False, "→ flag_for_review"
    return False, False, "→ auto_accept"


def calculate_confidence(
    extraction_source: str,
    sheet_number: Optional[str],
    sheet_title: Optional[str],
    *,
    both_labels_in_cluster: bool = False,
    title_clean: bool = False,
    truncation_suspected: bool = False,
    anchored: bool = False,
    anchored_bonus: float = 0.0,
) -> ConfidenceResult:
    """
    Deterministic QA gate.

    Starts from the base for the extraction source, applies the fixed
    adjustments in order (each one logged to `breakdown`), clamps to [0, 1] and
    routes to exactly one of auto-accept / flag_for_review / manual_flag.

    The clamp is applied once, after every adjustment. Each penalty therefore
    costs its full amount against the unclamped sum, but near the ceiling it
    costs less against the clamped score (a truncated title on an otherwise
    saturated sheet drops 1.08 to 0.88, i.e. 1.00 to 0.88). A penalty never
    raises the score.
    """
    key = resolve_source_key(extraction_source, anchored)
    confidence = CONFIDENCE_BASE[key]
    breakdown = [f"base({key})={confidence:.2f}"]

    if both_labels_in_cluster:
        confidence += 0.03
        breakdown.append("+0.03(both_labels_in_cluster)")

    if sheet_number and number_priority(sheet_number) == TOP_TIER_PRIORITY:
        confidence += 0.03
        breakdown.append("+0.03(top_tier_pattern)")

    if title_clean:
        confidence += 0.02
        breakdown.append("+0.02(clean_title)")

    has_number = bool(sheet_number)
    has_title = bool(sheet_title)
    if has_number != has_title:
        confidence -= 0.10
        breakdown.append("-0.10(missing_" + ("title" if has_number else "number") + ")")

    if truncation_suspected:
        confidence -= 0.20
        breakdown.append("-0.20(truncation_suspected)")

    if anchored_bonus:
        confidence += anchored_bonus
        breakdown.append(f"+{anchored_bonus:.2f}(anchored_bonus)")

    confidence = max(0.0, min(1.0, confidence))
    review, manual, entry = _route(confidence)
    breakdown.append(entry)
    return ConfidenceResult(confidence, review, manual, breakdown)


def cap_confidence(result: ConfidenceResult, cap: float, reason: str) -> ConfidenceResult:
    """Lower confidence to `cap` (never raise it) and re-route so the flags match."""
    if result.confidence <= cap:
        return result
    breakdown = [b for b in result.breakdown if not b.startswith("→")]
    breakdown.append(f"cap({reason})={cap:.2f}")
    review, manual, entry = _route(cap)
    breakdown.append(entry)
    return ConfidenceResult(cap, review, manual, breakdown)


def needs_vision_fallback(
    sheet_number: Optional[str],
    sheet_title: Optional[str],
    confidence: float,
    threshold: float = 0.80,
) -> Tuple[bool, Optional[str]]:
    if not sheet_number:
        return True, "no_sheet_number"
    if confidence < threshold:
        return True, "low_confidence"
    reason = title_rejection_reason(sheet_title)
    if reason is not None:
        return True, "invalid_title" if reason == "empty" else reason
    return False, None
