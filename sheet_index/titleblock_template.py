from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import numpy as np

from sheet_index.geometry import PixelBBox
from sheet_index.page_renderer import crop_by_bbox
from sheet_index.sheet_validator import is_valid_title, validate_sheet_number, validate_sheet_title


log = logging.getLogger("TitleBlockTemplate")

# a cached or freshly calibrated template is only used at or above this
TEMPLATE_MIN_CONFIDENCE = 0.6
# calibrations below this are discarded and not stored
CALIBRATION_MIN_CONFIDENCE = 0.5
CALIBRATION_SAMPLES = 3
# a field box smaller than this share of the page is not a real title-block field
MIN_FIELD_FRACTION = 0.05


# -------------------------
# Types
# -------------------------
@dataclass
class NormalizedBBox:
    """Box in page-relative coordinates, every component in [0, 1]."""
    x: float
    y: float
    w: float
    h: float

    def to_pixels(self, render_w: int, render_h: int) -> PixelBBox:
        return PixelBBox(int(self.x * render_w), int(self.y * render_h), int(self.w * render_w), int(self.h * render_h))

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "w": self.w, "h": self.h}


def parse_normalized_bbox(raw: Any) -> Optional[NormalizedBBox]:
    """Accept {x, y, w, h} only when every value is numeric and inside the unit square."""
    if not isinstance(raw, dict):
        return None
    vals = []
    for key in ("x", "y", "w", "h"):
        v = raw.get(key)
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return None
        vals.append(float(v))
    x, y, w, h = vals
    if not (0 <= x <= 1 and 0 <= y <= 1 and 0 < w <= 1 and 0 < h <= 1):
        return None
    return NormalizedBBox(x, y, w, h)


@dataclass
class TitleBlockTemplate:
    """Where one discipline's title block keeps its sheet title and number values."""
    discipline: str
    bbox_sheet_title_value: Optional[NormalizedBBox]
    bbox_sheet_number_value: Optional[NormalizedBBox]
    confidence: float
    calibration_samples: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def usable(self) -> bool:
        return self.confidence >= TEMPLATE_MIN_CONFIDENCE

    def field_boxes(self) -> List[Tuple[str, NormalizedBBox]]:
        out = []
        if self.bbox_sheet_title_value is not None:
            out.append(("title", self.bbox_sheet_title_value))
        if self.bbox_sheet_number_value is not None:
            out.append(("number", self.bbox_sheet_number_value))
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "discipline": self.discipline,
            "template": {
                "bbox_sheet_title_value": self.bbox_sheet_title_value.to_dict() if self.bbox_sheet_title_value else None,
                "bbox_sheet_number_value": self.bbox_sheet_number_value.to_dict() if self.bbox_sheet_number_value else None,
            },
            "calibration_samples": list(self.calibration_samples),
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TitleBlockTemplate":
        boxes = d.get("template") or {}
        return cls(
            discipline=d["discipline"],
            bbox_sheet_title_value=parse_normalized_bbox(boxes.get("bbox_sheet_title_value")),
            bbox_sheet_number_value=parse_normalized_bbox(boxes.get("bbox_sheet_number_value")),
            confidence=float(d.get("confidence") or 0.0),
            calibration_samples=list(d.get("calibration_samples") or []),
        )


def template_from_detection(
    discipline: str,
    detection: Dict[str, Any],
    samples: List[Dict[str, Any]],
) -> Optional[TitleBlockTemplate]:
    """
    Build a template from a model's field-box answer.

    A missing or non-numeric confidence counts as 0.5. Returns None when the
    calibration is too weak to keep.
    """
    raw_conf = detection.get("confidence")
    if isinstance(raw_conf, (int, float)) and not isinstance(raw_conf, bool):
        confidence = max(0.0, min(1.0, float(raw_conf)))
    else:
        confidence = 0.5
    template = TitleBlockTemplate(
        discipline=discipline,
        bbox_sheet_title_value=parse_normalized_bbox(detection.get("bbox_sheet_title_value")),
        bbox_sheet_number_value=parse_normalized_bbox(detection.get("bbox_sheet_number_value")),
        confidence=confidence,
        calibration_samples=samples,
    )
    if not template.field_boxes() or confidence < CALIBRATION_MIN_CONFIDENCE:
        log.info("Calibration for %s rejected (confidence=%.2f)", discipline, confidence)
        return None
    return template


# -------------------------
# Fit check
# -------------------------
def default_title_block_region(render_w: int, render_h: int) -> PixelBBox:
    return PixelBBox(render_w // 2, render_h // 2, render_w // 2, render_h // 2)


def check_template_fit(
    template: TitleBlockTemplate,
    render_w: int,
    render_h: int,
    title_block_region: Optional[PixelBBox],
) -> Tuple[bool, Optional[str]]:
    """Every field box must be a plausible size and overlap the located title block."""
    boxes = template.field_boxes()
    if not boxes:
        return False, "no_template_bboxes"
    region = title_block_region or default_title_block_region(render_w, render_h)
    for _, box in boxes:
        px = box.to_pixels(render_w, render_h)
        if px.w < render_w * MIN_FIELD_FRACTION or px.h < render_h * MIN_FIELD_FRACTION:
            return False, "template_bbox_too_small"
        if not px.intersects(region):
            return False, "template_outside_titleblock_region"
    return True, None


# -------------------------
# Field reading
# -------------------------
@dataclass
class TemplateReading:
    sheet_number: Optional[str]
    sheet_title: Optional[str]
    success: bool
    calls: int = 0


async def read_template_fields(
    image: np.ndarray,
    template: TitleBlockTemplate,
    read_crop: Callable[[np.ndarray, Dict[str, Any]], Awaitable[Any]],
    meta: Optional[Dict[str, Any]] = None,
) -> TemplateReading:
    """
    Read sheet number and title from the template's field crops.

    The first field crop (title when the template has one) is read first; the
    number crop is only read when that answer carried no usable number.
    Success needs a valid number and a valid title.
    """
    h, w = image.shape[:2]
    meta = dict(meta or {})
    crops = [(name, crop_by_bbox(image, box.to_pixels(w, h))) for name, box in template.field_boxes()]
    if not crops:
        return TemplateReading(None, None, False)

    calls = 0
    number: Optional[str] = None
    title: Optional[str] = None
    for i, (name, crop) in enumerate(crops):
        if i > 0 and number is not None:
            break
        answer = await read_crop(crop, {**meta, "phase": f"template_extraction_{name}"})
        calls += 1
        if getattr(answer, "sheet_number", None):
            nv = validate_sheet_number(answer.sheet_number)
            if nv.valid:
                number = nv.value
        if title is None and is_valid_title(getattr(answer, "sheet_title", None)):
            tv = validate_sheet_title(answer.sheet_title)
            title = tv.value or answer.sheet_title

    return TemplateReading(number, title, bool(number and title), calls)

