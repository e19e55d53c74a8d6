from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Tuple


# -------------------------
# Primitive types
# -------------------------
@dataclass
class TextItem:
    """A span of text from the page's vector text layer.

    Coordinates are in PDF space: origin bottom-left, units of 1/72 inch,
    `y` being the text baseline.
    """
    text: str
    x: float
    y: float
    width: Optional[float] = None
    height: Optional[float] = None


@dataclass
class PixelBBox:
    """Bounding box in render-pixel space (origin top-left)."""
    x: float
    y: float
    w: float
    h: float

    @property
    def right(self) -> float:
        return self.x + self.w

    @property
    def bottom(self) -> float:
        return self.y + self.h

    @property
    def area(self) -> float:
        return self.w * self.h

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x + self.w / 2.0, self.y + self.h / 2.0)

    def contains_point(self, px: float, py: float) -> bool:
        # inclusive on every edge
        return self.x <= px <= self.right and self.y <= py <= self.bottom

    def intersects(self, other: "PixelBBox") -> bool:
        return (
            self.x < other.right and self.right > other.x
            and self.y < other.bottom and self.bottom > other.y
        )

    def to_dict(self) -> Dict[str, float]:
        return {k: round(float(v), 2) for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PixelBBox":
        return cls(float(d["x"]), float(d["y"]), float(d["w"]), float(d["h"]))


# -------------------------
# Coordinate mapping
# -------------------------
def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def to_render_px(item: TextItem, viewport_h: float, scale: float) -> PixelBBox:
    """
    Map a PDF-space text item to render-pixel space.

    y is flipped from bottom-origin to top-origin; the returned `y` is the
    baseline position in pixels (not the top edge). Width/height are scaled
    only; a missing size maps to 0.
    """
    x = item.x * scale
    y = (viewport_h - item.y) * scale
    w = (item.width or 0.0) * scale
    h = (item.height or 0.0) * scale
    return PixelBBox(x, y, w, h)


def visual_center(item: TextItem, viewport_h: float, scale: float) -> Tuple[float, float]:
    """Approximate visual center of a text span (baseline raised by half height)."""
    px = to_render_px(item, viewport_h, scale)
    return (px.x + px.w / 2.0, px.y - px.h / 2.0)


def clamp_bbox(bbox: PixelBBox, render_w: int, render_h: int) -> PixelBBox:
    x = clamp(bbox.x, 0, render_w - 1)
    y = clamp(bbox.y, 0, render_h - 1)
    w = max(1, min(render_w - x, bbox.w))
    h = max(1, min(render_h - y, bbox.h))
    return PixelBBox(int(x), int(y), int(w), int(h))


def point_to_render_px(x: float, y: float, viewport_h: float, scale: float) -> Tuple[float, float]:
    return (x * scale, (viewport_h - y) * scale)
