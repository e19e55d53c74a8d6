from __future__ import annotations

import os
import re
import time
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import numpy as np
import pdfplumber
from pdf2image import convert_from_path
from PIL import Image

from sheet_index.geometry import PixelBBox, TextItem, clamp, clamp_bbox, to_render_px
from sheet_index.sheet_validator import SHEET_NUMBER_PATTERNS


class SheetIndexError(Exception):
    """Base class for sheet-index pipeline errors."""


class DocumentOpenError(SheetIndexError):
    """Raised when the PDF cannot be opened at all (fatal for the job)."""


class PageRenderError(SheetIndexError):
    """Raised when a single page fails to render or yield its text layer."""


@dataclass
class RendererConfig:
    # standard render width so pixel-space geometry is comparable across sheets
    target_width_px: int = 2000
    poppler_path: Optional[str] = field(default_factory=lambda: os.environ.get("POPPLER_PATH") or None)
    max_file_size_bytes: int = 512 * 1024 * 1024
    # keep_blank_chars joins "SHEET NO." into one span the way a PDF viewer shows it
    keep_blank_chars: bool = True
    use_text_flow: bool = True
    x_tolerance: float = 3.0
    y_tolerance: float = 3.0

    enable_logging: bool = True
    log_level: int = logging.INFO


@dataclass
class PageInfo:
    source_index: int
    viewport_w: float
    viewport_h: float
    rotation: int
    text_items: List[TextItem]


@dataclass
class RenderedPage:
    source_index: int
    image: np.ndarray  # H,W,3 uint8 RGB
    width: int
    height: int
    viewport_w: float
    viewport_h: float
    scale: float  # render px per PDF point
    rotation: int = 0
    text_items: List[TextItem] = field(default_factory=list)
    render_ms: float = 0.0


def _setup_logger(cfg: RendererConfig) -> logging.Logger:
    logger = logging.getLogger("PageRenderer")
    if not logger.handlers:
        h = logging.StreamHandler()
        h.setFormatter(logging.Formatter("[PageRenderer] %(asctime)s %(levelname)s - %(message)s"))
        logger.addHandler(h)
    logger.setLevel(cfg.log_level if cfg.enable_logging else logging.CRITICAL)
    return logger


def _check_magic_pdf(path: str) -> bool:
    """Check magic bytes for PDF header '%PDF-' within first 8 bytes."""
    try:
        with open(path, "rb") as f:
            head = f.read(8)
    except OSError:
        return False
    return head.startswith(b"%PDF-")


def _pil_to_numpy_rgb(img: Image.Image) -> np.ndarray:
    if img.mode != "RGB":
        img = img.convert("RGB")
    return np.asarray(img, dtype=np.uint8).copy()


def words_to_text_items(words: List[dict], page_height: float) -> List[TextItem]:
    """
    Convert pdfplumber words (top-origin) to PDF-space text items.

    The item's `y` is the baseline measured from the page bottom.
    """
    items: List[TextItem] = []
    for w in words:
        text = (w.get("text") or "").strip()
        if not text:
            continue
        x0, x1 = float(w["x0"]), float(w["x1"])
        top, bottom = float(w["top"]), float(w["bottom"])
        items.append(TextItem(
            text=text,
            x=x0,
            y=page_height - bottom,
            width=max(0.0, x1 - x0),
            height=max(0.0, bottom - top),
        ))
    return items


class PageRenderer:
    """
    Owns the open document for one job: the pdfplumber handle for the text layer
    and poppler (via pdf2image) for rasterization.

    Use as a context manager, or call open()/close() explicitly.
    """

    def __init__(self, cfg: Optional[RendererConfig] = None):
        self.cfg = cfg or RendererConfig()
        if self.cfg.target_width_px <= 0:
            raise ValueError("target_width_px must be positive")
        self.logger = _setup_logger(self.cfg)
        self._pdf: Optional[pdfplumber.PDF] = None
        self._path: Optional[str] = None

    # lifecycle -------------------------------------------------------
    def _validate_input_pdf(self, path: str) -> None:
        if not os.path.exists(path):
            raise DocumentOpenError(f"File does not exist: {path}")
        if not os.path.isfile(path):
            raise DocumentOpenError(f"Not a file: {path}")
        if os.path.splitext(path)[1].lower() != ".pdf":
            raise DocumentOpenError("Only PDF files are accepted")
        size = os.path.getsize(path)
        if size > self.cfg.max_file_size_bytes:
            raise DocumentOpenError(f"File too large: {size} bytes > {self.cfg.max_file_size_bytes}")
        if not _check_magic_pdf(path):
            raise DocumentOpenError("File does not have valid PDF magic bytes (corrupted or not PDF)")

    def open(self, pdf_path: str) -> "PageRenderer":
        path = str(pdf_path)
        self._validate_input_pdf(path)
        try:
            self._pdf = pdfplumber.open(path)
            # touch the page tree so broken/encrypted files fail here, not mid-loop
            _ = len(self._pdf.pages)
        except Exception as e:
            self.close()
            raise DocumentOpenError(f"Failed to open PDF: {e}") from e
        self._path = path
        self.logger.info("Opened %s (%d pages)", os.path.basename(path), self.page_count)
        return self

    def close(self) -> None:
        if self._pdf is not None:
            self._pdf.close()
        self._pdf = None

    def __enter__(self) -> "PageRenderer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def page_count(self) -> int:
        if self._pdf is None:
            raise SheetIndexError("Renderer has no open document")
        return len(self._pdf.pages)

    # per-page --------------------------------------------------------
    def page_info(self, source_index: int) -> PageInfo:
        """Text layer and geometry of one page, without rasterizing it."""
        if self._pdf is None:
            raise SheetIndexError("Renderer has no open document")
        try:
            page = self._pdf.pages[source_index]
            words = page.extract_words(
                keep_blank_chars=self.cfg.keep_blank_chars,
                use_text_flow=self.cfg.use_text_flow,
                x_tolerance=self.cfg.x_tolerance,
                y_tolerance=self.cfg.y_tolerance,
            )
            rotation = int(getattr(page, "rotation", 0) or 0) % 360
            return PageInfo(
                source_index=source_index,
                viewport_w=float(page.width),
                viewport_h=float(page.height),
                rotation=rotation,
                text_items=words_to_text_items(words, float(page.height)),
            )
        except IndexError:
            raise
        except Exception as e:
            raise PageRenderError(f"Failed to read text layer of page index {source_index}: {e}") from e

    def _rasterize(self, page_no: int, width: int) -> Image.Image:
        pages = convert_from_path(
            self._path,
            first_page=page_no,
            last_page=page_no,
            size=(width, None),
            fmt="png",
            poppler_path=self.cfg.poppler_path,
        )
        if not pages:
            raise PageRenderError(f"Renderer returned no image for page {page_no}")
        return pages[0]

    def render_page(self, source_index: int) -> RenderedPage:
        start = time.perf_counter()
        info = self.page_info(source_index)
        page_no = source_index + 1  # poppler is 1-based
        try:
            pil = self._rasterize(page_no, self.cfg.target_width_px)
        except Image.DecompressionBombError:
            half = max(500, self.cfg.target_width_px // 2)
            self.logger.warning("DecompressionBombError on page index %d; retrying at width=%d", source_index, half)
            try:
                pil = self._rasterize(page_no, half)
            except Exception as e:
                raise PageRenderError(f"Failed to render page index {source_index}: {e}") from e
        except PageRenderError:
            raise
        except Exception as e:
            raise PageRenderError(f"Failed to render page index {source_index}: {e}") from e

        image = _pil_to_numpy_rgb(pil)
        height, width = image.shape[:2]
        scale = width / info.viewport_w if info.viewport_w else 1.0
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        self.logger.debug("Rendered page index %d: %dx%d scale=%.3f in %.0f ms", source_index, width, height, scale, elapsed_ms)
        return RenderedPage(
            source_index=source_index,
            image=image,
            width=width,
            height=height,
            viewport_w=info.viewport_w,
            viewport_h=info.viewport_h,
            scale=scale,
            rotation=info.rotation,
            text_items=info.text_items,
            render_ms=elapsed_ms,
        )

# -------------------------
# Title-block crops
# -------------------------
CROP_STRATEGIES = ("vector_label", "number_anchor", "fallback_br", "fallback_bottom_strip", "unknown")

_LOCATOR_NUMBER = re.compile(r"\bSHEET\s*(NO|NUMBER)\b", re.IGNORECASE)
_LOCATOR_TITLE = re.compile(r"\bSHEET\s*TITLE\b", re.IGNORECASE)
_SHEET_TOKEN = re.compile(r"\bSHEET\b", re.IGNORECASE)


def crop_by_bbox(image: np.ndarray, bbox: PixelBBox) -> np.ndarray:
    h, w = image.shape[:2]
    b = clamp_bbox(bbox, w, h)
    return image[int(b.y):int(b.y + b.h), int(b.x):int(b.x + b.w)].copy()


def number_anchor_bbox(anchor: Tuple[float, float], render_w: int, render_h: int) -> PixelBBox:
    """
    Title-block box around a detected sheet number (render pixels).

    The number sits in the lower right of its title block, so the box extends
    mostly up and to the left of it. Sized 24% x 18% of the page, kept on-page.
    """
    bw, bh = int(render_w * 0.24), int(render_h * 0.18)
    ax, ay = anchor
    x = clamp(ax - bw * 0.75, 0, max(0, render_w - bw))
    y = clamp(ay - bh * 0.60, 0, max(0, render_h - bh))
    return clamp_bbox(PixelBBox(int(x), int(y), bw, bh), render_w, render_h)


def locate_title_block_by_vector_labels(
    items: List[TextItem],
    viewport_h: float,
    scale: float,
    render_w: int,
    render_h: int,
) -> Tuple[Optional[PixelBBox], str]:
    if not items:
        return None, "no_text_items"
    hits = [
        i for i in items
        if _LOCATOR_NUMBER.search(i.text) or _LOCATOR_TITLE.search(i.text) or _SHEET_TOKEN.search(i.text)
    ]
    if not hits:
        return None, "no_label_hits"

    # bottom-right-most hit is where title blocks live
    pts = [to_render_px(i, viewport_h, scale) for i in hits]
    anchor = max(pts, key=lambda p: p.x + p.y)
    raw = PixelBBox(int(anchor.x - 200), int(anchor.y - 500), 1100, 800)
    bbox = clamp_bbox(raw, render_w, render_h)
    if bbox.w < render_w * 0.05 or bbox.h < render_h * 0.05:
        return None, "bbox_too_small"
    return bbox, "vector_labels"


def validate_crop_by_vector_text(
    items: List[TextItem],
    bbox: PixelBBox,
    viewport_h: float,
    scale: float,
) -> Tuple[bool, str]:
    """A crop is valid when it holds a SHEET token or something shaped like a sheet number."""
    if not items:
        return False, "no_text_layer"
    in_box = []
    for item in items:
        p = to_render_px(item, viewport_h, scale)
        if bbox.contains_point(p.x, p.y):
            in_box.append(item.text)
    if any(_SHEET_TOKEN.search(t) for t in in_box):
        return True, "found_sheet_token"
    for t in in_box:
        if any(pattern.search(t) for pattern, _ in SHEET_NUMBER_PATTERNS):
            return True, "found_sheet_number_pattern"
    return False, "no_sheet_token_or_number"


@dataclass
class CropAttempt:
    strategy: str
    bbox: PixelBBox
    label: str


@dataclass
class CropOutcome:
    image: np.ndarray
    crop_valid: bool
    crop_reason: str
    crop_strategy: str
    attempt_count: int
    attempt_paths: List[str] = field(default_factory=list)
    locator_bbox: Optional[PixelBBox] = None
    crop_asset_path: Optional[str] = None
    bbox: Optional[PixelBBox] = None  # region the returned crop was cut from


def plan_crop_attempts(
    render_w: int,
    render_h: int,
    locator_bbox: Optional[PixelBBox],
    locator_reason: str,
    number_anchor: Optional[Tuple[float, float]] = None,
) -> List[CropAttempt]:
    attempts: List[CropAttempt] = []
    if locator_bbox is not None:
        attempts.append(CropAttempt("vector_label", locator_bbox, "vector_label"))
    elif number_anchor is not None:
        attempts.append(CropAttempt(
            "number_anchor",
            number_anchor_bbox(number_anchor, render_w, render_h),
            f"number_anchor (reason={locator_reason})",
        ))
    else:
        attempts.append(CropAttempt(
            "fallback_br",
            PixelBBox(int(render_w * 0.5), int(render_h * 0.5), int(render_w * 0.5), int(render_h * 0.5)),
            f"fallback_br_50 (reason={locator_reason})",
        ))
    attempts.append(CropAttempt(
        "fallback_br",
        PixelBBox(int(render_w * 0.4), int(render_h * 0.4), int(render_w * 0.6), int(render_h * 0.6)),
        "fallback_br_60",
    ))
    attempts.append(CropAttempt(
        "fallback_bottom_strip",
        PixelBBox(0, int(render_h * 0.65), render_w, int(render_h * 0.35)),
        "fallback_bottom_strip_35",
    ))
    return attempts


async def build_title_block_crop_pipeline(
    page: RenderedPage,
    *,
    cluster_bbox: Optional[PixelBBox] = None,
    number_anchor: Optional[Tuple[float, float]] = None,
    save_attempt: Optional[Callable[[int, np.ndarray], Optional[str]]] = None,
    vision_check: Optional[Callable[[np.ndarray, Dict[str, Any]], Awaitable[Any]]] = None,
) -> CropOutcome:
    """
    Try up to three progressively larger crops until one provably holds the title block.

    Validation is deterministic against the vector text layer. Raster-only pages
    fall back to `vision_check` (any value read back counts as valid). When no
    label locates the block, the first attempt is centered on `number_anchor`
    (the sheet number in render pixels) if one is known. When no attempt
    validates, the last (largest) crop is returned marked invalid.
    """
    if cluster_bbox is not None and cluster_bbox.w >= page.width * 0.05 and cluster_bbox.h >= page.height * 0.05:
        locator_bbox, locator_reason = clamp_bbox(cluster_bbox, page.width, page.height), "label_cluster"
    else:
        locator_bbox, locator_reason = locate_title_block_by_vector_labels(
            page.text_items, page.viewport_h, page.scale, page.width, page.height,
        )
    attempts = plan_crop_attempts(page.width, page.height, locator_bbox, locator_reason, number_anchor)

    attempt_paths: List[str] = []
    path_by_attempt: Dict[int, str] = {}
    chosen: Optional[Tuple[int, CropAttempt, np.ndarray]] = None
    crop_reason = ""

    for n, attempt in enumerate(attempts, start=1):
        crop = crop_by_bbox(page.image, attempt.bbox)
        if save_attempt is not None:
            path = save_attempt(n, crop)
            if path:
                attempt_paths.append(path)
                path_by_attempt[n] = path

        valid, reason = validate_crop_by_vector_text(page.text_items, attempt.bbox, page.viewport_h, page.scale)
        if not valid and reason == "no_text_layer":
            if vision_check is not None:
                answer = await vision_check(crop, {"phase": "crop_check", "attempt": n, "crop_strategy": attempt.strategy})
                if getattr(answer, "sheet_number", None) or getattr(answer, "sheet_title", None):
                    valid, reason = True, "vision_check_found_values"
                else:
                    reason = "vision_check_no_values"

        crop_reason = f"{attempt.label}: {reason}"
        if valid:
            chosen = (n, attempt, crop)
            break

    crop_valid = chosen is not None
    if chosen is None:
        last = attempts[-1]
        chosen = (len(attempts), last, crop_by_bbox(page.image, last.bbox))

    n, attempt, crop = chosen
    return CropOutcome(
        image=crop,
        crop_valid=crop_valid,
        crop_reason=crop_reason if crop_valid else f"invalid_crop: {crop_reason}",
        crop_strategy=attempt.strategy,
        attempt_count=n,
        attempt_paths=attempt_paths,
        locator_bbox=locator_bbox,
        crop_asset_path=path_by_attempt.get(n),
        bbox=attempt.bbox,
    )
