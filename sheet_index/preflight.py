from __future__ import annotations

import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Tuple

from sheet_index.page_renderer import DocumentOpenError, PageRenderer, PageRenderError, RendererConfig


log = logging.getLogger("Preflight")

TEXT_LAYER_MIN_WORDS = 30
FULL_SCAN_MAX_PAGES = 20
NO_TEXT_MAJORITY_BELOW = 0.5
MIXED_BELOW = 0.85
LARGE_SET_ABOVE = 250
VERY_LARGE_SET_ABOVE = 600


@dataclass
class PreflightFlag:
    code: str
    severity: str  # info | warn | error
    message: str


@dataclass
class PreflightRecommendation:
    code: str
    message: str


@dataclass
class PreflightMetrics:
    total_sheets: int = 0
    text_layer_coverage_ratio: float = 0.0
    sheets_with_text_layer: int = 0
    sheets_with_rotation: int = 0
    encrypted_or_error: bool = False


@dataclass
class PreflightReport:
    """Document readiness summary computed before sheet indexing."""
    status: str  # PASS | PASS_WITH_LIMITATIONS | FAIL
    flags: List[PreflightFlag] = field(default_factory=list)
    recommendations: List[PreflightRecommendation] = field(default_factory=list)
    metrics: PreflightMetrics = field(default_factory=PreflightMetrics)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def has_flag(self, code: str) -> bool:
        return any(f.code == code for f in self.flags)


def sample_pages(total: int) -> List[int]:
    """1-based page numbers to inspect: all of them for small sets, else a spread."""
    if total <= FULL_SCAN_MAX_PAGES:
        return list(range(1, total + 1))
    return [1, 2, 3, total // 2, total - 1, total]


def compute_metrics(renderer: PageRenderer) -> PreflightMetrics:
    total = renderer.page_count
    pages = sample_pages(total)
    with_text = 0
    with_rotation = 0
    for page_no in pages:
        if page_no < 1 or page_no > total:
            continue
        try:
            info = renderer.page_info(page_no - 1)
        except PageRenderError as e:
            # unreadable pages count against coverage
            log.debug("Preflight skipped page %d: %s", page_no, e)
            continue
        if len(info.text_items) >= TEXT_LAYER_MIN_WORDS:
            with_text += 1
        if info.rotation != 0:
            with_rotation += 1

    return PreflightMetrics(
        total_sheets=total,
        text_layer_coverage_ratio=with_text / len(pages) if pages else 0.0,
        sheets_with_text_layer=with_text,
        sheets_with_rotation=with_rotation,
        encrypted_or_error=False,
    )


def generate_flags(metrics: PreflightMetrics) -> Tuple[List[PreflightFlag], List[PreflightRecommendation]]:
    flags: List[PreflightFlag] = []
    recs: List[PreflightRecommendation] = []
    pct = round(metrics.text_layer_coverage_ratio * 100)

    if metrics.text_layer_coverage_ratio < NO_TEXT_MAJORITY_BELOW:
        flags.append(PreflightFlag(
            "NO_TEXT_LAYER_MAJORITY", "error",
            f"Only {pct}% of sheets have text layers. Document may be scanned/rasterized.",
        ))
        recs.append(PreflightRecommendation(
            "EXPORT_VECTOR_PDF",
            "Re-export from CAD/BIM as vector PDF with selectable text for best analysis results.",
        ))
    elif metrics.text_layer_coverage_ratio < MIXED_BELOW:
        flags.append(PreflightFlag(
            "MIXED_VECTOR_RASTER", "warn",
            f"{pct}% of sheets have text layers. Some sheets may be rasterized.",
        ))
        recs.append(PreflightRecommendation(
            "RE_EXPORT_WITH_TEXT",
            "Consider re-exporting mixed sheets as vector PDFs for improved text extraction.",
        ))

    if metrics.sheets_with_rotation > 0:
        flags.append(PreflightFlag(
            "ROTATION_DETECTED", "warn",
            f"{metrics.sheets_with_rotation} sheet(s) have non-standard rotation.",
        ))

    if metrics.total_sheets > VERY_LARGE_SET_ABOVE:
        flags.append(PreflightFlag(
            "VERY_LARGE_SET", "warn",
            f"Document contains {metrics.total_sheets} sheets. Processing may take longer.",
        ))
        recs.append(PreflightRecommendation(
            "SPLIT_SETS",
            "Consider splitting into discipline-specific sets for faster processing.",
        ))
    elif metrics.total_sheets > LARGE_SET_ABOVE:
        flags.append(PreflightFlag("LARGE_SET", "info", f"Document contains {metrics.total_sheets} sheets."))

    if metrics.total_sheets == 0:
        flags.append(PreflightFlag("EMPTY_DOCUMENT", "error", "Document contains no sheets."))

    return flags, recs


def determine_status(metrics: PreflightMetrics, flags: List[PreflightFlag]) -> str:
    if metrics.encrypted_or_error or metrics.total_sheets == 0:
        return "FAIL"
    if any(f.code == "NO_TEXT_LAYER_MAJORITY" and f.severity == "error" for f in flags):
        return "FAIL"
    if any(f.severity in ("warn", "error") for f in flags):
        return "PASS_WITH_LIMITATIONS"
    if metrics.text_layer_coverage_ratio >= MIXED_BELOW:
        return "PASS"
    return "PASS_WITH_LIMITATIONS"


def create_fail_report(code: str, message: str) -> PreflightReport:
    return PreflightReport(
        status="FAIL",
        flags=[PreflightFlag(code, "error", message)],
        recommendations=[],
        metrics=PreflightMetrics(encrypted_or_error=True),
    )


def build_report(metrics: PreflightMetrics) -> PreflightReport:
    flags, recs = generate_flags(metrics)
    return PreflightReport(determine_status(metrics, flags), flags, recs, metrics)


def run_preflight(pdf_path: str, renderer_cfg: Optional[RendererConfig] = None) -> PreflightReport:
    """Open the document and compute its readiness report. Never raises for a bad PDF."""
    renderer = PageRenderer(renderer_cfg)
    try:
        renderer.open(pdf_path)
    except DocumentOpenError as e:
        log.warning("Preflight could not open %s: %s", pdf_path, e)
        return create_fail_report("PDF_PARSE_ERROR", "Failed to parse PDF structure")
    with renderer:
        report = build_report(compute_metrics(renderer))
    log.info("Preflight %s: %s (%d sheets)", pdf_path, report.status, report.metrics.total_sheets)
    return report
