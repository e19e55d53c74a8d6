from __future__ import annotations

import os
import json
import time
import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

import numpy as np

from sheet_index.anchored_extractor import extract_sheet_number_anchored, extract_sheet_title_anchored, split_label_hits
from sheet_index.asset_store import (
    AssetStoreConfig,
    AssetStoreError,
    LocalAssetStore,
    crop_attempt_path,
    render_path,
    titleblock_path,
)
from sheet_index.confidence import (
    FAIL_CROP_CAP,
    TEMPLATE_SUCCESS_CAP,
    VISION_FAILURE_CAP,
    VISION_SUCCESS_CAP,
    ConfidenceResult,
    calculate_confidence,
    cap_confidence,
    needs_vision_fallback,
    resolve_source_key,
)
from sheet_index.db_engine import DatabaseManager, DBConfig
from sheet_index.geometry import point_to_render_px
from sheet_index.heuristic_extractor import extract_from_text_items
from sheet_index.inference import discipline_prefix, infer_discipline, infer_sheet_kind
from sheet_index.label_clustering import build_clusters, expand_cluster_bbox, select_best_cluster
from sheet_index.label_detector import detect_label_hits
from sheet_index.page_renderer import (
    CropOutcome,
    PageRenderer,
    RenderedPage,
    RendererConfig,
    build_title_block_crop_pipeline,
    crop_by_bbox,
)
from sheet_index.preflight import run_preflight
from sheet_index.records import ExtractionResult, SheetIndexRow, SheetIndexStore, placeholder_row
from sheet_index.sheet_validator import (
    detect_boilerplate_titles,
    is_valid_title,
    validate_sheet_number,
    validate_sheet_title,
)
from sheet_index.titleblock_template import (
    CALIBRATION_SAMPLES,
    TitleBlockTemplate,
    check_template_fit,
    read_template_fields,
    template_from_detection,
)
from sheet_index.vision_extractor import ExtractorConfig, VisionExtractor, VisionResult


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# -------------------------
# Configuration
# -------------------------
@dataclass
class PipelineConfig:
    render_width_px: int = 2000
    # vision is asked for help below this first-pass confidence
    vision_threshold: float = field(default_factory=lambda: float(os.environ.get("SHEET_INDEX_VISION_THRESHOLD", "0.80")))
    boilerplate_min_title_length: int = 30
    boilerplate_max_repeats: int = 8
    persist_batch_size: int = 50
    use_vision_fallback: bool = field(default_factory=lambda: _env_flag("SHEET_INDEX_USE_VISION", True))
    # per-discipline title-block templates are tried before a whole-crop vision read
    use_templates: bool = field(default_factory=lambda: _env_flag("SHEET_INDEX_USE_TEMPLATES", True))

    enable_logging: bool = True
    log_level: int = logging.INFO


def _setup_logger(cfg: PipelineConfig) -> logging.Logger:
    logger = logging.getLogger("SheetIndexOrchestrator")
    if not logger.handlers:
        h = logging.StreamHandler()
        h.setFormatter(logging.Formatter("[SheetIndexOrchestrator] %(asctime)s %(levelname)s - %(message)s"))
        logger.addHandler(h)
    logger.setLevel(cfg.log_level if cfg.enable_logging else logging.CRITICAL)
    return logger


# -------------------------
# Per-page state carried between passes
# -------------------------
@dataclass
class PageExtraction:
    """First-pass outcome for one page plus what the second pass needs to revisit it."""
    source_index: int
    result: ExtractionResult
    gate: ConfidenceResult
    both_labels: bool = False
    anchored: bool = False
    anchored_bonus: float = 0.0
    title_clean: bool = False
    truncation_suspected: bool = False
    cluster_bbox: Any = None
    number_anchor: Optional[Tuple[float, float]] = None  # render px
    render_size: Tuple[int, int] = (0, 0)
    crop: Optional[CropOutcome] = None
    crop_image: Optional[np.ndarray] = None
    render_asset_path: Optional[str] = None
    title_block_asset_path: Optional[str] = None
    vision_calls: int = 0


def score_extraction(
    result: ExtractionResult,
    *,
    both_labels: bool = False,
    anchored: bool = False,
    anchored_bonus: float = 0.0,
    title_clean: Optional[bool] = None,
    truncation_suspected: Optional[bool] = None,
) -> ConfidenceResult:
    """Run the QA gate over a result; title flags are derived from the title unless given."""
    if title_clean is None or truncation_suspected is None:
        tv = validate_sheet_title(result.sheet_title) if result.sheet_title else None
        if title_clean is None:
            title_clean = bool(tv and tv.clean)
        if truncation_suspected is None:
            truncation_suspected = bool(tv and tv.truncation_suspected)
    return calculate_confidence(
        result.extraction_source,
        result.sheet_number,
        result.sheet_title,
        both_labels_in_cluster=both_labels,
        title_clean=title_clean,
        truncation_suspected=truncation_suspected,
        anchored=anchored,
        anchored_bonus=anchored_bonus,
    )


def _apply_gate(result: ExtractionResult, gate: ConfidenceResult) -> None:
    result.confidence = gate.confidence
    result.extraction_notes["confidence_breakdown"] = list(gate.breakdown)
    result.extraction_notes["flag_for_review"] = gate.flag_for_review
    result.extraction_notes["manual_flag"] = gate.manual_flag


def extract_page(page: RenderedPage) -> PageExtraction:
    """
    Geometric first pass for one rendered page.

    Label-anchored extraction runs first; the whole-page heuristic only fills
    whichever of number/title the anchors did not produce. The returned gate is
    the deterministic QA score before any vision help.
    """
    t0 = time.perf_counter()
    items = page.text_items
    notes: Dict[str, Any] = {}
    fallback_path: List[str] = ["anchored"]

    hits = detect_label_hits(items, page.viewport_h, page.scale)
    clusters = build_clusters(hits)
    selected = select_best_cluster(clusters)
    notes["label_hits"] = [h.to_dict() for h in hits]
    notes["clusters"] = [c.to_dict() for c in clusters]
    notes["selected_cluster_index"] = clusters.index(selected) if selected is not None else None

    # a coherent title block narrows the search to its own labels
    number_labels, title_labels = split_label_hits(selected.members if selected is not None else hits)
    a_number = extract_sheet_number_anchored(number_labels, items, page.viewport_h, page.scale)
    a_title = extract_sheet_title_anchored(title_labels, items, page.viewport_h, page.scale)
    notes["anchored_regions"] = [r.to_dict() for r in a_number.regions + a_title.regions]

    sheet_number = a_number.value
    sheet_title = a_title.value
    title_clean = a_title.clean
    truncation = a_title.truncation_suspected
    number_pos = (a_number.item.x, a_number.item.y) if a_number.item is not None else None

    heuristic = None
    heuristic_fields: List[str] = []
    if not sheet_number or not sheet_title:
        fallback_path.append("heuristic")
        heuristic = extract_from_text_items(items, page.viewport_w, page.viewport_h)
        notes.update(heuristic.notes)
        if not sheet_number and heuristic.sheet_number:
            nv = validate_sheet_number(heuristic.sheet_number)
            if nv.valid:
                sheet_number = nv.value
                number_pos = heuristic.number_position
                heuristic_fields.append("sheet_number")
            else:
                notes["heuristic_number_rejected"] = nv.rejection_reason.value if nv.rejection_reason else "other"
        if not sheet_title and heuristic.sheet_title:
            tv = validate_sheet_title(heuristic.sheet_title)
            sheet_title = tv.value if tv.valid else heuristic.sheet_title
            title_clean = tv.clean
            truncation = tv.truncation_suspected
            heuristic_fields.append("sheet_title")
        notes["heuristic_confidence"] = heuristic.confidence
        notes["heuristic_fields"] = heuristic_fields

    # a result is anchored only when no field of it came from the heuristic
    anchored = bool(a_number.value or a_title.value) and not heuristic_fields
    anchored_bonus = max(a_number.confidence_bonus, a_title.confidence_bonus) if anchored else 0.0

    rejection = next((r.rejection_reason for r in a_title.regions if r.rejection_reason), None)
    if rejection and "rejection_reason" not in notes:
        notes["rejection_reason"] = rejection

    result = ExtractionResult(
        sheet_number=sheet_number,
        sheet_title=sheet_title,
        discipline=infer_discipline(sheet_number, sheet_title),
        sheet_kind=infer_sheet_kind(sheet_title),
        extraction_source="vector_text",
        extraction_notes=notes,
    )
    both_labels = bool(selected is not None and selected.has_both_labels)
    gate = score_extraction(
        result,
        both_labels=both_labels,
        anchored=anchored,
        anchored_bonus=anchored_bonus,
        title_clean=title_clean,
        truncation_suspected=truncation,
    )
    if heuristic_fields:
        # the heuristic's own certainty bounds any result it contributed to
        gate = cap_confidence(gate, heuristic.confidence, "heuristic")

    notes["source_key"] = resolve_source_key("vector_text", anchored)
    notes["fallback_path"] = fallback_path
    notes["truncation_suspected"] = truncation
    notes["rotation_issue"] = page.rotation != 0
    notes["timing_ms"] = {
        "render": round(page.render_ms, 1),
        "extract": round((time.perf_counter() - t0) * 1000.0, 1),
    }
    _apply_gate(result, gate)

    return PageExtraction(
        source_index=page.source_index,
        result=result,
        gate=gate,
        both_labels=both_labels,
        anchored=anchored,
        anchored_bonus=anchored_bonus,
        title_clean=title_clean,
        truncation_suspected=truncation,
        cluster_bbox=expand_cluster_bbox(selected, page.width, page.height) if selected is not None else None,
        number_anchor=point_to_render_px(*number_pos, page.viewport_h, page.scale) if number_pos else None,
        render_size=(page.width, page.height),
    )


# -------------------------
# Pipeline
# -------------------------
class SheetIndexPipeline:
    """
    Two-pass sheet-index job over one PDF.

    Pass one extracts every page geometrically. Pass two looks across all
    first-pass titles for boilerplate, then asks the vision model about pages
    that are still unidentified, low-confidence or boilerplate. Every page
    yields exactly one row; a page that fails gets a placeholder row.
    """

    def __init__(
        self,
        cfg: Optional[PipelineConfig] = None,
        renderer_cfg: Optional[RendererConfig] = None,
        vision: Optional[VisionExtractor] = None,
        store: Optional[SheetIndexStore] = None,
        assets: Optional[LocalAssetStore] = None,
        renderer: Optional[PageRenderer] = None,
    ):
        self.cfg = cfg or PipelineConfig()
        self.logger = _setup_logger(self.cfg)
        self.renderer_cfg = renderer_cfg or RendererConfig(target_width_px=self.cfg.render_width_px)
        self.vision = vision
        self.store = store
        self.assets = assets
        self._renderer = renderer

    @property
    def vision_enabled(self) -> bool:
        return self.cfg.use_vision_fallback and self.vision is not None

    # helpers ----------------------------------------------------------
    def _save_asset(self, rel_path: str, image: np.ndarray) -> Optional[str]:
        if self.assets is None:
            return None
        try:
            return self.assets.save_png(rel_path, image)
        except AssetStoreError as e:
            self.logger.warning("Asset upload failed for %s: %s", rel_path, e)
            return None

    async def _vision(self, state: PageExtraction, image: np.ndarray, meta: Dict[str, Any]) -> VisionResult:
        state.vision_calls += 1
        return await self.vision.extract_titleblock(image, meta)

    # first pass -------------------------------------------------------
    async def _first_pass_page(self, renderer: PageRenderer, project_id: str, job_id: str, source_index: int) -> PageExtraction:
        page = renderer.render_page(source_index)
        state = extract_page(page)
        base_meta = {"job_id": job_id, "project_id": project_id, "source_index": source_index}

        state.render_asset_path = self._save_asset(render_path(project_id, job_id, source_index), page.image)

        def save_attempt(n: int, crop: np.ndarray) -> Optional[str]:
            return self._save_asset(crop_attempt_path(project_id, job_id, source_index, n), crop)

        async def check_crop(crop: np.ndarray, meta: Dict[str, Any]) -> VisionResult:
            return await self._vision(state, crop, {**base_meta, **meta})

        crop = await build_title_block_crop_pipeline(
            page,
            cluster_bbox=state.cluster_bbox,
            number_anchor=state.number_anchor,
            save_attempt=save_attempt,
            vision_check=check_crop if self.vision_enabled else None,
        )
        state.crop = crop
        state.title_block_asset_path = self._save_asset(titleblock_path(project_id, job_id, source_index), crop.image)
        if not crop.crop_asset_path:
            crop.crop_asset_path = state.title_block_asset_path

        needed, _ = needs_vision_fallback(
            state.result.sheet_number, state.result.sheet_title, state.gate.confidence, self.cfg.vision_threshold,
        )
        # full renders are not held across pages; only crops that will be sent to vision
        state.crop_image = crop.image if needed else None
        return state

    # second pass ------------------------------------------------------
    async def _second_pass_page(
        self,
        renderer: PageRenderer,
        state: PageExtraction,
        project_id: str,
        job_id: str,
        boilerplate: Set[int],
        templates: Optional[Dict[str, TitleBlockTemplate]] = None,
    ) -> SheetIndexRow:
        result = state.result
        notes = result.extraction_notes
        gate = state.gate
        crop = state.crop
        is_boilerplate = state.source_index in boilerplate
        if is_boilerplate:
            notes["boilerplate_detected"] = True

        needed, reason = needs_vision_fallback(
            result.sheet_number, result.sheet_title, gate.confidence, self.cfg.vision_threshold,
        )
        crop_valid = bool(crop and crop.crop_valid)
        crop_reason = crop.crop_reason if crop else ""

        template_gate = None
        if (needed or is_boilerplate) and self.vision_enabled:
            notes["vision_reason"] = "boilerplate_title" if is_boilerplate else reason
            template = (templates or {}).get(discipline_prefix(result.sheet_number))
            if template is not None:
                template_gate = await self._try_template(renderer, state, template, project_id, job_id)

        if template_gate is not None:
            gate = template_gate
        elif (needed or is_boilerplate) and self.vision_enabled:
            fallback_path = notes.setdefault("fallback_path", [])

            if not crop_valid:
                # no provable title block: do not let the model guess from an arbitrary region
                fallback_path.append("fail_crop")
                result.sheet_title = None
                result.sheet_kind = infer_sheet_kind(None)
                result.extraction_source = "fail_crop"
                notes["crop_failed"] = True
                gate = cap_confidence(score_extraction(result), FAIL_CROP_CAP, "fail_crop")
            else:
                fallback_path.append("vision")
                image = state.crop_image
                if image is None:
                    image = crop_by_bbox(renderer.render_page(state.source_index).image, crop.bbox)
                vision = await self._vision(state, image, {
                    "job_id": job_id,
                    "project_id": project_id,
                    "source_index": state.source_index,
                    "phase": "vision_fallback",
                    "crop_strategy": crop.crop_strategy,
                    "attempt": crop.attempt_count,
                })
                gate = self._apply_vision(state, vision)
        else:
            crop_valid = True
            crop_reason = "vector_text_sufficient"

        notes["vision_calls"] = state.vision_calls
        notes["crop_attempt_paths"] = list(crop.attempt_paths) if crop else []
        notes["crop_locator"] = crop.locator_bbox.to_dict() if crop and crop.locator_bbox else None
        _apply_gate(result, gate)
        state.crop_image = None

        return SheetIndexRow.from_result(
            project_id,
            job_id,
            state.source_index,
            result,
            sheet_render_asset_path=state.render_asset_path,
            title_block_asset_path=state.title_block_asset_path,
            crop_asset_path=crop.crop_asset_path if crop else None,
            crop_valid=crop_valid,
            crop_reason=crop_reason,
            crop_strategy=crop.crop_strategy if crop else "unknown",
            attempt_count=crop.attempt_count if crop else 0,
            flag_for_review=gate.flag_for_review,
            manual_flag=gate.manual_flag,
        )

    async def _try_template(
        self,
        renderer: PageRenderer,
        state: PageExtraction,
        template: TitleBlockTemplate,
        project_id: str,
        job_id: str,
    ) -> Optional[ConfidenceResult]:
        """Read the page through its discipline template; None means fall through to vision."""
        result = state.result
        notes = result.extraction_notes
        render_w, render_h = state.render_size
        region = state.crop.locator_bbox if state.crop else None
        ok, reject_reason = check_template_fit(template, render_w, render_h, region)
        notes["template_discipline"] = template.discipline
        if not ok:
            notes["template_rejected"] = True
            notes["template_reject_reason"] = reject_reason
            return None

        notes["template_used"] = True
        notes.setdefault("fallback_path", []).append("template")
        page = renderer.render_page(state.source_index)

        async def read_crop(crop: np.ndarray, meta: Dict[str, Any]) -> VisionResult:
            return await self._vision(state, crop, meta)

        reading = await read_template_fields(page.image, template, read_crop, {
            "job_id": job_id,
            "project_id": project_id,
            "source_index": state.source_index,
            "discipline": template.discipline,
        })
        if not reading.success:
            notes["template_failed"] = True
            return None

        result.sheet_number = reading.sheet_number
        result.sheet_title = reading.sheet_title
        result.extraction_source = "template_fields"
        result.discipline = infer_discipline(result.sheet_number, result.sheet_title)
        result.sheet_kind = infer_sheet_kind(result.sheet_title)
        notes["template_succeeded"] = True
        return cap_confidence(score_extraction(result), TEMPLATE_SUCCESS_CAP, "template")

    async def _load_template(self, job_id: str, discipline: str) -> Optional[TitleBlockTemplate]:
        if self.store is None:
            return None
        cached = await self.store.fetch_titleblock_template(job_id, discipline)
        if not cached:
            return None
        template = TitleBlockTemplate.from_dict(cached)
        return template if template.usable else None

    async def _calibrate_templates(
        self,
        renderer: PageRenderer,
        states: Dict[int, PageExtraction],
        boilerplate: Set[int],
        project_id: str,
        job_id: str,
    ) -> Dict[str, TitleBlockTemplate]:
        """
        Load or calibrate one title-block template per discipline.

        Only disciplines with at least one sheet that will go to vision are
        calibrated. A stored template for the job is reused; otherwise the
        model marks the field boxes on the discipline's first sheet and the
        answer is stored when it is strong enough.
        """
        groups: Dict[str, List[PageExtraction]] = {}
        for _, state in sorted(states.items()):
            groups.setdefault(discipline_prefix(state.result.sheet_number), []).append(state)

        templates: Dict[str, TitleBlockTemplate] = {}
        for discipline, group in groups.items():
            if discipline == "UNKNOWN":
                continue
            wanted = [
                s for s in group
                if s.source_index in boilerplate or needs_vision_fallback(
                    s.result.sheet_number, s.result.sheet_title, s.gate.confidence, self.cfg.vision_threshold,
                )[0]
            ]
            if not wanted:
                continue

            template = await self._load_template(job_id, discipline)
            if template is None:
                samples = [
                    {"source_index": s.source_index, "sheet_number": s.result.sheet_number}
                    for s in group[:CALIBRATION_SAMPLES]
                ]
                page = renderer.render_page(group[0].source_index)
                detection = await self.vision.detect_titleblock_template(page.image, discipline, {
                    "job_id": job_id,
                    "project_id": project_id,
                    "source_index": group[0].source_index,
                    "phase": "template_calibration",
                })
                template = template_from_detection(discipline, detection, samples)
                if template is not None and self.store is not None:
                    await self.store.upsert_titleblock_template(project_id, job_id, template.to_dict())

            if template is not None and template.usable:
                templates[discipline] = template
                self.logger.info("Using title-block template for discipline %s (confidence=%.2f)", discipline, template.confidence)
        return templates

    def _apply_vision(self, state: PageExtraction, vision: VisionResult) -> ConfidenceResult:
        """Merge a vision answer into the page result and return the re-scored gate."""
        result = state.result
        notes = result.extraction_notes
        notes["vision_used"] = True
        first_pass_number = result.sheet_number

        number = validate_sheet_number(vision.sheet_number) if vision.sheet_number else None
        if number is not None and number.valid and is_valid_title(vision.sheet_title):
            title = validate_sheet_title(vision.sheet_title)
            result.sheet_number = number.value
            result.sheet_title = title.value or vision.sheet_title
            result.extraction_source = "vision_titleblock"
            notes["vision_succeeded"] = True
        elif number is not None and number.valid and not first_pass_number:
            result.sheet_number = number.value
            result.extraction_source = "vision_titleblock"
            notes["vision_succeeded"] = True
            notes["vision_partial"] = True
        else:
            # geometric values stand; confidence is capped as unconfirmed
            notes["vision_failed"] = True
            if vision.error:
                notes["vision_error"] = vision.error
            return cap_confidence(state.gate, VISION_FAILURE_CAP, "vision_failed")

        result.discipline = infer_discipline(result.sheet_number, result.sheet_title)
        result.sheet_kind = infer_sheet_kind(result.sheet_title)
        return cap_confidence(score_extraction(result), VISION_SUCCESS_CAP, "vision")

    # entry point ------------------------------------------------------
    async def run(self, pdf_path: str, project_id: str, job_id: str) -> List[SheetIndexRow]:
        start_total = time.perf_counter()
        renderer = self._renderer or PageRenderer(self.renderer_cfg)
        renderer.open(pdf_path)  # DocumentOpenError is fatal for the job

        with renderer:
            total = renderer.page_count
            self.logger.info("Indexing %d sheets for job %s", total, job_id)

            states: Dict[int, PageExtraction] = {}
            rows: Dict[int, SheetIndexRow] = {}

            t_pass = time.perf_counter()
            for source_index in range(total):
                try:
                    states[source_index] = await self._first_pass_page(renderer, project_id, job_id, source_index)
                except Exception as e:
                    self.logger.exception("First pass failed for source_index=%d", source_index)
                    rows[source_index] = placeholder_row(project_id, job_id, source_index, f"first_pass_failed: {e}")
            self.logger.info("✓ First pass over %d sheets in %.3fs", total, time.perf_counter() - t_pass)

            boilerplate = detect_boilerplate_titles(
                ((i, s.result.sheet_title) for i, s in states.items()),
                min_length=self.cfg.boilerplate_min_title_length,
                max_repeats=self.cfg.boilerplate_max_repeats,
            )
            if boilerplate:
                self.logger.info("Detected %d sheets with boilerplate titles", len(boilerplate))

            templates: Dict[str, TitleBlockTemplate] = {}
            if self.vision_enabled and self.cfg.use_templates:
                templates = await self._calibrate_templates(renderer, states, boilerplate, project_id, job_id)

            t_pass = time.perf_counter()
            for source_index, state in sorted(states.items()):
                try:
                    rows[source_index] = await self._second_pass_page(
                        renderer, state, project_id, job_id, boilerplate, templates,
                    )
                except Exception as e:
                    self.logger.exception("Second pass failed for source_index=%d", source_index)
                    rows[source_index] = placeholder_row(project_id, job_id, source_index, f"second_pass_failed: {e}")
            self.logger.info("✓ Second pass in %.3fs", time.perf_counter() - t_pass)

        ordered = [rows[i] for i in range(total)]
        if self.store is not None:
            t_store = time.perf_counter()
            written = await self.store.upsert_sheet_rows(ordered, batch_size=self.cfg.persist_batch_size)
            self.logger.info("✓ Persisted %d rows in %.3fs", written, time.perf_counter() - t_store)

        self.logger.info("✓ Sheet index for job %s completed in %.3fs", job_id, time.perf_counter() - start_total)
        return ordered


# -------------------------
# Sanitizer: drop image arrays before JSON dump
# -------------------------
def _sanitize_for_json(obj, keys_to_remove=("image",)):
    if obj is None or isinstance(obj, (str, bool, int, float)):
        return obj
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, dict):
        return {k: _sanitize_for_json(v, keys_to_remove) for k, v in obj.items() if k not in keys_to_remove}
    if isinstance(obj, (list, tuple, set)):
        return [_sanitize_for_json(x, keys_to_remove) for x in obj]
    if isinstance(obj, np.ndarray):
        return "<IMAGE_ARRAY_REMOVED>"
    return str(obj)


def _save_results(result: Dict[str, Any], pdf_path: str, save_path: str, logger: logging.Logger) -> None:
    outp = Path(save_path)
    if outp.is_dir():
        outp = outp / f"{Path(pdf_path).stem}.sheet_index.json"
    outp.parent.mkdir(parents=True, exist_ok=True)
    with open(outp, "w", encoding="utf-8") as f:
        json.dump(_sanitize_for_json(result), f, indent=2, ensure_ascii=False)
    logger.info("✓ Saved sheet index results to %s", outp)


# -------------------------
# Synchronous wrapper
# -------------------------
def orchestrate_sheet_index(
    pdf_path: str,
    project_id: str,
    job_id: str,
    pipeline_cfg: Optional[PipelineConfig] = None,
    renderer_cfg: Optional[RendererConfig] = None,
    extractor_cfg: Optional[ExtractorConfig] = None,
    db_cfg: Optional[DBConfig] = None,
    asset_cfg: Optional[AssetStoreConfig] = None,
    save_json_path: Optional[str] = None,
    run_preflight_check: bool = False,
) -> Dict[str, Any]:
    """
    COMPLETE job: PDF → (preflight) → first pass → boilerplate → vision → persist.

    Builds the collaborators from their configs, runs the async pipeline to
    completion and returns a JSON-friendly summary.
    """
    pdf_path = str(pdf_path)
    if not os.path.exists(pdf_path):
        raise FileNotFoundError(f"PDF not found: {pdf_path}")

    cfg = pipeline_cfg or PipelineConfig()
    logger = _setup_logger(cfg)
    start_total = time.perf_counter()
    summary: Dict[str, Any] = {"project_id": project_id, "job_id": job_id, "pdf": os.path.basename(pdf_path)}

    if run_preflight_check:
        report = run_preflight(pdf_path, renderer_cfg)
        summary["preflight"] = report.to_dict()
        logger.info("✓ Preflight %s", report.status)

    async def _run() -> List[SheetIndexRow]:
        vision = VisionExtractor(extractor_cfg) if cfg.use_vision_fallback else None
        if vision is not None and not await vision.health_check():
            logger.warning("Ollama health check failed - vision fallback may fail")
        db = DatabaseManager(db_cfg) if db_cfg is not None else None
        try:
            if db is not None:
                await db.init()
                if "preflight" in summary:
                    await db.upsert_preflight_report(job_id, project_id, summary["preflight"])
            pipeline = SheetIndexPipeline(
                cfg,
                renderer_cfg,
                vision=vision,
                store=db,
                assets=LocalAssetStore(asset_cfg) if asset_cfg is not None else None,
            )
            return await pipeline.run(pdf_path, project_id, job_id)
        finally:
            if vision is not None:
                await vision.close()
            if db is not None:
                await db.close()

    rows = asyncio.run(_run())
    summary["sheets"] = [r.to_dict() for r in rows]
    summary["stats"] = {
        "total": len(rows),
        "auto_accept": sum(1 for r in rows if not r.flag_for_review and not r.manual_flag),
        "flag_for_review": sum(1 for r in rows if r.flag_for_review),
        "manual_flag": sum(1 for r in rows if r.manual_flag),
    }
    summary["runtime"] = {"total_elapsed_s": round(time.perf_counter() - start_total, 4)}

    if save_json_path:
        try:
            _save_results(summary, pdf_path, save_json_path, logger)
        except OSError:
            logger.exception("Failed to save sheet index results")
    return summary


# -------------------------
# CLI
# -------------------------
def main(argv: Optional[List[str]] = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(
        prog="sheet-index",
        description="Sheet-index extraction: PDF → labels → anchored/heuristic → vision fallback → store",
    )
    parser.add_argument("pdf", help="Path to the drawing-set PDF")
    parser.add_argument("--project-id", default="local", help="Project identifier for asset paths and rows")
    parser.add_argument("--job-id", default=None, help="Job identifier (default: PDF file stem)")
    parser.add_argument("--db-path", help="SQLite database file to upsert rows into")
    parser.add_argument("--asset-root", help="Directory for render/title-block PNG evidence")
    parser.add_argument("--no-vision", action="store_true", help="Disable the vision fallback")
    parser.add_argument("--ollama-endpoint", help="Ollama generate endpoint")
    parser.add_argument("--model", help="Ollama vision model name")
    parser.add_argument("--save-json", help="Path to save results JSON (file or directory)")
    parser.add_argument("--preflight", action="store_true", help="Run the document readiness check first")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = parser.parse_args(argv)

    level = getattr(logging, args.log_level)
    logging.basicConfig(level=level)
    pipeline_cfg = PipelineConfig(log_level=level)
    if args.no_vision:
        pipeline_cfg.use_vision_fallback = False

    extractor_cfg = ExtractorConfig(log_level=level)
    if args.ollama_endpoint:
        extractor_cfg.ollama_endpoint = args.ollama_endpoint
    if args.model:
        extractor_cfg.model_name = args.model

    summary = orchestrate_sheet_index(
        args.pdf,
        project_id=args.project_id,
        job_id=args.job_id or Path(args.pdf).stem,
        pipeline_cfg=pipeline_cfg,
        renderer_cfg=RendererConfig(target_width_px=pipeline_cfg.render_width_px, log_level=level),
        extractor_cfg=extractor_cfg,
        db_cfg=DBConfig(database_url=args.db_path, log_level=level) if args.db_path else None,
        asset_cfg=AssetStoreConfig(root=args.asset_root, log_level=level) if args.asset_root else None,
        save_json_path=args.save_json,
        run_preflight_check=args.preflight,
    )
    stats = summary["stats"]
    print(
        f"{stats['total']} sheets: {stats['auto_accept']} auto-accepted, "
        f"{stats['flag_for_review']} for review, {stats['manual_flag']} manual"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
