import asyncio
import os
import sys
import tempfile
import unittest
from pathlib import Path

import numpy as np


# Allow `import sheet_index.*` when running from repo root.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


from sheet_index.asset_store import AssetStoreConfig, LocalAssetStore  # noqa: E402
from sheet_index.db_engine import DatabaseManager, DBConfig  # noqa: E402
from sheet_index.geometry import TextItem  # noqa: E402
from sheet_index.orchestrator import (  # noqa: E402
    PipelineConfig,
    SheetIndexPipeline,
    extract_page,
    orchestrate_sheet_index,
)
from sheet_index.page_renderer import PageRenderError, RenderedPage  # noqa: E402
from sheet_index.vision_extractor import VisionResult  # noqa: E402


# -------------------------
# Fakes
# -------------------------
class FakeRenderer:
    """In-memory stand-in for PageRenderer: 800x1000 white pages at scale 1."""

    def __init__(self, pages, fail_on=()):
        self.pages = pages
        self.fail_on = set(fail_on)
        self.opened = None
        self.closed = False
        self.render_calls = []

    def open(self, pdf_path):
        self.opened = pdf_path
        return self

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def page_count(self):
        return len(self.pages)

    def render_page(self, source_index):
        self.render_calls.append(source_index)
        if source_index in self.fail_on:
            raise PageRenderError(f"cannot render page index {source_index}")
        return RenderedPage(
            source_index=source_index,
            image=np.full((1000, 800, 3), 255, dtype=np.uint8),
            width=800,
            height=1000,
            viewport_w=800.0,
            viewport_h=1000.0,
            scale=1.0,
            text_items=list(self.pages[source_index]),
        )


class FakeVision:
    """Answers every title-block request with `answer(meta)`; calibration returns `template`."""

    def __init__(self, answer, template=None):
        self.answer = answer
        self.template = template or {}
        self.calls = []
        self.template_calls = []

    async def extract_titleblock(self, image, meta=None):
        self.calls.append(dict(meta or {}))
        return self.answer(meta or {})

    async def detect_titleblock_template(self, image, discipline, meta=None):
        self.template_calls.append(discipline)
        return dict(self.template)


class MemoryStore:
    def __init__(self):
        self.rows = {}
        self.batches = []
        self.templates = {}

    async def upsert_sheet_rows(self, rows, batch_size=50):
        for start in range(0, len(rows), batch_size):
            self.batches.append(len(rows[start:start + batch_size]))
        for r in rows:
            self.rows[(r.job_id, r.source_index)] = r
        return len(rows)

    async def fetch_sheet_index(self, job_id):
        return [r for (j, _), r in sorted(self.rows.items()) if j == job_id]

    async def upsert_titleblock_template(self, project_id, job_id, template):
        self.templates[(job_id, template["discipline"])] = template

    async def fetch_titleblock_template(self, job_id, discipline):
        return self.templates.get((job_id, discipline))


def number_only_page(number="A101"):
    return [
        TextItem("SHEET NO.", x=50, y=80, width=80, height=20),
        TextItem(number, x=140, y=87, width=60, height=18),
    ]


def full_title_block_page(number, title):
    return [
        TextItem("SHEET NO.", x=50, y=80, width=80, height=20),
        TextItem(number, x=140, y=87, width=60, height=18),
        TextItem("SHEET TITLE", x=50, y=130, width=90, height=20),
        TextItem(title, x=170, y=137, width=300, height=18),
    ]


def _cfg(**kw) -> PipelineConfig:
    kw.setdefault("enable_logging", False)
    return PipelineConfig(**kw)


def _run(pipeline, job_id="job-1"):
    return asyncio.run(pipeline.run("drawings.pdf", "proj-1", job_id))


# -------------------------
# First pass
# -------------------------
class TestExtractPage(unittest.TestCase):
    def test_anchored_number_without_title(self) -> None:
        page = FakeRenderer([number_only_page()]).render_page(0)
        state = extract_page(page)
        self.assertEqual(state.result.sheet_number, "A101")
        self.assertIsNone(state.result.sheet_title)
        self.assertEqual(state.result.discipline, "Architectural")
        self.assertAlmostEqual(state.gate.confidence, 0.93)
        notes = state.result.extraction_notes
        self.assertEqual(notes["source_key"], "vector_anchored")
        self.assertEqual(notes["fallback_path"], ["anchored", "heuristic"])
        self.assertIn("+0.05(anchored_bonus)", notes["confidence_breakdown"])
        self.assertEqual(len(notes["label_hits"]), 1)
        self.assertIsNone(notes["selected_cluster_index"])
        self.assertIsNone(state.cluster_bbox)

    def test_full_title_block_uses_cluster(self) -> None:
        page = FakeRenderer([full_title_block_page("A101", "FIRST FLOOR PLAN")]).render_page(0)
        state = extract_page(page)
        self.assertEqual((state.result.sheet_number, state.result.sheet_title), ("A101", "FIRST FLOOR PLAN"))
        self.assertEqual(state.result.sheet_kind, "plan")
        self.assertTrue(state.both_labels)
        self.assertEqual(state.gate.confidence, 1.0)
        self.assertEqual(state.result.extraction_notes["selected_cluster_index"], 0)
        self.assertEqual(state.result.extraction_notes["fallback_path"], ["anchored"])
        self.assertEqual(state.cluster_bbox.to_dict(), {"x": 0.0, "y": 650.0, "w": 800.0, "h": 350.0})

    def test_unanchored_page_is_bounded_by_heuristic(self) -> None:
        page = FakeRenderer([[
            TextItem("A-201", x=700, y=40, width=30, height=10),
            TextItem("FIRST FLOOR PLAN", x=650, y=60, width=120, height=10),
        ]]).render_page(0)
        state = extract_page(page)
        self.assertEqual(state.result.sheet_number, "A201")
        self.assertFalse(state.anchored)
        self.assertAlmostEqual(state.gate.confidence, 0.75)
        self.assertEqual(state.result.extraction_notes["source_key"], "vector_heuristic")
        self.assertIn("cap(heuristic)=0.75", state.result.extraction_notes["confidence_breakdown"])
        self.assertEqual(state.number_anchor, (700.0, 960.0))

    def test_heuristic_number_beside_anchored_title_is_not_anchored(self) -> None:
        page = FakeRenderer([[
            TextItem("SHEET TITLE", x=50, y=130, width=90, height=20),
            TextItem("FIRST FLOOR PLAN", x=170, y=137, width=300, height=18),
            TextItem("A-201", x=700, y=40, width=30, height=10),
        ]]).render_page(0)
        state = extract_page(page)
        notes = state.result.extraction_notes
        self.assertEqual((state.result.sheet_number, state.result.sheet_title), ("A201", "FIRST FLOOR PLAN"))
        self.assertFalse(state.anchored)
        self.assertEqual(state.anchored_bonus, 0.0)
        self.assertEqual(notes["source_key"], "vector_heuristic")
        self.assertEqual(notes["heuristic_fields"], ["sheet_number"])
        self.assertNotIn("+0.05(anchored_bonus)", notes["confidence_breakdown"])
        self.assertIn("cap(heuristic)=0.75", notes["confidence_breakdown"])
        self.assertAlmostEqual(state.gate.confidence, 0.75)
        self.assertTrue(state.gate.flag_for_review)

    def test_heuristic_number_must_validate(self) -> None:
        page = FakeRenderer([[
            TextItem("SHEET TITLE", x=50, y=130, width=90, height=20),
            TextItem("FIRST FLOOR PLAN", x=170, y=137, width=300, height=18),
            TextItem("REV12", x=700, y=40, width=30, height=10),
        ]]).render_page(0)
        state = extract_page(page)
        notes = state.result.extraction_notes
        self.assertIsNone(state.result.sheet_number)
        self.assertEqual(notes["heuristic_number_rejected"], "invalid_number_pattern")
        self.assertEqual(notes["heuristic_fields"], [])
        self.assertIsNone(state.number_anchor)

    def test_anchored_number_position_is_the_crop_anchor(self) -> None:
        state = extract_page(FakeRenderer([number_only_page()]).render_page(0))
        self.assertEqual(state.number_anchor, (140.0, 913.0))


# -------------------------
# Full pipeline
# -------------------------
class TestSheetIndexPipeline(unittest.TestCase):
    def test_vector_only_run(self) -> None:
        renderer = FakeRenderer([number_only_page()])
        store = MemoryStore()
        rows = _run(SheetIndexPipeline(_cfg(use_vision_fallback=False), store=store, renderer=renderer))

        self.assertEqual(len(rows), 1)
        row = rows[0]
        self.assertEqual((row.sheet_number, row.sheet_title, row.extraction_source), ("A101", None, "vector_text"))
        self.assertAlmostEqual(row.confidence, 0.93)
        self.assertFalse(row.flag_for_review or row.manual_flag)
        self.assertTrue(row.crop_valid)
        self.assertEqual(row.crop_reason, "vector_text_sufficient")
        self.assertEqual(row.crop_strategy, "vector_label")
        self.assertEqual(row.extraction_notes["vision_calls"], 0)
        self.assertEqual(row.extraction_notes["crop_locator"], {"x": 0, "y": 420, "w": 800, "h": 580})
        self.assertTrue(renderer.closed)
        self.assertIn(("job-1", 0), store.rows)

    def test_vision_supplies_missing_title(self) -> None:
        vision = FakeVision(lambda meta: VisionResult(sheet_number="A101", sheet_title="FIRST FLOOR PLAN"))
        rows = _run(SheetIndexPipeline(_cfg(), vision=vision, renderer=FakeRenderer([number_only_page()])))

        row = rows[0]
        self.assertEqual((row.sheet_number, row.sheet_title), ("A101", "FIRST FLOOR PLAN"))
        self.assertEqual(row.extraction_source, "vision_titleblock")
        self.assertEqual(row.sheet_kind, "plan")
        self.assertAlmostEqual(row.confidence, 0.75)
        self.assertTrue(row.flag_for_review)
        self.assertEqual(row.extraction_notes["vision_reason"], "invalid_title")
        self.assertEqual(row.extraction_notes["vision_calls"], 1)
        self.assertEqual(vision.calls[0]["phase"], "vision_fallback")
        self.assertEqual(vision.calls[0]["source_index"], 0)

    def test_vision_failure_keeps_geometry_and_caps(self) -> None:
        vision = FakeVision(lambda meta: VisionResult(error="call_failed: connection refused"))
        rows = _run(SheetIndexPipeline(_cfg(), vision=vision, renderer=FakeRenderer([number_only_page()])))

        row = rows[0]
        self.assertEqual((row.sheet_number, row.extraction_source), ("A101", "vector_text"))
        self.assertAlmostEqual(row.confidence, 0.40)
        self.assertTrue(row.flag_for_review)
        self.assertTrue(row.extraction_notes["vision_failed"])
        self.assertEqual(row.extraction_notes["vision_error"], "call_failed: connection refused")

    def test_invalid_crop_never_reaches_vision(self) -> None:
        vision = FakeVision(lambda meta: VisionResult(sheet_number="Z999", sheet_title="MADE UP PLAN"))
        page = [TextItem("GENERAL NOTES", x=10, y=990, width=90, height=10)]
        rows = _run(SheetIndexPipeline(_cfg(), vision=vision, renderer=FakeRenderer([page])))

        row = rows[0]
        self.assertEqual(vision.calls, [])
        self.assertEqual(row.extraction_source, "fail_crop")
        self.assertIsNone(row.sheet_title)
        self.assertIsNone(row.sheet_number)
        self.assertLessEqual(row.confidence, 0.30)
        self.assertFalse(row.crop_valid)
        self.assertTrue(row.crop_reason.startswith("invalid_crop:"))
        self.assertEqual(row.attempt_count, 3)

    def test_failed_page_gets_placeholder_row(self) -> None:
        renderer = FakeRenderer([number_only_page(), number_only_page(), number_only_page("A103")], fail_on={1})
        store = MemoryStore()
        rows = _run(SheetIndexPipeline(_cfg(use_vision_fallback=False), store=store, renderer=renderer))

        self.assertEqual([r.source_index for r in rows], [0, 1, 2])
        self.assertTrue(rows[1].manual_flag)
        self.assertEqual(rows[1].confidence, 0.0)
        self.assertTrue(rows[1].extraction_notes["error"].startswith("first_pass_failed"))
        self.assertEqual(rows[2].sheet_number, "A103")
        self.assertEqual(len(store.rows), 3)

    def test_persist_batches(self) -> None:
        store = MemoryStore()
        renderer = FakeRenderer([number_only_page() for _ in range(5)])
        _run(SheetIndexPipeline(_cfg(use_vision_fallback=False, persist_batch_size=2), store=store, renderer=renderer))
        self.assertEqual(store.batches, [2, 2, 1])

    def test_repeated_title_is_sent_to_vision(self) -> None:
        repeated = "TYPICAL DIMENSIONAL LAYOUT NORTH WING"
        pages = [full_title_block_page(f"A1{i:02d}", repeated) for i in range(10)]
        pages += [
            full_title_block_page("A110", "FIRST FLOOR PLAN"),
            full_title_block_page("A111", "SECOND FLOOR PLAN"),
        ]
        renderer = FakeRenderer(pages)
        vision = FakeVision(lambda meta: VisionResult(
            sheet_number=f"A1{meta['source_index']:02d}",
            sheet_title=f"FLOOR PLAN LEVEL {meta['source_index']}",
        ))
        rows = _run(SheetIndexPipeline(_cfg(use_templates=False), vision=vision, renderer=renderer))

        self.assertEqual(sorted(c["source_index"] for c in vision.calls), list(range(10)))
        for row in rows[:10]:
            self.assertTrue(row.extraction_notes["boilerplate_detected"])
            self.assertEqual(row.extraction_notes["vision_reason"], "boilerplate_title")
            self.assertEqual(row.sheet_title, f"FLOOR PLAN LEVEL {row.source_index}")
            self.assertEqual(row.extraction_source, "vision_titleblock")
        for row in rows[10:]:
            self.assertNotIn("boilerplate_detected", row.extraction_notes)
            self.assertEqual(row.extraction_source, "vector_text")
            self.assertEqual(row.confidence, 1.0)
        # crops are not kept for confident pages, so boilerplate pages render twice
        self.assertEqual(renderer.render_calls.count(0), 2)
        self.assertEqual(renderer.render_calls.count(11), 1)

    def test_assets_are_written(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            assets = LocalAssetStore(AssetStoreConfig(root=tmp, enable_logging=False))
            rows = _run(SheetIndexPipeline(
                _cfg(use_vision_fallback=False), assets=assets, renderer=FakeRenderer([number_only_page()]),
            ))
            row = rows[0]
            self.assertEqual(row.sheet_render_asset_path, "projects/proj-1/jobs/job-1/sheets/0/render.png")
            self.assertEqual(row.title_block_asset_path, "projects/proj-1/jobs/job-1/sheets/0/titleblock.png")
            self.assertEqual(row.crop_asset_path, "projects/proj-1/jobs/job-1/sheets/0/crop_attempt_1.png")
            self.assertTrue(assets.exists(row.sheet_render_asset_path))
            self.assertTrue(assets.exists(row.title_block_asset_path))

    def test_rerun_against_database_is_idempotent(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            cfg = DBConfig(database_url=os.path.join(tmp, "index.db"), pool_size=1, enable_logging=False)

            async def scenario():
                async with DatabaseManager(cfg) as db:
                    for _ in range(2):
                        pipeline = SheetIndexPipeline(
                            _cfg(use_vision_fallback=False),
                            store=db,
                            renderer=FakeRenderer([number_only_page(), number_only_page("M201")]),
                        )
                        await pipeline.run("drawings.pdf", "proj-1", "job-1")
                    return await db.count_sheet_rows("job-1"), await db.fetch_sheet_index("job-1")

            count, fetched = asyncio.run(scenario())
            self.assertEqual(count, 2)
            self.assertEqual([r.sheet_number for r in fetched], ["A101", "M201"])
            self.assertEqual(fetched[1].discipline, "Mechanical")


# -------------------------
# Title-block templates
# -------------------------
GOOD_TEMPLATE = {
    "bbox_sheet_title_value": {"x": 0.5, "y": 0.85, "w": 0.3, "h": 0.08},
    "bbox_sheet_number_value": {"x": 0.8, "y": 0.93, "w": 0.15, "h": 0.06},
    "confidence": 0.9,
}


def _by_phase(template_answer, fallback_answer):
    def answer(meta):
        return template_answer if meta.get("phase", "").startswith("template") else fallback_answer
    return answer


class TestTitleBlockTemplates(unittest.TestCase):
    def test_template_is_read_before_vision(self) -> None:
        store = MemoryStore()
        vision = FakeVision(
            _by_phase(VisionResult(sheet_number="A101", sheet_title="FIRST FLOOR PLAN"), VisionResult()),
            template=GOOD_TEMPLATE,
        )
        rows = _run(SheetIndexPipeline(_cfg(), vision=vision, store=store, renderer=FakeRenderer([number_only_page()])))

        row = rows[0]
        notes = row.extraction_notes
        self.assertEqual((row.sheet_number, row.sheet_title), ("A101", "FIRST FLOOR PLAN"))
        self.assertEqual(row.extraction_source, "template_fields")
        self.assertAlmostEqual(row.confidence, 0.80)
        self.assertTrue(notes["template_used"] and notes["template_succeeded"])
        self.assertEqual(notes["template_discipline"], "A")
        self.assertEqual(notes["vision_calls"], 1)
        self.assertEqual([c["phase"] for c in vision.calls], ["template_extraction_title"])
        self.assertEqual(vision.template_calls, ["A"])
        self.assertEqual(store.templates[("job-1", "A")]["confidence"], 0.9)

    def test_stored_template_skips_calibration(self) -> None:
        store = MemoryStore()
        store.templates[("job-1", "A")] = {
            "discipline": "A",
            "template": {
                "bbox_sheet_title_value": GOOD_TEMPLATE["bbox_sheet_title_value"],
                "bbox_sheet_number_value": GOOD_TEMPLATE["bbox_sheet_number_value"],
            },
            "calibration_samples": [],
            "confidence": 0.8,
        }
        vision = FakeVision(_by_phase(VisionResult(sheet_number="A101", sheet_title="FIRST FLOOR PLAN"), VisionResult()))
        rows = _run(SheetIndexPipeline(_cfg(), vision=vision, store=store, renderer=FakeRenderer([number_only_page()])))

        self.assertEqual(vision.template_calls, [])
        self.assertEqual(rows[0].extraction_source, "template_fields")

    def test_template_outside_title_block_falls_back_to_vision(self) -> None:
        template = {"bbox_sheet_title_value": {"x": 0.0, "y": 0.0, "w": 0.3, "h": 0.1}, "confidence": 0.9}
        vision = FakeVision(lambda meta: VisionResult(sheet_number="A101", sheet_title="FIRST FLOOR PLAN"), template=template)
        rows = _run(SheetIndexPipeline(_cfg(), vision=vision, renderer=FakeRenderer([number_only_page()])))

        row = rows[0]
        self.assertTrue(row.extraction_notes["template_rejected"])
        self.assertEqual(row.extraction_notes["template_reject_reason"], "template_outside_titleblock_region")
        self.assertNotIn("template_used", row.extraction_notes)
        self.assertEqual([c["phase"] for c in vision.calls], ["vision_fallback"])
        self.assertEqual(row.extraction_source, "vision_titleblock")

    def test_unreadable_template_falls_through_to_vision(self) -> None:
        vision = FakeVision(
            _by_phase(VisionResult(), VisionResult(sheet_number="A101", sheet_title="FIRST FLOOR PLAN")),
            template=GOOD_TEMPLATE,
        )
        rows = _run(SheetIndexPipeline(_cfg(), vision=vision, renderer=FakeRenderer([number_only_page()])))

        row = rows[0]
        self.assertTrue(row.extraction_notes["template_failed"])
        self.assertEqual(
            [c["phase"] for c in vision.calls],
            ["template_extraction_title", "template_extraction_number", "vision_fallback"],
        )
        self.assertEqual(row.extraction_notes["vision_calls"], 3)
        self.assertEqual(row.extraction_source, "vision_titleblock")
        self.assertAlmostEqual(row.confidence, 0.75)

    def test_weak_calibration_is_stored_but_not_used(self) -> None:
        store = MemoryStore()
        vision = FakeVision(
            lambda meta: VisionResult(sheet_number="A101", sheet_title="FIRST FLOOR PLAN"),
            template={**GOOD_TEMPLATE, "confidence": 0.55},
        )
        rows = _run(SheetIndexPipeline(_cfg(), vision=vision, store=store, renderer=FakeRenderer([number_only_page()])))

        self.assertEqual(store.templates[("job-1", "A")]["confidence"], 0.55)
        self.assertEqual([c["phase"] for c in vision.calls], ["vision_fallback"])
        self.assertEqual(rows[0].extraction_source, "vision_titleblock")

    def test_rejected_calibration_is_not_stored(self) -> None:
        store = MemoryStore()
        vision = FakeVision(
            lambda meta: VisionResult(sheet_number="A101", sheet_title="FIRST FLOOR PLAN"),
            template={**GOOD_TEMPLATE, "confidence": 0.3},
        )
        _run(SheetIndexPipeline(_cfg(), vision=vision, store=store, renderer=FakeRenderer([number_only_page()])))
        self.assertEqual(store.templates, {})

    def test_confident_sheets_are_not_calibrated(self) -> None:
        vision = FakeVision(lambda meta: VisionResult(), template=GOOD_TEMPLATE)
        pages = [full_title_block_page("A101", "FIRST FLOOR PLAN")]
        _run(SheetIndexPipeline(_cfg(), vision=vision, renderer=FakeRenderer(pages)))
        self.assertEqual(vision.template_calls, [])
        self.assertEqual(vision.calls, [])

    def test_templates_can_be_switched_off(self) -> None:
        vision = FakeVision(lambda meta: VisionResult(sheet_number="A101", sheet_title="FIRST FLOOR PLAN"), template=GOOD_TEMPLATE)
        _run(SheetIndexPipeline(_cfg(use_templates=False), vision=vision, renderer=FakeRenderer([number_only_page()])))
        self.assertEqual(vision.template_calls, [])


class TestOrchestrateSheetIndex(unittest.TestCase):
    def test_missing_pdf(self) -> None:
        with self.assertRaises(FileNotFoundError):
            orchestrate_sheet_index("/nonexistent/drawings.pdf", "proj-1", "job-1")


if __name__ == "__main__":
    unittest.main()
