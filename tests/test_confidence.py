import sys
import unittest
from pathlib import Path


# Allow `import sheet_index.*` when running from repo root.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


from sheet_index.confidence import (  # noqa: E402
    calculate_confidence,
    cap_confidence,
    needs_vision_fallback,
    resolve_source_key,
)


class TestConfidenceGate(unittest.TestCase):
    def test_truncation_costs_exactly_point_two(self) -> None:
        base = calculate_confidence("vector_text", "A101", "FLOOR PLANS AND")
        truncated = calculate_confidence("vector_text", "A101", "FLOOR PLANS AND", truncation_suspected=True)
        self.assertAlmostEqual(base.confidence - truncated.confidence, 0.20)
        self.assertIn("-0.20(truncation_suspected)", truncated.breakdown)

    def test_truncation_at_saturation_is_applied_before_the_clamp(self) -> None:
        kw = dict(both_labels_in_cluster=True, title_clean=True, anchored=True, anchored_bonus=0.05)
        full = calculate_confidence("vector_text", "A101", "FIRST FLOOR PLAN", **kw)
        truncated = calculate_confidence("vector_text", "A101", "FIRST FLOOR PLAN", truncation_suspected=True, **kw)
        self.assertEqual(full.confidence, 1.0)
        self.assertAlmostEqual(truncated.confidence, 0.88)
        self.assertLess(truncated.confidence, full.confidence)
        self.assertIn("-0.20(truncation_suspected)", truncated.breakdown)

    def test_confidence_is_clamped_to_one(self) -> None:
        r = calculate_confidence(
            "vector_text", "A101", "FIRST FLOOR PLAN",
            both_labels_in_cluster=True, title_clean=True, anchored=True, anchored_bonus=0.05,
        )
        self.assertEqual(r.confidence, 1.0)
        self.assertEqual(r.routing, "auto_accept")
        self.assertEqual(r.breakdown[0], "base(vector_anchored)=0.95")
        self.assertEqual(r.breakdown[-1], "→ auto_accept")

    def test_missing_title_penalty(self) -> None:
        r = calculate_confidence("vector_text", "A101", None, anchored=True, anchored_bonus=0.05)
        self.assertAlmostEqual(r.confidence, 0.93)
        self.assertIn("-0.10(missing_title)", r.breakdown)

    def test_routing_is_exclusive(self) -> None:
        cases = [
            (calculate_confidence("unknown", None, None), "manual_flag"),
            (calculate_confidence("vision_titleblock", "A101", "FIRST FLOOR PLAN"), "flag_for_review"),
            (calculate_confidence("vector_text", "A101", "FIRST FLOOR PLAN", anchored=True), "auto_accept"),
        ]
        for result, routing in cases:
            with self.subTest(routing=routing):
                self.assertEqual(result.routing, routing)
                self.assertFalse(result.flag_for_review and result.manual_flag)

    def test_boundaries(self) -> None:
        # fail_crop base sits exactly on the manual boundary and routes to review
        self.assertEqual(calculate_confidence("fail_crop", None, None).routing, "flag_for_review")
        r = calculate_confidence("vector_text", None, None)
        self.assertAlmostEqual(r.confidence, 0.80)
        self.assertTrue(r.flag_for_review)

    def test_source_keys(self) -> None:
        self.assertEqual(resolve_source_key("vector_text", anchored=True), "vector_anchored")
        self.assertEqual(resolve_source_key("vector_text"), "vector_heuristic")
        self.assertEqual(resolve_source_key("vision_titleblock"), "vision_crop")
        self.assertEqual(resolve_source_key("template_fields"), "ocr_crop")
        self.assertEqual(resolve_source_key("fail_crop"), "fail_crop")
        self.assertEqual(resolve_source_key("something_else"), "unknown")


class TestCapConfidence(unittest.TestCase):
    def test_cap_lowers_and_reroutes(self) -> None:
        r = calculate_confidence("vector_text", "A101", "FIRST FLOOR PLAN", anchored=True)
        capped = cap_confidence(r, 0.40, "vision_failed")
        self.assertEqual(capped.confidence, 0.40)
        self.assertEqual(capped.routing, "flag_for_review")
        self.assertIn("cap(vision_failed)=0.40", capped.breakdown)
        self.assertEqual(sum(1 for b in capped.breakdown if b.startswith("→")), 1)

    def test_cap_never_raises(self) -> None:
        r = calculate_confidence("unknown", None, None)
        self.assertIs(cap_confidence(r, 0.95, "vision_success"), r)


class TestVisionFallbackDecision(unittest.TestCase):
    def test_reasons(self) -> None:
        cases = [
            ((None, "FIRST FLOOR PLAN", 0.99), (True, "no_sheet_number")),
            (("A101", "FIRST FLOOR PLAN", 0.70), (True, "low_confidence")),
            (("A101", None, 0.90), (True, "invalid_title")),
            (("A101", "DIMENSIONS MUST BE CHECKED ON SITE", 0.90), (True, "boilerplate")),
            (("A101", "FIRST FLOOR PLAN", 0.90), (False, None)),
        ]
        for args, expected in cases:
            with self.subTest(args=args):
                self.assertEqual(needs_vision_fallback(*args), expected)

    def test_threshold_is_configurable(self) -> None:
        self.assertEqual(needs_vision_fallback("A101", "FIRST FLOOR PLAN", 0.70, threshold=0.60), (False, None))


if __name__ == "__main__":
    unittest.main()
