import sys
import unittest
from pathlib import Path


# Allow `import sheet_index.*` when running from repo root.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


from sheet_index.anchored_extractor import (  # noqa: E402
    ANCHORED_BONUS,
    below_region,
    extract_sheet_number_anchored,
    extract_sheet_title_anchored,
    right_of_region,
    split_label_hits,
)
from sheet_index.geometry import TextItem  # noqa: E402
from sheet_index.label_clustering import build_clusters, expand_cluster_bbox, select_best_cluster  # noqa: E402
from sheet_index.label_detector import detect_label_hits  # noqa: E402


VIEWPORT_H = 1000.0

NUMBER_LABEL = TextItem("SHEET NO.", x=50, y=80, width=80, height=20)
TITLE_LABEL = TextItem("SHEET TITLE", x=50, y=130, width=90, height=20)


def _hits(*items):
    return detect_label_hits(list(items), VIEWPORT_H, 1.0)


class TestRegions(unittest.TestCase):
    def test_region_sizes_scale_with_label(self) -> None:
        label = _hits(NUMBER_LABEL)[0]
        self.assertEqual(right_of_region(label).to_dict(), {"x": 150.0, "y": 890.0, "w": 480.0, "h": 80.0})
        self.assertEqual(below_region(label).to_dict(), {"x": 30.0, "y": 928.0, "w": 800.0, "h": 140.0})

    def test_title_below_region_is_taller(self) -> None:
        label = _hits(NUMBER_LABEL)[0]
        self.assertGreater(below_region(label, is_title=True).h, below_region(label).h)


class TestAnchoredNumber(unittest.TestCase):
    def test_value_right_of_label(self) -> None:
        items = [NUMBER_LABEL, TextItem("A-101", x=140, y=87, width=60, height=18)]
        result = extract_sheet_number_anchored(_hits(NUMBER_LABEL), items, VIEWPORT_H, 1.0)
        self.assertEqual(result.value, "A101")
        self.assertEqual(result.priority, 3)
        self.assertEqual(result.confidence_bonus, ANCHORED_BONUS)

    def test_priority_beats_length(self) -> None:
        # "A1-01" right of the label (priority 2), "AB1234" below it (priority 3)
        items = [
            NUMBER_LABEL,
            TextItem("A1-01", x=300, y=87, width=60, height=18),
            TextItem("AB1234", x=60, y=50, width=60, height=18),
        ]
        result = extract_sheet_number_anchored(_hits(NUMBER_LABEL), items, VIEWPORT_H, 1.0)
        self.assertEqual(result.value, "AB1234")
        self.assertEqual(result.priority, 3)

    def test_every_region_is_traced(self) -> None:
        items = [NUMBER_LABEL, TextItem("NOT TO SCALE", x=160, y=87, width=90, height=18)]
        result = extract_sheet_number_anchored(_hits(NUMBER_LABEL), items, VIEWPORT_H, 1.0)
        self.assertIsNone(result.value)
        self.assertEqual(result.confidence_bonus, 0.0)
        self.assertEqual([r.region_type for r in result.regions], ["right_of", "below"])
        right_of = result.regions[0]
        self.assertFalse(right_of.passed)
        self.assertEqual(right_of.candidates, ["NOT TO SCALE"])
        self.assertEqual(right_of.rejection_reason, "scale_junk")
        self.assertEqual(result.regions[1].candidates, [])

    def test_trace_serializes_pass_key(self) -> None:
        items = [NUMBER_LABEL, TextItem("A101", x=140, y=87, width=60, height=18)]
        result = extract_sheet_number_anchored(_hits(NUMBER_LABEL), items, VIEWPORT_H, 1.0)
        d = result.regions[0].to_dict()
        self.assertTrue(d["pass"])
        self.assertEqual(d["chosen"], "A101")
        self.assertEqual(d["label_used"], "SHEET NO.")


class TestAnchoredTitle(unittest.TestCase):
    def test_title_right_of_label_skips_invalid_candidates(self) -> None:
        items = [
            TITLE_LABEL,
            TextItem("A101", x=140, y=87, width=60, height=18),
            TextItem("FIRST FLOOR PLAN", x=170, y=137, width=300, height=18),
        ]
        result = extract_sheet_title_anchored(_hits(TITLE_LABEL), items, VIEWPORT_H, 1.0)
        self.assertEqual(result.value, "FIRST FLOOR PLAN")
        self.assertTrue(result.clean)
        self.assertFalse(result.truncation_suspected)
        self.assertEqual(result.regions[0].rejection_reason, "too_short")

    def test_neighbouring_label_is_not_a_title(self) -> None:
        # the number label sits inside the title label's below region
        result = extract_sheet_title_anchored(_hits(TITLE_LABEL), [TITLE_LABEL, NUMBER_LABEL], VIEWPORT_H, 1.0)
        self.assertIsNone(result.value)
        self.assertIn("SHEET NO", result.regions[1].candidates)

    def test_no_title_labels(self) -> None:
        result = extract_sheet_title_anchored([], [TextItem("FIRST FLOOR PLAN", 0, 0)], VIEWPORT_H, 1.0)
        self.assertIsNone(result.value)
        self.assertEqual(result.regions, [])

    def test_moderate_title_needs_number_label(self) -> None:
        bare = TextItem("TITLE", x=50, y=130, width=40, height=20)
        numbers, titles = split_label_hits(_hits(bare))
        self.assertEqual((numbers, titles), ([], []))
        numbers, titles = split_label_hits(_hits(NUMBER_LABEL, bare))
        self.assertEqual(len(numbers), 1)
        self.assertEqual([t.text for t in titles], ["TITLE"])


class TestLabelClustering(unittest.TestCase):
    def test_adjacent_labels_form_one_cluster(self) -> None:
        clusters = build_clusters(_hits(NUMBER_LABEL, TITLE_LABEL))
        self.assertEqual(len(clusters), 1)
        self.assertTrue(clusters[0].has_both_labels)
        self.assertGreaterEqual(clusters[0].score, 16.0)

    def test_single_hit_never_clusters(self) -> None:
        self.assertEqual(build_clusters(_hits(NUMBER_LABEL)), [])
        self.assertIsNone(select_best_cluster([]))

    def test_distant_labels_do_not_cluster(self) -> None:
        far = TextItem("SHEET TITLE", x=700, y=900, width=90, height=20)
        self.assertEqual(build_clusters(_hits(NUMBER_LABEL, far)), [])

    def test_both_labels_win_over_heavier_cluster(self) -> None:
        hits = _hits(
            NUMBER_LABEL,
            TITLE_LABEL,
            TextItem("DWG NO", x=700, y=900, width=80, height=20),
            TextItem("DRAWING NUMBER", x=700, y=880, width=80, height=20),
            TextItem("SHT NO", x=700, y=860, width=80, height=20),
        )
        clusters = build_clusters(hits)
        self.assertEqual(len(clusters), 2)
        best = select_best_cluster(clusters)
        self.assertTrue(best.has_both_labels)
        self.assertIn("has_both_labels", best.why_selected)

    def test_expanded_bbox_stays_inside_render(self) -> None:
        cluster = build_clusters(_hits(NUMBER_LABEL, TITLE_LABEL))[0]
        box = expand_cluster_bbox(cluster, render_w=800, render_h=1000)
        self.assertEqual((box.x, box.y, box.w), (0.0, 650.0, 800.0))
        self.assertAlmostEqual(box.bottom, 1000.0)


if __name__ == "__main__":
    unittest.main()
