from __future__ import annotations

import math
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sheet_index.geometry import PixelBBox, clamp
from sheet_index.label_detector import LabelHit, median_label_height


log = logging.getLogger("LabelClustering")

MIN_CLUSTER_SIZE = 2
MIN_ELIGIBLE_WEIGHT = 6


@dataclass
class LabelCluster:
    members: List[LabelHit]
    bbox: PixelBBox
    score: float
    has_number_label: bool
    has_title_label: bool
    tightness_bonus: float
    why_selected: Optional[str] = None

    @property
    def has_both_labels(self) -> bool:
        return self.has_number_label and self.has_title_label

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "bbox": self.bbox.to_dict(),
            "score": round(self.score, 4),
            "members": [m.text for m in self.members],
        }
        if self.why_selected:
            d["why_selected"] = self.why_selected
        return d


def _bbox_of(members: List[LabelHit]) -> PixelBBox:
    min_x = min(m.bbox.x for m in members)
    min_y = min(m.bbox.y for m in members)
    max_x = max(m.bbox.right for m in members)
    max_y = max(m.bbox.bottom for m in members)
    return PixelBBox(min_x, min_y, max_x - min_x, max_y - min_y)


def _single_linkage(hits: List[LabelHit], eps: float) -> List[List[LabelHit]]:
    parent = list(range(len(hits)))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    for i in range(len(hits)):
        for j in range(i + 1, len(hits)):
            (ax, ay), (bx, by) = hits[i].center, hits[j].center
            if math.hypot(ax - bx, ay - by) <= eps:
                ra, rb = find(i), find(j)
                if ra != rb:
                    parent[ra] = rb

    groups: Dict[int, List[LabelHit]] = {}
    for i, hit in enumerate(hits):
        groups.setdefault(find(i), []).append(hit)
    return list(groups.values())


def build_clusters(hits: List[LabelHit]) -> List[LabelCluster]:
    """
    Group label hits that sit close together (a coherent title block).

    eps scales with the median label height so the grouping is resolution
    invariant. Clusters need >=2 members and either both label kinds or a
    combined weight of at least 6.
    """
    if len(hits) < MIN_CLUSTER_SIZE:
        return []

    eps = clamp(2.5 * median_label_height(hits), 80.0, 400.0)
    clusters: List[LabelCluster] = []
    for members in _single_linkage(hits, eps):
        if len(members) < MIN_CLUSTER_SIZE:
            continue
        has_number = any(m.label_type == "number" for m in members)
        has_title = any(m.label_type == "title" for m in members)
        total_weight = sum(m.weight for m in members)
        if not ((has_number and has_title) or total_weight >= MIN_ELIGIBLE_WEIGHT):
            continue

        bbox = _bbox_of(members)
        tightness = 1.0 / max(bbox.area, 1.0)
        score = (10.0 if has_number and has_title else 0.0) + total_weight + 3.0 * tightness
        clusters.append(LabelCluster(
            members=members,
            bbox=bbox,
            score=score,
            has_number_label=has_number,
            has_title_label=has_title,
            tightness_bonus=tightness,
        ))
    log.debug("Built %d clusters (eps=%.1f)", len(clusters), eps)
    return clusters


def select_best_cluster(clusters: List[LabelCluster]) -> Optional[LabelCluster]:
    if not clusters:
        return None

    def ladder(c: LabelCluster):
        cx, cy = c.bbox.center
        # both labels, score desc, area asc, bottom-right centroid desc
        return (0 if c.has_both_labels else 1, -c.score, c.bbox.area, -(cx + cy))

    best = sorted(clusters, key=ladder)[0]
    parts = []
    if best.has_both_labels:
        parts.append("has_both_labels")
    parts.append(f"score={best.score:.2f}")
    parts.append(f"area={best.bbox.area:.0f}")
    best.why_selected = ", ".join(parts)
    return best


def expand_cluster_bbox(cluster: LabelCluster, render_w: int, render_h: int) -> PixelBBox:
    """Pad the cluster box by its mean label size, kept inside the render."""
    n = len(cluster.members)
    mean_w = sum(m.bbox.w for m in cluster.members) / n if n else 100.0
    mean_h = sum(m.bbox.h for m in cluster.members) / n if n else 30.0
    pad_x = clamp(6.0 * mean_w, 250.0, 1000.0)
    pad_y = clamp(5.0 * mean_h, 200.0, 800.0)

    x = max(0.0, cluster.bbox.x - pad_x)
    y = max(0.0, cluster.bbox.y - pad_y)
    w = min(float(render_w), cluster.bbox.w + 2 * pad_x)
    h = min(float(render_h), cluster.bbox.h + 2 * pad_y)
    if x + w > render_w:
        w = render_w - x
    if y + h > render_h:
        h = render_h - y
    return PixelBBox(x, y, w, h)
