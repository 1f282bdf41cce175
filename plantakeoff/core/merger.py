"""
Deduplication of detections that straddle tile seams.

The same physical element is usually reported by every tile whose crop
contains it. Detections are bucketed on a coarse grid, linked when boxes of
the same type overlap enough, grouped transitively with a union-find, and
each group is collapsed into one MergedElement. Groups whose collapsed boxes
still overlap are regrouped until no further link forms.
"""

import math
from collections import defaultdict
from typing import Dict, Iterable, List, Sequence, Set, Tuple

from loguru import logger

from .errors import InvalidConfiguration
from .types import BoundingBox, GlobalDetection, MergedElement


class UnionFind:
    """Disjoint-set forest with path compression and union by rank."""

    def __init__(self, size: int):
        self.parent = list(range(size))
        self.rank = [0] * size

    def find(self, item: int) -> int:
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, a: int, b: int) -> bool:
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return False
        if self.rank[root_a] < self.rank[root_b]:
            root_a, root_b = root_b, root_a
        self.parent[root_b] = root_a
        if self.rank[root_a] == self.rank[root_b]:
            self.rank[root_a] += 1
        return True

    def groups(self) -> List[List[int]]:
        members: Dict[int, List[int]] = defaultdict(list)
        for item in range(len(self.parent)):
            members[self.find(item)].append(item)
        return list(members.values())


class DetectionMerger:
    """Merges globalized detections into one element per physical object."""

    def __init__(self, iou_threshold: float = 0.3, bucket_size: float = 67.2,
                 corroboration_bonus: float = 0.15):
        if not 0.0 <= iou_threshold < 1.0:
            raise InvalidConfiguration(f"iou_threshold must be in [0, 1), got {iou_threshold}")
        if bucket_size <= 0:
            raise InvalidConfiguration(f"bucket_size must be positive, got {bucket_size}")
        if corroboration_bonus < 0:
            raise InvalidConfiguration(f"corroboration_bonus must be >= 0, got {corroboration_bonus}")

        self.iou_threshold = iou_threshold
        self.bucket_size = bucket_size
        self.corroboration_bonus = corroboration_bonus

    def merge(self, detections: Sequence[GlobalDetection]) -> List[MergedElement]:
        """
        Merge detections from all tiles.

        Args:
            detections: Every globalized detection of the run

        Returns:
            Merged elements, ordered by position then type
        """
        detections = list(detections)
        if not detections:
            return []

        groups, links = self._link([[d] for d in detections], detections)
        elements = [self._aggregate(group) for group in groups]

        # Aggregated boxes of separate groups can still overlap; regroup until stable
        rounds = 1
        while True:
            groups, new_links = self._link(groups, elements)
            if not new_links:
                break
            links += new_links
            rounds += 1
            elements = [self._aggregate(group) for group in groups]

        merged = sorted(elements, key=self._order_key)
        for index, element in enumerate(merged):
            element.element_id = f"{element.element_type}-{index:04d}"

        logger.info(
            f"Merged {len(detections)} detections into {len(merged)} elements "
            f"({links} links in {rounds} rounds)"
        )
        return merged

    def _link(self, groups: List[List[GlobalDetection]],
              boxes: Sequence) -> Tuple[List[List[GlobalDetection]], int]:
        """Union the groups whose representative boxes overlap; returns the new groups and link count."""
        union_find = UnionFind(len(boxes))
        links = 0
        for i, j in self._candidate_pairs(self._bucket(boxes)):
            if self._same_element(boxes[i], boxes[j]) and union_find.union(i, j):
                links += 1

        if not links:
            return groups, 0
        regrouped = [[member for index in component for member in groups[index]]
                     for component in union_find.groups()]
        return regrouped, links

    def _cells(self, bbox: BoundingBox) -> Iterable[Tuple[int, int]]:
        q = self.bucket_size
        for qx in range(math.floor(bbox.x1 / q), math.floor(bbox.x2 / q) + 1):
            for qy in range(math.floor(bbox.y1 / q), math.floor(bbox.y2 / q) + 1):
                yield qx, qy

    def _bucket(self, detections: Sequence) -> Dict[Tuple[str, int, int], List[int]]:
        """Register each detection under every (type, quantized cell) its box covers."""
        buckets: Dict[Tuple[str, int, int], List[int]] = defaultdict(list)
        for index, detection in enumerate(detections):
            for qx, qy in self._cells(detection.bbox):
                buckets[(detection.element_type, qx, qy)].append(index)
        return buckets

    @staticmethod
    def _candidate_pairs(buckets: Dict[Tuple[str, int, int], List[int]]) -> Iterable[Tuple[int, int]]:
        seen: Set[Tuple[int, int]] = set()
        for members in buckets.values():
            for a in range(len(members)):
                for b in range(a + 1, len(members)):
                    pair = (members[a], members[b])
                    if pair not in seen:
                        seen.add(pair)
                        yield pair

    def _same_element(self, a, b) -> bool:
        return a.element_type == b.element_type and a.bbox.iou(b.bbox) > self.iou_threshold

    def _aggregate(self, group: List[GlobalDetection]) -> MergedElement:
        members = sorted(group, key=lambda d: (d.source_tiles, d.bbox.y1, d.bbox.x1, -d.confidence))
        confidences = [m.confidence for m in members]

        total_weight = sum(confidences)
        if total_weight > 0:
            weights = [c / total_weight for c in confidences]
        else:
            weights = [1.0 / len(members)] * len(members)

        bbox = BoundingBox(
            x1=sum(w * m.bbox.x1 for w, m in zip(weights, members)),
            y1=sum(w * m.bbox.y1 for w, m in zip(weights, members)),
            x2=sum(w * m.bbox.x2 for w, m in zip(weights, members)),
            y2=sum(w * m.bbox.y2 for w, m in zip(weights, members)),
        )

        mean_confidence = sum(confidences) / len(confidences)
        confidence = mean_confidence + self.corroboration_bonus * math.log(len(members))
        confidence = min(1.0, max(confidence, max(confidences)))

        best = max(members, key=lambda m: m.confidence)
        properties = dict(best.properties)
        for member in members:
            for key, value in member.properties.items():
                properties.setdefault(key, value)

        source_tiles = sorted({tile for m in members for tile in m.source_tiles})

        return MergedElement(
            element_id="",
            element_type=best.element_type,
            bbox=bbox,
            confidence=confidence,
            corroboration_count=len(members),
            source_tiles=source_tiles,
            members=members,
            properties=properties,
        )

    @staticmethod
    def _order_key(element: MergedElement):
        return (round(element.bbox.y1, 3), round(element.bbox.x1, 3), element.element_type, -element.confidence)
