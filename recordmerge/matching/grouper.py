"""
Duplicate grouping over a configuration's match fields.

Used by the local batch executor to stand in for the record platform's
duplicate search. Records are compared pairwise with fuzzy string
matching; pairs scoring at or above the threshold are linked and linked
records are clustered into DuplicateGroups.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from rapidfuzz import fuzz

from ..core.models import DuplicateGroup, RecordSnapshot, is_blank

logger = logging.getLogger(__name__)


def normalize(value) -> str:
    """Lowercase, trim and collapse whitespace."""
    return " ".join(str(value).lower().split())


class DuplicateGrouper:
    """
    Clusters records whose match fields agree.

    Scoring:
    - Each match field is compared with a token sort ratio (0-100)
    - A field blank on both records is skipped; blank on one side scores 0
    - The pair score is the mean over compared fields
    """

    def __init__(self, threshold: float = 90.0, exact: bool = False):
        """
        Initialize the grouper.

        Args:
            threshold: Minimum pair score (0-100) to link two records
            exact: Require normalized values to be identical instead of fuzzy
        """
        self.threshold = threshold
        self.exact = exact

    def score_pair(
        self,
        record1: RecordSnapshot,
        record2: RecordSnapshot,
        match_fields: Sequence[str]
    ) -> Optional[float]:
        """Score two records; None when no field could be compared."""
        scores = []
        for field_name in match_fields:
            value1 = record1.value(field_name)
            value2 = record2.value(field_name)
            if is_blank(value1) and is_blank(value2):
                continue
            if is_blank(value1) or is_blank(value2):
                scores.append(0.0)
                continue

            a, b = normalize(value1), normalize(value2)
            if self.exact:
                scores.append(100.0 if a == b else 0.0)
            else:
                scores.append(fuzz.token_sort_ratio(a, b))

        if not scores:
            return None
        return sum(scores) / len(scores)

    def find_groups(
        self,
        records: Sequence[RecordSnapshot],
        match_fields: Sequence[str],
        object_type: str
    ) -> List[DuplicateGroup]:
        """Cluster records into duplicate groups.

        Args:
            records: Records of one object type
            match_fields: Fields to compare
            object_type: Object type stamped on the groups

        Returns:
            Groups of two or more records, ordered by their smallest member id
        """
        ordered = sorted(records, key=lambda r: r.record_id)
        parent: Dict[str, str] = {r.record_id: r.record_id for r in ordered}

        def find(record_id: str) -> str:
            while parent[record_id] != record_id:
                parent[record_id] = parent[parent[record_id]]
                record_id = parent[record_id]
            return record_id

        links: List[Tuple[str, str, float]] = []
        for i, record1 in enumerate(ordered):
            for record2 in ordered[i + 1:]:
                score = self.score_pair(record1, record2, match_fields)
                if score is None or score < self.threshold:
                    continue
                links.append((record1.record_id, record2.record_id, score))
                root1, root2 = find(record1.record_id), find(record2.record_id)
                if root1 != root2:
                    parent[max(root1, root2)] = min(root1, root2)

        clusters: Dict[str, List[str]] = {}
        for record in ordered:
            clusters.setdefault(find(record.record_id), []).append(record.record_id)

        scores: Dict[str, List[float]] = {}
        for id1, _, score in links:
            scores.setdefault(find(id1), []).append(score)

        groups = []
        for root, members in sorted(clusters.items()):
            if len(members) < 2:
                continue
            pair_scores = scores.get(root, [])
            match_score = round(sum(pair_scores) / len(pair_scores), 2) if pair_scores else 0.0
            groups.append(DuplicateGroup(
                id=f"{object_type}-{root}",
                object_type=object_type,
                member_record_ids=frozenset(members),
                match_score=min(match_score, 100.0),
            ))

        logger.debug(f"Found {len(groups)} duplicate groups among {len(ordered)} {object_type} records")
        return groups
