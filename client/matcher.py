"""
matcher.py - Descriptor Matching

Euclidean distance between face descriptors and a nearest-neighbour scan
under a fixed threshold.  The scan is linear; record sets here are small
(one local store), so no index is kept.
"""

import logging
from typing import Iterable, Optional, Tuple

import numpy as np

from client.config import MATCH_THRESHOLD
from common.errors import DimensionMismatch
from common.models import Match

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────
# DISTANCE
# ─────────────────────────────────────────────
def euclidean_distance(v1, v2) -> float:
    """
    Euclidean (L2) distance between two descriptors of equal length.
    """
    a = np.asarray(tuple(v1), dtype=np.float64)
    b = np.asarray(tuple(v2), dtype=np.float64)
    if a.shape != b.shape:
        raise DimensionMismatch(a.size, b.size)
    return float(np.linalg.norm(a - b))


def is_match(v1, v2, threshold: float = MATCH_THRESHOLD) -> bool:
    return euclidean_distance(v1, v2) < threshold


# ─────────────────────────────────────────────
# BEST MATCH
# ─────────────────────────────────────────────
def find_best_match(query, candidates: Iterable[Tuple[str, object]],
                    threshold: float = MATCH_THRESHOLD) -> Optional[Match]:
    """
    Scan *candidates* (ordered ``(id, descriptor)`` pairs) for the descriptor
    closest to *query*.

    Returns the closest one only if its distance is strictly below
    *threshold*.  On equal distances the earlier candidate wins.
    """
    best_id, best_dist = None, None
    scanned = 0
    for cand_id, descriptor in candidates:
        scanned += 1
        d = euclidean_distance(query, descriptor)
        if best_dist is None or d < best_dist:
            best_id, best_dist = cand_id, d

    if best_dist is None or not best_dist < threshold:
        logger.debug(
            f"No match among {scanned} candidates"
            + (f" (closest={best_dist:.4f}, th={threshold})" if best_dist is not None else "")
        )
        return None

    logger.debug(f"Match '{best_id}' distance={best_dist:.4f} (th={threshold})")
    return Match(best_id, best_dist)
