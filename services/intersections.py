# services/intersections.py
"""
Intersection Extractor
======================

Finds recurring shared-property sets inside one cluster with a bounded,
two-level approximation instead of exhaustive frequent-itemset mining.

Algorithm:
1. Drop properties whose frequency falls outside [min_frequency, max_frequency]
2. Outer pass: intersect every unordered pair of filtered sets; keep results
   with >= min_intersection properties, tagged "outer"
3. Inner pass: intersect every pair of distinct outer results; keep new results
   with >= min_intersection properties, tagged "inner" (an outer tag is never
   replaced)
4. Weight every kept set against the members' full (unfiltered) sets:
   support = summed weight of members holding the whole set,
   weight = support × set size

Outer pass is O(n²·k) for n members with k properties on average; inner pass is
O(m²) for m outer results. Deeper levels are not explored.
"""

import logging
import time
from typing import Dict, Iterable, List, Optional, Tuple

from config.config import ConfigurationError, is_number
from models.mining import INNER, OUTER, IdentityRecord, IntersectionObject, canonical_key, weighted_size
from services.frequency import filter_by_frequency
from services.progress import ExecutionContext, MiningAborted, ensure_context

logger = logging.getLogger(__name__)


# ============================================================================
# MAIN EXTRACTION FUNCTION
# ============================================================================

def extract_intersections(
        members: Optional[List[IdentityRecord]],
        min_intersection: int,
        min_frequency: float,
        frequency_map: Dict[str, float],
        max_frequency: float,
        context: Optional[ExecutionContext] = None,
) -> List[IntersectionObject]:
    """
    Shared-property sets of a cluster, weighted by how many members hold them.

    Args:
        members: cluster members with their full property sets and weights
        min_intersection: minimum shared set size (inclusive)
        min_frequency: lower frequency bound for kept properties (inclusive)
        frequency_map: property -> frequency for this run
        max_frequency: upper frequency bound for kept properties (inclusive)
        context: progress / cancellation; on cancellation the sets found so far
            are weighted and returned, and context.aborted is set

    Returns:
        IntersectionObject list ordered by descending weight, then property key

    Raises:
        ConfigurationError: invalid thresholds (checked before any scan)
        ValueError: members or frequency_map is None
    """
    _validate_extraction_params(min_intersection, min_frequency, max_frequency)
    if members is None:
        raise ValueError("members must not be None")
    if frequency_map is None:
        raise ValueError("frequency_map must not be None")

    context = ensure_context(context)
    _t_start = time.monotonic()

    # Step 1: frequency band filter, applied once before any pairwise work
    filtered_sets = []
    for member in members:
        filtered = filter_by_frequency(member.properties, frequency_map, min_frequency, max_frequency)
        if len(filtered) < min_intersection:
            # can never reach the threshold in any pair
            logger.debug("member %s excluded from pairwise pass (%d usable properties)",
                         member.oid, len(filtered))
            continue
        filtered_sets.append(filtered)

    # Steps 2-3: outer + inner passes
    mapped = collect_intersections(filtered_sets, min_intersection, context, phase="intersections")

    # Step 4: weighting against the unfiltered sets
    intersections = _weight_intersections(members, mapped)

    logger.info(
        "intersection extraction %s: members=%d usable=%d outer=%d inner=%d elapsed_ms=%.0f",
        "aborted" if context.aborted else "complete",
        len(members),
        len(filtered_sets),
        sum(1 for i in intersections if i.provenance == OUTER),
        sum(1 for i in intersections if i.provenance == INNER),
        (time.monotonic() - _t_start) * 1000,
    )
    return intersections


def collect_intersections(
        property_sets: List[frozenset],
        min_size: int,
        context: Optional[ExecutionContext] = None,
        phase: str = "intersections",
        weights: Optional[Dict[str, int]] = None,
) -> Dict[Tuple[str, ...], str]:
    """
    Outer + inner pairwise intersections as {canonical key: provenance}.

    With `weights`, an intersection qualifies when the summed weight of its
    identifiers reaches min_size; otherwise its plain size is compared.

    The mapping is built fresh per call and insertion order follows discovery
    order (insert-if-absent, so the first provenance recorded wins). If the
    context is cancelled the mapping built so far is returned.
    """
    context = ensure_context(context)
    mapped: Dict[Tuple[str, ...], str] = {}

    try:
        outer_keys = _pairwise_pass(
            property_sets, min_size, OUTER, mapped, context, phase + ":outer", weights,
        )
        # distinct outer results in canonical order so the inner pass is reproducible
        outer_sets = [frozenset(key) for key in sorted(outer_keys)]
        _pairwise_pass(outer_sets, min_size, INNER, mapped, context, phase + ":inner", weights)
    except MiningAborted:
        context.mark_aborted(phase)

    return mapped


# ============================================================================
# INTERNAL FUNCTIONS
# ============================================================================

def _validate_extraction_params(min_intersection, min_frequency, max_frequency):
    errors = []
    if not is_number(min_intersection) or min_intersection < 1:
        errors.append(f"min_intersection={min_intersection} must be >=1")
    for name, value in (("min_frequency", min_frequency), ("max_frequency", max_frequency)):
        if not is_number(value) or not 0.0 <= value <= 1.0:
            errors.append(f"{name}={value} must be in [0, 1]")
    if not errors and min_frequency > max_frequency:
        errors.append(f"min_frequency={min_frequency} > max_frequency={max_frequency}")
    if errors:
        raise ConfigurationError(errors)


def _pairwise_pass(
        sets: List[frozenset],
        min_size: int,
        provenance: str,
        mapped: Dict[Tuple[str, ...], str],
        context: ExecutionContext,
        phase: str,
        weights: Optional[Dict[str, int]] = None,
) -> set:
    """
    Intersect every pair (i < j). Registers qualifying keys with `provenance`
    unless already present; returns every qualifying key seen in this pass.
    """
    found = set()
    n = len(sets)
    total_pairs = n * (n - 1) // 2
    interval = context.poll_interval
    compared = 0

    for i in range(n):
        set_a = sets[i]
        for j in range(i + 1, n):
            intersection = set_a & sets[j]
            compared += 1
            if compared % interval == 0:
                context.checkpoint(phase, compared, total_pairs)

            if weighted_size(intersection, weights) < min_size:
                continue
            key = canonical_key(intersection)
            found.add(key)
            mapped.setdefault(key, provenance)

    context.checkpoint(phase, compared, total_pairs, final=True)
    return found


def _weight_intersections(
        members: Iterable[IdentityRecord],
        mapped: Dict[Tuple[str, ...], str],
) -> List[IntersectionObject]:
    members = list(members)
    intersections = []
    for key, provenance in mapped.items():
        key_set = frozenset(key)
        support = 0
        for member in members:
            if key_set <= member.properties:
                support += member.weight
        intersections.append(
            IntersectionObject(
                properties=key,
                provenance=provenance,
                support=support,
                weight=support * len(key),
            )
        )

    intersections.sort(key=lambda i: (-i.weight, i.properties))
    return intersections
