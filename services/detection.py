# services/detection.py
"""
Pattern Detector
================

Turns chunks into scored DetectedPattern candidates, in two symmetric modes:

- user-based (role chunks in): pattern body = roles, support = users holding
  all of them. "These 40 users all share these 6 roles."
- role-based (user chunks in): pattern body = users, support = roles they all
  hold.

Every size below is weighted: an identifier counts as many times as the
record it was aggregated from (a user record of weight 5 supports a pattern
like five identical users).

Algorithm (both modes):
1. Validate options before touching the data
2. Chunk frequency = |support set| / |support population|; drop chunks outside
   [min_frequency, max_frequency]
3. Candidate support sets = every surviving chunk's support set plus the
   outer/inner intersections of those sets (size >= min_support)
4. Pattern body for a candidate = union of members of every surviving chunk
   whose support set contains the candidate
5. Keep bodies with >= min_intersection identifiers; one pattern per distinct
   body (largest support wins)
6. score = body size × support; order by descending support, then body key
"""

import logging
import time
from typing import Dict, List, Optional, Sequence, Tuple

from config.config import DetectionOption, ConfigurationError
from models.mining import (
    ROLE_MODE,
    USER_MODE,
    DetectedPattern,
    MiningChunk,
    MiningRoleTypeChunk,
    MiningUserTypeChunk,
    canonical_key,
    weighted_size,
)
from services.intersections import collect_intersections
from services.progress import ExecutionContext, MiningAborted, ensure_context

logger = logging.getLogger(__name__)


# ============================================================================
# PUBLIC DETECTION OPERATIONS
# ============================================================================

def perform_user_based_detection(
        role_chunks: Optional[Sequence[MiningRoleTypeChunk]],
        options: DetectionOption,
        context: Optional[ExecutionContext] = None,
) -> List[DetectedPattern]:
    """
    Role sets shared by many users.

    Args:
        role_chunks: roles grouped by identical user set
        options: thresholds (min_intersection = minimum roles per pattern,
            min_support = minimum users per pattern)
        context: progress / cancellation

    Returns:
        DetectedPattern list, descending support then ascending role key.
        Empty input gives an empty list.

    Raises:
        ConfigurationError: options missing or malformed
        ValueError: role_chunks is None
    """
    return _detect(role_chunks, options, context, USER_MODE)


def perform_role_based_detection(
        user_chunks: Optional[Sequence[MiningUserTypeChunk]],
        options: DetectionOption,
        context: Optional[ExecutionContext] = None,
) -> List[DetectedPattern]:
    """
    User sets sharing many roles. Dual of perform_user_based_detection with
    roles and users interchanged.
    """
    return _detect(user_chunks, options, context, ROLE_MODE)


class DetectionOperation:
    """Both detection modes bound to one execution context."""

    def __init__(self, context: Optional[ExecutionContext] = None):
        self.context = ensure_context(context)

    def perform_user_based_detection(self, role_chunks, options) -> List[DetectedPattern]:
        return perform_user_based_detection(role_chunks, options, self.context)

    def perform_role_based_detection(self, user_chunks, options) -> List[DetectedPattern]:
        return perform_role_based_detection(user_chunks, options, self.context)


def detected_reduction_metric(patterns: Sequence[DetectedPattern]) -> float:
    """Best pattern score of a cluster (0.0 when nothing was detected)."""
    return max((float(p.score) for p in patterns), default=0.0)


# ============================================================================
# INTERNAL FUNCTIONS
# ============================================================================

def _validate_options(options) -> DetectionOption:
    if options is None:
        raise ConfigurationError("detection options are required")
    if not isinstance(options, DetectionOption):
        raise ConfigurationError(f"Unsupported detection options type: {type(options).__name__}")
    return options.ensure_valid()


def _detect(
        chunks: Optional[Sequence[MiningChunk]],
        options: DetectionOption,
        context: Optional[ExecutionContext],
        mode: str,
) -> List[DetectedPattern]:
    options = _validate_options(options)
    if chunks is None:
        raise ValueError("chunks must not be None")

    context = ensure_context(context)
    if not chunks:
        logger.info("%s-based detection: no chunks, nothing to detect", mode)
        return []

    _t_start = time.monotonic()

    # member / support identifiers weigh what their pre-aggregated record weighed
    body_weights: Dict[str, int] = {}
    support_weights: Dict[str, int] = {}
    for chunk in chunks:
        body_weights.update(chunk.member_weight_map())
        support_weights.update(chunk.property_weight_map())

    # Step 1: chunk frequency band filter
    population = sum(support_weights.values())
    surviving = [
        chunk for chunk in chunks
        if options.min_frequency <= chunk.frequency(population) <= options.max_frequency
    ]
    logger.debug(
        "%s-based detection: chunks=%d surviving=%d population=%d",
        mode, len(chunks), len(surviving), population,
    )

    support_sets = [frozenset(chunk.properties) for chunk in surviving]
    eligible = [s for s in support_sets if weighted_size(s, support_weights) >= options.min_support]

    # Step 2: candidate support sets
    candidates: Dict[Tuple[str, ...], None] = {}
    for support_set in eligible:
        candidates.setdefault(canonical_key(support_set), None)

    mapped = collect_intersections(
        eligible,
        options.min_support,
        context,
        phase=f"{mode}_detection",
        weights=support_weights,
    )
    for key in mapped:
        candidates.setdefault(key, None)

    # Step 3: resolve each candidate into a pattern body
    best: Dict[Tuple[str, ...], Tuple[str, ...]] = {}
    total = len(candidates)
    try:
        context.poll()
        for done, support_key in enumerate(sorted(candidates), start=1):
            if done % context.poll_interval == 0:
                context.checkpoint(f"{mode}_detection:patterns", done, total)

            support_set = frozenset(support_key)
            body = set()
            for chunk, chunk_support in zip(surviving, support_sets):
                if support_set <= chunk_support:
                    body.update(chunk.members)
            if weighted_size(body, body_weights) < options.min_intersection:
                continue

            body_key = canonical_key(body)
            current = best.get(body_key)
            # candidates arrive in ascending key order, so on equal support the smaller key stays
            if current is None or (
                    weighted_size(support_key, support_weights) > weighted_size(current, support_weights)):
                best[body_key] = support_key
        context.checkpoint(f"{mode}_detection:patterns", total, total, final=True)
    except MiningAborted:
        context.mark_aborted(f"{mode}_detection")

    # Step 4: score and order
    patterns = []
    for body_key, support_key in best.items():
        support = weighted_size(support_key, support_weights)
        patterns.append(
            DetectedPattern(
                properties=body_key,
                members=support_key,
                support=support,
                score=float(weighted_size(body_key, body_weights) * support),
                mode=mode,
            )
        )
    patterns.sort(key=lambda p: (-p.support, p.properties))

    logger.info(
        "%s-based detection %s: chunks=%d candidates=%d patterns=%d elapsed_ms=%.0f",
        mode,
        "aborted" if context.aborted else "complete",
        len(chunks),
        total,
        len(patterns),
        (time.monotonic() - _t_start) * 1000,
    )
    return patterns
