# services/analysis.py
"""
Role Analysis Pipeline
======================

One batch run over an in-memory population:

1. Frequency index over the analysed axis
2. Clustering (strategy chosen by the session)
3. Per cluster, in worker threads:
   - intersection extraction
   - pattern detection (user-based for user sessions, role-based for role sessions)
   - detected reduction metric (best pattern score)
4. Session statistics

Every mapping built here lives for one call only. Finished cluster analyses are
also pushed to the context's result sink as they complete, so an orchestrator
can persist partial output of a long run.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from config.config import AnalysisConfig, resolve_config
from models.mining import (
    ROLE_MODE,
    DetectedPattern,
    IdentityRecord,
    IntersectionObject,
    RoleAnalysisCluster,
    SessionStatistics,
    records_to_dicts,
)
from services.chunking import build_role_chunks, build_user_chunks
from services.clustering import get_clusterer
from services.detection import (
    detected_reduction_metric,
    perform_role_based_detection,
    perform_user_based_detection,
)
from services.frequency import compute_frequency_map, frequency_band_summary, invert_records, weight_map
from services.intersections import extract_intersections
from services.progress import ExecutionContext, MiningAborted

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClusterAnalysis:
    cluster: RoleAnalysisCluster
    intersections: List[IntersectionObject]
    patterns: List[DetectedPattern]
    detected_reduction_metric: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cluster": self.cluster.to_dict(),
            "intersections": records_to_dicts(self.intersections),
            "patterns": records_to_dicts(self.patterns),
            "detected_reduction_metric": self.detected_reduction_metric,
        }


# ============================================================================
# PER-CLUSTER ANALYSIS
# ============================================================================

def analyze_cluster(
        cluster: RoleAnalysisCluster,
        records_by_oid: Dict[str, IdentityRecord],
        frequency_map: Dict[str, float],
        config: AnalysisConfig,
        context: ExecutionContext,
        identity_weights: Optional[Dict[str, int]] = None,
) -> ClusterAnalysis:
    """
    Intersections and detected patterns for one cluster.

    `records_by_oid` must be keyed on the clustered axis (users for a user
    session, roles for a role session). `identity_weights` holds the user
    weights a role session needs once it turns its members back into users.
    """
    detection = config.detection
    members = [records_by_oid[oid] for oid in cluster.members if oid in records_by_oid]

    intersections = extract_intersections(
        members,
        detection.min_intersection,
        detection.min_frequency,
        frequency_map,
        detection.max_frequency,
        context,
    )

    if cluster.process_mode == ROLE_MODE:
        # members are roles; regroup the users they cover by identical role set
        user_chunks = build_user_chunks(invert_records(members, weights=identity_weights))
        patterns = perform_role_based_detection(user_chunks, detection, context)
    else:
        role_chunks = build_role_chunks(members)
        patterns = perform_user_based_detection(role_chunks, detection, context)

    return ClusterAnalysis(
        cluster=cluster,
        intersections=intersections,
        patterns=patterns,
        detected_reduction_metric=detected_reduction_metric(patterns),
    )


# ============================================================================
# MAIN PIPELINE
# ============================================================================

def run_role_analysis(
        records: Optional[Sequence[IdentityRecord]],
        config: Optional[Any] = None,
        context: Optional[ExecutionContext] = None,
) -> Dict[str, Any]:
    """
    Cluster the population and detect patterns in every cluster.

    Args:
        records: user records (oid -> role set, weight)
        config: AnalysisConfig, dict of overrides, or None for defaults
        context: progress / cancellation / result sink; one is created if omitted

    Returns:
        dict with:
            - status: "completed" or "aborted"
            - clusters: per-cluster analysis dicts in cluster order
            - session_statistics: processed_object_count, cluster_count, mean_density
            - chunk_status: chunk counts by status
            - partition_stats: clustering diagnostics
            - unassigned: ids that ended up in no cluster
            - frequency: kept / too_rare / too_common property counts
            - config: effective configuration
            - elapsed_ms

    Raises:
        ConfigurationError: invalid configuration (before any scan)
        ValueError: records is None
    """
    config = resolve_config(config)
    if records is None:
        raise ValueError("records must not be None")
    if context is None:
        context = ExecutionContext(poll_interval=config.progress_interval)

    session = config.session
    detection = config.detection
    t_start = time.monotonic()
    logger.info(
        "role analysis starting: records=%d mode=%s method=%s workers=%d",
        len(records), session.process_mode, session.clustering_method, config.num_workers,
    )

    # Step 1: frequency index over the clustered axis
    t = time.monotonic()
    records = list(records)
    analysed = invert_records(records) if session.process_mode == ROLE_MODE else records
    frequency_map = compute_frequency_map(analysed)
    kept, too_rare, too_common = frequency_band_summary(
        frequency_map, detection.min_frequency, detection.max_frequency
    )
    logger.info(
        "role analysis step=1 name=frequency_index done: properties=%d kept=%d rare=%d common=%d elapsed_ms=%.0f",
        len(frequency_map), kept, too_rare, too_common, (time.monotonic() - t) * 1000,
    )

    # Step 2: clustering
    t = time.monotonic()
    cluster_result = get_clusterer(session).cluster(session, records, context)
    clusters = cluster_result["clusters"]
    logger.info(
        "role analysis step=2 name=clustering done: clusters=%d unassigned=%d elapsed_ms=%.0f",
        len(clusters), len(cluster_result["unassigned"]), (time.monotonic() - t) * 1000,
    )

    # Step 3: per-cluster extraction + detection
    t = time.monotonic()
    analyses: List[ClusterAnalysis] = []
    if clusters and not context.aborted:
        records_by_oid = {r.oid: r for r in analysed}
        analyses = _analyze_clusters(
            clusters, records_by_oid, frequency_map, config, context, weight_map(records),
        )
    logger.info(
        "role analysis step=3 name=detection done: analysed=%d/%d patterns=%d elapsed_ms=%.0f",
        len(analyses), len(clusters), sum(len(a.patterns) for a in analyses),
        (time.monotonic() - t) * 1000,
    )

    # Step 4: session statistics
    statistics = SessionStatistics.from_clusters(clusters)
    chunk_status: Dict[str, int] = {}
    for chunk in cluster_result["chunks"]:
        chunk_status[chunk.status.value] = chunk_status.get(chunk.status.value, 0) + 1

    status = "aborted" if context.aborted else "completed"
    elapsed_ms = round((time.monotonic() - t_start) * 1000)
    logger.info(
        "role analysis %s: clusters=%d processed_objects=%d mean_density=%.4f total_elapsed_ms=%d",
        status, statistics.cluster_count, statistics.processed_object_count,
        statistics.mean_density, elapsed_ms,
    )

    return {
        "status": status,
        "clusters": [a.to_dict() for a in analyses],
        "session_statistics": statistics.to_dict(),
        "chunk_status": chunk_status,
        "partition_stats": cluster_result["partition_stats"],
        "unassigned": cluster_result["unassigned"],
        "frequency": {"properties": len(frequency_map), "kept": kept,
                      "too_rare": too_rare, "too_common": too_common},
        "config": config.to_dict(),
        "elapsed_ms": elapsed_ms,
    }


def _analyze_clusters(
        clusters: List[RoleAnalysisCluster],
        records_by_oid: Dict[str, IdentityRecord],
        frequency_map: Dict[str, float],
        config: AnalysisConfig,
        context: ExecutionContext,
        identity_weights: Optional[Dict[str, int]] = None,
) -> List[ClusterAnalysis]:
    """
    Analyse clusters in worker threads; per-worker results are merged afterwards
    in cluster order. Cancellation is polled once per cluster.
    """
    total = len(clusters)
    finished: Dict[int, ClusterAnalysis] = {}

    def _process_one(cluster: RoleAnalysisCluster) -> Optional[ClusterAnalysis]:
        if context.cancelled:
            return None
        analysis = analyze_cluster(
            cluster, records_by_oid, frequency_map, config, context, identity_weights,
        )
        context.collect(analysis)
        return analysis

    try:
        if config.num_workers > 1 and total > 1:
            logger.info(f"Analysing {total} clusters with {config.num_workers} workers...")
            with ThreadPoolExecutor(max_workers=config.num_workers) as executor:
                futures = {executor.submit(_process_one, c): c.cluster_id for c in clusters}
                try:
                    for done, future in enumerate(as_completed(futures), start=1):
                        analysis = future.result()
                        if analysis is not None:
                            finished[futures[future]] = analysis
                        context.checkpoint("clusters", done, total, final=done == total)
                except MiningAborted:
                    for future in futures:
                        future.cancel()
                    raise
        else:
            for done, cluster in enumerate(clusters, start=1):
                analysis = _process_one(cluster)
                if analysis is not None:
                    finished[cluster.cluster_id] = analysis
                context.checkpoint("clusters", done, total, final=done == total)
    except MiningAborted:
        if len(finished) < total:
            context.mark_aborted("cluster analysis")

    return [finished[c.cluster_id] for c in clusters if c.cluster_id in finished]
