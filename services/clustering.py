"""
Identity Clustering - Leiden-Based Role Analysis Sessions
=========================================================

Partitions a population into clusters of identities with similar assignment
profiles. Two strategies share one interface (Clusterable):

- LeidenClusterer: Jaccard similarity graph between chunks + Leiden CPM
- ExactMatchClusterer: every sufficiently large chunk of identical profiles is
  its own cluster (no graph library work)

Process modes:
- user: cluster users by their role sets
- role: cluster roles by their user sets (population is inverted first)

Algorithm (Leiden):
1. Chunk the population (identical profiles collapse into one weighted node)
2. Build sparse Jaccard similarity graph between chunks
3. Run Leiden community detection
4. Drop communities with too few (weighted) members or properties
5. Optionally attach chunks to additional clusters they cover well (overlap)
6. Compute per-cluster statistics

Clusters are disjoint unless the session sets allow_overlap; with overlap a
member may appear in up to max_clusters_per_member clusters and callers must
tolerate that.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

import igraph as ig
import leidenalg
import numpy as np
from scipy.sparse import csr_matrix

from config.config import ConfigurationError, SessionConfig
from models.mining import (
    ROLE_MODE,
    ClusterStatistics,
    IdentityRecord,
    MiningChunk,
    MiningRoleTypeChunk,
    MiningUserTypeChunk,
    RoleAnalysisCluster,
    canonical_key,
)
from services.chunking import aggregate_chunks, classify_chunks, expand_chunks
from services.frequency import build_assignment_matrix, invert_records
from services.progress import ExecutionContext, MiningAborted, ensure_context

logger = logging.getLogger(__name__)

PHASES = ("chunking", "graph", "partition", "filtering", "statistics")


# ============================================================================
# CLUSTERING STRATEGIES
# ============================================================================

class Clusterable(ABC):
    """
    Groups identities by assignment-profile similarity under a session policy.

    Subclasses implement _partition(); chunking, filtering, overlap handling and
    statistics are shared.
    """

    def execute_clustering(
            self,
            session: SessionConfig,
            population: Optional[Sequence[IdentityRecord]],
            context: Optional[ExecutionContext] = None,
    ) -> List[RoleAnalysisCluster]:
        """
        Ordered clusters for `population`.

        On cancellation the clusters finalized so far are returned (often none)
        and context.aborted is set, so an aborted run is distinguishable from a
        run that found nothing.

        Raises:
            ConfigurationError: session missing or invalid
            ValueError: population is None
        """
        return self.cluster(session, population, context)["clusters"]

    def cluster(
            self,
            session: SessionConfig,
            population: Optional[Sequence[IdentityRecord]],
            context: Optional[ExecutionContext] = None,
    ) -> Dict[str, Any]:
        """
        Full clustering result.

        Returns:
            dict with:
                - clusters: [RoleAnalysisCluster] ordered by descending members_count
                - chunks: chunks with INCLUDED / OUTLIER / NOISE status
                - partition_stats: strategy diagnostics
                - n_clusters: final cluster count
                - unassigned: member ids not in any cluster
                - aborted: True if the cancellation signal fired
        """
        session = _validate_session(session)
        if population is None:
            raise ValueError("population must not be None")

        context = ensure_context(context)
        _t_start = time.monotonic()
        clusters: List[RoleAnalysisCluster] = []
        chunks: List[MiningChunk] = []
        partition_stats: Dict[str, Any] = {}
        outlier_keys = set()

        try:
            # Step 1: chunking
            records = list(population)
            if session.process_mode == ROLE_MODE:
                records = invert_records(records)
                chunk_type = MiningRoleTypeChunk
            else:
                chunk_type = MiningUserTypeChunk
            logger.info(
                "Starting %s clustering: mode=%s records=%d",
                type(self).__name__, session.process_mode, len(records),
            )
            chunks = aggregate_chunks(records, chunk_type)
            context.checkpoint("chunking", 1, len(PHASES))

            if not chunks:
                logger.info("Empty population - no clusters")
                context.checkpoint("statistics", len(PHASES), len(PHASES), final=True)
                return _clustering_result([], [], {}, aborted=False)

            # Steps 2-3: partition
            groups, similarities, partition_stats, outlier_keys = self._partition(session, chunks, context)

            # Step 4: filtering
            groups = _filter_small_groups(groups, chunks, session)
            context.checkpoint("filtering", 4, len(PHASES))

            # Step 5: overlap
            if session.allow_overlap and groups:
                groups = _assign_overlapping_chunks(groups, chunks, session)

            # Step 6: statistics
            clusters = _build_clusters(groups, chunks, similarities, session)
            context.checkpoint("statistics", len(PHASES), len(PHASES), final=True)

        except MiningAborted:
            context.mark_aborted("clustering")

        included = {key for c in clusters for key in c.chunk_keys}
        classified = classify_chunks(chunks, included, outlier_keys)
        logger.info(
            "Clustering %s: %d clusters, %d/%d chunks included, elapsed_ms=%.0f",
            "aborted" if context.aborted else "complete",
            len(clusters),
            len(included),
            len(chunks),
            (time.monotonic() - _t_start) * 1000,
        )
        return _clustering_result(clusters, classified, partition_stats, aborted=context.aborted)

    @abstractmethod
    def _partition(
            self,
            session: SessionConfig,
            chunks: List[MiningChunk],
            context: ExecutionContext,
    ) -> Tuple[List[List[int]], Dict[Tuple[int, int], float], Dict[str, Any], set]:
        """
        Split chunk positions into disjoint groups.

        Returns (groups, pairwise similarities keyed by chunk positions,
        diagnostics, keys of chunks with no similar neighbour).
        """


class LeidenClusterer(Clusterable):
    """Leiden community detection over the chunk Jaccard graph."""

    def _partition(self, session, chunks, context):
        logger.info("Step 2: Building Jaccard similarity graph")
        matrix, _, _ = build_assignment_matrix(expand_chunks(chunks))
        edges, edge_weights = _build_jaccard_graph_sparse(
            chunk_matrix=matrix,
            min_similarity=session.similarity_threshold,
            min_shared_properties=session.min_shared_properties,
        )
        context.checkpoint("graph", 2, len(PHASES))

        degrees = np.zeros(len(chunks), dtype=np.int32)
        for a, b in edges:
            degrees[a] += 1
            degrees[b] += 1
        outlier_keys = {chunks[i].key for i in np.where(degrees == 0)[0]}
        logger.info(
            f"Graph: {len(chunks)} nodes, {len(edges)} edges, "
            f"isolated_nodes={len(outlier_keys)}"
        )

        logger.info("Step 3: Running Leiden community detection")
        if edges:
            membership, leiden_stats = _run_leiden_clustering(
                n_chunks=len(chunks),
                edges=edges,
                edge_weights=edge_weights,
                resolution=session.leiden_resolution,
                random_seed=session.leiden_random_seed,
            )
        else:
            logger.warning("No edges in graph - every chunk is its own community")
            membership = list(range(len(chunks)))
            leiden_stats = _empty_leiden_stats(len(chunks))

        groups: Dict[int, List[int]] = {}
        for pos, community in enumerate(membership):
            groups.setdefault(community, []).append(pos)
        context.checkpoint("partition", 3, len(PHASES))

        similarities = {edge: weight for edge, weight in zip(edges, edge_weights)}
        leiden_stats["initial_clusters"] = len(groups)
        return [groups[c] for c in sorted(groups)], similarities, leiden_stats, outlier_keys


class ExactMatchClusterer(Clusterable):
    """Each chunk of identical profiles is a candidate cluster on its own."""

    def _partition(self, session, chunks, context):
        context.checkpoint("graph", 2, len(PHASES))
        groups = [[pos] for pos in range(len(chunks))]
        context.checkpoint("partition", 3, len(PHASES))
        return groups, {}, {"initial_clusters": len(groups)}, set()


_CLUSTERERS = {
    "leiden": LeidenClusterer,
    "exact": ExactMatchClusterer,
}


def get_clusterer(session: SessionConfig) -> Clusterable:
    session = _validate_session(session)
    return _CLUSTERERS[session.clustering_method]()


def execute_clustering(
        session: SessionConfig,
        population: Optional[Sequence[IdentityRecord]],
        context: Optional[ExecutionContext] = None,
) -> List[RoleAnalysisCluster]:
    """Cluster `population` with the strategy named by session.clustering_method."""
    return get_clusterer(session).execute_clustering(session, population, context)


# ============================================================================
# INTERNAL FUNCTIONS
# ============================================================================

def _validate_session(session) -> SessionConfig:
    if session is None:
        raise ConfigurationError("session configuration is required")
    if not isinstance(session, SessionConfig):
        raise ConfigurationError(f"Unsupported session configuration type: {type(session).__name__}")
    return session.ensure_valid()


def _build_jaccard_graph_sparse(
        chunk_matrix: csr_matrix,
        min_similarity: float,
        min_shared_properties: int,
) -> Tuple[List[Tuple[int, int]], List[float]]:
    """
    Build Jaccard similarity graph from sparse chunk × property matrix.

    Only computes similarity for chunk pairs that share a property.
    This is O(non-zero pairs) instead of O(n²).

    Returns:
        edges: List of (chunk_i, chunk_j) tuples
        weights: List of Jaccard similarities
    """
    # overlap[i,j] = number of properties held by both chunk_i and chunk_j
    overlap = (chunk_matrix.astype(np.int32) @ chunk_matrix.T.astype(np.int32)).tocoo()

    # Pre-compute row sums (properties per chunk)
    row_sums = np.asarray(chunk_matrix.sum(axis=1)).flatten()

    edges = []
    weights = []

    for i, j, intersection in zip(overlap.row, overlap.col, overlap.data):
        # Skip diagonal and lower triangle (undirected graph)
        if i >= j:
            continue

        if intersection < min_shared_properties:
            continue

        # Jaccard = intersection / union
        union = row_sums[i] + row_sums[j] - intersection
        jaccard = intersection / union if union > 0 else 0.0

        if jaccard >= min_similarity:
            edges.append((int(i), int(j)))
            weights.append(float(jaccard))

    # COO order is not guaranteed; sort so igraph sees the same edge list every run
    order = sorted(range(len(edges)), key=lambda k: edges[k])
    return [edges[k] for k in order], [weights[k] for k in order]


def _run_leiden_clustering(
        n_chunks: int,
        edges: List[Tuple[int, int]],
        edge_weights: List[float],
        resolution: float,
        random_seed: int,
) -> Tuple[List[int], Dict[str, Any]]:
    """
    Run Leiden community detection algorithm.

    Returns:
        membership: community id per chunk position
        leiden_stats: clustering quality metrics
    """
    g = ig.Graph()
    g.add_vertices(n_chunks)
    g.add_edges(edges)
    g.es["weight"] = edge_weights

    partition = leidenalg.find_partition(
        g,
        leidenalg.CPMVertexPartition,
        weights='weight',
        resolution_parameter=resolution,
        seed=random_seed,
        n_iterations=-1,
    )

    leiden_stats = {
        "cpm_quality": float(partition.quality()),
        "resolution": resolution,
        "graph_nodes": n_chunks,
        "graph_edges": len(edges),
        "avg_degree": 2 * len(edges) / n_chunks if n_chunks > 0 else 0,
        "isolated_nodes": n_chunks - len(set(node for edge in edges for node in edge)),
    }
    return list(partition.membership), leiden_stats


def _empty_leiden_stats(n_chunks: int) -> Dict[str, Any]:
    return {
        "cpm_quality": 0.0,
        "graph_nodes": n_chunks,
        "graph_edges": 0,
        "avg_degree": 0,
        "isolated_nodes": n_chunks,
    }


def _group_profile(group: List[int], chunks: List[MiningChunk]) -> Tuple[int, set]:
    weight = sum(chunks[pos].weight for pos in group)
    properties = set()
    for pos in group:
        properties.update(chunks[pos].properties)
    return weight, properties


def _filter_small_groups(
        groups: List[List[int]],
        chunks: List[MiningChunk],
        session: SessionConfig,
) -> List[List[int]]:
    """Drop groups with too few weighted members or too few properties."""
    kept = []
    for group in groups:
        weight, properties = _group_profile(group, chunks)
        if weight < session.min_members_count:
            continue
        if len(properties) < session.min_properties_count:
            continue
        kept.append(group)

    dropped_count = len(groups) - len(kept)
    if dropped_count > 0:
        logger.info(
            f"Dropped {dropped_count} small clusters (<{session.min_members_count} members "
            f"or <{session.min_properties_count} properties)"
        )
    if not kept and groups:
        logger.warning("All clusters dropped (too small), returning empty")
    return kept


def _assign_overlapping_chunks(
        groups: List[List[int]],
        chunks: List[MiningChunk],
        session: SessionConfig,
) -> List[List[int]]:
    """
    Attach chunks to additional clusters whose property union they cover.

    Both conditions must hold: coverage >= min_overlap_coverage AND shared
    properties >= min_shared_properties. A chunk keeps its own cluster and joins
    further ones by coverage descending, overlap descending, until it is in
    max_clusters_per_member clusters.

    Vectorized: overlap = chunk_matrix @ cluster_matrix.T.
    """
    chunk_matrix, _, property_ids = build_assignment_matrix(expand_chunks(chunks))
    prop_index = {prop: i for i, prop in enumerate(property_ids)}

    rows, cols = [], []
    for g_pos, group in enumerate(groups):
        _, properties = _group_profile(group, chunks)
        for prop in properties:
            rows.append(g_pos)
            cols.append(prop_index[prop])
    cluster_matrix = csr_matrix(
        (np.ones(len(rows), dtype=np.int32), (rows, cols)),
        shape=(len(groups), len(property_ids)),
    )
    cluster_sizes = np.asarray(cluster_matrix.sum(axis=1)).flatten()
    safe_sizes = np.where(cluster_sizes > 0, cluster_sizes, 1)

    overlap_sparse = (chunk_matrix.astype(np.int32) @ cluster_matrix.T).tocsr()

    home = {}
    for g_pos, group in enumerate(groups):
        for pos in group:
            home[pos] = g_pos

    extended = [list(group) for group in groups]
    added = 0
    for pos in range(len(chunks)):
        row_start = overlap_sparse.indptr[pos]
        row_end = overlap_sparse.indptr[pos + 1]
        if row_start == row_end:
            continue

        g_positions = overlap_sparse.indices[row_start:row_end]
        overlap_vals = overlap_sparse.data[row_start:row_end].astype(np.float64)
        coverage_vals = overlap_vals / safe_sizes[g_positions]

        mask = (
                (coverage_vals >= session.min_overlap_coverage)
                & (overlap_vals >= session.min_shared_properties)
                & (g_positions != home.get(pos, -1))
        )
        qualifying = np.where(mask)[0]
        if len(qualifying) == 0:
            continue

        # primary: coverage, secondary: overlap, then cluster position for stable ties
        order = np.lexsort((g_positions[qualifying], -overlap_vals[qualifying], -coverage_vals[qualifying]))
        slots = session.max_clusters_per_member - (1 if pos in home else 0)
        for idx in qualifying[order][:max(slots, 0)]:
            extended[int(g_positions[idx])].append(pos)
            added += 1

    if added:
        logger.info(f"Overlap assignment added {added} chunk memberships")
    return extended


def _build_clusters(
        groups: List[List[int]],
        chunks: List[MiningChunk],
        similarities: Dict[Tuple[int, int], float],
        session: SessionConfig,
) -> List[RoleAnalysisCluster]:
    drafts = []
    for group in groups:
        group = sorted(set(group))
        members = canonical_key(m for pos in group for m in chunks[pos].members)
        _, properties = _group_profile(group, chunks)
        internal = [
            similarities[(a, b)]
            for i, a in enumerate(group)
            for b in group[i + 1:]
            if (a, b) in similarities
        ]
        statistics = compute_cluster_statistics([chunks[pos] for pos in group], internal)
        drafts.append((group, members, canonical_key(properties), statistics))

    drafts.sort(key=lambda d: (-d[3].members_count, d[2]))

    clusters = []
    for cluster_id, (group, members, properties, statistics) in enumerate(drafts, start=1):
        clusters.append(
            RoleAnalysisCluster(
                cluster_id=cluster_id,
                name=f"CLUSTER_{cluster_id:03d}",
                process_mode=session.process_mode,
                members=members,
                properties=properties,
                chunk_keys=tuple(chunks[pos].key for pos in group),
                statistics=statistics,
            )
        )
    return clusters


def compute_cluster_statistics(
        chunks: Sequence[MiningChunk],
        similarities: Sequence[float] = (),
) -> ClusterStatistics:
    """
    Per-cluster membership statistics.

    membership_density = assignments / (members × properties)
    membership_mean = assignments / members
    similarity = mean Jaccard of the cluster's internal edges
        (1.0 for a single chunk: all members share one profile)
    """
    members_count = sum(c.weight for c in chunks)
    properties = set()
    for chunk in chunks:
        properties.update(chunk.properties)
    assignments = sum(c.weight * len(c.properties) for c in chunks)
    sizes = [len(c.properties) for c in chunks]

    if len(chunks) == 1:
        similarity = 1.0
    else:
        similarity = round(float(np.mean(similarities)), 4) if len(similarities) else 0.0

    cells = members_count * len(properties)
    return ClusterStatistics(
        members_count=members_count,
        properties_count=len(properties),
        membership_density=round(assignments / cells, 4) if cells else 0.0,
        membership_mean=round(assignments / members_count, 4) if members_count else 0.0,
        membership_range=(min(sizes), max(sizes)) if sizes else (0, 0),
        similarity=similarity,
    )


def _clustering_result(
        clusters: List[RoleAnalysisCluster],
        chunks: List[MiningChunk],
        partition_stats: Dict[str, Any],
        aborted: bool,
) -> Dict[str, Any]:
    assigned = {m for c in clusters for m in c.members}
    all_members = {m for chunk in chunks for m in chunk.members}
    return {
        "clusters": clusters,
        "chunks": chunks,
        "partition_stats": partition_stats,
        "n_clusters": len(clusters),
        "unassigned": sorted(all_members - assigned),
        "aborted": aborted,
    }
