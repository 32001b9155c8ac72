import pytest

from config.config import ConfigurationError, SessionConfig
from models.mining import ChunkStatus, MiningUserTypeChunk, SessionStatistics
from services.clustering import (
    ExactMatchClusterer,
    LeidenClusterer,
    compute_cluster_statistics,
    execute_clustering,
    get_clusterer,
)
from services.progress import ExecutionContext


def _exact_session(**overrides):
    params = dict(clustering_method="exact", min_members_count=2, min_properties_count=2)
    params.update(overrides)
    return SessionConfig(**params)


def test_leiden_separates_disjoint_groups(two_group_population, leiden_session):
    clusters = LeidenClusterer().execute_clustering(leiden_session, two_group_population)

    assert [c.members for c in clusters] == [("u1", "u2", "u3"), ("u4", "u5")]
    assert [c.name for c in clusters] == ["CLUSTER_001", "CLUSTER_002"]
    assert clusters[0].properties == ("A", "B", "C", "D", "E", "F")

    stats = clusters[0].statistics
    assert stats.members_count == 3
    assert stats.properties_count == 6
    assert stats.membership_density == pytest.approx(0.6667)
    assert stats.membership_mean == 4.0
    assert stats.membership_range == (4, 4)
    assert stats.similarity == pytest.approx(0.6)


def test_leiden_marks_isolated_chunks_as_outliers(two_group_population, leiden_session):
    result = LeidenClusterer().cluster(leiden_session, two_group_population)

    statuses = {c.members: c.status for c in result["chunks"]}
    assert statuses[("u6",)] == ChunkStatus.OUTLIER
    assert statuses[("u1",)] == ChunkStatus.INCLUDED
    assert result["unassigned"] == ["u6"]
    assert result["n_clusters"] == 2
    assert result["aborted"] is False


def test_leiden_is_deterministic(two_group_population, leiden_session):
    first = execute_clustering(leiden_session, two_group_population)
    second = execute_clustering(leiden_session, list(reversed(two_group_population)))

    assert [c.to_dict() for c in first] == [c.to_dict() for c in second]


def test_similarity_threshold_is_inclusive(two_group_population, leiden_session):
    """Pairs at exactly 0.6 are linked; raising the threshold leaves no edges."""
    strict = SessionConfig(**{**leiden_session.to_dict(), "similarity_threshold": 0.61})

    result = LeidenClusterer().cluster(strict, two_group_population)

    assert result["clusters"] == []
    assert result["partition_stats"]["graph_edges"] == 0


def test_small_clusters_filtered(two_group_population, leiden_session):
    session = SessionConfig(**{**leiden_session.to_dict(), "min_members_count": 3})

    clusters = execute_clustering(session, two_group_population)

    assert [c.members for c in clusters] == [("u1", "u2", "u3")]


def test_exact_clusterer_groups_identical_profiles(make_records):
    records = make_records({
        "u1": ["A", "B"], "u2": ["A", "B"], "u3": ["A", "B"],
        "u4": ["C", "D"], "u5": ["C", "D"],
        "u6": ["E", "F"],
    })

    clusters = get_clusterer(_exact_session()).execute_clustering(_exact_session(), records)

    assert [(c.members, c.properties) for c in clusters] == [
        (("u1", "u2", "u3"), ("A", "B")),
        (("u4", "u5"), ("C", "D")),
    ]
    assert clusters[0].statistics.similarity == 1.0
    assert clusters[0].statistics.membership_density == 1.0


def test_overlap_attaches_covering_chunks(make_records):
    records = make_records({
        "u1": ["A", "B"], "u2": ["A", "B"], "u3": ["A", "B"],
        "u4": ["A", "B", "C"], "u5": ["A", "B", "C"],
    })

    disjoint = ExactMatchClusterer().execute_clustering(_exact_session(), records)
    overlapping = ExactMatchClusterer().execute_clustering(_exact_session(allow_overlap=True), records)

    assert [c.members for c in disjoint] == [("u1", "u2", "u3"), ("u4", "u5")]
    assert [c.members for c in overlapping] == [("u1", "u2", "u3", "u4", "u5"), ("u4", "u5")]
    assert overlapping[0].properties == ("A", "B", "C")


def test_overlap_respects_cluster_cap(make_records):
    records = make_records({
        "u1": ["A", "B"], "u2": ["A", "B"], "u3": ["A", "B"],
        "u4": ["A", "B", "C"], "u5": ["A", "B", "C"],
    })

    clusters = ExactMatchClusterer().execute_clustering(
        _exact_session(allow_overlap=True, max_clusters_per_member=1), records
    )

    assert [c.members for c in clusters] == [("u1", "u2", "u3"), ("u4", "u5")]


def test_role_mode_clusters_roles(make_records):
    records = make_records({"u1": ["A", "B"], "u2": ["A", "B"], "u3": ["A", "B", "C"]})
    session = _exact_session(process_mode="role")

    clusters = execute_clustering(session, records)

    assert len(clusters) == 1
    assert clusters[0].members == ("A", "B")
    assert clusters[0].properties == ("u1", "u2", "u3")
    assert clusters[0].process_mode == "role"


def test_empty_population(leiden_session):
    result = LeidenClusterer().cluster(leiden_session, [])

    assert result["clusters"] == []
    assert result["aborted"] is False


def test_invalid_session_and_population(two_group_population, leiden_session):
    with pytest.raises(ConfigurationError):
        execute_clustering(None, two_group_population)
    with pytest.raises(ConfigurationError):
        execute_clustering(SessionConfig(similarity_threshold=0.0), two_group_population)
    with pytest.raises(ValueError):
        execute_clustering(leiden_session, None)


def test_cancelled_clustering_reports_abort(two_group_population, leiden_session):
    context = ExecutionContext()
    context.cancel()

    result = LeidenClusterer().cluster(leiden_session, two_group_population, context)

    assert result["aborted"] is True
    assert result["clusters"] == []
    assert context.aborted


def test_cluster_statistics_use_member_weights():
    chunks = [
        MiningUserTypeChunk(members=("u1", "u2"), properties=("A", "B"), weight=2),
        MiningUserTypeChunk(members=("u3",), properties=("A", "B", "C", "D"), weight=1),
    ]

    stats = compute_cluster_statistics(chunks, [0.5])

    assert stats.members_count == 3
    assert stats.properties_count == 4
    assert stats.membership_density == pytest.approx(8 / 12, abs=1e-4)
    assert stats.membership_mean == pytest.approx(8 / 3, abs=1e-4)
    assert stats.membership_range == (2, 4)
    assert stats.similarity == 0.5


def test_session_statistics_after_cluster_removal(two_group_population, leiden_session):
    clusters = execute_clustering(leiden_session, two_group_population)
    statistics = SessionStatistics.from_clusters(clusters)

    assert statistics.cluster_count == 2
    assert statistics.processed_object_count == 5

    remaining = statistics.recompute_after_removal(clusters[1])
    assert remaining.cluster_count == 1
    assert remaining.processed_object_count == 3
    assert remaining.mean_density == pytest.approx(clusters[0].statistics.membership_density)

    assert remaining.recompute_after_removal(clusters[0]) == SessionStatistics()
