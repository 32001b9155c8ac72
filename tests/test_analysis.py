from types import SimpleNamespace

import pytest

from config.config import AnalysisConfig, ConfigurationError
from services import analysis as analysis_module
from services.analysis import ClusterAnalysis, run_role_analysis
from services.progress import ExecutionContext

SMALL_CLUSTERS = {
    "session": {"min_members_count": 2, "min_properties_count": 2},
    "num_workers": 1,
}


def test_pipeline_clusters_and_detects(two_group_population):
    result = run_role_analysis(two_group_population, SMALL_CLUSTERS)

    assert result["status"] == "completed"
    assert [c["cluster"]["members"] for c in result["clusters"]] == [["u1", "u2", "u3"], ["u4", "u5"]]

    first = result["clusters"][0]
    assert first["intersections"] == [
        {"properties": ["A", "B", "C"], "provenance": "outer", "support": 3, "weight": 9, "size": 3},
    ]
    assert [(p["properties"], p["members"], p["score"]) for p in first["patterns"]] == [
        (["A", "B", "C"], ["u1", "u2", "u3"], 9.0),
    ]
    assert first["detected_reduction_metric"] == 9.0

    assert result["session_statistics"]["cluster_count"] == 2
    assert result["session_statistics"]["processed_object_count"] == 5
    assert result["unassigned"] == ["u6"]
    assert result["chunk_status"] == {"included": 5, "outlier": 1}


def test_worker_threads_give_same_result(two_group_population):
    sequential = run_role_analysis(two_group_population, SMALL_CLUSTERS)
    threaded = run_role_analysis(two_group_population, {**SMALL_CLUSTERS, "num_workers": 4})

    assert threaded["clusters"] == sequential["clusters"]
    assert threaded["session_statistics"] == sequential["session_statistics"]


def test_finished_clusters_reach_result_sink(two_group_population):
    context = ExecutionContext()

    run_role_analysis(two_group_population, SMALL_CLUSTERS, context)

    collected = context.results()
    assert len(collected) == 2
    assert all(isinstance(a, ClusterAnalysis) for a in collected)


def test_role_mode_pipeline(make_records):
    records = make_records({
        "u1": ["A", "B", "C"], "u2": ["A", "B", "C"], "u3": ["A", "B", "C"], "u4": ["D"],
    })
    config = {
        "session": {"process_mode": "role", "clustering_method": "exact",
                    "min_members_count": 2, "min_properties_count": 2},
        "num_workers": 1,
    }

    result = run_role_analysis(records, config)

    assert result["status"] == "completed"
    cluster = result["clusters"][0]
    assert cluster["cluster"]["members"] == ["A", "B", "C"]
    assert cluster["cluster"]["process_mode"] == "role"
    assert [p["mode"] for p in cluster["patterns"]] == ["role"]


def test_empty_population():
    result = run_role_analysis([])

    assert result["status"] == "completed"
    assert result["clusters"] == []
    assert result["session_statistics"] == {
        "processed_object_count": 0, "cluster_count": 0, "mean_density": 0.0,
    }


def test_stop_request_returns_aborted_status(two_group_population):
    class StopReporter:
        def report(self, units_done, units_total, is_final):
            return False

    context = ExecutionContext(reporter=StopReporter())

    result = run_role_analysis(two_group_population, SMALL_CLUSTERS, context)

    assert result["status"] == "aborted"
    assert result["clusters"] == []


def test_invalid_config_rejected(two_group_population):
    with pytest.raises(ConfigurationError) as exc_info:
        run_role_analysis(two_group_population, {"detection": {"min_frequency": 0.9, "max_frequency": 0.1}})

    assert any("min_frequency" in e for e in exc_info.value.errors)


def test_none_records_rejected():
    with pytest.raises(ValueError):
        run_role_analysis(None)


def test_role_mode_patterns_weigh_aggregated_users(make_records):
    """u1 stands for three users, so the u1/u2 body weighs four."""
    records = make_records(
        {"u1": ["A", "B", "C"], "u2": ["A", "B", "C"], "u4": ["D"]},
        weights={"u1": 3},
    )
    config = {
        "session": {"process_mode": "role", "clustering_method": "exact",
                    "min_members_count": 2, "min_properties_count": 2},
        "num_workers": 1,
    }

    result = run_role_analysis(records, config)

    patterns = result["clusters"][0]["patterns"]
    assert [(p["properties"], p["members"], p["support"], p["score"]) for p in patterns] == [
        (["u1", "u2"], ["A", "B", "C"], 3, 12.0),
    ]


def test_stop_request_after_last_cluster_keeps_completed_run(monkeypatch):
    class StopOnLastCluster:
        def report(self, units_done, units_total, is_final):
            return not is_final

    def fake_analyze(cluster, *args):
        return ClusterAnalysis(cluster=cluster, intersections=[], patterns=[], detected_reduction_metric=0.0)

    monkeypatch.setattr(analysis_module, "analyze_cluster", fake_analyze)
    clusters = [SimpleNamespace(cluster_id=1), SimpleNamespace(cluster_id=2)]
    context = ExecutionContext(reporter=StopOnLastCluster())

    analyses = analysis_module._analyze_clusters(clusters, {}, {}, AnalysisConfig(num_workers=1), context)

    assert [a.cluster.cluster_id for a in analyses] == [1, 2]
    assert context.cancelled
    assert not context.aborted


def test_stop_request_before_last_cluster_marks_aborted(monkeypatch):
    class StopAfterFirst:
        def report(self, units_done, units_total, is_final):
            return False

    def fake_analyze(cluster, *args):
        return ClusterAnalysis(cluster=cluster, intersections=[], patterns=[], detected_reduction_metric=0.0)

    monkeypatch.setattr(analysis_module, "analyze_cluster", fake_analyze)
    clusters = [SimpleNamespace(cluster_id=1), SimpleNamespace(cluster_id=2)]
    context = ExecutionContext(reporter=StopAfterFirst())

    analyses = analysis_module._analyze_clusters(clusters, {}, {}, AnalysisConfig(num_workers=1), context)

    assert [a.cluster.cluster_id for a in analyses] == [1]
    assert context.aborted
