import pytest

from app import create_app

RECORDS = [
    {"oid": "u1", "roles": ["A", "B", "C", "D"]},
    {"oid": "u2", "roles": ["A", "B", "C", "E"]},
    {"oid": "u3", "roles": ["A", "B", "C", "F"]},
    {"oid": "u4", "roles": ["X", "Y", "Z", "P"]},
    {"oid": "u5", "roles": ["X", "Y", "Z", "Q"]},
]


@pytest.fixture
def client():
    app = create_app({"TESTING": True})
    return app.test_client()


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_wrong_method_is_json(client):
    response = client.get("/api/analysis")

    assert response.status_code == 405
    assert response.get_json()["allowed"] == ["OPTIONS", "POST"]


def test_config_defaults_and_presets(client):
    default = client.get("/api/config/defaults").get_json()
    conservative = client.get("/api/config/defaults?preset=conservative").get_json()

    assert default["session"]["leiden_resolution"] == 0.3
    assert conservative["detection"]["min_support"] == 5


def test_config_validate_reports_errors(client):
    response = client.post("/api/config/validate", json={"detection": {"min_frequency": 2.0}})

    body = response.get_json()
    assert response.status_code == 200
    assert body["valid"] is False
    assert body["validation_errors"]


def test_analysis_endpoint(client):
    response = client.post("/api/analysis", json={
        "records": RECORDS,
        "config": {"session": {"min_members_count": 2}, "num_workers": 1},
    })

    body = response.get_json()
    assert response.status_code == 200
    assert body["status"] == "completed"
    assert body["session_statistics"]["cluster_count"] == 2
    assert body["clusters"][0]["detected_reduction_metric"] == 9.0


def test_analysis_rejects_invalid_config(client):
    response = client.post("/api/analysis", json={
        "records": RECORDS,
        "config": {"detection": {"min_frequency": 0.9, "max_frequency": 0.1}},
    })

    assert response.status_code == 400
    assert response.get_json()["validation_errors"]


def test_analysis_requires_records(client):
    assert client.post("/api/analysis", json={}).status_code == 400
    assert client.post("/api/analysis", json={"records": "u1"}).status_code == 400
    assert client.post("/api/analysis", data="not json").status_code == 400


def test_detection_endpoint(client):
    response = client.post("/api/detection", json={"records": RECORDS[:3]})

    body = response.get_json()
    assert response.status_code == 200
    assert body["mode"] == "user"
    assert body["patterns"][0]["properties"] == ["A", "B", "C"]
    assert body["detected_reduction_metric"] == 9.0


def test_detection_endpoint_role_mode(client):
    response = client.post("/api/detection", json={
        "records": RECORDS[:3],
        "config": {"process_mode": "role"},
    })

    body = response.get_json()
    assert response.status_code == 200
    assert body["mode"] == "role"
    assert all(p["mode"] == "role" for p in body["patterns"])


def test_analysis_rejects_non_numeric_threshold(client):
    response = client.post("/api/analysis", json={
        "records": RECORDS,
        "config": {"detection": {"min_frequency": "abc"}},
    })

    assert response.status_code == 400
    assert response.get_json()["validation_errors"] == ["min_frequency='abc' must be a number"]


def test_config_validate_reports_non_numeric_values(client):
    response = client.post("/api/config/validate", json={"session": {"similarity_threshold": "0.6"}})

    body = response.get_json()
    assert response.status_code == 200
    assert body["valid"] is False
