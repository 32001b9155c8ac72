import pytest

from config.config import SessionConfig
from models.mining import IdentityRecord


def _make_records(assignments, weights=None):
    """{oid: [roles]} -> IdentityRecord list (ordered by oid)."""
    weights = weights or {}
    return [
        IdentityRecord(oid=oid, properties=frozenset(roles), weight=weights.get(oid, 1))
        for oid, roles in sorted(assignments.items())
    ]


@pytest.fixture
def small_population():
    """Three users share A,B; two of them also share C; one outlier holds X."""
    return _make_records({
        "u1": ["A", "B", "C"],
        "u2": ["A", "B", "C"],
        "u3": ["A", "B"],
        "u4": ["X"],
    })


@pytest.fixture
def two_group_population():
    """Two disjoint groups with pairwise Jaccard 0.6 inside each group, plus a loner."""
    return _make_records({
        "u1": ["A", "B", "C", "D"],
        "u2": ["A", "B", "C", "E"],
        "u3": ["A", "B", "C", "F"],
        "u4": ["X", "Y", "Z", "P"],
        "u5": ["X", "Y", "Z", "Q"],
        "u6": ["M", "N"],
    })


@pytest.fixture
def leiden_session():
    return SessionConfig(
        process_mode="user",
        clustering_method="leiden",
        similarity_threshold=0.6,
        min_shared_properties=2,
        leiden_resolution=0.3,
        leiden_random_seed=42,
        min_members_count=2,
        min_properties_count=2,
    )


@pytest.fixture
def make_records():
    return _make_records
