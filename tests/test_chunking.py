import pytest

from models.mining import ChunkStatus, MiningRoleTypeChunk, MiningUserTypeChunk, canonical_key
from services.chunking import (
    aggregate_chunks,
    build_role_chunks,
    build_user_chunks,
    classify_chunks,
    expand_chunks,
)
from services.frequency import compute_frequency_map


def test_identical_role_sets_collapse(make_records):
    """Property order does not matter for chunk identity."""
    records = make_records({"u1": ["A", "B"], "u2": ["B", "A"], "u3": ["C"]}, weights={"u3": 2})

    chunks = build_user_chunks(records)

    assert all(isinstance(c, MiningUserTypeChunk) for c in chunks)
    assert [(c.members, c.properties, c.weight) for c in chunks] == [
        (("u1", "u2"), ("A", "B"), 2),
        (("u3",), ("C",), 2),
    ]


def test_chunk_weight_is_conserved(two_group_population):
    chunks = build_user_chunks(two_group_population)

    assert sum(c.weight for c in chunks) == sum(r.weight for r in two_group_population)


def test_role_chunks_group_roles_by_user_set(small_population):
    chunks = build_role_chunks(small_population)

    assert all(isinstance(c, MiningRoleTypeChunk) for c in chunks)
    by_members = {c.members: c for c in chunks}
    assert by_members[("A", "B")].properties == ("u1", "u2", "u3")
    assert by_members[("A", "B")].weight == 2
    assert by_members[("C",)].properties == ("u1", "u2")
    assert by_members[("X",)].properties == ("u4",)


def test_chunks_sorted_by_weight_then_key(small_population):
    chunks = build_user_chunks(small_population)

    assert [c.properties for c in chunks] == [("A", "B", "C"), ("A", "B"), ("X",)]


def test_empty_and_none_input():
    assert aggregate_chunks([]) == []
    with pytest.raises(ValueError):
        aggregate_chunks(None)
    with pytest.raises(ValueError):
        build_role_chunks(None)


def test_expanded_chunks_preserve_weighted_frequency(two_group_population):
    """Frequencies computed on chunks match the unaggregated population."""
    records = two_group_population + [
        r.__class__(oid=f"{r.oid}-copy", properties=r.properties) for r in two_group_population[:2]
    ]
    expanded = expand_chunks(build_user_chunks(records))

    assert compute_frequency_map(expanded) == pytest.approx(compute_frequency_map(records))


def test_chunk_frequency_against_population():
    chunk = MiningRoleTypeChunk(members=("A",), properties=("u1", "u2"), weight=1)

    assert chunk.frequency(4) == 0.5
    assert chunk.frequency(0) == 0.0


def test_classify_chunks(small_population):
    chunks = build_user_chunks(small_population)

    classified = classify_chunks(chunks, included_keys={("A", "B", "C")}, outlier_keys={("X",)})

    statuses = {c.properties: c.status for c in classified}
    assert statuses == {
        ("A", "B", "C"): ChunkStatus.INCLUDED,
        ("A", "B"): ChunkStatus.NOISE,
        ("X",): ChunkStatus.OUTLIER,
    }
    assert all(c.status == ChunkStatus.UNCLASSIFIED for c in chunks)


def test_canonical_key_is_order_independent():
    key = canonical_key(["C", "A", "B", "A"])

    assert key == ("A", "B", "C")
    assert canonical_key(key) == key
    assert canonical_key(reversed(key)) == key


def test_chunks_keep_per_identifier_weights(make_records):
    records = make_records({"u1": ["A", "B"], "u2": ["A", "B"]}, weights={"u1": 5})

    user_chunk, = build_user_chunks(records)
    role_chunk, = build_role_chunks(records)

    assert user_chunk.member_weight_map() == {"u1": 5, "u2": 1}
    assert user_chunk.property_weight_map() == {"A": 1, "B": 1}
    assert role_chunk.weight == 2
    assert role_chunk.property_weight_map() == {"u1": 5, "u2": 1}
    assert role_chunk.frequency(6) == 1.0
