import pytest

from models.mining import IdentityRecord
from services.frequency import (
    build_assignment_matrix,
    compute_frequency_map,
    filter_by_frequency,
    frequency_band_summary,
    invert_records,
)


def test_frequency_is_share_of_population(small_population):
    fmap = compute_frequency_map(small_population)

    assert fmap == pytest.approx({"A": 0.75, "B": 0.75, "C": 0.5, "X": 0.25})


def test_frequency_counts_weights():
    """A record of weight 3 counts as three identical users."""
    records = [
        IdentityRecord(oid="u1", properties=frozenset({"A"}), weight=3),
        IdentityRecord(oid="u2", properties=frozenset({"B"})),
    ]
    fmap = compute_frequency_map(records)

    assert fmap["A"] == pytest.approx(0.75)
    assert fmap["B"] == pytest.approx(0.25)


def test_empty_population_gives_empty_map():
    assert compute_frequency_map([]) == {}


def test_none_population_rejected():
    with pytest.raises(ValueError):
        compute_frequency_map(None)


def test_rare_role_excluded_by_min_frequency(make_records):
    """One holder out of ten is below a 0.5 lower bound."""
    assignments = {f"u{i}": ["A"] for i in range(10)}
    assignments["u0"] = ["A", "R"]
    fmap = compute_frequency_map(make_records(assignments))

    assert fmap["R"] == pytest.approx(0.1)
    assert filter_by_frequency({"A", "R"}, fmap, 0.5, 1.0) == frozenset({"A"})


def test_frequency_bounds_are_inclusive():
    fmap = {"A": 0.5, "B": 0.25, "C": 0.75}

    assert filter_by_frequency(fmap, fmap, 0.25, 0.75) == frozenset({"A", "B", "C"})
    assert filter_by_frequency(fmap, fmap, 0.5, 0.5) == frozenset({"A"})


def test_unknown_property_is_dropped():
    assert filter_by_frequency({"A", "Z"}, {"A": 0.5}, 0.0, 1.0) == frozenset({"A"})


def test_band_summary_counts(small_population):
    fmap = compute_frequency_map(small_population)

    kept, too_rare, too_common = frequency_band_summary(fmap, 0.3, 0.6)

    assert (kept, too_rare, too_common) == (1, 1, 2)


def test_invert_records_swaps_axes(make_records):
    records = make_records({"u1": ["A", "B"], "u2": ["A"]})

    inverted = invert_records(records)

    assert [r.oid for r in inverted] == ["A", "B"]
    assert inverted[0].properties == frozenset({"u1", "u2"})
    assert inverted[1].properties == frozenset({"u1"})


def test_assignment_matrix_rows_follow_record_order(make_records):
    records = make_records({"u1": ["A", "B"], "u2": [], "u3": ["B"]})

    matrix, oids, property_ids = build_assignment_matrix(records)

    assert oids == ["u1", "u2", "u3"]
    assert list(property_ids) == ["A", "B"]
    assert matrix.shape == (3, 2)
    assert matrix.toarray().tolist() == [[1, 1], [0, 0], [0, 1]]


def test_invert_records_carries_weights(make_records):
    records = make_records({"A": ["u1", "u2"], "B": ["u1"]})

    inverted = invert_records(records, weights={"u1": 5})

    assert [(r.oid, r.weight) for r in inverted] == [("u1", 5), ("u2", 1)]
