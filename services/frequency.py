# services/frequency.py
import logging
import time
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.sparse import csr_matrix

from models.mining import IdentityRecord

logger = logging.getLogger(__name__)


def build_assignment_matrix(records: List[IdentityRecord]):
    """
    Build binary record x property matrix using categorical indexing for scale.

    Rows follow the order of `records` (records with no properties keep an empty row).

    Returns:
        tuple: (sparse_matrix, oids, property_ids) where:
            - sparse_matrix: scipy.sparse.csr_matrix (records × properties)
            - oids: list of record identifiers (row labels)
            - property_ids: Index object with property identifiers (column labels)
    """
    row_idx = []
    props = []
    for pos, record in enumerate(records):
        for prop in record.properties:
            row_idx.append(pos)
            props.append(prop)

    prop_cat = pd.Categorical(props)
    data = np.ones(len(props), dtype=np.int8)

    sparse = csr_matrix(
        (data, (np.asarray(row_idx, dtype=np.int64), prop_cat.codes)),
        shape=(len(records), len(prop_cat.categories)),
    )
    # properties are sets, but csr_matrix sums repeated (row, col) pairs; clamp anyway.
    sparse.data[:] = 1

    return sparse, [r.oid for r in records], prop_cat.categories


def compute_frequency_map(records: Optional[List[IdentityRecord]]) -> Dict[str, float]:
    """
    Share of the (weighted) population holding each property.

    frequency[p] = sum(weight of records holding p) / sum(weight of all records)

    An empty population yields an empty map rather than dividing by zero.
    """
    if records is None:
        raise ValueError("records must not be None")

    _t_start = time.monotonic()
    if not records:
        logger.info("frequency index: empty population, frequency map is empty")
        return {}

    matrix, _, property_ids = build_assignment_matrix(records)
    weights = np.asarray([r.weight for r in records], dtype=np.float64)
    population = float(weights.sum())

    # weighted column sums: (properties,) = M.T @ w
    col_counts = matrix.T.astype(np.float64) @ weights
    col_pct = col_counts / population

    frequency_map = {
        prop: float(pct)
        for prop, pct in zip(property_ids, col_pct)
    }

    logger.info(
        "frequency index complete: records=%d population=%d properties=%d elapsed_ms=%.0f",
        len(records),
        int(population),
        len(frequency_map),
        (time.monotonic() - _t_start) * 1000,
    )
    return frequency_map


def filter_by_frequency(
        properties: Iterable[str],
        frequency_map: Dict[str, float],
        min_frequency: float,
        max_frequency: float,
) -> frozenset:
    """Keep properties whose frequency lies in [min_frequency, max_frequency] (inclusive)."""
    kept = set()
    for prop in properties:
        fr = frequency_map.get(prop)
        if fr is None:
            continue
        if min_frequency > fr or max_frequency < fr:
            continue
        kept.add(prop)
    return frozenset(kept)


def invert_records(
        records: List[IdentityRecord],
        weights: Optional[Dict[str, int]] = None,
) -> List[IdentityRecord]:
    """
    Swap axes: user -> roles becomes role -> users.

    `weights` gives the weight of each new record (keyed by the former
    property id); missing ids weigh 1. Output is ordered by property identifier
    so the inversion is deterministic.
    """
    weights = weights or {}
    holders: Dict[str, set] = {}
    for record in records:
        for prop in record.properties:
            holders.setdefault(prop, set()).add(record.oid)
    return [
        IdentityRecord(oid=prop, properties=frozenset(oids), weight=weights.get(prop, 1))
        for prop, oids in sorted(holders.items())
    ]


def weight_map(records: Iterable[IdentityRecord]) -> Dict[str, int]:
    return {record.oid: record.weight for record in records}


def frequency_band_summary(
        frequency_map: Dict[str, float],
        min_frequency: float,
        max_frequency: float,
) -> Tuple[int, int, int]:
    """(kept, too_rare, too_common) counts for logging the band filter."""
    too_rare = sum(1 for fr in frequency_map.values() if fr < min_frequency)
    too_common = sum(1 for fr in frequency_map.values() if fr > max_frequency)
    return len(frequency_map) - too_rare - too_common, too_rare, too_common
