# services/chunking.py
"""
Chunk Aggregator
================

Compresses the identity x property assignment data into chunks: groups of
identities holding exactly the same property set. Each chunk carries the summed
member weight, so every later stage can work on far fewer rows while still
counting members correctly.

- build_user_chunks: users grouped by identical role set
- build_role_chunks: roles grouped by identical user set
"""

import logging
import time
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Set, Tuple, Type

import pandas as pd

from models.mining import (
    ChunkStatus,
    IdentityRecord,
    MiningChunk,
    MiningRoleTypeChunk,
    MiningUserTypeChunk,
)
from services.frequency import invert_records, weight_map

logger = logging.getLogger(__name__)


def aggregate_chunks(
        records: Optional[List[IdentityRecord]],
        chunk_type: Type[MiningChunk] = MiningChunk,
        property_weights: Optional[Dict[str, int]] = None,
) -> List[MiningChunk]:
    """
    Group records by exact (order-independent) property set equality.

    Member weights are kept per member; `property_weights` (counterpart id ->
    weight) is recorded on the chunk when the counterparts are themselves
    weighted, e.g. pre-aggregated users behind a role chunk.

    Returns chunks ordered by descending weight, then ascending property key.
    """
    if records is None:
        raise ValueError("records must not be None")
    if not records:
        return []

    _t_start = time.monotonic()
    # Integer ids per distinct key: pandas would turn an index of tuples into a MultiIndex.
    keys: List[Tuple[str, ...]] = []
    key_ids = {}
    row_key_ids = []
    for record in records:
        key = record.key
        if key not in key_ids:
            key_ids[key] = len(keys)
            keys.append(key)
        row_key_ids.append(key_ids[key])

    frame = pd.DataFrame(
        {
            "oid": [r.oid for r in records],
            "key_id": row_key_ids,
            "weight": [r.weight for r in records],
        }
    )
    grouped = frame.groupby(["key_id", "oid"], sort=True)["weight"].sum().reset_index()

    chunks = []
    for key_id, rows in grouped.groupby("key_id", sort=False):
        properties = keys[key_id]
        chunks.append(
            chunk_type(
                members=tuple(rows["oid"]),
                properties=properties,
                weight=int(rows["weight"].sum()),
                member_weights=tuple(int(w) for w in rows["weight"]),
                property_weights=(
                    tuple(property_weights.get(p, 1) for p in properties)
                    if property_weights else ()
                ),
            )
        )
    chunks.sort(key=lambda c: (-c.weight, c.properties))

    logger.info(
        "chunk aggregation complete: type=%s records=%d chunks=%d elapsed_ms=%.0f",
        chunk_type.__name__,
        len(records),
        len(chunks),
        (time.monotonic() - _t_start) * 1000,
    )
    return chunks


def build_user_chunks(user_records: List[IdentityRecord]) -> List[MiningUserTypeChunk]:
    """Users with the same role set collapse into one chunk."""
    return aggregate_chunks(user_records, MiningUserTypeChunk)


def build_role_chunks(user_records: List[IdentityRecord]) -> List[MiningRoleTypeChunk]:
    """Roles assigned to exactly the same users collapse into one chunk."""
    if user_records is None:
        raise ValueError("records must not be None")
    return aggregate_chunks(
        invert_records(user_records), MiningRoleTypeChunk, property_weights=weight_map(user_records)
    )


def expand_chunks(chunks: Iterable[MiningChunk]) -> List[IdentityRecord]:
    """
    One weighted record per chunk, keyed by its first member.

    Running a weighted computation on these records must give the same answer
    as running it on the unaggregated input.
    """
    return [
        IdentityRecord(oid=chunk.members[0], properties=frozenset(chunk.properties), weight=chunk.weight)
        for chunk in chunks
        if chunk.members
    ]


def classify_chunks(
        chunks: Iterable[MiningChunk],
        included_keys: Set[Tuple[str, ...]],
        outlier_keys: Optional[Set[Tuple[str, ...]]] = None,
) -> List[MiningChunk]:
    """
    New chunks carrying a status: INCLUDED if they ended up in a cluster,
    OUTLIER if they had no similar neighbour at all, NOISE otherwise.
    """
    outlier_keys = outlier_keys or set()
    classified = []
    for chunk in chunks:
        if chunk.key in included_keys:
            status = ChunkStatus.INCLUDED
        elif chunk.key in outlier_keys:
            status = ChunkStatus.OUTLIER
        else:
            status = ChunkStatus.NOISE
        classified.append(replace(chunk, status=status))
    return classified
