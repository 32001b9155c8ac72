# services/data_loader.py
import logging
import os
from typing import Any, Dict, List, Optional

import pandas as pd

from models.mining import IdentityRecord

_logger = logging.getLogger(__name__)

ASSIGNMENT_COLUMNS = ("USR_ID", "ROLE_ID")


def parse_identities(filepath: str) -> pd.DataFrame:
    df = pd.read_csv(filepath)
    df.columns = df.columns.str.strip()
    if "USR_ID" not in df.columns:
        raise ValueError(f"{filepath}: missing required column USR_ID")
    df["USR_ID"] = df["USR_ID"].astype(str).str.strip()
    df = df[df["USR_ID"] != ""]
    df = df.set_index("USR_ID")
    return df


def parse_assignments(filepath: str) -> pd.DataFrame:
    """
    Parse role assignments CSV (USR_ID, ROLE_ID[, WEIGHT]).

    Cleaning steps:
      1. Strip whitespace from ID columns before any filtering so
         whitespace-only values ("  ") don't survive the null check.
      2. Replace empty strings with NA after stripping, then drop nulls.
      3. Deduplicate on (USR_ID, ROLE_ID) so a repeated grant is counted once.
    """
    _logger.info("parse_assignments: reading %s", filepath)
    df = pd.read_csv(filepath, dtype=str)
    df.columns = df.columns.str.strip()
    missing = [col for col in ASSIGNMENT_COLUMNS if col not in df.columns]
    if missing:
        raise ValueError(f"{filepath}: missing required columns {', '.join(missing)}")
    raw_count = len(df)

    # Strip before drop so whitespace-only IDs are caught.
    for col in ASSIGNMENT_COLUMNS:
        df[col] = df[col].astype("string").str.strip().replace("", pd.NA)

    df = df.dropna(subset=list(ASSIGNMENT_COLUMNS))
    after_drop = len(df)
    dropped_null = raw_count - after_drop
    if dropped_null > 0:
        _logger.warning(
            "parse_assignments: dropped %d junk rows (null/empty IDs) "
            "raw=%d clean=%d",
            dropped_null, raw_count, after_drop,
        )
    else:
        _logger.info("parse_assignments: %d rows, no junk rows dropped", raw_count)

    before_dedup = len(df)
    df = df.drop_duplicates(subset=list(ASSIGNMENT_COLUMNS))
    dropped_dupes = before_dedup - len(df)
    if dropped_dupes > 0:
        _logger.warning(
            "parse_assignments: dropped %d duplicate (USR_ID, ROLE_ID) rows "
            "before_dedup=%d after_dedup=%d",
            dropped_dupes, before_dedup, len(df),
        )

    _logger.info(
        "parse_assignments: final=%d rows, %d unique users, %d unique roles",
        len(df),
        df["USR_ID"].nunique(),
        df["ROLE_ID"].nunique(),
    )
    return df


def build_identity_records(
        assignments: pd.DataFrame,
        identities: Optional[pd.DataFrame] = None,
) -> List[IdentityRecord]:
    """
    One IdentityRecord per user, ordered by user id.

    Users listed in `identities` without any assignment still count towards the
    population (empty role set). An optional WEIGHT column on assignments marks
    pre-aggregated users; the largest value per user is used.
    """
    roles_by_user: Dict[str, set] = {}
    for user_id, role_id in zip(assignments["USR_ID"], assignments["ROLE_ID"]):
        roles_by_user.setdefault(str(user_id), set()).add(str(role_id))

    weights: Dict[str, int] = {}
    if "WEIGHT" in assignments.columns:
        numeric = pd.to_numeric(assignments["WEIGHT"], errors="coerce").fillna(1).astype(int)
        weights = {str(k): v for k, v in numeric.groupby(assignments["USR_ID"]).max().to_dict().items()}

    user_ids = set(roles_by_user)
    if identities is not None:
        user_ids.update(str(u) for u in identities.index)

    records = [
        IdentityRecord(
            oid=user_id,
            properties=frozenset(roles_by_user.get(user_id, ())),
            weight=max(1, int(weights.get(user_id, 1))),
        )
        for user_id in sorted(user_ids)
    ]
    _logger.info(
        "build_identity_records: users=%d without_roles=%d",
        len(records),
        sum(1 for r in records if not r.properties),
    )
    return records


def load_population(assignments_file: str, identities_file: Optional[str] = None) -> List[IdentityRecord]:
    """Read the assignment (and optional identity) CSVs into identity records."""
    missing = []
    if not os.path.isfile(assignments_file):
        missing.append("assignments")
    if identities_file and not os.path.isfile(identities_file):
        missing.append("identities")
    if missing:
        raise ValueError(f"Missing required files: {', '.join(missing)}")

    assignments = parse_assignments(assignments_file)
    identities = parse_identities(identities_file) if identities_file else None
    return build_identity_records(assignments, identities)


def records_from_payload(payload: Any) -> List[IdentityRecord]:
    """
    Identity records from a JSON body: [{"oid": ..., "roles": [...], "weight": 1}, ...].

    Raises:
        ValueError: payload is not a list or an entry is malformed
    """
    if payload is None:
        raise ValueError("records are required")
    if not isinstance(payload, list):
        raise ValueError("records must be a list")

    records = []
    for pos, item in enumerate(payload):
        if not isinstance(item, dict) or "oid" not in item:
            raise ValueError(f"records[{pos}] must be an object with an 'oid'")
        roles = item.get("roles", item.get("properties", [])) or []
        if not isinstance(roles, list):
            raise ValueError(f"records[{pos}].roles must be a list")
        try:
            weight = int(item.get("weight", 1))
        except (TypeError, ValueError):
            raise ValueError(f"records[{pos}].weight must be an integer")
        records.append(
            IdentityRecord(
                oid=str(item["oid"]),
                properties=frozenset(str(r) for r in roles),
                weight=weight,
            )
        )
    return records
