"""
Role Mining Domain Records
==========================

Value objects exchanged between the role mining stages:

- IdentityRecord: one identity (user or role) and the set of counterpart
  identifiers it holds, plus a member-count weight
- MiningChunk: identities grouped by an identical assignment profile
- RoleAnalysisCluster: a group of identities with similar profiles
- IntersectionObject: a canonical shared-property set found inside a cluster
- DetectedPattern: a scored candidate role (or user grouping) for review
- SessionStatistics: summary of one clustering run

All records are frozen once built. Every record exposes to_dict() so the
result consumer can serialize it without knowing the dataclass layout.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

OUTER = "outer"
INNER = "inner"

USER_MODE = "user"
ROLE_MODE = "role"


def canonical_key(items: Iterable[str]) -> Tuple[str, ...]:
    """Sorted, duplicate-free tuple used as the dedup key for an identifier set."""
    return tuple(sorted(set(items)))


def weighted_size(items: Iterable[str], weights: Optional[Dict[str, int]] = None) -> int:
    """Number of identifiers in `items`, each counted by its weight (1 when unknown)."""
    if weights is None:
        return len(set(items))
    return sum(weights.get(item, 1) for item in set(items))


# ============================================================================
# IDENTITIES AND CHUNKS
# ============================================================================

@dataclass(frozen=True)
class IdentityRecord:
    oid: str
    properties: frozenset = field(default_factory=frozenset)
    weight: int = 1

    def __post_init__(self):
        if not isinstance(self.properties, frozenset):
            object.__setattr__(self, "properties", frozenset(self.properties))
        if self.weight < 1:
            raise ValueError(f"weight={self.weight} for {self.oid} must be >=1")

    @property
    def key(self) -> Tuple[str, ...]:
        return canonical_key(self.properties)

    def to_dict(self) -> Dict[str, Any]:
        return {"oid": self.oid, "properties": list(self.key), "weight": self.weight}


class ChunkStatus(str, Enum):
    UNCLASSIFIED = "unclassified"
    INCLUDED = "included"
    OUTLIER = "outlier"
    NOISE = "noise"


@dataclass(frozen=True)
class MiningChunk:
    """
    Identities sharing exactly the same counterpart set.

    members are the grouped axis, properties the set every member holds.
    weight is the sum of the member weights. member_weights / property_weights
    run parallel to members / properties; empty means every identifier counts 1.
    """

    members: Tuple[str, ...]
    properties: Tuple[str, ...]
    weight: int
    status: ChunkStatus = ChunkStatus.UNCLASSIFIED
    member_weights: Tuple[int, ...] = ()
    property_weights: Tuple[int, ...] = ()

    @property
    def key(self) -> Tuple[str, ...]:
        return self.properties

    def member_weight_map(self) -> Dict[str, int]:
        return dict(zip(self.members, self.member_weights or (1,) * len(self.members)))

    def property_weight_map(self) -> Dict[str, int]:
        return dict(zip(self.properties, self.property_weights or (1,) * len(self.properties)))

    def frequency(self, population: int) -> float:
        """Weighted share of the counterpart population this chunk is assigned to."""
        if population <= 0:
            return 0.0
        return sum(self.property_weight_map().values()) / population

    def to_dict(self) -> Dict[str, Any]:
        return {
            "members": list(self.members),
            "properties": list(self.properties),
            "weight": self.weight,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class MiningUserTypeChunk(MiningChunk):
    """Users (members) grouped by identical role set (properties)."""


@dataclass(frozen=True)
class MiningRoleTypeChunk(MiningChunk):
    """Roles (members) grouped by identical user set (properties)."""


# ============================================================================
# CLUSTERS
# ============================================================================

@dataclass(frozen=True)
class ClusterStatistics:
    members_count: int
    properties_count: int
    membership_density: float
    membership_mean: float
    membership_range: Tuple[int, int]
    similarity: float

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["membership_range"] = list(self.membership_range)
        return data


@dataclass(frozen=True)
class RoleAnalysisCluster:
    cluster_id: int
    name: str
    process_mode: str
    members: Tuple[str, ...]
    properties: Tuple[str, ...]
    chunk_keys: Tuple[Tuple[str, ...], ...]
    statistics: ClusterStatistics

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "name": self.name,
            "process_mode": self.process_mode,
            "members": list(self.members),
            "properties": list(self.properties),
            "chunk_count": len(self.chunk_keys),
            "statistics": self.statistics.to_dict(),
        }


# ============================================================================
# INTERSECTIONS AND PATTERNS
# ============================================================================

@dataclass(frozen=True)
class IntersectionObject:
    properties: Tuple[str, ...]
    provenance: str
    support: int
    weight: int

    @property
    def size(self) -> int:
        return len(self.properties)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "properties": list(self.properties),
            "provenance": self.provenance,
            "support": self.support,
            "weight": self.weight,
            "size": self.size,
        }


@dataclass(frozen=True)
class DetectedPattern:
    properties: Tuple[str, ...]
    members: Tuple[str, ...]
    support: int
    score: float
    mode: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "properties": list(self.properties),
            "members": list(self.members),
            "support": self.support,
            "score": self.score,
            "mode": self.mode,
        }


# ============================================================================
# SESSION STATISTICS
# ============================================================================

@dataclass
class SessionStatistics:
    processed_object_count: int = 0
    cluster_count: int = 0
    mean_density: float = 0.0

    @classmethod
    def from_clusters(cls, clusters: List[RoleAnalysisCluster]) -> "SessionStatistics":
        if not clusters:
            return cls()
        densities = [c.statistics.membership_density for c in clusters]
        return cls(
            processed_object_count=sum(c.statistics.members_count for c in clusters),
            cluster_count=len(clusters),
            mean_density=sum(densities) / len(densities),
        )

    def recompute_after_removal(self, cluster: RoleAnalysisCluster) -> "SessionStatistics":
        """Statistics as they stand once `cluster` is discarded from the session."""
        new_count = self.cluster_count - 1
        if new_count <= 0:
            return SessionStatistics(processed_object_count=0, cluster_count=0, mean_density=0.0)
        density = cluster.statistics.membership_density
        return SessionStatistics(
            processed_object_count=self.processed_object_count - cluster.statistics.members_count,
            cluster_count=new_count,
            mean_density=((self.mean_density * self.cluster_count) - density) / new_count,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def records_to_dicts(records: Optional[Iterable[Any]]) -> List[Dict[str, Any]]:
    return [r.to_dict() for r in (records or [])]
