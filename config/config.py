"""
Role Analysis Configuration
Clustering policy, pattern detection thresholds and runtime settings for one analysis run.

Every stage reads its thresholds from these objects only; there are no implicit
defaults inside the algorithms beyond what the dataclasses declare.
"""

from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field, asdict
import json
import math
import os

PROCESS_MODES = ("user", "role")
CLUSTERING_METHODS = ("leiden", "exact")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigurationError(ValueError):
    """Malformed or missing configuration. Raised before any scan begins."""

    def __init__(self, errors):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


# ============================================================================
# CONFIGURATION VALIDATION RULES
# ============================================================================

VALIDATION_RULES = {
    "frequency": {
        "min": 0.0,
        "max": 1.0,
        "error": "Frequency bounds must lie in [0, 1]",
        "error_order": "min_frequency must not exceed max_frequency",
    },
    "min_intersection": {
        "min": 1,
        "error": "Must be >= 1 for a meaningful shared set",
    },
    "min_support": {
        "min": 1,
        "error": "Must be >= 1 supporting identity",
    },
    "similarity_threshold": {
        "min": 0.0,
        "max": 1.0,
        "error_low": "Similarity must be > 0 (0 links every pair of identities)",
        "error_high": "Similarity above 1.0 can never be reached",
    },
    "min_shared_properties": {
        "min": 1,
        "error": "Must be >= 1 for meaningful co-occurrence",
    },
    "min_members_count": {
        "min": 1,
        "error": "Clusters need at least one member",
    },
    "min_properties_count": {
        "min": 1,
        "error": "Clusters need at least one property",
    },
    "leiden_resolution": {
        "min": 0.0,
        "max": 5.0,
        "error": "Resolution must be in (0, 5]",
    },
    "min_overlap_coverage": {
        "min": 0.0,
        "max": 1.0,
        "error": "Coverage must be in (0, 1]",
    },
    "max_clusters_per_member": {
        "min": 1,
        "max": 10,
        "warning_high": "Max > 5 may indicate noisy assignments",
    },
}


# ============================================================================
# DEFAULT CONFIGURATION
# ============================================================================

DEFAULT_ANALYSIS_CONFIG: Dict[str, Any] = {
    "session": {
        "process_mode": "user",  # cluster users by role sets ("role" clusters roles by user sets)
        "clustering_method": "leiden",  # or "exact" (identical profiles only)

        # Jaccard graph construction
        "similarity_threshold": 0.6,  # Jaccard threshold for edges
        "min_shared_properties": 2,  # Minimum shared roles for an edge

        # Leiden algorithm parameters
        "leiden_resolution": 0.3,  # CPM resolution, higher = more, smaller clusters
        "leiden_random_seed": 42,  # For reproducibility

        # Cluster filtering
        "min_members_count": 5,  # Drop clusters with < 5 (weighted) members
        "min_properties_count": 2,  # Drop clusters with < 2 properties

        # Overlapping membership (off = disjoint clusters)
        "allow_overlap": False,
        "min_overlap_coverage": 0.8,
        "max_clusters_per_member": 3,
    },
    "detection": {
        "min_frequency": 0.0,  # Drop roles held by fewer than this share of the population
        "max_frequency": 1.0,  # Drop roles held by more than this share (not distinguishing)
        "min_intersection": 2,  # Minimum pattern body size
        "min_support": 2,  # Minimum supporting identities
    },

    # Runtime
    "num_workers": 4,  # Worker threads for per-cluster analysis
    "progress_interval": 10000,  # Pairwise comparisons between cancellation polls
    "log_level": "INFO",
}


# ============================================================================
# CONFIGURATION DATACLASSES
# ============================================================================

def is_number(value) -> bool:
    """Real int or float, excluding bool and NaN."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not math.isnan(value)


def _check_range(errors: List[str], name: str, value, low=None, high=None,
                 low_inclusive: bool = True, message: str = "") -> None:
    if value is None:
        errors.append(f"{name} is required")
        return
    if not is_number(value):
        errors.append(f"{name}={value!r} must be a number")
        return
    if low is not None and (value < low if low_inclusive else value <= low):
        errors.append(f"{name}={value} below {low}: {message}")
    if high is not None and value > high:
        errors.append(f"{name}={value} above {high}: {message}")


@dataclass(frozen=True)
class DetectionOption:
    """Thresholds for intersection extraction and pattern detection."""

    min_frequency: float = 0.0
    max_frequency: float = 1.0
    min_intersection: int = 2
    min_support: int = 2

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'DetectionOption':
        """Create from dictionary, ignoring unknown keys."""
        valid_keys = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in (config_dict or {}).items() if k in valid_keys}
        return cls(**filtered)

    def validate(self) -> List[str]:
        errors = []

        rule = VALIDATION_RULES["frequency"]
        _check_range(errors, "min_frequency", self.min_frequency, rule["min"], rule["max"], message=rule["error"])
        _check_range(errors, "max_frequency", self.max_frequency, rule["min"], rule["max"], message=rule["error"])
        if (
                is_number(self.min_frequency)
                and is_number(self.max_frequency)
                and self.min_frequency > self.max_frequency
        ):
            errors.append(
                f"min_frequency={self.min_frequency} > max_frequency={self.max_frequency}: "
                f"{rule['error_order']}"
            )

        rule = VALIDATION_RULES["min_intersection"]
        _check_range(errors, "min_intersection", self.min_intersection, rule["min"], message=rule["error"])

        rule = VALIDATION_RULES["min_support"]
        _check_range(errors, "min_support", self.min_support, rule["min"], message=rule["error"])

        return errors

    def ensure_valid(self) -> 'DetectionOption':
        errors = self.validate()
        if errors:
            raise ConfigurationError(errors)
        return self


@dataclass(frozen=True)
class SessionConfig:
    """Clustering policy for one analysis session."""

    process_mode: str = "user"
    clustering_method: str = "leiden"
    similarity_threshold: float = 0.6
    min_shared_properties: int = 2
    leiden_resolution: float = 0.3
    leiden_random_seed: int = 42
    min_members_count: int = 5
    min_properties_count: int = 2
    allow_overlap: bool = False
    min_overlap_coverage: float = 0.8
    max_clusters_per_member: int = 3

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'SessionConfig':
        """Create from dictionary, ignoring unknown keys."""
        valid_keys = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in (config_dict or {}).items() if k in valid_keys}
        return cls(**filtered)

    def validate(self) -> List[str]:
        errors = []

        if self.process_mode not in PROCESS_MODES:
            errors.append(f"process_mode={self.process_mode!r} must be one of {PROCESS_MODES}")
        if self.clustering_method not in CLUSTERING_METHODS:
            errors.append(f"clustering_method={self.clustering_method!r} must be one of {CLUSTERING_METHODS}")

        rule = VALIDATION_RULES["similarity_threshold"]
        if not is_number(self.similarity_threshold):
            errors.append(f"similarity_threshold={self.similarity_threshold!r} must be a number")
        elif self.similarity_threshold <= rule["min"]:
            errors.append(f"similarity_threshold={self.similarity_threshold}: {rule['error_low']}")
        elif self.similarity_threshold > rule["max"]:
            errors.append(f"similarity_threshold={self.similarity_threshold}: {rule['error_high']}")

        for name in ("min_shared_properties", "min_members_count", "min_properties_count"):
            rule = VALIDATION_RULES[name]
            _check_range(errors, name, getattr(self, name), rule["min"], message=rule["error"])

        rule = VALIDATION_RULES["leiden_resolution"]
        _check_range(errors, "leiden_resolution", self.leiden_resolution, rule["min"], rule["max"],
                     low_inclusive=False, message=rule["error"])

        rule = VALIDATION_RULES["min_overlap_coverage"]
        _check_range(errors, "min_overlap_coverage", self.min_overlap_coverage, rule["min"], rule["max"],
                     low_inclusive=False, message=rule["error"])

        rule = VALIDATION_RULES["max_clusters_per_member"]
        if not is_number(self.max_clusters_per_member):
            errors.append(f"max_clusters_per_member={self.max_clusters_per_member!r} must be a number")
        elif self.max_clusters_per_member < rule["min"]:
            errors.append(f"max_clusters_per_member < {rule['min']}")
        elif self.max_clusters_per_member > rule["max"]:
            errors.append(f"max_clusters_per_member > {rule['max']}: {rule['warning_high']}")

        return errors

    def ensure_valid(self) -> 'SessionConfig':
        errors = self.validate()
        if errors:
            raise ConfigurationError(errors)
        return self


@dataclass
class AnalysisConfig:
    """
    Strongly-typed configuration for one role analysis run.

    Use this instead of dict for type safety and IDE autocomplete.
    """

    session: SessionConfig = field(default_factory=SessionConfig)
    detection: DetectionOption = field(default_factory=DetectionOption)

    # Runtime
    num_workers: int = 4
    progress_interval: int = 10000
    log_level: str = "INFO"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session": self.session.to_dict(),
            "detection": self.detection.to_dict(),
            "num_workers": self.num_workers,
            "progress_interval": self.progress_interval,
            "log_level": self.log_level,
        }

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'AnalysisConfig':
        """
        Create from dictionary, ignoring unknown keys.

        Accepts nested "session"/"detection" sections or flat keys; nested values win.
        """
        config_dict = normalize_config_dict(config_dict)
        runtime = {
            k: config_dict[k]
            for k in ("num_workers", "progress_interval", "log_level")
            if k in config_dict
        }
        return cls(
            session=SessionConfig.from_dict(config_dict.get("session")),
            detection=DetectionOption.from_dict(config_dict.get("detection")),
            **runtime,
        )

    def validate(self) -> List[str]:
        """
        Validate configuration against rules.

        Returns:
            List of error messages (empty if valid)
        """
        errors = []
        if self.session is None:
            errors.append("session configuration is required")
        else:
            errors.extend(self.session.validate())
        if self.detection is None:
            errors.append("detection configuration is required")
        else:
            errors.extend(self.detection.validate())

        if not is_number(self.num_workers) or self.num_workers < 1:
            errors.append(f"num_workers={self.num_workers} must be >=1")
        if not is_number(self.progress_interval) or self.progress_interval < 1:
            errors.append(f"progress_interval={self.progress_interval} must be >=1")
        if str(self.log_level).upper() not in LOG_LEVELS:
            errors.append(f"log_level={self.log_level!r} must be one of {LOG_LEVELS}")
        return errors

    def ensure_valid(self) -> 'AnalysisConfig':
        errors = self.validate()
        if errors:
            raise ConfigurationError(errors)
        return self


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def load_config_from_json(filepath: str) -> AnalysisConfig:
    """Load configuration from JSON file."""
    with open(filepath, 'r') as f:
        config_dict = json.load(f)
    return AnalysisConfig.from_dict(config_dict)


def save_config_to_json(config: AnalysisConfig, filepath: str) -> None:
    """Save configuration to JSON file."""
    with open(filepath, 'w') as f:
        json.dump(config.to_dict(), f, indent=2)


def get_default_config() -> AnalysisConfig:
    """Get default configuration as dataclass."""
    return AnalysisConfig.from_dict(DEFAULT_ANALYSIS_CONFIG)


def normalize_config_dict(config_dict: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Move flat session/detection keys into their nested sections (nested values win)."""
    config_dict = dict(config_dict or {})
    session = dict(config_dict.get("session") or {})
    detection = dict(config_dict.get("detection") or {})
    for name in SessionConfig.__dataclass_fields__:
        if name in config_dict:
            session.setdefault(name, config_dict.pop(name))
    for name in DetectionOption.__dataclass_fields__:
        if name in config_dict:
            detection.setdefault(name, config_dict.pop(name))
    config_dict["session"] = session
    config_dict["detection"] = detection
    return config_dict


def merge_configs(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge override config into base config.

    Flat threshold keys are accepted; "session"/"detection" sections are merged key by key.
    """
    merged = normalize_config_dict(base)
    for key, value in normalize_config_dict(overrides).items():
        if key in ("session", "detection") and isinstance(value, dict):
            section = dict(merged.get(key) or {})
            section.update(value)
            merged[key] = section
        else:
            merged[key] = value
    return merged


def apply_env_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Apply LOG_LEVEL / NUM_WORKERS from the environment (deployment knobs)."""
    overrides: Dict[str, Any] = {}
    log_level = os.getenv("LOG_LEVEL")
    if log_level:
        overrides["log_level"] = log_level.strip().upper()
    num_workers = os.getenv("NUM_WORKERS")
    if num_workers:
        try:
            overrides["num_workers"] = int(num_workers)
        except ValueError:
            raise ConfigurationError(f"NUM_WORKERS={num_workers!r} is not an integer")
    return merge_configs(config_dict, overrides)


# ============================================================================
# CONFIGURATION PRESETS
# ============================================================================

# Conservative preset (fewer, larger, better supported patterns)
CONSERVATIVE_CONFIG = {
    "session": {
        "similarity_threshold": 0.75,  # Higher = fewer edges
        "leiden_resolution": 0.2,  # Lower = larger clusters
        "min_members_count": 10,
    },
    "detection": {
        "min_frequency": 0.05,
        "max_frequency": 0.9,
        "min_intersection": 3,
        "min_support": 5,
    },
}

# Aggressive preset (more, smaller patterns)
AGGRESSIVE_CONFIG = {
    "session": {
        "similarity_threshold": 0.4,  # Lower = more edges
        "leiden_resolution": 0.5,  # Higher = smaller clusters
        "min_members_count": 3,
        "allow_overlap": True,
    },
    "detection": {
        "min_intersection": 2,
        "min_support": 2,
    },
}


def get_preset_config(preset: str) -> Dict[str, Any]:
    """
    Get configuration preset.

    Args:
        preset: "default", "conservative" or "aggressive"

    Returns:
        Configuration dictionary
    """
    if preset == "conservative":
        return merge_configs(DEFAULT_ANALYSIS_CONFIG, CONSERVATIVE_CONFIG)
    elif preset == "aggressive":
        return merge_configs(DEFAULT_ANALYSIS_CONFIG, AGGRESSIVE_CONFIG)
    else:
        return merge_configs(DEFAULT_ANALYSIS_CONFIG, {})


def resolve_config(config: Optional[Any]) -> AnalysisConfig:
    """Accept an AnalysisConfig, a dict, or None (defaults) and validate it."""
    if config is None:
        config = get_default_config()
    elif isinstance(config, dict):
        config = AnalysisConfig.from_dict(merge_configs(DEFAULT_ANALYSIS_CONFIG, config))
    elif not isinstance(config, AnalysisConfig):
        raise ConfigurationError(f"Unsupported configuration type: {type(config).__name__}")
    return config.ensure_valid()
