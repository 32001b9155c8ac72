# routes/mining.py
"""
Mining Routes - Role Analysis over an in-memory population
==========================================================

- GET  /api/config/defaults        - Default configuration (optionally a preset)
- POST /api/config/validate        - Validate a configuration
- POST /api/analysis               - Cluster + extract + detect, full result
- POST /api/detection              - Pattern detection on a population without clustering

Request bodies carry the population as
    {"records": [{"oid": "u1", "roles": ["r1", "r2"], "weight": 1}, ...]}
plus optional "config" overrides merged over the defaults.
"""

import logging

from flask import Blueprint, request, jsonify

from config.config import (
    AnalysisConfig,
    ConfigurationError,
    DEFAULT_ANALYSIS_CONFIG,
    get_preset_config,
    merge_configs,
)
from models.mining import ROLE_MODE, records_to_dicts
from services.analysis import run_role_analysis
from services.chunking import build_role_chunks, build_user_chunks
from services.data_loader import records_from_payload
from services.detection import (
    detected_reduction_metric,
    perform_role_based_detection,
    perform_user_based_detection,
)

logger = logging.getLogger(__name__)

mining_bp = Blueprint("mining", __name__)


def _config_from_body(body: dict) -> AnalysisConfig:
    overrides = body.get("config") or {}
    if not isinstance(overrides, dict):
        raise ConfigurationError("config must be an object")
    config = AnalysisConfig.from_dict(merge_configs(DEFAULT_ANALYSIS_CONFIG, overrides))
    return config.ensure_valid()


@mining_bp.errorhandler(ConfigurationError)
def handle_configuration_error(e):
    return jsonify({
        "error": "Invalid configuration",
        "validation_errors": e.errors,
    }), 400


@mining_bp.errorhandler(ValueError)
def handle_value_error(e):
    return jsonify({"error": str(e)}), 400


# ============================================================================
# CONFIGURATION ENDPOINTS
# ============================================================================

@mining_bp.route("/api/config/defaults", methods=["GET"])
def get_config_defaults():
    """
    GET /api/config/defaults?preset=conservative

    Returns the default configuration, or a named preset.
    """
    preset = request.args.get("preset", "default")
    config = AnalysisConfig.from_dict(get_preset_config(preset))
    return jsonify(config.to_dict()), 200


@mining_bp.route("/api/config/validate", methods=["POST"])
def validate_config():
    """
    POST /api/config/validate

    Request body: Partial or full config dict (merged with defaults)
    Response: {"valid": bool, "validation_errors": [...], "config": {...}}
    """
    body = request.get_json(silent=True) or {}
    config = AnalysisConfig.from_dict(merge_configs(DEFAULT_ANALYSIS_CONFIG, body))
    errors = config.validate()
    return jsonify({
        "valid": not errors,
        "validation_errors": errors,
        "config": config.to_dict(),
    }), 200


# ============================================================================
# ANALYSIS ENDPOINTS
# ============================================================================

@mining_bp.route("/api/analysis", methods=["POST"])
def run_analysis():
    """
    POST /api/analysis

    Workflow:
    1. Parse records and merge config overrides
    2. Validate config (400 on failure, nothing is scanned)
    3. Run the role analysis pipeline

    Response: pipeline result (status, clusters, session_statistics, ...)
    """
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return jsonify({"error": "JSON object body required"}), 400

    config = _config_from_body(body)
    records = records_from_payload(body.get("records"))
    logger.info("POST /api/analysis records=%d", len(records))

    result = run_role_analysis(records, config)
    return jsonify(result), 200


@mining_bp.route("/api/detection", methods=["POST"])
def run_detection():
    """
    POST /api/detection

    Pattern detection on the whole population, treated as one cluster.
    The session process_mode picks the mode: "user" runs user-based detection
    on role chunks, "role" runs role-based detection on user chunks.
    """
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return jsonify({"error": "JSON object body required"}), 400

    config = _config_from_body(body)
    records = records_from_payload(body.get("records"))

    if config.session.process_mode == ROLE_MODE:
        chunks = build_user_chunks(records)
        patterns = perform_role_based_detection(chunks, config.detection)
    else:
        chunks = build_role_chunks(records)
        patterns = perform_user_based_detection(chunks, config.detection)

    return jsonify({
        "mode": config.session.process_mode,
        "chunks": records_to_dicts(chunks),
        "patterns": records_to_dicts(patterns),
        "detected_reduction_metric": detected_reduction_metric(patterns),
    }), 200
