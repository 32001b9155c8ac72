#!/usr/bin/env python3
# worker.py
"""
Batch worker entrypoint.

Usage:
  python worker.py mine
  python worker.py cluster

Required env:
  INPUT_ASSIGNMENTS=<path to assignments CSV (USR_ID, ROLE_ID[, WEIGHT])>

Optional env:
  INPUT_IDENTITIES=<path to identities CSV (USR_ID, ...)>
  CONFIG_PATH=<path to JSON config, merged over the defaults>
  OUTPUT_DIR=<directory for results, default ./output>
  LOG_LEVEL / NUM_WORKERS

Behavior:
- mine: full role analysis (clustering, intersections, detection) written to
  OUTPUT_DIR/analysis_results.json
- cluster: clustering only, written to OUTPUT_DIR/clusters.json
- SIGTERM requests a cooperative stop; whatever finished is still written,
  with status "aborted".
"""

import json
import logging
import os
import signal
import sys
import time
import traceback
from typing import Any, Dict, Optional

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger("worker")


def _require_env(name: str) -> str:
    v = os.getenv(name)
    if not v:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return v


def _load_config(config_path: Optional[str]):
    from config.config import (
        AnalysisConfig,
        DEFAULT_ANALYSIS_CONFIG,
        apply_env_overrides,
        merge_configs,
    )

    overrides: Dict[str, Any] = {}
    if config_path:
        with open(config_path) as f:
            overrides = json.load(f)
    config_dict = apply_env_overrides(merge_configs(DEFAULT_ANALYSIS_CONFIG, overrides))
    return AnalysisConfig.from_dict(config_dict).ensure_valid()


def _write_json(output_dir: str, name: str, payload: Dict[str, Any]) -> str:
    os.makedirs(output_dir, exist_ok=True)
    path = os.path.join(output_dir, name)
    with open(path, "w") as f:
        json.dump(payload, f, indent=2, default=str)
    return path


def _install_sigterm(context) -> None:
    def _handler(signum, frame):
        logger.warning("signal=%d received, requesting cooperative stop", signum)
        context.cancel()

    signal.signal(signal.SIGTERM, _handler)


# ============================================================================
# MINE WORKER
# ============================================================================

def _run_mine(config, records, context, output_dir: str) -> Dict[str, Any]:
    from services.analysis import run_role_analysis

    t = time.monotonic()
    logger.info("_run_mine step=3 name=role_analysis")
    results = run_role_analysis(records, config, context)
    logger.info(
        "_run_mine step=3 done: status=%s clusters=%d elapsed_ms=%.0f",
        results["status"], len(results["clusters"]), (time.monotonic() - t) * 1000,
    )

    t = time.monotonic()
    path = _write_json(output_dir, "analysis_results.json", results)
    logger.info("_run_mine step=4 name=save path=%s elapsed_ms=%.0f", path, (time.monotonic() - t) * 1000)
    return results


# ============================================================================
# CLUSTER WORKER
# ============================================================================

def _run_cluster(config, records, context, output_dir: str) -> Dict[str, Any]:
    from models.mining import SessionStatistics, records_to_dicts
    from services.clustering import get_clusterer

    t = time.monotonic()
    logger.info("_run_cluster step=3 name=clustering method=%s", config.session.clustering_method)
    cluster_result = get_clusterer(config.session).cluster(config.session, records, context)
    clusters = cluster_result["clusters"]
    logger.info(
        "_run_cluster step=3 done: clusters=%d unassigned=%d elapsed_ms=%.0f",
        len(clusters), len(cluster_result["unassigned"]), (time.monotonic() - t) * 1000,
    )

    results = {
        "status": "aborted" if context.aborted else "completed",
        "clusters": records_to_dicts(clusters),
        "session_statistics": SessionStatistics.from_clusters(clusters).to_dict(),
        "partition_stats": cluster_result["partition_stats"],
        "unassigned": cluster_result["unassigned"],
        "config": config.to_dict(),
    }

    t = time.monotonic()
    path = _write_json(output_dir, "clusters.json", results)
    logger.info("_run_cluster step=4 name=save path=%s elapsed_ms=%.0f", path, (time.monotonic() - t) * 1000)
    return results


# ============================================================================
# ENTRYPOINT
# ============================================================================

def main() -> int:
    try:
        mode = (sys.argv[1] if len(sys.argv) > 1 else "").strip().lower()
        if mode not in {"mine", "cluster"}:
            raise RuntimeError("Usage: python worker.py mine|cluster")

        from services.data_loader import load_population
        from services.progress import ExecutionContext

        assignments_file = _require_env("INPUT_ASSIGNMENTS")
        identities_file = os.getenv("INPUT_IDENTITIES") or None
        output_dir = os.getenv("OUTPUT_DIR", "output")
        t_start = time.monotonic()
        logger.info("worker starting: mode=%s assignments=%s", mode, assignments_file)

        # Step 1: config (validated before any data is read)
        t = time.monotonic()
        config = _load_config(os.getenv("CONFIG_PATH"))
        logging.getLogger().setLevel(str(config.log_level).upper())
        logger.info("worker step=1 name=load_config done: elapsed_ms=%.0f", (time.monotonic() - t) * 1000)

        # Step 2: population
        t = time.monotonic()
        records = load_population(assignments_file, identities_file)
        logger.info(
            "worker step=2 name=load_population done: records=%d elapsed_ms=%.0f",
            len(records), (time.monotonic() - t) * 1000,
        )

        context = ExecutionContext(poll_interval=config.progress_interval)
        _install_sigterm(context)

        if mode == "mine":
            results = _run_mine(config, records, context, output_dir)
        else:
            results = _run_cluster(config, records, context, output_dir)

        logger.info(
            "worker finished: mode=%s status=%s total_elapsed_ms=%.0f",
            mode, results["status"], (time.monotonic() - t_start) * 1000,
        )
        return 0

    except Exception as e:
        traceback.print_exc()
        logger.error("worker failed: %s", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
