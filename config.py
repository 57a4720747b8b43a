import os
import json
import logging
import sys
from typing import Optional, List, Dict, Any
from urllib.parse import urlparse

import yaml


# =============================================================================
# Logging Configuration
# =============================================================================
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT: str = os.getenv(
    "LOG_FORMAT",
    "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)


def setup_logging():
    """Configure application-wide logging"""
    level = getattr(logging, LOG_LEVEL, logging.INFO)
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)]
    )
    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.lower() in ("1", "true", "yes", "on")


# =============================================================================
# Utilization Targets
# =============================================================================
DEFAULT_UTILIZATION_TARGET: float = float(os.getenv("DEFAULT_UTILIZATION_TARGET", "85"))
UTILIZATION_TARGET_MIN: float = 50.0
UTILIZATION_TARGET_MAX: float = 95.0


def clamp_utilization_target(value: Optional[float]) -> float:
    """Return a usable target percentage: default when unset, clamped to [50, 95]"""
    if value is None:
        return DEFAULT_UTILIZATION_TARGET
    try:
        target = float(value)
    except (TypeError, ValueError):
        logging.warning(f"Invalid utilization target {value!r}, using {DEFAULT_UTILIZATION_TARGET}")
        return DEFAULT_UTILIZATION_TARGET
    clamped = min(max(target, UTILIZATION_TARGET_MIN), UTILIZATION_TARGET_MAX)
    if clamped != target:
        logging.warning(f"Utilization target {target} outside [{UTILIZATION_TARGET_MIN}, {UTILIZATION_TARGET_MAX}], clamped to {clamped}")
    return clamped


def resolve_utilization_target(configured: Optional[Dict[str, Any]]) -> Dict[str, float]:
    """Build a full {cpu, memory, storage} target from a possibly partial mapping"""
    configured = configured or {}
    return {
        'cpu': clamp_utilization_target(configured.get('cpu')),
        'memory': clamp_utilization_target(configured.get('memory')),
        'storage': clamp_utilization_target(configured.get('storage')),
    }


# =============================================================================
# Cluster Configuration
# =============================================================================
# Clusters to plan and their per-cluster utilization targets.
# Can be overridden via CLUSTERS_JSON or a YAML file at CLUSTER_CONFIG_PATH
_DEFAULT_CLUSTERS: List[Dict[str, Any]] = [
    {
        "cluster_id": "local-cluster",
        "organization_id": "local",
        "utilization_target": {"cpu": 85, "memory": 85},
    }
]

CLUSTER_CONFIG_PATH: Optional[str] = os.getenv("CLUSTER_CONFIG_PATH")


def _load_clusters() -> List[Dict[str, Any]]:
    """Load cluster definitions from env var, YAML file, or use defaults"""
    env_json = os.getenv("CLUSTERS_JSON")
    if env_json:
        try:
            return json.loads(env_json)
        except json.JSONDecodeError:
            logging.warning("Invalid CLUSTERS_JSON, using defaults")
    if CLUSTER_CONFIG_PATH and os.path.exists(CLUSTER_CONFIG_PATH):
        try:
            with open(CLUSTER_CONFIG_PATH, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
            return data.get('clusters', [])
        except yaml.YAMLError as e:
            logging.warning(f"Invalid cluster config {CLUSTER_CONFIG_PATH}: {e}, using defaults")
    return _DEFAULT_CLUSTERS


CLUSTERS: List[Dict[str, Any]] = _load_clusters()


def get_cluster_config(cluster_id: str) -> Dict[str, Any]:
    """Get the configured entry for a cluster (empty dict when not configured)"""
    for entry in CLUSTERS:
        if entry.get("cluster_id") == cluster_id:
            return entry
    return {}


def get_cluster_ids() -> List[str]:
    return [c["cluster_id"] for c in CLUSTERS if c.get("cluster_id")]


# =============================================================================
# Data Sources
# =============================================================================
INVENTORY_SOURCE_URL: Optional[str] = os.getenv("INVENTORY_SOURCE_URL")
METRICS_SOURCE_URL: Optional[str] = os.getenv("METRICS_SOURCE_URL")
SOURCE_API_TOKEN: Optional[str] = os.getenv("SOURCE_API_TOKEN")
# Fixture file (YAML or JSON) used when no source URLs are configured
INVENTORY_FIXTURE_PATH: str = os.getenv("INVENTORY_FIXTURE_PATH", "inventory.yaml")

SOURCE_TIMEOUT_SECONDS: int = int(os.getenv("SOURCE_TIMEOUT_SECONDS", "30"))
SOURCE_RETRY_COUNT: int = int(os.getenv("SOURCE_RETRY_COUNT", "3"))
SOURCE_RETRY_BACKOFF_BASE: int = int(os.getenv("SOURCE_RETRY_BACKOFF_BASE", "1"))

# =============================================================================
# Planning Parameters
# =============================================================================
SIZING_WINDOW_HOURS: int = int(os.getenv("SIZING_WINDOW_HOURS", "24"))
PROFILE_STATS_WINDOW_DAYS: int = int(os.getenv("PROFILE_STATS_WINDOW_DAYS", "30"))
MIN_PROFILE_GROUP_SIZE: int = int(os.getenv("MIN_PROFILE_GROUP_SIZE", "2"))
# Used for auto-generated profiles when VMs carry no MHz reservation
DEFAULT_MHZ_PER_CORE: int = int(os.getenv("DEFAULT_MHZ_PER_CORE", "2000"))
BULK_MAX_WORKERS: int = int(os.getenv("BULK_MAX_WORKERS", "8"))
BULK_TOP_RECOMMENDATIONS: int = int(os.getenv("BULK_TOP_RECOMMENDATIONS", "50"))
ANALYZE_ON_CYCLE: bool = _env_bool("ANALYZE_ON_CYCLE", False)

SIZING_THRESHOLDS: Dict[str, Dict[str, float]] = {
    "cpu": {
        "oversized_avg": float(os.getenv("CPU_OVERSIZED_AVG_PERCENT", "20")),
        "undersized_p95": float(os.getenv("CPU_UNDERSIZED_P95_PERCENT", "85")),
        "oversized_target": float(os.getenv("CPU_OVERSIZED_TARGET_PERCENT", "70")),
        "undersized_target": float(os.getenv("CPU_UNDERSIZED_TARGET_PERCENT", "75")),
        "high_confidence_avg": 10.0,
        "high_confidence_p95": 95.0,
    },
    "memory": {
        "oversized_avg": float(os.getenv("MEMORY_OVERSIZED_AVG_PERCENT", "30")),
        "undersized_p95": float(os.getenv("MEMORY_UNDERSIZED_P95_PERCENT", "90")),
        "oversized_target": float(os.getenv("MEMORY_OVERSIZED_TARGET_PERCENT", "70")),
        "undersized_target": float(os.getenv("MEMORY_UNDERSIZED_TARGET_PERCENT", "80")),
        "high_confidence_avg": 20.0,
        "high_confidence_p95": 95.0,
    },
}

# Rough placeholder rates, not a billing authority
COST_PER_CORE_MONTH: float = float(os.getenv("COST_PER_CORE_MONTH", "15"))
COST_PER_GB_MONTH: float = float(os.getenv("COST_PER_GB_MONTH", "0.50"))

# Cluster recommendation thresholds (percent)
CLUSTER_HIGH_UTILIZATION_PERCENT: float = float(os.getenv("CLUSTER_HIGH_UTILIZATION_PERCENT", "80"))
CLUSTER_LOW_UTILIZATION_PERCENT: float = float(os.getenv("CLUSTER_LOW_UTILIZATION_PERCENT", "30"))
PROFILE_LOW_EFFICIENCY_PERCENT: float = float(os.getenv("PROFILE_LOW_EFFICIENCY_PERCENT", "40"))

# =============================================================================
# Output
# =============================================================================
OUTPUT_DIR: str = os.getenv("OUTPUT_DIR", "output")
REPOSITORY_PATH: str = os.getenv("REPOSITORY_PATH", os.path.join(OUTPUT_DIR, "planning_state.json"))
TRACKER_PATH: str = os.getenv("TRACKER_PATH", ".tracker.json")


def get_report_output_path(cluster_id: str) -> str:
    """Get cluster-specific report path: {cluster_id}_planning_report.json"""
    return os.path.join(OUTPUT_DIR, f"{cluster_id}_planning_report.json")


__all__ = [
    "LOG_LEVEL",
    "LOG_FORMAT",
    "setup_logging",
    "DEFAULT_UTILIZATION_TARGET",
    "clamp_utilization_target",
    "resolve_utilization_target",
    "CLUSTERS",
    "CLUSTER_CONFIG_PATH",
    "get_cluster_config",
    "get_cluster_ids",
    "INVENTORY_SOURCE_URL",
    "METRICS_SOURCE_URL",
    "SOURCE_API_TOKEN",
    "INVENTORY_FIXTURE_PATH",
    "SOURCE_TIMEOUT_SECONDS",
    "SOURCE_RETRY_COUNT",
    "SOURCE_RETRY_BACKOFF_BASE",
    "SIZING_WINDOW_HOURS",
    "PROFILE_STATS_WINDOW_DAYS",
    "MIN_PROFILE_GROUP_SIZE",
    "DEFAULT_MHZ_PER_CORE",
    "BULK_MAX_WORKERS",
    "BULK_TOP_RECOMMENDATIONS",
    "ANALYZE_ON_CYCLE",
    "SIZING_THRESHOLDS",
    "COST_PER_CORE_MONTH",
    "COST_PER_GB_MONTH",
    "CLUSTER_HIGH_UTILIZATION_PERCENT",
    "CLUSTER_LOW_UTILIZATION_PERCENT",
    "PROFILE_LOW_EFFICIENCY_PERCENT",
    "OUTPUT_DIR",
    "REPOSITORY_PATH",
    "TRACKER_PATH",
    "get_report_output_path",
    "validate_config",
]


# =============================================================================
# Configuration Validation
# =============================================================================
class ConfigValidationError(Exception):
    """Raised when configuration validation fails"""
    pass


def _validate_positive_int(name: str, value: int) -> None:
    if value <= 0:
        raise ConfigValidationError(f"{name} must be positive, got {value}")


def _validate_url(name: str, value: str) -> None:
    try:
        result = urlparse(value)
        if not all([result.scheme, result.netloc]):
            raise ValueError("Missing scheme or netloc")
        if result.scheme not in ('http', 'https'):
            raise ValueError(f"Invalid scheme: {result.scheme}")
    except Exception as e:
        raise ConfigValidationError(f"{name} is not a valid URL: {value} ({e})")


def _validate_percent(name: str, value: float) -> None:
    if not (0 <= value <= 100):
        raise ConfigValidationError(f"{name} must be between 0 and 100, got {value}")


def validate_config() -> None:
    """Validate all configuration values on startup

    Raises:
        ConfigValidationError: If any configuration value is invalid
    """
    errors = []

    for name, value in (
        ("SOURCE_TIMEOUT_SECONDS", SOURCE_TIMEOUT_SECONDS),
        ("SIZING_WINDOW_HOURS", SIZING_WINDOW_HOURS),
        ("PROFILE_STATS_WINDOW_DAYS", PROFILE_STATS_WINDOW_DAYS),
        ("MIN_PROFILE_GROUP_SIZE", MIN_PROFILE_GROUP_SIZE),
        ("BULK_MAX_WORKERS", BULK_MAX_WORKERS),
        ("BULK_TOP_RECOMMENDATIONS", BULK_TOP_RECOMMENDATIONS),
    ):
        try:
            _validate_positive_int(name, value)
        except ConfigValidationError as e:
            errors.append(str(e))

    for resource, thresholds in SIZING_THRESHOLDS.items():
        for key, value in thresholds.items():
            try:
                _validate_percent(f"SIZING_THRESHOLDS[{resource}].{key}", value)
            except ConfigValidationError as e:
                errors.append(str(e))

    # Source URLs are optional, but must be valid when set
    for name, url in (("INVENTORY_SOURCE_URL", INVENTORY_SOURCE_URL),
                      ("METRICS_SOURCE_URL", METRICS_SOURCE_URL)):
        if url:
            try:
                _validate_url(name, url)
            except ConfigValidationError as e:
                errors.append(str(e))

    if bool(INVENTORY_SOURCE_URL) != bool(METRICS_SOURCE_URL):
        errors.append("INVENTORY_SOURCE_URL and METRICS_SOURCE_URL must be set together")

    for i, cluster in enumerate(CLUSTERS):
        if not cluster.get("cluster_id"):
            errors.append(f"CLUSTERS[{i}] is missing cluster_id")

    if COST_PER_CORE_MONTH < 0 or COST_PER_GB_MONTH < 0:
        errors.append("Cost rates must not be negative")

    if errors:
        raise ConfigValidationError(
            "Configuration validation failed:\n  - " + "\n  - ".join(errors)
        )
