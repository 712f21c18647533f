"""Load, validate, and hot-reload the wearable sync engine configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk after an admin update without a restart.

Usage::

    from src.wearables.config_loader import get_sync_config

    config = get_sync_config()
    config.metric(MetricType.HEART_RATE).epsilon    # 2.0
    config.frequency_minutes("garmin")              # 15
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from src.wearables.base import MetricType, ResolutionPolicy

logger = logging.getLogger("nutrisync.wearables.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"

MERGE_RULES = frozenset({"sum", "average", "latest", "max", "min"})
AGGREGATE_FUNCTIONS = frozenset({"sum", "avg", "max", "min", "latest", "count"})


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetricConfig:
    """Reconciliation settings for one metric type."""

    metric_type: MetricType
    unit: str
    epsilon: float = 0.0
    cluster_window_seconds: float = 120.0
    material_threshold_pct: float = 10.0
    default_policy: ResolutionPolicy | None = None
    merge_rule: str = "latest"
    daily_aggregate: str = "avg"


@dataclass(frozen=True)
class SchedulerConfig:
    tick_seconds: int
    backoff_cap_multiplier: int
    frequency_minutes: dict[str, int]


@dataclass(frozen=True)
class OrchestratorConfig:
    max_pages: int
    transient_retries: int
    retry_delay_seconds: float
    connector_timeout_seconds: float
    initial_lookback_days: int


@dataclass(frozen=True)
class CorrelationPair:
    name: str
    metric_a: MetricType
    metric_b: MetricType
    lag_days: int = 0


@dataclass(frozen=True)
class CorrelationConfig:
    window_days: int
    min_data_points: int
    pairs: tuple[CorrelationPair, ...]


@dataclass
class SyncConfig:
    """Complete, validated engine configuration.

    This is the single in-memory representation of sync_config.yaml.  The
    conflict engine, scheduler, orchestrator, credential store and analyzer
    all read from this object.

    Attributes:
        version:                 Config schema version string.
        metrics:                 Per-metric reconciliation settings.
        default_policy:          Global fallback policy (None = unresolved).
        scheduler:               Scheduling and backoff settings.
        orchestrator:            Job execution limits.
        refresh_margin_seconds:  Refresh tokens expiring within this margin.
        correlation:             Correlation analyzer settings.
    """

    version: str
    metrics: dict[MetricType, MetricConfig]
    default_policy: ResolutionPolicy | None
    scheduler: SchedulerConfig
    orchestrator: OrchestratorConfig
    refresh_margin_seconds: float
    correlation: CorrelationConfig
    _raw: dict = field(default_factory=dict, repr=False)

    # ------------------------------------------------------------------
    # Convenience accessors
    # ------------------------------------------------------------------

    def metric(self, metric_type: MetricType) -> MetricConfig:
        """Return the settings for a metric, falling back to exact-match defaults."""
        cfg = self.metrics.get(metric_type)
        if cfg is None:
            return MetricConfig(metric_type=metric_type, unit="")
        return cfg

    def policy_for(self, metric_type: MetricType) -> ResolutionPolicy | None:
        """Configured default policy for a metric, else the global fallback."""
        return self.metric(metric_type).default_policy or self.default_policy

    def frequency_minutes(self, device_type: str) -> int:
        """Base sync interval for a device type (60 if not configured)."""
        return self.scheduler.frequency_minutes.get(device_type, 60)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _parse_policy(value: Any, where: str, errors: list[str]) -> ResolutionPolicy | None:
    if value is None:
        return None
    try:
        return ResolutionPolicy(value)
    except ValueError:
        errors.append(f"{where} must be one of {[p.value for p in ResolutionPolicy]}, got {value!r}")
        return None


def _parse_metric_type(value: Any, where: str, errors: list[str]) -> MetricType | None:
    try:
        return MetricType(value)
    except ValueError:
        errors.append(f"{where}: unknown metric type {value!r}")
        return None


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Collects every problem before raising, so an operator sees the whole
    list in one go.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    version = str(raw.get("version", "1.0"))

    # ── Metrics ──
    metrics_raw = raw.get("metrics") or {}
    if not metrics_raw:
        errors.append("'metrics' section is missing or empty")

    metrics: dict[MetricType, MetricConfig] = {}
    for name, cfg in metrics_raw.items():
        metric_type = _parse_metric_type(name, "metrics", errors)
        if metric_type is None:
            continue
        if not isinstance(cfg, dict):
            errors.append(f"metrics.{name} must be a mapping")
            continue
        try:
            epsilon = float(cfg.get("epsilon", 0))
            window = float(cfg.get("cluster_window_seconds", 120))
            material = float(cfg.get("material_threshold_pct", 10))
        except (TypeError, ValueError):
            errors.append(f"metrics.{name}: epsilon/window/threshold must be numbers")
            continue
        if epsilon < 0 or window < 0 or material < 0:
            errors.append(f"metrics.{name}: epsilon/window/threshold must be >= 0")
        merge_rule = cfg.get("merge_rule", "latest")
        if merge_rule not in MERGE_RULES:
            errors.append(f"metrics.{name}.merge_rule must be one of {sorted(MERGE_RULES)}")
        daily_aggregate = cfg.get("daily_aggregate", "avg")
        if daily_aggregate not in AGGREGATE_FUNCTIONS:
            errors.append(
                f"metrics.{name}.daily_aggregate must be one of {sorted(AGGREGATE_FUNCTIONS)}"
            )
        metrics[metric_type] = MetricConfig(
            metric_type=metric_type,
            unit=str(cfg.get("unit", "")),
            epsilon=epsilon,
            cluster_window_seconds=window,
            material_threshold_pct=material,
            default_policy=_parse_policy(
                cfg.get("default_policy"), f"metrics.{name}.default_policy", errors
            ),
            merge_rule=merge_rule,
            daily_aggregate=daily_aggregate,
        )

    # ── Conflicts ──
    conflicts_raw = raw.get("conflicts") or {}
    default_policy = _parse_policy(
        conflicts_raw.get("default_policy"), "conflicts.default_policy", errors
    )

    # ── Scheduler ──
    sched_raw = raw.get("scheduler") or {}
    frequencies: dict[str, int] = {}
    for device_type, minutes in (sched_raw.get("frequency_minutes") or {}).items():
        try:
            frequencies[device_type] = int(minutes)
        except (TypeError, ValueError):
            errors.append(f"scheduler.frequency_minutes.{device_type} must be an integer")
            continue
        if frequencies[device_type] <= 0:
            errors.append(f"scheduler.frequency_minutes.{device_type} must be positive")
    scheduler = SchedulerConfig(
        tick_seconds=int(sched_raw.get("tick_seconds", 60)),
        backoff_cap_multiplier=int(sched_raw.get("backoff_cap_multiplier", 24)),
        frequency_minutes=frequencies,
    )
    if scheduler.backoff_cap_multiplier < 1:
        errors.append("scheduler.backoff_cap_multiplier must be >= 1")

    # ── Orchestrator ──
    orch_raw = raw.get("orchestrator") or {}
    orchestrator = OrchestratorConfig(
        max_pages=int(orch_raw.get("max_pages", 50)),
        transient_retries=int(orch_raw.get("transient_retries", 3)),
        retry_delay_seconds=float(orch_raw.get("retry_delay_seconds", 2)),
        connector_timeout_seconds=float(orch_raw.get("connector_timeout_seconds", 30)),
        initial_lookback_days=int(orch_raw.get("initial_lookback_days", 7)),
    )
    if orchestrator.max_pages < 1:
        errors.append("orchestrator.max_pages must be >= 1")
    if orchestrator.transient_retries < 0:
        errors.append("orchestrator.transient_retries must be >= 0")
    if orchestrator.connector_timeout_seconds <= 0:
        errors.append("orchestrator.connector_timeout_seconds must be positive")

    # ── Credentials ──
    cred_raw = raw.get("credentials") or {}
    refresh_margin = float(cred_raw.get("refresh_margin_seconds", 60))

    # ── Correlation ──
    corr_raw = raw.get("correlation") or {}
    pairs: list[CorrelationPair] = []
    for pair_name, pair_cfg in (corr_raw.get("pairs") or {}).items():
        if not isinstance(pair_cfg, dict):
            errors.append(f"correlation.pairs.{pair_name} must be a mapping")
            continue
        metric_a = _parse_metric_type(pair_cfg.get("metric_a"), f"correlation.pairs.{pair_name}", errors)
        metric_b = _parse_metric_type(pair_cfg.get("metric_b"), f"correlation.pairs.{pair_name}", errors)
        if metric_a is None or metric_b is None:
            continue
        pairs.append(
            CorrelationPair(
                name=pair_name,
                metric_a=metric_a,
                metric_b=metric_b,
                lag_days=int(pair_cfg.get("lag_days", 0)),
            )
        )
    correlation = CorrelationConfig(
        window_days=int(corr_raw.get("window_days", 30)),
        min_data_points=int(corr_raw.get("min_data_points", 7)),
        pairs=tuple(pairs),
    )
    if correlation.min_data_points < 3:
        errors.append("correlation.min_data_points must be >= 3")

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        metrics=metrics,
        default_policy=default_policy,
        scheduler=scheduler,
        orchestrator=orchestrator,
        refresh_margin_seconds=refresh_margin,
        correlation=correlation,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_sync_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
