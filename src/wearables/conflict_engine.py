"""Conflict engine: reconcile newly pulled observations against stored ones.

For a batch of new HealthObservations and the already-persisted observations
in the surrounding window, the engine:

1. Clusters observations of the same metric whose event times fall within the
   metric's cluster window.
2. Deduplicates clusters whose values agree within the metric epsilon.
3. Classifies disagreeing clusters (timestamp / value / source) and resolves
   them through the policy table: manual override, then the metric default,
   then the global default.

The engine is pure.  It never touches storage or reads a clock; the caller
supplies ``as_of`` and persists the returned :class:`ReconcileResult`.
All tuning lives in sync_config.yaml via the config_loader module.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping
from uuid import UUID

from src.wearables.base import (
    OBSERVATION_NAMESPACE,
    ConflictKind,
    ConflictResolution,
    HealthObservation,
    ManualOverride,
    MetricType,
    ResolutionPolicy,
    ResolvedBy,
)
from src.wearables.config_loader import MetricConfig, SyncConfig, get_sync_config
from src.wearables.errors import ConflictUnresolved

logger = logging.getLogger("nutrisync.wearables.conflicts")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class ReconcileResult:
    """Everything the caller must persist after one reconciliation pass.

    Attributes:
        authoritative:   One authoritative observation per cluster.
        new_rows:        Rows to append (new observations, losers already
                         marked superseded, plus synthesized merged records).
        supersede:       (existing_id, authoritative_id) pairs for stored rows
                         that lost to a new authoritative record.
        resolutions:     ConflictResolution records to append.
        failed:          New observations that could not be reconciled, with reason.
        records_added:   Clusters that produced a brand-new authoritative value.
        records_updated: Clusters that replaced a stored authoritative value.
        unchanged:       New observations already stored verbatim (skipped).
    """

    authoritative: list[HealthObservation] = field(default_factory=list)
    new_rows: list[HealthObservation] = field(default_factory=list)
    supersede: list[tuple[UUID, UUID]] = field(default_factory=list)
    resolutions: list[ConflictResolution] = field(default_factory=list)
    failed: list[tuple[HealthObservation, str]] = field(default_factory=list)
    records_added: int = 0
    records_updated: int = 0
    unchanged: int = 0

    @property
    def conflicts_detected(self) -> int:
        return len(self.resolutions)

    def extend(self, other: "ReconcileResult") -> None:
        self.authoritative.extend(other.authoritative)
        self.new_rows.extend(other.new_rows)
        self.supersede.extend(other.supersede)
        self.resolutions.extend(other.resolutions)
        self.failed.extend(other.failed)
        self.records_added += other.records_added
        self.records_updated += other.records_updated
        self.unchanged += other.unchanged


@dataclass
class _Cluster:
    anchor_time: datetime
    existing: HealthObservation | None = None
    new: list[HealthObservation] = field(default_factory=list)

    @property
    def members(self) -> list[HealthObservation]:
        head = [self.existing] if self.existing is not None else []
        return sorted(head + self.new, key=_order_key)


# ---------------------------------------------------------------------------
# Ordering helpers
# ---------------------------------------------------------------------------


def _order_key(obs: HealthObservation) -> tuple:
    """Total order over observations, independent of input order."""
    return (obs.event_time, obs.source_device_id, obs.source_record_id, str(obs.observation_id))


def _confidence_key(obs: HealthObservation) -> tuple:
    # Missing confidence ranks below any reported confidence.
    return (obs.confidence is not None, obs.confidence or 0.0)


def _preference_key(obs: HealthObservation) -> tuple:
    """Higher confidence first, then the most recent event."""
    return _confidence_key(obs) + _order_key(obs)


def _latest_key(obs: HealthObservation) -> tuple:
    """Most recent event first, then higher confidence."""
    return (obs.event_time,) + _confidence_key(obs) + _order_key(obs)[1:]


def _within(a: datetime, b: datetime, window_seconds: float) -> bool:
    return abs((a - b).total_seconds()) <= window_seconds


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def values_agree(values: Iterable[float], epsilon: float) -> bool:
    values = list(values)
    return max(values) - min(values) <= epsilon


def relative_difference_pct(values: Iterable[float]) -> float:
    """Spread of the values as a percentage of the largest magnitude."""
    values = list(values)
    high, low = max(values), min(values)
    scale = max(abs(high), abs(low))
    if scale == 0:
        return 0.0
    return (high - low) / scale * 100.0


def classify_conflict(members: list[HealthObservation], metric_cfg: MetricConfig) -> ConflictKind:
    """Classify a disagreeing cluster.

    - ``timestamp``: a single device reported the event more than once at
      different times (ambiguous timing).
    - ``source``: different devices disagree by more than the metric's
      material threshold.
    - ``value``: everything else.
    """
    devices = {m.source_device_id for m in members}
    times = {m.event_time for m in members}
    if len(devices) == 1 and len(times) > 1:
        return ConflictKind.TIMESTAMP
    if len(devices) > 1 and relative_difference_pct(m.value for m in members) > metric_cfg.material_threshold_pct:
        return ConflictKind.SOURCE
    return ConflictKind.VALUE


# ---------------------------------------------------------------------------
# Policy table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PolicyChoice:
    policy: ResolutionPolicy
    resolved_by: ResolvedBy
    preferred_device_id: str | None = None


def _from_override(
    metric_type: MetricType, overrides: Mapping[MetricType, ManualOverride], config: SyncConfig
) -> PolicyChoice | None:
    override = overrides.get(metric_type)
    if override is None:
        return None
    return PolicyChoice(override.policy, ResolvedBy.MANUAL, override.preferred_device_id)


def _from_metric_default(
    metric_type: MetricType, overrides: Mapping[MetricType, ManualOverride], config: SyncConfig
) -> PolicyChoice | None:
    policy = config.metric(metric_type).default_policy
    return PolicyChoice(policy, ResolvedBy.POLICY) if policy else None


def _from_global_default(
    metric_type: MetricType, overrides: Mapping[MetricType, ManualOverride], config: SyncConfig
) -> PolicyChoice | None:
    return PolicyChoice(config.default_policy, ResolvedBy.SYSTEM) if config.default_policy else None


# Evaluated in order; the first source that yields a choice wins.
POLICY_SOURCES: tuple[Callable[..., PolicyChoice | None], ...] = (
    _from_override,
    _from_metric_default,
    _from_global_default,
)


def select_policy(
    metric_type: MetricType,
    overrides: Mapping[MetricType, ManualOverride],
    config: SyncConfig,
) -> PolicyChoice:
    """Pick the resolution policy for a metric.

    Raises:
        ConflictUnresolved: If no override or configured default exists.
    """
    for source in POLICY_SOURCES:
        choice = source(metric_type, overrides, config)
        if choice is not None:
            return choice
    raise ConflictUnresolved(metric_type.value)


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _resolve_server_wins(cluster: _Cluster, metric_cfg: MetricConfig, as_of: datetime) -> HealthObservation:
    if cluster.existing is not None:
        return cluster.existing
    return min(cluster.new, key=_order_key)


def _resolve_client_wins(cluster: _Cluster, metric_cfg: MetricConfig, as_of: datetime) -> HealthObservation:
    return max(cluster.new, key=_latest_key)


def _merged_observation(
    members: list[HealthObservation], value: float, rule: str, as_of: datetime
) -> HealthObservation:
    ids = sorted(str(m.observation_id) for m in members)
    merged_id = uuid.uuid5(OBSERVATION_NAMESPACE, "merged|" + "|".join(ids))
    latest = max(members, key=_latest_key)
    confidences = [m.confidence for m in members if m.confidence is not None]
    return HealthObservation(
        observation_id=merged_id,
        user_id=latest.user_id,
        metric_type=latest.metric_type,
        value=value,
        unit=latest.unit,
        event_time=latest.event_time,
        source_device_id=latest.source_device_id,
        source_record_id=f"merged:{merged_id.hex[:16]}",
        confidence=round(sum(confidences) / len(confidences), 4) if confidences else None,
        ingested_at=as_of,
        metadata={"merged_from": ids, "merge_rule": rule},
    )


def _resolve_merged(cluster: _Cluster, metric_cfg: MetricConfig, as_of: datetime) -> HealthObservation:
    members = cluster.members
    rule = metric_cfg.merge_rule
    if rule == "latest":
        return max(members, key=_latest_key)
    if rule == "max":
        return max(members, key=lambda m: (m.value,) + _latest_key(m))
    if rule == "min":
        return min(members, key=lambda m: (m.value,) + _order_key(m))
    values = [m.value for m in members]
    if rule == "sum":
        merged_value = sum(values)
    else:
        merged_value = round(sum(values) / len(values), 4)
    return _merged_observation(members, merged_value, rule, as_of)


RESOLVERS: dict[ResolutionPolicy, Callable[[_Cluster, MetricConfig, datetime], HealthObservation]] = {
    ResolutionPolicy.SERVER_WINS: _resolve_server_wins,
    ResolutionPolicy.CLIENT_WINS: _resolve_client_wins,
    ResolutionPolicy.MERGED: _resolve_merged,
}


def _competing_entry(obs: HealthObservation, stored: bool) -> dict[str, Any]:
    return {
        "observation_id": str(obs.observation_id),
        "source_device_id": obs.source_device_id,
        "source_record_id": obs.source_record_id,
        "value": obs.value,
        "unit": obs.unit,
        "event_time": obs.event_time.isoformat(),
        "confidence": obs.confidence,
        "stored": stored,
    }


# ---------------------------------------------------------------------------
# Clustering
# ---------------------------------------------------------------------------


def build_clusters(
    new: list[HealthObservation],
    existing: list[HealthObservation],
    window_seconds: float,
) -> list[_Cluster]:
    """Cluster new observations of one metric around stored authoritative ones.

    Each new observation joins the nearest stored authoritative observation
    within the window; failing that, it joins the open new-only cluster whose
    anchor is within the window, or opens one.  Stored observations are
    never merged with each other.
    """
    stored = sorted((e for e in existing if e.is_authoritative), key=_order_key)
    by_stored: dict[UUID, _Cluster] = {}
    clusters: list[_Cluster] = []
    open_cluster: _Cluster | None = None

    for obs in sorted(new, key=_order_key):
        nearest = None
        nearest_gap = None
        for candidate in stored:
            gap = abs((candidate.event_time - obs.event_time).total_seconds())
            if gap <= window_seconds and (nearest_gap is None or gap < nearest_gap):
                nearest, nearest_gap = candidate, gap
        if nearest is not None:
            cluster = by_stored.get(nearest.observation_id)
            if cluster is None:
                cluster = _Cluster(anchor_time=nearest.event_time, existing=nearest)
                by_stored[nearest.observation_id] = cluster
                clusters.append(cluster)
            cluster.new.append(obs)
            continue

        if open_cluster is None or not _within(obs.event_time, open_cluster.anchor_time, window_seconds):
            open_cluster = _Cluster(anchor_time=obs.event_time)
            clusters.append(open_cluster)
        open_cluster.new.append(obs)

    return clusters


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ConflictEngine:
    """Stateless reconciliation over a batch of observations.

    Usage::

        engine = ConflictEngine()
        result = engine.reconcile(new_batch, stored_window, overrides, as_of=now)
    """

    def __init__(self, config: SyncConfig | None = None) -> None:
        self._config = config or get_sync_config()

    @property
    def config(self) -> SyncConfig:
        return self._config

    def reconcile(
        self,
        new: list[HealthObservation],
        existing: list[HealthObservation],
        overrides: Mapping[MetricType, ManualOverride] | None = None,
        *,
        as_of: datetime,
    ) -> ReconcileResult:
        """Reconcile a batch against the stored window.

        Args:
            new:       Freshly normalized observations (any order, may repeat).
            existing:  Stored observations covering the batch's padded window.
            overrides: The user's manual overrides keyed by metric type.
            as_of:     Timestamp stamped on resolutions and superseded rows.

        Returns:
            ReconcileResult describing rows to append and rows to supersede.
        """
        overrides = overrides or {}
        result = ReconcileResult()

        stored_ids = {e.observation_id for e in existing}
        stored_by_source = {e.source_key: e for e in existing if e.is_authoritative}

        # Later occurrences of the same vendor record replace earlier ones.
        latest_by_source: dict[tuple[str, str], HealthObservation] = {}
        for obs in new:
            latest_by_source[obs.source_key] = obs

        fresh: list[HealthObservation] = []
        for obs in latest_by_source.values():
            if obs.observation_id in stored_ids:
                result.unchanged += 1
                continue
            fresh.append(replace(obs, ingested_at=obs.ingested_at or as_of))

        # A new version of a stored record retires the old version.
        revised = {
            obs.observation_id: stored_by_source[obs.source_key]
            for obs in fresh
            if obs.source_key in stored_by_source
        }
        revised_ids = {old.observation_id for old in revised.values()}
        pool = [e for e in existing if e.observation_id not in revised_ids]

        for metric_type in sorted({o.metric_type for o in fresh}, key=lambda m: m.value):
            metric_new = [o for o in fresh if o.metric_type == metric_type]
            metric_existing = [e for e in pool if e.metric_type == metric_type]
            result.extend(
                self._reconcile_metric(metric_type, metric_new, metric_existing, revised, overrides, as_of)
            )
        return result

    def _reconcile_metric(
        self,
        metric_type: MetricType,
        new: list[HealthObservation],
        existing: list[HealthObservation],
        revised: dict[UUID, HealthObservation],
        overrides: Mapping[MetricType, ManualOverride],
        as_of: datetime,
    ) -> ReconcileResult:
        metric_cfg = self._config.metric(metric_type)
        result = ReconcileResult()

        for cluster in build_clusters(new, existing, metric_cfg.cluster_window_seconds):
            members = cluster.members
            resolution: ConflictResolution | None = None

            if values_agree((m.value for m in members), metric_cfg.epsilon):
                winner = max(members, key=_preference_key)
            else:
                try:
                    winner, resolution = self._resolve(cluster, metric_type, metric_cfg, overrides, as_of)
                except ConflictUnresolved as exc:
                    logger.warning(
                        "Unresolved %s conflict (%d observations): %s",
                        metric_type.value, len(members), exc,
                    )
                    result.failed.extend((obs, str(exc)) for obs in cluster.new)
                    continue

            self._apply(cluster, winner, revised, as_of, result)
            if resolution is not None:
                result.resolutions.append(resolution)

        return result

    def _resolve(
        self,
        cluster: _Cluster,
        metric_type: MetricType,
        metric_cfg: MetricConfig,
        overrides: Mapping[MetricType, ManualOverride],
        as_of: datetime,
    ) -> tuple[HealthObservation, ConflictResolution]:
        members = cluster.members
        kind = classify_conflict(members, metric_cfg)
        choice = select_policy(metric_type, overrides, self._config)

        preferred = [m for m in members if m.source_device_id == choice.preferred_device_id]
        if preferred:
            winner = max(preferred, key=_latest_key)
        else:
            winner = RESOLVERS[choice.policy](cluster, metric_cfg, as_of)

        member_ids = sorted(str(m.observation_id) for m in members)
        resolution = ConflictResolution(
            resolution_id=uuid.uuid5(OBSERVATION_NAMESPACE, "resolution|" + "|".join(member_ids)),
            user_id=winner.user_id,
            metric_type=metric_type,
            conflict_kind=kind,
            competing=tuple(_competing_entry(m, m is cluster.existing) for m in members),
            policy=choice.policy,
            resolved_value=winner.value,
            authoritative_id=winner.observation_id,
            resolved_by=choice.resolved_by,
            resolved_at=as_of,
            device_id=choice.preferred_device_id,
        )
        logger.info(
            "Resolved %s %s conflict across %d observations via %s (%s) → %s",
            kind.value, metric_type.value, len(members), choice.policy.value,
            choice.resolved_by.value, winner.value,
        )
        return winner, resolution

    @staticmethod
    def _apply(
        cluster: _Cluster,
        winner: HealthObservation,
        revised: dict[UUID, HealthObservation],
        as_of: datetime,
        result: ReconcileResult,
    ) -> None:
        winner_id = winner.observation_id
        new_ids = {o.observation_id for o in cluster.new}

        if winner_id not in new_ids and winner is not cluster.existing:
            result.new_rows.append(winner)  # synthesized merge

        for obs in cluster.new:
            row = obs if obs.observation_id == winner_id else obs.superseded(winner_id, as_of)
            result.new_rows.append(row)

        existing_replaced = cluster.existing is not None and cluster.existing.observation_id != winner_id
        if existing_replaced:
            result.supersede.append((cluster.existing.observation_id, winner_id))

        prior_versions = [revised[o.observation_id] for o in cluster.new if o.observation_id in revised]
        for old in prior_versions:
            result.supersede.append((old.observation_id, winner_id))

        if cluster.existing is None and not prior_versions:
            result.records_added += 1
        elif existing_replaced or prior_versions:
            result.records_updated += 1

        result.authoritative.append(winner)
