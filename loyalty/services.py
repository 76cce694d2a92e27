"""Shared business logic for the Loyalty API, MCP server and CLI."""
from __future__ import annotations

import logging
import threading
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import asdict
from datetime import UTC, datetime
from typing import Any

from loyalty.aggregator import aggregate_scores, score_lookup
from loyalty.config import get_settings
from loyalty.entities import (
    CLAIM_CLAIMED,
    CLAIM_PENDING,
    CLAIM_UNCLAIMED,
    AggregatedScore,
    ClaimRecord,
    MetricDef,
    ObjectRecord,
    RatingRecord,
    format_metric_value,
    metric_applies_to_object,
    object_display_image,
    object_display_name,
)
from loyalty.errors import MaintenanceBusy, NotFound, OperationFailed, ValidationError
from loyalty.gateway import EntityStore
from loyalty.integrity import diagnosis_report
from loyalty.migration import MigrationResult, migrate_placeholders, preview_migration
from loyalty.models import new_id
from loyalty.repair import RepairResult, repair_ratings

log = logging.getLogger(__name__)

FIX_RATINGS_USAGE = (
    "POST to this endpoint to fix orphaned ratings by matching placeholder names to objects."
)

# ---------------------------------------------------------------------------
# Single-flight guard for mutating maintenance runs
# ---------------------------------------------------------------------------

_maintenance_lock = threading.Lock()


@contextmanager
def maintenance_slot(operation: str) -> Generator[None, None, None]:
    """Hold the process-wide maintenance lock, or fail fast if it is taken."""
    if not _maintenance_lock.acquire(blocking=False):
        raise MaintenanceBusy(f"Cannot start {operation}: another maintenance run is in progress")
    try:
        log.info("Maintenance run started: %s", operation)
        yield
    finally:
        _maintenance_lock.release()


def _require(value: str | None, label: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{label} is required")
    return value


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def migration_payload(result: MigrationResult) -> dict:
    return {
        "migratedCount": result.migrated_count,
        "ratingsUpdated": result.ratings_updated,
        "migratedItems": [
            {"name": i.name, "groupId": i.group_id, "oldId": i.old_id, "newId": i.new_id}
            for i in result.migrated_items
        ],
        "idMapping": dict(result.id_mapping),
    }


def repair_payload(result: RepairResult, limit: int | None = None) -> dict:
    if limit is None:
        limit = get_settings().repair_samples
    return {
        "fixedCount": result.fixed_count,
        "unfixableCount": result.unfixable_count,
        "fixes": [
            {"ratingId": f.rating_id, "oldTargetId": f.old_target_id,
             "newTargetId": f.new_target_id, "matchedByName": f.matched_by_name}
            for f in result.fixes[:limit]
        ],
        "unfixable": [
            {"ratingId": u.rating_id, "targetId": u.target_id, "reason": u.reason}
            for u in result.unfixable[:limit]
        ],
    }


def failure_payload(exc: OperationFailed) -> dict:
    """The generic ``{error, details}`` envelope, plus counts reached before the failure."""
    partial = exc.partial
    if isinstance(partial, MigrationResult):
        partial = migration_payload(partial)
    elif isinstance(partial, RepairResult):
        partial = repair_payload(partial)
    return {"error": exc.label, "details": str(exc), "partial": partial}


def score_dict(score: AggregatedScore) -> dict:
    return {
        "objectId": score.object_id,
        "metricId": score.metric_id,
        "averageValue": score.average_value,
        "totalRatings": score.total_ratings,
    }


def metric_dict(metric: MetricDef) -> dict:
    return {
        "id": metric.id, "name": metric.name, "description": metric.description,
        "order": metric.order, "minValue": metric.min_value, "maxValue": metric.max_value,
        "prefix": metric.prefix, "suffix": metric.suffix,
        "applicableCategories": list(metric.applicable_categories),
    }


def object_summary(obj: ObjectRecord) -> dict:
    return {
        "id": obj.id, "groupId": obj.group_id, "name": obj.name,
        "displayName": object_display_name(obj),
        "displayImage": object_display_image(obj),
        "objectType": obj.object_type, "category": obj.category,
        "ratingMode": obj.rating_mode, "claimStatus": obj.claim_status,
        "claimedById": obj.claimed_by_id,
    }


def rating_dict(rating: RatingRecord) -> dict:
    return {
        "id": rating.id, "groupId": rating.group_id, "metricId": rating.metric_id,
        "raterId": rating.rater_id, "targetObjectId": rating.target_object_id,
        "targetMemberId": rating.target_member_id, "value": rating.value,
    }


def claim_dict(claim: ClaimRecord) -> dict:
    data = asdict(claim)
    for key in ("created_at", "responded_at"):
        data[key] = data[key].isoformat() if data[key] else None
    return data


# ---------------------------------------------------------------------------
# Maintenance operations
# ---------------------------------------------------------------------------


def diagnose(store: EntityStore, group_id: str | None = None) -> dict:
    settings = get_settings()
    group_id = (group_id or "").strip() or None
    return diagnosis_report(
        store.fetch_objects(group_id),
        store.fetch_placeholders(group_id),
        store.fetch_ratings(group_id),
        object_samples=settings.diagnose_object_samples,
        rating_samples=settings.diagnose_rating_samples,
    )


def migration_preview(store: EntityStore) -> dict:
    return preview_migration(store)


def run_migration(store: EntityStore) -> dict:
    """Migrate all placeholders. ``MigrationFailed`` propagates with partial counts."""
    with maintenance_slot("migration"):
        result = migrate_placeholders(store)
    return {"success": True, "message": result.message, **migration_payload(result)}


def run_repair(store: EntityStore) -> dict:
    """Re-target fixable ratings. ``RepairFailed`` propagates with partial counts."""
    with maintenance_slot("repair"):
        result = repair_ratings(store)
    return {"success": True, "message": result.message, **repair_payload(result)}


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def group_scores(store: EntityStore, group_id: str | None, captain_id: str | None) -> list[dict]:
    group_id = _require(group_id, "group_id")
    captain_id = _require(captain_id, "captain_id")
    scores = aggregate_scores(
        store.fetch_objects(group_id),
        store.fetch_metrics(group_id),
        store.fetch_ratings(group_id),
        captain_id,
    )
    return [score_dict(s) for s in scores]


def score_grid(store: EntityStore, group_id: str | None, captain_id: str | None) -> dict:
    """Object x metric table of display strings, e.g. ``"$72.5k (4)"``.

    Cells are ``None`` where the metric does not apply to the object or no
    rating has been counted yet.
    """
    group_id = _require(group_id, "group_id")
    captain_id = _require(captain_id, "captain_id")
    objects = store.fetch_objects(group_id)
    metrics = store.fetch_metrics(group_id)
    scores = aggregate_scores(objects, metrics, store.fetch_ratings(group_id), captain_id)

    rows = []
    for obj in objects:
        cells: list[str | None] = []
        for metric in metrics:
            average, count = score_lookup(scores, obj.id, metric.id)
            if not count or not metric_applies_to_object(metric, obj):
                cells.append(None)
                continue
            cells.append(f"{format_metric_value(round(average, 1), metric)} ({count})")
        rows.append({"objectId": obj.id, "name": object_display_name(obj), "cells": cells})
    return {"metrics": [m.name for m in metrics], "rows": rows}


def applicable_metrics(store: EntityStore, group_id: str, object_id: str) -> list[dict]:
    obj = store.get_object(object_id)
    if obj is None or obj.group_id != group_id:
        raise NotFound("Object", object_id)
    return [metric_dict(m) for m in store.fetch_metrics(group_id) if metric_applies_to_object(m, obj)]


# ---------------------------------------------------------------------------
# Rating submission and claims
# ---------------------------------------------------------------------------


def submit_rating(
    store: EntityStore, *, group_id: str, metric_id: str, rater_id: str,
    target_object_id: str, value: float,
) -> dict:
    """Create or update a rater's rating for one (object, metric)."""
    group_id = _require(group_id, "group_id")
    metric_id = _require(metric_id, "metric_id")
    rater_id = _require(rater_id, "rater_id")
    target_object_id = _require(target_object_id, "target_object_id")

    metric = store.get_metric(metric_id)
    if metric is None or metric.group_id != group_id:
        raise NotFound("Metric", metric_id)
    obj = store.get_object(target_object_id)
    if obj is None or obj.group_id != group_id:
        raise NotFound("Object", target_object_id)
    if not metric.min_value <= value <= metric.max_value:
        raise ValidationError(
            f"Value {value} is outside {metric.name} bounds "
            f"[{metric.min_value}, {metric.max_value}]"
        )

    existing = store.find_rating(group_id, metric_id, rater_id, target_object_id)
    if existing is not None:
        store.patch_rating(existing.id, value=value)
        existing.value = value
        return rating_dict(existing)

    rating = RatingRecord(
        id=new_id(), group_id=group_id, metric_id=metric_id, rater_id=rater_id,
        value=value, target_object_id=target_object_id, target_member_id=target_object_id,
    )
    store.create_rating(rating)
    return rating_dict(rating)


def request_claim(store: EntityStore, object_id: str, claimant_id: str) -> dict:
    claimant_id = _require(claimant_id, "claimant_id")
    obj = store.get_object(object_id)
    if obj is None:
        raise NotFound("Object", object_id)
    if obj.object_type != "user":
        raise ValidationError("Only user-type objects can be claimed")
    if obj.claim_status != CLAIM_UNCLAIMED:
        raise ValidationError(f"Object is already {obj.claim_status}")

    claim = ClaimRecord(
        id=new_id(), group_id=obj.group_id, object_id=obj.id,
        claimant_id=claimant_id, created_at=datetime.now(UTC),
    )
    store.create_claim_request(claim)
    store.patch_object(obj.id, claim_status=CLAIM_PENDING)
    return claim_dict(claim)


def respond_to_claim(
    store: EntityStore, request_id: str, *, approve: bool,
    claimant_name: str | None = None, claimant_image_url: str | None = None,
) -> dict:
    claim = store.get_claim_request(request_id)
    if claim is None:
        raise NotFound("Claim request", request_id)
    if claim.status != "pending":
        raise ValidationError(f"Claim request is already {claim.status}")
    if approve:
        _require(claimant_name, "claimant_name")

    now = datetime.now(UTC)
    claim.status = "approved" if approve else "rejected"
    claim.responded_at = now
    store.patch_claim_request(claim.id, status=claim.status, responded_at=now)

    updates: dict[str, Any]
    if approve:
        updates = {
            "claim_status": CLAIM_CLAIMED, "claimed_by_id": claim.claimant_id,
            "claimed_by_name": claimant_name, "claimed_by_image_url": claimant_image_url,
        }
    else:
        updates = {"claim_status": CLAIM_UNCLAIMED}
    store.patch_object(claim.object_id, **updates)
    return claim_dict(claim)
