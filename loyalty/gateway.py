"""Entity store gateway.

The engines take an ``EntityStore`` as a parameter and never touch sessions or
tables directly. ``SqlEntityStore`` is the SQLAlchemy-backed implementation.
Each write commits on its own; there is no transaction spanning several
records, so a failure midway through a loop leaves earlier writes in place.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from loyalty.entities import (
    MEMBER_STATUS_PLACEHOLDER,
    RATING_MODE_GROUP,
    ClaimRecord,
    MetricDef,
    ObjectRecord,
    PlaceholderRecord,
    RatingRecord,
)
from loyalty.errors import WriteFailure
from loyalty.models import ClaimRequest, GroupObject, Member, Metric, Rating, new_id
from loyalty.utils import json_list

log = logging.getLogger(__name__)

OBJECT_PATCH_FIELDS = (
    "name", "description", "image_url", "object_type", "link_url", "category",
    "visible_in_graph", "rating_mode", "claimed_by_id", "claimed_by_name",
    "claimed_by_image_url", "claim_status",
)

RATING_PATCH_FIELDS = ("target_object_id", "target_member_id", "value")

CLAIM_PATCH_FIELDS = ("status", "responded_at")


class EntityStore(Protocol):
    def fetch_objects(self, group_id: str | None = None) -> list[ObjectRecord]: ...

    def fetch_placeholders(self, group_id: str | None = None) -> list[PlaceholderRecord]: ...

    def fetch_ratings(self, group_id: str | None = None) -> list[RatingRecord]: ...

    def fetch_metrics(self, group_id: str) -> list[MetricDef]: ...

    def get_object(self, object_id: str) -> ObjectRecord | None: ...

    def get_metric(self, metric_id: str) -> MetricDef | None: ...

    def find_rating(
        self, group_id: str, metric_id: str, rater_id: str, target_id: str,
    ) -> RatingRecord | None: ...

    def get_claim_request(self, request_id: str) -> ClaimRecord | None: ...

    def create_object(self, record: ObjectRecord) -> None: ...

    def patch_object(self, object_id: str, **fields: Any) -> None: ...

    def create_rating(self, record: RatingRecord) -> None: ...

    def patch_rating(self, rating_id: str, **fields: Any) -> None: ...

    def create_claim_request(self, record: ClaimRecord) -> None: ...

    def patch_claim_request(self, request_id: str, **fields: Any) -> None: ...


# ---------------------------------------------------------------------------
# Decoding (row -> entity)
# ---------------------------------------------------------------------------


def decode_object(row: GroupObject) -> ObjectRecord:
    return ObjectRecord(
        id=row.id,
        group_id=row.group_id,
        name=row.name,
        description=row.description or None,
        image_url=row.image_url or None,
        object_type=row.object_type or "text",
        link_url=row.link_url or None,
        category=row.category or None,
        disabled_metric_ids=json_list(row.disabled_metric_ids_json),
        enabled_metric_ids=json_list(row.enabled_metric_ids_json),
        visible_in_graph=row.visible_in_graph is not False,
        rating_mode=row.rating_mode or RATING_MODE_GROUP,
        claimed_by_id=row.claimed_by_id or None,
        claimed_by_name=row.claimed_by_name or None,
        claimed_by_image_url=row.claimed_by_image_url or None,
        claim_status=row.claim_status or "unclaimed",
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def decode_placeholder(row: Member) -> PlaceholderRecord:
    """Decode a legacy placeholder member, resolving its fallback chains."""
    return PlaceholderRecord(
        id=row.id,
        group_id=row.group_id,
        name=row.name,
        description=row.description or None,
        image_url=row.placeholder_image_url or row.image_url or None,
        object_type=row.object_type or "text",
        link_url=row.link_url or None,
        category=row.category or row.item_category or None,
        disabled_metric_ids=json_list(row.disabled_metric_ids_json),
        enabled_metric_ids=json_list(row.enabled_metric_ids_json),
        visible_in_graph=row.visible_in_graph is not False,
        rating_mode=row.rating_mode or RATING_MODE_GROUP,
        claimed_by_id=row.user_id or None,
        claimed_by_name=row.claimed_by_name or None,
        claimed_by_image_url=row.claimed_by_image_url or None,
        created_at=row.invited_at or row.created_at,
    )


def decode_rating(row: Rating) -> RatingRecord:
    return RatingRecord(
        id=row.id,
        group_id=row.group_id,
        metric_id=row.metric_id,
        rater_id=row.rater_id,
        value=float(row.value),
        target_object_id=row.target_object_id or None,
        target_member_id=row.target_member_id or None,
    )


def decode_metric(row: Metric) -> MetricDef:
    return MetricDef(
        id=row.id,
        group_id=row.group_id,
        name=row.name,
        description=row.description or "",
        order=row.sort_order or 0,
        min_value=float(row.min_value if row.min_value is not None else 0.0),
        max_value=float(row.max_value if row.max_value is not None else 100.0),
        prefix=row.prefix or "",
        suffix=row.suffix or "",
        applicable_categories=json_list(row.applicable_categories_json),
    )


def decode_claim(row: ClaimRequest) -> ClaimRecord:
    return ClaimRecord(
        id=row.id, group_id=row.group_id, object_id=row.object_id,
        claimant_id=row.claimant_id, status=row.status,
        created_at=row.created_at, responded_at=row.responded_at,
    )


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------


class SqlEntityStore:
    """``EntityStore`` over a SQLAlchemy session."""

    def __init__(self, session: Session):
        self.session = session

    # -- reads ---------------------------------------------------------------

    def fetch_objects(self, group_id: str | None = None) -> list[ObjectRecord]:
        query = select(GroupObject)
        if group_id:
            query = query.where(GroupObject.group_id == group_id)
        return [decode_object(r) for r in self.session.execute(query).scalars().all()]

    def fetch_placeholders(self, group_id: str | None = None) -> list[PlaceholderRecord]:
        query = select(Member).where(Member.status == MEMBER_STATUS_PLACEHOLDER)
        if group_id:
            query = query.where(Member.group_id == group_id)
        return [decode_placeholder(r) for r in self.session.execute(query).scalars().all()]

    def fetch_ratings(self, group_id: str | None = None) -> list[RatingRecord]:
        query = select(Rating)
        if group_id:
            query = query.where(Rating.group_id == group_id)
        return [decode_rating(r) for r in self.session.execute(query).scalars().all()]

    def fetch_metrics(self, group_id: str) -> list[MetricDef]:
        query = select(Metric).where(Metric.group_id == group_id).order_by(Metric.sort_order)
        return [decode_metric(r) for r in self.session.execute(query).scalars().all()]

    def get_object(self, object_id: str) -> ObjectRecord | None:
        row = self.session.get(GroupObject, object_id)
        return decode_object(row) if row else None

    def get_metric(self, metric_id: str) -> MetricDef | None:
        row = self.session.get(Metric, metric_id)
        return decode_metric(row) if row else None

    def find_rating(
        self, group_id: str, metric_id: str, rater_id: str, target_id: str,
    ) -> RatingRecord | None:
        row = self.session.execute(select(Rating).where(
            Rating.group_id == group_id,
            Rating.metric_id == metric_id,
            Rating.rater_id == rater_id,
            Rating.target_object_id == target_id,
        )).scalars().first()
        return decode_rating(row) if row else None

    def get_claim_request(self, request_id: str) -> ClaimRecord | None:
        row = self.session.get(ClaimRequest, request_id)
        return decode_claim(row) if row else None

    # -- writes --------------------------------------------------------------

    def _write(self, label: str, record_id: str, fn: Callable[[], None]) -> None:
        """Run one write and commit it; any failure becomes ``WriteFailure``."""
        try:
            fn()
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            log.warning("Write failed for %s %s: %s", label, record_id, exc)
            raise WriteFailure(f"{label} {record_id}: {exc}", record_id) from exc

    def _patch(self, model, label: str, record_id: str, allowed: tuple[str, ...], fields: dict) -> None:
        unknown = set(fields) - set(allowed)
        if unknown:
            raise ValueError(f"Cannot patch {label} fields: {', '.join(sorted(unknown))}")

        row = self.session.get(model, record_id)
        if row is None:
            log.warning("Write failed for %s %s: record does not exist", label, record_id)
            raise WriteFailure(f"{label} {record_id} does not exist", record_id)

        def apply() -> None:
            for key, value in fields.items():
                setattr(row, key, value)
            if hasattr(row, "updated_at"):
                row.updated_at = datetime.now(UTC)

        self._write(label, record_id, apply)

    def create_object(self, record: ObjectRecord) -> None:
        now = datetime.now(UTC)
        row = GroupObject(
            id=record.id or new_id(),
            group_id=record.group_id,
            name=record.name,
            description=record.description,
            image_url=record.image_url,
            object_type=record.object_type,
            link_url=record.link_url,
            category=record.category,
            disabled_metric_ids_json=json.dumps(list(record.disabled_metric_ids)),
            enabled_metric_ids_json=json.dumps(list(record.enabled_metric_ids)),
            visible_in_graph=record.visible_in_graph,
            rating_mode=record.rating_mode,
            claimed_by_id=record.claimed_by_id,
            claimed_by_name=record.claimed_by_name,
            claimed_by_image_url=record.claimed_by_image_url,
            claim_status=record.claim_status,
            created_at=record.created_at or now,
            updated_at=record.updated_at or now,
        )
        self._write("Object", row.id, lambda: self.session.add(row))

    def patch_object(self, object_id: str, **fields: Any) -> None:
        self._patch(GroupObject, "Object", object_id, OBJECT_PATCH_FIELDS, fields)

    def create_rating(self, record: RatingRecord) -> None:
        now = datetime.now(UTC)
        row = Rating(
            id=record.id or new_id(),
            group_id=record.group_id,
            metric_id=record.metric_id,
            rater_id=record.rater_id,
            target_object_id=record.target_object_id,
            target_member_id=record.target_member_id,
            value=record.value,
            created_at=now,
            updated_at=now,
        )
        self._write("Rating", row.id, lambda: self.session.add(row))

    def patch_rating(self, rating_id: str, **fields: Any) -> None:
        self._patch(Rating, "Rating", rating_id, RATING_PATCH_FIELDS, fields)

    def create_claim_request(self, record: ClaimRecord) -> None:
        row = ClaimRequest(
            id=record.id or new_id(),
            group_id=record.group_id,
            object_id=record.object_id,
            claimant_id=record.claimant_id,
            status=record.status,
            created_at=record.created_at or datetime.now(UTC),
        )
        self._write("Claim request", row.id, lambda: self.session.add(row))

    def patch_claim_request(self, request_id: str, **fields: Any) -> None:
        self._patch(ClaimRequest, "Claim request", request_id, CLAIM_PATCH_FIELDS, fields)
