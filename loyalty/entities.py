"""Typed entities the ratings core works on.

Store records are decoded into these at the gateway boundary, so every legacy
fallback chain is resolved exactly once and the engines never see raw rows.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

RATING_MODE_CAPTAIN = "captain"
RATING_MODE_GROUP = "group"

CLAIM_UNCLAIMED = "unclaimed"
CLAIM_PENDING = "pending"
CLAIM_CLAIMED = "claimed"

MEMBER_STATUS_PLACEHOLDER = "placeholder"


@dataclass
class ObjectRecord:
    id: str
    group_id: str
    name: str
    description: str | None = None
    image_url: str | None = None
    object_type: str = "text"
    link_url: str | None = None
    category: str | None = None
    disabled_metric_ids: list[str] = field(default_factory=list)
    enabled_metric_ids: list[str] = field(default_factory=list)
    visible_in_graph: bool = True
    rating_mode: str = RATING_MODE_GROUP
    claimed_by_id: str | None = None
    claimed_by_name: str | None = None
    claimed_by_image_url: str | None = None
    claim_status: str = CLAIM_UNCLAIMED
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class PlaceholderRecord:
    """A legacy member with status ``placeholder``.

    Fields already carry their resolved fallbacks (see ``SqlEntityStore``):
    ``image_url`` is placeholder image, then generic image; ``category`` is the
    per-object category, then the per-member item category; ``claimed_by_id``
    is the real identity attached to the member, if any.
    """

    id: str
    group_id: str
    name: str
    description: str | None = None
    image_url: str | None = None
    object_type: str = "text"
    link_url: str | None = None
    category: str | None = None
    disabled_metric_ids: list[str] = field(default_factory=list)
    enabled_metric_ids: list[str] = field(default_factory=list)
    visible_in_graph: bool = True
    rating_mode: str = RATING_MODE_GROUP
    claimed_by_id: str | None = None
    claimed_by_name: str | None = None
    claimed_by_image_url: str | None = None
    created_at: datetime | None = None


@dataclass
class RatingRecord:
    id: str
    group_id: str
    metric_id: str
    rater_id: str
    value: float
    target_object_id: str | None = None
    target_member_id: str | None = None


@dataclass
class MetricDef:
    id: str
    group_id: str
    name: str
    description: str = ""
    order: int = 0
    min_value: float = 0.0
    max_value: float = 100.0
    prefix: str = ""
    suffix: str = ""
    applicable_categories: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class AggregatedScore:
    object_id: str
    metric_id: str
    average_value: float
    total_ratings: int


@dataclass
class ClaimRecord:
    id: str
    group_id: str
    object_id: str
    claimant_id: str
    status: str = "pending"
    created_at: datetime | None = None
    responded_at: datetime | None = None


# ---------------------------------------------------------------------------
# Rules shared by the classifier, migration, repair and aggregation
# ---------------------------------------------------------------------------


def resolve_target_id(rating: RatingRecord) -> str | None:
    """Return the identity a rating points at.

    Precedence: ``target_object_id``, then the legacy ``target_member_id``.
    Empty strings count as missing; ``None`` means the rating has no target.
    """
    return rating.target_object_id or rating.target_member_id or None


def normalize_name(name: str | None) -> str:
    return (name or "").strip().lower()


def metric_applies_to_object(metric: MetricDef, obj: ObjectRecord) -> bool:
    # explicit disable > explicit enable > category default
    if metric.id in obj.disabled_metric_ids:
        return False
    if metric.id in obj.enabled_metric_ids:
        return True
    if not metric.applicable_categories:
        return True
    if not obj.category:
        return True
    return obj.category in metric.applicable_categories


def object_display_name(obj: ObjectRecord) -> str:
    if obj.object_type == "user" and obj.claim_status == CLAIM_CLAIMED and obj.claimed_by_name:
        return obj.claimed_by_name
    return obj.name


def object_display_image(obj: ObjectRecord) -> str | None:
    if obj.object_type == "user" and obj.claim_status == CLAIM_CLAIMED and obj.claimed_by_image_url:
        return obj.claimed_by_image_url
    return obj.image_url


def format_metric_value(value: float, metric: MetricDef) -> str:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return f"{metric.prefix}{value}{metric.suffix}"
