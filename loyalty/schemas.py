"""Pydantic request/response schemas for the Loyalty API.

Wire names are camelCase; Python attributes stay snake_case.
"""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _Camel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Diagnose
# ---------------------------------------------------------------------------


class DiagnosisSummary(_Camel):
    total_objects: int
    total_placeholders: int
    total_ratings: int
    valid_ratings: int
    orphaned_ratings: int
    ratings_pointing_to_placeholders: int


class RecordListing(_Camel):
    id: str
    name: str
    group_id: str


class RatingSample(_Camel):
    id: str
    group_id: str
    target_object_id: str | None = None
    target_member_id: str | None = None
    metric_id: str
    value: float


class DiagnosisOut(_Camel):
    summary: DiagnosisSummary
    objects: list[RecordListing]
    placeholders: list[RecordListing]
    orphaned_rating_samples: list[RatingSample]
    ratings_pointing_to_placeholders_samples: list[RatingSample]
    message: str


# ---------------------------------------------------------------------------
# Migrate
# ---------------------------------------------------------------------------


class GroupPreview(_Camel):
    count: int
    items: list[str]


class MigrationPreviewOut(_Camel):
    message: str
    total_placeholder_members: int
    by_group: dict[str, GroupPreview]


class MigrationItemOut(_Camel):
    name: str
    group_id: str
    old_id: str
    new_id: str


class MigrationOut(_Camel):
    success: bool
    message: str
    migrated_count: int
    ratings_updated: int
    migrated_items: list[MigrationItemOut]
    id_mapping: dict[str, str]


# ---------------------------------------------------------------------------
# Repair
# ---------------------------------------------------------------------------


class RatingFixOut(_Camel):
    rating_id: str
    old_target_id: str
    new_target_id: str
    matched_by_name: str


class UnfixableOut(_Camel):
    rating_id: str
    target_id: str | None = None
    reason: str


class RepairOut(_Camel):
    success: bool
    message: str
    fixed_count: int
    unfixable_count: int
    fixes: list[RatingFixOut]
    unfixable: list[UnfixableOut]


# ---------------------------------------------------------------------------
# Scores, metrics, ratings, claims
# ---------------------------------------------------------------------------


class AggregatedScoreOut(_Camel):
    object_id: str
    metric_id: str
    average_value: float
    total_ratings: int


class MetricOut(_Camel):
    id: str
    name: str
    description: str = ""
    order: int = 0
    min_value: float
    max_value: float
    prefix: str = ""
    suffix: str = ""
    applicable_categories: list[str] = []


class RatingSubmit(_Camel):
    group_id: str
    metric_id: str
    rater_id: str
    target_object_id: str
    value: float


class RatingOut(_Camel):
    id: str
    group_id: str
    metric_id: str
    rater_id: str
    target_object_id: str | None = None
    target_member_id: str | None = None
    value: float


class ClaimCreate(_Camel):
    claimant_id: str


class ClaimRespond(_Camel):
    approve: bool
    claimant_name: str | None = None
    claimant_image_url: str | None = None


class ClaimOut(_Camel):
    id: str
    group_id: str
    object_id: str
    claimant_id: str
    status: str
    created_at: str | None = None
    responded_at: str | None = None


class MetadataOut(BaseModel):
    title: str | None = None
    description: str | None = None
    image: str | None = None

