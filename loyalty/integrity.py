"""Integrity classifier: where does each rating actually point?

Every rating is resolved (``resolve_target_id``) against the live object ids
first and the legacy placeholder ids second:

- **valid** -- the target is a live object
- **placeholder-bound** -- the target is a legacy placeholder member
- **orphaned** -- the target is neither, or the rating has no target at all

The three partitions are disjoint and together cover every input rating.
Nothing here touches the store.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from loyalty.entities import ObjectRecord, PlaceholderRecord, RatingRecord, resolve_target_id

HEALTHY_MESSAGE = "All ratings are properly linked to objects."
REPAIR_MESSAGE = (
    "Found ratings that do not match current objects. "
    "Run POST /api/fix-ratings to repair."
)


@dataclass
class RatingPartition:
    valid: list[RatingRecord] = field(default_factory=list)
    placeholder_bound: list[RatingRecord] = field(default_factory=list)
    orphaned: list[RatingRecord] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.valid) + len(self.placeholder_bound) + len(self.orphaned)


def classify_ratings(
    object_ids: set[str], placeholder_ids: set[str], ratings: Iterable[RatingRecord],
) -> RatingPartition:
    partition = RatingPartition()
    for rating in ratings:
        target_id = resolve_target_id(rating)
        if target_id is not None and target_id in object_ids:
            partition.valid.append(rating)
        elif target_id is not None and target_id in placeholder_ids:
            partition.placeholder_bound.append(rating)
        else:
            partition.orphaned.append(rating)
    return partition


def _rating_sample(rating: RatingRecord) -> dict:
    return {
        "id": rating.id,
        "groupId": rating.group_id,
        "targetObjectId": rating.target_object_id,
        "targetMemberId": rating.target_member_id,
        "metricId": rating.metric_id,
        "value": rating.value,
    }


def _listing(record: ObjectRecord | PlaceholderRecord) -> dict:
    return {"id": record.id, "name": record.name, "groupId": record.group_id}


def diagnosis_report(
    objects: list[ObjectRecord],
    placeholders: list[PlaceholderRecord],
    ratings: list[RatingRecord],
    *,
    object_samples: int = 20,
    rating_samples: int = 10,
) -> dict:
    """Summary counts plus bounded samples for the diagnose operation."""
    partition = classify_ratings(
        {o.id for o in objects}, {p.id for p in placeholders}, ratings,
    )
    broken = bool(partition.orphaned or partition.placeholder_bound)
    return {
        "summary": {
            "totalObjects": len(objects),
            "totalPlaceholders": len(placeholders),
            "totalRatings": len(ratings),
            "validRatings": len(partition.valid),
            "orphanedRatings": len(partition.orphaned),
            "ratingsPointingToPlaceholders": len(partition.placeholder_bound),
        },
        "objects": [_listing(o) for o in objects[:object_samples]],
        "placeholders": [_listing(p) for p in placeholders[:object_samples]],
        "orphanedRatingSamples": [_rating_sample(r) for r in partition.orphaned[:rating_samples]],
        "ratingsPointingToPlaceholdersSamples": [
            _rating_sample(r) for r in partition.placeholder_bound[:rating_samples]
        ],
        "message": REPAIR_MESSAGE if broken else HEALTHY_MESSAGE,
    }

