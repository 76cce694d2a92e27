"""Per-(object, metric) score aggregation.

Scores are recomputed from the full rating set on every call and never
maintained incrementally. For each (target, metric) pair the score is the
arithmetic mean of the contributing rating values plus their count. Only
ratings whose resolved target is one of ``objects`` contribute; orphaned and
placeholder-bound ratings are left to the maintenance runs. Values are
neither clamped nor rounded here; display rounding is the caller's business.

Objects in ``captain`` rating mode only count the rating cast by the group's
captain. Pairs with no contributing rating are absent from the result;
``score_lookup`` treats them as ``(0.0, 0)``.
"""
from __future__ import annotations

from collections.abc import Iterable

from loyalty.entities import (
    RATING_MODE_CAPTAIN,
    AggregatedScore,
    MetricDef,
    ObjectRecord,
    RatingRecord,
    resolve_target_id,
)


def aggregate_scores(
    objects: Iterable[ObjectRecord],
    metrics: Iterable[MetricDef],
    ratings: Iterable[RatingRecord],
    captain_id: str | None,
) -> list[AggregatedScore]:
    objects = list(objects)
    live_ids = {o.id for o in objects}
    captain_only = {o.id for o in objects if o.rating_mode == RATING_MODE_CAPTAIN}
    metric_order = {m.id: m.order for m in metrics}

    sums: dict[tuple[str, str], float] = {}
    counts: dict[tuple[str, str], int] = {}
    object_rank: dict[str, int] = {}
    metric_rank: dict[str, int] = {}

    for rating in ratings:
        target_id = resolve_target_id(rating)
        if target_id not in live_ids:
            continue
        if target_id in captain_only and (not captain_id or rating.rater_id != captain_id):
            continue
        key = (target_id, rating.metric_id)
        sums[key] = sums.get(key, 0.0) + rating.value
        counts[key] = counts.get(key, 0) + 1
        object_rank.setdefault(target_id, len(object_rank))
        metric_rank.setdefault(rating.metric_id, len(metric_rank))

    def sort_key(key: tuple[str, str]):
        object_id, metric_id = key
        known = metric_id in metric_order
        return (
            object_rank[object_id],
            0 if known else 1,
            metric_order.get(metric_id, 0),
            metric_rank[metric_id],
        )

    return [
        AggregatedScore(
            object_id=object_id,
            metric_id=metric_id,
            average_value=sums[(object_id, metric_id)] / counts[(object_id, metric_id)],
            total_ratings=counts[(object_id, metric_id)],
        )
        for object_id, metric_id in sorted(counts, key=sort_key)
    ]


def score_lookup(
    scores: Iterable[AggregatedScore], object_id: str, metric_id: str,
) -> tuple[float, int]:
    for score in scores:
        if score.object_id == object_id and score.metric_id == metric_id:
            return score.average_value, score.total_ratings
    return 0.0, 0
