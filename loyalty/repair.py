"""Repair ratings whose target is not a live object.

For each such rating the target is looked up among the legacy placeholders;
the placeholder's name (lowercased, stripped) is then matched exactly against
the objects of the rating's group. A hit rewrites ``target_object_id`` only;
``target_member_id`` keeps the old identity.

Known limitation: the name index is keyed by (group, normalized name), so when
two objects in a group normalize to the same name the one indexed last wins.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from loyalty.entities import ObjectRecord, PlaceholderRecord, normalize_name, resolve_target_id
from loyalty.errors import RepairFailed, WriteFailure
from loyalty.gateway import EntityStore

log = logging.getLogger(__name__)

NOT_FOUND_REASON = "Target ID not found in objects or placeholders"


@dataclass
class RatingFix:
    rating_id: str
    old_target_id: str
    new_target_id: str
    matched_by_name: str


@dataclass
class UnfixableRating:
    rating_id: str
    target_id: str | None
    reason: str


@dataclass
class RepairResult:
    fixes: list[RatingFix] = field(default_factory=list)
    unfixable: list[UnfixableRating] = field(default_factory=list)

    @property
    def fixed_count(self) -> int:
        return len(self.fixes)

    @property
    def unfixable_count(self) -> int:
        return len(self.unfixable)

    @property
    def message(self) -> str:
        return (
            f"Fixed {self.fixed_count} ratings. "
            f"{self.unfixable_count} ratings could not be automatically fixed."
        )


@dataclass
class NameIndex:
    by_id: dict[str, tuple[str, str]] = field(default_factory=dict)
    by_name: dict[tuple[str, str], str] = field(default_factory=dict)

    def lookup(self, group_id: str, name: str | None) -> str | None:
        return self.by_name.get((group_id, normalize_name(name)))


def build_object_index(objects: list[ObjectRecord]) -> NameIndex:
    index = NameIndex()
    for obj in objects:
        key = (obj.group_id, normalize_name(obj.name))
        index.by_id[obj.id] = key
        index.by_name[key] = obj.id
    return index


def build_placeholder_index(placeholders: list[PlaceholderRecord]) -> dict[str, tuple[str, str]]:
    return {p.id: (p.group_id, p.name) for p in placeholders}


def repair_ratings(store: EntityStore) -> RepairResult:
    """Re-target every fixable rating. Raises ``RepairFailed`` on the first failed write."""
    objects = store.fetch_objects()
    index = build_object_index(objects)
    placeholders = build_placeholder_index(store.fetch_placeholders())
    result = RepairResult()

    try:
        for rating in store.fetch_ratings():
            target_id = resolve_target_id(rating)
            if target_id is not None and target_id in index.by_id:
                continue

            placeholder = placeholders.get(target_id) if target_id else None
            if placeholder is None:
                result.unfixable.append(UnfixableRating(rating.id, target_id, NOT_FOUND_REASON))
                continue

            _, name = placeholder
            match_id = index.lookup(rating.group_id, name)
            if match_id is None:
                result.unfixable.append(UnfixableRating(
                    rating.id, target_id,
                    f'No matching object found for placeholder "{name}" in group {rating.group_id}',
                ))
                continue

            store.patch_rating(rating.id, target_object_id=match_id)
            result.fixes.append(RatingFix(rating.id, target_id, match_id, name))
    except WriteFailure as exc:
        log.warning(
            "Repair aborted after %d fixes (%d unfixable so far): %s",
            result.fixed_count, result.unfixable_count, exc,
        )
        raise RepairFailed(str(exc), partial=result) from exc

    log.info(result.message)
    return result
