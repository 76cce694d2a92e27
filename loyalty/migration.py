"""Migrate legacy placeholder members into first-class objects.

Two passes over a snapshot of the store:

1. every placeholder becomes exactly one new object under a freshly generated
   identity; the old -> new identity mapping is recorded as we go
2. every rating whose resolved target is a key of that mapping has both
   ``target_object_id`` and ``target_member_id`` rewritten to the new identity

Placeholders are left in place, so running this twice against the same
cohort creates a second set of objects. Callers must run it at most once per
cohort and never concurrently with itself or with the repair run.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from loyalty.entities import (
    CLAIM_CLAIMED,
    CLAIM_UNCLAIMED,
    ObjectRecord,
    PlaceholderRecord,
    resolve_target_id,
)
from loyalty.errors import MigrationFailed, WriteFailure
from loyalty.gateway import EntityStore

log = logging.getLogger(__name__)


@dataclass
class MigrationItem:
    name: str
    group_id: str
    old_id: str
    new_id: str


@dataclass
class MigrationResult:
    migrated_count: int = 0
    ratings_updated: int = 0
    migrated_items: list[MigrationItem] = field(default_factory=list)
    id_mapping: dict[str, str] = field(default_factory=dict)

    @property
    def message(self) -> str:
        return (
            f"Migrated {self.migrated_count} placeholder members to objects collection. "
            f"Updated {self.ratings_updated} ratings."
        )


def new_object_id() -> str:
    return str(uuid.uuid4())


def object_from_placeholder(
    placeholder: PlaceholderRecord, new_id: str, now: datetime | None = None,
) -> ObjectRecord:
    now = now or datetime.now(UTC)
    return ObjectRecord(
        id=new_id,
        group_id=placeholder.group_id,
        name=placeholder.name,
        description=placeholder.description,
        image_url=placeholder.image_url,
        object_type=placeholder.object_type,
        link_url=placeholder.link_url,
        category=placeholder.category,
        disabled_metric_ids=list(placeholder.disabled_metric_ids),
        enabled_metric_ids=list(placeholder.enabled_metric_ids),
        visible_in_graph=placeholder.visible_in_graph,
        rating_mode=placeholder.rating_mode,
        claimed_by_id=placeholder.claimed_by_id,
        claimed_by_name=placeholder.claimed_by_name,
        claimed_by_image_url=placeholder.claimed_by_image_url,
        claim_status=CLAIM_CLAIMED if placeholder.claimed_by_id else CLAIM_UNCLAIMED,
        created_at=placeholder.created_at or now,
        updated_at=now,
    )


def migrate_placeholders(
    store: EntityStore, *, id_factory: Callable[[], str] = new_object_id,
) -> MigrationResult:
    """Run the migration. Raises ``MigrationFailed`` on the first failed write.

    The exception's ``partial`` is the ``MigrationResult`` accumulated so far,
    including the identity mapping for every object already created.
    """
    result = MigrationResult()
    now = datetime.now(UTC)

    try:
        for placeholder in store.fetch_placeholders():
            new_id = id_factory()
            store.create_object(object_from_placeholder(placeholder, new_id, now))
            result.id_mapping[placeholder.id] = new_id
            result.migrated_items.append(MigrationItem(
                name=placeholder.name, group_id=placeholder.group_id,
                old_id=placeholder.id, new_id=new_id,
            ))
            result.migrated_count += 1

        for rating in store.fetch_ratings():
            target_id = resolve_target_id(rating)
            new_id = result.id_mapping.get(target_id) if target_id else None
            if new_id is None:
                continue
            store.patch_rating(rating.id, target_object_id=new_id, target_member_id=new_id)
            result.ratings_updated += 1
    except WriteFailure as exc:
        log.warning(
            "Migration aborted after %d objects and %d ratings: %s",
            result.migrated_count, result.ratings_updated, exc,
        )
        raise MigrationFailed(str(exc), partial=result) from exc

    log.info(result.message)
    return result


def preview_migration(store: EntityStore) -> dict:
    """Read-only: which placeholders a migration would convert, grouped by group id."""
    placeholders = store.fetch_placeholders()
    by_group: dict[str, dict] = {}
    for placeholder in placeholders:
        entry = by_group.setdefault(placeholder.group_id, {"count": 0, "items": []})
        entry["count"] += 1
        entry["items"].append(placeholder.name)
    return {
        "message": "Preview of migration - POST to this endpoint to execute",
        "totalPlaceholderMembers": len(placeholders),
        "byGroup": by_group,
    }
