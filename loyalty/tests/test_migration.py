"""Tests for the placeholder -> object migration."""
from __future__ import annotations

import itertools
import json
from datetime import datetime
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from loyalty.entities import PlaceholderRecord
from loyalty.errors import MigrationFailed, WriteFailure
from loyalty.gateway import SqlEntityStore, decode_placeholder
from loyalty.migration import migrate_placeholders, object_from_placeholder, preview_migration
from loyalty.models import Base, GroupObject, Member, Rating


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def legacy_data(session: Session) -> Session:
    session.add_all([
        Member(id="p1", group_id="nba", name="LeBron", status="placeholder",
               placeholder_image_url="https://img/lebron.png", image_url="https://img/generic.png",
               item_category="Player"),
        Member(id="p2", group_id="nba", name="Lakers", status="placeholder",
               category="Team", user_id="user_42", claimed_by_name="Lakers FC"),
        Member(id="p3", group_id="movies", name="Heat", status="placeholder"),
        Member(id="m1", group_id="nba", name="Captain", status="accepted", user_id="cap"),
        Rating(id="r1", group_id="nba", metric_id="scoring", rater_id="u1",
               target_member_id="p1", value=90),
        Rating(id="r2", group_id="nba", metric_id="scoring", rater_id="u2",
               target_object_id="p1", target_member_id="p1", value=80),
        Rating(id="r3", group_id="nba", metric_id="chem", rater_id="u1",
               target_member_id="p2", value=60),
        Rating(id="r4", group_id="nba", metric_id="chem", rater_id="u1",
               target_object_id="ghost", value=10),
    ])
    session.commit()
    return session


def _ids():
    counter = itertools.count(1)
    return lambda: f"new-{next(counter)}"


# ---------------------------------------------------------------------------
# Field fallbacks
# ---------------------------------------------------------------------------


class TestPlaceholderFallbacks:
    def test_image_prefers_placeholder_image(self):
        row = Member(id="p", group_id="g", name="n", status="placeholder",
                     placeholder_image_url="ph.png", image_url="generic.png")
        assert decode_placeholder(row).image_url == "ph.png"

    def test_image_falls_back_to_generic_then_none(self):
        row = Member(id="p", group_id="g", name="n", status="placeholder", image_url="generic.png")
        assert decode_placeholder(row).image_url == "generic.png"
        bare = Member(id="p", group_id="g", name="n", status="placeholder")
        assert decode_placeholder(bare).image_url is None

    def test_category_fallbacks(self):
        both = Member(id="p", group_id="g", name="n", category="Team", item_category="Player")
        assert decode_placeholder(both).category == "Team"
        legacy = Member(id="p", group_id="g", name="n", item_category="Player")
        assert decode_placeholder(legacy).category == "Player"
        assert decode_placeholder(Member(id="p", group_id="g", name="n")).category is None

    def test_defaults(self):
        record = decode_placeholder(Member(id="p", group_id="g", name="n", status="placeholder"))
        assert record.object_type == "text"
        assert record.rating_mode == "group"
        assert record.visible_in_graph is True
        assert record.disabled_metric_ids == []
        assert record.claimed_by_id is None

    def test_explicit_hidden_is_kept(self):
        row = Member(id="p", group_id="g", name="n", visible_in_graph=False)
        assert decode_placeholder(row).visible_in_graph is False

    def test_created_at_prefers_invited_at(self):
        invited = datetime(2024, 1, 1)
        row = Member(id="p", group_id="g", name="n", invited_at=invited, created_at=datetime(2025, 1, 1))
        assert decode_placeholder(row).created_at == invited

    def test_metric_overrides_decoded(self):
        row = Member(id="p", group_id="g", name="n",
                     disabled_metric_ids_json=json.dumps(["a"]), enabled_metric_ids_json="not json")
        record = decode_placeholder(row)
        assert record.disabled_metric_ids == ["a"]
        assert record.enabled_metric_ids == []


class TestObjectFromPlaceholder:
    def test_claim_status_claimed_when_identity_attached(self):
        ph = PlaceholderRecord(id="p", group_id="g", name="n", claimed_by_id="user_1")
        obj = object_from_placeholder(ph, "new")
        assert obj.claim_status == "claimed"
        assert obj.claimed_by_id == "user_1"

    def test_claim_status_unclaimed_otherwise(self):
        obj = object_from_placeholder(PlaceholderRecord(id="p", group_id="g", name="n"), "new")
        assert obj.claim_status == "unclaimed"

    def test_identity_is_new(self):
        obj = object_from_placeholder(PlaceholderRecord(id="p", group_id="g", name="n"), "new")
        assert obj.id == "new"
        assert obj.group_id == "g"
        assert obj.name == "n"


# ---------------------------------------------------------------------------
# migrate_placeholders
# ---------------------------------------------------------------------------


class TestMigrate:
    def test_one_object_per_placeholder(self, legacy_data: Session):
        result = migrate_placeholders(SqlEntityStore(legacy_data), id_factory=_ids())
        assert result.migrated_count == 3
        assert set(result.id_mapping) == {"p1", "p2", "p3"}
        assert len(set(result.id_mapping.values())) == 3
        objects = legacy_data.execute(select(GroupObject)).scalars().all()
        assert sorted(o.id for o in objects) == sorted(result.id_mapping.values())

    def test_copied_fields(self, legacy_data: Session):
        result = migrate_placeholders(SqlEntityStore(legacy_data), id_factory=_ids())
        lebron = legacy_data.get(GroupObject, result.id_mapping["p1"])
        assert lebron.name == "LeBron"
        assert lebron.group_id == "nba"
        assert lebron.image_url == "https://img/lebron.png"
        assert lebron.category == "Player"
        assert lebron.claim_status == "unclaimed"
        lakers = legacy_data.get(GroupObject, result.id_mapping["p2"])
        assert lakers.claim_status == "claimed"
        assert lakers.claimed_by_id == "user_42"
        assert lakers.claimed_by_name == "Lakers FC"
        assert lakers.category == "Team"

    def test_ratings_rewritten_on_both_fields(self, legacy_data: Session):
        result = migrate_placeholders(SqlEntityStore(legacy_data), id_factory=_ids())
        assert result.ratings_updated == 3
        for rid, old in (("r1", "p1"), ("r2", "p1"), ("r3", "p2")):
            rating = legacy_data.get(Rating, rid)
            assert rating.target_object_id == result.id_mapping[old]
            assert rating.target_member_id == result.id_mapping[old]

    def test_unrelated_ratings_untouched(self, legacy_data: Session):
        migrate_placeholders(SqlEntityStore(legacy_data), id_factory=_ids())
        ghost = legacy_data.get(Rating, "r4")
        assert ghost.target_object_id == "ghost"
        assert ghost.target_member_id is None

    def test_migrated_items(self, legacy_data: Session):
        result = migrate_placeholders(SqlEntityStore(legacy_data), id_factory=_ids())
        item = next(i for i in result.migrated_items if i.old_id == "p3")
        assert item.name == "Heat"
        assert item.group_id == "movies"
        assert item.new_id == result.id_mapping["p3"]
        assert "Migrated 3 placeholder members" in result.message

    def test_rerun_creates_duplicates(self, legacy_data: Session):
        store = SqlEntityStore(legacy_data)
        migrate_placeholders(store)
        second = migrate_placeholders(store)
        assert second.migrated_count == 3
        # Ratings already point at the first run's objects, so none are rewritten
        assert second.ratings_updated == 0
        assert len(legacy_data.execute(select(GroupObject)).scalars().all()) == 6

    def test_no_placeholders(self, session: Session):
        result = migrate_placeholders(SqlEntityStore(session))
        assert result.migrated_count == 0
        assert result.ratings_updated == 0
        assert result.id_mapping == {}


class TestMigrateFailure:
    def test_object_write_failure_aborts(self, legacy_data: Session):
        store = SqlEntityStore(legacy_data)
        original = store.create_object
        calls = {"n": 0}

        def flaky(record):
            calls["n"] += 1
            if calls["n"] == 2:
                raise WriteFailure("boom", record.id)
            original(record)

        with patch.object(store, "create_object", side_effect=flaky):
            with pytest.raises(MigrationFailed) as exc_info:
                migrate_placeholders(store, id_factory=_ids())

        partial = exc_info.value.partial
        assert partial.migrated_count == 1
        assert len(partial.id_mapping) == 1
        assert partial.ratings_updated == 0
        # The object written before the failure stays (no rollback)
        assert len(legacy_data.execute(select(GroupObject)).scalars().all()) == 1

    def test_rating_write_failure_keeps_partial_counts(self, legacy_data: Session):
        store = SqlEntityStore(legacy_data)
        original = store.patch_rating
        calls = {"n": 0}

        def flaky(rating_id, **fields):
            calls["n"] += 1
            if calls["n"] == 2:
                raise WriteFailure("rating write failed", rating_id)
            original(rating_id, **fields)

        with patch.object(store, "patch_rating", side_effect=flaky):
            with pytest.raises(MigrationFailed) as exc_info:
                migrate_placeholders(store, id_factory=_ids())

        partial = exc_info.value.partial
        assert partial.migrated_count == 3
        assert partial.ratings_updated == 1
        assert "rating write failed" in str(exc_info.value)


# ---------------------------------------------------------------------------
# preview
# ---------------------------------------------------------------------------


class TestPreview:
    def test_grouped_by_group(self, legacy_data: Session):
        preview = preview_migration(SqlEntityStore(legacy_data))
        assert preview["totalPlaceholderMembers"] == 3
        assert preview["byGroup"]["nba"] == {"count": 2, "items": ["LeBron", "Lakers"]}
        assert preview["byGroup"]["movies"] == {"count": 1, "items": ["Heat"]}

    def test_read_only(self, legacy_data: Session):
        preview_migration(SqlEntityStore(legacy_data))
        assert legacy_data.execute(select(GroupObject)).scalars().all() == []
