"""Tests for name-based rating repair."""
from __future__ import annotations

from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from loyalty import services
from loyalty.entities import ObjectRecord
from loyalty.errors import MaintenanceBusy, RepairFailed, WriteFailure
from loyalty.gateway import SqlEntityStore
from loyalty.models import Base, GroupObject, Member, Rating
from loyalty.repair import NOT_FOUND_REASON, build_object_index, repair_ratings


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
def lebron_group(session: Session) -> Session:
    session.add_all([
        GroupObject(id="o1", group_id="g", name="  LeBron "),
        GroupObject(id="o2", group_id="g2", name="Curry"),
        Member(id="p1", group_id="g", name="lebron", status="placeholder"),
        Member(id="p2", group_id="g", name="Kobe", status="placeholder"),
        Member(id="p3", group_id="g", name="Curry", status="placeholder"),
        Rating(id="r-valid", group_id="g", metric_id="scoring", rater_id="u1",
               target_object_id="o1", value=80),
        Rating(id="r-placeholder", group_id="g", metric_id="scoring", rater_id="u2",
               target_member_id="p1", value=70),
        Rating(id="r-ghost", group_id="g", metric_id="scoring", rater_id="u3",
               target_object_id="ghost-1", value=10),
        Rating(id="r-kobe", group_id="g", metric_id="scoring", rater_id="u3",
               target_member_id="p2", value=50),
        Rating(id="r-curry", group_id="g", metric_id="scoring", rater_id="u3",
               target_member_id="p3", value=40),
    ])
    session.commit()
    return session


def _by_id(items):
    return {i.rating_id: i for i in items}


class TestObjectIndex:
    def test_normalized_keys(self):
        index = build_object_index([ObjectRecord(id="o1", group_id="g", name="  LeBron ")])
        assert index.by_id["o1"] == ("g", "lebron")
        assert index.lookup("g", "LEBRON") == "o1"
        assert index.lookup("other", "lebron") is None

    def test_last_duplicate_wins(self):
        index = build_object_index([
            ObjectRecord(id="first", group_id="g", name="Heat"),
            ObjectRecord(id="second", group_id="g", name="heat"),
        ])
        assert index.lookup("g", "Heat") == "second"
        assert set(index.by_id) == {"first", "second"}


class TestRepair:
    def test_placeholder_rating_is_fixed(self, lebron_group: Session):
        result = repair_ratings(SqlEntityStore(lebron_group))
        fix = _by_id(result.fixes)["r-placeholder"]
        assert fix.old_target_id == "p1"
        assert fix.new_target_id == "o1"
        assert fix.matched_by_name == "lebron"
        assert result.fixed_count == 1

    def test_only_object_field_rewritten(self, lebron_group: Session):
        repair_ratings(SqlEntityStore(lebron_group))
        rating = lebron_group.get(Rating, "r-placeholder")
        assert rating.target_object_id == "o1"
        assert rating.target_member_id == "p1"

    def test_valid_rating_untouched(self, lebron_group: Session):
        result = repair_ratings(SqlEntityStore(lebron_group))
        assert "r-valid" not in _by_id(result.fixes)
        assert "r-valid" not in _by_id(result.unfixable)

    def test_unknown_target(self, lebron_group: Session):
        result = repair_ratings(SqlEntityStore(lebron_group))
        ghost = _by_id(result.unfixable)["r-ghost"]
        assert ghost.target_id == "ghost-1"
        assert ghost.reason == NOT_FOUND_REASON

    def test_placeholder_without_match(self, lebron_group: Session):
        result = repair_ratings(SqlEntityStore(lebron_group))
        kobe = _by_id(result.unfixable)["r-kobe"]
        assert kobe.reason == 'No matching object found for placeholder "Kobe" in group g'

    def test_match_is_scoped_to_rating_group(self, lebron_group: Session):
        # "Curry" exists only in g2, so the g rating cannot borrow it
        result = repair_ratings(SqlEntityStore(lebron_group))
        assert "r-curry" in _by_id(result.unfixable)
        assert lebron_group.get(Rating, "r-curry").target_object_id is None

    def test_counts_and_message(self, lebron_group: Session):
        result = repair_ratings(SqlEntityStore(lebron_group))
        assert result.unfixable_count == 3
        assert result.message == "Fixed 1 ratings. 3 ratings could not be automatically fixed."

    def test_rerun_fixes_nothing_new(self, lebron_group: Session):
        store = SqlEntityStore(lebron_group)
        repair_ratings(store)
        second = repair_ratings(store)
        assert second.fixed_count == 0
        assert sorted(_by_id(second.unfixable)) == ["r-curry", "r-ghost", "r-kobe"]

    def test_rating_without_target(self, session: Session):
        session.add(Rating(id="r", group_id="g", metric_id="m", rater_id="u", value=1))
        session.commit()
        result = repair_ratings(SqlEntityStore(session))
        assert result.unfixable[0].target_id is None
        assert result.unfixable[0].reason == NOT_FOUND_REASON

    def test_write_failure_raises_with_partial(self, lebron_group: Session):
        store = SqlEntityStore(lebron_group)
        with patch.object(store, "patch_rating", side_effect=WriteFailure("disk full", "r-placeholder")):
            with pytest.raises(RepairFailed) as exc_info:
                repair_ratings(store)
        assert exc_info.value.partial.fixed_count == 0
        assert exc_info.value.label == "Fix failed"


class TestRunRepair:
    def test_payload(self, lebron_group: Session):
        payload = services.run_repair(SqlEntityStore(lebron_group))
        assert payload["success"] is True
        assert payload["fixedCount"] == 1
        assert payload["unfixableCount"] == 3
        assert payload["fixes"] == [{
            "ratingId": "r-placeholder", "oldTargetId": "p1",
            "newTargetId": "o1", "matchedByName": "lebron",
        }]

    def test_samples_are_bounded(self, lebron_group: Session):
        result = repair_ratings(SqlEntityStore(lebron_group))
        payload = services.repair_payload(result, limit=1)
        assert len(payload["unfixable"]) == 1
        assert payload["unfixableCount"] == 3

    def test_busy_when_lock_taken(self, lebron_group: Session):
        with services.maintenance_slot("migration"):
            with pytest.raises(MaintenanceBusy):
                services.run_repair(SqlEntityStore(lebron_group))
        assert lebron_group.get(Rating, "r-placeholder").target_object_id is None
