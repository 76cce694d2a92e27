from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class GroupObject(Base):
    __tablename__ = "objects"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    group_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    object_type: Mapped[str] = mapped_column(String(10), default="text")  # text | link | user
    link_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    disabled_metric_ids_json: Mapped[str] = mapped_column(Text, default="[]")
    enabled_metric_ids_json: Mapped[str] = mapped_column(Text, default="[]")
    visible_in_graph: Mapped[bool] = mapped_column(Boolean, default=True)
    rating_mode: Mapped[str] = mapped_column(String(10), default="group")  # captain | group
    claimed_by_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    claimed_by_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    claimed_by_image_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    claim_status: Mapped[str] = mapped_column(String(10), default="unclaimed")  # unclaimed | pending | claimed
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class Member(Base):
    """Group membership. Rows with status ``placeholder`` are legacy ratable entities."""

    __tablename__ = "members"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    group_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    email: Mapped[str] = mapped_column(String(300), default="")
    name: Mapped[str] = mapped_column(String(300), default="")
    role: Mapped[str] = mapped_column(String(20), default="member")  # captain | co-captain | member | follower
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)  # placeholder | pending | accepted | declined
    image_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    placeholder_image_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    # Legacy descriptive fields carried by placeholders
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    object_type: Mapped[str | None] = mapped_column(String(10), nullable=True)
    link_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    item_category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    disabled_metric_ids_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    enabled_metric_ids_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    visible_in_graph: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    rating_mode: Mapped[str | None] = mapped_column(String(10), nullable=True)
    claimed_by_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    claimed_by_image_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    invited_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime, server_default=func.now())


class Metric(Base):
    __tablename__ = "metrics"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    group_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    min_value: Mapped[float] = mapped_column(Float, default=0.0)
    max_value: Mapped[float] = mapped_column(Float, default=100.0)
    prefix: Mapped[str] = mapped_column(String(5), default="")
    suffix: Mapped[str] = mapped_column(String(20), default="")
    applicable_categories_json: Mapped[str] = mapped_column(Text, default="[]")


class Rating(Base):
    __tablename__ = "ratings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    group_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    metric_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rater_id: Mapped[str] = mapped_column(String(100), nullable=False)
    target_object_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    target_member_id: Mapped[str | None] = mapped_column(String(64), nullable=True)  # legacy alias
    value: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class ClaimRequest(Base):
    __tablename__ = "claim_requests"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    group_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    object_id: Mapped[str] = mapped_column(String(64), nullable=False)
    claimant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(10), default="pending")  # pending | approved | rejected
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    responded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
