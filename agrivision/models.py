# agrivision/models.py
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship, validates

from .db import Base
from .utils import to_aware_utc


def _new_id() -> str:
    return uuid.uuid4().hex


def _aware(v):
    # stored as UTC; SQLite drops the offset
    return None if v is None else to_aware_utc(v)


class Farm(Base):
    __tablename__ = "farms"
    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_farms_user_name"),
        Index("ix_farms_bbox", "min_lng", "min_lat", "max_lng", "max_lat"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)

    # GeoJSON Polygon, stored as given even when invalid
    boundary = Column(JSON, nullable=True)
    total_area = Column(Float, nullable=True)  # hectares

    # bbox of a valid boundary; NULL means not geospatially queryable
    min_lng = Column(Float, nullable=True)
    min_lat = Column(Float, nullable=True)
    max_lng = Column(Float, nullable=True)
    max_lat = Column(Float, nullable=True)

    crop_type = Column(String, nullable=True)
    planting_date = Column(DateTime(timezone=True), nullable=True)
    expected_harvest_date = Column(DateTime(timezone=True), nullable=True)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, index=True)

    points = relationship(
        "FarmPoint",
        back_populates="farm",
        cascade="all, delete-orphan",
        order_by="FarmPoint.pk",
    )

    @validates("planting_date", "expected_harvest_date", "created_at", "updated_at")
    def _tz(self, _, v):
        return _aware(v)


class FarmPoint(Base):
    __tablename__ = "farm_points"

    pk = Column(Integer, primary_key=True, autoincrement=True)
    farm_id = Column(String, ForeignKey("farms.id", ondelete="CASCADE"), nullable=False, index=True)

    # client-assigned, used for removal matching
    id = Column("point_id", String, nullable=False)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False)  # irrigation | sensor | landmark | problem_area
    coordinates = Column(JSON, nullable=False)  # [lng, lat]
    meta = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    farm = relationship("Farm", back_populates="points")

    @validates("created_at", "updated_at")
    def _tz(self, _, v):
        return _aware(v)


class SatelliteAnalysis(Base):
    __tablename__ = "satellite_analyses"
    __table_args__ = (
        Index("ix_analyses_farm_layer_date", "farm_id", "layer_type", "analysis_date"),
        Index("ix_analyses_user_date", "user_id", "analysis_date"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    farm_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    layer_type = Column(String, nullable=False)  # ndvi | moisture | temperature | rgb
    analysis_date = Column(DateTime(timezone=True), nullable=False)

    bounds = Column(JSON, nullable=False)  # [minLng, minLat, maxLng, maxLat]
    date_start = Column(DateTime(timezone=True), nullable=False)
    date_end = Column(DateTime(timezone=True), nullable=False)
    results = Column(JSON, nullable=False, default=dict)
    tile_url = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)

    @validates("analysis_date", "date_start", "date_end", "created_at")
    def _tz(self, _, v):
        return _aware(v)


class User(Base):
    """Preference-holding user of the farm monitor (not the marketplace user)."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_new_id)
    email = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    farm_ids = Column(JSON, nullable=False, default=list)

    default_layer = Column(String, nullable=False, default="ndvi")
    notifications = Column(Boolean, nullable=False, default=True)
    units = Column(String, nullable=False, default="metric")

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    @validates("email")
    def _normalize_email(self, _, v):
        return v.strip().lower()

    @validates("created_at", "updated_at")
    def _tz(self, _, v):
        return _aware(v)
