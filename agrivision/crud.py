from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy.orm import Query, Session

from agrivision import models
from agrivision.geometry import (
    boundary_intersects,
    calculate_farm_area,
    ring_bounds,
    validate_bounds,
    validate_polygon,
)
from agrivision.schemas import dump_metadata
from agrivision.utils import to_aware_utc

# ---------- tiny, single-purpose helpers ----------

def _owned(db: Session, farm_id: str, user_id: str) -> Query:
    return db.query(models.Farm).filter(
        models.Farm.id == farm_id,
        models.Farm.user_id == user_id,
    )

def _set_bbox(farm: models.Farm, bbox: Optional[tuple]) -> None:
    farm.min_lng, farm.min_lat, farm.max_lng, farm.max_lat = bbox or (None, None, None, None)

def apply_boundary(farm: models.Farm, boundary: Optional[dict]) -> bool:
    """
    Store the boundary as given. Only a valid polygon gets an area and a bbox;
    anything else is kept but dropped from spatial search, and the previous
    total_area is left alone.
    Returns whether the boundary was valid.
    """
    farm.boundary = boundary
    if validate_polygon(boundary):
        farm.total_area = calculate_farm_area(boundary)
        _set_bbox(farm, ring_bounds(boundary))
        return True
    _set_bbox(farm, None)
    return False

def new_point(data, now: datetime) -> models.FarmPoint:
    return models.FarmPoint(
        id=data.id,
        name=data.name,
        type=data.type,
        coordinates=[float(data.coordinates[0]), float(data.coordinates[1])],
        meta=dump_metadata(data.metadata),
        created_at=now,
        updated_at=now,
    )

# ---------- farms ----------

def get_owned_farm(db: Session, farm_id: str, user_id: str) -> Optional[models.Farm]:
    return _owned(db, farm_id, user_id).first()

def farms_for_user(db: Session, user_id: str) -> list[models.Farm]:
    return (
        db.query(models.Farm)
        .filter(models.Farm.user_id == user_id)
        .order_by(models.Farm.updated_at.desc(), models.Farm.created_at.desc())
        .all()
    )

def farms_intersecting(
    db: Session,
    bounds: Sequence[float],
    *,
    user_id: Optional[str] = None,
) -> list[models.Farm]:
    """Bbox overlap on the indexed columns, then an exact polygon test per row."""
    min_lng, min_lat, max_lng, max_lat = validate_bounds(bounds)
    q = db.query(models.Farm).filter(
        models.Farm.min_lng.isnot(None),
        models.Farm.min_lng <= max_lng,
        models.Farm.max_lng >= min_lng,
        models.Farm.min_lat <= max_lat,
        models.Farm.max_lat >= min_lat,
    )
    if user_id is not None:
        q = q.filter(models.Farm.user_id == user_id)

    bbox = (min_lng, min_lat, max_lng, max_lat)
    return [f for f in q.order_by(models.Farm.name).all() if boundary_intersects(f.boundary, bbox)]

# ---------- satellite analyses ----------

def _analyses(db: Session, farm_id: str, user_id: str) -> Query:
    return db.query(models.SatelliteAnalysis).filter(
        models.SatelliteAnalysis.farm_id == farm_id,
        models.SatelliteAnalysis.user_id == user_id,
    )

def latest_analysis(
    db: Session, farm_id: str, user_id: str, layer_type: Optional[str] = None
) -> Optional[models.SatelliteAnalysis]:
    q = _analyses(db, farm_id, user_id)
    if layer_type:
        q = q.filter(models.SatelliteAnalysis.layer_type == layer_type)
    return q.order_by(
        models.SatelliteAnalysis.analysis_date.desc(),
        models.SatelliteAnalysis.created_at.desc(),
    ).first()

def analysis_history(db: Session, farm_id: str, user_id: str, limit: int) -> list[models.SatelliteAnalysis]:
    return (
        _analyses(db, farm_id, user_id)
        .order_by(
            models.SatelliteAnalysis.analysis_date.desc(),
            models.SatelliteAnalysis.created_at.desc(),
        )
        .limit(limit)
        .all()
    )

def analyses_between(
    db: Session,
    farm_id: str,
    user_id: str,
    layer_type: str,
    start,
    end,
) -> list[models.SatelliteAnalysis]:
    # inclusive window; comparison reads chronologically
    start, end = to_aware_utc(start), to_aware_utc(end)
    return (
        _analyses(db, farm_id, user_id)
        .filter(
            models.SatelliteAnalysis.layer_type == layer_type,
            models.SatelliteAnalysis.analysis_date >= start,
            models.SatelliteAnalysis.analysis_date <= end,
        )
        .order_by(
            models.SatelliteAnalysis.analysis_date.asc(),
            models.SatelliteAnalysis.created_at.asc(),
        )
        .all()
    )

# ---------- users ----------

def user_by_email(db: Session, email: str) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.email == email.strip().lower()).first()
