# agrivision/services.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agrivision import crud, models, schemas
from agrivision.errors import (
    DuplicateEmail,
    DuplicateFarmName,
    DuplicateUser,
    FarmLookup,
    LookupStatus,
    OwnerRequired,
)
from agrivision.utils import utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_FARM_SCALARS = ("name", "description", "crop_type", "planting_date", "expected_harvest_date")


class FarmService:
    """Owner-scoped farm CRUD plus the (policy-scoped) location search."""

    def __init__(self, *, clock: Clock | None = None, search_scope: str = "public"):
        # DI
        self._clock = clock or utcnow
        if search_scope not in ("public", "owner"):
            raise ValueError(f"Unknown location search scope: {search_scope!r}")
        self.search_scope = search_scope

    def _commit_farm(self, db: Session, farm: models.Farm) -> models.Farm:
        user_id, name = farm.user_id, farm.name
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.warning("Duplicate farm name %r for user %s", name, user_id)
            raise DuplicateFarmName(user_id, name)
        db.refresh(farm)
        return farm

    def create_farm(self, db: Session, data: schemas.FarmCreate) -> models.Farm:
        now = self._clock()
        farm = models.Farm(
            user_id=data.user_id,
            name=data.name,
            description=data.description,
            crop_type=data.crop_type,
            planting_date=data.planting_date,
            expected_harvest_date=data.expected_harvest_date,
            meta=schemas.dump_metadata(data.metadata),
            created_at=now,
            updated_at=now,
        )
        if data.boundary is not None and not crud.apply_boundary(farm, data.boundary):
            logger.info("Farm %r stored without area: boundary is not a closed polygon", data.name)
        farm.points = [crud.new_point(p, now) for p in data.points]

        db.add(farm)
        self._commit_farm(db, farm)
        logger.info("Created farm %s for user %s", farm.id, farm.user_id)
        return farm

    def get_farms_by_user(self, db: Session, user_id: str) -> list[models.Farm]:
        return crud.farms_for_user(db, user_id)

    def get_farm_by_id(self, db: Session, farm_id: str, user_id: str) -> Optional[models.Farm]:
        return crud.get_owned_farm(db, farm_id, user_id)

    def lookup_farm(self, db: Session, farm_id: str, user_id: str) -> FarmLookup:
        farm = db.get(models.Farm, farm_id)
        if farm is None:
            return FarmLookup(LookupStatus.NOT_FOUND)
        if farm.user_id != user_id:
            return FarmLookup(LookupStatus.FORBIDDEN)
        return FarmLookup(LookupStatus.FOUND, farm)

    def update_farm(
        self, db: Session, farm_id: str, user_id: str, updates: schemas.FarmUpdate
    ) -> Optional[models.Farm]:
        farm = crud.get_owned_farm(db, farm_id, user_id)
        if farm is None:
            return None

        given = updates.model_fields_set
        for key in _FARM_SCALARS:
            if key not in given:
                continue
            value = getattr(updates, key)
            if key == "name" and value is None:
                continue
            setattr(farm, key, value.strip() if isinstance(value, str) else value)

        if "metadata" in given:
            farm.meta = schemas.dump_metadata(updates.metadata)
        if "boundary" in given:
            crud.apply_boundary(farm, updates.boundary)

        farm.updated_at = self._clock()
        return self._commit_farm(db, farm)

    def delete_farm(self, db: Session, farm_id: str, user_id: str) -> bool:
        farm = crud.get_owned_farm(db, farm_id, user_id)
        if farm is None:
            return False
        db.delete(farm)
        db.commit()
        logger.info("Deleted farm %s for user %s", farm_id, user_id)
        return True

    def add_point_to_farm(
        self, db: Session, farm_id: str, user_id: str, point: schemas.FarmPointIn
    ) -> Optional[models.Farm]:
        farm = crud.get_owned_farm(db, farm_id, user_id)
        if farm is None:
            return None
        now = self._clock()
        farm.points.append(crud.new_point(point, now))
        farm.updated_at = now
        db.commit()
        db.refresh(farm)
        return farm

    def remove_point_from_farm(
        self, db: Session, farm_id: str, user_id: str, point_id: str
    ) -> Optional[models.Farm]:
        farm = crud.get_owned_farm(db, farm_id, user_id)
        if farm is None:
            return None
        # match on the client id only, never on coordinates
        farm.points = [p for p in farm.points if p.id != point_id]
        farm.updated_at = self._clock()
        db.commit()
        db.refresh(farm)
        return farm

    def search_farms_by_location(
        self, db: Session, bounds: Sequence[float], user_id: Optional[str] = None
    ) -> list[models.Farm]:
        if self.search_scope == "owner":
            if not user_id:
                logger.warning("Location search refused: owner scope and no user")
                raise OwnerRequired("Location search is limited to the caller's farms")
            return crud.farms_intersecting(db, bounds, user_id=user_id)
        return crud.farms_intersecting(db, bounds)


class SatelliteAnalysisService:
    """Append-only store of satellite analysis snapshots."""

    def __init__(self, *, clock: Clock | None = None, history_limit: int = 10):
        self._clock = clock or utcnow
        self.history_limit = history_limit

    def save_analysis(self, db: Session, data: schemas.AnalysisCreate) -> models.SatelliteAnalysis:
        now = self._clock()
        obj = models.SatelliteAnalysis(
            farm_id=data.farm_id,
            user_id=data.user_id,
            layer_type=data.layer_type,
            analysis_date=data.analysis_date or now,
            bounds=[float(v) for v in data.bounds],
            date_start=data.date_range.start,
            date_end=data.date_range.end,
            results=data.results.model_dump(mode="json", exclude_none=True),
            tile_url=data.tile_url,
            created_at=now,
        )
        db.add(obj)
        db.commit()
        db.refresh(obj)
        logger.info("Saved %s analysis %s for farm %s", obj.layer_type, obj.id, obj.farm_id)
        return obj

    def get_latest_analysis(
        self, db: Session, farm_id: str, user_id: str, layer_type: Optional[str] = None
    ) -> Optional[models.SatelliteAnalysis]:
        return crud.latest_analysis(db, farm_id, user_id, layer_type)

    def get_analysis_history(
        self, db: Session, farm_id: str, user_id: str, limit: Optional[int] = None
    ) -> list[models.SatelliteAnalysis]:
        if limit is None:
            limit = self.history_limit
        if limit < 0:
            raise ValueError(f"History limit must not be negative, got {limit}")
        return crud.analysis_history(db, farm_id, user_id, limit)

    def compare_analyses(
        self,
        db: Session,
        farm_id: str,
        user_id: str,
        layer_type: str,
        start,
        end,
    ) -> list[models.SatelliteAnalysis]:
        if start is None or end is None:
            raise ValueError("Both start and end are required to compare analyses")
        return crud.analyses_between(db, farm_id, user_id, layer_type, start, end)


class UserService:
    def __init__(self, *, clock: Clock | None = None):
        self._clock = clock or utcnow

    def create_user(
        self, db: Session, data: schemas.UserCreate, user_id: Optional[str] = None
    ) -> models.User:
        """Register a user; `user_id` pins the id to the caller's auth identity."""
        if user_id is not None and db.get(models.User, user_id) is not None:
            raise DuplicateUser(user_id)
        now = self._clock()
        prefs = data.preferences
        user = models.User(
            email=data.email,
            name=data.name.strip(),
            farm_ids=[],
            default_layer=prefs.default_layer,
            notifications=prefs.notifications,
            units=prefs.units,
            created_at=now,
            updated_at=now,
        )
        if user_id is not None:
            user.id = user_id
        db.add(user)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.warning("Email already registered: %s", data.email)
            raise DuplicateEmail(data.email.strip().lower())
        db.refresh(user)
        return user

    def get_user(self, db: Session, user_id: str) -> Optional[models.User]:
        return db.get(models.User, user_id)

    def get_user_by_email(self, db: Session, email: str) -> Optional[models.User]:
        return crud.user_by_email(db, email)

    def update_user(self, db: Session, user_id: str, updates: schemas.UserUpdate) -> Optional[models.User]:
        user = db.get(models.User, user_id)
        if user is None:
            return None
        if updates.name is not None:
            user.name = updates.name.strip()
        if updates.preferences is not None:
            for key, value in updates.preferences.model_dump(exclude_none=True).items():
                setattr(user, key, value)
        user.updated_at = self._clock()
        db.commit()
        db.refresh(user)
        return user

    def add_farm_to_user(self, db: Session, user_id: str, farm_id: str) -> Optional[models.User]:
        user = db.get(models.User, user_id)
        if user is None:
            return None
        if farm_id not in user.farm_ids:
            # reassign so the JSON column is flagged dirty
            user.farm_ids = [*user.farm_ids, farm_id]
            user.updated_at = self._clock()
            db.commit()
            db.refresh(user)
        return user
