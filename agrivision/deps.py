from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from agrivision import models
from agrivision.config import Settings
from agrivision.db import get_db
from agrivision.errors import LookupStatus
from agrivision.services import FarmService, SatelliteAnalysisService, UserService


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_farm_service(request: Request) -> FarmService:
    return request.app.state.farm_service


def get_analysis_service(request: Request) -> SatelliteAnalysisService:
    return request.app.state.analysis_service


def get_user_service(request: Request) -> UserService:
    return request.app.state.user_service


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Session provider stand-in: the upstream auth layer forwards a stable user id."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_user_id.strip()


def get_owned_farm(
    farm_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    svc: FarmService = Depends(get_farm_service),
    settings: Settings = Depends(get_settings),
) -> models.Farm:
    lookup = svc.lookup_farm(db, farm_id, user_id)
    if lookup.found:
        return lookup.farm
    if lookup.status is LookupStatus.FORBIDDEN and settings.REVEAL_FORBIDDEN:
        raise HTTPException(403, "Farm belongs to another user")
    raise HTTPException(404, "Farm not found")


def get_self_user_id(user_id: str, caller: str = Depends(get_current_user_id)) -> str:
    """Path ``user_id`` guard: users may only act on their own record."""
    if user_id != caller:
        raise HTTPException(403, "Cannot act on another user")
    return user_id
