import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from agrivision import models, schemas
from agrivision.advisory import zone_advice
from agrivision.config import Settings, get_settings as load_settings
from agrivision.db import Database, check_database_health, get_db
from agrivision.deps import (
    get_analysis_service,
    get_current_user_id,
    get_farm_service,
    get_owned_farm,
    get_self_user_id,
    get_user_service,
)
from agrivision.errors import DuplicateEmail, DuplicateFarmName, DuplicateUser, OwnerRequired
from agrivision.services import Clock, FarmService, SatelliteAnalysisService, UserService

logger = logging.getLogger(__name__)


def create_app(
    database: Optional[Database] = None,
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(level=settings.LOG_LEVEL.upper())
        db = database or Database(settings.DATABASE_URL, pool_size=settings.DB_POOL_SIZE)
        db.create_all()
        app.state.database = db
        try:
            yield
        finally:
            # an injected pool belongs to the caller
            if database is None:
                db.dispose()

    app = FastAPI(title="AgriVision Farms API", lifespan=lifespan)
    app.state.settings = settings
    app.state.farm_service = FarmService(clock=clock, search_scope=settings.LOCATION_SEARCH_SCOPE)
    app.state.analysis_service = SatelliteAnalysisService(
        clock=clock, history_limit=settings.HISTORY_DEFAULT_LIMIT
    )
    app.state.user_service = UserService(clock=clock)

    @app.exception_handler(OperationalError)
    async def _store_unavailable(request: Request, exc: OperationalError):
        logger.error("Data store unavailable: %s", exc)
        return JSONResponse(status_code=503, content={"detail": "Data store unavailable"})

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    def health(request: Request):
        result = check_database_health(request.app.state.database)
        status = 200 if result["status"] == "healthy" else 503
        return JSONResponse(status_code=status, content=result)

    # ---------- farms ----------

    @app.get("/farms", response_model=List[schemas.FarmOut])
    def list_farms(
        db: Session = Depends(get_db),
        user_id: str = Depends(get_current_user_id),
        svc: FarmService = Depends(get_farm_service),
    ):
        return svc.get_farms_by_user(db, user_id)

    @app.post("/farms", response_model=schemas.FarmOut, status_code=201)
    def create_farm(
        body: schemas.FarmFields,
        db: Session = Depends(get_db),
        user_id: str = Depends(get_current_user_id),
        svc: FarmService = Depends(get_farm_service),
    ):
        data = schemas.FarmCreate(user_id=user_id, **body.model_dump())
        try:
            return svc.create_farm(db, data)
        except DuplicateFarmName as e:
            raise HTTPException(status_code=409, detail=str(e))

    @app.get("/farms/search", response_model=List[schemas.FarmOut])
    def search_farms(
        min_lng: float,
        min_lat: float,
        max_lng: float,
        max_lat: float,
        db: Session = Depends(get_db),
        user_id: str = Depends(get_current_user_id),
        svc: FarmService = Depends(get_farm_service),
    ):
        try:
            return svc.search_farms_by_location(db, [min_lng, min_lat, max_lng, max_lat], user_id=user_id)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except OwnerRequired as e:
            raise HTTPException(status_code=403, detail=str(e))

    @app.get("/farms/{farm_id}", response_model=schemas.FarmOut)
    def get_farm(farm: models.Farm = Depends(get_owned_farm)):
        return farm

    @app.patch("/farms/{farm_id}", response_model=schemas.FarmOut)
    def update_farm(
        updates: schemas.FarmUpdate,
        farm: models.Farm = Depends(get_owned_farm),
        db: Session = Depends(get_db),
        svc: FarmService = Depends(get_farm_service),
    ):
        try:
            obj = svc.update_farm(db, farm.id, farm.user_id, updates)
        except DuplicateFarmName as e:
            raise HTTPException(status_code=409, detail=str(e))
        if obj is None:
            raise HTTPException(404, "Farm not found")
        return obj

    @app.delete("/farms/{farm_id}", status_code=204)
    def delete_farm(
        farm: models.Farm = Depends(get_owned_farm),
        db: Session = Depends(get_db),
        svc: FarmService = Depends(get_farm_service),
    ):
        if not svc.delete_farm(db, farm.id, farm.user_id):
            raise HTTPException(404, "Farm not found")
        return Response(status_code=204)

    @app.post("/farms/{farm_id}/points", response_model=schemas.FarmOut, status_code=201)
    def add_point(
        point: schemas.FarmPointIn,
        farm: models.Farm = Depends(get_owned_farm),
        db: Session = Depends(get_db),
        svc: FarmService = Depends(get_farm_service),
    ):
        return svc.add_point_to_farm(db, farm.id, farm.user_id, point)

    @app.delete("/farms/{farm_id}/points/{point_id}", response_model=schemas.FarmOut)
    def remove_point(
        point_id: str,
        farm: models.Farm = Depends(get_owned_farm),
        db: Session = Depends(get_db),
        svc: FarmService = Depends(get_farm_service),
    ):
        return svc.remove_point_from_farm(db, farm.id, farm.user_id, point_id)

    # ---------- satellite analyses ----------

    @app.post("/farms/{farm_id}/analyses", response_model=schemas.AnalysisOut, status_code=201)
    def save_analysis(
        body: schemas.AnalysisFields,
        farm: models.Farm = Depends(get_owned_farm),
        db: Session = Depends(get_db),
        svc: SatelliteAnalysisService = Depends(get_analysis_service),
    ):
        data = schemas.AnalysisCreate(farm_id=farm.id, user_id=farm.user_id, **body.model_dump())
        return svc.save_analysis(db, data)

    @app.get("/farms/{farm_id}/analyses", response_model=List[schemas.AnalysisOut])
    def analysis_history(
        limit: Optional[int] = Query(None, ge=0, le=100),
        farm: models.Farm = Depends(get_owned_farm),
        db: Session = Depends(get_db),
        svc: SatelliteAnalysisService = Depends(get_analysis_service),
    ):
        return svc.get_analysis_history(db, farm.id, farm.user_id, limit)

    @app.get("/farms/{farm_id}/analyses/latest", response_model=schemas.AnalysisOut)
    def latest_analysis(
        layer_type: Optional[schemas.LayerType] = None,
        farm: models.Farm = Depends(get_owned_farm),
        db: Session = Depends(get_db),
        svc: SatelliteAnalysisService = Depends(get_analysis_service),
    ):
        obj = svc.get_latest_analysis(db, farm.id, farm.user_id, layer_type)
        if obj is None:
            raise HTTPException(404, "No analysis found")
        return obj

    @app.get("/farms/{farm_id}/analyses/compare", response_model=List[schemas.AnalysisOut])
    def compare_analyses(
        layer_type: schemas.LayerType,
        start: datetime,
        end: datetime,
        farm: models.Farm = Depends(get_owned_farm),
        db: Session = Depends(get_db),
        svc: SatelliteAnalysisService = Depends(get_analysis_service),
    ):
        return svc.compare_analyses(db, farm.id, farm.user_id, layer_type, start, end)

    # ---------- users ----------
    # the user record id is the caller's auth id, so every route is self-only

    @app.post("/users", response_model=schemas.UserOut, status_code=201)
    def create_user(
        body: schemas.UserCreate,
        db: Session = Depends(get_db),
        caller: str = Depends(get_current_user_id),
        svc: UserService = Depends(get_user_service),
    ):
        try:
            return svc.create_user(db, body, user_id=caller)
        except (DuplicateEmail, DuplicateUser) as e:
            raise HTTPException(status_code=409, detail=str(e))

    @app.get("/users/by-email", response_model=schemas.UserOut)
    def user_by_email(
        email: str,
        db: Session = Depends(get_db),
        caller: str = Depends(get_current_user_id),
        svc: UserService = Depends(get_user_service),
    ):
        obj = svc.get_user_by_email(db, email)
        # other users' emails stay unconfirmed
        if obj is None or obj.id != caller:
            raise HTTPException(404, "User not found")
        return obj

    @app.get("/users/{user_id}", response_model=schemas.UserOut)
    def get_user(
        user_id: str = Depends(get_self_user_id),
        db: Session = Depends(get_db),
        svc: UserService = Depends(get_user_service),
    ):
        obj = svc.get_user(db, user_id)
        if obj is None:
            raise HTTPException(404, "User not found")
        return obj

    @app.patch("/users/{user_id}", response_model=schemas.UserOut)
    def update_user(
        updates: schemas.UserUpdate,
        user_id: str = Depends(get_self_user_id),
        db: Session = Depends(get_db),
        svc: UserService = Depends(get_user_service),
    ):
        obj = svc.update_user(db, user_id, updates)
        if obj is None:
            raise HTTPException(404, "User not found")
        return obj

    @app.post("/users/{user_id}/farms/{farm_id}", response_model=schemas.UserOut)
    def add_farm_to_user(
        farm_id: str,
        user_id: str = Depends(get_self_user_id),
        db: Session = Depends(get_db),
        svc: UserService = Depends(get_user_service),
        farms: FarmService = Depends(get_farm_service),
    ):
        if farms.get_farm_by_id(db, farm_id, user_id) is None:
            raise HTTPException(404, "Farm not found")
        obj = svc.add_farm_to_user(db, user_id, farm_id)
        if obj is None:
            raise HTTPException(404, "User not found")
        return obj

    # ---------- zones ----------

    @app.post("/zones/advice")
    def advice(zone: schemas.ZoneMetrics):
        return {"advice": zone_advice(zone)}


app = create_app()
