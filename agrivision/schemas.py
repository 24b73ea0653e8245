# agrivision/schemas.py
from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from agrivision.utils import as_utc

LayerType = Literal["ndvi", "moisture", "temperature", "rgb"]
PointType = Literal["irrigation", "sensor", "landmark", "problem_area"]

METADATA_SCHEMA_VERSION = 1


# ---------- metadata (versioned, closed key sets) ----------

class FarmMetadata(BaseModel):
    """Permitted farm metadata keys, version 1."""

    model_config = ConfigDict(extra="forbid")

    schema_version: Literal[1] = METADATA_SCHEMA_VERSION
    soil_type: Optional[str] = None
    irrigation_type: Optional[str] = None
    climate: Optional[str] = None


class PointMetadata(BaseModel):
    """Permitted farm point metadata keys, version 1."""

    model_config = ConfigDict(extra="forbid")

    schema_version: Literal[1] = METADATA_SCHEMA_VERSION
    description: Optional[str] = None
    install_date: Optional[datetime] = None
    status: Optional[Literal["active", "inactive", "maintenance"]] = None
    sensor_type: Optional[str] = None
    irrigation_capacity: Optional[float] = None


def dump_metadata(meta: Optional[BaseModel]) -> dict:
    if meta is None:
        return {}
    return meta.model_dump(mode="json", exclude_none=True)


class _UtcOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    @field_validator("*", mode="after")
    @classmethod
    def _utc(cls, v):
        return as_utc(v) if isinstance(v, datetime) else v


# ---------- farms ----------

class FarmPointIn(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    type: PointType
    coordinates: List[float] = Field(..., min_length=2, max_length=2)  # [lng, lat]
    metadata: PointMetadata = Field(default_factory=PointMetadata)


class FarmPointOut(_UtcOut):
    id: str
    name: str
    type: str
    coordinates: List[float]
    metadata: dict = Field(default_factory=dict, validation_alias=AliasChoices("meta", "metadata"))
    created_at: datetime
    updated_at: datetime


class FarmFields(BaseModel):
    """Farm creation body without the owner, which comes from auth."""

    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    # loose: an invalid polygon is stored, just without area
    boundary: Optional[dict] = None
    points: List[FarmPointIn] = Field(default_factory=list)
    crop_type: Optional[str] = None
    planting_date: Optional[datetime] = None
    expected_harvest_date: Optional[datetime] = None
    metadata: FarmMetadata = Field(default_factory=FarmMetadata)

    @field_validator("name", "description", "crop_type")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v


class FarmCreate(FarmFields):
    user_id: str


class FarmUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    boundary: Optional[dict] = None
    crop_type: Optional[str] = None
    planting_date: Optional[datetime] = None
    expected_harvest_date: Optional[datetime] = None
    metadata: Optional[FarmMetadata] = None


class FarmOut(_UtcOut):
    id: str
    user_id: str
    name: str
    description: Optional[str] = None
    boundary: Optional[Any] = None
    points: List[FarmPointOut] = Field(default_factory=list)
    total_area: Optional[float] = None
    crop_type: Optional[str] = None
    planting_date: Optional[datetime] = None
    expected_harvest_date: Optional[datetime] = None
    metadata: dict = Field(default_factory=dict, validation_alias=AliasChoices("meta", "metadata"))
    created_at: datetime
    updated_at: datetime


# ---------- satellite analyses ----------

class ZoneValues(BaseModel):
    mean: float
    stdDev: float
    min: float
    max: float


class ZoneAnalysis(BaseModel):
    pointId: str
    pointType: str
    values: ZoneValues


class AverageValues(BaseModel):
    ndvi: Optional[float] = None
    moisture: Optional[float] = None
    temperature: Optional[float] = None


class AnalysisResults(BaseModel):
    averageValues: Optional[AverageValues] = None
    zoneAnalysis: List[ZoneAnalysis] = Field(default_factory=list)
    insights: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class DateRange(BaseModel):
    start: datetime
    end: datetime


class AnalysisFields(BaseModel):
    layer_type: LayerType
    analysis_date: Optional[datetime] = None
    bounds: List[float] = Field(..., min_length=4, max_length=4)
    date_range: DateRange
    results: AnalysisResults = Field(default_factory=AnalysisResults)
    tile_url: Optional[str] = None


class AnalysisCreate(AnalysisFields):
    farm_id: str
    user_id: str


class AnalysisOut(_UtcOut):
    id: str
    farm_id: str
    user_id: str
    layer_type: str
    analysis_date: datetime
    bounds: List[float]
    date_start: datetime
    date_end: datetime
    results: dict
    tile_url: Optional[str] = None
    created_at: datetime


# ---------- users ----------

class Preferences(BaseModel):
    default_layer: LayerType = "ndvi"
    notifications: bool = True
    units: Literal["metric", "imperial"] = "metric"


class PreferencesUpdate(BaseModel):
    default_layer: Optional[LayerType] = None
    notifications: Optional[bool] = None
    units: Optional[Literal["metric", "imperial"]] = None


class UserCreate(BaseModel):
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+$")
    name: str = Field(..., min_length=1)
    preferences: Preferences = Field(default_factory=Preferences)


class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    preferences: Optional[PreferencesUpdate] = None


class UserOut(_UtcOut):
    id: str
    email: str
    name: str
    farm_ids: List[str]
    default_layer: str
    notifications: bool
    units: str
    created_at: datetime
    updated_at: datetime


# ---------- zones ----------

class ZoneMetrics(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    coordinates: List[List[float]] = Field(default_factory=list)
    ndvi: float
    ndwi: Optional[float] = None
    temperature: Optional[float] = None
    soil_moisture: Optional[float] = None
    stress_level: Literal["low", "medium", "high"]
    irrigation_status: Literal["adequate", "insufficient", "excessive"]
    crop_type: Optional[str] = None
