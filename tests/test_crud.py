from datetime import datetime, timedelta, timezone

import pytest

from agrivision import models, schemas
from agrivision.db import Database
from agrivision.errors import DuplicateEmail, DuplicateFarmName, DuplicateUser, LookupStatus, OwnerRequired
from agrivision.services import FarmService, SatelliteAnalysisService, UserService

UTC = timezone.utc

SQUARE = {"type": "Polygon", "coordinates": [[[0, 0], [0, 0.001], [0.001, 0.001], [0.001, 0], [0, 0]]]}
OPEN_TRIANGLE = {"type": "Polygon", "coordinates": [[[0, 0], [0, 1], [1, 1]]]}


class ClockStub:
    """Mutable clock so tests can control created/updated timestamps."""

    def __init__(self, initial: datetime | None = None):
        self._now = initial or datetime(2025, 1, 1, tzinfo=UTC)

    def advance(self, **delta_kwargs) -> None:
        self._now += timedelta(**delta_kwargs)

    def __call__(self) -> datetime:
        return self._now


def same_moment(a: datetime, b: datetime) -> bool:
    """Compare datetimes ignoring tz-awareness differences."""
    if a.tzinfo is None:
        a = a.replace(tzinfo=UTC)
    if b.tzinfo is None:
        b = b.replace(tzinfo=UTC)
    return a == b


def square_at(lng: float, lat: float, size: float = 0.01) -> dict:
    return {
        "type": "Polygon",
        "coordinates": [[
            [lng, lat], [lng + size, lat], [lng + size, lat + size], [lng, lat + size], [lng, lat],
        ]],
    }


def mk_farm(
    *,
    user_id: str = "u1",
    name: str = "North Field",
    boundary: dict | None = SQUARE,
    points: list | None = None,
    **extra,
) -> schemas.FarmCreate:
    return schemas.FarmCreate(user_id=user_id, name=name, boundary=boundary, points=points or [], **extra)


def mk_point(point_id: str = "p1", coords=(0.0005, 0.0005), **extra) -> schemas.FarmPointIn:
    return schemas.FarmPointIn(
        id=point_id,
        name=extra.pop("name", f"Point {point_id}"),
        type=extra.pop("type", "sensor"),
        coordinates=list(coords),
        **extra,
    )


def mk_analysis(
    *,
    farm_id: str,
    user_id: str = "u1",
    layer_type: str = "ndvi",
    analysis_date: datetime,
    mean: float = 0.5,
) -> schemas.AnalysisCreate:
    return schemas.AnalysisCreate(
        farm_id=farm_id,
        user_id=user_id,
        layer_type=layer_type,
        analysis_date=analysis_date,
        bounds=[0, 0, 0.001, 0.001],
        date_range={"start": analysis_date - timedelta(days=30), "end": analysis_date},
        results={
            "averageValues": {"ndvi": mean},
            "zoneAnalysis": [
                {"pointId": "p1", "pointType": "sensor",
                 "values": {"mean": mean, "stdDev": 0.1, "min": 0.1, "max": 0.9}},
            ],
            "insights": ["Canopy is uniform"],
        },
    )


@pytest.fixture(scope="function")
def db_session():
    """Fresh in-memory SQLite session per test."""
    database = Database("sqlite:///:memory:")
    database.create_all()
    with database.session() as db:
        yield db
    database.dispose()


@pytest.fixture
def clock():
    return ClockStub()


@pytest.fixture
def farms(clock):
    return FarmService(clock=clock)


@pytest.fixture
def analyses(clock):
    return SatelliteAnalysisService(clock=clock)


@pytest.fixture
def users(clock):
    return UserService(clock=clock)


# ---------- farms ----------

def test_create_farm_with_valid_boundary_computes_area(db_session, farms, clock):
    farm = farms.create_farm(db_session, mk_farm())

    assert isinstance(farm, models.Farm)
    assert farm.id
    assert farm.total_area == pytest.approx(1.24, abs=0.01)
    assert (farm.min_lng, farm.min_lat, farm.max_lng, farm.max_lat) == (0, 0, 0.001, 0.001)
    assert same_moment(farm.created_at, clock())
    assert same_moment(farm.updated_at, clock())


def test_create_farm_with_invalid_boundary_stores_without_area(db_session, farms):
    farm = farms.create_farm(db_session, mk_farm(boundary=OPEN_TRIANGLE))

    assert farm.total_area is None
    assert farm.boundary == OPEN_TRIANGLE
    assert farm.min_lng is None


def test_create_farm_without_boundary(db_session, farms):
    farm = farms.create_farm(db_session, mk_farm(boundary=None))
    assert farm.boundary is None
    assert farm.total_area is None


def test_create_farm_keeps_typed_metadata_and_points(db_session, farms):
    data = mk_farm(
        points=[mk_point("p1", metadata={"status": "active", "sensor_type": "soil"})],
        metadata={"soil_type": "loam", "climate": "tropical"},
        crop_type="  maize ",
    )
    farm = farms.create_farm(db_session, data)

    assert farm.crop_type == "maize"
    assert farm.meta == {"schema_version": 1, "soil_type": "loam", "climate": "tropical"}
    assert [p.id for p in farm.points] == ["p1"]
    assert farm.points[0].meta == {"schema_version": 1, "status": "active", "sensor_type": "soil"}


def test_unknown_metadata_keys_are_rejected():
    with pytest.raises(ValueError):
        mk_farm(metadata={"soilType": "loam"})


def test_farm_name_is_unique_per_user(db_session, farms):
    farms.create_farm(db_session, mk_farm(name="Plot A"))

    with pytest.raises(DuplicateFarmName):
        farms.create_farm(db_session, mk_farm(name="Plot A"))

    # another user may reuse the name
    other = farms.create_farm(db_session, mk_farm(user_id="u2", name="Plot A"))
    assert other.user_id == "u2"


def test_get_farms_by_user_newest_update_first(db_session, farms, clock):
    a = farms.create_farm(db_session, mk_farm(name="A"))
    clock.advance(hours=1)
    b = farms.create_farm(db_session, mk_farm(name="B"))
    clock.advance(hours=1)
    farms.create_farm(db_session, mk_farm(user_id="u2", name="C"))
    clock.advance(hours=1)
    farms.update_farm(db_session, a.id, "u1", schemas.FarmUpdate(description="touched"))

    names = [f.name for f in farms.get_farms_by_user(db_session, "u1")]
    assert names == ["A", "B"]
    assert b.id in [f.id for f in farms.get_farms_by_user(db_session, "u1")]


def test_get_farm_by_id_is_owner_scoped(db_session, farms):
    farm = farms.create_farm(db_session, mk_farm())

    assert farms.get_farm_by_id(db_session, farm.id, "u1").id == farm.id
    assert farms.get_farm_by_id(db_session, farm.id, "intruder") is None
    assert farms.get_farm_by_id(db_session, "missing", "u1") is None


def test_lookup_farm_distinguishes_missing_from_foreign(db_session, farms):
    farm = farms.create_farm(db_session, mk_farm())

    assert farms.lookup_farm(db_session, farm.id, "u1").status is LookupStatus.FOUND
    assert farms.lookup_farm(db_session, farm.id, "intruder").status is LookupStatus.FORBIDDEN
    assert farms.lookup_farm(db_session, "missing", "u1").status is LookupStatus.NOT_FOUND
    assert farms.lookup_farm(db_session, farm.id, "intruder").farm is None


def test_update_farm_recomputes_area_for_new_valid_boundary(db_session, farms, clock):
    farm = farms.create_farm(db_session, mk_farm())
    clock.advance(days=1)

    updated = farms.update_farm(db_session, farm.id, "u1", schemas.FarmUpdate(boundary=square_at(10, 10)))

    assert updated.total_area == pytest.approx(123.92, abs=0.01)
    assert updated.min_lng == 10
    assert same_moment(updated.updated_at, clock())
    assert not same_moment(updated.created_at, clock())


def test_update_farm_without_boundary_keeps_area(db_session, farms, clock):
    farm = farms.create_farm(db_session, mk_farm())
    original_area = farm.total_area
    clock.advance(minutes=5)

    updated = farms.update_farm(db_session, farm.id, "u1", schemas.FarmUpdate(crop_type="wheat"))

    assert updated.crop_type == "wheat"
    assert updated.total_area == original_area
    assert updated.name == "North Field"
    assert same_moment(updated.updated_at, clock())


def test_update_farm_with_invalid_boundary_drops_it_from_search(db_session, farms):
    farm = farms.create_farm(db_session, mk_farm())
    area = farm.total_area

    updated = farms.update_farm(db_session, farm.id, "u1", schemas.FarmUpdate(boundary=OPEN_TRIANGLE))

    assert updated.boundary == OPEN_TRIANGLE
    assert updated.total_area == area
    assert farms.search_farms_by_location(db_session, [-1, -1, 1, 1]) == []


def test_update_farm_by_other_user_returns_none_and_changes_nothing(db_session, farms, clock):
    farm = farms.create_farm(db_session, mk_farm(description="mine"))
    before = farm.updated_at
    clock.advance(days=1)

    result = farms.update_farm(
        db_session, farm.id, "intruder",
        schemas.FarmUpdate(name="Stolen", description="theirs", boundary=square_at(5, 5)),
    )

    assert result is None
    db_session.expire_all()
    fresh = db_session.get(models.Farm, farm.id)
    assert fresh.name == "North Field"
    assert fresh.description == "mine"
    assert fresh.boundary == SQUARE
    assert same_moment(fresh.updated_at, before)


def test_update_farm_rename_into_existing_name_conflicts(db_session, farms):
    farms.create_farm(db_session, mk_farm(name="A"))
    b = farms.create_farm(db_session, mk_farm(name="B"))

    with pytest.raises(DuplicateFarmName):
        farms.update_farm(db_session, b.id, "u1", schemas.FarmUpdate(name="A"))

    assert db_session.get(models.Farm, b.id).name == "B"


def test_delete_farm_is_owner_scoped(db_session, farms):
    farm = farms.create_farm(db_session, mk_farm(points=[mk_point("p1")]))

    assert farms.delete_farm(db_session, farm.id, "intruder") is False
    assert farms.delete_farm(db_session, farm.id, "u1") is True
    assert farms.delete_farm(db_session, farm.id, "u1") is False
    assert db_session.query(models.FarmPoint).count() == 0


def test_add_point_appends_and_touches_farm(db_session, farms, clock):
    farm = farms.create_farm(db_session, mk_farm(points=[mk_point("p1")]))
    clock.advance(hours=2)

    updated = farms.add_point_to_farm(
        db_session, farm.id, "u1", mk_point("p2", (0.0002, 0.0008), type="irrigation")
    )

    assert [p.id for p in updated.points] == ["p1", "p2"]
    assert updated.points[1].type == "irrigation"
    assert updated.points[1].coordinates == [0.0002, 0.0008]
    assert same_moment(updated.updated_at, clock())


def test_add_point_to_foreign_farm_returns_none(db_session, farms):
    farm = farms.create_farm(db_session, mk_farm())

    assert farms.add_point_to_farm(db_session, farm.id, "intruder", mk_point("p9")) is None
    db_session.expire_all()
    assert db_session.get(models.Farm, farm.id).points == []


def test_remove_point_matches_id_not_coordinates(db_session, farms):
    same_spot = (0.0005, 0.0005)
    farm = farms.create_farm(
        db_session,
        mk_farm(points=[mk_point("p1", same_spot), mk_point("p2", same_spot), mk_point("p3", (0.0001, 0.0001))]),
    )

    updated = farms.remove_point_from_farm(db_session, farm.id, "u1", "p1")

    assert [p.id for p in updated.points] == ["p2", "p3"]
    assert updated.points[0].coordinates == list(same_spot)
    assert db_session.query(models.FarmPoint).count() == 2


def test_remove_unknown_point_leaves_points(db_session, farms):
    farm = farms.create_farm(db_session, mk_farm(points=[mk_point("p1")]))

    updated = farms.remove_point_from_farm(db_session, farm.id, "u1", "nope")

    assert [p.id for p in updated.points] == ["p1"]
    assert farms.remove_point_from_farm(db_session, farm.id, "intruder", "p1") is None


def test_search_by_location_public_scope_spans_users(db_session, farms):
    farms.create_farm(db_session, mk_farm(name="Near", boundary=square_at(0, 0)))
    farms.create_farm(db_session, mk_farm(user_id="u2", name="Also near", boundary=square_at(0.005, 0.005)))
    farms.create_farm(db_session, mk_farm(name="Far", boundary=square_at(20, 20)))
    farms.create_farm(db_session, mk_farm(name="Broken", boundary=OPEN_TRIANGLE))

    found = farms.search_farms_by_location(db_session, [-0.001, -0.001, 0.02, 0.02])

    assert sorted(f.name for f in found) == ["Also near", "Near"]


def test_search_by_location_owner_scope(db_session, clock):
    svc = FarmService(clock=clock, search_scope="owner")
    svc.create_farm(db_session, mk_farm(name="Mine", boundary=square_at(0, 0)))
    svc.create_farm(db_session, mk_farm(user_id="u2", name="Theirs", boundary=square_at(0, 0)))

    found = svc.search_farms_by_location(db_session, [-1, -1, 1, 1], user_id="u1")
    assert [f.name for f in found] == ["Mine"]

    with pytest.raises(OwnerRequired):
        svc.search_farms_by_location(db_session, [-1, -1, 1, 1])


def test_search_rejects_bad_bounds(db_session, farms):
    with pytest.raises(ValueError):
        farms.search_farms_by_location(db_session, [1, 1, 0, 0])


MIXED_RING = {"type": "Polygon", "coordinates": [[[0, 0], [0, 1, 5], [1, 1], [1, 0], [0, 0]]]}


def test_mixed_dimension_ring_is_stored_unsearchable(db_session, farms):
    farms.create_farm(db_session, mk_farm(user_id="a", name="good", boundary=square_at(0, 0)))
    bad = farms.create_farm(db_session, mk_farm(user_id="b", name="bad", boundary=MIXED_RING))

    assert bad.total_area is None
    assert bad.min_lng is None
    assert [f.name for f in farms.search_farms_by_location(db_session, [-1, -1, 2, 2])] == ["good"]


def test_search_skips_stored_row_with_unreadable_ring(db_session, farms):
    farms.create_farm(db_session, mk_farm(user_id="a", name="good", boundary=square_at(0, 0)))
    bad = farms.create_farm(db_session, mk_farm(user_id="b", name="bad", boundary=square_at(0, 0)))
    # row written with a bbox before rings were checked for a single dimension
    bad.boundary = MIXED_RING
    db_session.commit()

    assert [f.name for f in farms.search_farms_by_location(db_session, [-1, -1, 2, 2])] == ["good"]


def test_unknown_search_scope_is_rejected():
    with pytest.raises(ValueError):
        FarmService(search_scope="everyone")


# ---------- satellite analyses ----------

def test_save_analysis_defaults_date_to_now(db_session, analyses, clock):
    data = mk_analysis(farm_id="f1", analysis_date=datetime(2025, 3, 1, tzinfo=UTC))
    data.analysis_date = None

    obj = analyses.save_analysis(db_session, data)

    assert same_moment(obj.analysis_date, clock())
    assert obj.results["averageValues"] == {"ndvi": 0.5}
    assert obj.results["zoneAnalysis"][0]["values"]["stdDev"] == 0.1
    assert obj.bounds == [0, 0, 0.001, 0.001]


def test_analysis_bounds_must_have_four_numbers():
    with pytest.raises(ValueError):
        schemas.AnalysisCreate(
            farm_id="f1", user_id="u1", layer_type="ndvi", bounds=[0, 0, 1],
            date_range={"start": "2025-01-01", "end": "2025-02-01"},
        )


def test_analysis_layer_type_is_restricted():
    with pytest.raises(ValueError):
        mk_analysis(farm_id="f1", layer_type="ndwi", analysis_date=datetime(2025, 1, 1, tzinfo=UTC))


def test_latest_analysis_optionally_filters_layer(db_session, analyses):
    jan = datetime(2025, 1, 1, tzinfo=UTC)
    analyses.save_analysis(db_session, mk_analysis(farm_id="f1", analysis_date=jan, mean=0.1))
    analyses.save_analysis(db_session, mk_analysis(farm_id="f1", analysis_date=jan + timedelta(days=20), mean=0.2))
    analyses.save_analysis(
        db_session, mk_analysis(farm_id="f1", layer_type="moisture", analysis_date=jan + timedelta(days=40))
    )

    latest = analyses.get_latest_analysis(db_session, "f1", "u1")
    latest_ndvi = analyses.get_latest_analysis(db_session, "f1", "u1", "ndvi")

    assert latest.layer_type == "moisture"
    assert latest_ndvi.results["averageValues"]["ndvi"] == 0.2
    assert analyses.get_latest_analysis(db_session, "f1", "intruder") is None
    assert analyses.get_latest_analysis(db_session, "f1", "u1", "temperature") is None


def test_history_newest_first_and_compare_oldest_first(db_session, analyses):
    base = datetime(2025, 1, 1, tzinfo=UTC)
    for days in (10, 0, 30, 20):
        analyses.save_analysis(db_session, mk_analysis(farm_id="f1", analysis_date=base + timedelta(days=days)))

    history = analyses.get_analysis_history(db_session, "f1", "u1")
    compared = analyses.compare_analyses(db_session, "f1", "u1", "ndvi", base, base + timedelta(days=30))

    history_dates = [a.analysis_date for a in history]
    compared_dates = [a.analysis_date for a in compared]
    assert len(history) == len(compared) == 4
    assert history_dates == sorted(history_dates, reverse=True)
    assert compared_dates == sorted(compared_dates)
    assert compared_dates == list(reversed(history_dates))


def test_history_respects_limit(db_session, analyses):
    base = datetime(2025, 1, 1, tzinfo=UTC)
    for days in range(5):
        analyses.save_analysis(db_session, mk_analysis(farm_id="f1", analysis_date=base + timedelta(days=days)))

    history = analyses.get_analysis_history(db_session, "f1", "u1", limit=2)

    assert len(history) == 2
    assert same_moment(history[0].analysis_date, base + timedelta(days=4))


def test_history_limit_zero_is_honoured_and_negative_rejected(db_session, analyses):
    analyses.save_analysis(db_session, mk_analysis(farm_id="f1", analysis_date=datetime(2025, 1, 1, tzinfo=UTC)))

    assert analyses.get_analysis_history(db_session, "f1", "u1", limit=0) == []
    assert len(analyses.get_analysis_history(db_session, "f1", "u1")) == 1
    with pytest.raises(ValueError):
        analyses.get_analysis_history(db_session, "f1", "u1", limit=-1)


def test_compare_requires_both_ends_of_window(db_session, analyses):
    analyses.save_analysis(db_session, mk_analysis(farm_id="f1", analysis_date=datetime(2025, 1, 1, tzinfo=UTC)))

    with pytest.raises(ValueError):
        analyses.compare_analyses(db_session, "f1", "u1", "ndvi", None, datetime(2025, 2, 1, tzinfo=UTC))
    with pytest.raises(ValueError):
        analyses.compare_analyses(db_session, "f1", "u1", "ndvi", datetime(2024, 12, 1, tzinfo=UTC), None)


def test_compare_window_is_inclusive_and_layer_scoped(db_session, analyses):
    base = datetime(2025, 1, 1, tzinfo=UTC)
    for days in (0, 5, 10, 15):
        analyses.save_analysis(db_session, mk_analysis(farm_id="f1", analysis_date=base + timedelta(days=days)))
    analyses.save_analysis(
        db_session, mk_analysis(farm_id="f1", layer_type="temperature", analysis_date=base + timedelta(days=5))
    )

    compared = analyses.compare_analyses(
        db_session, "f1", "u1", "ndvi", base + timedelta(days=5), base + timedelta(days=10)
    )

    assert [a.analysis_date.day for a in compared] == [6, 11]
    assert all(a.layer_type == "ndvi" for a in compared)


def test_compare_accepts_string_dates(db_session, analyses):
    analyses.save_analysis(db_session, mk_analysis(farm_id="f1", analysis_date=datetime(2025, 6, 1, tzinfo=UTC)))

    compared = analyses.compare_analyses(db_session, "f1", "u1", "ndvi", "2025-05-01", "2025-06-30T00:00:00Z")

    assert len(compared) == 1


# ---------- users ----------

def test_create_user_normalizes_email_and_defaults_preferences(db_session, users):
    user = users.create_user(db_session, schemas.UserCreate(email="Grower@Example.com", name=" Ada "))

    assert user.email == "grower@example.com"
    assert user.name == "Ada"
    assert user.farm_ids == []
    assert (user.default_layer, user.notifications, user.units) == ("ndvi", True, "metric")


def test_duplicate_email_is_rejected(db_session, users):
    users.create_user(db_session, schemas.UserCreate(email="a@b.io", name="A"))

    with pytest.raises(DuplicateEmail):
        users.create_user(db_session, schemas.UserCreate(email="A@B.io", name="Other"))


def test_get_user_by_email_is_case_insensitive(db_session, users):
    created = users.create_user(db_session, schemas.UserCreate(email="a@b.io", name="A"))

    assert users.get_user_by_email(db_session, " A@B.IO ").id == created.id
    assert users.get_user_by_email(db_session, "x@b.io") is None


def test_create_user_with_auth_id_rejects_second_registration(db_session, users):
    user = users.create_user(db_session, schemas.UserCreate(email="a@example.com", name="Ada"), user_id="u1")
    assert user.id == "u1"

    with pytest.raises(DuplicateUser):
        users.create_user(db_session, schemas.UserCreate(email="b@example.com", name="Ada"), user_id="u1")


def test_update_user_changes_only_given_preferences(db_session, users, clock):
    user = users.create_user(db_session, schemas.UserCreate(email="a@b.io", name="A"))
    clock.advance(hours=1)

    updated = users.update_user(
        db_session, user.id, schemas.UserUpdate(preferences={"units": "imperial"})
    )

    assert updated.units == "imperial"
    assert updated.default_layer == "ndvi"
    assert updated.notifications is True
    assert same_moment(updated.updated_at, clock())
    assert users.update_user(db_session, "missing", schemas.UserUpdate(name="X")) is None


def test_add_farm_to_user_has_set_semantics(db_session, users):
    user = users.create_user(db_session, schemas.UserCreate(email="a@b.io", name="A"))

    users.add_farm_to_user(db_session, user.id, "f1")
    users.add_farm_to_user(db_session, user.id, "f2")
    updated = users.add_farm_to_user(db_session, user.id, "f1")

    assert updated.farm_ids == ["f1", "f2"]
    assert users.add_farm_to_user(db_session, "missing", "f1") is None


# ---------- database ----------

def test_health_check_reports_healthy_store():
    from agrivision.db import check_database_health

    database = Database("sqlite:///:memory:")
    database.create_all()

    result = check_database_health(database)

    assert result["status"] == "healthy"
    assert {"farms", "farm_points", "satellite_analyses", "users"} <= set(result["details"]["tables"])
    database.dispose()


def test_health_check_reports_unreachable_store(tmp_path):
    from agrivision.db import check_database_health

    database = Database(f"sqlite:///{(tmp_path / 'missing' / 'farms.db').as_posix()}")

    result = check_database_health(database)

    assert result["status"] == "unhealthy"
    assert isinstance(result["details"], str)
