import json
import os
import math
import logging
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Tuple, Optional, Any, Sequence, Iterable, TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:  # pragma: no cover - imported for annotations only
    from .itinerary import ItineraryRules
    from .costing import CostRates
    from .clustering import SearchLimits

logger = logging.getLogger(__name__)

PC = "PC"
OC = "OC"
CATEGORIES = (PC, OC)
MAX_EXTRA_ACTIVITIES = 3
DEPOT_ID = -1


def round1(value: float) -> float:
    """Round minutes or kilometres to one decimal, as stored in logs and matrices."""
    return round(float(value), 1)


@dataclass(frozen=True)
class Point:
    id: int
    name: str
    lat: float
    lng: float
    category: str = PC
    extra_activity_count: int = 0
    active: bool = True

    def __post_init__(self) -> None:
        if self.category not in CATEGORIES:
            raise ValueError(f"unknown category {self.category!r} for point {self.name!r}")
        if not 0 <= self.extra_activity_count <= MAX_EXTRA_ACTIVITIES:
            raise ValueError(
                f"extra activity count for {self.name!r} must be between 0 and "
                f"{MAX_EXTRA_ACTIVITIES}, got {self.extra_activity_count}"
            )

    @property
    def coords(self) -> Tuple[float, float]:
        return (self.lat, self.lng)

    @classmethod
    def depot(cls, lat: float, lng: float, name: str = "Depot") -> "Point":
        """Return the start/end location of every route."""
        return cls(DEPOT_ID, name, lat, lng, PC, 0, True)


def _as_matrix(values: Any, label: str) -> np.ndarray:
    try:
        arr = np.array(values, dtype=float)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{label} matrix contains non-numeric values: {e}") from e
    if arr.ndim != 2 or arr.shape[0] != arr.shape[1]:
        raise ValueError(f"{label} matrix must be square, got shape {arr.shape}")
    if arr.shape[0] == 0:
        raise ValueError(f"{label} matrix is empty")
    # NaN marks a missing cell; treat it like any other unreachable pair
    arr[np.isnan(arr)] = np.inf
    if np.any(arr < 0):
        raise ValueError(f"{label} matrix contains negative values")
    return arr


@dataclass(frozen=True, eq=False)
class TravelMatrix:
    """Distances (km) and durations (minutes) between locations.

    Index 0 is always the depot. Unreachable pairs hold ``inf``. The arrays are
    read-only; plain nested lists are kept alongside them because the schedule
    simulator reads single cells in tight loops.
    """

    distance_km: np.ndarray
    duration_min: np.ndarray
    _distance_rows: List[List[float]] = field(init=False, repr=False, compare=False)
    _duration_rows: List[List[float]] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.distance_km.shape != self.duration_min.shape:
            raise ValueError(
                "distance and duration matrices differ in shape: "
                f"{self.distance_km.shape} vs {self.duration_min.shape}"
            )
        self.distance_km.setflags(write=False)
        self.duration_min.setflags(write=False)
        object.__setattr__(self, "_distance_rows", self.distance_km.tolist())
        object.__setattr__(self, "_duration_rows", self.duration_min.tolist())

    @classmethod
    def build(
        cls,
        distances: Any,
        durations: Any,
        time_factor: float = 1.0,
    ) -> "TravelMatrix":
        """Validate raw matrices, scale durations by ``time_factor`` and round cells."""
        if time_factor <= 0:
            raise ValueError(f"time factor must be positive, got {time_factor}")
        dist = _as_matrix(distances, "distance")
        dur = _as_matrix(durations, "duration") * time_factor
        return cls(np.round(dist, 1), np.round(dur, 1))

    @property
    def size(self) -> int:
        return self.distance_km.shape[0]

    @property
    def distance_rows(self) -> List[List[float]]:
        return self._distance_rows

    @property
    def duration_rows(self) -> List[List[float]]:
        return self._duration_rows

    def distance(self, i: int, j: int) -> float:
        return self._distance_rows[i][j]

    def duration(self, i: int, j: int) -> float:
        return self._duration_rows[i][j]

    def is_reachable(self, i: int, j: int) -> bool:
        return math.isfinite(self._distance_rows[i][j]) and math.isfinite(
            self._duration_rows[i][j]
        )

    def without_unreachable(self) -> "TravelMatrix":
        """Return a copy where unreachable pairs cost nothing."""
        dist = np.where(np.isinf(self.distance_km), 0.0, self.distance_km)
        dur = np.where(np.isinf(self.duration_min), 0.0, self.duration_min)
        return TravelMatrix(dist, dur)

    def submatrix(self, indices: Sequence[int]) -> "TravelMatrix":
        idx = np.asarray(list(indices), dtype=int)
        return TravelMatrix(
            self.distance_km[np.ix_(idx, idx)].copy(),
            self.duration_min[np.ix_(idx, idx)].copy(),
        )


@dataclass(frozen=True)
class DayLog:
    day: int
    start_location: str
    activity_points: Tuple[str, ...]
    activity_extra_counts: Dict[str, int]
    travel_minutes: float
    work_minutes: float
    overtime_minutes: float
    total_day_minutes: float
    final_location: str
    is_return_day: bool = False
    note: Optional[str] = None


@dataclass(frozen=True)
class ItineraryResult:
    days: int
    nights: int
    logs: Tuple[DayLog, ...]


@dataclass(frozen=True)
class CostBreakdown:
    gas: float
    food: float
    hotel: float
    extra: float

    @property
    def total(self) -> float:
        return self.gas + self.food + self.hotel + self.extra


@dataclass(frozen=True)
class Route:
    id: int
    name: str
    points: Tuple[Point, ...]
    logs: Tuple[DayLog, ...]
    breakdown: CostBreakdown
    distance_km: float
    nights: int
    days: int
    policy_violation: bool = False
    warning: Optional[str] = None

    @property
    def total_cost(self) -> float:
        return self.breakdown.total

    @property
    def point_names(self) -> List[str]:
        return [p.name for p in self.points]


@dataclass(frozen=True)
class MasterPlan:
    routes: Tuple[Route, ...]
    total_system_cost: float
    total_distance_km: float
    total_nights: int
    total_days: int
    points_covered: int

    @classmethod
    def from_routes(cls, routes: Iterable[Route]) -> "MasterPlan":
        routes = tuple(routes)
        return cls(
            routes=routes,
            total_system_cost=sum(r.total_cost for r in routes),
            total_distance_km=sum(r.distance_km for r in routes),
            total_nights=sum(r.nights for r in routes),
            total_days=sum(r.days for r in routes),
            points_covered=sum(len(r.points) for r in routes),
        )

    @property
    def flagged_routes(self) -> List[Route]:
        return [r for r in self.routes if r.policy_violation]


@dataclass(frozen=True)
class PlanningContext:
    """Everything a planning run reads: locations, travel matrix and rules.

    ``locations[0]`` is the depot and ``locations[i]`` matches row ``i`` of the
    matrix.
    """

    locations: Tuple[Point, ...]
    matrix: TravelMatrix
    rules: "ItineraryRules"
    rates: "CostRates"
    limits: "SearchLimits"

    def __post_init__(self) -> None:
        if len(self.locations) != self.matrix.size:
            raise ValueError(
                f"matrix has {self.matrix.size} rows but there are "
                f"{len(self.locations)} locations (depot included)"
            )

    @property
    def depot(self) -> Point:
        return self.locations[0]

    @property
    def points(self) -> Tuple[Point, ...]:
        return self.locations[1:]


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def _first_present(record: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = record.get(key)
        if not _is_missing(value) and value != "":
            return value
    return default


def _parse_bool(value: Any) -> bool:
    if _is_missing(value):
        return True
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y", "si")
    return bool(value)


def _point_from_record(record: Dict[str, Any], position: int) -> Point:
    name = _first_present(record, "name", "nombre")
    if name is None:
        raise ValueError(f"point #{position} has no name")
    lat = _first_present(record, "lat", "latitude")
    lng = _first_present(record, "lng", "lon", "longitude")
    if lat is None or lng is None:
        raise ValueError(f"point {name!r} is missing coordinates")
    try:
        point_id = int(_first_present(record, "id", default=position))
        extra = int(
            _first_present(
                record, "extra_activities", "extra_activity_count", "oc_count", "ocCount", default=0
            )
        )
        lat_f, lng_f = float(lat), float(lng)
    except (TypeError, ValueError) as e:
        raise ValueError(f"invalid numeric field for point {name!r}: {e}") from e
    category = str(_first_present(record, "category", default=PC)).strip().upper()
    return Point(
        id=point_id,
        name=str(name).strip(),
        lat=lat_f,
        lng=lng_f,
        category=category,
        extra_activity_count=extra,
        active=_parse_bool(record.get("active", record.get("isActive"))),
    )


def load_points(path: str) -> List[Point]:
    """Load visit points from a CSV or JSON file."""
    if not os.path.exists(path):
        raise FileNotFoundError(path)
    if path.lower().endswith(".json"):
        with open(path) as f:
            data = json.load(f)
        if isinstance(data, list):
            records = data
        elif "points" in data:
            records = data["points"]
        elif "locations" in data:
            records = data["locations"]
        else:
            raise ValueError("Unrecognized point JSON structure")
    else:
        import pandas as pd

        df = pd.read_csv(path, skipinitialspace=True)
        df.columns = [str(c).strip() for c in df.columns]
        records = df.to_dict(orient="records")
    points = [_point_from_record(rec, i) for i, rec in enumerate(records, start=1)]
    if not points:
        raise ValueError("No points found")
    return points


def _read_matrix_csv(path: str) -> np.ndarray:
    if not os.path.exists(path):
        raise FileNotFoundError(path)
    import pandas as pd

    df = pd.read_csv(path, header=None, skipinitialspace=True)
    try:
        return df.to_numpy(dtype=float)
    except ValueError as e:
        raise ValueError(f"non-numeric value in matrix file {path}: {e}") from e


def load_matrix(distance_path: str, duration_path: str, time_factor: float = 1.0) -> TravelMatrix:
    """Load header-less distance and duration CSV matrices.

    Empty, ``NaN`` or ``inf`` cells mark unreachable pairs.
    """
    return TravelMatrix.build(
        _read_matrix_csv(distance_path),
        _read_matrix_csv(duration_path),
        time_factor=time_factor,
    )


def plan_to_dict(plan: MasterPlan) -> Dict[str, Any]:
    """Return a JSON-serialisable view of ``plan``."""
    data = asdict(plan)
    for route_data, route in zip(data["routes"], plan.routes):
        route_data["total_cost"] = route.total_cost
        route_data["breakdown"]["total"] = route.breakdown.total
    return data
