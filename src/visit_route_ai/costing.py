from dataclasses import dataclass
from typing import Iterable

from .planner_utils import CostBreakdown, Point

# Flat surcharge (fuel) per extra community activity
EXTRA_UNIT_COST = 10.0


@dataclass(frozen=True)
class CostRates:
    per_km: float = 1.0
    per_day: float = 180.0
    per_night: float = 570.0
    extra_unit_cost: float = EXTRA_UNIT_COST


def extra_activity_total(points: Iterable[Point]) -> int:
    return sum(p.extra_activity_count for p in points)


def compute_cost(
    distance_km: float,
    days: int,
    nights: int,
    extra_activities: int,
    rates: CostRates,
) -> CostBreakdown:
    """Return the gas, food, hotel and extra-activity cost of a route."""
    return CostBreakdown(
        gas=distance_km * rates.per_km,
        food=rates.per_day * days,
        hotel=rates.per_night * nights,
        extra=extra_activities * rates.extra_unit_cost,
    )
