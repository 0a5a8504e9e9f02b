"""Utility exports for the field visit route planner."""

from .planner_utils import (
    DayLog,
    ItineraryResult,
    MasterPlan,
    PlanningContext,
    Point,
    Route,
    TravelMatrix,
)
from .itinerary import ItineraryRules, simulate_itinerary
from .costing import CostRates, compute_cost
from .clustering import SearchLimits, search_best_cluster
from .cancellation import CancellationToken, PlanningCancelled
from .master_planner import build_planning_context, plan_master_routes

__all__ = [
    "DayLog",
    "ItineraryResult",
    "MasterPlan",
    "PlanningContext",
    "Point",
    "Route",
    "TravelMatrix",
    "ItineraryRules",
    "simulate_itinerary",
    "CostRates",
    "compute_cost",
    "SearchLimits",
    "search_best_cluster",
    "CancellationToken",
    "PlanningCancelled",
    "build_planning_context",
    "plan_master_routes",
]
