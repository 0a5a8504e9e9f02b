import json
import os
import time
from typing import Any, Dict, List

import logging

from .planner_utils import MasterPlan, PlanningContext

logger = logging.getLogger(__name__)

# Day logs store minutes rounded to one decimal
TOLERANCE = 0.05


def _close(a: float, b: float) -> bool:
    return abs(a - b) <= TOLERANCE


def _check_coverage(plan: MasterPlan, context: PlanningContext, errors: List[str]) -> None:
    counts: Dict[int, int] = {}
    for route in plan.routes:
        for point in route.points:
            counts[point.id] = counts.get(point.id, 0) + 1
    for point in context.points:
        seen = counts.get(point.id, 0)
        if seen == 0:
            errors.append(f"Point {point.name} is not assigned to any route")
        elif seen > 1:
            errors.append(f"Point {point.name} appears in {seen} routes")
    if plan.points_covered != len(context.points):
        errors.append(
            f"Plan covers {plan.points_covered} points but {len(context.points)} were given"
        )


def _check_totals(plan: MasterPlan, errors: List[str]) -> None:
    expected = {
        "total_system_cost": sum(r.total_cost for r in plan.routes),
        "total_distance_km": sum(r.distance_km for r in plan.routes),
        "total_nights": sum(r.nights for r in plan.routes),
        "total_days": sum(r.days for r in plan.routes),
    }
    for name, value in expected.items():
        if not _close(getattr(plan, name), value):
            errors.append(f"{name} is {getattr(plan, name)} but routes sum to {value}")


def _check_route(route, context: PlanningContext, errors: List[str], warnings: List[str]) -> None:
    rules = context.rules
    label = route.name
    if not route.logs:
        errors.append(f"{label}: no day logs")
        return
    if len(route.logs) != route.days:
        errors.append(f"{label}: {len(route.logs)} day logs for {route.days} days")
    if route.nights != route.days - 1:
        errors.append(f"{label}: {route.nights} nights for {route.days} days")
    return_days = [log for log in route.logs if log.is_return_day]
    if len(return_days) != 1 or not route.logs[-1].is_return_day:
        errors.append(f"{label}: the last day log must be the only return day")
    if not route.policy_violation and route.days > context.limits.max_route_days:
        errors.append(
            f"{label}: {route.days} days exceed the {context.limits.max_route_days}-day limit"
        )
    if route.policy_violation:
        warnings.append(f"{label}: {route.warning}")

    for log in route.logs:
        expected_overtime = max(0.0, log.total_day_minutes - rules.work_day_minutes)
        if not _close(log.overtime_minutes, expected_overtime):
            errors.append(
                f"{label} day {log.day}: overtime {log.overtime_minutes} "
                f"does not match total {log.total_day_minutes}"
            )
        if log.total_day_minutes > rules.total_day_minutes + TOLERANCE:
            warnings.append(
                f"{label} day {log.day}: {log.total_day_minutes} min exceeds the "
                f"{rules.total_day_minutes} min day"
            )
        elif not log.is_return_day and log.total_day_minutes > rules.work_day_minutes + TOLERANCE:
            warnings.append(
                f"{label} day {log.day}: {log.total_day_minutes} min exceeds the "
                f"{rules.work_day_minutes} min work day"
            )


def review_plan(plan: MasterPlan, context: PlanningContext) -> Dict[str, List[str]]:
    """Check ``plan`` for internal inconsistencies.

    Returns a mapping with ``errors`` (broken invariants) and ``warnings``
    (policy violations and long days the planner had no way around).
    """
    errors: List[str] = []
    warnings: List[str] = []
    _check_coverage(plan, context, errors)
    _check_totals(plan, errors)
    for route in plan.routes:
        _check_route(route, context, errors, warnings)
    if errors:
        logger.warning("Plan review found %d errors", len(errors))
    return {"errors": errors, "warnings": warnings}


def save_review(review: Dict[str, Any], run_id: str, directory: str = "reviews") -> str:
    """Append ``review`` as one JSON line to ``<directory>/<run_id>.jsonl``."""
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, f"{run_id}.jsonl")
    record = {"run_id": run_id, "timestamp": time.time(), **review}
    with open(path, "a") as f:
        json.dump(record, f)
        f.write("\n")
    return path
