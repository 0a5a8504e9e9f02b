"""Day-by-day schedule simulation for a single route.

A route is an ordered visit path starting at the depot. The simulator walks
the path, adding travel and service time to a running clock, and closes the
working day (an overnight stay) whenever the next leg or task would push the
day past the work limit. The final day returns to the depot and may run into
overtime, up to the total-day ceiling; beyond that the return is deferred to
the next morning.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence
import logging

from .planner_utils import (
    OC,
    DayLog,
    ItineraryResult,
    PC,
    PlanningContext,
    Point,
    TravelMatrix,
    round1,
)

logger = logging.getLogger(__name__)

MAX_WORK_DAY = 540.0  # 9 h
MAX_TOTAL_DAY = 660.0  # 11 h, only for the return leg
EXTRA_ACTIVITY_MINUTES = 300.0

NOTE_LONG_TRANSFER = "End of workday before the long transfer to the next point."
NOTE_CONTINUES_TOMORROW = "Day closed; activities continue tomorrow."
NOTE_RETURN_DEFERRED = "Overnight stay: returning today would exceed the total-day limit."
NOTE_PC_DETOUR = "Overnight at the nearest PC (no overnight stays at OC points or the depot)."
NOTE_FORCED_OC = "WARNING: no PC available; overnight forced at an OC point."
NOTE_OVERSIZED_TASK = "WARNING: a single task exceeds the daily work limit."
NOTE_RETURN = "Returned to depot."
NOTE_RETURN_OVERTIME = "Returned to depot with {overtime:.1f} min of allowed overtime."


@dataclass(frozen=True)
class ItineraryRules:
    pc_duration: float = 180.0
    oc_duration: float = 180.0
    work_day_minutes: float = MAX_WORK_DAY
    total_day_minutes: float = MAX_TOTAL_DAY
    extra_activity_minutes: float = EXTRA_ACTIVITY_MINUTES
    pc_overnight_only: bool = False

    def __post_init__(self) -> None:
        if min(self.pc_duration, self.oc_duration, self.extra_activity_minutes) < 0:
            raise ValueError("service durations must not be negative")
        if self.work_day_minutes <= 0:
            raise ValueError("work day length must be positive")
        if self.total_day_minutes < self.work_day_minutes:
            raise ValueError("total-day ceiling must not be shorter than the work day")

    def task_durations(self, point: Point) -> List[float]:
        """Base service task followed by one fixed task per extra activity."""
        base = self.oc_duration if point.category == OC else self.pc_duration
        return [base] + [self.extra_activity_minutes] * point.extra_activity_count


@dataclass
class _DayDraft:
    day: int
    start_location: str
    activity_points: List[str] = field(default_factory=list)
    activity_extra_counts: Dict[str, int] = field(default_factory=dict)
    travel_minutes: float = 0.0
    work_minutes: float = 0.0
    warnings: List[str] = field(default_factory=list)

    def freeze(
        self,
        *,
        total_minutes: float,
        overtime_minutes: float,
        final_location: str,
        note: str,
        is_return_day: bool = False,
    ) -> DayLog:
        return DayLog(
            day=self.day,
            start_location=self.start_location,
            activity_points=tuple(self.activity_points),
            activity_extra_counts=dict(self.activity_extra_counts),
            travel_minutes=round1(self.travel_minutes),
            work_minutes=round1(self.work_minutes),
            overtime_minutes=round1(overtime_minutes),
            total_day_minutes=round1(total_minutes),
            final_location=final_location,
            is_return_day=is_return_day,
            note=" ".join([note] + self.warnings),
        )


class _ItineraryRun:
    """Mutable state of one simulation; discarded once the result is built."""

    def __init__(
        self,
        path: Sequence[int],
        context: PlanningContext,
        matrix: TravelMatrix,
    ) -> None:
        self.path = list(path)
        self.locations = context.locations
        self.rules = context.rules
        self.durations = matrix.duration_rows
        self.depot = self.path[0]
        self.location = self.depot
        self.current_day = 1
        self.current_time = 0.0
        self.nights = 0
        self.logs: List[DayLog] = []
        self.draft = _DayDraft(1, self._name(self.depot))

    def _name(self, idx: int) -> str:
        return self.locations[idx].name

    def _travel(self, target: int) -> None:
        minutes = self.durations[self.location][target]
        self.current_time += minutes
        self.draft.travel_minutes += minutes
        self.location = target

    def _push(self, final_location: str, note: str, *, is_return_day: bool = False) -> None:
        overtime = max(0.0, self.current_time - self.rules.work_day_minutes)
        self.logs.append(
            self.draft.freeze(
                total_minutes=self.current_time,
                overtime_minutes=overtime,
                final_location=final_location,
                note=note,
                is_return_day=is_return_day,
            )
        )

    def _can_stay_at(self, idx: int) -> bool:
        return idx != self.depot and self.locations[idx].category == PC

    def _nearest_overnight_pc(self, origin: int) -> Optional[int]:
        """Closest PC by travel time, preferring the route's own points."""
        route_candidates = [i for i in self.path if self._can_stay_at(i)]
        other_candidates = [
            i for i in range(len(self.locations)) if self._can_stay_at(i)
        ]
        for candidates in (route_candidates, other_candidates):
            best: Optional[int] = None
            best_minutes = float("inf")
            for idx in candidates:
                minutes = self.durations[origin][idx]
                if minutes < best_minutes:
                    best, best_minutes = idx, minutes
            if best is not None:
                return best
        return None

    def _close_day(self, note: str, resume_at: Optional[int] = None) -> None:
        """Spend the night and open the next day.

        The night is spent at the current location unless ``pc_overnight_only``
        forbids it, in which case the crew detours to the nearest PC and, when
        ``resume_at`` is given, drives back there first thing the next day.
        """
        if self.rules.pc_overnight_only and not self._can_stay_at(self.location):
            pc = self._nearest_overnight_pc(self.location)
            if pc is None:
                note = NOTE_FORCED_OC
            else:
                self._travel(pc)
                note = NOTE_PC_DETOUR
        stay = self.location
        self._push(self._name(stay), note)
        self.nights += 1
        self.current_day += 1
        self.current_time = 0.0
        self.draft = _DayDraft(self.current_day, self._name(stay))
        if resume_at is not None and resume_at != stay:
            self._travel(resume_at)

    def _visit(self, target: int) -> None:
        work_day = self.rules.work_day_minutes
        travel = self.durations[self.location][target]
        if self.current_time > 0 and self.current_time + travel > work_day:
            self._close_day(NOTE_LONG_TRANSFER, resume_at=self.location)
        self._travel(target)

        point = self.locations[target]
        for task in self.rules.task_durations(point):
            if self.current_time > 0 and self.current_time + task > work_day:
                self._close_day(NOTE_CONTINUES_TOMORROW, resume_at=target)
            if task > work_day:
                logger.debug(
                    "Task of %.1f min at %s exceeds the %.1f min work day",
                    task,
                    point.name,
                    work_day,
                )
                self.draft.warnings.append(NOTE_OVERSIZED_TASK)
            self.current_time += task
            self.draft.work_minutes += task
            if point.name not in self.draft.activity_points:
                self.draft.activity_points.append(point.name)
        self.draft.activity_extra_counts[point.name] = point.extra_activity_count

    def run(self) -> ItineraryResult:
        for target in self.path[1:]:
            self._visit(target)

        return_travel = self.durations[self.location][self.depot]
        if (
            self.current_time > 0
            and self.current_time + return_travel > self.rules.total_day_minutes
        ):
            self._close_day(NOTE_RETURN_DEFERRED)
        self._travel(self.depot)

        overtime = max(0.0, self.current_time - self.rules.work_day_minutes)
        note = NOTE_RETURN_OVERTIME.format(overtime=overtime) if overtime > 0 else NOTE_RETURN
        self._push(self._name(self.depot), note, is_return_day=True)
        return ItineraryResult(days=self.current_day, nights=self.nights, logs=tuple(self.logs))


def simulate_itinerary(
    path: Sequence[int],
    context: PlanningContext,
    matrix: Optional[TravelMatrix] = None,
) -> ItineraryResult:
    """Simulate the working days needed to follow ``path``.

    Args:
        path: Location indices; ``path[0]`` is the depot, the rest is the
            visiting order.
        context: Planning inputs providing locations, durations and rules.
        matrix: Optional matrix overriding ``context.matrix``.

    Returns:
        An :class:`ItineraryResult` with day count, night count and one
        :class:`DayLog` per day. The last log is always the return day.
    """
    if not path:
        raise ValueError("path must start with the depot")
    return _ItineraryRun(path, context, matrix or context.matrix).run()
