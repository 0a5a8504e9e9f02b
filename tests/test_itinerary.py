import pytest

from visit_route_ai.clustering import SearchLimits
from visit_route_ai.costing import CostRates
from visit_route_ai.itinerary import (
    NOTE_CONTINUES_TOMORROW,
    NOTE_FORCED_OC,
    NOTE_LONG_TRANSFER,
    NOTE_OVERSIZED_TASK,
    NOTE_PC_DETOUR,
    NOTE_RETURN,
    NOTE_RETURN_DEFERRED,
    ItineraryRules,
    simulate_itinerary,
)
from visit_route_ai.planner_utils import PlanningContext, Point, TravelMatrix


def build_context(durations, categories=None, extras=None, distances=None, **rule_kwargs):
    n = len(durations) - 1
    names = [chr(ord("A") + i) for i in range(n)]
    categories = categories or ["PC"] * n
    extras = extras or [0] * n
    points = tuple(
        Point(i + 1, names[i], 0.0, 0.0, categories[i], extras[i]) for i in range(n)
    )
    matrix = TravelMatrix.build(distances if distances is not None else durations, durations)
    return PlanningContext(
        locations=(Point.depot(0.0, 0.0, "D"),) + points,
        matrix=matrix,
        rules=ItineraryRules(**rule_kwargs),
        rates=CostRates(),
        limits=SearchLimits(),
    )


def test_two_day_route_closes_at_last_point():
    ctx = build_context(
        [
            [0, 150, 200],
            [150, 0, 100],
            [200, 100, 0],
        ]
    )
    result = simulate_itinerary((0, 1, 2), ctx)
    assert result.days == 2
    assert result.nights == 1
    first, second = result.logs

    assert first.day == 1
    assert first.start_location == "D"
    assert first.activity_points == ("A",)
    assert first.travel_minutes == 250.0
    assert first.work_minutes == 180.0
    assert first.total_day_minutes == 430.0
    assert first.overtime_minutes == 0.0
    assert first.final_location == "B"
    assert not first.is_return_day
    assert first.note == NOTE_CONTINUES_TOMORROW

    assert second.day == 2
    assert second.start_location == "B"
    assert second.activity_points == ("B",)
    assert second.work_minutes == 180.0
    assert second.travel_minutes == 200.0
    assert second.total_day_minutes == 380.0
    assert second.overtime_minutes == 0.0
    assert second.final_location == "D"
    assert second.is_return_day
    assert second.note == NOTE_RETURN


def test_return_leg_may_use_overtime():
    ctx = build_context([[0, 200], [200, 0]])
    result = simulate_itinerary((0, 1), ctx)
    assert result.days == 1
    assert result.nights == 0
    log = result.logs[0]
    assert log.total_day_minutes == 580.0
    assert log.overtime_minutes == 40.0
    assert log.is_return_day
    assert "40.0 min" in log.note


def test_return_deferred_past_total_day_ceiling():
    ctx = build_context([[0, 250], [250, 0]])
    result = simulate_itinerary((0, 1), ctx)
    assert result.days == 2
    assert result.nights == 1
    first, second = result.logs
    assert first.final_location == "A"
    assert first.total_day_minutes == 430.0
    assert first.note == NOTE_RETURN_DEFERRED
    assert second.start_location == "A"
    assert second.activity_points == ()
    assert second.work_minutes == 0.0
    assert second.travel_minutes == 250.0
    assert second.is_return_day


def test_long_transfer_closes_day_before_travel():
    ctx = build_context(
        [
            [0, 100, 100],
            [100, 0, 400],
            [100, 400, 0],
        ]
    )
    result = simulate_itinerary((0, 1, 2), ctx)
    assert result.days == 3
    assert result.nights == 2
    assert result.logs[0].note == NOTE_LONG_TRANSFER
    assert result.logs[0].final_location == "A"
    assert result.logs[0].total_day_minutes == 280.0
    assert result.logs[1].start_location == "A"
    assert result.logs[1].travel_minutes == 400.0
    assert result.logs[1].work_minutes == 0.0
    assert result.logs[1].note == NOTE_CONTINUES_TOMORROW
    assert result.logs[2].activity_points == ("B",)
    assert result.logs[2].total_day_minutes == 280.0


def test_extra_activities_add_fixed_tasks():
    ctx = build_context([[0, 100], [100, 0]], extras=[1])
    result = simulate_itinerary((0, 1), ctx)
    assert result.days == 2
    first, second = result.logs
    assert first.work_minutes == 180.0
    assert first.activity_points == ("A",)
    assert second.work_minutes == 300.0
    assert second.activity_points == ("A",)
    assert second.activity_extra_counts == {"A": 1}
    assert second.total_day_minutes == 400.0


def test_oc_points_use_oc_duration():
    ctx = build_context([[0, 10], [10, 0]], categories=["OC"], oc_duration=90)
    log = simulate_itinerary((0, 1), ctx).logs[0]
    assert log.work_minutes == 90.0
    assert log.total_day_minutes == 110.0


def test_oversized_task_runs_on_its_own_day():
    ctx = build_context([[0, 50], [50, 0]], pc_duration=600)
    result = simulate_itinerary((0, 1), ctx)
    assert result.days == 2
    second = result.logs[1]
    assert second.work_minutes == 600.0
    assert second.overtime_minutes == 110.0
    assert second.is_return_day
    assert NOTE_OVERSIZED_TASK in second.note


def test_oversized_task_beyond_total_day_terminates():
    ctx = build_context([[0, 50], [50, 0]], pc_duration=700)
    result = simulate_itinerary((0, 1), ctx)
    assert result.days == 3
    assert result.nights == 2
    assert result.logs[-1].is_return_day
    assert result.logs[-1].travel_minutes == 50.0


def test_minutes_are_rounded_to_one_decimal():
    ctx = build_context(
        [
            [0, 0.1, 0.3],
            [0.1, 0, 0.2],
            [0.3, 0.2, 0],
        ],
        pc_duration=0,
    )
    log = simulate_itinerary((0, 1, 2), ctx).logs[0]
    assert log.travel_minutes == 0.6
    assert log.total_day_minutes == 0.6


def test_pc_overnight_only_detours_to_nearest_pc():
    ctx = build_context(
        [
            [0, 250, 260],
            [250, 0, 30],
            [260, 30, 0],
        ],
        categories=["OC", "PC"],
        pc_overnight_only=True,
    )
    result = simulate_itinerary((0, 1), ctx)
    assert result.days == 2
    first, second = result.logs
    assert first.final_location == "B"
    assert first.note == NOTE_PC_DETOUR
    assert first.travel_minutes == 280.0
    assert first.total_day_minutes == 460.0
    assert second.start_location == "B"
    assert second.travel_minutes == 260.0


def test_pc_overnight_only_without_pc_forces_oc_stay():
    ctx = build_context([[0, 250], [250, 0]], categories=["OC"], pc_overnight_only=True)
    first = simulate_itinerary((0, 1), ctx).logs[0]
    assert first.final_location == "A"
    assert first.note == NOTE_FORCED_OC


def test_overnight_at_pc_needs_no_detour():
    ctx = build_context([[0, 250], [250, 0]], pc_overnight_only=True)
    first = simulate_itinerary((0, 1), ctx).logs[0]
    assert first.final_location == "A"
    assert first.note == NOTE_RETURN_DEFERRED


def test_empty_path_rejected():
    ctx = build_context([[0, 10], [10, 0]])
    with pytest.raises(ValueError):
        simulate_itinerary((), ctx)


def test_rules_validation():
    with pytest.raises(ValueError):
        ItineraryRules(pc_duration=-1)
    with pytest.raises(ValueError):
        ItineraryRules(work_day_minutes=600, total_day_minutes=500)
