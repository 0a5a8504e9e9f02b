import argparse
import contextlib
import datetime
import json
import logging
import multiprocessing
import os
import signal
import sys
from dataclasses import dataclass, asdict
from logging.handlers import QueueHandler, QueueListener
from typing import Dict, List, Optional, Sequence, Any

# Allow running this file directly without installing the package.
if __name__ == "__main__" and __package__ in (None, ""):
    src_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    if src_dir not in sys.path:
        sys.path.insert(0, src_dir)

import psutil
from tqdm.auto import tqdm

from visit_route_ai import planner_utils, plan_review
from visit_route_ai.cancellation import CancellationToken, PlanningCancelled
from visit_route_ai.clustering import (
    ClusterCandidate,
    SearchLimits,
    search_best_cluster,
    worker_init_search,
)
from visit_route_ai.costing import CostRates, compute_cost, extra_activity_total
from visit_route_ai.itinerary import ItineraryRules, simulate_itinerary
from visit_route_ai.planner_utils import (
    MasterPlan,
    PlanningContext,
    Point,
    Route,
    TravelMatrix,
)

logger = logging.getLogger(__name__)

WARNING_MARKER = "⚠"


@dataclass
class PlannerConfig:
    points: Optional[str] = None
    distances: Optional[str] = None
    durations: Optional[str] = None
    depot_lat: float = 0.0
    depot_lon: float = 0.0
    depot_name: str = "Depot"
    pc_duration: float = 180.0
    oc_duration: float = 180.0
    cost_per_km: float = 1.0
    food_per_day: float = 180.0
    hotel_per_night: float = 570.0
    time_factor: float = 1.0
    coverage_limit: Optional[int] = None
    max_route_days: int = 5
    search_pool_size: int = 9
    max_cluster_size: int = 6
    dispersion_per_km: float = 0.0
    pc_seed_threshold_minutes: Optional[float] = None
    pc_overnight_only: bool = False
    workers: int = 1
    timeout: Optional[float] = None
    output: str = "master_plan.json"
    review: bool = False

    def itinerary_rules(self) -> ItineraryRules:
        return ItineraryRules(
            pc_duration=self.pc_duration,
            oc_duration=self.oc_duration,
            pc_overnight_only=self.pc_overnight_only,
        )

    def cost_rates(self) -> CostRates:
        return CostRates(
            per_km=self.cost_per_km,
            per_day=self.food_per_day,
            per_night=self.hotel_per_night,
        )

    def search_limits(self) -> SearchLimits:
        return SearchLimits(
            search_pool_size=self.search_pool_size,
            max_cluster_size=self.max_cluster_size,
            max_route_days=self.max_route_days,
            dispersion_per_km=self.dispersion_per_km,
            pc_seed_threshold_minutes=self.pc_seed_threshold_minutes,
        )


def load_config(path: str) -> PlannerConfig:
    """Load a :class:`PlannerConfig` from a JSON or YAML file."""
    if not os.path.exists(path):
        raise FileNotFoundError(path)
    with open(path) as f:
        if path.lower().endswith(".json"):
            data = json.load(f)
        else:
            import yaml

            data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError("Configuration file must contain a mapping")
    if "max_days" in data and "max_route_days" not in data:
        data["max_route_days"] = data.pop("max_days")
    return PlannerConfig(**data)


def build_planning_context(
    depot: Point,
    points: Sequence[Point],
    distances: Any,
    durations: Any = None,
    *,
    rules: Optional[ItineraryRules] = None,
    rates: Optional[CostRates] = None,
    limits: Optional[SearchLimits] = None,
    time_factor: float = 1.0,
    coverage_limit: Optional[int] = None,
) -> PlanningContext:
    """Validate the inputs of a planning run and bundle them.

    ``distances`` is either a :class:`TravelMatrix` (``durations`` and
    ``time_factor`` are then ignored) or a raw square distance matrix. Row 0 is
    the depot and rows ``1..n`` follow the active points in order. When
    ``coverage_limit`` trims the active points, a matrix covering all of them
    is sliced to match.
    """
    active = [p for p in points if p.active]
    planned = active[:coverage_limit] if coverage_limit is not None else active
    if isinstance(distances, TravelMatrix):
        matrix = distances
    else:
        if durations is None:
            raise ValueError("a duration matrix is required")
        matrix = TravelMatrix.build(distances, durations, time_factor=time_factor)

    if matrix.size == len(active) + 1 and len(planned) < len(active):
        matrix = matrix.submatrix(range(len(planned) + 1))
    if matrix.size != len(planned) + 1:
        raise ValueError(
            f"matrix dimension {matrix.size} does not match {len(planned)} "
            "active points plus the depot"
        )

    seen: Dict[str, int] = {}
    for p in planned:
        seen[p.name] = seen.get(p.name, 0) + 1
    duplicates = sorted(name for name, count in seen.items() if count > 1)
    if duplicates:
        logger.warning("Duplicate point names make day logs ambiguous: %s", ", ".join(duplicates))

    return PlanningContext(
        locations=(depot,) + tuple(planned),
        matrix=matrix,
        rules=rules or ItineraryRules(),
        rates=rates or CostRates(),
        limits=limits or SearchLimits(),
    )


def select_seed(unassigned: Sequence[int], context: PlanningContext) -> int:
    """Farthest reachable unassigned point from the depot.

    Ties go to the first point in input order. If the depot reaches none of
    them, the first unassigned point is returned.
    """
    depot_row = context.matrix.distance_rows[0]
    seed = unassigned[0]
    best = -1.0
    for idx in unassigned:
        dist = depot_row[idx]
        if dist != float("inf") and dist > best:
            best = dist
            seed = idx
    threshold = context.limits.pc_seed_threshold_minutes
    if threshold is not None and context.matrix.duration(0, seed) > threshold:
        seed = _reanchor_seed(seed, unassigned, context)
    return seed


def _reanchor_seed(seed: int, unassigned: Sequence[int], context: PlanningContext) -> int:
    """Start distant clusters at the PC closest to ``seed``."""
    row = context.matrix.distance_rows[seed]
    best_idx = seed
    best_dist = float("inf")
    for idx in unassigned:
        if context.locations[idx].category != planner_utils.PC:
            continue
        if row[idx] < best_dist:
            best_dist = row[idx]
            best_idx = idx
    if best_idx != seed:
        logger.info(
            "Seed %s is far from the depot; starting at PC %s instead",
            context.locations[seed].name,
            context.locations[best_idx].name,
        )
    return best_idx


def _route_from_candidate(route_id: int, candidate: ClusterCandidate, context: PlanningContext) -> Route:
    itinerary = candidate.itinerary
    return Route(
        id=route_id,
        name=f"Route {route_id}",
        points=tuple(context.locations[i] for i in candidate.order),
        logs=itinerary.logs,
        breakdown=candidate.breakdown,
        distance_km=candidate.distance_km,
        nights=itinerary.nights,
        days=itinerary.days,
    )


def _fallback_route(route_id: int, seed: int, context: PlanningContext) -> Route:
    """Single-point route for a seed no feasible cluster could hold."""
    matrix = context.matrix
    if matrix.is_reachable(0, seed) and matrix.is_reachable(seed, 0):
        warning = (
            f"round trip exceeds the {context.limits.max_route_days}-day route limit"
        )
    else:
        warning = "no reachable connection between the depot and this point"
        matrix = matrix.without_unreachable()
    itinerary = simulate_itinerary((0, seed), context, matrix=matrix)
    distance = matrix.distance(0, seed) + matrix.distance(seed, 0)
    point = context.locations[seed]
    breakdown = compute_cost(
        distance,
        itinerary.days,
        itinerary.nights,
        extra_activity_total([point]),
        context.rates,
    )
    logger.warning("Point %s planned as a policy-violation route: %s", point.name, warning)
    return Route(
        id=route_id,
        name=f"{WARNING_MARKER} Route {route_id} (policy violation)",
        points=(point,),
        logs=itinerary.logs,
        breakdown=breakdown,
        distance_km=distance,
        nights=itinerary.nights,
        days=itinerary.days,
        policy_violation=True,
        warning=warning,
    )


def plan_master_routes(
    context: PlanningContext,
    *,
    token: Optional[CancellationToken] = None,
    workers: int = 1,
    progress: bool = False,
    log_queue=None,
) -> MasterPlan:
    """Partition every point of ``context`` into routes.

    Each iteration seeds a route at the farthest unassigned point, carves out
    the best cluster around it and repeats until nothing is left.

    Args:
        context: Planning inputs.
        token: Optional cancellation token checked before every iteration and
            during the cluster search.
        workers: Number of processes used to evaluate clusters. ``1`` keeps
            everything in this process.
        progress: Show a progress bar over covered points.
        log_queue: Queue the worker processes log to.

    Returns:
        The :class:`MasterPlan`.

    Raises:
        PlanningCancelled: if ``token`` is cancelled before the plan is complete.
    """
    unassigned: List[int] = list(range(1, len(context.locations)))
    routes: List[Route] = []

    if workers > 1 and len(unassigned) > 1:
        ctx = multiprocessing.get_context("spawn")
        pool_cm = ctx.Pool(
            processes=workers,
            initializer=worker_init_search,
            initargs=(context, log_queue),
        )
    else:
        pool_cm = contextlib.nullcontext()

    with pool_cm as pool, tqdm(
        total=len(unassigned), desc="Assigning points", unit="point", disable=not progress
    ) as pbar:
        while unassigned:
            if token is not None and token.cancelled:
                logger.warning("Planning cancelled after %d routes", len(routes))
                raise PlanningCancelled(
                    f"planning cancelled with {len(unassigned)} points unassigned"
                )
            seed = select_seed(unassigned, context)
            try:
                candidate = search_best_cluster(seed, unassigned, context, token=token, pool=pool)
            except PlanningCancelled:
                logger.warning(
                    "Planning cancelled during the search around %s after %d routes",
                    context.locations[seed].name,
                    len(routes),
                )
                raise
            route_id = len(routes) + 1
            if candidate is not None:
                route = _route_from_candidate(route_id, candidate, context)
                covered = set(candidate.order)
            else:
                route = _fallback_route(route_id, seed, context)
                covered = {seed}
            routes.append(route)
            unassigned = [idx for idx in unassigned if idx not in covered]
            pbar.update(len(covered))
            logger.info(
                "%s: %s | %d days, %d nights, %.1f km, cost %.2f",
                route.name,
                ", ".join(route.point_names),
                route.days,
                route.nights,
                route.distance_km,
                route.total_cost,
            )

    plan = MasterPlan.from_routes(routes)
    logger.info(
        "Planned %d routes covering %d points, total cost %.2f",
        len(plan.routes),
        plan.points_covered,
        plan.total_system_cost,
    )
    return plan


def format_route_summary(route: Route) -> str:
    return (
        f"{route.name}: {' -> '.join(route.point_names)} | "
        f"{route.days} days, {route.nights} nights, {route.distance_km:.1f} km, "
        f"cost {route.total_cost:.2f}"
    )


def write_plan_json(plan: MasterPlan, path: str) -> None:
    out_dir = os.path.dirname(path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    with open(path, "w") as f:
        json.dump(planner_utils.plan_to_dict(plan), f, indent=2, ensure_ascii=False)


class TqdmWriteHandler(logging.Handler):
    def emit(self, record):
        try:
            tqdm.write(self.format(record), file=sys.stderr)
        except OSError:
            self.handleError(record)


def main(argv=None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    # Determine configuration file location before parsing full args
    config_path = None
    for i, arg in enumerate(argv):
        if arg == "--config" and i + 1 < len(argv):
            config_path = argv[i + 1]
            break
        if arg.startswith("--config="):
            config_path = arg.split("=", 1)[1]
            break
    if config_path is None:
        default_yaml = os.path.join("config", "planner_config.yaml")
        default_json = os.path.join("config", "planner_config.json")
        if os.path.exists(default_yaml):
            config_path = default_yaml
        elif os.path.exists(default_json):
            config_path = default_json

    config_defaults: Dict[str, object] = asdict(PlannerConfig())
    if config_path and os.path.exists(config_path):
        try:
            config_defaults = asdict(load_config(config_path))
        except (OSError, ValueError, TypeError, json.JSONDecodeError) as e:
            logger.error("Failed to load config %s: %s", config_path, e)

    parser = argparse.ArgumentParser(description="Multi-day field visit route planner")
    parser.set_defaults(**config_defaults)
    parser.add_argument("--config", default=config_path, help="Path to config YAML or JSON file")
    parser.add_argument(
        "--points",
        required=not config_defaults.get("points"),
        help="CSV or JSON file with the points to visit",
    )
    parser.add_argument(
        "--distances",
        required=not config_defaults.get("distances"),
        help="Header-less CSV distance matrix in km (row 0 = depot)",
    )
    parser.add_argument(
        "--durations",
        required=not config_defaults.get("durations"),
        help="Header-less CSV duration matrix in minutes (row 0 = depot)",
    )
    parser.add_argument("--depot-lat", type=float, help="Depot latitude")
    parser.add_argument("--depot-lon", type=float, help="Depot longitude")
    parser.add_argument("--depot-name", help="Depot display name")
    parser.add_argument("--pc-duration", type=float, help="Service minutes at a PC point")
    parser.add_argument("--oc-duration", type=float, help="Service minutes at an OC point")
    parser.add_argument("--cost-per-km", type=float, help="Fuel cost per km")
    parser.add_argument("--food-per-day", type=float, help="Food allowance per day")
    parser.add_argument("--hotel-per-night", type=float, help="Hotel cost per night")
    parser.add_argument(
        "--time-factor",
        type=float,
        help="Multiplier applied to every travel duration",
    )
    parser.add_argument(
        "--coverage-limit",
        type=int,
        help="Plan only the first N active points",
    )
    parser.add_argument(
        "--max-route-days",
        type=int,
        help="Maximum number of days a single route may span",
    )
    parser.add_argument(
        "--search-pool-size",
        type=int,
        help="Nearest neighbours considered around each seed",
    )
    parser.add_argument(
        "--max-cluster-size",
        type=int,
        help="Maximum number of points per route",
    )
    parser.add_argument(
        "--dispersion-per-km",
        type=float,
        help="Score penalty per km of route distance",
    )
    parser.add_argument(
        "--pc-seed-threshold-minutes",
        type=float,
        help="Re-anchor seeds farther than this from the depot at the nearest PC",
    )
    parser.add_argument(
        "--pc-overnight-only",
        action="store_true",
        default=config_defaults.get("pc_overnight_only", False),
        help="Only spend nights at PC points, detouring from OC points",
    )
    parser.add_argument(
        "--workers",
        type=int,
        help="Number of worker processes for the cluster search",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Cancel the run after this many seconds",
    )
    parser.add_argument("--output", help="Where to write the plan as JSON")
    parser.add_argument(
        "--review",
        action="store_true",
        default=config_defaults.get("review", False),
        help="Check the plan for inconsistencies and save the review",
    )
    parser.add_argument("--verbose", action="store_true", help="Log progress details")
    parser.add_argument("--quiet", action="store_true", help="Hide the progress bar")
    args = parser.parse_args(argv)

    fields = set(PlannerConfig.__dataclass_fields__)
    cfg = PlannerConfig(**{k: v for k, v in vars(args).items() if k in fields})

    # Setup queue-based logging shared with the worker processes
    log_queue = multiprocessing.get_context("spawn").Queue(-1)
    tqdm_handler = TqdmWriteHandler()
    tqdm_handler.setFormatter(logging.Formatter("%(levelname)s: %(name)s: %(message)s"))
    listener = QueueListener(log_queue, tqdm_handler)
    listener.start()

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(logging.INFO if args.verbose else logging.WARNING)
    queue_handler = QueueHandler(log_queue)
    root_logger.addHandler(queue_handler)

    token = CancellationToken(timeout=cfg.timeout)
    previous_sigint = signal.signal(signal.SIGINT, lambda signum, frame: token.cancel())
    try:
        points = planner_utils.load_points(cfg.points)
        matrix = planner_utils.load_matrix(cfg.distances, cfg.durations, cfg.time_factor)
        depot = Point.depot(cfg.depot_lat, cfg.depot_lon, cfg.depot_name)
        context = build_planning_context(
            depot,
            points,
            matrix,
            rules=cfg.itinerary_rules(),
            rates=cfg.cost_rates(),
            limits=cfg.search_limits(),
            coverage_limit=cfg.coverage_limit,
        )
        logger.info(
            "Planning %d points with %d worker(s)", len(context.points), max(cfg.workers, 1)
        )
        plan = plan_master_routes(
            context,
            token=token,
            workers=cfg.workers,
            progress=not args.quiet,
            log_queue=log_queue,
        )
    except (OSError, ValueError) as e:
        logger.error("Cannot plan routes: %s", e)
        return 1
    except PlanningCancelled as e:
        logger.error("Route planning cancelled: %s", e)
        return 2
    finally:
        signal.signal(signal.SIGINT, previous_sigint)
        rss_mb = psutil.Process(os.getpid()).memory_info().rss / (1024**2)
        logger.info("Memory after planning: %.2f MB", rss_mb)
        listener.stop()
        root_logger.removeHandler(queue_handler)

    for route in plan.routes:
        print(format_route_summary(route))
    print(
        f"Total: {len(plan.routes)} routes, {plan.points_covered} points, "
        f"{plan.total_days} days, {plan.total_nights} nights, "
        f"{plan.total_distance_km:.1f} km, cost {plan.total_system_cost:.2f}"
    )

    write_plan_json(plan, cfg.output)
    print(f"Plan written to {cfg.output}")

    if cfg.review:
        review = plan_review.review_plan(plan, context)
        run_id = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
        review_path = plan_review.save_review(review, run_id)
        for message in review["errors"]:
            print(f"ERROR: {message}")
        for message in review["warnings"]:
            print(f"WARNING: {message}")
        print(f"Review saved to {review_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
