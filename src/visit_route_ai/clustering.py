"""
Bounded cluster search around a seed point.

Given a seed and the points still waiting for a route, the search looks at the
seed's nearest reachable neighbours, enumerates every subset of them up to the
maximum cluster size and every visiting order of each subset, and keeps the
cluster with the lowest average cost per point.
"""
from dataclasses import dataclass
from itertools import combinations, permutations
from typing import Iterator, List, Optional, Sequence, Tuple
import logging
import math
from multiprocessing.pool import Pool
import os
import signal
from logging.handlers import QueueHandler

from .cancellation import CancellationToken
from .costing import compute_cost, extra_activity_total
from .itinerary import simulate_itinerary
from .planner_utils import CostBreakdown, ItineraryResult, PlanningContext, TravelMatrix

logger = logging.getLogger(__name__)

SEARCH_POOL_SIZE = 9
MAX_CLUSTER_SIZE = 6
MAX_ROUTE_DAYS = 5


@dataclass(frozen=True)
class SearchLimits:
    search_pool_size: int = SEARCH_POOL_SIZE
    max_cluster_size: int = MAX_CLUSTER_SIZE
    max_route_days: int = MAX_ROUTE_DAYS
    dispersion_per_km: float = 0.0
    pc_seed_threshold_minutes: Optional[float] = None

    def __post_init__(self) -> None:
        if self.search_pool_size < 0:
            raise ValueError("search pool size must not be negative")
        if self.max_cluster_size < 1:
            raise ValueError("clusters must hold at least the seed point")
        if self.max_route_days < 1:
            raise ValueError("route-day cap must be at least one day")


@dataclass(frozen=True)
class ClusterCandidate:
    order: Tuple[int, ...]
    itinerary: ItineraryResult
    breakdown: CostBreakdown
    distance_km: float
    score: float

    @property
    def total_cost(self) -> float:
        return self.breakdown.total

    @property
    def size(self) -> int:
        return len(self.order)


def rank_neighbors(
    seed: int,
    unassigned: Sequence[int],
    matrix: TravelMatrix,
    pool_size: int,
) -> List[int]:
    """Return the ``pool_size`` reachable points closest to ``seed``.

    Ties keep their order in ``unassigned``.
    """
    row = matrix.distance_rows[seed]
    reachable = [i for i in unassigned if i != seed and math.isfinite(row[i])]
    reachable.sort(key=lambda i: row[i])
    return reachable[:pool_size]


def iter_subsets(pool: Sequence[int], max_extra: int) -> Iterator[Tuple[int, ...]]:
    """Yield every subset of ``pool`` with at most ``max_extra`` members.

    Subsets come by size, then in lexicographic position order, the empty
    subset first.
    """
    for k in range(min(len(pool), max_extra) + 1):
        yield from combinations(pool, k)


def path_distance(order: Sequence[int], matrix: TravelMatrix) -> Optional[float]:
    """Distance of ``depot -> order -> depot`` or ``None`` if a leg is unreachable."""
    total = 0.0
    prev = 0
    for idx in list(order) + [0]:
        if not matrix.is_reachable(prev, idx):
            return None
        total += matrix.distance(prev, idx)
        prev = idx
    return total


def cluster_score(total_cost: float, size: int, distance_km: float, limits: SearchLimits) -> float:
    """Average cost per point, optionally penalised by route length."""
    return (total_cost / size) * (1.0 + distance_km * limits.dispersion_per_km)


def evaluate_subset(
    seed: int,
    subset: Sequence[int],
    context: PlanningContext,
) -> Optional[ClusterCandidate]:
    """Cheapest feasible visiting order of ``{seed} + subset``."""
    cluster = (seed,) + tuple(subset)
    extras = extra_activity_total(context.locations[i] for i in cluster)
    max_days = context.limits.max_route_days

    best: Optional[ClusterCandidate] = None
    for order in permutations(cluster):
        distance = path_distance(order, context.matrix)
        if distance is None:
            continue
        itinerary = simulate_itinerary((0,) + order, context)
        if itinerary.days > max_days:
            continue
        breakdown = compute_cost(distance, itinerary.days, itinerary.nights, extras, context.rates)
        if best is None or breakdown.total < best.total_cost:
            best = ClusterCandidate(
                order=order,
                itinerary=itinerary,
                breakdown=breakdown,
                distance_km=distance,
                score=cluster_score(breakdown.total, len(order), distance, context.limits),
            )
    return best


# Worker process state, installed once per pool by ``worker_init_search``
_worker_context: Optional[PlanningContext] = None


def worker_log_setup(q) -> None:
    """Send this worker's log records to the parent through ``q``."""
    worker_root_logger = logging.getLogger()
    worker_root_logger.handlers.clear()
    worker_root_logger.addHandler(QueueHandler(q))
    worker_root_logger.setLevel(logging.INFO)


def worker_init_search(context: PlanningContext, log_q=None) -> None:
    """Initializes a search worker with the planning context and queue logging."""
    global _worker_context
    _worker_context = context
    # Ctrl-C is handled by the parent, which cancels the run and terminates the pool
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    if log_q is not None:
        worker_log_setup(log_q)


def evaluate_subset_worker(
    task: Tuple[int, Tuple[int, ...]],
) -> Optional[ClusterCandidate]:
    """Pool entry point for :func:`evaluate_subset`."""
    if _worker_context is None:
        raise RuntimeError(f"search worker {os.getpid()} was not initialized")
    seed, subset = task
    return evaluate_subset(seed, subset, _worker_context)


def _evaluate_inline(
    seed: int,
    subsets: Iterator[Tuple[int, ...]],
    context: PlanningContext,
    token: Optional[CancellationToken],
) -> Iterator[Optional[ClusterCandidate]]:
    for subset in subsets:
        if token is not None:
            token.raise_if_cancelled()
        yield evaluate_subset(seed, subset, context)


def search_best_cluster(
    seed: int,
    unassigned: Sequence[int],
    context: PlanningContext,
    token: Optional[CancellationToken] = None,
    pool: Optional[Pool] = None,
) -> Optional[ClusterCandidate]:
    """Return the cluster around ``seed`` with the lowest average cost per point.

    Args:
        seed: Location index the cluster must contain.
        unassigned: Location indices still without a route (may include the seed).
        context: Planning inputs.
        token: Optional cancellation token, checked for every subset.
        pool: Optional worker pool initialized with :func:`worker_init_search`.

    Returns:
        The winning :class:`ClusterCandidate`, or ``None`` if no ordering of
        any subset, the seed alone included, is feasible.
    """
    limits = context.limits
    neighbors = rank_neighbors(seed, unassigned, context.matrix, limits.search_pool_size)
    subsets = iter_subsets(neighbors, limits.max_cluster_size - 1)
    logger.debug("Seed %d: searching %d neighbours", seed, len(neighbors))

    if pool is None:
        results = _evaluate_inline(seed, subsets, context, token)
    else:
        results = pool.imap(
            evaluate_subset_worker, ((seed, subset) for subset in subsets), chunksize=4
        )

    best: Optional[ClusterCandidate] = None
    for candidate in results:
        if token is not None:
            token.raise_if_cancelled()
        if candidate is None:
            continue
        if best is None or candidate.score < best.score:
            best = candidate

    if best is not None:
        logger.debug(
            "Seed %d: best cluster %s cost=%.2f score=%.2f",
            seed,
            best.order,
            best.total_cost,
            best.score,
        )
    return best
