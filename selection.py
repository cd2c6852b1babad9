import logging
from typing import Dict, List, Sequence

import numpy as np

from data import ConfigurationError, ScheduleResult

logger = logging.getLogger(__name__)

VARIANT_TAGS = ("perfect-equity", "best-makespan", "best-work", "min-sum", "baseline")


def _stable_sort(results: Sequence[ScheduleResult], key: str) -> List[ScheduleResult]:
    values = np.array([getattr(r, key) for r in results], dtype=float)
    return [results[i] for i in np.argsort(values, kind='stable')]


def sort_by_makespan(results: Sequence[ScheduleResult]) -> List[ScheduleResult]:
    return _stable_sort(results, 'makespan')


def sort_by_work(results: Sequence[ScheduleResult]) -> List[ScheduleResult]:
    return _stable_sort(results, 'work')


def get_baseline(results: Sequence[ScheduleResult]) -> ScheduleResult:
    """The schedule obtained when assuming the whole cluster, i.e. the plain CPA allocation."""
    if not results:
        raise ConfigurationError("No schedule result to select from")
    return max(results, key=lambda r: r.assumed_cluster_size)


def get_non_dominated_schedules(results: Sequence[ScheduleResult]) -> List[ScheduleResult]:
    """
    Pareto front of the results for (makespan, work).

    Results are sorted by increasing makespan; the first one is kept, then each
    following one is kept if its work does not exceed the work of the last kept
    result. The front therefore has non-increasing work values.
    """
    if not results:
        raise ConfigurationError("No schedule result to select from")
    ordered = sort_by_makespan(results)
    front = [ordered[0]]
    for result in ordered[1:]:
        if result.work <= front[-1].work:
            front.append(result)
    return front


def get_best_makespan(results: Sequence[ScheduleResult], baseline: ScheduleResult) -> ScheduleResult:
    """Smallest makespan among the results that do not consume more work than the baseline."""
    for result in sort_by_makespan(results):
        if result.work <= baseline.work:
            return result
    return baseline


def get_best_work(results: Sequence[ScheduleResult], baseline: ScheduleResult) -> ScheduleResult:
    """Smallest work among the results that are not slower than the baseline."""
    for result in sort_by_work(results):
        if result.makespan <= baseline.makespan:
            return result
    return baseline


def get_bicriteria_tradeoff(front: Sequence[ScheduleResult], baseline: ScheduleResult,
                            perfect_equity: bool = True) -> ScheduleResult:
    """
    Pick a trade-off on the Pareto front, both criteria being normalized by
    the baseline values.

    Args:
        front: Non-dominated results.
        baseline: Reference result (assumed cluster size = N).
        perfect_equity: If True, minimize |1 - (work ratio / makespan ratio)|,
            i.e. favor a balanced degradation of both criteria. Otherwise
            minimize (work ratio + makespan ratio).

    Returns:
        The first result reaching the minimal score.
    """
    if not front:
        raise ConfigurationError("Empty Pareto front")
    if baseline.makespan <= 0.0 or baseline.work <= 0.0:
        logger.warning("Degenerate baseline (null makespan or work), keeping the first non-dominated result")
        return front[0]

    makespan_ratios = np.array([r.makespan for r in front], dtype=float) / baseline.makespan
    work_ratios = np.array([r.work for r in front], dtype=float) / baseline.work
    if perfect_equity:
        with np.errstate(divide='ignore', invalid='ignore'):
            scores = np.abs(1.0 - work_ratios / makespan_ratios)
        scores = np.where(np.isfinite(scores), scores, np.inf)
    else:
        scores = work_ratios + makespan_ratios

    for result, m, w, score in zip(front, makespan_ratios, work_ratios, scores):
        logger.debug(f"{result.assumed_cluster_size} : score {score:f} ({m:f} {w:f})")

    return front[int(np.argmin(scores))]


def select_variants(results: Sequence[ScheduleResult]) -> Dict[str, ScheduleResult]:
    """
    Select the representative trade-offs among the results of all evaluation rounds.

    Returns:
        Mapping tag -> selected result, ordered as VARIANT_TAGS.
    """
    baseline = get_baseline(results)
    front = get_non_dominated_schedules(results)
    logger.debug("Non-dominated schedules: " +
                 ", ".join(f"{r.assumed_cluster_size} ({r.makespan:.3f}, {r.work:.3f})" for r in front))

    return {
        "perfect-equity": get_bicriteria_tradeoff(front, baseline, perfect_equity=True),
        "best-makespan": get_best_makespan(results, baseline),
        "best-work": get_best_work(results, baseline),
        "min-sum": get_bicriteria_tradeoff(front, baseline, perfect_equity=False),
        "baseline": baseline,
    }
