import logging

import pytest

from data import ConfigurationError, ScheduleResult
from selection import (VARIANT_TAGS, get_baseline, get_best_makespan, get_best_work, get_bicriteria_tradeoff,
                       get_non_dominated_schedules, select_variants, sort_by_makespan)


@pytest.fixture
def results():
    # (assumed size, makespan, work, peak)
    return [
        ScheduleResult(1, 100.0, 40.0, 1),
        ScheduleResult(2, 48.0, 50.0, 2),
        ScheduleResult(3, 40.0, 75.0, 3),
        ScheduleResult(4, 45.0, 90.0, 4),
        ScheduleResult(5, 50.0, 80.0, 5),
    ]


def test_baseline_is_the_largest_assumed_size(results):
    assert get_baseline(results).assumed_cluster_size == 5
    with pytest.raises(ConfigurationError):
        get_baseline([])


def test_non_dominated_schedules(results):
    front = get_non_dominated_schedules(results)
    assert [r.assumed_cluster_size for r in front] == [3, 2, 1]
    works = [r.work for r in front]
    assert works == sorted(works, reverse=True)


def test_single_criterion_picks(results):
    baseline = get_baseline(results)
    assert get_best_makespan(results, baseline).assumed_cluster_size == 3
    assert get_best_work(results, baseline).assumed_cluster_size == 2


def test_bicriteria_tradeoffs(results):
    baseline = get_baseline(results)
    front = get_non_dominated_schedules(results)
    assert get_bicriteria_tradeoff(front, baseline, perfect_equity=True).assumed_cluster_size == 3
    assert get_bicriteria_tradeoff(front, baseline, perfect_equity=False).assumed_cluster_size == 2


def test_select_variants(results):
    variants = select_variants(results)
    assert tuple(variants) == VARIANT_TAGS
    assert {tag: r.assumed_cluster_size for tag, r in variants.items()} == {
        "perfect-equity": 3,
        "best-makespan": 3,
        "best-work": 2,
        "min-sum": 2,
        "baseline": 5,
    }


def test_sort_is_stable_on_ties():
    tied = [ScheduleResult(k, 10.0, 20.0 - k, 1) for k in range(1, 5)]
    assert [r.assumed_cluster_size for r in sort_by_makespan(tied)] == [1, 2, 3, 4]
    # Equal makespans: each next one has less work, so all of them are kept
    assert len(get_non_dominated_schedules(tied)) == 4


def test_degenerate_baseline_keeps_first_of_front(caplog):
    results = [ScheduleResult(1, 0.0, 0.0, 0), ScheduleResult(2, 0.0, 0.0, 0)]
    front = get_non_dominated_schedules(results)
    with caplog.at_level(logging.WARNING):
        picked = get_bicriteria_tradeoff(front, get_baseline(results))
    assert picked.assumed_cluster_size == 1
    assert "Degenerate baseline" in caplog.text


def test_single_result_is_every_variant():
    only = ScheduleResult(1, 12.0, 12.0, 1)
    assert set(select_variants([only]).values()) == {only}
