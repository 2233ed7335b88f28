import pytest

from botcafe_retrieval.models.activation import ActivatedEntry, BudgetConfig
from botcafe_retrieval.models.core import ActivationMethod, BudgetControl, ExclusionReason, KnowledgeEntry, Positioning
from botcafe_retrieval.services.budget_manager import FORMATTING_OVERHEAD, BudgetManager
from botcafe_retrieval.utils.exceptions import InputError


def _candidate(entry_id, cost, score=1.0, ignore_budget=False, order=100) -> ActivatedEntry:
    entry = KnowledgeEntry(id=entry_id,
                           tenant_id='tenant-1',
                           text='x' * 40,
                           budget=BudgetControl(ignore_budget=ignore_budget, token_cost=cost),
                           positioning=Positioning(order=order))
    return ActivatedEntry(entry=entry, method=ActivationMethod.KEYWORD, score=score, token_cost=cost)


MANAGER = BudgetManager()


def test_budget_is_percentage_capped_and_reserved():
    assert MANAGER.calculate_budget(BudgetConfig(8000, 25.0, 2000, 0)) == 2000
    assert MANAGER.calculate_budget(BudgetConfig(4000, 25.0, 2000, 0)) == 1000
    assert MANAGER.calculate_budget(BudgetConfig(4000, 25.0, 2000, 300)) == 700
    assert MANAGER.calculate_budget(BudgetConfig(1000, 10.0, 2000, 500)) == 0
    assert MANAGER.calculate_budget(BudgetConfig(1001, 10.0, 2000, 0)) == 100


@pytest.mark.parametrize('config', [
    BudgetConfig(-1, 25.0, 2000, 0),
    BudgetConfig(8000, 120.0, 2000, 0),
    BudgetConfig(8000, 25.0, 2000, -5),
])
def test_invalid_budget_config(config):
    with pytest.raises(InputError):
        MANAGER.calculate_budget(config)


def test_entry_cost_uses_configured_cost_or_estimate():
    assert MANAGER.entry_cost(_candidate('a', 77)) == 77
    assert MANAGER.entry_cost(_candidate('b', 0)) == 10 + FORMATTING_OVERHEAD


def test_greedy_skips_entries_that_do_not_fit():
    big = _candidate('big', 60, score=9)
    medium = _candidate('medium', 50, score=5)
    small = _candidate('small', 30, score=1)

    used = MANAGER.apply_budget([small, medium, big], 100)

    assert used == 90
    assert big.included and small.included
    assert medium.exclusion_reason == ExclusionReason.BUDGET_EXCEEDED


def test_ignore_budget_entries_go_first_and_still_count():
    pinned = _candidate('pinned', 80, score=0.1, ignore_budget=True)
    scored = _candidate('scored', 30, score=50)

    used = MANAGER.apply_budget([scored, pinned], 100)

    assert used == 80
    assert pinned.included
    assert scored.exclusion_reason == ExclusionReason.BUDGET_EXCEEDED


def test_zero_budget_excludes_everything():
    candidates = [_candidate('a', 5), _candidate('b', 1)]

    assert MANAGER.apply_budget(candidates, 0) == 0
    assert all(c.exclusion_reason == ExclusionReason.BUDGET_EXCEEDED for c in candidates)


def test_already_excluded_candidates_are_not_reconsidered():
    lost = _candidate('lost', 5, score=99)
    lost.exclusion_reason = ExclusionReason.GROUP_SCORING_LOST

    assert MANAGER.apply_budget([lost], 100) == 0
    assert lost.exclusion_reason == ExclusionReason.GROUP_SCORING_LOST


def test_ties_break_on_order_then_id():
    first = _candidate('b', 10, score=5, order=1)
    second = _candidate('a', 10, score=5, order=2)
    third = _candidate('c', 10, score=5, order=2)

    assert sorted([third, second, first], key=MANAGER.priority_key) == [first, second, third]


def test_usage_stats():
    included = _candidate('a', 40, ignore_budget=True)
    excluded = _candidate('b', 10)
    excluded.exclusion_reason = ExclusionReason.BUDGET_EXCEEDED

    stats = MANAGER.get_usage_stats([included, excluded], 200)

    assert stats.used_budget == 40
    assert stats.remaining_budget == 160
    assert stats.percent_used == pytest.approx(20.0)
    assert stats.included_entries == 1
    assert stats.excluded_entries == 1
    assert stats.ignore_budget_entries == 1
    assert 'Used: 40 tokens (20.0%)' in MANAGER.format_budget_stats(stats)
