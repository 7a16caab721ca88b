"""Tests for the per-execution rate budget."""

import pytest

from commitcrawl.crawler.budget import RateBudget


def test_charge_decrements():
    budget = RateBudget(10, floor=2)
    assert budget.charge() is True
    assert budget.remaining() == 9
    assert budget.charge(3) is True
    assert budget.remaining() == 6
    assert budget.spent == 4


def test_refusal_leaves_counter_unchanged():
    """A charge that would cross the floor is refused without side effects."""
    budget = RateBudget(3, floor=2)
    assert budget.charge() is True
    assert budget.charge() is False
    assert budget.remaining() == 2
    assert budget.charge(5) is False
    assert budget.remaining() == 2
    assert budget.spent == 1


@pytest.mark.parametrize("initial, floor", [(0, 1), (1, 1), (5, 1), (50, 10), (7, 7)])
def test_never_spends_past_floor(initial, floor):
    budget = RateBudget(initial, floor=floor)
    while budget.charge():
        pass
    assert budget.spent == max(0, initial - floor)
    assert budget.remaining() == min(initial, floor)


def test_negative_remaining_clamped_to_zero():
    assert RateBudget(-4, floor=1).remaining() == 0


def test_invalid_arguments():
    with pytest.raises(ValueError):
        RateBudget(10, floor=-1)
    with pytest.raises(ValueError):
        RateBudget(10).charge(-1)
