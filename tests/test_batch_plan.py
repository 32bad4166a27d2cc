from __future__ import annotations

import math

import pytest

from server.dispatch import BatchPlan, percent


@pytest.mark.parametrize("n,b", [(0, 100), (1, 100), (99, 100), (100, 100), (101, 100), (250, 100), (7, 3), (10, 1)])
def test_batches_partition_recipients_in_order(n: int, b: int) -> None:
    recipients = [str(i) for i in range(n)]
    plan = BatchPlan(recipients, b)

    assert plan.count == math.ceil(n / b)
    for i in range(plan.count):
        assert len(plan.batch(i)) == min(b, n - i * b)
    rebuilt = [r for batch in plan for r in batch]
    assert rebuilt == recipients


def test_250_recipients_make_three_batches() -> None:
    plan = BatchPlan([str(i) for i in range(250)], 100)
    assert [len(b) for b in plan] == [100, 100, 50]
    assert plan.batch(2)[0] == "200"


def test_zero_recipients_make_zero_batches() -> None:
    plan = BatchPlan([], 100)
    assert plan.count == 0
    assert list(plan) == []


def test_out_of_range_batch_raises() -> None:
    plan = BatchPlan(["a", "b"], 1)
    with pytest.raises(IndexError):
        plan.batch(2)
    with pytest.raises(IndexError):
        plan.batch(-1)


def test_batch_size_must_be_positive() -> None:
    with pytest.raises(ValueError):
        BatchPlan(["a"], 0)


def test_percent_is_bounded_integer() -> None:
    assert percent(0, 0) == 0
    assert percent(1, 3) == 33
    assert percent(3, 3) == 100
    assert percent(5, 3) == 100
