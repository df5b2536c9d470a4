from __future__ import annotations

from decimal import Decimal

import pytest

from escrowline.core.allocation import (
    AllocationRequest,
    allocate,
    check_budget_increase,
    compute_commission,
    percentage_of,
)
from escrowline.errors import BudgetExceededError, CapacityExceededError, ValidationError


def _request(**overrides: object) -> AllocationRequest:
    values: dict[str, object] = {
        "budget": Decimal("10000"),
        "allocated_total": Decimal("0"),
        "max_workers": 2,
        "filled_slots": 0,
    }
    values.update(overrides)
    return AllocationRequest(**values)  # type: ignore[arg-type]


def test_proposed_price_is_used_when_it_fits() -> None:
    allocation = allocate(_request(proposed_price=Decimal("6000")))
    assert allocation.allocated_amount == Decimal("6000.00")
    assert allocation.percentage_of_budget == Decimal("60.00")


def test_remaining_budget_is_split_evenly_across_open_slots() -> None:
    allocation = allocate(_request(allocated_total=Decimal("6000"), filled_slots=1))
    assert allocation.allocated_amount == Decimal("4000.00")


def test_even_split_rounds_down_to_the_cent() -> None:
    allocation = allocate(_request(budget=Decimal("100"), max_workers=3))
    assert allocation.allocated_amount == Decimal("33.33")


def test_proposed_price_is_clamped_to_remaining_budget() -> None:
    allocation = allocate(_request(allocated_total=Decimal("8000"), filled_slots=1, proposed_price=Decimal("5000")))
    assert allocation.allocated_amount == Decimal("2000.00")


def test_override_above_remaining_budget_is_rejected() -> None:
    with pytest.raises(BudgetExceededError):
        allocate(_request(allocated_total=Decimal("8000"), filled_slots=1, override_amount=Decimal("2500")))


def test_override_must_be_positive() -> None:
    with pytest.raises(ValidationError):
        allocate(_request(override_amount=Decimal("0")))


def test_full_job_raises_capacity_error() -> None:
    with pytest.raises(CapacityExceededError):
        allocate(_request(allocated_total=Decimal("10000"), filled_slots=2))


def test_exhausted_budget_raises_budget_error() -> None:
    with pytest.raises(BudgetExceededError):
        allocate(_request(allocated_total=Decimal("10000"), filled_slots=1))


def test_commission_and_percentage_round_half_up() -> None:
    assert compute_commission(Decimal("1000"), Decimal("0.10")) == Decimal("100.00")
    assert compute_commission(Decimal("0.05"), Decimal("0.10")) == Decimal("0.01")
    assert percentage_of(Decimal("1"), Decimal("3")) == Decimal("33.33")
    assert percentage_of(Decimal("5"), Decimal("0")) == Decimal("0")


def test_budget_increase_check() -> None:
    check_budget_increase(budget=Decimal("1000"), allocated_total=Decimal("900"), increase=Decimal("100"))
    check_budget_increase(budget=Decimal("1000"), allocated_total=Decimal("1000"), increase=Decimal("-50"))
    with pytest.raises(BudgetExceededError):
        check_budget_increase(budget=Decimal("1000"), allocated_total=Decimal("900"), increase=Decimal("100.01"))
