"""Budget allocation for jobs staffed by one or more workers.

Everything here is pure: callers pass the job's current figures, which must be
re-read under the job lock each time a contract is created, because every
accepted proposal shrinks the remaining budget.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

from escrowline.errors import BudgetExceededError, CapacityExceededError, ValidationError
from escrowline.types import CENT

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(slots=True, frozen=True)
class AllocationRequest:
    budget: Decimal
    allocated_total: Decimal
    max_workers: int
    filled_slots: int
    proposed_price: Decimal | None = None
    override_amount: Decimal | None = None

    @property
    def remaining_budget(self) -> Decimal:
        return self.budget - self.allocated_total

    @property
    def open_slots(self) -> int:
        return self.max_workers - self.filled_slots


@dataclass(slots=True, frozen=True)
class Allocation:
    allocated_amount: Decimal
    percentage_of_budget: Decimal


def percentage_of(amount: Decimal, budget: Decimal) -> Decimal:
    if budget <= ZERO:
        return ZERO
    return (amount / budget * HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_commission(amount: Decimal, rate: Decimal) -> Decimal:
    return (amount * rate).quantize(CENT, rounding=ROUND_HALF_UP)


def allocate(request: AllocationRequest) -> Allocation:
    """Compute the next worker's share of the job budget.

    An explicit override is used as-is and must fit the remaining budget. A
    proposed price is clamped to the remaining budget. Without either, the
    remaining budget is split evenly across the unfilled slots, rounded down
    to the cent so the sum of shares never exceeds the budget.
    """
    if request.max_workers < 1:
        raise ValidationError("max_workers must be at least 1")
    if request.open_slots <= 0:
        raise CapacityExceededError(
            "job is fully staffed",
            max_workers=request.max_workers,
            filled_slots=request.filled_slots,
        )

    remaining = request.remaining_budget
    if remaining <= ZERO:
        raise BudgetExceededError("job has no remaining budget", remaining_budget=str(remaining))

    if request.override_amount is not None:
        amount = request.override_amount.quantize(CENT)
        if amount <= ZERO:
            raise ValidationError("allocated amount must be positive")
        if amount > remaining:
            raise BudgetExceededError(
                "allocation exceeds the job's remaining budget",
                requested=str(amount),
                remaining_budget=str(remaining),
            )
    elif request.proposed_price is not None:
        if request.proposed_price <= ZERO:
            raise ValidationError("proposed price must be positive")
        amount = min(request.proposed_price.quantize(CENT), remaining)
    else:
        amount = (remaining / request.open_slots).quantize(CENT, rounding=ROUND_DOWN)
        if amount <= ZERO:
            raise BudgetExceededError("remaining budget is too small to split", remaining_budget=str(remaining))

    return Allocation(allocated_amount=amount, percentage_of_budget=percentage_of(amount, request.budget))


def check_budget_increase(*, budget: Decimal, allocated_total: Decimal, increase: Decimal) -> None:
    if increase > ZERO and allocated_total + increase > budget:
        raise BudgetExceededError(
            "change exceeds the job's remaining budget",
            requested=str(increase),
            remaining_budget=str(budget - allocated_total),
        )
