from __future__ import annotations

from dataclasses import dataclass, field

from escrowline.errors import InvalidTransitionError


@dataclass(slots=True, frozen=True)
class TransitionTable:
    entity: str
    allowed: dict[str, frozenset[str]]
    # admin reconciliation edges, never taken by the normal lifecycle
    repairs: dict[str, frozenset[str]] = field(default_factory=dict)

    def can(self, current: str, target: str) -> bool:
        return target in self.allowed.get(current, frozenset())

    def can_repair(self, current: str, target: str) -> bool:
        return target in self.repairs.get(current, frozenset())

    def is_terminal(self, status: str) -> bool:
        return not self.allowed.get(status)

    def ensure(self, current: str, target: str) -> None:
        if current not in self.allowed:
            raise ValueError(f"unknown {self.entity} status '{current}'")
        if not self.can(current, target):
            raise InvalidTransitionError(
                f"{self.entity} cannot move from '{current}' to '{target}'",
                current=current,
                target=target,
            )


def _table(
    entity: str,
    edges: dict[str, set[str]],
    repairs: dict[str, set[str]] | None = None,
) -> TransitionTable:
    return TransitionTable(
        entity=entity,
        allowed={key: frozenset(value) for key, value in edges.items()},
        repairs={key: frozenset(value) for key, value in (repairs or {}).items()},
    )


_CONTRACT_LIVE = {"pending", "ready", "accepted", "in_progress", "awaiting_confirmation"}

CONTRACT_TRANSITIONS = _table(
    "contract",
    {
        "pending": {"ready", "cancelled", "disputed"},
        "ready": {"accepted", "cancelled", "disputed"},
        "accepted": {"in_progress", "awaiting_confirmation", "cancelled", "disputed"},
        "in_progress": {"awaiting_confirmation", "cancelled", "disputed"},
        "awaiting_confirmation": {"completed", "cancelled", "disputed"},
        # Live targets are only used when a dispute is withdrawn.
        "disputed": {"completed", "cancelled"} | _CONTRACT_LIVE,
        "completed": set(),
        "cancelled": set(),
    },
)

PAYMENT_TRANSITIONS = _table(
    "payment",
    {
        "pending": {"held_escrow", "refunded"},
        "held_escrow": {"confirmed_for_payout", "disputed", "refunded"},
        "confirmed_for_payout": {"completed", "disputed", "refunded"},
        "disputed": {"held_escrow", "confirmed_for_payout", "refunded", "partially_refunded"},
        "completed": set(),
        "refunded": set(),
        "partially_refunded": set(),
    },
    repairs={
        "held_escrow": {"completed"},
        "confirmed_for_payout": {"completed"},
    },
)

PROPOSAL_TRANSITIONS = _table(
    "proposal",
    {
        "pending": {"approved", "rejected", "withdrawn"},
        "approved": set(),
        "rejected": set(),
        "withdrawn": set(),
    },
)

JOB_TRANSITIONS = _table(
    "job",
    {
        "draft": {"pending_payment", "pending_approval", "open", "cancelled"},
        "pending_payment": {"pending_approval", "open", "cancelled"},
        "pending_approval": {"open", "cancelled", "suspended"},
        "open": {"in_progress", "paused", "cancelled", "suspended"},
        "in_progress": {"open", "completed", "suspended"},
        "paused": {"open", "cancelled"},
        "suspended": {"open", "cancelled"},
        "completed": set(),
        "cancelled": set(),
    },
)

DISPUTE_TRANSITIONS = _table(
    "dispute",
    {
        "open": {"in_review", "awaiting_info", "resolved_released", "resolved_refunded", "resolved_partial", "cancelled"},
        "in_review": {"awaiting_info", "resolved_released", "resolved_refunded", "resolved_partial", "cancelled"},
        "awaiting_info": {"in_review", "resolved_released", "resolved_refunded", "resolved_partial", "cancelled"},
        "resolved_released": set(),
        "resolved_refunded": set(),
        "resolved_partial": set(),
        "cancelled": set(),
    },
)

WITHDRAWAL_TRANSITIONS = _table(
    "withdrawal",
    {
        "pending": {"approved", "rejected", "cancelled"},
        "approved": {"processing", "rejected", "cancelled"},
        "processing": {"completed"},
        "completed": set(),
        "rejected": set(),
        "cancelled": set(),
    },
)

# Statuses in which a contract still holds its slot and allocation on the job.
ACTIVE_CONTRACT_STATUSES = frozenset(_CONTRACT_LIVE | {"completed", "disputed"})
