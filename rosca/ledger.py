"""
Slot capacity bookkeeping for circle months.

Every claim recorded against a month counts as taken, whatever its status.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol, Sequence

from nonebot.log import logger

from .errors import PersistedInvariantViolation


class SlotHolder(Protocol):
    member_id: int
    slot_count: int


class MonthWithClaims(Protocol):
    id: int
    name: str
    index: int
    total_capacity: int
    claims: Sequence[SlotHolder]


@dataclass
class MonthAvailability:
    id: int
    name: str
    index: int
    total_capacity: int
    taken: int
    remaining: int

    @property
    def is_full(self) -> bool:
        return self.remaining == 0


def taken_slots(
    claims: Iterable[SlotHolder], exclude_member_id: Optional[int] = None
) -> int:
    """Sum of claimed slots, optionally leaving one member's claims out"""
    return sum(
        claim.slot_count
        for claim in claims
        if exclude_member_id is None or claim.member_id != exclude_member_id
    )


def remaining_capacity(total_capacity: int, claims: Iterable[SlotHolder]) -> int:
    return max(total_capacity - taken_slots(claims), 0)


def available_for_member(
    total_capacity: int, claims: Iterable[SlotHolder], member_id: int
) -> int:
    """
    Slots a member may hold in a month once their own claims are released

    Args:
        total_capacity: Configured slot count of the month
        claims: Every claim currently recorded against the month
        member_id: The member whose existing claims are being replaced

    Returns:
        int: Capacity minus the slots held by everybody else, never negative
    """
    return max(total_capacity - taken_slots(claims, exclude_member_id=member_id), 0)


def check_month(month: MonthWithClaims) -> Optional[PersistedInvariantViolation]:
    """Report a month whose committed claims exceed its capacity"""
    taken = taken_slots(month.claims)
    if taken <= month.total_capacity:
        return None

    violation = PersistedInvariantViolation(month.id, month.total_capacity, taken)
    logger.error(f"Capacity invariant violated: {violation}")
    return violation


def compute_month_availability(
    months: Iterable[MonthWithClaims],
) -> List[MonthAvailability]:
    """Remaining capacity for each month, in ascending month index order"""
    result = []
    for month in months:
        check_month(month)
        taken = taken_slots(month.claims)
        result.append(
            MonthAvailability(
                id=month.id,
                name=month.name,
                index=month.index,
                total_capacity=month.total_capacity,
                taken=taken,
                remaining=max(month.total_capacity - taken, 0),
            )
        )
    return sorted(result, key=lambda m: m.index)


def selectable_months(availability: Iterable[MonthAvailability]) -> List[MonthAvailability]:
    return [month for month in availability if not month.is_full]
