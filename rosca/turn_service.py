"""
Payout schedule computation.

A member's turn for a month is decided by that month's index relative to the
circle's current month, which is derived from the circle's start date. Claim
creation order plays no part.
"""

import datetime
from dataclasses import dataclass, field
from decimal import Decimal
from enum import StrEnum
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .database import get_session
from .models import (
    Circle,
    CircleMonth,
    CircleRecord,
    Claim,
    ClaimRecord,
    MonthRecord,
)
from .utils import Clock, months_between, system_clock, to_local_datetime


CENTS = Decimal("0.01")


class TurnStatus(StrEnum):
    PAST = "past"
    CURRENT = "current"
    FUTURE = "future"


@dataclass
class ScheduleEntry:
    circle: CircleRecord
    month: MonthRecord
    claim: ClaimRecord


@dataclass
class Turn:
    circle_id: int
    circle_name: str
    month_id: int
    month_name: str
    month_index: int
    slot_count: int
    months_until: int
    status: TurnStatus
    payout: Decimal


@dataclass
class CircleSchedule:
    circle_id: int
    circle_name: str
    monthly_amount: Decimal
    is_scheduled: bool  # False until the circle has a start date
    turns: List[Turn] = field(default_factory=list)
    total_slots: int = 0
    total_payout: Decimal = Decimal("0.00")


@dataclass
class PayoutSchedule:
    member_id: int
    circles: List[CircleSchedule]
    expected_monthly_payout: Decimal
    next_turn: Optional[Turn]


def current_month_index(start_date: datetime.datetime, now: datetime.datetime) -> int:
    """1-based index of the running month; a start date in the future means month 1"""
    elapsed = months_between(start_date.date(), now.date())
    return max(elapsed, 0) + 1


def classify(months_until: int) -> TurnStatus:
    if months_until < 0:
        return TurnStatus.PAST
    if months_until == 0:
        return TurnStatus.CURRENT
    return TurnStatus.FUTURE


def payout_amount(slot_count: int, monthly_amount: Decimal) -> Decimal:
    return (Decimal(monthly_amount) * slot_count).quantize(CENTS)


def build_schedule(
    member_id: int, entries: Iterable[ScheduleEntry], now: datetime.datetime
) -> PayoutSchedule:
    """
    Group a member's claims by circle and work out each turn

    Circles without a start date still count towards slot and payout totals
    but produce no turns.
    """
    schedules: Dict[int, CircleSchedule] = {}
    for entry in sorted(entries, key=lambda e: (e.circle.id, e.month.index, e.claim.id)):
        circle = entry.circle
        schedule = schedules.get(circle.id)
        if schedule is None:
            schedule = CircleSchedule(
                circle_id=circle.id,
                circle_name=circle.name,
                monthly_amount=circle.monthly_amount,
                is_scheduled=circle.start_date is not None,
            )
            schedules[circle.id] = schedule

        payout = payout_amount(entry.claim.slot_count, circle.monthly_amount)
        schedule.total_slots += entry.claim.slot_count
        schedule.total_payout += payout

        if circle.start_date is None:
            continue

        current_index = current_month_index(to_local_datetime(circle.start_date), now)
        months_until = entry.month.index - current_index
        schedule.turns.append(
            Turn(
                circle_id=circle.id,
                circle_name=circle.name,
                month_id=entry.month.id,
                month_name=entry.month.name,
                month_index=entry.month.index,
                slot_count=entry.claim.slot_count,
                months_until=months_until,
                status=classify(months_until),
                payout=payout,
            )
        )

    circles = list(schedules.values())
    upcoming = [
        turn
        for schedule in circles
        for turn in schedule.turns
        if turn.status != TurnStatus.PAST
    ]
    next_turn = min(upcoming, key=lambda t: (t.months_until, t.circle_id), default=None)

    return PayoutSchedule(
        member_id=member_id,
        circles=circles,
        expected_monthly_payout=sum(
            (schedule.total_payout for schedule in circles), Decimal("0.00")
        ),
        next_turn=next_turn,
    )


def load_schedule_entries(session: Session, member_id: int) -> List[ScheduleEntry]:
    rows = session.execute(
        select(Claim, CircleMonth, Circle)
        .join(CircleMonth, Claim.month_id == CircleMonth.id)
        .join(Circle, Claim.circle_id == Circle.id)
        .where(Claim.member_id == member_id)
    ).all()
    return [
        ScheduleEntry(
            circle=CircleRecord.model_validate(circle),
            month=MonthRecord.model_validate(month),
            claim=ClaimRecord.model_validate(claim),
        )
        for claim, month, circle in rows
    ]


class TurnScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session] = get_session,
        clock: Clock = system_clock,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock

    def get_member_schedule(self, member_id: int) -> PayoutSchedule:
        with self.session_factory() as session:
            entries = load_schedule_entries(session, member_id)
        return build_schedule(member_id, entries, self.clock())
