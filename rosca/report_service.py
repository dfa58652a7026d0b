"""
Read models for administrators: circle fill, payment status and member overviews.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from .database import get_session
from .errors import EntityNotFound
from .ledger import check_month, taken_slots
from .models import (
    Circle,
    CircleMonth,
    CircleRecord,
    Claim,
    Member,
    MemberRecord,
    MonthRecord,
    Payment,
    PaymentStatus,
)
from .turn_service import (
    PayoutSchedule,
    build_schedule,
    load_schedule_entries,
    payout_amount,
)
from .utils import Clock, system_clock


def _percentage(part, whole) -> float:
    return float(part) / float(whole) * 100 if whole else 0.0


@dataclass
class MonthHolder:
    member: MemberRecord
    slot_count: int


@dataclass
class MonthFill:
    month: MonthRecord
    filled: int
    empty: int
    fill_percentage: float
    holders: List[MonthHolder]


@dataclass
class CircleOverview:
    circle: CircleRecord
    months: List[MonthFill]
    total_months: int
    total_slots: int
    filled_slots: int
    empty_slots: int
    fill_percentage: float


@dataclass
class PaymentLine:
    member: MemberRecord
    slot_count: int
    amount: Decimal


@dataclass
class PaymentReport:
    circle: CircleRecord
    month: MonthRecord
    paid: List[PaymentLine] = field(default_factory=list)
    unpaid: List[PaymentLine] = field(default_factory=list)
    total_paid: Decimal = Decimal("0.00")
    total_unpaid: Decimal = Decimal("0.00")

    @property
    def total_expected(self) -> Decimal:
        return self.total_paid + self.total_unpaid

    @property
    def paid_percentage(self) -> float:
        return _percentage(self.total_paid, self.total_expected)

    @property
    def unpaid_percentage(self) -> float:
        return _percentage(self.total_unpaid, self.total_expected)


@dataclass
class MemberStats:
    member: MemberRecord
    total_slots: int
    total_turns: int  # distinct months claimed
    circles_count: int


@dataclass
class MemberOverview:
    member: MemberRecord
    schedule: PayoutSchedule
    paid_month_ids: List[int]


class ReportService:
    def __init__(
        self,
        session_factory: Callable[[], Session] = get_session,
        clock: Clock = system_clock,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock

    def circle_overview(self, circle_id: int) -> CircleOverview:
        with self.session_factory() as session:
            circle = session.get(Circle, circle_id)
            if circle is None:
                raise EntityNotFound("circle", [circle_id])

            months = session.scalars(
                select(CircleMonth)
                .where(CircleMonth.circle_id == circle_id)
                .options(selectinload(CircleMonth.claims).selectinload(Claim.member))
                .order_by(CircleMonth.index.asc())
            ).all()

            fills = []
            for month in months:
                check_month(month)
                filled = taken_slots(month.claims)
                holders: Dict[int, MonthHolder] = {}
                for claim in month.claims:
                    holder = holders.get(claim.member_id)
                    if holder is None:
                        holder = MonthHolder(
                            member=MemberRecord.model_validate(claim.member), slot_count=0
                        )
                        holders[claim.member_id] = holder
                    holder.slot_count += claim.slot_count

                fills.append(
                    MonthFill(
                        month=MonthRecord.model_validate(month),
                        filled=filled,
                        empty=max(month.total_capacity - filled, 0),
                        fill_percentage=_percentage(filled, month.total_capacity),
                        holders=list(holders.values()),
                    )
                )

            total_slots = sum(f.month.total_capacity for f in fills)
            filled_slots = sum(f.filled for f in fills)
            return CircleOverview(
                circle=CircleRecord.model_validate(circle),
                months=fills,
                total_months=len(fills),
                total_slots=total_slots,
                filled_slots=filled_slots,
                empty_slots=sum(f.empty for f in fills),
                fill_percentage=_percentage(filled_slots, total_slots),
            )

    def payment_report(self, circle_id: int, month_id: int) -> PaymentReport:
        """Who has paid for a month and who still owes, with amounts"""
        with self.session_factory() as session:
            circle = session.get(Circle, circle_id)
            month = session.get(CircleMonth, month_id)
            if circle is None:
                raise EntityNotFound("circle", [circle_id])
            if month is None or month.circle_id != circle_id:
                raise EntityNotFound("month", [month_id])

            paid_member_ids = set(
                session.scalars(
                    select(Payment.member_id).where(
                        Payment.circle_id == circle_id,
                        Payment.month_id == month_id,
                        Payment.status == PaymentStatus.PAID,
                    )
                )
            )

            slots: Dict[int, int] = defaultdict(int)
            members: Dict[int, Member] = {}
            for claim, member in session.execute(
                select(Claim, Member)
                .join(Member, Claim.member_id == Member.id)
                .where(Claim.circle_id == circle_id, Claim.month_id == month_id)
                .order_by(Claim.id.asc())
            ).tuples():
                slots[member.id] += claim.slot_count
                members[member.id] = member

            report = PaymentReport(
                circle=CircleRecord.model_validate(circle),
                month=MonthRecord.model_validate(month),
            )
            for member_id, slot_count in slots.items():
                line = PaymentLine(
                    member=MemberRecord.model_validate(members[member_id]),
                    slot_count=slot_count,
                    amount=payout_amount(slot_count, circle.monthly_amount),
                )
                if member_id in paid_member_ids:
                    report.paid.append(line)
                    report.total_paid += line.amount
                else:
                    report.unpaid.append(line)
                    report.total_unpaid += line.amount
            return report

    def member_overview(self, member_id: int) -> Optional[MemberOverview]:
        """A member's claims grouped by circle, with payout timing and paid months"""
        with self.session_factory() as session:
            member = session.get(Member, member_id)
            if member is None:
                return None

            entries = load_schedule_entries(session, member_id)
            paid_month_ids = sorted(
                session.scalars(
                    select(Payment.month_id)
                    .where(
                        Payment.member_id == member_id,
                        Payment.status == PaymentStatus.PAID,
                    )
                    .distinct()
                )
            )
            record = MemberRecord.model_validate(member)

        return MemberOverview(
            member=record,
            schedule=build_schedule(member_id, entries, self.clock()),
            paid_month_ids=paid_month_ids,
        )

    def members_with_stats(self) -> List[MemberStats]:
        with self.session_factory() as session:
            members = session.scalars(
                select(Member).order_by(Member.created_at.asc(), Member.id.asc())
            ).all()
            claims_by_member: Dict[int, List[Claim]] = defaultdict(list)
            for claim in session.scalars(select(Claim)):
                claims_by_member[claim.member_id].append(claim)

            return [
                MemberStats(
                    member=MemberRecord.model_validate(member),
                    total_slots=sum(c.slot_count for c in claims_by_member[member.id]),
                    total_turns=len({c.month_id for c in claims_by_member[member.id]}),
                    circles_count=len({c.circle_id for c in claims_by_member[member.id]}),
                )
                for member in members
            ]
