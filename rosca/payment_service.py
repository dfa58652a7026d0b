"""
Payment records for claimed months.

A month counts as paid for a member once a ``paid`` payment row exists for it;
pending and rejected rows leave it unpaid.
"""

import datetime
import time
from dataclasses import dataclass, field
from enum import StrEnum
from decimal import Decimal
from typing import Awaitable, Callable, Iterable, List, Optional, Set

from nonebot.log import logger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .database import get_session
from .errors import EntityNotFound, NotifierUnavailable, RoscaError, StoreUnavailable
from .models import (
    Circle,
    CircleMonth,
    CircleRecord,
    Claim,
    Member,
    MemberRecord,
    MonthRecord,
    Payment,
    PaymentRecord,
    PaymentStatus,
)
from .turn_service import current_month_index, payout_amount
from .utils import Clock, system_clock, to_local_datetime, to_timestamp


class PaymentResultStatus(StrEnum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass
class PaymentResult:
    status: PaymentResultStatus
    payments: List[PaymentRecord] = field(default_factory=list)
    error: Optional[RoscaError] = None

    @property
    def ok(self) -> bool:
        return self.status == PaymentResultStatus.SUCCESS


@dataclass
class PaymentAlert:
    payment: PaymentRecord
    member: MemberRecord
    circle_name: str
    month_name: str
    slot_count: int  # 0 when the member holds no claim on the month
    amount: Decimal


class PaymentTracker:
    """Records payments and answers paid/unpaid questions per claim"""

    def __init__(
        self,
        session_factory: Callable[[], Session] = get_session,
        clock: Clock = system_clock,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock

    def record_payment(
        self,
        member_id: int,
        circle_id: int,
        month_ids: Iterable[int],
        proof_ref: str,
    ) -> PaymentResult:
        """
        Record one paid payment per month, all in one transaction

        Claims are not checked here; callers only offer months the member has
        claimed and not yet paid.

        Args:
            member_id: Paying member
            circle_id: Circle the months belong to
            month_ids: Months covered by the proof of payment
            proof_ref: Reference to the uploaded proof (e.g. a chat file id)

        Returns:
            PaymentResult: The inserted payments, or why none were written
        """
        if member_id is None:
            raise ValueError("member_id is required")
        if not proof_ref:
            raise ValueError("proof_ref is required")
        month_ids = list(dict.fromkeys(month_ids))
        if not month_ids:
            raise ValueError("At least one month is required")

        paid_at = to_timestamp(self.clock())
        try:
            with self.session_factory() as session, session.begin():
                if session.get(Member, member_id) is None:
                    raise EntityNotFound("member", [member_id])
                if session.get(Circle, circle_id) is None:
                    raise EntityNotFound("circle", [circle_id])
                found = set(
                    session.scalars(
                        select(CircleMonth.id).where(
                            CircleMonth.circle_id == circle_id,
                            CircleMonth.id.in_(month_ids),
                        )
                    )
                )
                missing = set(month_ids) - found
                if missing:
                    raise EntityNotFound("month", missing)

                payments = [
                    Payment(
                        member_id=member_id,
                        circle_id=circle_id,
                        month_id=month_id,
                        proof_ref=proof_ref,
                        status=PaymentStatus.PAID,
                        paid_at=paid_at,
                    )
                    for month_id in month_ids
                ]
                session.add_all(payments)
                session.flush()
                records = [PaymentRecord.model_validate(p) for p in payments]
        except EntityNotFound as e:
            logger.warning(f"Payment not recorded: member={member_id} {e}")
            return PaymentResult(PaymentResultStatus.NOT_FOUND, error=e)
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to record payment: member={member_id} circle={circle_id} "
                f"months={month_ids} error={e}"
            )
            return PaymentResult(
                PaymentResultStatus.STORE_UNAVAILABLE, error=StoreUnavailable(str(e))
            )

        logger.info(
            f"Payment recorded: member={member_id} circle={circle_id} months={month_ids}"
        )
        return PaymentResult(PaymentResultStatus.SUCCESS, payments=records)

    def set_payment_status(self, payment_id: int, status: PaymentStatus) -> PaymentResult:
        """Change a payment's status, e.g. when an admin rejects a proof"""
        status = PaymentStatus(status)
        try:
            with self.session_factory() as session, session.begin():
                payment = session.get(Payment, payment_id)
                if payment is None:
                    raise EntityNotFound("payment", [payment_id])
                payment.status = status
                payment.updated_at = int(time.time())
                session.flush()
                record = PaymentRecord.model_validate(payment)
        except EntityNotFound as e:
            return PaymentResult(PaymentResultStatus.NOT_FOUND, error=e)
        except SQLAlchemyError as e:
            logger.error(f"Failed to update payment {payment_id}: {e}")
            return PaymentResult(
                PaymentResultStatus.STORE_UNAVAILABLE, error=StoreUnavailable(str(e))
            )

        logger.info(f"Payment {payment_id} marked as {status}")
        return PaymentResult(PaymentResultStatus.SUCCESS, payments=[record])

    def get_paid_month_ids(self, member_id: int, circle_id: int) -> Set[int]:
        with self.session_factory() as session:
            return set(
                session.scalars(
                    select(Payment.month_id).where(
                        Payment.member_id == member_id,
                        Payment.circle_id == circle_id,
                        Payment.status == PaymentStatus.PAID,
                    )
                )
            )

    def is_paid(self, member_id: int, circle_id: int, month_id: int) -> bool:
        return month_id in self.get_paid_month_ids(member_id, circle_id)

    def get_payments(self, member_id: int, circle_id: int) -> List[PaymentRecord]:
        """Every payment row of a member in a circle, newest first"""
        with self.session_factory() as session:
            payments = session.scalars(
                select(Payment)
                .where(Payment.member_id == member_id, Payment.circle_id == circle_id)
                .order_by(Payment.paid_at.desc(), Payment.id.desc())
            ).all()
            return [PaymentRecord.model_validate(p) for p in payments]

    def get_unpaid_months(self, member_id: int, circle_id: int) -> List[MonthRecord]:
        """Claimed months without a paid payment, one entry per month, by index"""
        paid = self.get_paid_month_ids(member_id, circle_id)
        with self.session_factory() as session:
            months = session.scalars(
                select(CircleMonth)
                .join(Claim, Claim.month_id == CircleMonth.id)
                .where(Claim.member_id == member_id, Claim.circle_id == circle_id)
                .distinct()
                .order_by(CircleMonth.index.asc())
            ).all()
            return [MonthRecord.model_validate(m) for m in months if m.id not in paid]

    def default_payment_month(
        self, circle: CircleRecord, unpaid_months: List[MonthRecord]
    ) -> Optional[MonthRecord]:
        """The circle's current month, if it is among the unpaid ones"""
        if circle.start_date is None:
            return None

        now: datetime.datetime = self.clock()
        index = current_month_index(to_local_datetime(circle.start_date), now)
        return next((m for m in unpaid_months if m.index == index), None)

    async def notify_admins(
        self,
        notifier: Callable[[str, str], Awaitable[None]],
        render: Callable[[PaymentAlert], str],
        payments: Iterable[PaymentRecord],
    ) -> int:
        """
        Tell every admin about freshly recorded payments

        A failed delivery to one admin is logged and does not stop the others.

        Returns:
            int: Number of messages delivered
        """
        alerts = []
        with self.session_factory() as session:
            admins = session.scalars(
                select(Member).where(Member.is_admin == True)  # noqa: E712
            ).all()
            admin_ids = [admin.external_id for admin in admins]

            for payment in payments:
                member = session.get(Member, payment.member_id)
                circle = session.get(Circle, payment.circle_id)
                month = session.get(CircleMonth, payment.month_id)
                if member is None or circle is None or month is None:
                    logger.warning(f"Skipping alert for payment {payment.id}: records missing")
                    continue

                slot_count = sum(
                    session.scalars(
                        select(Claim.slot_count).where(
                            Claim.member_id == payment.member_id,
                            Claim.month_id == payment.month_id,
                        )
                    )
                )
                alerts.append(
                    PaymentAlert(
                        payment=payment,
                        member=MemberRecord.model_validate(member),
                        circle_name=circle.name,
                        month_name=month.name,
                        slot_count=slot_count,
                        amount=payout_amount(slot_count, circle.monthly_amount),
                    )
                )

        if not admin_ids:
            logger.info("No admins found to notify")
            return 0

        delivered = 0
        for alert in alerts:
            message = render(alert)
            for admin_id in admin_ids:
                try:
                    await notifier(admin_id, message)
                    delivered += 1
                except Exception as e:
                    logger.warning(
                        f"Failed to send payment alert to admin {admin_id}: "
                        f"{NotifierUnavailable(admin_id, str(e))}"
                    )
        return delivered

