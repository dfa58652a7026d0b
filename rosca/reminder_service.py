"""
Payment reminder sweep.

Month ``i`` of a circle is due in the calendar month ``start_date + (i - 1)``
months. Its reminder window opens on a fixed day of the preceding calendar
month and never closes: every member holding an unpaid claim on the month is
reminded once per day until a paid payment exists.

A reminder is logged per (member, month, day) before it is handed to the
notifier and the row is removed again if delivery fails, so a crash or a failed
write can lose a day's reminder but never repeat it. The sweep also keeps a
checkpoint of the last day it finished cleanly, which lets later ticks that day
skip the scan.
"""

import datetime
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from nonebot.log import logger
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from .database import get_session
from .errors import NotifierUnavailable
from .models import (
    Circle,
    CircleMonth,
    Claim,
    Member,
    Payment,
    PaymentStatus,
    ReminderLog,
    SweepCheckpoint,
)
from .turn_service import payout_amount
from .utils import Clock, add_months, day_key, system_clock, to_local_datetime, to_timestamp


DEFAULT_WINDOW_DAY = 25
CHECKPOINT_NAME = "payment_reminders"


@dataclass
class DueReminder:
    """An unpaid claim whose reminder window is open"""

    circle_id: int
    circle_name: str
    month_id: int
    month_name: str
    month_index: int
    member_id: int
    external_id: str
    language_code: Optional[str]
    slot_count: int
    amount_due: Decimal
    window_opened_on: datetime.date


@dataclass
class SweepReport:
    run_date: str
    skipped: bool = False
    due: int = 0
    sent: int = 0
    already_sent: int = 0
    failed: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.failed == 0


Notifier = Callable[[str, str], Awaitable[None]]
Renderer = Callable[[DueReminder], str]


def window_opens_on(
    start_date: datetime.date, month_index: int, window_day: int = DEFAULT_WINDOW_DAY
) -> datetime.date:
    """First day on which month ``month_index`` of a circle starting at ``start_date`` is reminded"""
    due_month = add_months(start_date, month_index - 1)
    return add_months(due_month, -1).replace(day=window_day)


class ReminderSweep:
    """Finds unpaid claims inside their reminder window and notifies their members"""

    def __init__(
        self,
        notifier: Notifier,
        render: Renderer,
        session_factory: Callable[[], Session] = get_session,
        clock: Clock = system_clock,
        reminder_hour: Optional[int] = None,
        window_day: int = DEFAULT_WINDOW_DAY,
        checkpoint_name: str = CHECKPOINT_NAME,
    ) -> None:
        if not 1 <= window_day <= 28:
            raise ValueError("window_day must be between 1 and 28")
        if reminder_hour is not None and not 0 <= reminder_hour <= 23:
            raise ValueError("reminder_hour must be between 0 and 23")

        self.notifier = notifier
        self.render = render
        self.session_factory = session_factory
        self.clock = clock
        self.reminder_hour = reminder_hour
        self.window_day = window_day
        self.checkpoint_name = checkpoint_name

    def collect_due_reminders(
        self, session: Session, today: datetime.date
    ) -> List[DueReminder]:
        circles = session.scalars(
            select(Circle)
            .where(Circle.is_locked == True, Circle.start_date.is_not(None))  # noqa: E712
            .options(selectinload(Circle.months))
            .order_by(Circle.id.asc())
        ).all()

        due: List[DueReminder] = []
        for circle in circles:
            start = to_local_datetime(circle.start_date).date()
            open_months: Dict[int, CircleMonth] = {
                month.id: month
                for month in circle.months
                if window_opens_on(start, month.index, self.window_day) <= today
            }
            if not open_months:
                continue

            paid: Set[Tuple[int, int]] = set(
                session.execute(
                    select(Payment.member_id, Payment.month_id).where(
                        Payment.circle_id == circle.id,
                        Payment.month_id.in_(list(open_months)),
                        Payment.status == PaymentStatus.PAID,
                    )
                ).tuples()
            )

            slots: Dict[Tuple[int, int], int] = defaultdict(int)
            members: Dict[int, Member] = {}
            for claim, member in session.execute(
                select(Claim, Member)
                .join(Member, Claim.member_id == Member.id)
                .where(Claim.circle_id == circle.id, Claim.month_id.in_(list(open_months)))
            ).tuples():
                if (member.id, claim.month_id) in paid:
                    continue
                slots[(claim.month_id, member.id)] += claim.slot_count
                members[member.id] = member

            for (month_id, member_id), slot_count in sorted(
                slots.items(), key=lambda item: (open_months[item[0][0]].index, item[0][1])
            ):
                month = open_months[month_id]
                member = members[member_id]
                due.append(
                    DueReminder(
                        circle_id=circle.id,
                        circle_name=circle.name,
                        month_id=month.id,
                        month_name=month.name,
                        month_index=month.index,
                        member_id=member.id,
                        external_id=member.external_id,
                        language_code=member.language_code,
                        slot_count=slot_count,
                        amount_due=payout_amount(slot_count, circle.monthly_amount),
                        window_opened_on=window_opens_on(
                            start, month.index, self.window_day
                        ),
                    )
                )
        return due

    def _reminded_on(self, session: Session, key: str) -> Set[Tuple[int, int]]:
        return set(
            session.execute(
                select(ReminderLog.member_id, ReminderLog.month_id).where(
                    ReminderLog.sent_on == key
                )
            ).tuples()
        )

    def _claim(self, reminder: DueReminder, key: str, now: datetime.datetime) -> None:
        """Log the reminder before it is sent; the unique constraint makes this a claim"""
        with self.session_factory() as session, session.begin():
            session.add(
                ReminderLog(
                    member_id=reminder.member_id,
                    circle_id=reminder.circle_id,
                    month_id=reminder.month_id,
                    sent_on=key,
                    sent_at=to_timestamp(now),
                )
            )

    def _release(self, reminder: DueReminder, key: str) -> None:
        with self.session_factory() as session, session.begin():
            session.execute(
                delete(ReminderLog).where(
                    ReminderLog.member_id == reminder.member_id,
                    ReminderLog.month_id == reminder.month_id,
                    ReminderLog.sent_on == key,
                )
            )

    def load_checkpoint(self) -> Optional[Tuple[str, bool]]:
        with self.session_factory() as session:
            checkpoint = session.get(SweepCheckpoint, self.checkpoint_name)
            if checkpoint is None:
                return None
            return checkpoint.run_date, checkpoint.success

    def save_checkpoint(self, key: str, success: bool) -> None:
        with self.session_factory() as session, session.begin():
            checkpoint = session.get(SweepCheckpoint, self.checkpoint_name)
            if checkpoint is None:
                checkpoint = SweepCheckpoint(name=self.checkpoint_name, run_date=key)
                session.add(checkpoint)
            checkpoint.run_date = key
            checkpoint.success = success

    async def run(self) -> SweepReport:
        """
        Run one tick of the sweep

        Returns:
            SweepReport: What was sent, skipped or failed on this tick
        """
        now = self.clock()
        key = day_key(now.date())

        if self.reminder_hour is not None and now.hour < self.reminder_hour:
            return SweepReport(run_date=key, skipped=True)

        try:
            checkpoint = self.load_checkpoint()
            if checkpoint == (key, True):
                return SweepReport(run_date=key, skipped=True)

            with self.session_factory() as session:
                due = self.collect_due_reminders(session, now.date())
                reminded = self._reminded_on(session, key)
        except SQLAlchemyError as e:
            logger.error(f"Reminder sweep could not read the store: {e}")
            return SweepReport(run_date=key, error=str(e))

        report = SweepReport(run_date=key, due=len(due))
        for reminder in due:
            if (reminder.member_id, reminder.month_id) in reminded:
                report.already_sent += 1
                continue

            try:
                self._claim(reminder, key, now)
            except IntegrityError:
                logger.warning(
                    f"Reminder already claimed: member={reminder.member_id} "
                    f"month={reminder.month_id} day={key}"
                )
                report.already_sent += 1
                continue
            except SQLAlchemyError as e:
                logger.error(
                    f"Reminder not logged, skipping: member={reminder.member_id} "
                    f"month={reminder.month_id} error={e}"
                )
                report.failed += 1
                continue

            try:
                await self.notifier(reminder.external_id, self.render(reminder))
            except Exception as e:
                error = NotifierUnavailable(reminder.external_id, str(e))
                logger.warning(
                    f"Reminder not delivered: member={reminder.member_id} "
                    f"circle={reminder.circle_id} month={reminder.month_id} {error}"
                )
                report.failed += 1
                try:
                    self._release(reminder, key)
                except SQLAlchemyError as release_error:
                    logger.error(
                        f"Failed to release reminder log, member {reminder.member_id} "
                        f"will not be retried today: {release_error}"
                    )
                continue

            report.sent += 1
            logger.info(
                f"Reminder sent: member={reminder.member_id} circle='{reminder.circle_name}' "
                f"month='{reminder.month_name}'"
            )

        try:
            self.save_checkpoint(key, report.success)
        except SQLAlchemyError as e:
            logger.error(f"Failed to save reminder checkpoint for {key}: {e}")

        logger.info(
            f"Reminder sweep finished: day={key} due={report.due} sent={report.sent} "
            f"already_sent={report.already_sent} failed={report.failed}"
        )
        return report
