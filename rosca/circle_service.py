"""
Circle lifecycle: creation with its months, locking and removal.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional, Sequence, Tuple

from nonebot.log import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from .database import get_session
from .errors import EntityNotFound, InvalidState
from .models import Circle, CircleMonth, CircleRecord, MonthRecord
from .utils import Clock, system_clock, to_timestamp


def parse_month_input(raw: str) -> List[Tuple[str, int]]:
    """
    Parse an admin's month list

    Accepts ``Name:slots`` pairs separated by commas or new lines, e.g.
    ``January:10, February:12``.

    Returns:
        List[Tuple[str, int]]: ``(name, capacity)`` pairs in order, or an empty
        list if any part is malformed
    """
    sections = [section.strip() for section in re.split(r"[,\n]+", raw)]
    sections = [section for section in sections if section]

    months = []
    for section in sections:
        name, sep, capacity = section.partition(":")
        name, capacity = name.strip(), capacity.strip()
        if not sep or not name or not capacity.isdigit():
            return []
        if int(capacity) <= 0:
            return []
        months.append((name, int(capacity)))
    return months


def parse_amount(raw: str) -> Optional[Decimal]:
    """Read a positive contribution amount, rounded to cents"""
    try:
        value = Decimal(re.sub(r"[^0-9.\-]", "", raw))
    except InvalidOperation:
        return None
    if value <= 0:
        return None
    return value.quantize(Decimal("0.01"))


class CircleService:
    def __init__(
        self,
        session_factory: Callable[[], Session] = get_session,
        clock: Clock = system_clock,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock

    def create_circle(
        self,
        name: str,
        monthly_amount: Decimal,
        months: Sequence[Tuple[str, int]],
    ) -> CircleRecord:
        """
        Create an open circle together with its months

        Args:
            name: Circle name
            monthly_amount: Contribution per slot per month
            months: ``(name, capacity)`` pairs; indexes are assigned in order from 1

        Raises:
            ValueError: Invalid name, amount or month list
            InvalidState: Another circle is still open for subscription
        """
        name = name.strip()
        if not name:
            raise ValueError("Circle name cannot be empty")
        monthly_amount = Decimal(monthly_amount)
        if monthly_amount <= 0:
            raise ValueError("Monthly amount must be positive")
        if not months:
            raise ValueError("A circle needs at least one month")
        for month_name, capacity in months:
            if not month_name or capacity < 1:
                raise ValueError(f"Invalid month definition: {month_name!r}:{capacity}")

        with self.session_factory() as session, session.begin():
            open_circle = session.scalars(
                select(Circle).where(Circle.is_locked == False)  # noqa: E712
            ).first()
            if open_circle is not None:
                raise InvalidState(
                    f"Circle '{open_circle.name}' is still open, lock it before creating a new one"
                )

            circle = Circle(
                name=name,
                monthly_amount=monthly_amount.quantize(Decimal("0.01")),
                is_locked=False,
            )
            circle.months = [
                CircleMonth(name=month_name, index=i, total_capacity=capacity)
                for i, (month_name, capacity) in enumerate(months, 1)
            ]
            session.add(circle)
            session.flush()
            record = CircleRecord.model_validate(circle)

        logger.info(
            f"Circle created: id={record.id} name='{record.name}' months={len(months)}"
        )
        return record

    def lock_circle(self, circle_id: int) -> CircleRecord:
        """Close subscriptions and stamp the start date"""
        with self.session_factory() as session, session.begin():
            circle = session.get(Circle, circle_id, with_for_update=True)
            if circle is None:
                raise EntityNotFound("circle", [circle_id])
            if circle.is_locked:
                raise InvalidState(f"Circle '{circle.name}' is already locked")

            circle.is_locked = True
            circle.start_date = to_timestamp(self.clock())
            session.flush()
            record = CircleRecord.model_validate(circle)

        logger.info(f"Circle locked: id={record.id} start_date={record.start_date}")
        return record

    def delete_circle(self, circle_id: int) -> bool:
        """Delete a circle and everything recorded under it"""
        with self.session_factory() as session, session.begin():
            circle = session.get(Circle, circle_id)
            if circle is None:
                return False
            session.delete(circle)

        logger.info(f"Circle deleted: id={circle_id}")
        return True

    def get_circle(self, circle_id: int) -> Optional[CircleRecord]:
        with self.session_factory() as session:
            circle = session.get(Circle, circle_id)
            return CircleRecord.model_validate(circle) if circle else None

    def get_open_circle(self) -> Optional[CircleRecord]:
        """The circle currently accepting subscriptions, if any"""
        with self.session_factory() as session:
            circle = session.scalars(
                select(Circle)
                .where(Circle.is_locked == False)  # noqa: E712
                .order_by(Circle.created_at.desc(), Circle.id.desc())
            ).first()
            return CircleRecord.model_validate(circle) if circle else None

    def get_running_circle(self) -> Optional[CircleRecord]:
        """The most recently locked circle, which payments are made against"""
        with self.session_factory() as session:
            circle = session.scalars(
                select(Circle)
                .where(Circle.is_locked == True)  # noqa: E712
                .order_by(Circle.start_date.desc(), Circle.id.desc())
            ).first()
            return CircleRecord.model_validate(circle) if circle else None

    def list_circles(self) -> List[CircleRecord]:
        with self.session_factory() as session:
            circles = session.scalars(
                select(Circle).order_by(Circle.created_at.desc(), Circle.id.desc())
            ).all()
            return [CircleRecord.model_validate(c) for c in circles]

    def get_months(self, circle_id: int) -> List[MonthRecord]:
        with self.session_factory() as session:
            months = session.scalars(
                select(CircleMonth)
                .where(CircleMonth.circle_id == circle_id)
                .order_by(CircleMonth.index.asc())
            ).all()
            return [MonthRecord.model_validate(m) for m in months]
