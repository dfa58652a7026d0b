"""
Slot allocation for circle members.

A member's claims in a circle form one set that is validated and replaced as a
whole. Validation, the delete of the previous set and the insert of the new one
share a single transaction, and the month totals are checked once more with the
new rows in place before the commit. Concurrent writers are kept apart by the
store (SQLite's write lock, SERIALIZABLE isolation elsewhere); a conflict
surfaces as an OperationalError and is retried on a fresh transaction.
"""

import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from nonebot.log import logger
from sqlalchemy import delete, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, selectinload

from .database import get_session
from .errors import (
    CapacityExceeded,
    EntityNotFound,
    InvalidState,
    MonthShortfall,
    RoscaError,
    StoreUnavailable,
)
from .ledger import (
    MonthAvailability,
    available_for_member,
    compute_month_availability,
    taken_slots,
)
from .models import Circle, CircleMonth, Claim, ClaimRecord, ClaimStatus


class AllocationStatus(StrEnum):
    SUCCESS = "success"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    CIRCLE_NOT_FOUND = "circle_not_found"
    MONTH_NOT_FOUND = "month_not_found"
    CIRCLE_LOCKED = "circle_locked"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass
class ClaimRequest:
    month_id: int
    slot_count: int


@dataclass
class AllocationResult:
    status: AllocationStatus
    claims: List[ClaimRecord] = field(default_factory=list)
    error: Optional[RoscaError] = None

    @property
    def ok(self) -> bool:
        return self.status == AllocationStatus.SUCCESS

    @property
    def shortfalls(self) -> List[MonthShortfall]:
        if isinstance(self.error, CapacityExceeded):
            return self.error.shortfalls
        return []


def _normalize_requests(
    requests: Iterable[Union[ClaimRequest, Tuple[int, int]]],
) -> List[ClaimRequest]:
    normalized = []
    seen = set()
    for request in requests:
        if not isinstance(request, ClaimRequest):
            month_id, slot_count = request
            request = ClaimRequest(month_id=month_id, slot_count=slot_count)

        if isinstance(request.slot_count, bool) or not isinstance(
            request.slot_count, int
        ):
            raise ValueError(f"Slot count must be an integer, got {request.slot_count!r}")
        if request.slot_count < 1:
            raise ValueError("Slot count must be at least 1")
        if request.month_id in seen:
            raise ValueError(f"Month {request.month_id} requested more than once")

        seen.add(request.month_id)
        normalized.append(request)
    return normalized


def _find_shortfalls(
    requests: Sequence[ClaimRequest],
    months: Dict[int, CircleMonth],
    claims_by_month: Dict[int, List[Claim]],
    member_id: int,
) -> List[MonthShortfall]:
    shortfalls = []
    for request in requests:
        month = months[request.month_id]
        available = available_for_member(
            month.total_capacity, claims_by_month.get(month.id, []), member_id
        )
        if request.slot_count > available:
            shortfalls.append(
                MonthShortfall(
                    month_id=month.id,
                    requested=request.slot_count,
                    available=available,
                )
            )
    return shortfalls


class SubscriptionAllocator:
    """Validates and commits a member's claim set for a circle"""

    def __init__(
        self,
        session_factory: Callable[[], Session] = get_session,
        max_attempts: int = 3,
        retry_delay: float = 0.05,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.session_factory = session_factory
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    def allocate(
        self,
        member_id: int,
        circle_id: int,
        requests: Iterable[Union[ClaimRequest, Tuple[int, int]]],
        allow_locked: bool = False,
    ) -> AllocationResult:
        """
        Replace a member's claims in a circle with a new claim set

        Args:
            member_id: Member making the request
            circle_id: Circle the claims belong to
            requests: ``ClaimRequest`` items or ``(month_id, slot_count)`` pairs;
                an empty set releases every claim the member holds in the circle
            allow_locked: Permit changes after the circle has been locked

        Returns:
            AllocationResult: ``SUCCESS`` with the stored claims, or the reason
            nothing was written
        """
        if member_id is None:
            raise ValueError("member_id is required")
        normalized = _normalize_requests(requests)

        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                with self.session_factory() as session, session.begin():
                    claims = self._replace_claims(
                        session, member_id, circle_id, normalized, allow_locked
                    )
                    records = [ClaimRecord.model_validate(claim) for claim in claims]
            except CapacityExceeded as e:
                logger.info(
                    f"Allocation rejected: member={member_id} circle={circle_id} {e}"
                )
                return AllocationResult(AllocationStatus.CAPACITY_EXCEEDED, error=e)
            except EntityNotFound as e:
                status = (
                    AllocationStatus.CIRCLE_NOT_FOUND
                    if e.entity == "circle"
                    else AllocationStatus.MONTH_NOT_FOUND
                )
                return AllocationResult(status, error=e)
            except InvalidState as e:
                return AllocationResult(AllocationStatus.CIRCLE_LOCKED, error=e)
            except OperationalError as e:
                last_error = e
                logger.warning(
                    f"Allocation conflict, retrying: member={member_id} circle={circle_id} "
                    f"attempt={attempt}/{self.max_attempts} error={e.orig}"
                )
                time.sleep(self.retry_delay * attempt)
                continue

            logger.info(
                f"Allocation committed: member={member_id} circle={circle_id} "
                f"claims={[(r.month_id, r.slot_count) for r in records]}"
            )
            return AllocationResult(AllocationStatus.SUCCESS, claims=records)

        logger.error(
            f"Allocation failed after {self.max_attempts} attempts: "
            f"member={member_id} circle={circle_id} error={last_error}"
        )
        return AllocationResult(
            AllocationStatus.STORE_UNAVAILABLE,
            error=StoreUnavailable(str(last_error)),
        )

    def _replace_claims(
        self,
        session: Session,
        member_id: int,
        circle_id: int,
        requests: List[ClaimRequest],
        allow_locked: bool,
    ) -> List[Claim]:
        circle = session.get(Circle, circle_id, with_for_update=True)
        if circle is None:
            raise EntityNotFound("circle", [circle_id])
        if circle.is_locked and not allow_locked:
            raise InvalidState(f"Circle '{circle.name}' is locked")

        month_ids = [request.month_id for request in requests]
        months = self._lock_months(session, circle_id, month_ids)
        missing = set(month_ids) - set(months)
        if missing:
            raise EntityNotFound("month", missing)

        shortfalls = _find_shortfalls(
            requests, months, self._claims_by_month(session, month_ids), member_id
        )
        if shortfalls:
            raise CapacityExceeded(shortfalls)

        session.execute(
            delete(Claim).where(
                Claim.member_id == member_id, Claim.circle_id == circle_id
            )
        )
        claims = [
            Claim(
                circle_id=circle_id,
                month_id=request.month_id,
                member_id=member_id,
                slot_count=request.slot_count,
                status=ClaimStatus.PENDING,
            )
            for request in requests
        ]
        session.add_all(claims)
        session.flush()

        # Totals including the rows just written must fit before the commit
        claims_by_month = self._claims_by_month(session, month_ids)
        overbooked = []
        for request in requests:
            month = months[request.month_id]
            month_claims = claims_by_month[month.id]
            if taken_slots(month_claims) > month.total_capacity:
                others = taken_slots(month_claims, exclude_member_id=member_id)
                overbooked.append(
                    MonthShortfall(
                        month_id=month.id,
                        requested=request.slot_count,
                        available=max(month.total_capacity - others, 0),
                    )
                )
        if overbooked:
            raise CapacityExceeded(overbooked)

        return claims

    @staticmethod
    def _lock_months(
        session: Session, circle_id: int, month_ids: List[int]
    ) -> Dict[int, CircleMonth]:
        if not month_ids:
            return {}
        months = session.scalars(
            select(CircleMonth)
            .where(CircleMonth.circle_id == circle_id, CircleMonth.id.in_(month_ids))
            .with_for_update()
        )
        return {month.id: month for month in months}

    @staticmethod
    def _claims_by_month(session: Session, month_ids: List[int]) -> Dict[int, List[Claim]]:
        claims_by_month: Dict[int, List[Claim]] = defaultdict(list)
        if not month_ids:
            return claims_by_month
        for claim in session.scalars(select(Claim).where(Claim.month_id.in_(month_ids))):
            claims_by_month[claim.month_id].append(claim)
        return claims_by_month

    def get_month_availability(self, circle_id: int) -> List[MonthAvailability]:
        """Freshly computed remaining capacity for every month of a circle"""
        with self.session_factory() as session:
            months = session.scalars(
                select(CircleMonth)
                .where(CircleMonth.circle_id == circle_id)
                .options(selectinload(CircleMonth.claims))
            ).all()
            return compute_month_availability(months)

    def get_member_claims(self, member_id: int, circle_id: int) -> List[ClaimRecord]:
        with self.session_factory() as session:
            claims = session.scalars(
                select(Claim)
                .join(CircleMonth, Claim.month_id == CircleMonth.id)
                .where(Claim.member_id == member_id, Claim.circle_id == circle_id)
                .order_by(CircleMonth.index.asc())
            ).all()
            return [ClaimRecord.model_validate(claim) for claim in claims]

    def confirm_claims(self, member_id: int, circle_id: int) -> int:
        """Mark a member's pending claims in a circle as confirmed"""
        with self.session_factory() as session, session.begin():
            result = session.execute(
                update(Claim)
                .where(
                    Claim.member_id == member_id,
                    Claim.circle_id == circle_id,
                    Claim.status == ClaimStatus.PENDING,
                )
                .values(status=ClaimStatus.CONFIRMED, updated_at=int(time.time()))
            )
            confirmed = result.rowcount

        logger.info(
            f"Claims confirmed: member={member_id} circle={circle_id} count={confirmed}"
        )
        return confirmed
