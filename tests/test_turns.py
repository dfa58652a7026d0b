import datetime
from decimal import Decimal

from rosca import TurnScheduler, TurnStatus
from rosca.models import CircleRecord, ClaimRecord, MonthRecord
from rosca.turn_service import (
    ScheduleEntry,
    build_schedule,
    current_month_index,
    payout_amount,
)
from rosca.utils import to_timestamp


def make_circle(id=1, start=datetime.datetime(2024, 1, 1), amount="100"):
    return CircleRecord(
        id=id,
        name=f"Circle {id}",
        monthly_amount=Decimal(amount),
        start_date=to_timestamp(start) if start else None,
        is_locked=start is not None,
    )


def entry(circle, index, slot_count=1, claim_id=None):
    month = MonthRecord(
        id=circle.id * 100 + index,
        circle_id=circle.id,
        name=f"Month {index}",
        index=index,
        total_capacity=10,
    )
    claim = ClaimRecord(
        id=claim_id or month.id,
        circle_id=circle.id,
        month_id=month.id,
        member_id=7,
        slot_count=slot_count,
        status="pending",
    )
    return ScheduleEntry(circle=circle, month=month, claim=claim)


NOW = datetime.datetime(2024, 3, 15, 12, 0)


def test_current_month_index():
    start = datetime.datetime(2024, 1, 1)
    assert current_month_index(start, datetime.datetime(2024, 1, 31)) == 1
    assert current_month_index(start, NOW) == 3
    assert current_month_index(start, datetime.datetime(2025, 1, 1)) == 13
    # A start date in the future behaves as the first month
    assert current_month_index(start, datetime.datetime(2023, 11, 20)) == 1


def test_turns_are_classified_against_the_current_month():
    circle = make_circle()
    schedule = build_schedule(
        7, [entry(circle, 5), entry(circle, 1), entry(circle, 3)], NOW
    )

    [circle_schedule] = schedule.circles
    turns = {t.month_index: t for t in circle_schedule.turns}
    assert [t.month_index for t in circle_schedule.turns] == [1, 3, 5]
    assert (turns[1].status, turns[1].months_until) == (TurnStatus.PAST, -2)
    assert (turns[3].status, turns[3].months_until) == (TurnStatus.CURRENT, 0)
    assert (turns[5].status, turns[5].months_until) == (TurnStatus.FUTURE, 2)


def test_payout_is_slots_times_monthly_amount():
    assert payout_amount(3, Decimal("100")) == Decimal("300.00")
    assert str(payout_amount(3, Decimal("33.335"))) == "100.00"

    schedule = build_schedule(7, [entry(make_circle(), 2, slot_count=3)], NOW)
    assert schedule.circles[0].turns[0].payout == Decimal("300.00")


def test_expected_payout_sums_every_circle():
    first = make_circle(1, amount="100")
    second = make_circle(2, start=datetime.datetime(2024, 2, 1), amount="50")
    schedule = build_schedule(
        7,
        [entry(first, 1, 2), entry(first, 4, 1), entry(second, 2, 3)],
        NOW,
    )

    assert [c.circle_id for c in schedule.circles] == [1, 2]
    assert schedule.circles[0].total_slots == 3
    assert schedule.circles[0].total_payout == Decimal("300.00")
    assert schedule.expected_monthly_payout == Decimal("450.00")


def test_open_circle_counts_but_has_no_turns():
    open_circle = make_circle(3, start=None)
    schedule = build_schedule(7, [entry(open_circle, 1, 2)], NOW)

    [circle_schedule] = schedule.circles
    assert not circle_schedule.is_scheduled
    assert circle_schedule.turns == []
    assert circle_schedule.total_payout == Decimal("200.00")
    assert schedule.next_turn is None


def test_next_turn_is_the_nearest_upcoming_one():
    first = make_circle(1)
    second = make_circle(2, start=datetime.datetime(2024, 3, 1))
    schedule = build_schedule(
        7, [entry(first, 2), entry(first, 6), entry(second, 2)], NOW
    )

    # first: month 2 is past, month 6 is 3 away; second: month 2 is next month
    assert schedule.next_turn.circle_id == 2
    assert schedule.next_turn.months_until == 1


def test_member_without_claims_has_empty_schedule():
    schedule = build_schedule(7, [], NOW)
    assert schedule.circles == []
    assert schedule.expected_monthly_payout == Decimal("0.00")
    assert schedule.next_turn is None


def test_scheduler_reads_member_claims(
    session_factory, clock, circles, circle, months, allocator, alice
):
    allocator.allocate(alice.id, circle.id, [(months[2].id, 2), (months[4].id, 1)])
    circles.lock_circle(circle.id)
    clock.set(2024, 2, 10, 8, 0)

    schedule = TurnScheduler(session_factory, clock).get_member_schedule(alice.id)

    [circle_schedule] = schedule.circles
    assert circle_schedule.circle_name == "Spring"
    assert [(t.month_name, t.status) for t in circle_schedule.turns] == [
        ("February", TurnStatus.CURRENT),
        ("April", TurnStatus.FUTURE),
    ]
    assert schedule.next_turn.month_name == "February"
    assert schedule.expected_monthly_payout == Decimal("300.00")
