from decimal import Decimal

import pytest

from rosca import EntityNotFound, ReportService


@pytest.fixture
def reports(session_factory, clock):
    return ReportService(session_factory, clock)


@pytest.fixture
def filled_circle(circles, circle, months, allocator, members, alice, bob):
    members.update_profile(alice.id, first_name="Alice")
    allocator.allocate(alice.id, circle.id, [(months[1].id, 4), (months[4].id, 5)])
    allocator.allocate(bob.id, circle.id, [(months[1].id, 1)])
    return circles.lock_circle(circle.id)


def test_circle_overview(reports, filled_circle):
    overview = reports.circle_overview(filled_circle.id)

    assert overview.total_months == 4
    assert overview.total_slots == 35
    assert overview.filled_slots == 10
    assert overview.empty_slots == 25
    assert overview.fill_percentage == pytest.approx(100 * 10 / 35)

    january, february, _, april = overview.months
    assert (january.filled, january.empty) == (5, 5)
    assert january.fill_percentage == pytest.approx(50.0)
    assert sorted((h.member.display_name, h.slot_count) for h in january.holders) == [
        ("Alice", 4),
        ("bob", 1),
    ]
    assert february.holders == []
    assert april.fill_percentage == pytest.approx(100.0)


def test_circle_overview_of_unknown_circle(reports):
    with pytest.raises(EntityNotFound):
        reports.circle_overview(12)


def test_payment_report(reports, payments, filled_circle, months, alice):
    payments.record_payment(alice.id, filled_circle.id, [months[1].id], "file")

    report = reports.payment_report(filled_circle.id, months[1].id)

    assert [(line.member.external_id, line.amount) for line in report.paid] == [
        ("alice", Decimal("400.00"))
    ]
    assert [(line.member.external_id, line.slot_count) for line in report.unpaid] == [
        ("bob", 1)
    ]
    assert report.total_paid == Decimal("400.00")
    assert report.total_unpaid == Decimal("100.00")
    assert report.paid_percentage == pytest.approx(80.0)
    assert report.unpaid_percentage == pytest.approx(20.0)


def test_payment_report_for_month_of_another_circle(reports, filled_circle):
    with pytest.raises(EntityNotFound):
        reports.payment_report(filled_circle.id, 999)


def test_member_overview(reports, payments, filled_circle, months, alice, clock):
    payments.record_payment(alice.id, filled_circle.id, [months[1].id], "file")
    clock.set(2024, 2, 3, 12, 0)

    overview = reports.member_overview(alice.id)

    assert overview.member.display_name == "Alice"
    assert overview.paid_month_ids == [months[1].id]
    assert overview.schedule.expected_monthly_payout == Decimal("900.00")
    assert overview.schedule.next_turn.month_name == "April"
    assert reports.member_overview(999) is None


def test_members_with_stats(reports, filled_circle, members):
    members.get_or_create("dave")

    stats = {s.member.external_id: s for s in reports.members_with_stats()}

    assert (stats["alice"].total_slots, stats["alice"].total_turns) == (9, 2)
    assert stats["alice"].circles_count == 1
    assert (stats["bob"].total_slots, stats["bob"].total_turns) == (1, 1)
    assert (stats["dave"].total_slots, stats["dave"].circles_count) == (0, 0)
