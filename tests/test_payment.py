import asyncio
from decimal import Decimal

import pytest

from rosca import PaymentResultStatus, PaymentStatus


@pytest.fixture
def locked_circle(circles, circle, months, allocator, alice):
    allocator.allocate(alice.id, circle.id, [(months[3].id, 2), (months[1].id, 1)])
    return circles.lock_circle(circle.id)


def test_record_payment_marks_months_paid(payments, locked_circle, months, alice):
    result = payments.record_payment(
        alice.id, locked_circle.id, [months[1].id, months[3].id], "file-123"
    )

    assert result.ok
    assert len(result.payments) == 2
    assert {p.status for p in result.payments} == {PaymentStatus.PAID}
    assert {p.proof_ref for p in result.payments} == {"file-123"}
    assert payments.get_paid_month_ids(alice.id, locked_circle.id) == {
        months[1].id,
        months[3].id,
    }
    assert payments.is_paid(alice.id, locked_circle.id, months[1].id)
    assert not payments.is_paid(alice.id, locked_circle.id, months[2].id)


def test_repeated_month_is_recorded_once(payments, locked_circle, months, alice):
    result = payments.record_payment(
        alice.id, locked_circle.id, [months[1].id, months[1].id], "file-1"
    )
    assert len(result.payments) == 1


def test_rejected_payment_leaves_month_unpaid(payments, locked_circle, months, alice):
    result = payments.record_payment(alice.id, locked_circle.id, [months[1].id], "blurry")
    payments.set_payment_status(result.payments[0].id, PaymentStatus.REJECTED)

    assert not payments.is_paid(alice.id, locked_circle.id, months[1].id)

    payments.record_payment(alice.id, locked_circle.id, [months[1].id], "clear")
    assert payments.is_paid(alice.id, locked_circle.id, months[1].id)
    assert [p.proof_ref for p in payments.get_payments(alice.id, locked_circle.id)] == [
        "clear",
        "blurry",
    ]


def test_set_status_of_unknown_payment(payments):
    result = payments.set_payment_status(42, PaymentStatus.REJECTED)
    assert result.status == PaymentResultStatus.NOT_FOUND


@pytest.mark.parametrize(
    "month_ids, proof_ref",
    [([], "file"), ([1], ""), ([1], None)],
)
def test_invalid_payment_fails_fast(payments, locked_circle, alice, month_ids, proof_ref):
    with pytest.raises(ValueError):
        payments.record_payment(alice.id, locked_circle.id, month_ids, proof_ref)


def test_unpaid_months_in_index_order(payments, allocator, locked_circle, months, alice):
    allocator.allocate(
        alice.id,
        locked_circle.id,
        [(months[3].id, 2), (months[1].id, 1), (months[2].id, 1)],
        allow_locked=True,
    )
    assert [m.index for m in payments.get_unpaid_months(alice.id, locked_circle.id)] == [
        1,
        2,
        3,
    ]

    payments.record_payment(alice.id, locked_circle.id, [months[2].id], "file")
    assert [m.index for m in payments.get_unpaid_months(alice.id, locked_circle.id)] == [
        1,
        3,
    ]


def test_default_payment_month_is_current_month(payments, locked_circle, clock, alice):
    clock.set(2024, 3, 5, 12, 0)
    unpaid = payments.get_unpaid_months(alice.id, locked_circle.id)

    default = payments.default_payment_month(locked_circle, unpaid)
    assert default is not None and default.index == 3

    clock.set(2024, 2, 5, 12, 0)
    assert payments.default_payment_month(locked_circle, unpaid) is None


def test_open_circle_has_no_default_month(payments, circle, alice):
    assert payments.default_payment_month(circle, []) is None


def test_admins_are_told_about_payments(payments, members, locked_circle, months, alice):
    members.update_profile(alice.id, first_name="Alice", phone="555-0100")
    admin = members.set_admin(members.get_or_create("admin").id)
    broken_admin = members.set_admin(members.get_or_create("offline-admin").id)
    sent = []

    async def notifier(external_id, message):
        if external_id == broken_admin.external_id:
            raise ConnectionError("bot offline")
        sent.append((external_id, message))

    result = payments.record_payment(alice.id, locked_circle.id, [months[3].id], "file")
    delivered = asyncio.run(
        payments.notify_admins(
            notifier,
            lambda alert: f"{alert.member.display_name} paid {alert.amount} for {alert.month_name}",
            result.payments,
        )
    )

    assert delivered == 1
    assert sent == [(admin.external_id, f"Alice paid {Decimal('200.00')} for March")]


def test_no_admins_means_no_alerts(payments, locked_circle, months, alice):
    result = payments.record_payment(alice.id, locked_circle.id, [months[1].id], "file")

    async def notifier(external_id, message):
        raise AssertionError("nobody should be notified")

    assert asyncio.run(payments.notify_admins(notifier, str, result.payments)) == 0


def test_payment_for_deleted_circle_is_not_found(
    payments, circles, locked_circle, months, alice
):
    circles.delete_circle(locked_circle.id)

    result = payments.record_payment(alice.id, locked_circle.id, [months[1].id], "file")

    assert result.status == PaymentResultStatus.NOT_FOUND
    assert result.error.entity == "circle"


def test_payment_for_unknown_month_writes_nothing(payments, locked_circle, months, alice):
    result = payments.record_payment(
        alice.id, locked_circle.id, [months[1].id, 999], "file"
    )

    assert result.status == PaymentResultStatus.NOT_FOUND
    assert result.error.ids == [999]
    assert payments.get_payments(alice.id, locked_circle.id) == []


def test_payment_by_unknown_member_is_not_found(payments, locked_circle, months):
    result = payments.record_payment(404, locked_circle.id, [months[1].id], "file")

    assert result.status == PaymentResultStatus.NOT_FOUND
    assert result.error.entity == "member"


def test_alert_for_unclaimed_month_has_no_amount(payments, members, locked_circle, months, alice):
    members.set_admin(members.get_or_create("admin").id)
    alerts = []

    async def notifier(external_id, message):
        pass

    def render(alert):
        alerts.append(alert)
        return ""

    # alice holds January and March, not February
    result = payments.record_payment(alice.id, locked_circle.id, [months[2].id], "file")
    asyncio.run(payments.notify_admins(notifier, render, result.payments))

    [alert] = alerts
    assert alert.slot_count == 0
    assert alert.amount == Decimal("0.00")
