"""
Savings circle plugin - wires the rosca core into the bot
"""

from typing import Iterable

from nonebot.log import logger
from nonebot import get_bot, get_driver, get_plugin_config, require

require("nonebot_plugin_localstore")
require("nonebot_plugin_apscheduler")

import nonebot_plugin_localstore as store  # noqa: E402
from nonebot_plugin_apscheduler import scheduler  # noqa: E402

from rosca import (  # noqa: E402
    CircleService,
    MemberService,
    PaymentResult,
    PaymentTracker,
    ReminderSweep,
    ReportService,
    SubscriptionAllocator,
    TurnScheduler,
    init_database,
)
from rosca.payment_service import PaymentAlert  # noqa: E402
from rosca.reminder_service import DueReminder  # noqa: E402

from .config import Config  # noqa: E402
from .messages import Messages  # noqa: E402

plugin_config = get_plugin_config(Config)


def database_url() -> str:
    if plugin_config.circle_database_url:
        return plugin_config.circle_database_url
    database_path = store.get_data_file("savings_circle", "circle.db")
    return f"sqlite:///{database_path.resolve()}"


@get_driver().on_startup
async def init():
    init_database(database_url())
    logger.info("Savings circle database initialised")


async def send_to_member(external_id: str, message: str) -> None:
    """Deliver a private message; raises when no bot is connected"""
    bot = get_bot()
    await bot.send_private_message(external_id, message)


def render_reminder(reminder: DueReminder) -> str:
    return Messages.PAYMENT_REMINDER.format(
        month_name=reminder.month_name,
        circle_name=reminder.circle_name,
        slot_count=reminder.slot_count,
        amount=reminder.amount_due,
    )


def render_payment_alert(alert: PaymentAlert) -> str:
    template = (
        Messages.ADMIN_PAYMENT_NOTIFICATION
        if alert.slot_count
        else Messages.ADMIN_PAYMENT_WITHOUT_CLAIM
    )
    return template.format(
        member_name=alert.member.display_name,
        phone=alert.member.phone or Messages.NOT_PROVIDED,
        month_name=alert.month_name,
        circle_name=alert.circle_name,
        amount=alert.amount,
    )


# The services resolve the session factory lazily, so they can be built before
# the startup hook has opened the database.
circle_service = CircleService()
member_service = MemberService()
allocator = SubscriptionAllocator(
    max_attempts=plugin_config.circle_allocation_max_attempts
)
payment_tracker = PaymentTracker()
turn_scheduler = TurnScheduler()
report_service = ReportService()
reminder_sweep = ReminderSweep(
    notifier=send_to_member,
    render=render_reminder,
    reminder_hour=plugin_config.circle_reminder_hour,
    window_day=plugin_config.circle_reminder_window_day,
)


async def record_payment(
    member_id: int,
    circle_id: int,
    month_ids: Iterable[int],
    proof_ref: str,
) -> PaymentResult:
    """Record a payment and let the admins know about it"""
    result = payment_tracker.record_payment(member_id, circle_id, month_ids, proof_ref)
    if result.ok:
        delivered = await payment_tracker.notify_admins(
            send_to_member, render_payment_alert, result.payments
        )
        logger.info(f"Payment alert delivered {delivered} time(s)")
    return result


@scheduler.scheduled_job(
    id="circle_payment_reminders",
    trigger="interval",
    minutes=plugin_config.circle_reminder_interval_minutes,
)
async def send_payment_reminders():
    try:
        report = await reminder_sweep.run()
        if report.sent > 0:
            logger.info(f"Sent {report.sent} payment reminder(s)")
    except Exception as e:
        logger.exception(f"Payment reminder sweep failed: {e}", exc_info=True)


__all__ = [
    "allocator",
    "circle_service",
    "member_service",
    "payment_tracker",
    "record_payment",
    "report_service",
    "turn_scheduler",
]
