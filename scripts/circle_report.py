#!/usr/bin/env python3
"""
Savings circle report

Prints a circle's fill status and, optionally, who has paid for a month,
reading the plugin's database file directly.

Usage:
    python scripts/circle_report.py
    python scripts/circle_report.py --circle-id 3 --month 2
"""

import argparse
import sys
from pathlib import Path

# Make the project root importable when run as a script
sys.path.insert(0, str(Path(__file__).parent.parent))

from rosca import ReportService, create_session_factory  # noqa: E402
from rosca.models import CircleRecord  # noqa: E402
from rosca.circle_service import CircleService  # noqa: E402


def print_overview(reports: ReportService, circle: CircleRecord) -> None:
    overview = reports.circle_overview(circle.id)
    state = "locked" if circle.is_locked else "open"
    print(f"📊 {circle.name} ({state}, {circle.monthly_amount} per slot)")
    for fill in overview.months:
        holders = ", ".join(
            f"{h.member.display_name} x{h.slot_count}" for h in fill.holders
        )
        print(
            f"   {fill.month.index:>2}. {fill.month.name}: "
            f"{fill.filled}/{fill.month.total_capacity} "
            f"({fill.fill_percentage:.0f}%)" + (f" - {holders}" if holders else "")
        )
    print(
        f"   Total: {overview.filled_slots}/{overview.total_slots} slots "
        f"({overview.fill_percentage:.1f}%), {overview.empty_slots} free"
    )


def print_payments(reports: ReportService, circle: CircleRecord, index: int) -> bool:
    months = reports.circle_overview(circle.id).months
    month = next((m for m in months if m.month.index == index), None)
    if month is None:
        print(f"❌ Circle {circle.id} has no month {index}")
        return False

    report = reports.payment_report(circle.id, month.month.id)
    print(f"💰 Payments for {report.month.name}")
    for line in report.paid:
        print(f"   ✅ {line.member.display_name}: {line.amount}")
    for line in report.unpaid:
        print(
            f"   ⏳ {line.member.display_name}: {line.amount} "
            f"({line.slot_count} slot(s))"
        )
    print(
        f"   Paid {report.total_paid} ({report.paid_percentage:.1f}%), "
        f"outstanding {report.total_unpaid} ({report.unpaid_percentage:.1f}%)"
    )
    return True


def main():
    parser = argparse.ArgumentParser(description="Show a savings circle's fill and payments")
    parser.add_argument(
        "--database",
        type=Path,
        default=Path(".data/savings_circle/circle.db"),
        help="Path to the circle database file",
    )
    parser.add_argument(
        "--circle-id",
        type=int,
        help="Circle to report on; defaults to the running circle, then the open one",
    )
    parser.add_argument("--month", type=int, help="Month index to show payments for")

    args = parser.parse_args()

    try:
        if not args.database.exists():
            raise FileNotFoundError(f"Database file does not exist: {args.database}")

        session_factory = create_session_factory(f"sqlite:///{args.database.resolve()}")
        circles = CircleService(session_factory)
        reports = ReportService(session_factory)

        if args.circle_id is not None:
            circle = circles.get_circle(args.circle_id)
        else:
            circle = circles.get_running_circle() or circles.get_open_circle()
        if circle is None:
            print("✅ No circle found")
            return

        print_overview(reports, circle)
        if args.month is not None and not print_payments(reports, circle, args.month):
            sys.exit(1)

    except Exception as e:
        print(f"❌ Report failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
