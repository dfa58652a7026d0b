from .allocation_service import (
    AllocationResult,
    AllocationStatus,
    ClaimRequest,
    SubscriptionAllocator,
)
from .circle_service import CircleService, parse_amount, parse_month_input
from .database import create_session_factory, get_session, init_database
from .errors import (
    CapacityExceeded,
    EntityNotFound,
    InvalidState,
    MonthShortfall,
    NotifierUnavailable,
    PersistedInvariantViolation,
    RoscaError,
    StoreUnavailable,
)
from .ledger import MonthAvailability, compute_month_availability, remaining_capacity
from .member_service import MemberService
from .models import ClaimStatus, PaymentStatus
from .payment_service import PaymentResult, PaymentResultStatus, PaymentTracker
from .reminder_service import DueReminder, ReminderSweep, SweepReport, window_opens_on
from .report_service import ReportService
from .turn_service import PayoutSchedule, Turn, TurnScheduler, TurnStatus


__all__ = [
    "AllocationResult",
    "AllocationStatus",
    "ClaimRequest",
    "SubscriptionAllocator",
    "CircleService",
    "parse_amount",
    "parse_month_input",
    "create_session_factory",
    "get_session",
    "init_database",
    "CapacityExceeded",
    "EntityNotFound",
    "InvalidState",
    "MonthShortfall",
    "NotifierUnavailable",
    "PersistedInvariantViolation",
    "RoscaError",
    "StoreUnavailable",
    "MonthAvailability",
    "compute_month_availability",
    "remaining_capacity",
    "MemberService",
    "ClaimStatus",
    "PaymentStatus",
    "PaymentResult",
    "PaymentResultStatus",
    "PaymentTracker",
    "DueReminder",
    "ReminderSweep",
    "SweepReport",
    "window_opens_on",
    "ReportService",
    "PayoutSchedule",
    "Turn",
    "TurnScheduler",
    "TurnStatus",
]
