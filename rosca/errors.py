"""
Error taxonomy for the savings circle core.

Allocation and payment operations catch these at their boundary and hand them
back inside result objects; circle lifecycle operations raise them directly.
"""

from dataclasses import dataclass
from typing import Iterable, List


@dataclass
class MonthShortfall:
    """A requested month that could not take the requested number of slots"""

    month_id: int
    requested: int
    available: int


class RoscaError(Exception):
    """Base class for savings circle errors"""


class CapacityExceeded(RoscaError):
    def __init__(self, shortfalls: Iterable[MonthShortfall]):
        self.shortfalls: List[MonthShortfall] = list(shortfalls)
        details = ", ".join(
            f"month {s.month_id}: requested {s.requested}, available {s.available}"
            for s in self.shortfalls
        )
        super().__init__(f"Not enough slots left ({details})")


class EntityNotFound(RoscaError):
    def __init__(self, entity: str, ids: Iterable[int]):
        self.entity = entity
        self.ids = sorted(ids)
        super().__init__(f"{entity} not found: {self.ids}")


class InvalidState(RoscaError):
    pass


class StoreUnavailable(RoscaError):
    pass


class NotifierUnavailable(RoscaError):
    def __init__(self, external_id: str, reason: str):
        self.external_id = external_id
        super().__init__(f"Could not notify {external_id}: {reason}")


class PersistedInvariantViolation(RoscaError):
    """Committed claims for a month add up to more than its capacity"""

    def __init__(self, month_id: int, total_capacity: int, taken: int):
        self.month_id = month_id
        self.total_capacity = total_capacity
        self.taken = taken
        super().__init__(
            f"Month {month_id} is overbooked: {taken} slots claimed of {total_capacity}"
        )
