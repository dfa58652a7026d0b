import datetime
from decimal import Decimal

import pytest

from rosca import (
    CircleService,
    MemberService,
    PaymentTracker,
    SubscriptionAllocator,
    create_session_factory,
)


class FakeClock:
    """Clock whose time only moves when a test sets it"""

    def __init__(self, now: datetime.datetime):
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def set(self, *args) -> None:
        self.now = datetime.datetime(*args)


@pytest.fixture
def session_factory(tmp_path):
    factory = create_session_factory(f"sqlite:///{tmp_path / 'circle.db'}")
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def clock():
    return FakeClock(datetime.datetime(2024, 1, 1, 9, 0))


@pytest.fixture
def circles(session_factory, clock):
    return CircleService(session_factory, clock)


@pytest.fixture
def members(session_factory):
    return MemberService(session_factory)


@pytest.fixture
def allocator(session_factory):
    return SubscriptionAllocator(session_factory, max_attempts=20, retry_delay=0.01)


@pytest.fixture
def payments(session_factory, clock):
    return PaymentTracker(session_factory, clock)


@pytest.fixture
def circle(circles):
    return circles.create_circle(
        "Spring",
        Decimal("100"),
        [("January", 10), ("February", 10), ("March", 10), ("April", 5)],
    )


@pytest.fixture
def months(circles, circle):
    """The circle's months keyed by index"""
    return {month.index: month for month in circles.get_months(circle.id)}


@pytest.fixture
def alice(members):
    return members.get_or_create("alice")


@pytest.fixture
def bob(members):
    return members.get_or_create("bob")
