from datetime import datetime, timedelta

import pytest

from hostel_store import InMemoryStore
from hostel_system import HostelSystem


class FakeClock:
    """Controllable stand-in for datetime.utcnow."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def clock():
    return FakeClock(datetime(2025, 9, 20, 10, 0))


@pytest.fixture()
def store():
    return InMemoryStore()


@pytest.fixture()
def system(store, clock):
    return HostelSystem(store=store, clock=clock)
