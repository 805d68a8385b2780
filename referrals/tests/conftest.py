"""
Pytest configuration and shared fixtures for the referral tests.
"""
from datetime import datetime, timedelta, timezone

import pytest

from core.config import Settings
from core.storage import InMemoryStorage
from referrals.service import ReferralService

REFERRER_ID = "drv-a"
REFERRED_ID = "drv-b"
OTHER_ID = "drv-c"


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    """Fixed clock for deterministic expiry checks"""
    return FakeClock(datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def storage():
    storage = InMemoryStorage(seed=False)
    storage.add_driver(REFERRER_ID, "Ayesha Khan", "ayesha.khan@example.com")
    storage.add_driver(REFERRED_ID, "Brian Otieno", "brian.otieno@example.com")
    storage.add_driver(OTHER_ID, "Chen Wei", "chen.wei@example.com")
    return storage


@pytest.fixture
def service(storage, clock):
    return ReferralService(storage=storage, settings=Settings(), clock=clock)


@pytest.fixture
def redeemed(service):
    """Referral from drv-a whose code has been redeemed by drv-b"""
    code = service.generate_code(REFERRER_ID)
    service.redeem_code(code.referral_code, REFERRED_ID)
    return service.get_referral(code.referral_id)
