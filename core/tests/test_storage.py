"""
Unit Tests for the in-memory document store

Tests cover:
1. Versioned conditional writes
2. Unique indexes on referral code and active referred driver
3. All-or-nothing multi-document commits
4. Atomic sequences
"""

import threading
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from core.errors import UniqueViolationError, WriteConflictError
from core.storage import InMemoryStorage


def referral_doc(code, referred_id=None, status="pending", version=0, **extra):
    doc = {
        "id": uuid4(),
        "referrer_id": "drv-1001",
        "referred_id": referred_id,
        "referral_code": code,
        "status": status,
        "expiry_date": datetime(2030, 1, 1, tzinfo=timezone.utc),
        "version": version,
    }
    doc.update(extra)
    return doc


def account_doc(driver_id, total="0", version=0):
    return {"driver_id": driver_id, "total": Decimal(total), "redeemed": Decimal("0"), "version": version}


class TestConditionalWrites:
    def test_insert_then_update_bumps_version(self):
        storage = InMemoryStorage(seed=False)
        storage.commit(accounts=[account_doc("drv-1", "10")])

        stored = storage.get_account("drv-1")
        assert stored["version"] == 1

        stored["total"] = Decimal("20")
        storage.commit(accounts=[stored])

        assert storage.get_account("drv-1")["version"] == 2
        assert storage.get_account("drv-1")["total"] == Decimal("20")

    def test_stale_version_is_rejected(self):
        storage = InMemoryStorage(seed=False)
        storage.commit(accounts=[account_doc("drv-1", "10")])
        first = storage.get_account("drv-1")
        second = storage.get_account("drv-1")

        first["total"] = Decimal("15")
        storage.commit(accounts=[first])
        second["total"] = Decimal("99")

        with pytest.raises(WriteConflictError):
            storage.commit(accounts=[second])
        assert storage.get_account("drv-1")["total"] == Decimal("15")

    def test_concurrent_insert_of_same_account_conflicts(self):
        storage = InMemoryStorage(seed=False)
        storage.commit(accounts=[account_doc("drv-1")])

        with pytest.raises(WriteConflictError):
            storage.commit(accounts=[account_doc("drv-1")])

    def test_reads_are_copies(self):
        storage = InMemoryStorage(seed=False)
        storage.commit(accounts=[account_doc("drv-1", "10")])

        storage.get_account("drv-1")["total"] = Decimal("1000000")

        assert storage.get_account("drv-1")["total"] == Decimal("10")


class TestUniqueIndexes:
    def test_duplicate_referral_code(self):
        storage = InMemoryStorage(seed=False)
        storage.commit(referrals=[referral_doc("GRP-SDS001-AY")])

        with pytest.raises(UniqueViolationError) as exc_info:
            storage.commit(referrals=[referral_doc("GRP-SDS001-AY")])
        assert exc_info.value.index == "referral_code"

    def test_second_active_referral_for_same_driver(self):
        storage = InMemoryStorage(seed=False)
        storage.commit(referrals=[referral_doc("GRP-SDS001-AY", referred_id="drv-2")])

        with pytest.raises(UniqueViolationError) as exc_info:
            storage.commit(referrals=[referral_doc("GRP-SDS002-AY", referred_id="drv-2", status="completed")])
        assert exc_info.value.index == "active_referred"

    def test_inactive_referral_frees_the_driver(self):
        storage = InMemoryStorage(seed=False)
        first = referral_doc("GRP-SDS001-AY", referred_id="drv-2")
        storage.commit(referrals=[first])

        expired = storage.get_referral(first["id"])
        expired["status"] = "expired"
        storage.commit(referrals=[expired])
        storage.commit(referrals=[referral_doc("GRP-SDS002-AY", referred_id="drv-2")])

        active = storage.find_active_referral_for_referred("drv-2")
        assert active["referral_code"] == "GRP-SDS002-AY"

    def test_same_commit_cannot_activate_two_referrals(self):
        storage = InMemoryStorage(seed=False)

        with pytest.raises(UniqueViolationError):
            storage.commit(referrals=[
                referral_doc("GRP-SDS001-AY", referred_id="drv-2"),
                referral_doc("GRP-SDS002-AY", referred_id="drv-2"),
            ])
        assert storage.find_referrals() == []


class TestAtomicCommit:
    def test_conflict_on_one_document_writes_nothing(self):
        storage = InMemoryStorage(seed=False)
        storage.commit(accounts=[account_doc("drv-1", "10")])
        referral = referral_doc("GRP-SDS001-AY", referred_id="drv-2")

        with pytest.raises(WriteConflictError):
            storage.commit(
                referrals=[referral],
                accounts=[account_doc("drv-2", "500"), account_doc("drv-1", "1010", version=0)],
            )

        assert storage.get_referral(referral["id"]) is None
        assert storage.get_account("drv-2") is None
        assert storage.get_account("drv-1")["total"] == Decimal("10")


class TestSequences:
    def test_sequence_increments(self):
        storage = InMemoryStorage(seed=False)

        assert storage.next_sequence("referral_code") == 1
        assert storage.next_sequence("referral_code") == 2
        assert storage.next_sequence("other") == 1

    def test_advance_sequence_never_moves_back(self):
        storage = InMemoryStorage(seed=False)
        storage.advance_sequence_to("referral_code", 41)
        storage.advance_sequence_to("referral_code", 7)

        assert storage.next_sequence("referral_code") == 42

    def test_concurrent_sequence_values_are_unique(self):
        storage = InMemoryStorage(seed=False)
        values = []
        lock = threading.Lock()

        def take():
            value = storage.next_sequence("referral_code")
            with lock:
                values.append(value)

        threads = [threading.Thread(target=take) for _ in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(values) == list(range(1, 51))


class TestDriverDirectory:
    def test_seeded_drivers(self):
        storage = InMemoryStorage()

        assert storage.get_driver("drv-1001")["name"] == "Ayesha Khan"
        assert storage.get_driver("drv-missing") is None

    def test_add_driver(self):
        storage = InMemoryStorage(seed=False)
        storage.add_driver("drv-9", "Chen Wei", "chen.wei@example.com")

        assert storage.get_driver("drv-9")["email"] == "chen.wei@example.com"
