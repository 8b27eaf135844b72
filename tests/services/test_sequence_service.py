"""
Tests for SequenceService (permit number allocation).

Covers:
- First allocation of a month starts at 0001
- Suffixes increase by one per allocation and are scoped per bucket
- Legacy year-less numbers seed a new counter above their high-water mark
- Exhaustion past 9999
- The counter row, not a MAX() scan, drives allocation
"""

import inspect
import re
from uuid import uuid4

import pytest

from permit_kernel.domain.lifecycle import PermitStatus
from permit_kernel.domain.numbering import MonthKey
from permit_kernel.exceptions import SequenceExhaustedError
from permit_kernel.models.permit import Permit
from permit_kernel.services.sequence_service import (
    PermitNumberCounter,
    SequenceService,
)
from tests.factories import END, START

PREFIX = "RGDGTLWP"
JAN_2024 = MonthKey(2024, 1)


def _insert_permit(session, permit_number: str) -> Permit:
    """Persist a bare permit carrying ``permit_number`` (e.g. imported legacy data)."""
    permit = Permit(
        permit_number=permit_number,
        title="Imported",
        work_type="GENERAL",
        priority="MEDIUM",
        status=PermitStatus.PENDING.value,
        start_date=START,
        end_date=END,
        owner_id=uuid4(),
        created_at=START,
        updated_at=START,
    )
    session.add(permit)
    session.flush()
    return permit


class TestAllocation:

    def test_first_number_of_month(self, session):
        service = SequenceService(session)
        assert service.allocate(PREFIX, JAN_2024) == "RGDGTLWP JAN 2024 - 0001"

    def test_consecutive_allocations(self, session):
        service = SequenceService(session)
        numbers = [service.allocate(PREFIX, JAN_2024) for _ in range(3)]
        assert numbers == [
            "RGDGTLWP JAN 2024 - 0001",
            "RGDGTLWP JAN 2024 - 0002",
            "RGDGTLWP JAN 2024 - 0003",
        ]
        assert service.current_value("RGDGTLWP JAN 2024") == 3

    def test_buckets_are_independent(self, session):
        service = SequenceService(session)
        service.allocate(PREFIX, JAN_2024)
        service.allocate(PREFIX, JAN_2024)

        assert service.allocate(PREFIX, MonthKey(2024, 2)) == "RGDGTLWP FEB 2024 - 0001"
        assert service.allocate("HW", JAN_2024) == "HW JAN 2024 - 0001"
        assert service.allocate(PREFIX, MonthKey(2025, 1)) == "RGDGTLWP JAN 2025 - 0001"

    def test_unused_bucket_has_no_counter(self, session):
        assert SequenceService(session).current_value("RGDGTLWP MAR 2024") is None

    def test_allocation_logs(self, session, captured_logs):
        SequenceService(session).allocate(PREFIX, JAN_2024)

        allocated = [r for r in captured_logs() if r["message"] == "permit_number_allocated"]
        assert len(allocated) == 1
        assert allocated[0]["bucket"] == "RGDGTLWP JAN 2024"
        assert allocated[0]["suffix"] == 1


class TestLegacySeed:

    def test_counter_starts_above_legacy_numbers(self, session):
        _insert_permit(session, "RGDGTLWP JAN - 0007")
        _insert_permit(session, "RGDGTLWP JAN - 0003")

        number = SequenceService(session).allocate(PREFIX, JAN_2024)
        assert number == "RGDGTLWP JAN 2024 - 0008"

    def test_counter_starts_above_current_format_numbers(self, session):
        _insert_permit(session, "RGDGTLWP JAN 2024 - 0011")

        number = SequenceService(session).allocate(PREFIX, JAN_2024)
        assert number == "RGDGTLWP JAN 2024 - 0012"

    def test_other_months_and_years_ignored(self, session):
        _insert_permit(session, "RGDGTLWP FEB - 0050")
        _insert_permit(session, "RGDGTLWP JAN 2023 - 0040")

        number = SequenceService(session).allocate(PREFIX, JAN_2024)
        assert number == "RGDGTLWP JAN 2024 - 0001"

    def test_seed_applies_only_when_counter_is_created(self, session):
        service = SequenceService(session)
        assert service.allocate(PREFIX, JAN_2024).endswith("0001")

        # Imported after the counter exists: the counter stays authoritative
        _insert_permit(session, "RGDGTLWP JAN - 0100")
        assert service.allocate(PREFIX, JAN_2024).endswith("0002")


class TestExhaustion:

    def test_bucket_exhausted_after_9999(self, session):
        session.add(PermitNumberCounter(bucket="RGDGTLWP JAN 2024", current_value=9999))
        session.flush()

        with pytest.raises(SequenceExhaustedError) as exc_info:
            SequenceService(session).allocate(PREFIX, JAN_2024)

        assert exc_info.value.bucket == "RGDGTLWP JAN 2024"
        assert exc_info.value.limit == 9999
        assert exc_info.value.code == "SEQUENCE_EXHAUSTED"

    def test_last_suffix_is_issued(self, session):
        session.add(PermitNumberCounter(bucket="RGDGTLWP JAN 2024", current_value=9998))
        session.flush()

        assert SequenceService(session).allocate(PREFIX, JAN_2024) == "RGDGTLWP JAN 2024 - 9999"


class TestAllocationPattern:
    """Allocation must go through the counter row, never MAX(suffix)+1."""

    def test_counter_table_exists(self, session):
        from sqlalchemy import inspect as sa_inspect

        inspector = sa_inspect(session.bind)
        assert "permit_number_counters" in inspector.get_table_names()
        columns = {c["name"] for c in inspector.get_columns("permit_number_counters")}
        assert {"bucket", "current_value"} <= columns

    def test_no_max_pattern_in_sequence_service(self):
        source = inspect.getsource(SequenceService)
        for pattern in (r"MAX\s*\(", r"func\.max", r"\.max\s*\("):
            assert not re.findall(pattern, source, re.IGNORECASE), (
                f"SequenceService contains forbidden MAX pattern: {pattern}"
            )

    def test_increment_is_a_single_update(self):
        source = inspect.getsource(SequenceService._increment)
        assert "current_value + 1" in source
