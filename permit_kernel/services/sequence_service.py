"""
SequenceService -- permit number allocation via atomic counter rows.

Responsibility:
    Issues unique, strictly increasing permit number suffixes per
    (prefix, calendar month) bucket and renders them as
    ``PREFIX MON YYYY - NNNN``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by LifecycleService.create_permit.

Invariants enforced:
    - The counter row is the sole source of truth for the next suffix.
      It is advanced with ``UPDATE ... SET current_value = current_value + 1``
      which takes the row lock until the caller's transaction ends, so
      concurrent allocations in one bucket serialize.  The
      scan-max-then-insert pattern is never used for allocation.
    - A suffix is never reused: the counter never decreases, even if the
      permits carrying its numbers are removed.
    - Transactional: the increment is visible only after the caller
      commits.  A rollback returns the value.

Failure modes:
    - IntegrityError while creating a bucket's counter row: another
      creator won.  Handled by rolling back the savepoint and
      incrementing the winner's row.
    - SequenceConflictError if the row is still missing after that.
    - SequenceExhaustedError once a bucket passes 9999.
"""

from __future__ import annotations

from sqlalchemy import BigInteger, String, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from permit_kernel.db.base import Base
from permit_kernel.domain.numbering import (
    MAX_SUFFIX,
    MonthKey,
    belongs_to_bucket,
    bucket_name,
    format_permit_number,
    parse_permit_number,
)
from permit_kernel.exceptions import (
    InvalidPermitNumberError,
    SequenceConflictError,
    SequenceExhaustedError,
)
from permit_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class PermitNumberCounter(Base):
    """
    Permit number counter table.

    One row per bucket (``'RGDGTLWP FEB 2024'``) holding the last suffix
    issued in it.
    """

    __tablename__ = "permit_number_counters"

    bucket: Mapped[str] = mapped_column(
        String(60),
        nullable=False,
        unique=True,
    )

    current_value: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )


class SequenceService:
    """
    Service for allocating permit numbers.

    Contract:
        ``allocate(prefix, month_key)`` returns the next permit number of
        the bucket.  The first number of a month is ``... - 0001``.

    Guarantees:
        - N concurrent allocations in one empty bucket yield exactly the
          suffixes 1..N once all of them commit.
        - Numbers already persisted in the legacy year-less format
          (``PREFIX MON - NNNN``) are honored: a new counter row starts
          above their high-water mark.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(self, session: Session):
        self._session = session

    def allocate(self, prefix: str, month_key: MonthKey) -> str:
        """
        Allocate the next permit number for ``prefix`` in ``month_key``.

        Raises:
            InvalidPermitNumberError: prefix is not uppercase letters.
            SequenceExhaustedError: the bucket passed 9999.
            SequenceConflictError: the counter row could not be claimed.
        """
        bucket = bucket_name(prefix, month_key)
        value = self.next_value(bucket, prefix=prefix, month_key=month_key)
        if value > MAX_SUFFIX:
            logger.error(
                "permit_number_bucket_exhausted",
                extra={"bucket": bucket, "limit": MAX_SUFFIX},
            )
            raise SequenceExhaustedError(bucket, MAX_SUFFIX)

        number = format_permit_number(prefix, month_key, value)
        logger.info(
            "permit_number_allocated",
            extra={"bucket": bucket, "suffix": value, "permit_number": number},
        )
        return number

    def next_value(
        self,
        bucket: str,
        *,
        prefix: str | None = None,
        month_key: MonthKey | None = None,
    ) -> int:
        """
        Advance ``bucket``'s counter and return the new value.

        ``prefix``/``month_key`` are used only when the counter row does
        not exist yet, to seed it from legacy permit numbers.
        """
        value = self._increment(bucket)
        if value is not None:
            return value

        # First use of this bucket.  Another creator may be doing the same,
        # so the insert runs in a savepoint.
        seed = 0
        if prefix is not None and month_key is not None:
            seed = self._legacy_high_water_mark(prefix, month_key)

        savepoint = self._session.begin_nested()
        try:
            self._session.add(
                PermitNumberCounter(bucket=bucket, current_value=seed + 1)
            )
            self._session.flush()
            savepoint.commit()
            logger.debug(
                "permit_counter_created",
                extra={"bucket": bucket, "seed": seed},
            )
            return seed + 1
        except IntegrityError:
            logger.debug(
                "permit_counter_race_retry",
                extra={"bucket": bucket},
            )
            savepoint.rollback()

        value = self._increment(bucket)
        if value is None:
            raise SequenceConflictError(bucket, "counter row vanished after insert race")
        return value

    def current_value(self, bucket: str) -> int | None:
        """Last value issued in ``bucket``, or None if it was never used."""
        return self._session.execute(
            select(PermitNumberCounter.current_value)
            .where(PermitNumberCounter.bucket == bucket)
        ).scalar_one_or_none()

    def _increment(self, bucket: str) -> int | None:
        result = self._session.execute(
            update(PermitNumberCounter)
            .where(PermitNumberCounter.bucket == bucket)
            .values(current_value=PermitNumberCounter.current_value + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        # The row is locked by the UPDATE until the transaction ends.
        return self._session.execute(
            select(PermitNumberCounter.current_value)
            .where(PermitNumberCounter.bucket == bucket)
        ).scalar_one()

    def _legacy_high_water_mark(self, prefix: str, month_key: MonthKey) -> int:
        """Highest suffix already persisted for the bucket, in either format.

        Runs once per bucket, when its counter row is created.
        """
        from permit_kernel.models.permit import Permit

        candidates = self._session.execute(
            select(Permit.permit_number).where(
                Permit.permit_number.like(f"{prefix} {month_key.abbreviation} %")
            )
        ).scalars()

        highest = 0
        for number in candidates:
            try:
                parsed = parse_permit_number(number)
            except InvalidPermitNumberError:
                logger.warning(
                    "unparseable_permit_number_skipped",
                    extra={"permit_number": number},
                )
                continue
            if belongs_to_bucket(parsed, prefix, month_key) and parsed.suffix > highest:
                highest = parsed.suffix
        return highest
