"""
Fiscal Sequence Generator

Generates fiscal-year-scoped document codes:
  - Orders:          ORD{n}/{YY-YY}   (e.g. ORD1/25-26, ORD42/25-26)
  - Group billing:   R{n}/{YY-YY}     (e.g. R3/25-26)

The fiscal year runs from FISCAL_YEAR_START_MONTH (April by default) to the
month before it, so 2026-03-31 belongs to 25-26 and 2026-04-01 to 26-27.

Numbers are issued on a dedicated connection that commits immediately, so a
rollback in the caller's transaction never hands the same number out twice.
Gaps are possible, duplicates are not.

PostgreSQL / SQLite:
    INSERT ... ON CONFLICT (prefix, fiscal_year)
    DO UPDATE SET next_value = next_value + 1 RETURNING next_value
Other dialects:
    UPDATE ... SET next_value = next_value + 1, falling back to INSERT; a lost
    INSERT race raises DuplicateSequenceConflict and is retried here.
"""

from __future__ import annotations

import logging
from datetime import date, datetime

from flask import current_app
from sqlalchemy import insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import DuplicateSequenceConflict
from app.models import db, utcnow
from app.models.sequence import FiscalSequence

logger = logging.getLogger(__name__)

_MAX_RETRIES = 5

_UPSERT_DIALECTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def fiscal_year(on: date | datetime | None = None, start_month: int | None = None) -> str:
    """Return the fiscal year label ``YY-YY`` containing ``on`` (default: today)."""
    if start_month is None:
        start_month = current_app.config.get("FISCAL_YEAR_START_MONTH", 4)
    on = on or date.today()
    start_year = on.year if on.month >= start_month else on.year - 1
    return f"{start_year % 100:02d}-{(start_year + 1) % 100:02d}"


def _issue_upsert(conn, insert_fn, prefix: str, fy: str) -> int:
    table = FiscalSequence.__table__
    stmt = (
        insert_fn(table)
        .values(prefix=prefix, fiscal_year=fy, next_value=2, updated_at=utcnow())
        .on_conflict_do_update(
            index_elements=[table.c.prefix, table.c.fiscal_year],
            set_={"next_value": table.c.next_value + 1, "updated_at": utcnow()},
        )
        .returning(table.c.next_value)
    )
    next_value = conn.execute(stmt).scalar_one()
    return next_value - 1


def _issue_portable(conn, prefix: str, fy: str) -> int:
    table = FiscalSequence.__table__
    where = (table.c.prefix == prefix) & (table.c.fiscal_year == fy)
    result = conn.execute(
        update(table).where(where).values(next_value=table.c.next_value + 1, updated_at=utcnow())
    )
    if result.rowcount == 0:
        try:
            with conn.begin_nested():
                conn.execute(
                    insert(table).values(prefix=prefix, fiscal_year=fy, next_value=2, updated_at=utcnow())
                )
        except IntegrityError as exc:
            raise DuplicateSequenceConflict(prefix, fy) from exc
        return 1
    # The UPDATE above holds the row lock until commit
    return conn.execute(select(table.c.next_value).where(where)).scalar_one() - 1


def next_number(prefix: str, *, on: date | datetime | None = None) -> tuple[int, str]:
    """Issue the next number for ``prefix`` in the fiscal year of ``on``.

    Returns:
        (number, fiscal_year)
    """
    fy = fiscal_year(on)
    dialect = db.engine.dialect.name
    insert_fn = _UPSERT_DIALECTS.get(dialect)

    for attempt in range(1, _MAX_RETRIES + 1):
        try:
            with db.engine.begin() as conn:
                if insert_fn is not None:
                    number = _issue_upsert(conn, insert_fn, prefix, fy)
                else:
                    number = _issue_portable(conn, prefix, fy)
            return number, fy
        except DuplicateSequenceConflict:
            logger.debug("Sequence %s/%s insert race, retry %d", prefix, fy, attempt)
    raise DuplicateSequenceConflict(prefix, fy)


def next_code(prefix: str, *, on: date | datetime | None = None) -> str:
    """Return the next code ``{prefix}{n}/{YY-YY}``, e.g. ``ORD12/25-26``."""
    number, fy = next_number(prefix, on=on)
    return f"{prefix}{number}/{fy}"


def current_value(prefix: str, *, on: date | datetime | None = None) -> int:
    """Last number issued for ``prefix`` in the fiscal year of ``on`` (0 if none)."""
    fy = fiscal_year(on)
    row = db.session.get(FiscalSequence, (prefix, fy))
    return row.next_value - 1 if row else 0
