"""Human-readable document numbering: ``<TYPE>-<YYYYMM>-<NNNN>``.

Counters are keyed by (document type, year, month) and advanced with a single
atomic statement inside the caller's transaction, so a code is only ever
consumed together with the document that carries it.
"""

import logging
import re
from datetime import date, datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from app.db import models
from app.orders.enums import DocumentType
from app.orders.errors import ConflictError

logger = logging.getLogger("osflow.sequence")

CORRELATIVE_DIGITS = 4
_CODE_RE = re.compile(r"^([A-Z]+)-(\d{4})(\d{2})-(\d{4,})$")


def format_code(document_type: DocumentType | str, year: int, month: int, correlative: int) -> str:
    prefix = DocumentType(document_type).value
    return f"{prefix}-{year:04d}{month:02d}-{correlative:0{CORRELATIVE_DIGITS}d}"


def parse_code(code: str) -> Optional[dict]:
    match = _CODE_RE.match((code or "").strip())
    if not match:
        return None
    prefix, year, month, correlative = match.groups()
    if not 1 <= int(month) <= 12:
        return None
    return {
        "prefix": prefix,
        "year": int(year),
        "month": int(month),
        "correlative": int(correlative),
    }


def is_valid_code(code: str, document_type: DocumentType | str) -> bool:
    parsed = parse_code(code)
    return bool(parsed) and parsed["prefix"] == DocumentType(document_type).value


def _increment(db: Session, document_type: str, year: int, month: int) -> int:
    table = models.OrderSequenceCounter.__table__
    dialect = db.get_bind().dialect.name
    now = datetime.utcnow()

    if dialect in ("postgresql", "sqlite"):
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = (
            insert(table)
            .values(document_type=document_type, year=year, month=month, current_value=1, updated_at=now)
            .on_conflict_do_update(
                index_elements=[table.c.document_type, table.c.year, table.c.month],
                set_={"current_value": table.c.current_value + 1, "updated_at": now},
            )
            .returning(table.c.current_value)
        )
        return db.execute(stmt).scalar_one()

    return _increment_locked(db, document_type, year, month)


def _locked_counter(db: Session, document_type: str, year: int, month: int) -> Optional[models.OrderSequenceCounter]:
    return (
        db.query(models.OrderSequenceCounter)
        .filter(
            models.OrderSequenceCounter.document_type == document_type,
            models.OrderSequenceCounter.year == year,
            models.OrderSequenceCounter.month == month,
        )
        .with_for_update()
        .first()
    )


def _increment_locked(db: Session, document_type: str, year: int, month: int) -> int:
    counter = _locked_counter(db, document_type, year, month)
    if counter is None:
        counter = models.OrderSequenceCounter(
            document_type=document_type, year=year, month=month, current_value=0
        )
        db.add(counter)
    counter.current_value += 1
    try:
        db.flush()
    except IntegrityError as exc:
        # another transaction opened the same period first
        logger.info("sequence counter race type=%s period=%04d%02d", document_type, year, month)
        raise ConflictError(
            "Numeracao disputada por outra operacao, tente novamente",
            {"document_type": document_type, "year": year, "month": month},
        ) from exc
    return counter.current_value


def next_code(db: Session, document_type: DocumentType | str, as_of_date: date | datetime) -> str:
    doc_type = DocumentType(document_type)
    correlative = _increment(db, doc_type.value, as_of_date.year, as_of_date.month)
    code = format_code(doc_type, as_of_date.year, as_of_date.month, correlative)
    logger.debug("sequence issued code=%s", code)
    return code


def preview_next_code(db: Session, document_type: DocumentType | str, as_of_date: date | datetime) -> str:
    doc_type = DocumentType(document_type)
    current = db.execute(
        select(models.OrderSequenceCounter.current_value).where(
            models.OrderSequenceCounter.document_type == doc_type.value,
            models.OrderSequenceCounter.year == as_of_date.year,
            models.OrderSequenceCounter.month == as_of_date.month,
        )
    ).scalar_one_or_none()
    return format_code(doc_type, as_of_date.year, as_of_date.month, (current or 0) + 1)


def counter_statistics(db: Session, document_type: DocumentType | str | None = None) -> list[dict]:
    query = db.query(models.OrderSequenceCounter)
    if document_type is not None:
        query = query.filter(models.OrderSequenceCounter.document_type == DocumentType(document_type).value)
    records = query.order_by(
        models.OrderSequenceCounter.year.desc(),
        models.OrderSequenceCounter.month.desc(),
        models.OrderSequenceCounter.document_type.asc(),
    ).all()
    return [
        {
            "document_type": record.document_type,
            "year": record.year,
            "month": record.month,
            "current_value": record.current_value,
            "last_code": format_code(record.document_type, record.year, record.month, record.current_value)
            if record.current_value
            else None,
        }
        for record in records
    ]
