"""Unit tests for the ORM models defined in pos_fiscal.models.

These tests verify mapping details the queue relies on: table names, the
partial unique index that allows one active entry per sale, and UTC
round-tripping of timestamps on SQLite.
"""

from datetime import UTC, datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from pos_fiscal.db.time import as_utc
from pos_fiscal.models import AuditEvent, QueueEntry, ReferenceCode, Sale, Tenant, TenantCredential


def test_table_names():
    """Model classes expose expected __tablename__ values."""
    assert Tenant.__tablename__ == "tenant"
    assert Sale.__tablename__ == "sale"
    assert QueueEntry.__tablename__ == "fbr_queue"
    assert AuditEvent.__tablename__ == "fbr_audit_log"
    assert TenantCredential.__tablename__ == "tenant_credential"
    assert ReferenceCode.__tablename__ == "reference_code"


def test_active_entry_index_is_partial_and_unique():
    index = next(
        index for index in QueueEntry.__table__.indexes if index.name == "uq_fbr_queue_active_sale"
    )
    assert index.unique
    assert [column.name for column in index.columns] == ["tenant_id", "sale_id"]
    assert "dead_letter" in str(index.dialect_options["sqlite"]["where"])


def _entry(sale: Sale, chain_seq: int, state: str) -> QueueEntry:
    return QueueEntry(
        tenant_id=sale.tenant_id,
        sale_id=sale.id,
        chain_seq=chain_seq,
        state=state,
        reference_number=sale.reference_number,
    )


def test_database_rejects_second_active_entry(db_session, sale):
    db_session.add(_entry(sale, 1, "pending"))
    db_session.commit()

    db_session.add(_entry(sale, 2, "retrying"))
    with pytest.raises(IntegrityError):
        db_session.commit()


def test_terminal_entries_do_not_block_a_new_chain(db_session, sale):
    db_session.add_all([_entry(sale, 1, "dead_letter"), _entry(sale, 2, "synced")])
    db_session.add(_entry(sale, 3, "pending"))
    db_session.commit()

    assert db_session.query(QueueEntry).count() == 3


def test_timestamps_load_as_aware_utc(db_session, sale):
    karachi = timezone(timedelta(hours=5))
    entry = _entry(sale, 1, "pending")
    entry.next_attempt_at = datetime(2026, 10, 15, 14, 0, tzinfo=karachi)
    db_session.add(entry)
    db_session.commit()

    db_session.expire_all()
    loaded = db_session.get(QueueEntry, entry.id)
    assert loaded.next_attempt_at == datetime(2026, 10, 15, 9, 0, tzinfo=UTC)
    assert loaded.next_attempt_at.tzinfo is UTC
    assert loaded.created_at.tzinfo is UTC


def test_as_utc_treats_naive_values_as_utc():
    naive = datetime(2026, 10, 15, 9, 0)

    assert as_utc(naive) == datetime(2026, 10, 15, 9, 0, tzinfo=UTC)
