"""
Concurrency Tests for Race Condition Prevention

Tests cover:
- Row locking on PostgreSQL vs SQLite
- Atomic ledger upsert construct per dialect
- Concurrent ledger commits from many sessions lose no update
- Optimistic version check on concurrent booking edits
- Structure checks: locks and compare-and-set where races matter

Row-lock tests only check the query shape; real FOR UPDATE behaviour needs
PostgreSQL. Ledger races run against a file-backed SQLite database.
"""

import threading
import pytest
from datetime import date, timedelta
from unittest.mock import MagicMock

from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import sessionmaker

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

PACKAGE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), '..', 'booknow')
NIGHT_0 = date(2030, 5, 1)


def read_source(relative_path):
    with open(os.path.join(PACKAGE_DIR, relative_path), 'r', encoding='utf-8') as f:
        return f.read()


def mock_session(dialect):
    db = MagicMock()
    db.get_bind.return_value.dialect.name = dialect
    return db


class TestRowLocks:
    """acquire_row_lock"""

    def test_acquire_row_lock_uses_for_update_on_postgres(self):
        """Verify acquire_row_lock applies with_for_update on PostgreSQL"""
        from booknow.utils.db_helpers import acquire_row_lock
        from booknow.models import Booking

        db = mock_session('postgresql')
        query_mock = MagicMock()
        filter_mock = MagicMock()
        for_update_mock = MagicMock()
        query_mock.filter.return_value = filter_mock
        filter_mock.with_for_update.return_value = for_update_mock
        for_update_mock.first.return_value = MagicMock()
        db.query.return_value = query_mock

        acquire_row_lock(db, Booking, Booking.id == 'b-1')

        filter_mock.with_for_update.assert_called_once_with()
        for_update_mock.first.assert_called_once()

    def test_acquire_row_lock_skips_locking_on_sqlite(self):
        """Verify acquire_row_lock skips locking on SQLite"""
        from booknow.utils.db_helpers import acquire_row_lock
        from booknow.models import Booking

        db = mock_session('sqlite')
        filter_mock = db.query.return_value.filter.return_value

        acquire_row_lock(db, Booking, Booking.id == 'b-1')

        filter_mock.with_for_update.assert_not_called()
        filter_mock.first.assert_called_once()

    def test_missing_row_returns_none(self):
        from booknow.utils.db_helpers import acquire_row_lock
        from booknow.models import Hotel

        db = mock_session('sqlite')
        db.query.return_value.filter.return_value.first.return_value = None

        assert acquire_row_lock(db, Hotel, Hotel.id == 'h-1') is None


class TestConcurrentLedgerCommits:
    """Many sessions committing the same (hotel, night) on a file-backed database"""

    WORKERS = 12

    @pytest.fixture
    def file_engine(self, tmp_path):
        from booknow.database import Base
        from booknow.models import Hotel

        engine = create_engine(
            f"sqlite:///{tmp_path / 'ledger.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(bind=engine)
        Session = sessionmaker(bind=engine)
        with Session() as session:
            session.add(Hotel(id="h-race", name="Harbour House", email="desk@harbour.example", total_rooms=50))
            session.commit()
        try:
            yield engine
        finally:
            engine.dispose()

    def _run(self, engine, jobs):
        from booknow.services.inventory_ledger import InventoryLedger

        Session = sessionmaker(bind=engine)
        barrier = threading.Barrier(len(jobs))
        errors = []

        def worker(action, quantity):
            session = Session()
            try:
                barrier.wait()
                ledger = InventoryLedger(session)
                getattr(ledger, action)("h-race", NIGHT_0, NIGHT_0 + timedelta(days=2), quantity)
                session.commit()
            except Exception as e:
                session.rollback()
                errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=worker, args=job) for job in jobs]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return errors

    def _snapshot(self, engine):
        from booknow.services.inventory_ledger import InventoryLedger

        with sessionmaker(bind=engine)() as session:
            return InventoryLedger(session).snapshot("h-race", NIGHT_0, NIGHT_0 + timedelta(days=3))

    def test_no_lost_updates(self, file_engine):
        errors = self._run(file_engine, [("commit", 1)] * self.WORKERS)

        assert errors == []
        assert self._snapshot(file_engine) == {
            NIGHT_0: self.WORKERS,
            NIGHT_0 + timedelta(days=1): self.WORKERS,
            NIGHT_0 + timedelta(days=2): 0,
        }

    def test_commits_and_releases_interleaved(self, file_engine):
        self._run(file_engine, [("commit", 2)] * 6)

        errors = self._run(file_engine, [("commit", 1)] * 6 + [("release", 1)] * 4)

        assert errors == []
        assert self._snapshot(file_engine)[NIGHT_0] == 12 + 6 - 4
        assert self._snapshot(file_engine)[NIGHT_0 + timedelta(days=1)] == 14


class TestAtomicUpsert:
    """Ledger writes must be single-statement upserts"""

    @pytest.mark.parametrize("dialect,insert_cls", [
        ('postgresql', postgresql.Insert),
        ('sqlite', sqlite.Insert),
    ])
    def test_dialect_insert(self, dialect, insert_cls):
        from booknow.utils.db_helpers import upsert_insert
        from booknow.models import InventoryLedgerEntry

        stmt = upsert_insert(mock_session(dialect), InventoryLedgerEntry)

        assert isinstance(stmt, insert_cls)
        assert hasattr(stmt, 'on_conflict_do_update')

    def test_unsupported_dialect_refused(self):
        from booknow.utils.db_helpers import upsert_insert
        from booknow.models import InventoryLedgerEntry

        with pytest.raises(RuntimeError):
            upsert_insert(mock_session('mysql'), InventoryLedgerEntry)

    def test_ledger_uses_upsert_not_read_modify_write(self):
        content = read_source('services/inventory_ledger.py')

        assert 'upsert_insert' in content
        assert 'on_conflict_do_update' in content


class TestOptimisticVersion:
    """Two sessions editing the same booking: the second write loses"""

    def test_stale_write_rejected(self, db, service, guest, make_booking_data):
        from sqlalchemy.orm.exc import StaleDataError
        from booknow.database import SessionLocal
        from booknow.models import Booking

        booking, _ = service.create_booking(guest.id, make_booking_data())
        booking_id = booking.id

        stale = db.get(Booking, booking_id)
        version_seen = stale.version

        other = SessionLocal()
        try:
            fresh = other.get(Booking, booking_id)
            fresh.cancellation_reason = "edited elsewhere"
            other.commit()
        finally:
            other.close()

        # The first session still holds the old version number
        assert stale.version == version_seen
        stale.room_type = "Suite"
        with pytest.raises(StaleDataError):
            db.commit()
        db.rollback()


class TestLockingStructure:
    """Verify the code takes locks / uses compare-and-set where races matter"""

    def test_create_locks_hotel_row(self):
        content = read_source('services/booking_service.py')
        assert 'get_hotel(self.db, data.hotel_id, lock=True)' in content

    def test_cancel_locks_booking_row(self):
        content = read_source('services/booking_service.py')
        assert 'self._load_for(principal, booking_id, lock=True)' in content

    def test_payment_transitions_are_conditional_updates(self):
        content = read_source('services/booking_service.py')
        assert 'Booking.payment_status.in_(' in content
        assert 'result.rowcount == 1' in content

    def test_webhook_log_has_unique_event_id(self):
        from booknow.models import WebhookEventLog

        constraints = {c.name for c in WebhookEventLog.__table__.constraints}
        assert 'uq_webhook_event_provider_event_id' in constraints
