"""
Unit tests for the daily ledger entity
"""

import pytest
from datetime import date

from app import db
from models import DailyLedger, LedgerEntry, EntryType, LedgerStatus, DriverRef, DriverSource


def make_ledger(opening=50000):
    return DailyLedger(
        driver_id=1,
        driver_source=DriverSource.PRIMARY,
        day=date(2024, 5, 1),
        opening_amount=opening,
        running_balance=opening,
        status=LedgerStatus.ACTIVE,
    )


def make_entry(entry_type, amount):
    return LedgerEntry(entry_type=entry_type, amount=amount, description=f"{entry_type.value} test")


class TestEntryType:
    """Sign rule of the four entry kinds"""

    def test_inflows_are_positive(self):
        assert EntryType.RECETTE.sign == 1
        assert EntryType.REMBOURSEMENT.sign == 1

    def test_outflows_are_negative(self):
        assert EntryType.DEPENSE.sign == -1
        assert EntryType.COMMISSION.sign == -1

    def test_signed_amount(self):
        assert make_entry(EntryType.DEPENSE, 3000).signed_amount == -3000
        assert make_entry(EntryType.RECETTE, 15000).signed_amount == 15000


class TestDailyLedger:
    """Balance bookkeeping on the entity"""

    def test_record_entry_moves_balance_and_numbers_entries(self):
        ledger = make_ledger()

        ledger.record_entry(make_entry(EntryType.RECETTE, 15000))
        ledger.record_entry(make_entry(EntryType.DEPENSE, 3000))

        assert ledger.running_balance == 62000
        assert [entry.sequence for entry in ledger.entries] == [1, 2]

    def test_computed_balance_matches_running_balance(self):
        ledger = make_ledger(10000)
        for entry_type, amount in [(EntryType.RECETTE, 7000), (EntryType.COMMISSION, 1500),
                                   (EntryType.REMBOURSEMENT, 2000), (EntryType.DEPENSE, 500)]:
            ledger.record_entry(make_entry(entry_type, amount))

        assert ledger.computed_balance() == 10000 + 7000 + 2000 - 1500 - 500
        assert ledger.running_balance == ledger.computed_balance()

    def test_totals_by_kind(self):
        ledger = make_ledger(0)
        ledger.record_entry(make_entry(EntryType.RECETTE, 100))
        ledger.record_entry(make_entry(EntryType.RECETTE, 250))
        ledger.record_entry(make_entry(EntryType.COMMISSION, 40))

        assert ledger.totals == {'recette': 350, 'depense': 0, 'commission': 40, 'remboursement': 0}

    def test_correct_opening_shifts_by_delta(self):
        ledger = make_ledger(50000)
        ledger.record_entry(make_entry(EntryType.RECETTE, 15000))

        delta = ledger.correct_opening(40000)

        assert delta == -10000
        assert ledger.opening_amount == 40000
        assert ledger.running_balance == 55000

    def test_find_entry_by_key(self):
        ledger = make_ledger()
        entry = make_entry(EntryType.RECETTE, 100)
        entry.idempotency_key = 'trip:7'
        ledger.record_entry(entry)

        assert ledger.find_entry_by_key('trip:7') is entry
        assert ledger.find_entry_by_key('trip:8') is None
        assert ledger.find_entry_by_key(None) is None

    def test_driver_ref(self):
        assert make_ledger().driver_ref == DriverRef.primary(1)
        assert str(make_ledger().driver_ref) == 'primary:1'


class TestLedgerPersistence:
    """Constraints enforced by the database"""

    def test_entries_are_append_only(self, db_session):
        ledger = make_ledger()
        ledger.record_entry(make_entry(EntryType.RECETTE, 15000))
        db_session.add(ledger)
        db_session.commit()

        ledger.entries[0].amount = 1

        with pytest.raises(RuntimeError):
            db_session.flush()
        db_session.rollback()

    def test_version_is_set_and_bumped(self, db_session):
        ledger = make_ledger()
        db_session.add(ledger)
        db_session.commit()
        assert ledger.version == 1

        ledger.record_entry(make_entry(EntryType.RECETTE, 100))
        db_session.commit()
        assert ledger.version == 2

    def test_to_dict_is_json_safe(self, db_session):
        ledger = make_ledger()
        ledger.record_entry(make_entry(EntryType.RECETTE, 15000))
        db_session.add(ledger)
        db_session.commit()

        data = ledger.to_dict()

        assert data['day'] == '2024-05-01'
        assert data['driver'] == {'id': 1, 'source': 'primary'}
        assert data['running_balance'] == 65000
        assert data['status'] == 'active'
        assert data['entries'][0]['type'] == 'recette'
        assert 'entries' not in ledger.to_dict(include_entries=False)
