from dataclasses import dataclass
import json
from app import db
from sqlalchemy import event, Index, CheckConstraint, UniqueConstraint
from sqlalchemy.ext.hybrid import hybrid_property
from enum import Enum
import uuid
from timezone_utils import get_local_time_naive

# Enums for better data integrity
class UserRole(Enum):
    ADMIN = 'admin'
    CLIENT = 'client'
    DRIVER = 'driver'

class DriverSource(Enum):
    """Which of the two identity stores a driver id belongs to"""
    PRIMARY = 'primary'
    SPECIALIZED = 'specialized'

class DriverProfileStatus(Enum):
    AVAILABLE = 'available'
    ON_TRIP = 'on_trip'
    OFF_DUTY = 'off_duty'
    SUSPENDED = 'suspended'

class EntryType(Enum):
    RECETTE = 'recette'
    DEPENSE = 'depense'
    COMMISSION = 'commission'
    REMBOURSEMENT = 'remboursement'

    @property
    def sign(self):
        """+1 for cash coming into the driver's hands, -1 for cash going out"""
        if self in (EntryType.RECETTE, EntryType.REMBOURSEMENT):
            return 1
        return -1

class LedgerStatus(Enum):
    ACTIVE = 'active'
    CLOSED = 'closed'

class TripStatus(Enum):
    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'

class PaymentMethod(Enum):
    CASH = 'cash'
    CREDIT = 'credit'
    MOBILE_MONEY = 'mobile_money'
    CARD = 'card'
    TRANSFER = 'transfer'


@dataclass(frozen=True)
class DriverRef:
    """Opaque driver id tagged with the identity store it came from"""
    id: int
    source: DriverSource

    @classmethod
    def primary(cls, driver_id):
        return cls(int(driver_id), DriverSource.PRIMARY)

    @classmethod
    def specialized(cls, driver_id):
        return cls(int(driver_id), DriverSource.SPECIALIZED)

    def to_dict(self):
        return {'id': self.id, 'source': self.source.value}

    def __str__(self):
        return f"{self.source.value}:{self.id}"


class User(db.Model):
    """Primary identity store, shared by admins, clients and drivers"""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    uuid = db.Column(db.String(36), unique=True, nullable=False, default=lambda: str(uuid.uuid4()))
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)

    role = db.Column(db.Enum(UserRole), nullable=False, default=UserRole.CLIENT, index=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    # Profile information
    first_name = db.Column(db.String(50))
    last_name = db.Column(db.String(50))
    phone = db.Column(db.String(20), index=True)

    created_at = db.Column(db.DateTime, default=get_local_time_naive, nullable=False)
    updated_at = db.Column(db.DateTime, default=get_local_time_naive, onupdate=get_local_time_naive)

    __table_args__ = (
        Index('idx_user_names', 'last_name', 'first_name'),
    )

    @hybrid_property
    def full_name(self):
        if self.first_name and self.last_name:
            return f"{self.first_name} {self.last_name}"
        return self.email

    def __repr__(self):
        return f'<User {self.email}>'


class DriverProfile(db.Model):
    """Specialized driver store: licence and vehicle assignment data"""
    __tablename__ = 'driver_profiles'

    id = db.Column(db.Integer, primary_key=True)
    uuid = db.Column(db.String(36), unique=True, nullable=False, default=lambda: str(uuid.uuid4()))
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    first_name = db.Column(db.String(50), nullable=False)
    last_name = db.Column(db.String(50), nullable=False)
    phone = db.Column(db.String(20))

    # Licence
    license_number = db.Column(db.String(50), unique=True, index=True)
    license_type = db.Column(db.String(20))
    license_issued_on = db.Column(db.Date)
    license_expiry = db.Column(db.Date)

    # Vehicles live in another subsystem, only the id is kept here
    assigned_vehicle_id = db.Column(db.Integer, index=True)
    status = db.Column(db.Enum(DriverProfileStatus), nullable=False, default=DriverProfileStatus.AVAILABLE)

    created_at = db.Column(db.DateTime, default=get_local_time_naive, nullable=False)
    updated_at = db.Column(db.DateTime, default=get_local_time_naive, onupdate=get_local_time_naive)

    __table_args__ = (
        Index('idx_driver_profile_names', 'last_name', 'first_name'),
    )

    @hybrid_property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"

    def __repr__(self):
        return f'<DriverProfile {self.full_name}>'


class Trip(db.Model):
    """Booked trip; owned by the booking subsystem, read-only here"""
    __tablename__ = 'trips'

    id = db.Column(db.Integer, primary_key=True)
    reference = db.Column(db.String(30), unique=True, nullable=False, default=lambda: f"RES-{uuid.uuid4().hex[:10].upper()}")

    # Driver reference; source is NULL on legacy rows written before it was tracked
    driver_id = db.Column(db.Integer, index=True)
    driver_source = db.Column(db.Enum(DriverSource))

    scheduled_start = db.Column(db.DateTime, index=True)
    status = db.Column(db.Enum(TripStatus), nullable=False, default=TripStatus.PENDING, index=True)

    # Amounts in currency minor units
    billed_amount = db.Column(db.BigInteger, nullable=False, default=0)
    planned_payment_method = db.Column(db.Enum(PaymentMethod), nullable=False, default=PaymentMethod.CASH)

    # Settlement
    amount_collected = db.Column(db.BigInteger)
    effective_payment_method = db.Column(db.Enum(PaymentMethod))
    transaction_timestamp = db.Column(db.DateTime, index=True)
    payment_reference = db.Column(db.String(100))

    created_at = db.Column(db.DateTime, default=get_local_time_naive)

    __table_args__ = (
        Index('idx_trip_driver_payment', 'driver_id', 'transaction_timestamp'),
        Index('idx_trip_status_payment', 'status', 'transaction_timestamp'),
    )

    def __repr__(self):
        return f'<Trip {self.reference}>'


class Expense(db.Model):
    """Driver expense; owned by the expense subsystem, read-only here"""
    __tablename__ = 'expenses'

    id = db.Column(db.Integer, primary_key=True)
    # Not unique: the same expense can be filed once per identity id
    reference = db.Column(db.String(40), nullable=False, index=True,
                          default=lambda: f"DEP-{uuid.uuid4().hex[:10].upper()}")
    date = db.Column(db.DateTime, nullable=False, default=get_local_time_naive, index=True)
    category = db.Column(db.String(50), nullable=False)
    description = db.Column(db.Text)
    amount = db.Column(db.BigInteger, nullable=False)

    driver_id = db.Column(db.Integer, nullable=False, index=True)
    driver_source = db.Column(db.Enum(DriverSource))

    created_at = db.Column(db.DateTime, default=get_local_time_naive)

    __table_args__ = (
        CheckConstraint('amount >= 0', name='ck_expense_amount_non_negative'),
        Index('idx_expense_driver_date', 'driver_id', 'date'),
    )

    def __repr__(self):
        return f'<Expense {self.reference} {self.amount}>'


class DailyLedger(db.Model):
    """
    Cash a driver carries during one calendar day.

    running_balance is a cache of
    opening_amount + recettes + remboursements - depenses - commissions
    over the entry log; it is only moved by record_entry, correct_opening
    and overwrite_balance (reconciliation).
    """
    __tablename__ = 'daily_ledgers'

    id = db.Column(db.Integer, primary_key=True)
    uuid = db.Column(db.String(36), unique=True, nullable=False, default=lambda: str(uuid.uuid4()))

    driver_id = db.Column(db.Integer, nullable=False, index=True)
    driver_source = db.Column(db.Enum(DriverSource), nullable=False)
    day = db.Column(db.Date, nullable=False, index=True)

    # Amounts in currency minor units
    opening_amount = db.Column(db.BigInteger, nullable=False, default=0)
    running_balance = db.Column(db.BigInteger, nullable=False, default=0)

    status = db.Column(db.Enum(LedgerStatus), nullable=False, default=LedgerStatus.ACTIVE, index=True)
    notes = db.Column(db.Text)

    created_by = db.Column(db.Integer)
    closed_by = db.Column(db.Integer)
    closed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=get_local_time_naive, nullable=False)
    updated_at = db.Column(db.DateTime, default=get_local_time_naive, onupdate=get_local_time_naive)

    # Optimistic locking counter
    version = db.Column(db.Integer, nullable=False)

    entries = db.relationship('LedgerEntry', backref='ledger', lazy='selectin',
                              order_by='LedgerEntry.sequence', cascade='all, delete-orphan')

    __mapper_args__ = {'version_id_col': version}

    __table_args__ = (
        UniqueConstraint('driver_id', 'driver_source', 'day', name='uq_ledger_driver_day'),
        CheckConstraint('opening_amount >= 0', name='ck_ledger_opening_non_negative'),
        Index('idx_ledger_day_status', 'day', 'status'),
    )

    @property
    def driver_ref(self):
        return DriverRef(self.driver_id, self.driver_source)

    @property
    def is_closed(self):
        return self.status == LedgerStatus.CLOSED

    def total_for(self, entry_type):
        return sum(entry.amount for entry in self.entries if entry.entry_type == entry_type)

    @property
    def totals(self):
        return {entry_type.value: self.total_for(entry_type) for entry_type in EntryType}

    def computed_balance(self):
        """Balance recomputed from the entry log, which is authoritative"""
        return (self.opening_amount or 0) + sum(entry.signed_amount for entry in self.entries)

    def find_entry_by_key(self, idempotency_key):
        if not idempotency_key:
            return None
        for entry in self.entries:
            if entry.idempotency_key == idempotency_key:
                return entry
        return None

    def record_entry(self, entry):
        """Append an entry and move the balance by its signed amount"""
        entry.sequence = len(self.entries) + 1
        self.entries.append(entry)
        self.running_balance = (self.running_balance or 0) + entry.signed_amount
        return entry

    def correct_opening(self, new_amount):
        """Shift the balance by the opening delta, keeping applied entries intact"""
        delta = new_amount - (self.opening_amount or 0)
        self.opening_amount = new_amount
        self.running_balance = (self.running_balance or 0) + delta
        return delta

    def overwrite_balance(self, expected):
        self.running_balance = expected

    def mark_closed(self, notes, closed_by):
        self.status = LedgerStatus.CLOSED
        if notes is not None:
            self.notes = notes
        self.closed_by = closed_by
        self.closed_at = get_local_time_naive()

    def to_dict(self, include_entries=True):
        data = {
            'id': self.id,
            'uuid': self.uuid,
            'driver': self.driver_ref.to_dict(),
            'day': self.day.isoformat(),
            'opening_amount': self.opening_amount,
            'running_balance': self.running_balance,
            'computed_balance': self.computed_balance(),
            'totals': self.totals,
            'status': self.status.value,
            'notes': self.notes,
            'created_by': self.created_by,
            'closed_by': self.closed_by,
            'closed_at': self.closed_at.isoformat() if self.closed_at else None,
            'entry_count': len(self.entries),
        }
        if include_entries:
            data['entries'] = [entry.to_dict() for entry in self.entries]
        return data

    def __repr__(self):
        return f'<DailyLedger {self.driver_ref} {self.day}>'


class LedgerEntry(db.Model):
    """Append-only cash movement inside a daily ledger"""
    __tablename__ = 'ledger_entries'

    id = db.Column(db.Integer, primary_key=True)
    ledger_id = db.Column(db.Integer, db.ForeignKey('daily_ledgers.id'), nullable=False, index=True)
    sequence = db.Column(db.Integer, nullable=False)

    entry_type = db.Column(db.Enum(EntryType), nullable=False)
    amount = db.Column(db.BigInteger, nullable=False)
    description = db.Column(db.Text, nullable=False)

    linked_trip_id = db.Column(db.Integer, index=True)
    linked_expense_id = db.Column(db.Integer, index=True)
    idempotency_key = db.Column(db.String(100))

    timestamp = db.Column(db.DateTime, default=get_local_time_naive, nullable=False)
    created_by = db.Column(db.Integer)

    __table_args__ = (
        UniqueConstraint('ledger_id', 'sequence', name='uq_entry_ledger_sequence'),
        UniqueConstraint('ledger_id', 'idempotency_key', name='uq_entry_ledger_idempotency'),
        CheckConstraint('amount > 0', name='ck_entry_amount_positive'),
    )

    @property
    def signed_amount(self):
        return self.entry_type.sign * self.amount

    def to_dict(self):
        return {
            'sequence': self.sequence,
            'type': self.entry_type.value,
            'amount': self.amount,
            'description': self.description,
            'linked_trip_id': self.linked_trip_id,
            'linked_expense_id': self.linked_expense_id,
            'idempotency_key': self.idempotency_key,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'created_by': self.created_by,
        }

    def __repr__(self):
        return f'<LedgerEntry {self.entry_type.value} {self.amount}>'


@event.listens_for(LedgerEntry, 'before_update')
def _reject_entry_update(mapper, connection, target):
    raise RuntimeError(f"Ledger entries are append-only (entry {target.id})")


class AuditLog(db.Model):
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    # NULL for system actions such as the nightly close job
    user_id = db.Column(db.Integer, index=True)

    # Action details
    action = db.Column(db.String(100), nullable=False, index=True)
    entity_type = db.Column(db.String(50), index=True)
    entity_id = db.Column(db.Integer)
    new_values = db.Column(db.Text)  # JSON

    success = db.Column(db.Boolean, default=True)
    error_message = db.Column(db.Text)

    created_at = db.Column(db.DateTime, default=get_local_time_naive, index=True)

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
    )

    @property
    def details(self):
        if self.new_values:
            try:
                return json.loads(self.new_values)
            except json.JSONDecodeError:
                return {}
        return {}
