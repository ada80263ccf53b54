"""
Factory classes for test data generation
"""

from datetime import datetime
import factory
from factory import Faker

from app import db
from models import (User, DriverProfile, Trip, Expense, UserRole, DriverSource,
                    TripStatus, PaymentMethod)


class UserFactory(factory.alchemy.SQLAlchemyModelFactory):
    class Meta:
        model = User
        sqlalchemy_session = db.session
        sqlalchemy_session_persistence = "commit"

    email = factory.Sequence(lambda n: f"user{n}@fleet.test")
    role = UserRole.DRIVER
    first_name = Faker('first_name')
    last_name = factory.Sequence(lambda n: f"Usr{n}")
    phone = Faker('phone_number')


class ClientUserFactory(UserFactory):
    role = UserRole.CLIENT
    email = factory.Sequence(lambda n: f"client{n}@fleet.test")


class DriverProfileFactory(factory.alchemy.SQLAlchemyModelFactory):
    class Meta:
        model = DriverProfile
        sqlalchemy_session = db.session
        sqlalchemy_session_persistence = "commit"

    email = factory.Sequence(lambda n: f"driver{n}@fleet.test")
    first_name = Faker('first_name')
    last_name = factory.Sequence(lambda n: f"Prf{n}")
    license_number = factory.Sequence(lambda n: f"CI-{n:08d}")
    license_type = 'B'
    assigned_vehicle_id = factory.Sequence(lambda n: n + 1)


class TripFactory(factory.alchemy.SQLAlchemyModelFactory):
    """Completed trip paid in cash at its scheduled start"""

    class Meta:
        model = Trip
        sqlalchemy_session = db.session
        sqlalchemy_session_persistence = "commit"

    driver_source = DriverSource.PRIMARY
    scheduled_start = datetime(2024, 5, 1, 9, 0)
    status = TripStatus.COMPLETED
    billed_amount = 25000
    planned_payment_method = PaymentMethod.CASH
    amount_collected = factory.SelfAttribute('billed_amount')
    effective_payment_method = PaymentMethod.CASH
    transaction_timestamp = factory.LazyAttribute(lambda o: o.scheduled_start)
    payment_reference = factory.Sequence(lambda n: f"PAY-{n:06d}")


class ExpenseFactory(factory.alchemy.SQLAlchemyModelFactory):
    class Meta:
        model = Expense
        sqlalchemy_session = db.session
        sqlalchemy_session_persistence = "commit"

    reference = factory.Sequence(lambda n: f"DEP-{n:06d}")
    date = datetime(2024, 5, 1, 12, 0)
    category = 'Carburant'
    description = Faker('sentence', nb_words=4)
    amount = 5000
    driver_source = DriverSource.PRIMARY
