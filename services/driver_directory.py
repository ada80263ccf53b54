"""
Driver Directory

Read-only adapters over the two identity stores a driver can live in:
the primary user store (shared with clients and admins) and the
specialized driver-profile store. Database failures surface as
CollaboratorUnavailable so callers never mistake them for "no driver".
"""

from typing import List, Optional
import logging
from sqlalchemy import func, select
from models import db, User, DriverProfile, UserRole, DriverRef, DriverSource
from .transaction_helper import TransactionHelper

logger = logging.getLogger(__name__)


def _normalized(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip().lower()
    return value or None


class PrimaryDriverStore:
    """Drivers in the shared user store (role=driver)"""

    name = 'primary_driver_store'

    @TransactionHelper.guard_collaborator(name)
    def get(self, user_id: int) -> Optional[User]:
        return db.session.get(User, user_id)

    @TransactionHelper.guard_collaborator(name)
    def find_by_email(self, email: Optional[str]) -> Optional[User]:
        email = _normalized(email)
        if not email:
            return None
        stmt = select(User).where(func.lower(User.email) == email, User.role == UserRole.DRIVER)
        return db.session.execute(stmt).scalars().first()

    @TransactionHelper.guard_collaborator(name)
    def find_by_name(self, last_name: Optional[str], first_name: Optional[str]) -> List[User]:
        last_name, first_name = _normalized(last_name), _normalized(first_name)
        if not last_name or not first_name:
            return []
        stmt = select(User).where(
            func.lower(func.trim(User.last_name)) == last_name,
            func.lower(func.trim(User.first_name)) == first_name,
            User.role == UserRole.DRIVER,
        ).order_by(User.id)
        return list(db.session.execute(stmt).scalars())

    @TransactionHelper.guard_collaborator(name)
    def all_drivers(self) -> List[User]:
        stmt = select(User).where(User.role == UserRole.DRIVER).order_by(User.id)
        return list(db.session.execute(stmt).scalars())


class SpecializedDriverStore:
    """Driver profiles carrying licence and vehicle assignment"""

    name = 'specialized_driver_store'

    @TransactionHelper.guard_collaborator(name)
    def get(self, profile_id: int) -> Optional[DriverProfile]:
        return db.session.get(DriverProfile, profile_id)

    @TransactionHelper.guard_collaborator(name)
    def find_by_email(self, email: Optional[str]) -> Optional[DriverProfile]:
        email = _normalized(email)
        if not email:
            return None
        stmt = select(DriverProfile).where(func.lower(DriverProfile.email) == email)
        return db.session.execute(stmt).scalars().first()

    @TransactionHelper.guard_collaborator(name)
    def find_by_name(self, last_name: Optional[str], first_name: Optional[str]) -> List[DriverProfile]:
        last_name, first_name = _normalized(last_name), _normalized(first_name)
        if not last_name or not first_name:
            return []
        stmt = select(DriverProfile).where(
            func.lower(func.trim(DriverProfile.last_name)) == last_name,
            func.lower(func.trim(DriverProfile.first_name)) == first_name,
        ).order_by(DriverProfile.id)
        return list(db.session.execute(stmt).scalars())

    @TransactionHelper.guard_collaborator(name)
    def all_profiles(self) -> List[DriverProfile]:
        stmt = select(DriverProfile).order_by(DriverProfile.id)
        return list(db.session.execute(stmt).scalars())


class DriverDirectory:
    """Both identity stores behind one object"""

    def __init__(self, primary: Optional[PrimaryDriverStore] = None,
                 specialized: Optional[SpecializedDriverStore] = None):
        self.primary = primary or PrimaryDriverStore()
        self.specialized = specialized or SpecializedDriverStore()

    def primary_driver(self, user_id: int) -> Optional[User]:
        user = self.primary.get(user_id)
        if user is None or user.role != UserRole.DRIVER:
            return None
        return user

    def exists(self, driver_ref: DriverRef) -> bool:
        if driver_ref.source == DriverSource.SPECIALIZED:
            return self.specialized.get(driver_ref.id) is not None
        return self.primary_driver(driver_ref.id) is not None
