"""
Identity Resolver

A real-world driver may have a record in the primary user store, in the
specialized driver store, or in both; historical money records point at
whichever id existed when they were written. The resolver turns any
driver reference into one CanonicalDriver spanning both stores, and every
money-bearing query takes that value instead of a raw id.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union
import logging
from models import DriverRef, DriverSource, DriverProfile, User
from .driver_directory import DriverDirectory
from .errors import DriverNotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CanonicalDriver:
    """Resolved identity of one driver across both identity stores"""
    primary_id: Optional[int]
    specialized_id: Optional[int]
    display_name: str
    email: Optional[str]
    license_number: Optional[str] = None
    assigned_vehicle_id: Optional[int] = None

    @property
    def refs(self) -> List[DriverRef]:
        """Every id this driver's records may have been filed under"""
        refs = []
        if self.specialized_id is not None:
            refs.append(DriverRef.specialized(self.specialized_id))
        if self.primary_id is not None:
            refs.append(DriverRef.primary(self.primary_id))
        return refs

    @property
    def key(self) -> Tuple[Optional[int], Optional[int]]:
        return (self.primary_id, self.specialized_id)

    @property
    def is_linked(self) -> bool:
        return self.primary_id is not None and self.specialized_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'primaryId': self.primary_id,
            'specializedId': self.specialized_id,
            'displayName': self.display_name,
            'email': self.email,
            'licenseNumber': self.license_number,
            'assignedVehicleId': self.assigned_vehicle_id,
            'linked': self.is_linked,
        }


class IdentityResolver:
    """Maps driver references onto CanonicalDriver values"""

    def __init__(self, directory: Optional[DriverDirectory] = None):
        self.directory = directory or DriverDirectory()

    def resolve(self, reference: Union[DriverRef, int, str]) -> CanonicalDriver:
        """
        Resolve a driver reference.

        A DriverRef is looked up in the store its source names. A bare id
        carries no source, so the specialized store is tried first and the
        primary store second.

        Raises:
            DriverNotFound: the reference matches neither store
        """
        if isinstance(reference, DriverRef):
            candidates = [reference]
        else:
            try:
                raw_id = int(reference)
            except (TypeError, ValueError):
                raise DriverNotFound(f"{reference!r} is not a driver id", reference=reference)
            candidates = [DriverRef.specialized(raw_id), DriverRef.primary(raw_id)]

        for ref in candidates:
            if ref.source == DriverSource.SPECIALIZED:
                profile = self.directory.specialized.get(ref.id)
                if profile is not None:
                    return self._from_profile(profile)
            else:
                user = self.directory.primary_driver(ref.id)
                if user is not None:
                    return self._from_user(user)

        raise DriverNotFound(f"No driver matches reference {reference}", reference=str(reference))

    def resolve_all(self) -> List[CanonicalDriver]:
        """
        Every driver known to either store, each exactly once.

        Specialized profiles are resolved first; primary drivers already
        linked to one of them are skipped.
        """
        drivers = []
        claimed_primary = set()
        claimed_specialized = set()

        for profile in self.directory.specialized.all_profiles():
            canonical = self._from_profile(profile)
            if canonical.primary_id is not None and canonical.primary_id in claimed_primary:
                # Two profiles matched the same user; keep the second one unlinked
                logger.warning(f"Primary driver {canonical.primary_id} already linked; profile {profile.id} kept on its own")
                canonical = self._build(None, profile)
            drivers.append(canonical)
            claimed_specialized.add(profile.id)
            if canonical.primary_id is not None:
                claimed_primary.add(canonical.primary_id)

        for user in self.directory.primary.all_drivers():
            if user.id in claimed_primary:
                continue
            canonical = self._from_user(user)
            if canonical.specialized_id is not None and canonical.specialized_id in claimed_specialized:
                canonical = self._build(user, None)
            drivers.append(canonical)
            claimed_primary.add(user.id)

        return drivers

    def _from_profile(self, profile: DriverProfile) -> CanonicalDriver:
        user = self.directory.primary.find_by_email(profile.email)
        if user is None:
            user = self._single(
                self.directory.primary.find_by_name(profile.last_name, profile.first_name),
                f"profile {profile.id}"
            )
        return self._build(user, profile)

    def _from_user(self, user: User) -> CanonicalDriver:
        profile = self.directory.specialized.find_by_email(user.email)
        if profile is None:
            profile = self._single(
                self.directory.specialized.find_by_name(user.last_name, user.first_name),
                f"user {user.id}"
            )
        return self._build(user, profile)

    @staticmethod
    def _single(matches, owner):
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            logger.warning(f"Name match for {owner} is ambiguous ({len(matches)} records); not linking")
        return None

    @staticmethod
    def _build(user: Optional[User], profile: Optional[DriverProfile]) -> CanonicalDriver:
        # The specialized record wins on display fields so both resolution paths agree
        if profile is not None:
            display_name = profile.full_name
            email = profile.email
        else:
            display_name = user.full_name
            email = user.email
        return CanonicalDriver(
            primary_id=user.id if user is not None else None,
            specialized_id=profile.id if profile is not None else None,
            display_name=display_name,
            email=email,
            license_number=profile.license_number if profile is not None else None,
            assigned_vehicle_id=profile.assigned_vehicle_id if profile is not None else None,
        )
