from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from clinicrecords.service.credentials import Credential

# Lockout policy; fixed, not configurable
MAX_FAILED_ATTEMPTS = 5
LOCKOUT_DURATION = timedelta(minutes=15)


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


class Role(str, Enum):
    ADMIN = "admin"
    DOCTOR = "doctor"
    NURSE = "nurse"
    STAFF = "staff"
    PATIENT = "patient"


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"
    UNKNOWN = "unknown"


@dataclass
class User:
    """Account identity plus the security state of its two login factors."""

    id: str
    email: str
    name: str
    role: Role
    key_credential: Optional[Credential] = field(default=None, repr=False)
    pin_credential: Optional[Credential] = field(default=None, repr=False)
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, email: str, name: str, role: Role) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            role=Role(role),
            created_at=now,
            updated_at=now,
        )

    def set_key_credential(self, credential: Credential) -> None:
        self.key_credential = credential
        self.updated_at = utcnow()

    def set_pin_credential(self, credential: Credential) -> None:
        self.pin_credential = credential
        self.updated_at = utcnow()

    def validate_credentials(self, key: str, pin: str) -> bool:
        """True only when both factors are set and both verify.

        Both digests are always computed so response timing does not reveal
        which factor was wrong.
        """
        if self.key_credential is None or self.pin_credential is None:
            return False
        key_ok = self.key_credential.matches(key)
        pin_ok = self.pin_credential.matches(pin)
        return key_ok and pin_ok

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.locked_until is None:
            return False
        return (now or utcnow()) < self.locked_until

    def record_failed_attempt(self) -> None:
        now = utcnow()
        self.failed_attempts += 1
        if self.failed_attempts >= MAX_FAILED_ATTEMPTS:
            self.locked_until = now + LOCKOUT_DURATION
        self.updated_at = now

    def reset_failed_attempts(self) -> None:
        self.failed_attempts = 0
        self.locked_until = None
        self.updated_at = utcnow()

    def record_login(self) -> None:
        now = utcnow()
        self.last_login = now
        self.reset_failed_attempts()
        self.updated_at = now


@dataclass
class Session:
    id: str
    user_id: str
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    refresh_token: Optional[str] = field(default=None, repr=False)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        user_agent: str | None,
        ip_address: str | None,
        expires_at: datetime,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            user_agent=user_agent,
            ip_address=ip_address,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def refresh(self, ttl: timedelta) -> None:
        """Extend the session; issuing new tokens is a separate step."""
        now = utcnow()
        self.expires_at = now + ttl
        self.updated_at = now


@dataclass
class Address:
    street: str
    city: str
    state: str
    postal_code: str
    country: str


@dataclass
class Patient:
    id: str
    first_name: str
    last_name: str
    date_of_birth: date
    gender: Gender
    middle_name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    address: Optional[Address] = None
    height: Optional[float] = None
    weight: Optional[float] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, first_name: str, last_name: str, date_of_birth: date, gender: Gender
    ) -> "Patient":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            first_name=first_name,
            last_name=last_name,
            date_of_birth=date_of_birth,
            gender=Gender(gender),
            created_at=now,
            updated_at=now,
        )

    def touch(self) -> None:
        self.updated_at = utcnow()

    def full_name(self) -> str:
        if self.middle_name:
            return f"{self.first_name} {self.middle_name} {self.last_name}"
        return f"{self.first_name} {self.last_name}"

    def age(self, today: Optional[date] = None) -> int:
        today = today or utcnow().date()
        dob = self.date_of_birth
        years = today.year - dob.year
        if (today.month, today.day) < (dob.month, dob.day):
            years -= 1
        return years
