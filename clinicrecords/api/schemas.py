from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from typing import Any, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from clinicrecords.service.errors import ErrorCode
from clinicrecords.storage.models import Gender, Patient, Role, User

_VALID_ERROR_CODES = frozenset(code.value for code in ErrorCode)


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is one of the stable ``ErrorCode`` values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_ZERO_WIDTH_CHARS = frozenset("\u200b\u200c\u200d\ufeff")
# U+202A-U+202E embeddings/overrides, U+2066-U+2069 isolates
_BIDI_OVERRIDE_CHARS = frozenset(chr(c) for c in range(0x202A, 0x202F)) | frozenset(
    chr(c) for c in range(0x2066, 0x206A)
)
_SPOOFING_CHARS = _ZERO_WIDTH_CHARS | _BIDI_OVERRIDE_CHARS


def _normalize_unicode(value: str) -> str:
    # Strip zero-width and bidi override characters used for spoofing, then NFKC
    cleaned = "".join(c for c in value if c not in _SPOOFING_CHARS)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _optional_email(value: Optional[str]) -> Optional[str]:
    return None if value is None else _validate_email(value)


def _strip_name(value: str) -> str:
    stripped = _normalize_unicode(value).strip()
    if not stripped:
        raise ValueError("must not be blank")
    return stripped


class RegisterRequest(BaseModel):
    email: str
    name: str = Field(..., max_length=200)
    role: Role

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("name")
    @classmethod
    def _name(cls, value: str) -> str:
        return _strip_name(value)


class LoginRequest(BaseModel):
    email: str
    key: str = Field(..., min_length=1, max_length=256)
    pin: str = Field(..., pattern=r"^[0-9]{4}$")

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)


class UserResponse(BaseModel):
    """Public view of a user; credential material is never serialized."""

    id: str
    email: str
    name: str
    role: Role
    last_login: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            last_login=user.last_login,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class RegisterResponse(BaseModel):
    user: UserResponse
    key: str


class LoginResponse(BaseModel):
    user: UserResponse
    access_token: str
    token_type: str = "bearer"


def validate_uuid(value: str, field: str = "id") -> str:
    """Return the canonical form of ``value`` or raise ``ValueError``."""
    try:
        return str(UUID(value))
    except (ValueError, TypeError, AttributeError):
        raise ValueError(f"{field} must be a valid UUID") from None


class AddressModel(BaseModel):
    street: str = Field(..., max_length=200)
    city: str = Field(..., max_length=100)
    state: str = Field(..., max_length=100)
    postal_code: str = Field(..., max_length=20)
    country: str = Field(..., max_length=100)


class PatientRequest(BaseModel):
    first_name: str = Field(..., max_length=100)
    last_name: str = Field(..., max_length=100)
    middle_name: Optional[str] = Field(default=None, max_length=100)
    date_of_birth: date
    gender: Gender
    email: Optional[str] = None
    phone_number: Optional[str] = Field(default=None, max_length=32)
    address: Optional[AddressModel] = None
    height: Optional[float] = Field(default=None, gt=0, le=300)
    weight: Optional[float] = Field(default=None, gt=0, le=700)

    @field_validator("first_name", "last_name")
    @classmethod
    def _names(cls, value: str) -> str:
        return _strip_name(value)

    @field_validator("email")
    @classmethod
    def _email(cls, value: Optional[str]) -> Optional[str]:
        return _optional_email(value)

    @field_validator("date_of_birth")
    @classmethod
    def _not_in_future(cls, value: date) -> date:
        if value > date.today():
            raise ValueError("date_of_birth cannot be in the future")
        return value


class PatientUpdateRequest(BaseModel):
    """Partial update; omitted fields keep their current values."""

    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    middle_name: Optional[str] = Field(default=None, max_length=100)
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = None
    email: Optional[str] = None
    phone_number: Optional[str] = Field(default=None, max_length=32)
    address: Optional[AddressModel] = None
    height: Optional[float] = Field(default=None, gt=0, le=300)
    weight: Optional[float] = Field(default=None, gt=0, le=700)

    @field_validator("first_name", "last_name")
    @classmethod
    def _names(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _strip_name(value)

    @field_validator("email")
    @classmethod
    def _email(cls, value: Optional[str]) -> Optional[str]:
        return _optional_email(value)

    @field_validator("date_of_birth")
    @classmethod
    def _not_in_future(cls, value: Optional[date]) -> Optional[date]:
        if value is not None and value > date.today():
            raise ValueError("date_of_birth cannot be in the future")
        return value


class PatientResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    first_name: str
    last_name: str
    middle_name: Optional[str] = None
    full_name: str
    date_of_birth: date
    age: int
    gender: Gender
    email: Optional[str] = None
    phone_number: Optional[str] = None
    address: Optional[AddressModel] = None
    height: Optional[float] = None
    weight: Optional[float] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_patient(cls, patient: Patient) -> "PatientResponse":
        address = None
        if patient.address is not None:
            address = AddressModel.model_validate(patient.address, from_attributes=True)
        return cls(
            id=patient.id,
            first_name=patient.first_name,
            last_name=patient.last_name,
            middle_name=patient.middle_name,
            full_name=patient.full_name(),
            date_of_birth=patient.date_of_birth,
            age=patient.age(),
            gender=patient.gender,
            email=patient.email,
            phone_number=patient.phone_number,
            address=address,
            height=patient.height,
            weight=patient.weight,
            created_at=patient.created_at,
            updated_at=patient.updated_at,
        )


class PaginatedPatientsResponse(BaseModel):
    patients: List[PatientResponse]
    total_count: int
    current_page: int
    page_size: int
    total_pages: int
