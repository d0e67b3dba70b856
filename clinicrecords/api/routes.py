from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from clinicrecords.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    PaginatedPatientsResponse,
    PatientRequest,
    PatientResponse,
    PatientUpdateRequest,
    RegisterRequest,
    RegisterResponse,
    UserResponse,
    validate_uuid,
)
from clinicrecords.logging import get_correlation_id, get_logger
from clinicrecords.service.auth import AuthService
from clinicrecords.service.errors import ValidationError
from clinicrecords.service.runtime import Runtime
from clinicrecords.service.tokens import Claims
from clinicrecords.storage.models import Role

logger = get_logger(__name__)

auth_router = APIRouter(prefix="/auth", tags=["auth"])
patients_router = APIRouter(prefix="/api/v1/patients", tags=["patients"])

CLINICAL_ROLES = (Role.ADMIN, Role.DOCTOR, Role.NURSE, Role.STAFF)


def _ok(data) -> Envelope:
    request_id = get_correlation_id()
    if request_id:
        return Envelope(status="ok", data=data, request_id=request_id)
    return Envelope(status="ok", data=data)


def client_ip(request: Request, trust_forwarded_for: bool = False) -> str:
    """Resolve the caller's IP; ``X-Forwarded-For`` is honoured only when trusted."""
    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _parse_id(value: str, field: str) -> str:
    try:
        return validate_uuid(value, field)
    except ValueError as exc:
        raise ValidationError(str(exc), detail={"field": field}) from exc


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def get_principal(
    runtime: Runtime = Depends(get_runtime),
    authorization: Optional[str] = Header(None),
) -> Claims:
    return runtime.auth.authenticate(authorization)


def require_roles(*roles: Role) -> Callable[..., Claims]:
    """Dependency factory: authenticated caller whose role is in ``roles``."""

    async def _dependency(principal: Claims = Depends(get_principal)) -> Claims:
        return AuthService.require_role(principal, roles)

    return _dependency


# -- auth ------------------------------------------------------------------


@auth_router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, runtime: Runtime = Depends(get_runtime)):
    """Create a user and return its one-time key.

    The key is never stored in plaintext and cannot be retrieved again.
    """
    user, key = await runtime.auth.create_user(body.email, body.name, body.role)
    return _ok(RegisterResponse(user=UserResponse.from_user(user), key=key))


@auth_router.post("/login", response_model=Envelope)
async def login(
    body: LoginRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    result = await runtime.auth.login(
        body.email,
        body.key,
        body.pin,
        user_agent=request.headers.get("User-Agent"),
        ip_address=client_ip(request, runtime.settings.trust_forwarded_for),
    )
    return _ok(
        LoginResponse(user=UserResponse.from_user(result.user), access_token=result.access_token)
    )


@auth_router.get("/users/{user_id}", response_model=Envelope)
async def get_user(
    user_id: str,
    runtime: Runtime = Depends(get_runtime),
    principal: Claims = Depends(get_principal),
):
    user = runtime.auth.get_user(_parse_id(user_id, "user_id"))
    return _ok({"user": UserResponse.from_user(user)})


# -- patients --------------------------------------------------------------


@patients_router.post("", response_model=Envelope, status_code=201)
async def create_patient(
    body: PatientRequest,
    runtime: Runtime = Depends(get_runtime),
    principal: Claims = Depends(require_roles(*CLINICAL_ROLES)),
):
    fields = body.model_dump(exclude={"first_name", "last_name", "date_of_birth", "gender"})
    patient = runtime.patients.create_patient(
        body.first_name, body.last_name, body.date_of_birth, body.gender, **fields
    )
    logger.info("patient_create_requested", patient_id=patient.id, actor_id=principal.user_id)
    return _ok(PatientResponse.from_patient(patient))


@patients_router.get("", response_model=Envelope)
async def list_patients(
    page: int = Query(1),
    page_size: Optional[int] = Query(None),
    search: str = Query("", max_length=200),
    runtime: Runtime = Depends(get_runtime),
    principal: Claims = Depends(require_roles(*CLINICAL_ROLES)),
):
    listing = runtime.patients.list_patients(page=page, page_size=page_size, search=search)
    return _ok(
        PaginatedPatientsResponse(
            patients=[PatientResponse.from_patient(p) for p in listing["patients"]],
            total_count=listing["total_count"],
            current_page=listing["current_page"],
            page_size=listing["page_size"],
            total_pages=listing["total_pages"],
        )
    )


@patients_router.get("/{patient_id}", response_model=Envelope)
async def get_patient(
    patient_id: str,
    runtime: Runtime = Depends(get_runtime),
    principal: Claims = Depends(require_roles(*CLINICAL_ROLES)),
):
    patient = runtime.patients.get_patient(_parse_id(patient_id, "patient_id"))
    return _ok(PatientResponse.from_patient(patient))


@patients_router.put("/{patient_id}", response_model=Envelope)
async def update_patient(
    patient_id: str,
    body: PatientUpdateRequest,
    runtime: Runtime = Depends(get_runtime),
    principal: Claims = Depends(require_roles(*CLINICAL_ROLES)),
):
    patient = runtime.patients.update_patient(
        _parse_id(patient_id, "patient_id"), body.model_dump(exclude_unset=True)
    )
    return _ok(PatientResponse.from_patient(patient))
