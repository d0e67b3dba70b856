from __future__ import annotations

import math
from datetime import date
from typing import Any, Dict, List, Optional, Protocol, Tuple

from clinicrecords.logging import get_logger
from clinicrecords.service.errors import ConflictError, NotFoundError
from clinicrecords.storage.errors import ConstraintViolation
from clinicrecords.storage.models import Address, Gender, Patient

logger = get_logger(__name__)

# Fields a caller may replace through update_patient
_UPDATABLE_FIELDS = (
    "first_name",
    "last_name",
    "middle_name",
    "date_of_birth",
    "gender",
    "email",
    "phone_number",
    "address",
    "height",
    "weight",
)


class PatientStore(Protocol):
    def create_patient(self, patient: Patient) -> Patient: ...

    def update_patient(self, patient: Patient) -> Patient: ...

    def delete_patient(self, patient_id: str) -> bool: ...

    def get_patient(self, patient_id: str) -> Optional[Patient]: ...

    def list_patients_paginated(
        self, page: int, page_size: int, search: str = ""
    ) -> Tuple[List[Patient], int]: ...


def _coerce_address(value: Any) -> Optional[Address]:
    if value is None or isinstance(value, Address):
        return value
    return Address(**value)


class PatientService:
    def __init__(
        self,
        store: PatientStore,
        *,
        default_page_size: int = 20,
        max_page_size: int = 100,
    ) -> None:
        self.store = store
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def create_patient(
        self,
        first_name: str,
        last_name: str,
        date_of_birth: date,
        gender: Gender | str,
        **optional: Any,
    ) -> Patient:
        patient = Patient.new(first_name, last_name, date_of_birth, Gender(gender))
        self._apply(patient, optional)
        try:
            stored = self.store.create_patient(patient)
        except ConstraintViolation as exc:
            raise ConflictError("patient already exists", detail=exc.detail) from exc
        logger.info("patient_created", patient_id=stored.id)
        return stored

    def get_patient(self, patient_id: str) -> Patient:
        patient = self.store.get_patient(patient_id)
        if patient is None:
            raise NotFoundError("patient not found", detail={"patient_id": patient_id})
        return patient

    def update_patient(self, patient_id: str, changes: Dict[str, Any]) -> Patient:
        """Replace the provided fields; keys with ``None`` values are ignored."""
        patient = self.get_patient(patient_id)
        self._apply(patient, {k: v for k, v in changes.items() if v is not None})
        patient.touch()
        try:
            stored = self.store.update_patient(patient)
        except ConstraintViolation as exc:
            # Deleted between read and write
            raise NotFoundError("patient not found", detail={"patient_id": patient_id}) from exc
        logger.info("patient_updated", patient_id=patient_id, fields=sorted(changes))
        return stored

    @staticmethod
    def _apply(patient: Patient, values: Dict[str, Any]) -> None:
        for name, value in values.items():
            if name not in _UPDATABLE_FIELDS:
                continue
            if name == "gender":
                value = Gender(value)
            elif name == "address":
                value = _coerce_address(value)
            setattr(patient, name, value)

    def list_patients(
        self, page: int = 1, page_size: Optional[int] = None, search: str = ""
    ) -> Dict[str, Any]:
        page = max(page, 1)
        if page_size is None or page_size < 1:
            page_size = self.default_page_size
        page_size = min(page_size, self.max_page_size)
        patients, total = self.store.list_patients_paginated(page, page_size, search)
        return {
            "patients": patients,
            "total_count": total,
            "current_page": page,
            "page_size": page_size,
            "total_pages": math.ceil(total / page_size) if total else 0,
        }


__all__ = ["PatientStore", "PatientService"]
