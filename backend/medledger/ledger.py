"""Access request ledger: doctor to patient data-sharing grants.

A request starts ``waiting`` and is decided ``approved`` or ``denied`` by the
patient it targets. Storage does not enforce one request per pair, so the
current grant is always the pair's most recently created row.
"""
from __future__ import annotations

from typing import Iterable, Optional, Sequence
from uuid import uuid4

import structlog

from . import schemas
from .clock import Clock, system_clock, to_iso
from .errors import ForbiddenError, NotFoundError, ValidationFailedError
from .storage import (
    AccessRequestsRepository,
    AuditLogger,
    DoctorProfilesRepository,
    PatientsRepository,
)


logger = structlog.get_logger(__name__)

DISPLAY_FIELDS = ("doctor_name", "doctor_phone", "hospital_logo_base64")


def latest_request(
    requests: Iterable[schemas.AccessRequest],
) -> Optional[schemas.AccessRequest]:
    """Pick the row with the greatest ``created_at`` (ISO strings compare lexicographically)."""

    latest: Optional[schemas.AccessRequest] = None
    for request in requests:
        if latest is None or request.created_at > latest.created_at:
            latest = request
    return latest


def missing_display_fields(record) -> bool:
    return any(not getattr(record, name) for name in DISPLAY_FIELDS)


async def doctor_display_map(
    doctor_profiles: DoctorProfilesRepository, doctor_uids: Iterable[str]
) -> dict[str, schemas.DoctorProfile]:
    profiles: dict[str, schemas.DoctorProfile] = {}
    for doctor_uid in {uid for uid in doctor_uids if uid.strip()}:
        profile = await doctor_profiles.find_by_uid(doctor_uid)
        if profile is not None:
            profiles[doctor_uid] = profile
    return profiles


def backfill_display_fields(record, profile: Optional[schemas.DoctorProfile]):
    """Fill empty doctor display fields from the current profile. Not persisted."""

    if profile is None or not missing_display_fields(record):
        return record
    return record.model_copy(
        update={
            name: getattr(record, name) or getattr(profile, name)
            for name in DISPLAY_FIELDS
        }
    )


class AccessLedger:
    def __init__(
        self,
        access_requests: AccessRequestsRepository,
        patients: PatientsRepository,
        doctor_profiles: DoctorProfilesRepository,
        audit: Optional[AuditLogger] = None,
        clock: Clock = system_clock,
    ) -> None:
        self.access_requests = access_requests
        self.patients = patients
        self.doctor_profiles = doctor_profiles
        self.audit = audit
        self.clock = clock

    def _audit(self, actor: str, action: str, request: schemas.AccessRequest) -> None:
        if self.audit is not None:
            self.audit.record(
                actor=actor,
                action=action,
                patient_id=request.patient_uid,
                timestamp=request.updated_at,
                subject=f"{request.id}:{request.status.value}",
            )

    async def find_active(
        self, doctor_uid: str, patient_uid: str
    ) -> Optional[schemas.AccessRequest]:
        return latest_request(
            await self.access_requests.list_for_pair(doctor_uid, patient_uid)
        )

    async def create_request(
        self,
        actor: schemas.ActorIdentity,
        patient_identifier: str,
        reason: str,
    ) -> schemas.AccessRequest:
        patient = await self.patients.find_by_identifier(patient_identifier)
        if patient is None:
            raise NotFoundError("Patient not found", {"patient_identifier": patient_identifier})

        existing = await self.find_active(actor.uid, patient.owner_uid)
        if existing is not None and existing.status == schemas.AccessRequestStatus.waiting:
            return existing

        doctor = await self.doctor_profiles.find_by_uid(actor.uid)
        now = to_iso(self.clock())
        request = schemas.AccessRequest(
            id=str(uuid4()),
            doctor_uid=actor.uid,
            doctor_hospital_id=actor.hospital_id or "",
            doctor_name=doctor.doctor_name if doctor else "",
            doctor_phone=doctor.doctor_phone if doctor else "",
            hospital_logo_base64=doctor.hospital_logo_base64 if doctor else "",
            patient_uid=patient.owner_uid,
            patient_identifier=patient.global_patient_identifier,
            reason=reason,
            status=schemas.AccessRequestStatus.waiting,
            created_at=now,
            updated_at=now,
        )
        await self.access_requests.create(request)
        logger.info(
            "access_request_created",
            request_id=request.id,
            doctor_uid=actor.uid,
            patient_uid=patient.owner_uid,
        )
        self._audit(actor.uid, "create_access_request", request)
        return request

    async def grant_on_onboarding(
        self,
        actor: schemas.ActorIdentity,
        doctor: schemas.DoctorProfile,
        patient: schemas.PatientProfile,
    ) -> schemas.AccessRequest:
        """Record the pre-approved grant a doctor holds for a patient they registered."""

        now = to_iso(self.clock())
        request = schemas.AccessRequest(
            id=str(uuid4()),
            doctor_uid=actor.uid,
            doctor_hospital_id=actor.hospital_id or "",
            doctor_name=doctor.doctor_name,
            doctor_phone=doctor.doctor_phone,
            hospital_logo_base64=doctor.hospital_logo_base64,
            patient_uid=patient.owner_uid,
            patient_identifier=patient.global_patient_identifier,
            reason="Patient onboarded by treating doctor.",
            status=schemas.AccessRequestStatus.approved,
            created_at=now,
            updated_at=now,
        )
        await self.access_requests.create(request)
        self._audit(actor.uid, "onboarding_grant", request)
        return request

    async def decide(
        self,
        patient_uid: str,
        request_id: str,
        status: schemas.AccessRequestStatus,
    ) -> schemas.AccessRequest:
        if status == schemas.AccessRequestStatus.waiting:
            raise ValidationFailedError(
                "A decision must be approved or denied", {"status": status.value}
            )
        request = await self.access_requests.find_by_id(request_id)
        if request is None:
            raise NotFoundError("Access request not found", {"request_id": request_id})
        if request.patient_uid != patient_uid:
            raise ForbiddenError("Cannot manage access for another patient")
        if request.status == status:
            return request

        decided = request.model_copy(
            update={"status": status, "updated_at": to_iso(self.clock())}
        )
        await self.access_requests.update(decided)
        logger.info(
            "access_request_decided",
            request_id=request_id,
            patient_uid=patient_uid,
            previous=request.status.value,
            status=status.value,
        )
        self._audit(patient_uid, "decide_access_request", decided)
        return decided

    async def _with_backfill(
        self, requests: Sequence[schemas.AccessRequest]
    ) -> list[schemas.AccessRequest]:
        profiles = await doctor_display_map(
            self.doctor_profiles,
            (request.doctor_uid for request in requests if missing_display_fields(request)),
        )
        return [
            backfill_display_fields(request, profiles.get(request.doctor_uid))
            for request in requests
        ]

    async def list_for_patient(self, patient_uid: str) -> list[schemas.AccessRequest]:
        return await self._with_backfill(
            await self.access_requests.list_for_patient(patient_uid)
        )

    async def list_for_doctor(self, doctor_uid: str) -> list[schemas.AccessRequest]:
        return await self._with_backfill(
            await self.access_requests.list_for_doctor(doctor_uid)
        )
