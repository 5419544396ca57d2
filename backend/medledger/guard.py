"""Authorization checks run before any doctor read or write of clinical data."""
from __future__ import annotations

from typing import Optional

import structlog

from . import schemas
from .errors import ForbiddenError
from .ledger import AccessLedger


logger = structlog.get_logger(__name__)


def assert_doctor_access(actor: schemas.ActorIdentity) -> None:
    if actor.role != schemas.UserRole.doctor:
        raise ForbiddenError("Doctor role required", {"role": actor.role.value})
    if actor.doctor_approval_status != schemas.DoctorApprovalStatus.approved:
        logger.warning(
            "doctor_not_approved",
            uid=actor.uid,
            approval_status=actor.doctor_approval_status.value,
        )
        raise ForbiddenError(
            "Doctor account is pending admin verification",
            {"approvalStatus": actor.doctor_approval_status.value},
        )
    if not actor.hospital_id:
        raise ForbiddenError("Doctor is not attached to a hospital")


def redact_contact(
    patient: schemas.PatientProfile, grant: Optional[schemas.AccessRequest]
) -> schemas.ContactSummary:
    """Contact details are only disclosed under an approved grant."""

    if grant is not None and grant.status == schemas.AccessRequestStatus.approved:
        return schemas.ContactSummary(
            email=patient.contact.email, phone=patient.contact.phone
        )
    return schemas.ContactSummary(email="", phone="")


class VisibilityGuard:
    def __init__(self, ledger: AccessLedger) -> None:
        self.ledger = ledger

    def assert_doctor_access(self, actor: schemas.ActorIdentity) -> None:
        assert_doctor_access(actor)

    async def assert_granted_access(
        self,
        doctor_uid: str,
        patient_uid: str,
        message: str = "Doctor has no approved access to patient records",
    ) -> schemas.AccessRequest:
        grant = await self.ledger.find_active(doctor_uid, patient_uid)
        if grant is None or grant.status != schemas.AccessRequestStatus.approved:
            status = grant.status.value if grant is not None else None
            logger.warning(
                "grant_missing",
                doctor_uid=doctor_uid,
                patient_uid=patient_uid,
                access_status=status,
            )
            raise ForbiddenError(message, {"accessStatus": status})
        return grant

    async def assert_visit_mutation(
        self, actor: schemas.ActorIdentity, visit: schemas.Visit
    ) -> schemas.AccessRequest:
        """Hospital affiliation must match the visit, then the current grant must be approved."""

        assert_doctor_access(actor)
        if visit.hospital_id != actor.hospital_id:
            logger.warning(
                "cross_hospital_visit_edit",
                uid=actor.uid,
                visit_id=visit.id,
                visit_hospital_id=visit.hospital_id,
                hospital_id=actor.hospital_id,
            )
            raise ForbiddenError(
                "Doctor cannot modify records outside own hospital",
                {"visitHospitalId": visit.hospital_id},
            )
        return await self.assert_granted_access(actor.uid, visit.patient_uid)

    async def search_view(
        self, actor: schemas.ActorIdentity, patient: schemas.PatientProfile
    ) -> schemas.PatientSearchResult:
        grant = await self.ledger.find_active(actor.uid, patient.owner_uid)
        return schemas.PatientSearchResult(
            patient_uid=patient.owner_uid,
            patient_identifier=patient.global_patient_identifier,
            demographics=patient.demographics,
            blood_group=patient.blood_group,
            allergies=patient.allergies,
            access_status=grant.status if grant else schemas.AccessRequestStatus.waiting,
            contact=redact_contact(patient, grant),
        )
