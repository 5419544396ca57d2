"""Consistency repair of the denormalized User record.

``repair_doctor_user`` and ``repair_patient_user`` are pure: they return the
input object itself when nothing disagrees, so callers can skip the write.
"""
from __future__ import annotations

from typing import Optional

import structlog

from . import schemas
from .clock import Clock, system_clock, to_iso
from .storage import DoctorProfilesRepository, UsersRepository


logger = structlog.get_logger(__name__)


def doctor_user_disagrees(profile: schemas.DoctorProfile, user: schemas.User) -> bool:
    return (
        user.role != schemas.UserRole.doctor
        or user.doctor_approval_status != profile.approval_status
        or user.patient_verification_status != schemas.PatientVerificationStatus.not_applicable
        or user.display_name is not None
        or user.phone is not None
        or user.hospital_id is not None
    )


def repair_doctor_user(
    profile: schemas.DoctorProfile, user: schemas.User, now: str
) -> schemas.User:
    if not doctor_user_disagrees(profile, user):
        return user
    return user.model_copy(
        update={
            "role": schemas.UserRole.doctor,
            "display_name": None,
            "phone": None,
            "hospital_id": None,
            "doctor_approval_status": profile.approval_status,
            "patient_verification_status": schemas.PatientVerificationStatus.not_applicable,
            "updated_at": now,
        }
    )


def repair_patient_user(user: schemas.User, now: str) -> schemas.User:
    if (
        user.role == schemas.UserRole.patient
        and user.patient_verification_status
        == schemas.PatientVerificationStatus.not_applicable
    ):
        # Patients are verified on first bootstrap without admin review.
        return user.model_copy(
            update={
                "patient_verification_status": schemas.PatientVerificationStatus.verified,
                "updated_at": now,
            }
        )
    return user


def project_doctor_user(
    profile: schemas.DoctorProfile, user: schemas.User
) -> schemas.User:
    """What callers see for a doctor: the stored user merged with profile display fields."""

    return user.model_copy(
        update={
            "display_name": profile.doctor_name,
            "phone": profile.doctor_phone,
            "hospital_id": profile.hospital_id,
            "doctor_approval_status": profile.approval_status,
            "patient_verification_status": schemas.PatientVerificationStatus.not_applicable,
        }
    )


class ConsistencyRepairer:
    def __init__(
        self,
        users: UsersRepository,
        doctor_profiles: DoctorProfilesRepository,
        clock: Clock = system_clock,
    ) -> None:
        self.users = users
        self.doctor_profiles = doctor_profiles
        self.clock = clock

    async def repair_user(
        self,
        user: schemas.User,
        profile: Optional[schemas.DoctorProfile] = None,
    ) -> schemas.User:
        """Bring ``user`` in line with its authoritative profile and return the projection."""

        if profile is None:
            profile = await self.doctor_profiles.find_by_uid(user.uid)
        now = to_iso(self.clock())
        if profile is not None:
            repaired = repair_doctor_user(profile, user, now)
            if repaired is not user:
                await self.users.upsert(repaired)
                logger.info(
                    "user_repaired",
                    uid=user.uid,
                    side="doctor",
                    approval_status=profile.approval_status.value,
                )
            return project_doctor_user(profile, repaired)

        repaired = repair_patient_user(user, now)
        if repaired is not user:
            await self.users.upsert(repaired)
            logger.info("user_repaired", uid=user.uid, side="patient")
        return repaired

    async def repair(self, actor: schemas.ActorIdentity) -> Optional[schemas.User]:
        user = await self.users.find_by_uid(actor.uid)
        if user is None:
            return None
        return await self.repair_user(user)
