"""Role-scoped operations invoked by the HTTP layer.

Every public method takes the resolved ``ActorIdentity`` of the caller (or,
for the admin portal, a validated portal session) and returns pydantic models.
"""
from __future__ import annotations

import secrets
from typing import Iterable, Optional
from uuid import uuid4

import structlog

from . import schemas
from .auth import IdentityProvider
from .clock import Clock, from_epoch_ms, system_clock, to_iso
from .errors import (
    AuthInvalidError,
    AuthRequiredError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationFailedError,
)
from .guard import VisibilityGuard
from .ledger import AccessLedger, backfill_display_fields, doctor_display_map, missing_display_fields
from .repair import ConsistencyRepairer
from .sessions import AdminPortalSessions
from .storage import AuditLogger, Repositories, generate_patient_identifier


logger = structlog.get_logger(__name__)

ONBOARDING_DIAGNOSIS = "Initial onboarding"
ONBOARDING_PRESCRIPTION = "Initial consultation record"


def _non_empty(items: Iterable[str]) -> list[str]:
    return [item for item in items if item.strip()]


def normalize_new_attachments(
    payload: schemas.VisitCreate,
) -> tuple[str, list[str], list[str]]:
    """Split attachments of a new visit into prescription image and clinical reports.

    Older clients only send ``reports_base64``; its first entry is then taken
    as the paper prescription.
    """

    explicit_prescription = (payload.paper_prescription_image_base64 or "").strip()
    fallback = payload.reports_base64[0].strip() if payload.reports_base64 else ""
    prescription_image = explicit_prescription or fallback
    if payload.clinical_reports_base64:
        clinical_reports = _non_empty(payload.clinical_reports_base64)
    else:
        skip = 1 if not explicit_prescription and prescription_image else 0
        clinical_reports = _non_empty(payload.reports_base64[skip:])
    reports = _non_empty([prescription_image, *clinical_reports])
    return prescription_image, clinical_reports, reports


def split_visit_attachments(visit: schemas.Visit) -> tuple[str, list[str]]:
    explicit_prescription = visit.paper_prescription_image_base64.strip()
    explicit_clinical = _non_empty(visit.clinical_reports_base64)
    if explicit_prescription or explicit_clinical:
        return explicit_prescription, explicit_clinical
    legacy = _non_empty(visit.reports_base64)
    return (legacy[0] if legacy else ""), legacy[1:]


def _doctor_profile_from_input(
    uid: str,
    payload: schemas.DoctorProfileInput,
    existing: Optional[schemas.DoctorProfile],
    now: str,
) -> schemas.DoctorProfile:
    return schemas.DoctorProfile(
        uid=uid,
        doctor_name=payload.doctor_name,
        doctor_email=str(payload.doctor_email).lower(),
        doctor_phone=payload.doctor_phone,
        hospital_id=payload.hospital_id,
        hospital_logo_base64=payload.hospital_logo_base64,
        specializations=payload.specializations,
        qualification=payload.qualification,
        license=payload.license,
        profile_image_base64=payload.profile_image_base64,
        verification_docs_base64=payload.verification_docs_base64,
        approval_status=(
            existing.approval_status if existing else schemas.DoctorApprovalStatus.pending
        ),
        created_at=existing.created_at if existing else now,
        updated_at=now,
    )


def _stored_contact(contact: schemas.ContactInput, **update) -> schemas.Contact:
    return schemas.Contact(**{**contact.model_dump(), **update})


async def _upsert_patient_profile(
    repos: Repositories,
    actor: schemas.ActorIdentity,
    payload: schemas.PatientProfileInput,
    clock: Clock,
) -> schemas.PatientProfile:
    now = to_iso(clock())
    existing = await repos.patients.find_by_owner_uid(actor.uid)
    identifier = (
        existing.global_patient_identifier
        if existing and existing.global_patient_identifier
        else await generate_patient_identifier(repos.patients, clock)
    )
    contact = _stored_contact(payload.contact, email=payload.contact.email.lower())
    profile = schemas.PatientProfile(
        owner_uid=actor.uid,
        global_patient_identifier=identifier,
        demographics=payload.demographics,
        contact=contact,
        blood_group=payload.blood_group,
        allergies=payload.allergies,
        profile_image_base64=payload.profile_image_base64,
        aadhaar_card_base64=payload.aadhaar_card_base64,
        hereditary_history=payload.hereditary_history,
        created_by=existing.created_by if existing else None,
        created_at=existing.created_at if existing else now,
        updated_at=now,
    )
    return await repos.patients.upsert(profile)


class AuthService:
    def __init__(
        self,
        repos: Repositories,
        repairer: ConsistencyRepairer,
        clock: Clock = system_clock,
    ) -> None:
        self.repos = repos
        self.repairer = repairer
        self.clock = clock

    async def bootstrap(
        self, actor: schemas.ActorIdentity, payload: schemas.BootstrapRequest
    ) -> schemas.User:
        """Provision the caller's account on first login from a role portal."""

        if payload.role == schemas.UserRole.admin:
            raise ValidationFailedError("Only patient or doctor accounts can be bootstrapped")
        if payload.role == schemas.UserRole.patient and payload.patient_profile is None:
            raise ValidationFailedError("patient_profile is required for patient bootstrap")
        if payload.role == schemas.UserRole.doctor and payload.doctor_profile is None:
            raise ValidationFailedError("doctor_profile is required for doctor bootstrap")

        existing = await self.repos.users.find_by_uid(actor.uid)
        if existing is not None:
            if payload.role == schemas.UserRole.doctor:
                profile = await self._upsert_doctor_profile(actor, payload.doctor_profile)
                return await self.repairer.repair_user(existing, profile)
            if (
                existing.role == schemas.UserRole.patient
                and payload.role == schemas.UserRole.patient
            ):
                await _upsert_patient_profile(
                    self.repos, actor, payload.patient_profile, self.clock
                )
                if existing.patient_verification_status != schemas.PatientVerificationStatus.verified:
                    existing = await self.repos.users.upsert(
                        existing.model_copy(
                            update={
                                "patient_verification_status": schemas.PatientVerificationStatus.verified,
                                "updated_at": to_iso(self.clock()),
                            }
                        )
                    )
            return existing

        now = to_iso(self.clock())
        is_doctor = payload.role == schemas.UserRole.doctor
        user = schemas.User(
            uid=actor.uid,
            email=actor.email.lower(),
            role=payload.role,
            display_name=None if is_doctor else payload.display_name,
            phone=None if is_doctor else payload.phone,
            hospital_id=None if is_doctor else payload.hospital_id,
            doctor_approval_status=(
                schemas.DoctorApprovalStatus.pending
                if is_doctor
                else schemas.DoctorApprovalStatus.not_applicable
            ),
            patient_verification_status=(
                schemas.PatientVerificationStatus.not_applicable
                if is_doctor
                else schemas.PatientVerificationStatus.verified
            ),
            created_at=now,
            updated_at=now,
        )
        await self.repos.users.upsert(user)
        if is_doctor:
            await self._upsert_doctor_profile(actor, payload.doctor_profile)
        else:
            await _upsert_patient_profile(self.repos, actor, payload.patient_profile, self.clock)
        logger.info("account_bootstrapped", uid=actor.uid, role=payload.role.value)
        return user

    async def get_session(self, actor: schemas.ActorIdentity) -> schemas.User:
        user = await self.repairer.repair(actor)
        if user is None:
            raise ForbiddenError(
                "Account is not provisioned. Complete registration from the correct role portal."
            )
        return user

    async def _upsert_doctor_profile(
        self, actor: schemas.ActorIdentity, payload: schemas.DoctorProfileInput
    ) -> schemas.DoctorProfile:
        existing = await self.repos.doctor_profiles.find_by_uid(actor.uid)
        profile = _doctor_profile_from_input(
            actor.uid, payload, existing, to_iso(self.clock())
        )
        return await self.repos.doctor_profiles.upsert(profile)


class DoctorService:
    def __init__(
        self,
        repos: Repositories,
        ledger: AccessLedger,
        guard: VisibilityGuard,
        repairer: ConsistencyRepairer,
        identity_provider: IdentityProvider,
        audit: Optional[AuditLogger] = None,
        clock: Clock = system_clock,
    ) -> None:
        self.repos = repos
        self.ledger = ledger
        self.guard = guard
        self.repairer = repairer
        self.identity_provider = identity_provider
        self.audit = audit
        self.clock = clock

    def _audit(self, actor: schemas.ActorIdentity, action: str, patient_uid: str, subject: str) -> None:
        if self.audit is not None:
            self.audit.record(
                actor=actor.uid,
                action=action,
                patient_id=patient_uid,
                timestamp=to_iso(self.clock()),
                subject=subject,
            )

    async def _sync_doctor_user(
        self, actor: schemas.ActorIdentity, profile: schemas.DoctorProfile
    ) -> None:
        user = await self.repos.users.find_by_uid(actor.uid)
        if user is None:
            await self.repos.users.upsert(
                schemas.User(
                    uid=actor.uid,
                    email=actor.email.lower(),
                    role=schemas.UserRole.doctor,
                    doctor_approval_status=profile.approval_status,
                    created_at=profile.updated_at,
                    updated_at=profile.updated_at,
                )
            )
            return
        await self.repairer.repair_user(user, profile)

    async def get_profile(self, actor: schemas.ActorIdentity) -> Optional[schemas.DoctorProfile]:
        return await self.repos.doctor_profiles.find_by_uid(actor.uid)

    async def apply(
        self, actor: schemas.ActorIdentity, payload: schemas.DoctorProfileInput
    ) -> schemas.DoctorProfile:
        existing = await self.repos.doctor_profiles.find_by_uid(actor.uid)
        profile = _doctor_profile_from_input(
            actor.uid, payload, existing, to_iso(self.clock())
        )
        await self.repos.doctor_profiles.upsert(profile)
        await self._sync_doctor_user(actor, profile)
        logger.info(
            "doctor_application_submitted",
            uid=actor.uid,
            approval_status=profile.approval_status.value,
        )
        return profile

    async def update_profile(
        self, actor: schemas.ActorIdentity, payload: schemas.DoctorProfileInput
    ) -> schemas.DoctorProfile:
        if actor.role != schemas.UserRole.doctor:
            raise ForbiddenError("Doctor role required", {"role": actor.role.value})
        existing = await self.repos.doctor_profiles.find_by_uid(actor.uid)
        if existing is None:
            raise NotFoundError("Doctor profile not found")
        profile = _doctor_profile_from_input(
            actor.uid, payload, existing, to_iso(self.clock())
        )
        await self.repos.doctor_profiles.upsert(profile)
        await self._sync_doctor_user(actor, profile)
        return profile

    async def search_patients(
        self, actor: schemas.ActorIdentity, query: str
    ) -> list[schemas.PatientSearchResult]:
        """Find patients by identifier, uid, email or phone.

        Contact details stay blank unless the doctor holds an approved grant.
        """

        self.guard.assert_doctor_access(actor)
        query = query.strip()
        if not query:
            return []

        found: dict[str, schemas.PatientProfile] = {}
        for candidate in (
            await self.repos.patients.find_by_identifier(query),
            await self.repos.patients.find_by_owner_uid(query),
        ):
            if candidate is not None:
                found[candidate.owner_uid] = candidate

        users = [await self.repos.users.find_by_phone(query)]
        if "@" in query:
            users.insert(0, await self.repos.users.find_by_email(query))
        for user in users:
            if user is None or user.role != schemas.UserRole.patient:
                continue
            profile = await self.repos.patients.find_by_owner_uid(user.uid)
            if profile is not None:
                found[profile.owner_uid] = profile

        return [await self.guard.search_view(actor, patient) for patient in found.values()]

    async def create_access_request(
        self, actor: schemas.ActorIdentity, payload: schemas.AccessRequestCreate
    ) -> schemas.AccessRequest:
        self.guard.assert_doctor_access(actor)
        return await self.ledger.create_request(
            actor, payload.patient_identifier.strip(), payload.reason
        )

    async def list_access_requests(
        self, actor: schemas.ActorIdentity
    ) -> list[schemas.AccessRequest]:
        self.guard.assert_doctor_access(actor)
        return await self.ledger.list_for_doctor(actor.uid)

    async def list_visited_patients(
        self, actor: schemas.ActorIdentity
    ) -> list[schemas.VisitedPatientSummary]:
        self.guard.assert_doctor_access(actor)
        visits = await self.repos.visits.list_by_doctor(actor.uid)

        grouped: dict[str, dict] = {}
        for visit in visits:
            key = f"{visit.patient_uid}:{visit.patient_identifier}"
            entry = grouped.get(key)
            if entry is None:
                grouped[key] = {"count": 1, "latest": visit, "hospitals": {visit.hospital_id}}
                continue
            entry["count"] += 1
            entry["hospitals"].add(visit.hospital_id)
            if visit.created_at > entry["latest"].created_at:
                entry["latest"] = visit

        names: dict[str, str] = {}
        for entry in grouped.values():
            patient_uid = entry["latest"].patient_uid
            if patient_uid not in names:
                profile = await self.repos.patients.find_by_owner_uid(patient_uid)
                names[patient_uid] = (profile.full_name if profile else "") or "Unknown patient"

        summaries = [
            schemas.VisitedPatientSummary(
                patient_uid=entry["latest"].patient_uid,
                patient_identifier=entry["latest"].patient_identifier,
                patient_name=names[entry["latest"].patient_uid],
                visit_count=entry["count"],
                latest_visit_at=entry["latest"].created_at,
                latest_treatment_status=entry["latest"].treatment_status,
                latest_diagnosis=entry["latest"].diagnosis,
                latest_hospital_id=entry["latest"].hospital_id,
                hospital_ids=sorted(entry["hospitals"]),
            )
            for entry in grouped.values()
        ]
        return sorted(summaries, key=lambda item: item.latest_visit_at, reverse=True)

    async def create_patient(
        self, actor: schemas.ActorIdentity, payload: schemas.DoctorPatientCreate
    ) -> schemas.DoctorPatientCreated:
        """Register a patient on their behalf, with an approved grant for the creating doctor.

        If anything after account creation fails, the new account is deleted
        again before the original error propagates.
        """

        self.guard.assert_doctor_access(actor)
        doctor = await self.repos.doctor_profiles.find_by_uid(actor.uid)
        if doctor is None:
            raise NotFoundError("Doctor profile not found")

        source = payload.patient_profile
        email = source.contact.email.strip().lower()
        phone = source.contact.phone.strip()
        display_name = f"{source.demographics.first_name} {source.demographics.last_name}".strip()
        if email and await self.repos.users.find_by_email(email) is not None:
            raise ConflictError("Email is already registered.")
        if phone and await self.repos.users.find_by_phone(phone) is not None:
            raise ConflictError("Phone number is already registered.")

        now = to_iso(self.clock())
        created_uid = ""
        try:
            created_uid = await self.identity_provider.create_user(
                email, payload.temporary_password, display_name
            )
            user = schemas.User(
                uid=created_uid,
                email=email,
                role=schemas.UserRole.patient,
                display_name=display_name,
                phone=phone,
                patient_verification_status=schemas.PatientVerificationStatus.verified,
                created_at=now,
                updated_at=now,
            )
            profile = schemas.PatientProfile(
                owner_uid=created_uid,
                global_patient_identifier=await generate_patient_identifier(
                    self.repos.patients, self.clock
                ),
                demographics=source.demographics,
                contact=_stored_contact(source.contact, email=email, phone=phone),
                blood_group=source.blood_group,
                allergies=source.allergies,
                profile_image_base64=source.profile_image_base64,
                aadhaar_card_base64=source.aadhaar_card_base64,
                hereditary_history=source.hereditary_history,
                created_by=schemas.CreatedBy(
                    doctor_uid=actor.uid,
                    doctor_name=doctor.doctor_name,
                    hospital_id=actor.hospital_id or "",
                    created_at=now,
                ),
                created_at=now,
                updated_at=now,
            )
            await self.repos.users.upsert(user)
            await self.repos.patients.upsert(profile)
            grant = await self.ledger.grant_on_onboarding(actor, doctor, profile)

            initial_visit = None
            if payload.initial_visit is not None and not payload.initial_visit.is_empty():
                initial_visit = await self._record_initial_visit(
                    actor, doctor, profile, payload.initial_visit, now
                )
        except Exception:
            if created_uid:
                await self._discard_identity(created_uid)
            raise

        logger.info(
            "patient_onboarded",
            doctor_uid=actor.uid,
            patient_uid=created_uid,
            with_initial_visit=initial_visit is not None,
        )
        return schemas.DoctorPatientCreated(
            user=user, profile=profile, access_request=grant, initial_visit=initial_visit
        )

    async def _discard_identity(self, uid: str) -> None:
        try:
            await self.identity_provider.delete_user(uid)
        except Exception as error:
            logger.warning("identity_cleanup_failed", uid=uid, error=str(error))

    async def _record_initial_visit(
        self,
        actor: schemas.ActorIdentity,
        doctor: schemas.DoctorProfile,
        patient: schemas.PatientProfile,
        source: schemas.InitialVisitInput,
        now: str,
    ) -> schemas.Visit:
        prescription_image = source.prescription_image_base64.strip()
        clinical_reports = _non_empty(source.reports_base64)
        visit = schemas.Visit(
            id=str(uuid4()),
            patient_uid=patient.owner_uid,
            patient_identifier=patient.global_patient_identifier,
            doctor_uid=actor.uid,
            doctor_name=doctor.doctor_name,
            doctor_phone=doctor.doctor_phone,
            hospital_logo_base64=doctor.hospital_logo_base64,
            hospital_id=actor.hospital_id or "",
            diagnosis=source.illness_or_problem.strip() or ONBOARDING_DIAGNOSIS,
            prescription=source.prescription.strip() or ONBOARDING_PRESCRIPTION,
            paper_prescription_image_base64=prescription_image,
            clinical_reports_base64=clinical_reports,
            reports_base64=_non_empty([prescription_image, *clinical_reports]),
            treatment_status=source.treatment_status,
            created_at=now,
            updated_at=now,
        )
        await self.repos.visits.create(visit)
        self._audit(actor, "create_visit", patient.owner_uid, visit.id)
        return visit

    async def lookup_patient(
        self, actor: schemas.ActorIdentity, identifier: str
    ) -> schemas.PatientLookup:
        if actor.role not in (schemas.UserRole.doctor, schemas.UserRole.admin):
            raise ForbiddenError("Doctor or admin role required", {"role": actor.role.value})
        if actor.role == schemas.UserRole.doctor:
            self.guard.assert_doctor_access(actor)
        patient = await self.repos.patients.find_by_identifier(identifier)
        if patient is None:
            raise NotFoundError("Patient not found", {"patient_identifier": identifier})
        if actor.role == schemas.UserRole.doctor:
            await self.guard.assert_granted_access(
                actor.uid,
                patient.owner_uid,
                message="Doctor has no approved access to this patient",
            )

        visits = await self.repos.visits.list_by_patient(patient.owner_uid)
        profiles = await doctor_display_map(
            self.repos.doctor_profiles,
            (visit.doctor_uid for visit in visits if missing_display_fields(visit)),
        )
        self._audit(actor, "lookup_patient", patient.owner_uid, identifier)
        return schemas.PatientLookup(
            patient=patient,
            visits=[
                backfill_display_fields(visit, profiles.get(visit.doctor_uid))
                for visit in visits
            ],
        )

    async def create_visit(
        self, actor: schemas.ActorIdentity, payload: schemas.VisitCreate
    ) -> schemas.Visit:
        self.guard.assert_doctor_access(actor)
        patient = await self.repos.patients.find_by_identifier(payload.patient_identifier)
        if patient is None:
            raise NotFoundError(
                "Patient not found", {"patient_identifier": payload.patient_identifier}
            )
        await self.guard.assert_granted_access(actor.uid, patient.owner_uid)

        doctor = await self.repos.doctor_profiles.find_by_uid(actor.uid)
        prescription_image, clinical_reports, reports = normalize_new_attachments(payload)
        now = to_iso(self.clock())
        visit = schemas.Visit(
            id=str(uuid4()),
            patient_uid=patient.owner_uid,
            patient_identifier=patient.global_patient_identifier,
            doctor_uid=actor.uid,
            doctor_name=doctor.doctor_name if doctor else "",
            doctor_phone=doctor.doctor_phone if doctor else "",
            hospital_logo_base64=doctor.hospital_logo_base64 if doctor else "",
            hospital_id=actor.hospital_id or "",
            diagnosis=payload.diagnosis,
            prescription=payload.prescription,
            paper_prescription_image_base64=prescription_image,
            clinical_reports_base64=clinical_reports,
            reports_base64=reports,
            treatment_status=payload.treatment_status,
            created_at=now,
            updated_at=now,
        )
        await self.repos.visits.create(visit)
        logger.info("visit_created", visit_id=visit.id, doctor_uid=actor.uid, patient_uid=patient.owner_uid)
        self._audit(actor, "create_visit", patient.owner_uid, visit.id)
        return visit

    async def update_visit(
        self, actor: schemas.ActorIdentity, visit_id: str, payload: schemas.VisitUpdate
    ) -> schemas.Visit:
        self.guard.assert_doctor_access(actor)
        existing = await self.repos.visits.find_by_id(visit_id)
        if existing is None:
            raise NotFoundError("Visit not found", {"visit_id": visit_id})
        await self.guard.assert_visit_mutation(actor, existing)

        doctor = await self.repos.doctor_profiles.find_by_uid(actor.uid)
        previous_image, previous_reports = split_visit_attachments(existing)
        prescription_image = (
            payload.paper_prescription_image_base64
            if payload.paper_prescription_image_base64 is not None
            else previous_image
        )
        if payload.clinical_reports_base64 is not None:
            clinical_reports = payload.clinical_reports_base64
        elif payload.reports_base64 is not None:
            clinical_reports = payload.reports_base64
        else:
            clinical_reports = previous_reports

        updated = existing.model_copy(
            update={
                "diagnosis": payload.diagnosis if payload.diagnosis is not None else existing.diagnosis,
                "prescription": (
                    payload.prescription if payload.prescription is not None else existing.prescription
                ),
                "paper_prescription_image_base64": prescription_image,
                "clinical_reports_base64": clinical_reports,
                "reports_base64": _non_empty([prescription_image, *clinical_reports]),
                "treatment_status": payload.treatment_status or existing.treatment_status,
                "updated_at": to_iso(self.clock()),
            }
        )
        updated = backfill_display_fields(updated, doctor)
        await self.repos.visits.update(updated)
        logger.info("visit_updated", visit_id=visit_id, doctor_uid=actor.uid)
        self._audit(actor, "update_visit", existing.patient_uid, visit_id)
        return updated


class PatientService:
    def __init__(
        self,
        repos: Repositories,
        ledger: AccessLedger,
        clock: Clock = system_clock,
    ) -> None:
        self.repos = repos
        self.ledger = ledger
        self.clock = clock

    async def get_profile(self, actor: schemas.ActorIdentity) -> schemas.PatientProfile:
        profile = await self.repos.patients.find_by_owner_uid(actor.uid)
        if profile is None:
            raise NotFoundError("Patient profile not found. Complete registration first.")
        return profile

    async def update_profile(
        self, actor: schemas.ActorIdentity, payload: schemas.PatientProfileInput
    ) -> schemas.PatientProfile:
        """Replace the editable fields; the identifier and ownership never change."""

        current = await self.repos.patients.find_by_owner_uid(actor.uid)
        if current is None:
            raise NotFoundError("Patient profile not found")
        updated = current.model_copy(
            update={
                "demographics": payload.demographics,
                "contact": _stored_contact(payload.contact),
                "blood_group": payload.blood_group,
                "allergies": payload.allergies,
                "profile_image_base64": payload.profile_image_base64,
                "aadhaar_card_base64": payload.aadhaar_card_base64,
                "hereditary_history": payload.hereditary_history,
                "updated_at": to_iso(self.clock()),
            }
        )
        return await self.repos.patients.upsert(updated)

    async def list_access_requests(
        self, actor: schemas.ActorIdentity
    ) -> list[schemas.AccessRequest]:
        return await self.ledger.list_for_patient(actor.uid)

    async def decide_access_request(
        self,
        actor: schemas.ActorIdentity,
        request_id: str,
        status: schemas.AccessRequestStatus,
    ) -> schemas.AccessRequest:
        return await self.ledger.decide(actor.uid, request_id, status)

    async def list_visits(self, actor: schemas.ActorIdentity) -> list[schemas.Visit]:
        visits = await self.repos.visits.list_by_patient(actor.uid)
        profiles = await doctor_display_map(
            self.repos.doctor_profiles,
            (visit.doctor_uid for visit in visits if missing_display_fields(visit)),
        )
        return [backfill_display_fields(visit, profiles.get(visit.doctor_uid)) for visit in visits]


DECIDED_DOCTOR_STATUSES = (
    schemas.DoctorApprovalStatus.approved,
    schemas.DoctorApprovalStatus.denied,
)


class AdminService:
    def __init__(
        self,
        repos: Repositories,
        audit: Optional[AuditLogger] = None,
        clock: Clock = system_clock,
    ) -> None:
        self.repos = repos
        self.audit = audit
        self.clock = clock

    async def list_doctor_applications(self) -> list[schemas.DoctorProfile]:
        return await self.repos.doctor_profiles.list_by_approval_status(
            schemas.DoctorApprovalStatus.pending
        )

    async def decide_doctor_application(
        self,
        actor: schemas.ActorIdentity,
        doctor_uid: str,
        status: schemas.DoctorApprovalStatus,
    ) -> schemas.DoctorProfile:
        if status not in DECIDED_DOCTOR_STATUSES:
            raise ValidationFailedError(
                "A doctor application is decided as approved or denied",
                {"status": status.value},
            )
        profile = await self.repos.doctor_profiles.find_by_uid(doctor_uid)
        if profile is None:
            raise NotFoundError("Doctor profile not found", {"uid": doctor_uid})
        user = await self.repos.users.find_by_uid(doctor_uid)
        if user is None:
            raise NotFoundError("Doctor user not found", {"uid": doctor_uid})

        now = to_iso(self.clock())
        profile = profile.model_copy(update={"approval_status": status, "updated_at": now})
        user = user.model_copy(
            update={
                "role": schemas.UserRole.doctor,
                "doctor_approval_status": status,
                "updated_at": now,
            }
        )
        await self.repos.doctor_profiles.upsert(profile)
        await self.repos.users.upsert(user)
        logger.info("doctor_verified", uid=doctor_uid, status=status.value, by=actor.email)
        if self.audit is not None:
            self.audit.record(
                actor=actor.uid,
                action="decide_doctor_application",
                patient_id=None,
                timestamp=now,
                subject=f"{doctor_uid}:{status.value}",
            )
        return profile


class AdminPortalService:
    """Static-credential admin console over the shared repositories."""

    def __init__(
        self,
        repos: Repositories,
        sessions: AdminPortalSessions,
        portal_email: str,
        portal_password: str,
        audit: Optional[AuditLogger] = None,
        clock: Clock = system_clock,
    ) -> None:
        self.repos = repos
        self.sessions = sessions
        self.portal_email = portal_email.strip().lower()
        self.portal_password = portal_password
        self.audit = audit
        self.clock = clock

    def login(self, email: str, password: str) -> schemas.PortalLoginResponse:
        normalized = email.strip().lower()
        valid_email = secrets.compare_digest(normalized.encode("utf-8"), self.portal_email.encode("utf-8"))
        valid_password = secrets.compare_digest(
            password.encode("utf-8"), self.portal_password.encode("utf-8")
        )
        if not (valid_email and valid_password):
            logger.warning("portal_login_rejected", email=normalized)
            raise AuthInvalidError("Invalid static admin credentials")
        session = self.sessions.login(normalized)
        logger.info("portal_login", email=normalized)
        return schemas.PortalLoginResponse(
            token=session.token,
            email=session.email,
            expires_at=to_iso(from_epoch_ms(session.expires_at)),
        )

    def validate(self, token: Optional[str]) -> str:
        if not token:
            raise AuthRequiredError("Admin portal token is required")
        email = self.sessions.validate(token)
        if email is None:
            raise AuthInvalidError("Admin portal session expired")
        return email

    def logout(self, token: str) -> None:
        self.sessions.logout(token)

    async def live_data(self) -> schemas.LiveData:
        doctors = await self.repos.doctor_profiles.list_all()
        patients = await self.repos.patients.list_all()
        users = {user.uid: user for user in await self.repos.users.list_all()}

        doctor_rows = [
            schemas.DoctorRow(
                uid=profile.uid,
                doctor_name=profile.doctor_name,
                doctor_email=profile.doctor_email,
                doctor_phone=profile.doctor_phone,
                hospital_id=profile.hospital_id,
                specializations=profile.specializations,
                qualification=profile.qualification,
                license=profile.license,
                approval_status=profile.approval_status,
                created_at=profile.created_at,
                updated_at=profile.updated_at,
            )
            for profile in doctors
        ]
        patient_rows = []
        for profile in patients:
            user = users.get(profile.owner_uid)
            patient_rows.append(
                schemas.PatientRow(
                    uid=profile.owner_uid,
                    identifier=profile.global_patient_identifier,
                    patient_name=profile.full_name,
                    email=profile.contact.email,
                    phone=profile.contact.phone,
                    blood_group=profile.blood_group,
                    verification_status=(
                        user.patient_verification_status
                        if user
                        else schemas.PatientVerificationStatus.pending
                    ),
                    created_at=profile.created_at,
                    updated_at=profile.updated_at,
                )
            )

        def count(rows, attribute, value) -> int:
            return sum(1 for row in rows if getattr(row, attribute) == value)

        summary = schemas.LiveSummary(
            total_doctors=len(doctor_rows),
            doctor_pending=count(doctor_rows, "approval_status", schemas.DoctorApprovalStatus.pending),
            doctor_approved=count(doctor_rows, "approval_status", schemas.DoctorApprovalStatus.approved),
            doctor_denied=count(doctor_rows, "approval_status", schemas.DoctorApprovalStatus.denied),
            total_patients=len(patient_rows),
            patient_pending=count(
                patient_rows, "verification_status", schemas.PatientVerificationStatus.pending
            ),
            patient_verified=count(
                patient_rows, "verification_status", schemas.PatientVerificationStatus.verified
            ),
            patient_rejected=count(
                patient_rows, "verification_status", schemas.PatientVerificationStatus.rejected
            ),
        )
        return schemas.LiveData(
            timestamp=to_iso(self.clock()),
            summary=summary,
            doctor_verifications=doctor_rows,
            patient_verifications=patient_rows,
        )

    def _audit(self, portal_email: str, action: str, patient_id: Optional[str], subject: str, now: str) -> None:
        if self.audit is not None:
            self.audit.record(
                actor=portal_email,
                action=action,
                patient_id=patient_id,
                timestamp=now,
                subject=subject,
            )

    async def verify_doctor(
        self, portal_email: str, doctor_uid: str, status: schemas.DoctorApprovalStatus
    ) -> schemas.DoctorProfile:
        if status == schemas.DoctorApprovalStatus.not_applicable:
            raise ValidationFailedError(
                "Doctor verification status must be pending, approved or denied",
                {"status": status.value},
            )
        profile = await self.repos.doctor_profiles.find_by_uid(doctor_uid)
        if profile is None:
            raise NotFoundError("Doctor profile not found", {"uid": doctor_uid})

        now = to_iso(self.clock())
        profile = profile.model_copy(update={"approval_status": status, "updated_at": now})
        existing = await self.repos.users.find_by_uid(doctor_uid)
        base = existing or schemas.User(
            uid=doctor_uid,
            email=profile.doctor_email.lower(),
            created_at=profile.created_at,
        )
        user = base.model_copy(
            update={
                "role": schemas.UserRole.doctor,
                "display_name": None,
                "phone": None,
                "hospital_id": None,
                "doctor_approval_status": status,
                "patient_verification_status": schemas.PatientVerificationStatus.not_applicable,
                "updated_at": now,
            }
        )
        await self.repos.doctor_profiles.upsert(profile)
        await self.repos.users.upsert(user)
        logger.info("doctor_verified", uid=doctor_uid, status=status.value, by=portal_email)
        self._audit(portal_email, "verify_doctor", None, f"{doctor_uid}:{status.value}", now)
        return profile

    async def verify_patient(
        self, portal_email: str, patient_uid: str, status: schemas.PatientVerificationStatus
    ) -> schemas.User:
        if status == schemas.PatientVerificationStatus.not_applicable:
            raise ValidationFailedError(
                "Patient verification status must be pending, verified or rejected",
                {"status": status.value},
            )
        profile = await self.repos.patients.find_by_owner_uid(patient_uid)
        if profile is None:
            raise NotFoundError("Patient profile not found", {"uid": patient_uid})

        now = to_iso(self.clock())
        existing = await self.repos.users.find_by_uid(patient_uid)
        if existing is not None:
            user = existing.model_copy(
                update={
                    "role": schemas.UserRole.patient,
                    "display_name": (
                        existing.display_name
                        if existing.display_name is not None
                        else profile.full_name
                    ),
                    "phone": existing.phone if existing.phone is not None else profile.contact.phone,
                    "doctor_approval_status": schemas.DoctorApprovalStatus.not_applicable,
                    "patient_verification_status": status,
                    "updated_at": now,
                }
            )
        else:
            user = schemas.User(
                uid=patient_uid,
                email=profile.contact.email.lower(),
                role=schemas.UserRole.patient,
                display_name=profile.full_name,
                phone=profile.contact.phone,
                patient_verification_status=status,
                created_at=profile.created_at,
                updated_at=now,
            )
        await self.repos.users.upsert(user)
        logger.info("patient_verified", uid=patient_uid, status=status.value, by=portal_email)
        self._audit(portal_email, "verify_patient", patient_uid, status.value, now)
        return user
