"""Tests for the role-scoped service operations."""

from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from medledger import schemas
from medledger.errors import (
    AuthInvalidError,
    AuthRequiredError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationFailedError,
)
from medledger.services import normalize_new_attachments, split_visit_attachments

from tests.helpers import (
    HOSPITAL,
    doctor_actor,
    doctor_profile_input,
    patient_actor,
    patient_profile_input,
    seed_doctor,
    seed_patient,
    seed_request,
)

Status = schemas.AccessRequestStatus


class TestAuthService:
    @pytest.mark.asyncio
    async def test_patient_bootstrap_assigns_identifier_once(self, container, repos, clock):
        actor = patient_actor("new-pat")
        payload = schemas.BootstrapRequest(
            role=schemas.UserRole.patient,
            display_name="Mira",
            patient_profile=patient_profile_input(email="New-Pat@Example.com"),
        )

        user = await container.auth_service.bootstrap(actor, payload)
        first = await repos.patients.find_by_owner_uid("new-pat")
        clock.advance(days=1)
        await container.auth_service.bootstrap(actor, payload)
        second = await repos.patients.find_by_owner_uid("new-pat")

        assert user.patient_verification_status == schemas.PatientVerificationStatus.verified
        assert first.global_patient_identifier.startswith("MLP-2024-")
        assert second.global_patient_identifier == first.global_patient_identifier
        assert second.created_at == first.created_at
        assert first.contact.email == "new-pat@example.com"

    @pytest.mark.asyncio
    async def test_doctor_bootstrap_starts_pending_without_display_fields(self, container, repos):
        actor = patient_actor("new-doc")
        payload = schemas.BootstrapRequest(
            role=schemas.UserRole.doctor, doctor_profile=doctor_profile_input()
        )

        user = await container.auth_service.bootstrap(actor, payload)

        assert user.role == schemas.UserRole.doctor
        assert user.doctor_approval_status == schemas.DoctorApprovalStatus.pending
        assert user.display_name is None
        profile = await repos.doctor_profiles.find_by_uid("new-doc")
        assert profile.approval_status == schemas.DoctorApprovalStatus.pending

    @pytest.mark.asyncio
    async def test_bootstrap_requires_matching_profile(self, container):
        with pytest.raises(ValidationFailedError):
            await container.auth_service.bootstrap(
                patient_actor(), schemas.BootstrapRequest(role=schemas.UserRole.doctor)
            )

    @pytest.mark.asyncio
    async def test_session_requires_provisioned_account(self, container):
        with pytest.raises(ForbiddenError) as excinfo:
            await container.auth_service.get_session(patient_actor("ghost"))

        assert "not provisioned" in excinfo.value.message

    @pytest.mark.asyncio
    async def test_session_repairs_stale_doctor_user(self, container, repos):
        await seed_doctor(repos)
        stale = await repos.users.find_by_uid("doc-1")
        await repos.users.upsert(stale.model_copy(update={"hospital_id": "HOSP-OLD"}))

        session = await container.auth_service.get_session(doctor_actor())

        assert session.hospital_id == HOSPITAL
        assert session.display_name == "Dr. Asha Rao"
        assert (await repos.users.find_by_uid("doc-1")).hospital_id is None


class TestDoctorProfile:
    @pytest.mark.asyncio
    async def test_reapplying_keeps_approval(self, container, repos):
        await seed_doctor(repos)

        profile = await container.doctor_service.apply(
            doctor_actor(), doctor_profile_input(doctor_name="Dr. A. Rao")
        )

        assert profile.approval_status == schemas.DoctorApprovalStatus.approved
        assert profile.created_at == "2024-01-01T00:00:00.000Z"

    @pytest.mark.asyncio
    async def test_apply_turns_patient_user_into_pending_doctor(self, container, repos):
        await seed_patient(repos)

        await container.doctor_service.apply(patient_actor(), doctor_profile_input())

        user = await repos.users.find_by_uid("pat-1")
        assert user.role == schemas.UserRole.doctor
        assert user.doctor_approval_status == schemas.DoctorApprovalStatus.pending
        assert user.phone is None

    @pytest.mark.asyncio
    async def test_update_requires_existing_profile(self, container):
        with pytest.raises(NotFoundError):
            await container.doctor_service.update_profile(doctor_actor(), doctor_profile_input())


class TestSearchPatients:
    @pytest.mark.asyncio
    async def test_contact_redacted_without_grant(self, container, repos):
        await seed_patient(repos)

        results = await container.doctor_service.search_patients(doctor_actor(), "MLP-2024-ABCDEF12")

        assert len(results) == 1
        assert results[0].access_status == Status.waiting
        assert results[0].contact == schemas.ContactSummary()

    @pytest.mark.asyncio
    async def test_contact_visible_with_approved_grant(self, container, repos):
        await seed_patient(repos)
        await seed_request(repos, Status.approved, "2024-05-01T00:00:00.000Z", "r-1")

        results = await container.doctor_service.search_patients(doctor_actor(), "mira@mail.test")

        assert results[0].contact.email == "mira@mail.test"
        assert results[0].access_status == Status.approved

    @pytest.mark.asyncio
    async def test_matches_are_deduplicated(self, container, repos):
        await seed_patient(repos, phone="pat-1")

        results = await container.doctor_service.search_patients(doctor_actor(), "pat-1")

        assert [result.patient_uid for result in results] == ["pat-1"]

    @pytest.mark.asyncio
    async def test_doctors_are_not_returned_by_email(self, container, repos):
        await seed_doctor(repos, uid="other-doc")

        results = await container.doctor_service.search_patients(
            doctor_actor(), "other-doc@clinic.test"
        )

        assert results == []

    @pytest.mark.asyncio
    async def test_pending_doctor_cannot_search(self, container, repos):
        await seed_patient(repos)

        with pytest.raises(ForbiddenError) as excinfo:
            await container.doctor_service.search_patients(
                doctor_actor(status=schemas.DoctorApprovalStatus.pending), "MLP-2024-ABCDEF12"
            )

        assert excinfo.value.details == {"approvalStatus": "pending"}


class TestCreatePatient:
    @pytest.mark.asyncio
    async def test_onboarding_grants_access_and_records_initial_visit(self, container, repos):
        await seed_doctor(repos)
        payload = schemas.DoctorPatientCreate(
            temporary_password="welcome-123",
            patient_profile=patient_profile_input(email="New@Example.com", phone="+15551234"),
            initial_visit=schemas.InitialVisitInput(reports_base64=["cmVwb3J0"]),
        )

        created = await container.doctor_service.create_patient(doctor_actor(), payload)

        assert created.user.email == "new@example.com"
        assert created.profile.created_by.doctor_uid == "doc-1"
        assert created.access_request.status == Status.approved
        assert created.access_request.reason == "Patient onboarded by treating doctor."
        assert created.initial_visit.diagnosis == "Initial onboarding"
        assert created.initial_visit.prescription == "Initial consultation record"
        assert created.initial_visit.clinical_reports_base64 == ["cmVwb3J0"]
        await container.guard.assert_granted_access("doc-1", created.user.uid)

    @pytest.mark.asyncio
    async def test_empty_initial_visit_is_skipped(self, container, repos):
        await seed_doctor(repos)
        payload = schemas.DoctorPatientCreate(
            temporary_password="welcome-123",
            patient_profile=patient_profile_input(),
            initial_visit=schemas.InitialVisitInput(illness_or_problem="   "),
        )

        created = await container.doctor_service.create_patient(doctor_actor(), payload)

        assert created.initial_visit is None

    @pytest.mark.asyncio
    async def test_existing_email_conflicts(self, container, repos):
        await seed_doctor(repos)
        await seed_patient(repos, email="mira@example.com")
        payload = schemas.DoctorPatientCreate(
            temporary_password="welcome-123", patient_profile=patient_profile_input(phone="+1000")
        )

        with pytest.raises(ConflictError) as excinfo:
            await container.doctor_service.create_patient(doctor_actor(), payload)

        assert excinfo.value.message == "Email is already registered."

    def test_contact_email_must_be_valid(self):
        profile = patient_profile_input().model_dump()
        for email in ("", "not-an-email"):
            profile["contact"]["email"] = email

            with pytest.raises(ValidationError):
                schemas.DoctorPatientCreate(
                    temporary_password="welcome-123", patient_profile=profile
                )

    @pytest.mark.asyncio
    async def test_failure_after_account_creation_deletes_identity(self, container, repos):
        await seed_doctor(repos)
        provider = container.identity_provider
        container.ledger.grant_on_onboarding = AsyncMock(side_effect=RuntimeError("store down"))
        payload = schemas.DoctorPatientCreate(
            temporary_password="welcome-123", patient_profile=patient_profile_input()
        )

        with pytest.raises(RuntimeError):
            await container.doctor_service.create_patient(doctor_actor(), payload)

        assert provider.authenticate("mira@example.com", "welcome-123") is None

    @pytest.mark.asyncio
    async def test_cleanup_failure_does_not_mask_original_error(self, container, repos):
        await seed_doctor(repos)
        provider = container.identity_provider
        provider.delete_user = AsyncMock(side_effect=RuntimeError("provider down"))
        container.ledger.grant_on_onboarding = AsyncMock(side_effect=ValueError("boom"))
        payload = schemas.DoctorPatientCreate(
            temporary_password="welcome-123", patient_profile=patient_profile_input()
        )

        with pytest.raises(ValueError, match="boom"):
            await container.doctor_service.create_patient(doctor_actor(), payload)

        provider.delete_user.assert_awaited_once()


class TestVisits:
    @pytest.mark.asyncio
    async def test_create_requires_approved_grant(self, container, repos):
        await seed_patient(repos)
        await seed_request(repos, Status.waiting, "2024-05-01T00:00:00.000Z", "r-1")

        with pytest.raises(ForbiddenError):
            await container.doctor_service.create_visit(
                doctor_actor(),
                schemas.VisitCreate(patient_identifier="MLP-2024-ABCDEF12", diagnosis="Flu"),
            )

    @pytest.mark.asyncio
    async def test_create_and_update_within_hospital(self, container, repos, clock):
        await seed_doctor(repos)
        await seed_patient(repos)
        await seed_request(repos, Status.approved, "2024-05-01T00:00:00.000Z", "r-1")
        visit = await container.doctor_service.create_visit(
            doctor_actor(),
            schemas.VisitCreate(
                patient_identifier="MLP-2024-ABCDEF12",
                diagnosis="Flu",
                reports_base64=["cHJlc2NyaXB0aW9u", "bGFi"],
            ),
        )
        clock.advance(hours=2)

        updated = await container.doctor_service.update_visit(
            doctor_actor(),
            visit.id,
            schemas.VisitUpdate(treatment_status=schemas.TreatmentStatus.improving),
        )

        assert visit.hospital_id == HOSPITAL
        assert visit.paper_prescription_image_base64 == "cHJlc2NyaXB0aW9u"
        assert updated.treatment_status == schemas.TreatmentStatus.improving
        assert updated.diagnosis == "Flu"
        assert updated.reports_base64 == ["cHJlc2NyaXB0aW9u", "bGFi"]
        assert updated.updated_at == "2024-06-01T11:30:00.000Z"
        actions = [event["action"] for event in container.audit.read()]
        assert actions == ["create_visit", "update_visit"]

    @pytest.mark.asyncio
    async def test_update_after_hospital_transfer_is_forbidden(self, container, repos):
        await seed_patient(repos)
        await seed_request(repos, Status.approved, "2024-05-01T00:00:00.000Z", "r-1")
        visit = await container.doctor_service.create_visit(
            doctor_actor(),
            schemas.VisitCreate(patient_identifier="MLP-2024-ABCDEF12", diagnosis="Flu"),
        )

        with pytest.raises(ForbiddenError):
            await container.doctor_service.update_visit(
                doctor_actor(hospital_id="HOSP-SOUTH"),
                visit.id,
                schemas.VisitUpdate(diagnosis="Changed"),
            )

        assert (await repos.visits.find_by_id(visit.id)).diagnosis == "Flu"

    @pytest.mark.asyncio
    async def test_update_after_revocation_is_forbidden(self, container, repos):
        await seed_patient(repos)
        await seed_request(repos, Status.approved, "2024-05-01T00:00:00.000Z", "r-1")
        visit = await container.doctor_service.create_visit(
            doctor_actor(),
            schemas.VisitCreate(patient_identifier="MLP-2024-ABCDEF12", diagnosis="Flu"),
        )
        await container.patient_service.decide_access_request(patient_actor(), "r-1", Status.denied)

        with pytest.raises(ForbiddenError):
            await container.doctor_service.update_visit(
                doctor_actor(), visit.id, schemas.VisitUpdate(diagnosis="Changed")
            )
        assert len(await container.patient_service.list_visits(patient_actor())) == 1

    @pytest.mark.asyncio
    async def test_lookup_requires_grant_for_doctor_but_not_admin(self, container, repos):
        await seed_patient(repos)
        admin = schemas.ActorIdentity(
            uid="admin-1", email="chief@medledger.test", role=schemas.UserRole.admin
        )

        with pytest.raises(ForbiddenError) as excinfo:
            await container.doctor_service.lookup_patient(doctor_actor(), "MLP-2024-ABCDEF12")
        lookup = await container.doctor_service.lookup_patient(admin, "MLP-2024-ABCDEF12")

        assert excinfo.value.message == "Doctor has no approved access to this patient"
        assert lookup.patient.owner_uid == "pat-1"

    @pytest.mark.asyncio
    async def test_pending_doctor_lookup_of_unknown_identifier_is_forbidden(self, container):
        with pytest.raises(ForbiddenError) as excinfo:
            await container.doctor_service.lookup_patient(
                doctor_actor(status=schemas.DoctorApprovalStatus.pending), "MLP-2024-00000000"
            )

        assert excinfo.value.details == {"approvalStatus": "pending"}

    @pytest.mark.asyncio
    async def test_approved_doctor_lookup_of_unknown_identifier(self, container):
        with pytest.raises(NotFoundError):
            await container.doctor_service.lookup_patient(doctor_actor(), "MLP-2024-00000000")

    @pytest.mark.asyncio
    async def test_visited_patients_summary(self, container, repos, clock):
        await seed_patient(repos)
        await seed_request(repos, Status.approved, "2024-05-01T00:00:00.000Z", "r-1")
        for diagnosis in ("Flu", "Recovery check"):
            await container.doctor_service.create_visit(
                doctor_actor(),
                schemas.VisitCreate(patient_identifier="MLP-2024-ABCDEF12", diagnosis=diagnosis),
            )
            clock.advance(days=1)

        summaries = await container.doctor_service.list_visited_patients(doctor_actor())

        assert len(summaries) == 1
        assert summaries[0].visit_count == 2
        assert summaries[0].latest_diagnosis == "Recovery check"
        assert summaries[0].patient_name == "Mira Shah"
        assert summaries[0].hospital_ids == [HOSPITAL]


class TestAttachments:
    def test_explicit_fields_win(self):
        payload = schemas.VisitCreate(
            patient_identifier="x",
            diagnosis="d",
            paper_prescription_image_base64="rx",
            clinical_reports_base64=["a", " "],
            reports_base64=["ignored"],
        )

        assert normalize_new_attachments(payload) == ("rx", ["a"], ["rx", "a"])

    def test_legacy_reports_split(self):
        visit = schemas.Visit(
            id="v", patient_uid="p", patient_identifier="x", doctor_uid="d", hospital_id="h",
            reports_base64=["rx", "lab"],
        )

        assert split_visit_attachments(visit) == ("rx", ["lab"])


class TestPatientService:
    @pytest.mark.asyncio
    async def test_update_never_changes_identifier(self, container, repos):
        await seed_patient(repos)

        updated = await container.patient_service.update_profile(
            patient_actor(), patient_profile_input(city="Pune")
        )

        assert updated.global_patient_identifier == "MLP-2024-ABCDEF12"
        assert updated.contact.city == "Pune"
        assert type(updated.contact) is schemas.Contact
        assert updated.created_at == "2024-01-02T00:00:00.000Z"

    @pytest.mark.asyncio
    async def test_missing_profile(self, container):
        with pytest.raises(NotFoundError):
            await container.patient_service.get_profile(patient_actor("ghost"))


class TestAdminServices:
    @pytest.mark.asyncio
    async def test_decide_application_updates_profile_and_user(self, container, repos):
        await seed_doctor(repos, status=schemas.DoctorApprovalStatus.pending)
        admin = schemas.ActorIdentity(
            uid="admin-1", email="chief@medledger.test", role=schemas.UserRole.admin
        )

        assert len(await container.admin_service.list_doctor_applications()) == 1
        await container.admin_service.decide_doctor_application(
            admin, "doc-1", schemas.DoctorApprovalStatus.approved
        )

        assert (await repos.users.find_by_uid("doc-1")).doctor_approval_status == (
            schemas.DoctorApprovalStatus.approved
        )
        assert await container.admin_service.list_doctor_applications() == []

    @pytest.mark.asyncio
    async def test_decide_application_needs_user(self, container, repos):
        await repos.doctor_profiles.upsert(schemas.DoctorProfile(uid="orphan"))
        admin = schemas.ActorIdentity(uid="a", email="chief@medledger.test", role=schemas.UserRole.admin)

        with pytest.raises(NotFoundError):
            await container.admin_service.decide_doctor_application(
                admin, "orphan", schemas.DoctorApprovalStatus.denied
            )

    def test_portal_rejects_wrong_credentials(self, container):
        with pytest.raises(AuthInvalidError):
            container.portal_service.login("admin@med.com", "nope")

    def test_portal_validate(self, container, clock):
        session = container.portal_service.login("ADMIN@med.com", "admin@123")

        assert container.portal_service.validate(session.token) == "admin@med.com"
        with pytest.raises(AuthRequiredError):
            container.portal_service.validate(None)
        clock.advance(hours=12)
        with pytest.raises(AuthInvalidError):
            container.portal_service.validate(session.token)

    @pytest.mark.asyncio
    async def test_verify_patient_creates_missing_user(self, container, repos):
        await repos.patients.upsert(
            schemas.PatientProfile(
                owner_uid="p-2",
                global_patient_identifier="MLP-2024-00000002",
                demographics=schemas.Demographics(first_name="Ravi", last_name="K"),
                contact=schemas.Contact(email="Ravi@Mail.test"),
            )
        )

        before = await container.portal_service.live_data()
        user = await container.portal_service.verify_patient(
            "admin@med.com", "p-2", schemas.PatientVerificationStatus.verified
        )
        after = await container.portal_service.live_data()

        assert before.summary.patient_pending == 1
        assert user.email == "ravi@mail.test"
        assert user.display_name == "Ravi K"
        assert after.summary.patient_verified == 1

    @pytest.mark.asyncio
    async def test_verify_doctor_rewrites_user(self, container, repos):
        await seed_doctor(repos, status=schemas.DoctorApprovalStatus.pending)

        await container.portal_service.verify_doctor(
            "admin@med.com", "doc-1", schemas.DoctorApprovalStatus.denied
        )

        live = await container.portal_service.live_data()
        assert live.summary.doctor_denied == 1
        actor = await container.resolver.resolve("doc-1", "doc-1@clinic.test")
        assert actor.doctor_approval_status == schemas.DoctorApprovalStatus.denied
