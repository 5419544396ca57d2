"""Builders for documents and actors used across the test modules."""

from datetime import datetime, timedelta

from medledger import schemas

ADMIN_EMAIL = "chief@medledger.test"
HOSPITAL = "HOSP-NORTH"


class FrozenClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now = self.now + timedelta(**delta)


def doctor_actor(
    uid: str = "doc-1",
    hospital_id: str = HOSPITAL,
    status: schemas.DoctorApprovalStatus = schemas.DoctorApprovalStatus.approved,
) -> schemas.ActorIdentity:
    return schemas.ActorIdentity(
        uid=uid,
        email=f"{uid}@clinic.test",
        role=schemas.UserRole.doctor,
        hospital_id=hospital_id,
        doctor_approval_status=status,
    )


def patient_actor(uid: str = "pat-1") -> schemas.ActorIdentity:
    return schemas.ActorIdentity(
        uid=uid, email=f"{uid}@mail.test", role=schemas.UserRole.patient
    )


def doctor_profile_input(**overrides) -> schemas.DoctorProfileInput:
    data = {
        "doctor_name": "Dr. Asha Rao",
        "doctor_email": "asha@clinic.example.com",
        "doctor_phone": "+15550001",
        "hospital_id": HOSPITAL,
        "hospital_logo_base64": "bG9nbw==",
        "specializations": ["cardiology"],
    }
    data.update(overrides)
    return schemas.DoctorProfileInput(**data)


def patient_profile_input(**contact) -> schemas.PatientProfileInput:
    return schemas.PatientProfileInput(
        demographics=schemas.Demographics(
            first_name="Mira", last_name="Shah", date_of_birth="1990-02-03", gender="female"
        ),
        contact=schemas.ContactInput(
            **{"email": "mira@example.com", "phone": "+15559999", **contact}
        ),
        blood_group="O+",
        allergies=["penicillin"],
    )


async def seed_doctor(
    repos,
    uid: str = "doc-1",
    hospital_id: str = HOSPITAL,
    status: schemas.DoctorApprovalStatus = schemas.DoctorApprovalStatus.approved,
    name: str = "Dr. Asha Rao",
) -> schemas.DoctorProfile:
    profile = schemas.DoctorProfile(
        uid=uid,
        doctor_name=name,
        doctor_email=f"{uid}@clinic.test",
        doctor_phone="+15550001",
        hospital_id=hospital_id,
        hospital_logo_base64="bG9nbw==",
        approval_status=status,
        created_at="2024-01-01T00:00:00.000Z",
        updated_at="2024-01-01T00:00:00.000Z",
    )
    await repos.doctor_profiles.upsert(profile)
    await repos.users.upsert(
        schemas.User(
            uid=uid,
            email=f"{uid}@clinic.test",
            role=schemas.UserRole.doctor,
            doctor_approval_status=status,
            created_at="2024-01-01T00:00:00.000Z",
            updated_at="2024-01-01T00:00:00.000Z",
        )
    )
    return profile


async def seed_patient(
    repos,
    uid: str = "pat-1",
    identifier: str = "MLP-2024-ABCDEF12",
    email: str = "mira@mail.test",
    phone: str = "+15559999",
) -> schemas.PatientProfile:
    profile = schemas.PatientProfile(
        owner_uid=uid,
        global_patient_identifier=identifier,
        demographics=schemas.Demographics(first_name="Mira", last_name="Shah"),
        contact=schemas.Contact(email=email, phone=phone),
        blood_group="O+",
        created_at="2024-01-02T00:00:00.000Z",
        updated_at="2024-01-02T00:00:00.000Z",
    )
    await repos.patients.upsert(profile)
    await repos.users.upsert(
        schemas.User(
            uid=uid,
            email=email,
            role=schemas.UserRole.patient,
            phone=phone,
            patient_verification_status=schemas.PatientVerificationStatus.verified,
            created_at="2024-01-02T00:00:00.000Z",
            updated_at="2024-01-02T00:00:00.000Z",
        )
    )
    return profile


async def seed_request(
    repos,
    status: schemas.AccessRequestStatus,
    created_at: str,
    request_id: str,
    doctor_uid: str = "doc-1",
    patient_uid: str = "pat-1",
) -> schemas.AccessRequest:
    request = schemas.AccessRequest(
        id=request_id,
        doctor_uid=doctor_uid,
        doctor_hospital_id=HOSPITAL,
        patient_uid=patient_uid,
        patient_identifier="MLP-2024-ABCDEF12",
        status=status,
        created_at=created_at,
        updated_at=created_at,
    )
    await repos.access_requests.create(request)
    return request
