"""Pydantic schemas for MedLedger documents and API payloads."""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class UserRole(str, Enum):
    patient = "patient"
    doctor = "doctor"
    admin = "admin"


class DoctorApprovalStatus(str, Enum):
    not_applicable = "not_applicable"
    pending = "pending"
    approved = "approved"
    denied = "denied"


class PatientVerificationStatus(str, Enum):
    not_applicable = "not_applicable"
    pending = "pending"
    verified = "verified"
    rejected = "rejected"


class AccessRequestStatus(str, Enum):
    waiting = "waiting"
    approved = "approved"
    denied = "denied"


class TreatmentStatus(str, Enum):
    active = "active"
    improving = "improving"
    stable = "stable"
    critical = "critical"
    completed = "completed"
    one_time_complete = "one_time_complete"


class Document(BaseModel):
    """Base for persisted documents; unknown legacy keys are ignored on read."""

    model_config = ConfigDict(extra="ignore")


class ActorIdentity(BaseModel):
    """Resolved role and approval context of the authenticated caller.

    Computed per request and never persisted.
    """

    model_config = ConfigDict(frozen=True)

    uid: str
    email: str
    role: UserRole
    hospital_id: Optional[str] = None
    doctor_approval_status: DoctorApprovalStatus = DoctorApprovalStatus.not_applicable


class User(Document):
    """Denormalized projection of an account, keyed by uid."""

    uid: str
    email: str = ""
    role: UserRole = UserRole.patient
    display_name: Optional[str] = None
    phone: Optional[str] = None
    hospital_id: Optional[str] = None
    doctor_approval_status: DoctorApprovalStatus = DoctorApprovalStatus.not_applicable
    patient_verification_status: PatientVerificationStatus = (
        PatientVerificationStatus.not_applicable
    )
    created_at: str = ""
    updated_at: str = ""


class DoctorProfile(Document):
    """Authoritative source for a doctor's approval status and hospital."""

    uid: str
    doctor_name: str = ""
    doctor_email: str = ""
    doctor_phone: str = ""
    hospital_id: str = ""
    hospital_logo_base64: str = ""
    specializations: List[str] = Field(default_factory=list)
    qualification: str = ""
    license: str = ""
    profile_image_base64: str = ""
    verification_docs_base64: List[str] = Field(default_factory=list)
    approval_status: DoctorApprovalStatus = DoctorApprovalStatus.pending
    created_at: str = ""
    updated_at: str = ""


class Demographics(BaseModel):
    first_name: str = ""
    last_name: str = ""
    date_of_birth: str = ""
    gender: str = ""


class Contact(BaseModel):
    email: str = ""
    phone: str = ""
    address_line_1: str = ""
    address_line_2: str = ""
    city: str = ""
    state: str = ""
    country: str = ""
    postal_code: str = ""


class ContactInput(Contact):
    email: EmailStr


class HereditaryCondition(BaseModel):
    relation: str = ""
    condition: str = ""
    age_of_detection: Optional[int] = None
    status: str = ""
    affected_person_name: str = ""
    affected_people_count: Optional[int] = None
    doctor_report_image_base64: str = ""
    notes: str = ""


class CreatedBy(BaseModel):
    doctor_uid: str = ""
    doctor_name: str = ""
    hospital_id: str = ""
    created_at: str = ""


class PatientProfile(Document):
    """Patient demographics keyed by owner uid.

    ``global_patient_identifier`` is assigned once and never regenerated.
    """

    owner_uid: str
    global_patient_identifier: str = ""
    demographics: Demographics = Field(default_factory=Demographics)
    contact: Contact = Field(default_factory=Contact)
    blood_group: str = ""
    allergies: List[str] = Field(default_factory=list)
    profile_image_base64: str = ""
    aadhaar_card_base64: str = ""
    hereditary_history: List[HereditaryCondition] = Field(default_factory=list)
    created_by: Optional[CreatedBy] = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.demographics.first_name} {self.demographics.last_name}".strip()


class AccessRequest(Document):
    """A doctor's request to see one patient's clinical history."""

    id: str
    doctor_uid: str
    doctor_hospital_id: str = ""
    doctor_name: str = ""
    doctor_phone: str = ""
    hospital_logo_base64: str = ""
    patient_uid: str
    patient_identifier: str
    reason: str = ""
    status: AccessRequestStatus = AccessRequestStatus.waiting
    created_at: str = ""
    updated_at: str = ""


class Visit(Document):
    """A clinical encounter recorded by a doctor under a hospital affiliation."""

    id: str
    patient_uid: str
    patient_identifier: str
    doctor_uid: str
    doctor_name: str = ""
    doctor_phone: str = ""
    hospital_logo_base64: str = ""
    hospital_id: str
    diagnosis: str = ""
    prescription: str = ""
    paper_prescription_image_base64: str = ""
    clinical_reports_base64: List[str] = Field(default_factory=list)
    reports_base64: List[str] = Field(default_factory=list)
    treatment_status: TreatmentStatus = TreatmentStatus.active
    created_at: str = ""
    updated_at: str = ""


# -- request payloads ---------------------------------------------------------


class PatientProfileInput(BaseModel):
    demographics: Demographics
    contact: ContactInput
    blood_group: str = ""
    allergies: List[str] = Field(default_factory=list, max_length=100)
    profile_image_base64: str = ""
    aadhaar_card_base64: str = ""
    hereditary_history: List[HereditaryCondition] = Field(
        default_factory=list, max_length=50
    )


class DoctorProfileInput(BaseModel):
    doctor_name: str = Field(..., min_length=1, max_length=120)
    doctor_email: EmailStr
    doctor_phone: str = Field(..., min_length=5, max_length=25)
    hospital_id: str = Field(..., min_length=1, max_length=120)
    hospital_logo_base64: str = ""
    specializations: List[str] = Field(default_factory=list)
    qualification: str = ""
    license: str = ""
    profile_image_base64: str = ""
    verification_docs_base64: List[str] = Field(default_factory=list)


class BootstrapRequest(BaseModel):
    role: UserRole
    display_name: str = Field("", max_length=120)
    phone: Optional[str] = None
    hospital_id: Optional[str] = None
    patient_profile: Optional[PatientProfileInput] = None
    doctor_profile: Optional[DoctorProfileInput] = None


class AccessRequestCreate(BaseModel):
    patient_identifier: str = Field(..., min_length=1)
    reason: str = Field("", max_length=1000)


class AccessDecision(BaseModel):
    status: AccessRequestStatus


class VisitCreate(BaseModel):
    patient_identifier: str = Field(..., min_length=1)
    diagnosis: str = Field(..., min_length=1)
    prescription: str = ""
    paper_prescription_image_base64: Optional[str] = None
    clinical_reports_base64: Optional[List[str]] = None
    reports_base64: List[str] = Field(default_factory=list)
    treatment_status: TreatmentStatus = TreatmentStatus.active


class VisitUpdate(BaseModel):
    diagnosis: Optional[str] = None
    prescription: Optional[str] = None
    paper_prescription_image_base64: Optional[str] = None
    clinical_reports_base64: Optional[List[str]] = None
    reports_base64: Optional[List[str]] = None
    treatment_status: Optional[TreatmentStatus] = None


class InitialVisitInput(BaseModel):
    illness_or_problem: str = ""
    prescription: str = ""
    prescription_image_base64: str = ""
    reports_base64: List[str] = Field(default_factory=list)
    treatment_status: TreatmentStatus = TreatmentStatus.active

    def is_empty(self) -> bool:
        return not (
            self.illness_or_problem.strip()
            or self.prescription.strip()
            or self.prescription_image_base64.strip()
            or self.reports_base64
        )


class DoctorPatientCreate(BaseModel):
    temporary_password: str = Field(..., min_length=8, max_length=128)
    patient_profile: PatientProfileInput
    initial_visit: Optional[InitialVisitInput] = None


class DoctorDecision(BaseModel):
    status: DoctorApprovalStatus


class PatientVerificationDecision(BaseModel):
    status: PatientVerificationStatus


class PortalLoginRequest(BaseModel):
    email: str
    password: str


# -- responses ------------------------------------------------------------------


class ContactSummary(BaseModel):
    email: str = ""
    phone: str = ""


class PatientSearchResult(BaseModel):
    patient_uid: str
    patient_identifier: str
    demographics: Demographics
    blood_group: str
    allergies: List[str]
    access_status: AccessRequestStatus
    contact: ContactSummary


class VisitedPatientSummary(BaseModel):
    patient_uid: str
    patient_identifier: str
    patient_name: str
    visit_count: int
    latest_visit_at: str
    latest_treatment_status: TreatmentStatus
    latest_diagnosis: str
    latest_hospital_id: str
    hospital_ids: List[str]


class PatientLookup(BaseModel):
    patient: PatientProfile
    visits: List[Visit]


class DoctorPatientCreated(BaseModel):
    user: User
    profile: PatientProfile
    access_request: AccessRequest
    initial_visit: Optional[Visit] = None


class PortalLoginResponse(BaseModel):
    token: str
    email: str
    expires_at: str


class DoctorRow(BaseModel):
    uid: str
    doctor_name: str
    doctor_email: str
    doctor_phone: str
    hospital_id: str
    specializations: List[str]
    qualification: str
    license: str
    approval_status: DoctorApprovalStatus
    created_at: str
    updated_at: str


class PatientRow(BaseModel):
    uid: str
    identifier: str
    patient_name: str
    email: str
    phone: str
    blood_group: str
    verification_status: PatientVerificationStatus
    created_at: str
    updated_at: str


class LiveSummary(BaseModel):
    total_doctors: int
    doctor_pending: int
    doctor_approved: int
    doctor_denied: int
    total_patients: int
    patient_pending: int
    patient_verified: int
    patient_rejected: int


class LiveData(BaseModel):
    timestamp: str
    summary: LiveSummary
    doctor_verifications: List[DoctorRow]
    patient_verifications: List[PatientRow]


class AuditEvent(BaseModel):
    """Structured audit trail event."""

    id: str
    actor: str
    action: str
    patient_id: Optional[str]
    timestamp: str
    payload_hash: str
