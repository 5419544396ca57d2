"""FastAPI application exposing the MedLedger clinical-record API."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence
from uuid import uuid4

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from . import __version__, schemas
from .auth import (
    IdentityProvider,
    InMemoryIdentityProvider,
    TokenVerifier,
    parse_bearer,
    sign_request,
)
from .clock import Clock, system_clock
from .config import Settings, get_settings
from .errors import AppError, ForbiddenError, NotFoundError
from .guard import VisibilityGuard
from .identity import IdentityResolver
from .ledger import AccessLedger
from .log_config import configure_logging
from .repair import ConsistencyRepairer
from .services import (
    AdminPortalService,
    AdminService,
    AuthService,
    DoctorService,
    PatientService,
)
from .sessions import AdminPortalSessions
from .storage import (
    AuditLogger,
    DocumentStore,
    EncryptedFileDocumentStore,
    InMemoryDocumentStore,
    Repositories,
)


logger = structlog.get_logger(__name__)

PORTAL_TOKEN_HEADER = "x-admin-portal-token"
REQUEST_ID_HEADER = "x-request-id"
SIGNATURE_HEADER = "x-request-signature"


@dataclass
class Container:
    """Process-wide collaborators, built once and shared by every request."""

    settings: Settings
    clock: Clock
    repos: Repositories
    audit: AuditLogger
    verifier: TokenVerifier
    identity_provider: IdentityProvider
    resolver: IdentityResolver
    ledger: AccessLedger
    guard: VisibilityGuard
    repairer: ConsistencyRepairer
    sessions: AdminPortalSessions
    auth_service: AuthService
    doctor_service: DoctorService
    patient_service: PatientService
    admin_service: AdminService
    portal_service: AdminPortalService

    @classmethod
    def build(
        cls,
        settings: Settings,
        clock: Clock = system_clock,
        store: Optional[DocumentStore] = None,
        identity_provider: Optional[IdentityProvider] = None,
    ) -> "Container":
        if store is None:
            store = (
                InMemoryDocumentStore()
                if settings.store_backend == "memory"
                else EncryptedFileDocumentStore(settings.data_dir / "store")
            )
        repos = Repositories.over(store)
        audit = AuditLogger(settings.audit_log_path)
        ledger = AccessLedger(
            repos.access_requests, repos.patients, repos.doctor_profiles, audit, clock
        )
        guard = VisibilityGuard(ledger)
        repairer = ConsistencyRepairer(repos.users, repos.doctor_profiles, clock)
        identity_provider = identity_provider or InMemoryIdentityProvider()
        sessions = AdminPortalSessions(clock)
        return cls(
            settings=settings,
            clock=clock,
            repos=repos,
            audit=audit,
            verifier=TokenVerifier(settings.token_secret, clock),
            identity_provider=identity_provider,
            resolver=IdentityResolver.default(
                settings.admin_emails, repos.doctor_profiles, repos.users
            ),
            ledger=ledger,
            guard=guard,
            repairer=repairer,
            sessions=sessions,
            auth_service=AuthService(repos, repairer, clock),
            doctor_service=DoctorService(
                repos, ledger, guard, repairer, identity_provider, audit, clock
            ),
            patient_service=PatientService(repos, ledger, clock),
            admin_service=AdminService(repos, audit, clock),
            portal_service=AdminPortalService(
                repos,
                sessions,
                settings.portal_email,
                settings.portal_password,
                audit,
                clock,
            ),
        )


def get_container(request: Request) -> Container:
    container = request.app.state.container
    if container is None:
        container = Container.build(request.app.state.settings)
        request.app.state.container = container
    return container


security = HTTPBearer(auto_error=False)


async def get_current_actor(
    request: Request,
    _credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    container: Container = Depends(get_container),
) -> schemas.ActorIdentity:
    token = parse_bearer(request.headers.get("authorization"))
    identity = container.verifier.verify(token)
    actor = await container.resolver.resolve(identity.uid, identity.email)
    request.state.actor_uid = actor.uid
    structlog.contextvars.bind_contextvars(uid=actor.uid, role=actor.role.value)
    return actor


def require_roles(actor: schemas.ActorIdentity, roles: Sequence[schemas.UserRole]) -> None:
    if actor.role not in roles:
        raise ForbiddenError(
            "Insufficient role for this operation",
            {"role": actor.role.value, "allowed": [role.value for role in roles]},
        )


def get_portal_email(
    token: Optional[str] = Header(None, alias=PORTAL_TOKEN_HEADER),
    container: Container = Depends(get_container),
) -> str:
    return container.portal_service.validate(token)


def _error_body(request: Request, code: str, message: str, details=None) -> dict:
    return {
        "requestId": getattr(request.state, "request_id", None),
        "error": {"code": code, "message": message, "details": details},
    }


router = APIRouter()


@router.get("/health")
async def health() -> dict:
    return {"status": "ok", "version": __version__}


# -- auth ---------------------------------------------------------------------


@router.post("/auth/bootstrap", response_model=schemas.User)
async def bootstrap(
    payload: schemas.BootstrapRequest,
    actor: schemas.ActorIdentity = Depends(get_current_actor),
    container: Container = Depends(get_container),
) -> schemas.User:
    return await container.auth_service.bootstrap(actor, payload)


@router.get("/auth/session", response_model=schemas.User)
async def session(
    actor: schemas.ActorIdentity = Depends(get_current_actor),
    container: Container = Depends(get_container),
) -> schemas.User:
    return await container.auth_service.get_session(actor)


# -- doctor -------------------------------------------------------------------


@router.get("/doctor/profile", response_model=schemas.DoctorProfile)
async def get_doctor_profile(
    actor: schemas.ActorIdentity = Depends(get_current_actor),
    container: Container = Depends(get_container),
) -> schemas.DoctorProfile:
    require_roles(actor, [schemas.UserRole.doctor, schemas.UserRole.admin])
    profile = await container.doctor_service.get_profile(actor)
    if profile is None:
        raise NotFoundError("Doctor profile not found")
    return profile


@router.post("/doctor/profile", response_model=schemas.DoctorProfile, status_code=201)
async def apply_as_doctor(
    payload: schemas.DoctorProfileInput,
    actor: schemas.ActorIdentity = Depends(get_current_actor),
    container: Container = Depends(get_container),
) -> schemas.DoctorProfile:
    require_roles(actor, [schemas.UserRole.doctor, schemas.UserRole.patient])
    return await container.doctor_service.apply(actor, payload)


@router.put("/doctor/profile", response_model=schemas.DoctorProfile)
async def update_doctor_profile(
    payload: schemas.DoctorProfileInput,
    actor: schemas.ActorIdentity = Depends(get_current_actor),
    container: Container = Depends(get_container),
) -> schemas.DoctorProfile:
    return await container.doctor_service.update_profile(actor, payload)


@router.get("/doctor/patients/search", response_model=list[schemas.PatientSearchResult])
async def search_patients(
    q: str = Query(..., min_length=1, max_length=200),
    actor: schemas.ActorIdentity = Depends(get_current_actor),
    container: Container = Depends(get_container),
) -> list[schemas.PatientSearchResult]:
    return await container.doctor_service.search_patients(actor, q)


@router.post("/doctor/patients", response_model=schemas.DoctorPatientCreated, status_code=201)
async def create_patient(
    payload: schemas.DoctorPatientCreate,
    actor: schemas.ActorIdentity = Depends(get_current_actor),
    container: Container = Depends(get_container),
) -> schemas.DoctorPatientCreated:
    return await container.doctor_service.create_patient(actor, payload)


@router.get("/doctor/patients/visited", response_model=list[schemas.VisitedPatientSummary])
async def visited_patients(
    actor: schemas.ActorIdentity = Depends(get_current_actor),
    container: Container = Depends(get_container),
) -> list[schemas.VisitedPatientSummary]:
    return await container.doctor_service.list_visited_patients(actor)


@router.get("/doctor/patients/{identifier}", response_model=schemas.PatientLookup)
async def lookup_patient(
    identifier: str,
    actor: schemas.ActorIdentity = Depends(get_current_actor),
    container: Container = Depends(get_container),
) -> schemas.PatientLookup:
    return await container.doctor_service.lookup_patient(actor, identifier)


@router.get("/doctor/access-requests", response_model=list[schemas.AccessRequest])
async def doctor_access_requests(
    actor: schemas.ActorIdentity = Depends(get_current_actor),
    container: Container = Depends(get_container),
) -> list[schemas.AccessRequest]:
    return await container.doctor_service.list_access_requests(actor)


@router.post("/doctor/access-requests", response_model=schemas.AccessRequest, status_code=201)
async def create_access_request(
    payload: schemas.AccessRequestCreate,
    actor: schemas.ActorIdentity = Depends(get_current_actor),
    container: Container = Depends(get_container),
) -> schemas.AccessRequest:
    return await container.doctor_service.create_access_request(actor, payload)


@router.post("/doctor/visits", response_model=schemas.Visit, status_code=201)
async def create_visit(
    payload: schemas.VisitCreate,
    actor: schemas.ActorIdentity = Depends(get_current_actor),
    container: Container = Depends(get_container),
) -> schemas.Visit:
    return await container.doctor_service.create_visit(actor, payload)


@router.patch("/doctor/visits/{visit_id}", response_model=schemas.Visit)
async def update_visit(
    visit_id: str,
    payload: schemas.VisitUpdate,
    actor: schemas.ActorIdentity = Depends(get_current_actor),
    container: Container = Depends(get_container),
) -> schemas.Visit:
    return await container.doctor_service.update_visit(actor, visit_id, payload)


# -- patient ------------------------------------------------------------------


@router.get("/patient/profile", response_model=schemas.PatientProfile)
async def get_patient_profile(
    actor: schemas.ActorIdentity = Depends(get_current_actor),
    container: Container = Depends(get_container),
) -> schemas.PatientProfile:
    require_roles(actor, [schemas.UserRole.patient])
    return await container.patient_service.get_profile(actor)


@router.put("/patient/profile", response_model=schemas.PatientProfile)
async def update_patient_profile(
    payload: schemas.PatientProfileInput,
    actor: schemas.ActorIdentity = Depends(get_current_actor),
    container: Container = Depends(get_container),
) -> schemas.PatientProfile:
    require_roles(actor, [schemas.UserRole.patient])
    return await container.patient_service.update_profile(actor, payload)


@router.get("/patient/access-requests", response_model=list[schemas.AccessRequest])
async def patient_access_requests(
    actor: schemas.ActorIdentity = Depends(get_current_actor),
    container: Container = Depends(get_container),
) -> list[schemas.AccessRequest]:
    require_roles(actor, [schemas.UserRole.patient])
    return await container.patient_service.list_access_requests(actor)


@router.patch("/patient/access-requests/{request_id}", response_model=schemas.AccessRequest)
async def decide_access_request(
    request_id: str,
    payload: schemas.AccessDecision,
    actor: schemas.ActorIdentity = Depends(get_current_actor),
    container: Container = Depends(get_container),
) -> schemas.AccessRequest:
    require_roles(actor, [schemas.UserRole.patient])
    return await container.patient_service.decide_access_request(
        actor, request_id, payload.status
    )


@router.get("/patient/visits", response_model=list[schemas.Visit])
async def patient_visits(
    actor: schemas.ActorIdentity = Depends(get_current_actor),
    container: Container = Depends(get_container),
) -> list[schemas.Visit]:
    require_roles(actor, [schemas.UserRole.patient])
    return await container.patient_service.list_visits(actor)


# -- admin --------------------------------------------------------------------


@router.get("/admin/doctor-applications", response_model=list[schemas.DoctorProfile])
async def doctor_applications(
    actor: schemas.ActorIdentity = Depends(get_current_actor),
    container: Container = Depends(get_container),
) -> list[schemas.DoctorProfile]:
    require_roles(actor, [schemas.UserRole.admin])
    return await container.admin_service.list_doctor_applications()


@router.patch("/admin/doctor-applications/{uid}", response_model=schemas.DoctorProfile)
async def decide_doctor_application(
    uid: str,
    payload: schemas.DoctorDecision,
    actor: schemas.ActorIdentity = Depends(get_current_actor),
    container: Container = Depends(get_container),
) -> schemas.DoctorProfile:
    require_roles(actor, [schemas.UserRole.admin])
    return await container.admin_service.decide_doctor_application(actor, uid, payload.status)


# -- admin portal ---------------------------------------------------------------


@router.post("/admin-portal/login", response_model=schemas.PortalLoginResponse, status_code=201)
async def portal_login(
    payload: schemas.PortalLoginRequest,
    container: Container = Depends(get_container),
) -> schemas.PortalLoginResponse:
    return container.portal_service.login(payload.email, payload.password)


@router.post("/admin-portal/logout", status_code=204)
async def portal_logout(
    token: Optional[str] = Header(None, alias=PORTAL_TOKEN_HEADER),
    _email: str = Depends(get_portal_email),
    container: Container = Depends(get_container),
) -> Response:
    container.portal_service.logout(token or "")
    return Response(status_code=204)


@router.get("/admin-portal/live-data", response_model=schemas.LiveData)
async def portal_live_data(
    _email: str = Depends(get_portal_email),
    container: Container = Depends(get_container),
) -> schemas.LiveData:
    return await container.portal_service.live_data()


@router.patch("/admin-portal/doctor-verifications/{uid}", response_model=schemas.DoctorProfile)
async def portal_verify_doctor(
    uid: str,
    payload: schemas.DoctorDecision,
    email: str = Depends(get_portal_email),
    container: Container = Depends(get_container),
) -> schemas.DoctorProfile:
    return await container.portal_service.verify_doctor(email, uid, payload.status)


@router.patch("/admin-portal/patient-verifications/{uid}", response_model=schemas.User)
async def portal_verify_patient(
    uid: str,
    payload: schemas.PatientVerificationDecision,
    email: str = Depends(get_portal_email),
    container: Container = Depends(get_container),
) -> schemas.User:
    return await container.portal_service.verify_patient(email, uid, payload.status)


def create_app(
    settings: Optional[Settings] = None, container: Optional[Container] = None
) -> FastAPI:
    """Build the API. Without a container, collaborators are built on first request."""

    if settings is None:
        settings = container.settings if container is not None else get_settings()
    configure_logging(settings.log_level, settings.json_logs)

    app = FastAPI(
        title="MedLedger API",
        description=(
            "Multi-tenant clinical records with patient-controlled doctor access. "
            "Every doctor read or write of clinical data is gated by an explicit, "
            "audited grant from the patient."
        ),
        version=__version__,
    )
    app.state.settings = settings
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def bind_request_id(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id, method=request.method, path=request.url.path
        )
        body = await request.body()
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        url = request.url.path + (f"?{request.url.query}" if request.url.query else "")
        response.headers[SIGNATURE_HEADER] = sign_request(
            settings.request_signing_secret,
            request.method,
            url,
            request_id,
            getattr(request.state, "actor_uid", None),
            body.decode("utf-8", errors="replace"),
        )
        return response

    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, error: AppError) -> JSONResponse:
        message, details = error.message, error.details
        if error.status_code >= 500:
            logger.error("request_failed", code=error.code, error=error.message)
            if settings.is_production:
                message, details = "Internal server error", None
        else:
            logger.warning("request_rejected", code=error.code, error=error.message)
        return JSONResponse(
            status_code=error.status_code,
            content=jsonable_encoder(_error_body(request, error.code, message, details)),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(
        request: Request, error: RequestValidationError
    ) -> JSONResponse:
        logger.warning("request_invalid", errors=len(error.errors()))
        return JSONResponse(
            status_code=400,
            content=jsonable_encoder(
                _error_body(
                    request, "VALIDATION_ERROR", "Request validation failed", error.errors()
                )
            ),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, error: Exception) -> JSONResponse:
        logger.exception("request_crashed", error=str(error))
        message = "Internal server error" if settings.is_production else str(error)
        response = JSONResponse(
            status_code=500,
            content=_error_body(request, "INTERNAL_ERROR", message),
        )
        request_id = getattr(request.state, "request_id", None)
        if request_id:
            response.headers[REQUEST_ID_HEADER] = request_id
        return response

    app.include_router(router, prefix="/api")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("medledger.main:app", host="0.0.0.0", port=8000, log_config=None)
