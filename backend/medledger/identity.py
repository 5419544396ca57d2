"""Effective role and approval resolution for an authenticated caller.

Three sources can claim an account: the admin allow-list, a DoctorProfile and
the User record. They are consulted as an ordered chain of steps; the first
step that recognises the caller decides the whole identity.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional, Sequence

import structlog

from .errors import AuthInvalidError, InternalError, StoreConfigurationError
from .schemas import ActorIdentity, DoctorApprovalStatus, UserRole
from .storage import DoctorProfilesRepository, UsersRepository


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ResolutionContext:
    uid: str
    email: str


ResolverStep = Callable[[ResolutionContext], Awaitable[Optional[ActorIdentity]]]


def allow_list_step(admin_emails: Iterable[str]) -> ResolverStep:
    allowed = frozenset(email.strip().lower() for email in admin_emails)

    async def resolve_admin(context: ResolutionContext) -> Optional[ActorIdentity]:
        if context.email not in allowed:
            return None
        return ActorIdentity(
            uid=context.uid,
            email=context.email,
            role=UserRole.admin,
            hospital_id=None,
            doctor_approval_status=DoctorApprovalStatus.not_applicable,
        )

    return resolve_admin


def doctor_profile_step(doctor_profiles: DoctorProfilesRepository) -> ResolverStep:
    async def resolve_doctor(context: ResolutionContext) -> Optional[ActorIdentity]:
        profile = await doctor_profiles.find_by_uid(context.uid)
        if profile is None:
            return None
        return ActorIdentity(
            uid=context.uid,
            email=context.email,
            role=UserRole.doctor,
            hospital_id=profile.hospital_id or None,
            doctor_approval_status=profile.approval_status,
        )

    return resolve_doctor


def user_record_step(users: UsersRepository) -> ResolverStep:
    async def resolve_user(context: ResolutionContext) -> Optional[ActorIdentity]:
        user = await users.find_by_uid(context.uid)
        if user is None:
            # First login before bootstrap.
            return ActorIdentity(uid=context.uid, email=context.email, role=UserRole.patient)
        approval = user.doctor_approval_status
        if user.role == UserRole.doctor and approval not in (
            DoctorApprovalStatus.pending,
            DoctorApprovalStatus.denied,
        ):
            # Without a DoctorProfile nothing can vouch for an approval.
            approval = DoctorApprovalStatus.pending
        return ActorIdentity(
            uid=context.uid,
            email=context.email,
            role=user.role,
            hospital_id=user.hospital_id,
            doctor_approval_status=approval,
        )

    return resolve_user


class IdentityResolver:
    def __init__(self, steps: Sequence[ResolverStep]) -> None:
        if not steps:
            raise ValueError("IdentityResolver needs at least one step")
        self.steps = list(steps)

    @classmethod
    def default(
        cls,
        admin_emails: Iterable[str],
        doctor_profiles: DoctorProfilesRepository,
        users: UsersRepository,
    ) -> "IdentityResolver":
        return cls(
            [
                allow_list_step(admin_emails),
                doctor_profile_step(doctor_profiles),
                user_record_step(users),
            ]
        )

    async def resolve(self, uid: str, email: str) -> ActorIdentity:
        """Compute the caller's role, approval status and hospital.

        Pure read: nothing is repaired or persisted here.
        """

        if not uid:
            raise AuthInvalidError("Authenticated identity has no uid")
        if not email:
            raise AuthInvalidError("Authenticated user has no email")
        context = ResolutionContext(uid=uid, email=email.strip().lower())
        try:
            for step in self.steps:
                identity = await step(context)
                if identity is not None:
                    return identity
        except StoreConfigurationError as error:
            logger.error("identity_store_misconfigured", uid=uid, error=str(error))
            raise InternalError(
                "Identity store access failed because its credentials or keys are "
                "missing or invalid."
            ) from error
        raise AuthInvalidError("Account could not be resolved")
