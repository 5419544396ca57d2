"""Document stores, repositories, audit trail and identifier generation."""
from __future__ import annotations

import asyncio
import copy
import json
import secrets
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from hashlib import sha256
from pathlib import Path
from typing import Any, Optional

import structlog
from cryptography.fernet import Fernet, InvalidToken

from . import schemas
from .clock import Clock, system_clock
from .errors import IdentifierExhaustedError, StoreConfigurationError


logger = structlog.get_logger(__name__)

USERS = "users"
DOCTOR_PROFILES = "doctor_profiles"
PATIENTS = "patients"
ACCESS_REQUESTS = "access_requests"
VISITS = "visits"

PATIENT_IDENTIFIER_ATTEMPTS = 15


def _ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def _newest_first(items: list, attribute: str = "created_at") -> list:
    return sorted(items, key=lambda item: getattr(item, attribute), reverse=True)


class DocumentStore(ABC):
    """Key-by-identifier document store. ``put`` replaces the whole document."""

    @abstractmethod
    async def get(self, collection: str, key: str) -> Optional[dict]:
        ...

    @abstractmethod
    async def put(self, collection: str, key: str, document: dict) -> None:
        ...

    @abstractmethod
    async def delete(self, collection: str, key: str) -> None:
        ...

    @abstractmethod
    async def all(self, collection: str) -> list[dict]:
        ...

    async def query(self, collection: str, **equals: Any) -> list[dict]:
        return [
            document
            for document in await self.all(collection)
            if all(document.get(name) == value for name, value in equals.items())
        ]


class InMemoryDocumentStore(DocumentStore):
    """Process-local store used by tests and the ``memory`` backend."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict]] = {}
        self._lock = threading.Lock()

    async def get(self, collection: str, key: str) -> Optional[dict]:
        with self._lock:
            document = self._collections.get(collection, {}).get(key)
            return copy.deepcopy(document) if document is not None else None

    async def put(self, collection: str, key: str, document: dict) -> None:
        with self._lock:
            self._collections.setdefault(collection, {})[key] = copy.deepcopy(document)

    async def delete(self, collection: str, key: str) -> None:
        with self._lock:
            self._collections.get(collection, {}).pop(key, None)

    async def all(self, collection: str) -> list[dict]:
        with self._lock:
            return [
                copy.deepcopy(document)
                for document in self._collections.get(collection, {}).values()
            ]


class Keyring:
    """Manages per-collection encryption keys."""

    def __init__(self, key_path: Path) -> None:
        self.key_path = key_path
        _ensure_directory(self.key_path.parent)
        if not self.key_path.exists():
            self.key_path.write_text(json.dumps({}))

    def _load(self) -> dict:
        try:
            return json.loads(self.key_path.read_text())
        except (OSError, json.JSONDecodeError) as error:
            raise StoreConfigurationError(
                f"Keyring at {self.key_path} is unreadable"
            ) from error

    def _persist(self, keys: dict) -> None:
        self.key_path.write_text(json.dumps(keys))

    def get_key(self, name: str) -> bytes:
        keys = self._load()
        key = keys.get(name)
        if key is None:
            key = Fernet.generate_key().decode("utf-8")
            keys[name] = key
            self._persist(keys)
        return key.encode("utf-8")


class EncryptedFileDocumentStore(DocumentStore):
    """One Fernet-encrypted JSON file per collection."""

    def __init__(self, base_path: Path, keyring: Optional[Keyring] = None) -> None:
        self.base_path = base_path
        self.keyring = keyring or Keyring(base_path / "keys.json")
        self._lock = threading.Lock()

    def _collection_file(self, collection: str) -> Path:
        return self.base_path / f"{collection}.json.enc"

    def _fernet(self, collection: str) -> Fernet:
        try:
            return Fernet(self.keyring.get_key(collection))
        except ValueError as error:
            raise StoreConfigurationError(
                f"Encryption key for '{collection}' is malformed"
            ) from error

    def _load(self, collection: str) -> dict[str, dict]:
        encrypted_file = self._collection_file(collection)
        if not encrypted_file.exists():
            return {}
        try:
            decrypted = self._fernet(collection).decrypt(encrypted_file.read_bytes())
        except InvalidToken as error:
            raise StoreConfigurationError(
                f"Collection '{collection}' cannot be decrypted with the configured key"
            ) from error
        return json.loads(decrypted.decode("utf-8"))

    def _store(self, collection: str, documents: dict[str, dict]) -> None:
        _ensure_directory(self.base_path)
        payload = json.dumps(documents).encode("utf-8")
        self._collection_file(collection).write_bytes(
            self._fernet(collection).encrypt(payload)
        )

    def _get(self, collection: str, key: str) -> Optional[dict]:
        with self._lock:
            return self._load(collection).get(key)

    def _put(self, collection: str, key: str, document: dict) -> None:
        with self._lock:
            documents = self._load(collection)
            documents[key] = document
            self._store(collection, documents)

    def _delete(self, collection: str, key: str) -> None:
        with self._lock:
            documents = self._load(collection)
            if documents.pop(key, None) is not None:
                self._store(collection, documents)

    def _all(self, collection: str) -> list[dict]:
        with self._lock:
            return list(self._load(collection).values())

    async def get(self, collection: str, key: str) -> Optional[dict]:
        return await asyncio.to_thread(self._get, collection, key)

    async def put(self, collection: str, key: str, document: dict) -> None:
        await asyncio.to_thread(self._put, collection, key, document)

    async def delete(self, collection: str, key: str) -> None:
        await asyncio.to_thread(self._delete, collection, key)

    async def all(self, collection: str) -> list[dict]:
        return await asyncio.to_thread(self._all, collection)


class UsersRepository:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def find_by_uid(self, uid: str) -> Optional[schemas.User]:
        raw = await self.store.get(USERS, uid)
        return schemas.User.model_validate(raw) if raw else None

    async def find_by_email(self, email: str) -> Optional[schemas.User]:
        matches = await self.store.query(USERS, email=email.lower())
        return schemas.User.model_validate(matches[0]) if matches else None

    async def find_by_phone(self, phone: str) -> Optional[schemas.User]:
        matches = await self.store.query(USERS, phone=phone)
        return schemas.User.model_validate(matches[0]) if matches else None

    async def upsert(self, user: schemas.User) -> schemas.User:
        await self.store.put(USERS, user.uid, user.model_dump(mode="json"))
        return user

    async def list_all(self) -> list[schemas.User]:
        items = await self.store.all(USERS)
        return _newest_first([schemas.User.model_validate(item) for item in items])


def _normalize_doctor_profile(raw: dict) -> schemas.DoctorProfile:
    record = dict(raw)
    legacy = record.pop("specialization", None)
    specializations = record.get("specializations")
    if specializations is None:
        specializations = legacy
    if isinstance(specializations, str):
        specializations = [specializations]
    record["specializations"] = [
        item
        for item in (specializations or [])
        if isinstance(item, str) and item.strip()
    ]
    return schemas.DoctorProfile.model_validate(record)


class DoctorProfilesRepository:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def find_by_uid(self, uid: str) -> Optional[schemas.DoctorProfile]:
        raw = await self.store.get(DOCTOR_PROFILES, uid)
        return _normalize_doctor_profile(raw) if raw else None

    async def upsert(self, profile: schemas.DoctorProfile) -> schemas.DoctorProfile:
        await self.store.put(DOCTOR_PROFILES, profile.uid, profile.model_dump(mode="json"))
        return profile

    async def list_by_approval_status(
        self, status: schemas.DoctorApprovalStatus
    ) -> list[schemas.DoctorProfile]:
        matches = await self.store.query(DOCTOR_PROFILES, approval_status=status.value)
        return _newest_first([_normalize_doctor_profile(item) for item in matches])

    async def list_all(self) -> list[schemas.DoctorProfile]:
        items = await self.store.all(DOCTOR_PROFILES)
        return _newest_first([_normalize_doctor_profile(item) for item in items])


class PatientsRepository:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def find_by_owner_uid(self, owner_uid: str) -> Optional[schemas.PatientProfile]:
        raw = await self.store.get(PATIENTS, owner_uid)
        return schemas.PatientProfile.model_validate(raw) if raw else None

    async def find_by_identifier(self, identifier: str) -> Optional[schemas.PatientProfile]:
        matches = await self.store.query(PATIENTS, global_patient_identifier=identifier)
        return schemas.PatientProfile.model_validate(matches[0]) if matches else None

    async def upsert(self, profile: schemas.PatientProfile) -> schemas.PatientProfile:
        await self.store.put(PATIENTS, profile.owner_uid, profile.model_dump(mode="json"))
        return profile

    async def list_all(self) -> list[schemas.PatientProfile]:
        items = await self.store.all(PATIENTS)
        return _newest_first([schemas.PatientProfile.model_validate(item) for item in items])


class AccessRequestsRepository:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def create(self, request: schemas.AccessRequest) -> schemas.AccessRequest:
        await self.store.put(ACCESS_REQUESTS, request.id, request.model_dump(mode="json"))
        return request

    async def update(self, request: schemas.AccessRequest) -> schemas.AccessRequest:
        await self.store.put(ACCESS_REQUESTS, request.id, request.model_dump(mode="json"))
        return request

    async def find_by_id(self, request_id: str) -> Optional[schemas.AccessRequest]:
        raw = await self.store.get(ACCESS_REQUESTS, request_id)
        return schemas.AccessRequest.model_validate(raw) if raw else None

    async def list_for_patient(self, patient_uid: str) -> list[schemas.AccessRequest]:
        matches = await self.store.query(ACCESS_REQUESTS, patient_uid=patient_uid)
        return _newest_first([schemas.AccessRequest.model_validate(item) for item in matches])

    async def list_for_doctor(self, doctor_uid: str) -> list[schemas.AccessRequest]:
        matches = await self.store.query(ACCESS_REQUESTS, doctor_uid=doctor_uid)
        return _newest_first([schemas.AccessRequest.model_validate(item) for item in matches])

    async def list_for_pair(
        self, doctor_uid: str, patient_uid: str
    ) -> list[schemas.AccessRequest]:
        matches = await self.store.query(
            ACCESS_REQUESTS, doctor_uid=doctor_uid, patient_uid=patient_uid
        )
        return [schemas.AccessRequest.model_validate(item) for item in matches]


class VisitsRepository:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def create(self, visit: schemas.Visit) -> schemas.Visit:
        await self.store.put(VISITS, visit.id, visit.model_dump(mode="json"))
        return visit

    async def update(self, visit: schemas.Visit) -> schemas.Visit:
        await self.store.put(VISITS, visit.id, visit.model_dump(mode="json"))
        return visit

    async def find_by_id(self, visit_id: str) -> Optional[schemas.Visit]:
        raw = await self.store.get(VISITS, visit_id)
        return schemas.Visit.model_validate(raw) if raw else None

    async def list_by_patient(self, patient_uid: str) -> list[schemas.Visit]:
        matches = await self.store.query(VISITS, patient_uid=patient_uid)
        return _newest_first([schemas.Visit.model_validate(item) for item in matches])

    async def list_by_doctor(self, doctor_uid: str) -> list[schemas.Visit]:
        matches = await self.store.query(VISITS, doctor_uid=doctor_uid)
        return _newest_first([schemas.Visit.model_validate(item) for item in matches])


@dataclass
class Repositories:
    users: UsersRepository
    doctor_profiles: DoctorProfilesRepository
    patients: PatientsRepository
    access_requests: AccessRequestsRepository
    visits: VisitsRepository

    @classmethod
    def over(cls, store: DocumentStore) -> "Repositories":
        return cls(
            users=UsersRepository(store),
            doctor_profiles=DoctorProfilesRepository(store),
            patients=PatientsRepository(store),
            access_requests=AccessRequestsRepository(store),
            visits=VisitsRepository(store),
        )


def _random_segment(length: int = 8) -> str:
    return secrets.token_hex(length // 2 + 1)[:length].upper()


async def generate_patient_identifier(
    patients: PatientsRepository, clock: Clock = system_clock
) -> str:
    """Return an unused ``MLP-<year>-<8 hex>`` identifier.

    Raises ``IdentifierExhaustedError`` after 15 colliding attempts.
    """

    for _ in range(PATIENT_IDENTIFIER_ATTEMPTS):
        candidate = f"MLP-{clock().year:04d}-{_random_segment()}"
        if await patients.find_by_identifier(candidate) is None:
            return candidate
    logger.error("patient_identifier_exhausted", attempts=PATIENT_IDENTIFIER_ATTEMPTS)
    raise IdentifierExhaustedError("Unable to generate unique patient identifier.")


def stable_hash(*components: str) -> str:
    """Create a stable, reproducible hash for audit payloads."""

    payload = "|".join(components)
    return sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class AuditLogger:
    """Append-only audit trail with hash chaining."""

    audit_path: Path
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _last_hash: Optional[str] = field(default=None, repr=False)

    def _read_last_hash(self) -> str:
        if not self.audit_path.exists():
            return ""
        with self.audit_path.open("rb") as handle:
            *_, last_line = handle.read().splitlines() or [b""]
        if not last_line:
            return ""
        return json.loads(last_line.decode("utf-8")).get("payload_hash", "")

    def append(self, event: schemas.AuditEvent) -> None:
        _ensure_directory(self.audit_path.parent)
        with self._lock:
            # The tail of the file is read once; later appends chain from memory.
            if self._last_hash is None:
                self._last_hash = self._read_last_hash()
            chained_hash = sha256(
                f"{event.payload_hash}{self._last_hash}".encode("utf-8")
            ).hexdigest()
            payload = event.model_dump()
            payload["payload_hash"] = chained_hash
            with self.audit_path.open("ab") as handle:
                handle.write(json.dumps(payload, default=str).encode("utf-8"))
                handle.write(b"\n")
            self._last_hash = chained_hash

    def record(
        self,
        *,
        actor: str,
        action: str,
        patient_id: Optional[str],
        timestamp: str,
        subject: str = "",
    ) -> None:
        self.append(
            schemas.AuditEvent(
                id=secrets.token_hex(16),
                actor=actor,
                action=action,
                patient_id=patient_id,
                timestamp=timestamp,
                payload_hash=stable_hash(actor, action, patient_id or "", subject, timestamp),
            )
        )

    def read(self) -> list[dict]:
        if not self.audit_path.exists():
            return []
        return [
            json.loads(line)
            for line in self.audit_path.read_text().splitlines()
            if line.strip()
        ]
