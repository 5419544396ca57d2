"""Shared fixtures: an in-memory container driven by a controllable clock."""

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from medledger.config import Settings
from medledger.main import Container, create_app
from medledger.storage import InMemoryDocumentStore

from tests.helpers import ADMIN_EMAIL, FrozenClock


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 6, 1, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        environment="test",
        data_dir=tmp_path,
        store_backend="memory",
        admin_emails=frozenset({ADMIN_EMAIL}),
        token_secret="test-signing-secret-0123",
        log_level="WARNING",
    )


@pytest.fixture
def container(settings, clock):
    return Container.build(settings, clock=clock, store=InMemoryDocumentStore())


@pytest.fixture
def repos(container):
    return container.repos


@pytest.fixture
def client(settings, container):
    app = create_app(settings, container)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(container):
    def build(uid: str, email: str) -> dict:
        return {"Authorization": f"Bearer {container.verifier.issue(uid, email)}"}

    return build
