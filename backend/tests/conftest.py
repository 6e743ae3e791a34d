"""Shared fixtures for the relaychat test suite."""
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from relaychat.auth.service import CredentialService
from relaychat.chat.gateway import SessionGateway, build_gateway, set_gateway
from relaychat.chat.models import Connection, ConnectionState, Identity
from relaychat.config import AppSettings, set_config
from relaychat.main import app
from relaychat.storage import ChatStore

TEST_SECRET = "test-secret"


class FakeTransport:
    """Records every frame pushed to it instead of writing to a socket."""

    def __init__(self, log: Optional[List[str]] = None) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.closed_with: Optional[int] = None
        self.fail = False
        self._log = log

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)
        if self._log is not None:
            self._log.append(f"send:{data['type']}")

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code

    def of_type(self, message_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m["type"] == message_type]

    def types(self) -> List[str]:
        return [m["type"] for m in self.sent]

    def clear(self) -> None:
        self.sent.clear()


@pytest.fixture(autouse=True)
def settings():
    """Default settings with a fixed signing key."""
    config = AppSettings()
    config.secrets.jwt.secret_key = TEST_SECRET
    set_config(config)
    yield config
    set_config(None)


@pytest.fixture(autouse=True)
def store():
    """A fresh in-memory store installed as the process-wide instance."""
    ChatStore.reset_instance()
    instance = ChatStore.get_instance(db_path=":memory:")
    yield instance
    set_gateway(None)
    ChatStore.reset_instance()


@pytest.fixture
def credentials() -> CredentialService:
    return CredentialService(secret_key=TEST_SECRET)


@pytest.fixture
def gateway(settings, store, credentials) -> SessionGateway:
    """A fully wired session core over the in-memory store."""
    return build_gateway(settings, store, credentials)


@pytest.fixture
def connect(gateway, store):
    """Factory: create (or reuse) a user and bring a fake connection to ACTIVE."""

    async def _connect(username: str, transport: Optional[FakeTransport] = None) -> Connection:
        user = await store.find_user_by_username_or_phone(username)
        if user is None:
            user = await store.create_user(username, f"555-{username}", "x")
        connection = Connection(
            identity=Identity(userId=user.id, displayName=user.username),
            transport=transport or FakeTransport(),
        )
        connection.state = ConnectionState.AUTHENTICATED
        await gateway.activate(connection)
        return connection

    return _connect


@pytest.fixture
def api_client(store):
    """TestClient with the app lifespan running against the in-memory store."""
    with TestClient(app) as client:
        yield client


@pytest.fixture
def register_user(api_client):
    """Factory: register an account over HTTP and return (user_id, token)."""

    def _register(username: str, password: str = "secret123"):
        response = api_client.post(
            "/auth/register",
            json={
                "username": username,
                "phoneNumber": f"555-{username}",
                "password": password,
            },
        )
        assert response.status_code == 200, response.text
        body = response.json()
        return body["user"]["id"], body["token"]

    return _register
