"""Tests for credentials and the /auth endpoints."""
import jwt
import pytest

from relaychat.auth.service import (
    AuthenticationError,
    CredentialService,
    hash_password,
    verify_password,
)


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


def test_password_round_trip():
    encoded = hash_password("hunter22", iterations=1000)

    assert encoded.startswith("pbkdf2_sha256$1000$")
    assert verify_password("hunter22", encoded)
    assert not verify_password("hunter23", encoded)


def test_password_hashes_are_salted():
    assert hash_password("same", iterations=1000) != hash_password("same", iterations=1000)


@pytest.mark.parametrize("encoded", ["", "plain", "md5$1$aa$bb"])
def test_verify_rejects_unknown_encodings(encoded):
    assert verify_password("anything", encoded) is False


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


def test_token_resolves_to_identity(credentials):
    identity = credentials.verify_token(credentials.issue_token(3, "alice"))

    assert identity.userId == 3
    assert identity.displayName == "alice"


def test_missing_token(credentials):
    with pytest.raises(AuthenticationError, match="No token provided"):
        credentials.verify_token(None)


def test_expired_token():
    service = CredentialService(secret_key="k", expire_days=-1)

    with pytest.raises(AuthenticationError, match="Token expired"):
        service.verify_token(service.issue_token(1, "alice"))


def test_token_signed_with_other_key(credentials):
    forged = CredentialService(secret_key="other").issue_token(1, "alice")

    with pytest.raises(AuthenticationError, match="Invalid token"):
        credentials.verify_token(forged)


def test_token_without_identity_claims(credentials):
    token = jwt.encode({"sub": "alice"}, credentials.secret_key, algorithm="HS256")

    with pytest.raises(AuthenticationError, match="Invalid token"):
        credentials.verify_token(token)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


def test_register_returns_token(api_client, credentials):
    response = api_client.post(
        "/auth/register",
        json={"username": "alice", "phoneNumber": "555-0001", "password": "secret123"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "User registered successfully"
    assert body["user"] == {"id": body["user"]["id"], "username": "alice", "phoneNumber": "555-0001"}
    assert credentials.verify_token(body["token"]).userId == body["user"]["id"]


@pytest.mark.parametrize(
    "payload",
    [
        {"username": "alice", "phoneNumber": "555-0001"},
        {"username": "", "phoneNumber": "555-0001", "password": "secret123"},
        {"username": "alice", "phoneNumber": "555-0001", "password": "123"},
    ],
)
def test_register_rejects_bad_input(api_client, payload):
    response = api_client.post("/auth/register", json=payload)

    assert response.status_code == 400


def test_register_rejects_duplicates(api_client, register_user):
    register_user("alice")

    response = api_client.post(
        "/auth/register",
        json={"username": "alice", "phoneNumber": "555-7777", "password": "secret123"},
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Username or phone number already exists"


def test_login_by_username_and_phone(api_client, register_user, store):
    user_id, _ = register_user("alice")

    for identifier in ("alice", "555-alice"):
        response = api_client.post(
            "/auth/login", json={"username": identifier, "password": "secret123"}
        )
        assert response.status_code == 200
        assert response.json()["user"]["id"] == user_id


def test_login_wrong_password(api_client, register_user):
    register_user("alice")

    response = api_client.post("/auth/login", json={"username": "alice", "password": "nope"})

    assert response.status_code == 401


def test_login_missing_fields(api_client):
    assert api_client.post("/auth/login", json={"username": "alice"}).status_code == 400
