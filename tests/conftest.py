import asyncio
import secrets

import pytest
from fastapi.testclient import TestClient

from den.config import Settings
from den.main import create_app
from den.storage import Database
from den.verifier import AuthenticationResult, CeremonyFailed, PasskeyVerifier

CANONICAL = "https://den.example"
ALLOWED = ["lab.example", "https://other.example:8443"]


class FakeVerifier(PasskeyVerifier):
    """
    Stand-in for the WebAuthn engine.

    A "credential" response is {"challenge": <echoed>, "credential_id": ...};
    an assertion may also carry "sign_count".
    """

    def begin_registration(self, user_id, user_name, exclude_credentials):
        challenge = secrets.token_urlsafe(16)
        exclude = [c["credential_id"] for c in exclude_credentials]
        options = {"publicKey": {"challenge": challenge, "user": {"name": user_name}, "exclude": exclude}}
        return options, {"challenge": challenge, "exclude": exclude}

    def finish_registration(self, response, state):
        if response.get("challenge") != state["challenge"]:
            raise CeremonyFailed("challenge mismatch")
        if response.get("credential_id") in state["exclude"]:
            raise CeremonyFailed("credential already registered")
        return {"credential_id": response["credential_id"], "sign_count": 0, "backed_up": False}

    def begin_authentication(self, credentials):
        challenge = secrets.token_urlsafe(16)
        ids = [c["credential_id"] for c in credentials]
        return {"publicKey": {"challenge": challenge, "allow": ids}}, {"challenge": challenge, "credentials": ids}

    def finish_authentication(self, response, state):
        if response.get("challenge") != state["challenge"]:
            raise CeremonyFailed("challenge mismatch")
        if response.get("credential_id") not in state["credentials"]:
            raise CeremonyFailed("unknown credential")
        return AuthenticationResult(
            credential_id=response["credential_id"],
            sign_count=int(response.get("sign_count", 1)),
            backed_up=False,
            user_verified=True,
        )


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    monkeypatch.setenv("DEN_CONFIG_FILE", str(tmp_path / "absent-config.toml"))
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        ORIGIN=CANONICAL,
        RP_ID="den.example",
        ALLOWED_HOSTS=ALLOWED,
        DATABASE_PATH=tmp_path / "den.db",
    )


@pytest.fixture
def app(settings):
    return create_app(settings, verifier=FakeVerifier())


@pytest.fixture
def client(app):
    with TestClient(app, base_url=CANONICAL) as c:
        yield c


@pytest.fixture
def state(app, client):
    return app.state.den


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "store.db")
    asyncio.run(database.initialize())
    return database


def begin_registration(client, passkey_name="laptop", user_name="alice"):
    res = client.post(
        "/api/auth/register/begin",
        json={"passkey_name": passkey_name, "user_name": user_name},
    )
    assert res.status_code == 200, res.text
    body = res.json()
    return body["challenge_id"], body["options"]["publicKey"]["challenge"]


def register(client, credential_id="cred-1", passkey_name="laptop", user_name="alice"):
    challenge_id, challenge = begin_registration(client, passkey_name, user_name)
    return client.post(
        "/api/auth/register/complete",
        json={
            "challenge_id": challenge_id,
            "credential": {"challenge": challenge, "credential_id": credential_id},
        },
    )


def login(client, credential_id="cred-1", **begin):
    res = client.post("/api/auth/login/begin", json=begin)
    assert res.status_code == 200, res.text
    body = res.json()
    return client.post(
        "/api/auth/login/complete",
        json={
            "challenge_id": body["challenge_id"],
            "credential": {
                "challenge": body["options"]["publicKey"]["challenge"],
                "credential_id": credential_id,
            },
        },
    )
