import hashlib
import json
import struct

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from fido2 import cbor

from den.tokens import b64url_encode
from den.verifier import AuthenticationResult, CeremonyFailed, PasskeyVerifier, WebAuthnVerifier

RP_ID = "den.example"
ORIGIN = "https://den.example"

FLAG_UP = 0x01
FLAG_UV = 0x04
FLAG_BE = 0x08
FLAG_BS = 0x10
FLAG_AT = 0x40


class SoftAuthenticator:
    """Minimal software authenticator producing ES256 credentials."""

    alg = -7

    def __init__(self, credential_id=b"\x01" * 16, flags=FLAG_UP | FLAG_UV):
        self.key = ec.generate_private_key(ec.SECP256R1())
        self.credential_id = credential_id
        self.flags = flags
        self.counter = 0

    def cose_key(self):
        n = self.key.public_key().public_numbers()
        return {1: 2, 3: -7, -1: 1, -2: n.x.to_bytes(32, "big"), -3: n.y.to_bytes(32, "big")}

    def sign(self, data):
        return self.key.sign(data, ec.ECDSA(hashes.SHA256()))

    def auth_data(self, rp_id=RP_ID, attested=False):
        flags = self.flags | (FLAG_AT if attested else 0)
        data = hashlib.sha256(rp_id.encode()).digest() + bytes([flags]) + struct.pack(">I", self.counter)
        if attested:
            data += (
                b"\x00" * 16
                + struct.pack(">H", len(self.credential_id))
                + self.credential_id
                + cbor.encode(self.cose_key())
            )
        return data

    @staticmethod
    def client_data(kind, options, origin):
        challenge = options["publicKey"]["challenge"]
        return json.dumps({"type": kind, "challenge": challenge, "origin": origin}).encode()

    def create(self, options, origin=ORIGIN, rp_id=RP_ID):
        attestation = cbor.encode({"fmt": "none", "attStmt": {}, "authData": self.auth_data(rp_id, attested=True)})
        cid = b64url_encode(self.credential_id)
        return {
            "id": cid,
            "rawId": cid,
            "type": "public-key",
            "clientExtensionResults": {},
            "response": {
                "clientDataJSON": b64url_encode(self.client_data("webauthn.create", options, origin)),
                "attestationObject": b64url_encode(attestation),
                "transports": ["internal"],
            },
        }

    def get(self, options, origin=ORIGIN, step=1):
        self.counter += step
        client_data = self.client_data("webauthn.get", options, origin)
        auth_data = self.auth_data()
        cid = b64url_encode(self.credential_id)
        return {
            "id": cid,
            "rawId": cid,
            "type": "public-key",
            "clientExtensionResults": {},
            "response": {
                "clientDataJSON": b64url_encode(client_data),
                "authenticatorData": b64url_encode(auth_data),
                "signature": b64url_encode(self.sign(auth_data + hashlib.sha256(client_data).digest())),
            },
        }


class SoftEd25519Authenticator(SoftAuthenticator):
    alg = -8

    def __init__(self, **kw):
        super().__init__(**kw)
        self.key = Ed25519PrivateKey.generate()

    def cose_key(self):
        raw = self.key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        return {1: 1, 3: -8, -1: 6, -2: raw}

    def sign(self, data):
        return self.key.sign(data)


@pytest.fixture
def verifier():
    return WebAuthnVerifier(rp_id=RP_ID, rp_name="den", origin=ORIGIN)


def _register(verifier, authenticator, exclude=()):
    options, state = verifier.begin_registration("2f9c6c1e-6f0a-4a53-9d4f-0b7f3c2a1d10", "alice", list(exclude))
    return verifier.finish_registration(authenticator.create(options), json.loads(json.dumps(state)))


def _authenticate(verifier, authenticator, blob, **kw):
    options, state = verifier.begin_authentication([blob])
    return verifier.finish_authentication(authenticator.get(options, **kw), json.loads(json.dumps(state)))


def test_registration_options_are_plain_json(verifier):
    options, state = verifier.begin_registration("u1", "alice", [])
    assert json.loads(json.dumps(options)) == options
    assert json.loads(json.dumps(state)) == state

    public_key = options["publicKey"]
    assert public_key["rp"]["id"] == RP_ID
    assert public_key["rp"]["name"] == "den"
    assert public_key["user"]["name"] == "alice"
    assert public_key["user"]["id"] == b64url_encode(b"u1")
    assert public_key["authenticatorSelection"]["residentKey"] == "required"
    assert public_key["challenge"] == state["server"]["challenge"]


@pytest.mark.parametrize("authenticator_cls", [SoftAuthenticator, SoftEd25519Authenticator])
def test_register_then_authenticate(verifier, authenticator_cls):
    authenticator = authenticator_cls()
    blob = _register(verifier, authenticator)
    assert blob["credential_id"] == b64url_encode(authenticator.credential_id)
    assert blob["alg"] == authenticator.alg
    assert blob["sign_count"] == 0
    assert blob["transports"] == ["internal"]
    assert json.loads(json.dumps(blob)) == blob

    options, _ = verifier.begin_authentication([blob])
    allowed = options["publicKey"]["allowCredentials"]
    assert [c["id"] for c in allowed] == [blob["credential_id"]]

    result = _authenticate(verifier, authenticator, blob)
    assert result == AuthenticationResult(
        credential_id=blob["credential_id"],
        sign_count=1,
        backed_up=False,
        user_verified=True,
    )

    assert verifier.apply_authentication(blob, result) is True
    assert blob["sign_count"] == 1
    assert verifier.apply_authentication(blob, result) is False


def test_registration_excludes_known_credentials(verifier):
    authenticator = SoftAuthenticator()
    blob = _register(verifier, authenticator)

    options, _ = verifier.begin_registration("u1", "alice", [blob])
    assert [c["id"] for c in options["publicKey"]["excludeCredentials"]] == [blob["credential_id"]]

    with pytest.raises(CeremonyFailed, match="already registered"):
        _register(verifier, authenticator, exclude=[blob])


def test_registration_rejects_wrong_origin(verifier):
    options, state = verifier.begin_registration("u1", "alice", [])
    with pytest.raises(CeremonyFailed):
        verifier.finish_registration(SoftAuthenticator().create(options, origin="https://lab.example"), state)


def test_registration_rejects_wrong_rp_id(verifier):
    options, state = verifier.begin_registration("u1", "alice", [])
    with pytest.raises(CeremonyFailed):
        verifier.finish_registration(SoftAuthenticator().create(options, rp_id="evil.example"), state)


def test_registration_rejects_other_challenge(verifier):
    options, _ = verifier.begin_registration("u1", "alice", [])
    _, other_state = verifier.begin_registration("u1", "alice", [])
    with pytest.raises(CeremonyFailed):
        verifier.finish_registration(SoftAuthenticator().create(options), other_state)


def test_registration_rejects_malformed_response(verifier):
    _, state = verifier.begin_registration("u1", "alice", [])
    with pytest.raises(CeremonyFailed):
        verifier.finish_registration({"id": "abc", "response": {}}, state)


def test_required_user_verification():
    strict = WebAuthnVerifier(rp_id=RP_ID, rp_name="den", origin=ORIGIN, user_verification="required")
    options, state = strict.begin_registration("u1", "alice", [])
    with pytest.raises(CeremonyFailed):
        strict.finish_registration(SoftAuthenticator(flags=FLAG_UP).create(options), state)


def test_authentication_rejects_bad_signature(verifier):
    authenticator = SoftAuthenticator()
    blob = _register(verifier, authenticator)
    options, state = verifier.begin_authentication([blob])

    response = authenticator.get(options)
    response["response"]["signature"] = b64url_encode(authenticator.sign(b"something else"))
    with pytest.raises(CeremonyFailed):
        verifier.finish_authentication(response, state)


def test_authentication_rejects_counter_regression(verifier):
    authenticator = SoftAuthenticator()
    blob = _register(verifier, authenticator)
    blob["sign_count"] = 5

    with pytest.raises(CeremonyFailed, match="counter"):
        _authenticate(verifier, authenticator, blob, step=3)


def test_authentication_rejects_unknown_credential(verifier):
    blob = _register(verifier, SoftAuthenticator())
    stranger = SoftAuthenticator(credential_id=b"\x02" * 16)
    with pytest.raises(CeremonyFailed):
        _authenticate(verifier, stranger, blob)


def test_authentication_rejects_wrong_origin(verifier):
    authenticator = SoftAuthenticator()
    blob = _register(verifier, authenticator)
    with pytest.raises(CeremonyFailed):
        _authenticate(verifier, authenticator, blob, origin="https://lab.example")


def test_authentication_rejects_malformed_response(verifier):
    blob = _register(verifier, SoftAuthenticator())
    _, state = verifier.begin_authentication([blob])
    with pytest.raises(CeremonyFailed):
        verifier.finish_authentication({"id": blob["credential_id"]}, state)


def test_backup_state_is_recorded(verifier):
    authenticator = SoftAuthenticator(flags=FLAG_UP | FLAG_BE | FLAG_BS)
    blob = _register(verifier, authenticator)
    assert blob["backup_eligible"] is True
    assert blob["backed_up"] is True

    result = _authenticate(verifier, authenticator, blob)
    assert result.backed_up is True
    assert result.user_verified is False
    assert verifier.apply_authentication({"credential_id": "other"}, result) is None


def test_verifier_is_a_passkey_verifier(verifier):
    assert isinstance(verifier, PasskeyVerifier)
