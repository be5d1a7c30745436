"""
den/verifier.py

WebAuthn ceremony capability.

The rest of the service treats passkey cryptography as a black box with four
operations (begin/finish registration, begin/finish authentication). Whatever
the implementation keeps between "begin" and "finish" is returned as a plain
JSON-serializable dict (the ceremony *state*), which the ceremony store
persists opaquely. Registered credentials are likewise opaque dicts (the
credential *blob*) stored in the passkey table.

Blob contract shared by all implementations:
  - credential_id : base64url credential id
  - sign_count    : last seen signature counter
  - backed_up     : last seen backup-state flag

WebAuthnVerifier adapts python-fido2's Fido2Server to that contract. The
library does the relying-party checks (clientData, rpIdHash, flags,
attestation object, assertion signature); this module only adds what the
library leaves to the caller: the exact-origin rule, excluded credentials on
registration, and signature counter regression.
"""

import abc
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from fido2.attestation.base import InvalidAttestation
from fido2.server import Fido2Server
from fido2.webauthn import (
    AttestedCredentialData,
    AuthenticationResponse,
    AuthenticatorData,
    PublicKeyCredentialRpEntity,
    PublicKeyCredentialUserEntity,
    RegistrationResponse,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from .tokens import b64url_decode, b64url_encode


class CeremonyFailed(Exception):
    """The client's ceremony response did not verify."""


@dataclass(frozen=True)
class AuthenticationResult:
    credential_id: str
    sign_count: int
    backed_up: bool
    user_verified: bool


class PasskeyVerifier(abc.ABC):
    """Capability interface for the WebAuthn ceremony engine."""

    @abc.abstractmethod
    def begin_registration(
        self,
        user_id: str,
        user_name: str,
        exclude_credentials: List[Dict[str, Any]],
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Return (client options, ceremony state)."""

    @abc.abstractmethod
    def finish_registration(self, response: Dict[str, Any], state: Dict[str, Any]) -> Dict[str, Any]:
        """Verify an attestation response; return the credential blob to store."""

    @abc.abstractmethod
    def begin_authentication(
        self, credentials: List[Dict[str, Any]]
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Return (client options, ceremony state) allowing the given credentials."""

    @abc.abstractmethod
    def finish_authentication(self, response: Dict[str, Any], state: Dict[str, Any]) -> AuthenticationResult:
        """Verify an assertion response."""

    def apply_authentication(self, credential: Dict[str, Any], result: AuthenticationResult) -> Optional[bool]:
        """
        Fold a verified assertion into a stored credential blob.

        Returns None if the blob is a different credential, True if the blob
        changed (counter / backup state), False if only last-use needs recording.
        """
        if credential.get("credential_id") != result.credential_id:
            return None

        changed = False
        if result.sign_count > int(credential.get("sign_count", 0)):
            credential["sign_count"] = result.sign_count
            changed = True
        if bool(credential.get("backed_up", False)) != result.backed_up:
            credential["backed_up"] = result.backed_up
            changed = True
        return changed


# -----------------------------------------------------------------------------
# JSON helpers
# -----------------------------------------------------------------------------
def _json_safe(value):
    """fido2 options/state objects -> plain JSON types (bytes as base64url)."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (bytes, bytearray)):
        return b64url_encode(bytes(value))
    if isinstance(value, Mapping):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


def _user_handle(user_id: str) -> bytes:
    return user_id.encode("utf-8")


def _credential_data(blob: Mapping[str, Any]) -> AttestedCredentialData:
    return AttestedCredentialData(b64url_decode(blob["credential_data"]))


class WebAuthnVerifier(PasskeyVerifier):
    def __init__(
        self,
        rp_id: str,
        rp_name: str,
        origin: str,
        user_verification: str = "preferred",
        timeout_ms: int = 300_000,
    ):
        self.origin = origin
        self.user_verification = UserVerificationRequirement(user_verification)
        self.server = Fido2Server(
            PublicKeyCredentialRpEntity(name=rp_name, id=rp_id),
            verify_origin=self._verify_origin,
        )
        self.server.timeout = int(timeout_ms)

    def _verify_origin(self, origin: str) -> bool:
        # ceremonies only ever run on the canonical origin
        return origin == self.origin

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------
    def begin_registration(self, user_id, user_name, exclude_credentials):
        exclude = [c["credential_id"] for c in exclude_credentials]
        options, server_state = self.server.register_begin(
            PublicKeyCredentialUserEntity(
                name=user_name,
                id=_user_handle(user_id),
                display_name=user_name,
            ),
            [_credential_data(c) for c in exclude_credentials],
            resident_key_requirement=ResidentKeyRequirement.REQUIRED,
            user_verification=self.user_verification,
        )
        state = {"server": _json_safe(server_state), "exclude": exclude}
        return _json_safe(dict(options)), state

    def finish_registration(self, response, state):
        try:
            parsed = RegistrationResponse.from_dict(response)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise CeremonyFailed("malformed registration response") from e

        try:
            auth_data = self.server.register_complete(state["server"], parsed)
        except (ValueError, InvalidAttestation) as e:
            raise CeremonyFailed(f"registration did not verify: {e}") from e

        credential_data = auth_data.credential_data
        credential_id = b64url_encode(credential_data.credential_id)
        if credential_id in state.get("exclude", []):
            raise CeremonyFailed("credential already registered")

        transports = (response.get("response") or {}).get("transports") or []
        return {
            "credential_id": credential_id,
            "credential_data": b64url_encode(bytes(credential_data)),
            "alg": credential_data.public_key.get(3),
            "sign_count": auth_data.counter,
            "backup_eligible": bool(auth_data.flags & AuthenticatorData.FLAG.BE),
            "backed_up": bool(auth_data.flags & AuthenticatorData.FLAG.BS),
            "transports": list(transports),
            "aaguid": bytes(credential_data.aaguid).hex(),
        }

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------
    def begin_authentication(self, credentials):
        options, server_state = self.server.authenticate_begin(
            [_credential_data(c) for c in credentials],
            user_verification=self.user_verification,
        )
        state = {
            "server": _json_safe(server_state),
            "credentials": [
                {k: c[k] for k in ("credential_id", "credential_data", "sign_count")} for c in credentials
            ],
        }
        return _json_safe(dict(options)), state

    def finish_authentication(self, response, state):
        try:
            parsed = AuthenticationResponse.from_dict(response)
            known = [_credential_data(c) for c in state["credentials"]]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise CeremonyFailed("malformed authentication response") from e

        try:
            used = self.server.authenticate_complete(state["server"], known, parsed)
        except ValueError as e:
            raise CeremonyFailed(f"assertion did not verify: {e}") from e

        credential_id = b64url_encode(used.credential_id)
        stored = next(c for c in state["credentials"] if c["credential_id"] == credential_id)

        auth_data = parsed.response.authenticator_data
        new_count = auth_data.counter
        stored_count = int(stored.get("sign_count", 0))
        if new_count != 0 or stored_count != 0:
            if new_count <= stored_count:
                raise CeremonyFailed("signature counter regression")

        return AuthenticationResult(
            credential_id=credential_id,
            sign_count=new_count,
            backed_up=bool(auth_data.flags & AuthenticatorData.FLAG.BS),
            user_verified=bool(auth_data.flags & AuthenticatorData.FLAG.UV),
        )
