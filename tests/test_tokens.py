import pytest

from den import tokens
from den.tokens import (
    TokenError,
    TokenExpired,
    issue_handoff_token,
    issue_session_token,
    sign_token,
    verify_handoff_token,
    verify_session_token,
)

SECRET = b"s" * 64
OTHER_SECRET = b"o" * 64
CANONICAL = "https://den.example"
ALLOWED = frozenset({"den.example", "lab.example"})


def _handoff(audience="https://lab.example", **kw):
    return issue_handoff_token(
        SECRET,
        issuer=kw.pop("issuer", CANONICAL),
        audience=audience,
        user_id="user-1",
        path=kw.pop("path", "/dashboard"),
        **kw,
    )


def test_session_token_round_trip():
    token = issue_session_token(SECRET, "user-1", ttl_seconds=60)
    assert token.startswith("session.")
    assert verify_session_token(SECRET, token) == "user-1"


def test_session_token_rejected_under_other_secret():
    token = issue_session_token(SECRET, "user-1")
    with pytest.raises(TokenError):
        verify_session_token(OTHER_SECRET, token)


def test_tampered_payload_rejected():
    kind, payload, sig = issue_session_token(SECRET, "user-1").split(".")
    forged = sign_token(OTHER_SECRET, "session", {"sub": "admin", "iat": 0, "exp": 2**40})
    _, forged_payload, _ = forged.split(".")
    with pytest.raises(TokenError):
        verify_session_token(SECRET, f"{kind}.{forged_payload}.{sig}")


@pytest.mark.parametrize("garbage", ["", "session", "session..", "a.b.c.d", "session.!!!.???"])
def test_malformed_tokens_rejected(garbage):
    with pytest.raises(TokenError):
        verify_session_token(SECRET, garbage)


def test_session_token_expires(monkeypatch):
    monkeypatch.setattr(tokens, "_now_epoch", lambda: 1_000)
    token = issue_session_token(SECRET, "user-1", ttl_seconds=60)

    monkeypatch.setattr(tokens, "_now_epoch", lambda: 1_059)
    assert verify_session_token(SECRET, token) == "user-1"

    monkeypatch.setattr(tokens, "_now_epoch", lambda: 1_060)
    with pytest.raises(TokenExpired):
        verify_session_token(SECRET, token)


def test_handoff_token_is_not_a_session_token():
    token = _handoff()
    with pytest.raises(TokenError):
        verify_session_token(SECRET, token)

    # relabelled kind fails the signature, since each kind has its own key
    _, payload, sig = token.split(".")
    with pytest.raises(TokenError):
        verify_session_token(SECRET, f"session.{payload}.{sig}")


def test_session_token_is_not_a_handoff_token():
    token = issue_session_token(SECRET, "user-1")
    with pytest.raises(TokenError):
        verify_handoff_token(SECRET, token, CANONICAL, "https://lab.example", ALLOWED)


def test_handoff_token_verifies_on_its_audience():
    claims = verify_handoff_token(SECRET, _handoff(), CANONICAL, "https://lab.example", ALLOWED)
    assert claims.sub == "user-1"
    assert claims.path == "/dashboard"
    assert claims.aud == "https://lab.example"
    assert claims.exp - claims.iat == 60


def test_handoff_audience_mismatch():
    with pytest.raises(TokenError, match="audience"):
        verify_handoff_token(SECRET, _handoff(), CANONICAL, "https://den.example", ALLOWED)


def test_handoff_issuer_mismatch():
    token = _handoff(issuer="https://evil.example")
    with pytest.raises(TokenError, match="issuer"):
        verify_handoff_token(SECRET, token, CANONICAL, "https://lab.example", ALLOWED)


def test_handoff_issuer_compared_case_insensitively():
    token = _handoff(issuer="HTTPS://DEN.EXAMPLE")
    verify_handoff_token(SECRET, token, CANONICAL, "https://lab.example", ALLOWED)


def test_handoff_audience_must_be_allow_listed():
    token = _handoff(audience="https://evil.example")
    with pytest.raises(TokenError, match="not allowed"):
        verify_handoff_token(SECRET, token, CANONICAL, "https://evil.example", ALLOWED)


def test_handoff_token_expires(monkeypatch):
    monkeypatch.setattr(tokens, "_now_epoch", lambda: 5_000)
    token = _handoff()
    monkeypatch.setattr(tokens, "_now_epoch", lambda: 5_060)
    with pytest.raises(TokenExpired):
        verify_handoff_token(SECRET, token, CANONICAL, "https://lab.example", ALLOWED)
