from __future__ import annotations

import base64
import json

import pytest

from forge_sidecar.auth import (
    ADMIN_HEADER,
    AuthFailure,
    CallerAuthenticator,
    InvalidTokenError,
    TokenSigner,
)


class Clock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_issue_and_verify_round_trip() -> None:
    signer = TokenSigner("s3cret", ttl=60, clock=Clock(1_000))
    claims = signer.verify(signer.issue(42))

    assert claims.subject_id == "42"
    assert claims.issued_at == 1_000
    assert claims.expires_at == 1_060


def test_expired_token_is_rejected() -> None:
    clock = Clock(1_000)
    signer = TokenSigner("s3cret", ttl=60, clock=clock)
    token = signer.issue("admin")

    clock.now = 1_061
    with pytest.raises(InvalidTokenError):
        signer.verify(token)


def test_tampered_payload_is_rejected() -> None:
    signer = TokenSigner("s3cret", clock=Clock(1_000))
    payload, signature = signer.issue("user").split(".")
    claims = json.loads(base64.b64decode(payload))
    claims["subject_id"] = "admin"
    forged = base64.b64encode(json.dumps(claims, separators=(",", ":")).encode()).decode()

    with pytest.raises(InvalidTokenError):
        signer.verify(f"{forged}.{signature}")


def test_token_from_other_secret_is_rejected() -> None:
    token = TokenSigner("one", clock=Clock(0)).issue("user")
    with pytest.raises(InvalidTokenError):
        TokenSigner("two", clock=Clock(0)).verify(token)


@pytest.mark.parametrize("token", ["", "no-dot", "a.b.c", "é.é", "!!!.00"])
def test_malformed_tokens_are_rejected(token: str) -> None:
    with pytest.raises(InvalidTokenError):
        TokenSigner("s3cret").verify(token)


def _authenticator(clock: Clock | None = None) -> CallerAuthenticator:
    return CallerAuthenticator(TokenSigner("s3cret", clock=clock or Clock(1_000)), "admin-key")


def test_admin_header_required_for_control_surface() -> None:
    auth = _authenticator()

    with pytest.raises(AuthFailure) as missing:
        auth.admin({})
    with pytest.raises(AuthFailure) as wrong:
        auth.admin({ADMIN_HEADER: "nope"})

    assert missing.value.status_code == 401
    assert wrong.value.status_code == 403
    assert auth.admin({ADMIN_HEADER: "admin-key"}).kind == "admin"


def test_caller_accepts_bearer_and_query_tokens() -> None:
    auth = _authenticator()
    token = auth.signer.issue("7")

    assert auth.caller({"Authorization": f"Bearer {token}"}, {}).subject_id == "7"
    assert auth.caller({}, {"_token": token}).subject_id == "7"


def test_caller_without_credentials_is_unauthorized() -> None:
    auth = _authenticator()
    with pytest.raises(AuthFailure) as excinfo:
        auth.caller({}, {})
    assert excinfo.value.status_code == 401

    with pytest.raises(AuthFailure):
        auth.caller({"Authorization": "Bearer garbage"}, {})
