"""Stateless signed session tokens for proxy callers."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping


class InvalidTokenError(RuntimeError):
    """Raised for any token that fails verification."""


@dataclass(frozen=True, slots=True)
class AuthToken:
    subject_id: str
    issued_at: int
    expires_at: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "issued_at": self.issued_at,
            "expires_at": self.expires_at,
        }


class TokenSigner:
    """Issues and verifies ``base64(json) + "." + hex(hmac_sha256)`` tokens."""

    def __init__(
        self,
        secret: str | bytes,
        *,
        ttl: int = 3600,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if not secret:
            raise ValueError("Token secret must not be empty")
        self._secret = secret.encode("utf-8") if isinstance(secret, str) else secret
        self._ttl = ttl
        self._clock = clock or time.time

    @property
    def ttl(self) -> int:
        return self._ttl

    def _sign(self, payload: str) -> str:
        return hmac.new(self._secret, payload.encode("ascii"), hashlib.sha256).hexdigest()

    def issue(self, subject_id: str | int, *, ttl: int | None = None) -> str:
        now = int(self._clock())
        claims = {
            "subject_id": str(subject_id),
            "issued_at": now,
            "expires_at": now + (ttl if ttl is not None else self._ttl),
        }
        payload = base64.b64encode(json.dumps(claims, separators=(",", ":")).encode("utf-8")).decode("ascii")
        return f"{payload}.{self._sign(payload)}"

    def verify(self, token: str) -> AuthToken:
        """Return the token claims or raise :class:`InvalidTokenError`."""

        if not isinstance(token, str) or token.count(".") != 1:
            raise InvalidTokenError("unauthorized")
        payload, signature = token.split(".")
        try:
            expected = self._sign(payload)
        except UnicodeEncodeError:
            raise InvalidTokenError("unauthorized") from None
        try:
            matches = hmac.compare_digest(expected, signature)
        except TypeError:
            matches = False
        if not matches:
            raise InvalidTokenError("unauthorized")

        try:
            claims = json.loads(base64.b64decode(payload, validate=True))
            token_claims = AuthToken(
                subject_id=str(claims["subject_id"]),
                issued_at=int(claims["issued_at"]),
                expires_at=int(claims["expires_at"]),
            )
        except (binascii.Error, ValueError, TypeError, KeyError):
            raise InvalidTokenError("unauthorized") from None

        if not token_claims.subject_id or token_claims.expires_at < self._clock():
            raise InvalidTokenError("unauthorized")
        return token_claims


ADMIN_HEADER = "X-Sidecar-Admin-Key"
TOKEN_QUERY_PARAM = "_token"


class AuthFailure(RuntimeError):
    """Caller could not be authenticated; carries the HTTP status to answer with."""

    def __init__(self, status_code: int, message: str = "unauthorized") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


@dataclass(frozen=True, slots=True)
class Caller:
    kind: str
    subject_id: str


class CallerAuthenticator:
    """Resolves the identity of a control-surface or proxy caller."""

    def __init__(self, signer: TokenSigner, admin_key: str) -> None:
        if not admin_key:
            raise ValueError("Admin key must not be empty")
        self._signer = signer
        self._admin_key = admin_key

    @property
    def signer(self) -> TokenSigner:
        return self._signer

    def _admin_from(self, headers: Mapping[str, str]) -> Caller | None:
        presented = headers.get(ADMIN_HEADER)
        if presented is None:
            return None
        if not hmac.compare_digest(presented.encode("utf-8"), self._admin_key.encode("utf-8")):
            raise AuthFailure(403, "forbidden")
        return Caller(kind="admin", subject_id="admin")

    def admin(self, headers: Mapping[str, str]) -> Caller:
        caller = self._admin_from(headers)
        if caller is None:
            raise AuthFailure(401)
        return caller

    def caller(self, headers: Mapping[str, str], query: Mapping[str, str]) -> Caller:
        """Admin session first, then a bearer or query-string token."""

        caller = self._admin_from(headers)
        if caller is not None:
            return caller

        token = None
        authorization = headers.get("Authorization") or ""
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            token = credentials.strip()
        elif query.get(TOKEN_QUERY_PARAM):
            token = query[TOKEN_QUERY_PARAM]

        if token is None:
            raise AuthFailure(401)
        try:
            claims = self._signer.verify(token)
        except InvalidTokenError:
            raise AuthFailure(401) from None
        return Caller(kind="token", subject_id=claims.subject_id)


__all__ = [
    "ADMIN_HEADER",
    "AuthFailure",
    "AuthToken",
    "Caller",
    "CallerAuthenticator",
    "InvalidTokenError",
    "TOKEN_QUERY_PARAM",
    "TokenSigner",
]
