from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

import jwt
from jwt import PyJWKClient
from jwt.exceptions import PyJWKClientConnectionError, PyJWTError

from structured_log import log_event
from todo_config import AUTH_MODE_AUTHORIZER, Settings
from todo_errors import StoreError, Unauthenticated

JWKS_LIFESPAN_SECONDS = 3600
JWKS_FETCH_TIMEOUT_SECONDS = 5
REQUIRED_CLAIMS = ["exp", "iss", "sub"]


@dataclass(frozen=True)
class Credential:
    """What the caller presented: a bearer token and/or gateway-verified claims."""

    token: str = ""
    authorizer_claims: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VerifiedClaims:
    subject: str
    claims: Mapping[str, Any]


def bearer_token(headers: Mapping[str, Any] | None) -> str:
    if not isinstance(headers, Mapping):
        return ""
    raw = ""
    for name, value in headers.items():
        if str(name).lower() == "authorization":
            raw = str(value or "").strip()
            break
    scheme, _, token = raw.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


def _verified(claims: Mapping[str, Any]) -> VerifiedClaims:
    sub = str(claims.get("sub") or "").strip()
    if not sub:
        raise Unauthenticated()
    return VerifiedClaims(subject=sub, claims=dict(claims))


class JwtVerifier:
    """Verifies issuer-signed RS256 tokens against the issuer's JWKS."""

    def __init__(
        self,
        *,
        issuer: str,
        audience: str,
        jwks_client: Any,
        token_use: str = "id",
        leeway_seconds: int = 0,
    ) -> None:
        self._issuer = issuer
        self._audience = audience
        self._jwks = jwks_client
        self._token_use = token_use
        self._leeway = leeway_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "JwtVerifier":
        jwks_client = PyJWKClient(
            settings.jwks_url,
            cache_keys=True,
            lifespan=JWKS_LIFESPAN_SECONDS,
            timeout=JWKS_FETCH_TIMEOUT_SECONDS,
        )
        return cls(
            issuer=settings.token_issuer,
            audience=settings.token_audience,
            jwks_client=jwks_client,
            token_use=settings.token_use,
        )

    def verify(self, credential: Credential) -> VerifiedClaims:
        token = (credential.token or "").strip()
        if not token:
            raise Unauthenticated()
        try:
            signing_key = self._jwks.get_signing_key_from_jwt(token)
            claims = jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256"],
                audience=self._audience,
                issuer=self._issuer,
                leeway=self._leeway,
                options={"require": REQUIRED_CLAIMS},
            )
        except PyJWKClientConnectionError as e:
            raise StoreError(f"signing keys unavailable: {e}", code="VERIFIER_UNAVAILABLE") from e
        except PyJWTError as e:
            # Callers only ever see 401; the reason stays in the logs.
            log_event("todo_auth_rejected", reason=type(e).__name__)
            raise Unauthenticated() from e

        if self._token_use and str(claims.get("token_use") or "") != self._token_use:
            log_event("todo_auth_rejected", reason="TokenUseMismatch")
            raise Unauthenticated()
        return _verified(claims)


class AuthorizerClaimsVerifier:
    """Trusts claims already verified by an API Gateway Cognito authorizer."""

    def verify(self, credential: Credential) -> VerifiedClaims:
        claims = credential.authorizer_claims
        if not isinstance(claims, Mapping) or not claims:
            raise Unauthenticated()
        return _verified(claims)


def verifier_from_settings(settings: Settings) -> JwtVerifier | AuthorizerClaimsVerifier:
    if settings.auth_mode == AUTH_MODE_AUTHORIZER:
        return AuthorizerClaimsVerifier()
    return JwtVerifier.from_settings(settings)
