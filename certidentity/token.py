"""OIDC ID tokens: issuer extraction, discovery and signature verification."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import jwt
import requests

_DEFAULT_ALGORITHMS = ("RS256",)


class TokenError(ValueError):
    """Raised when a token is malformed or fails verification."""


@dataclass
class IDToken:
    """A verified (or test-constructed) OIDC ID token."""

    issuer: str = ""
    subject: str = ""
    audience: tuple[str, ...] = ()
    expiry: Optional[datetime] = None
    issued_at: Optional[datetime] = None
    claims: dict[str, Any] = field(default_factory=dict)
    raw: str = ""


@dataclass(frozen=True)
class VerifierConfig:
    """Options controlling ID token verification."""

    client_id: str = ""
    skip_expiry_check: bool = False


def _decode_segment(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    try:
        return base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError) as exc:
        raise TokenError(f"malformed jwt payload: {exc}") from exc


def extract_issuer_url(token: str) -> str:
    """Return the unverified 'iss' claim of a raw JWT."""
    parts = token.split(".")
    if len(parts) != 3:
        raise TokenError(f"oidc: malformed jwt, expected 3 parts got {len(parts)}")
    try:
        payload = json.loads(_decode_segment(parts[1]))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise TokenError(f"oidc: failed to unmarshal claims: {exc}") from exc
    issuer = payload.get("iss") if isinstance(payload, dict) else None
    if not isinstance(issuer, str):
        raise TokenError("oidc: token has no issuer")
    return issuer


def _timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


class IDTokenVerifier:
    """Verifies tokens from one issuer using keys from a resolver."""

    def __init__(
        self,
        issuer: str,
        key_resolver: Callable[[str], Any],
        config: VerifierConfig,
        algorithms: tuple[str, ...] = _DEFAULT_ALGORITHMS,
    ) -> None:
        self.issuer = issuer
        self.config = config
        self._key_resolver = key_resolver
        self._algorithms = list(algorithms)

    def verify(self, raw_token: str) -> IDToken:
        """Check signature, issuer, audience and expiry; return the token."""
        try:
            key = self._key_resolver(raw_token)
            claims = jwt.decode(
                raw_token,
                key,
                algorithms=self._algorithms,
                audience=self.config.client_id or None,
                options={
                    "verify_exp": not self.config.skip_expiry_check,
                    "verify_aud": bool(self.config.client_id),
                },
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenError("oidc: token is expired") from exc
        except jwt.InvalidAudienceError as exc:
            raise TokenError(f"oidc: expected audience {self.config.client_id!r}") from exc
        except jwt.PyJWTError as exc:
            raise TokenError(f"oidc: failed to verify token: {exc}") from exc
        issuer = claims.get("iss", "")
        if issuer != self.issuer:
            raise TokenError(f"oidc: id token issued by a different provider, expected {self.issuer!r} got {issuer!r}")
        aud = claims.get("aud", ())
        audience = (aud,) if isinstance(aud, str) else tuple(aud)
        return IDToken(
            issuer=issuer,
            subject=claims.get("sub", ""),
            audience=audience,
            expiry=_timestamp(claims.get("exp")),
            issued_at=_timestamp(claims.get("iat")),
            claims=claims,
            raw=raw_token,
        )


class OIDCProvider:
    """An OIDC provider described by its discovery document."""

    def __init__(self, issuer: str, jwks_uri: str, algorithms: tuple[str, ...] = _DEFAULT_ALGORITHMS) -> None:
        self.issuer = issuer
        self.jwks_uri = jwks_uri
        self.algorithms = algorithms

    @classmethod
    def discover(cls, issuer_url: str, timeout: float) -> "OIDCProvider":
        """Fetch the provider's discovery document."""
        url = issuer_url.rstrip("/") + "/.well-known/openid-configuration"
        try:
            response = requests.get(url, timeout=timeout)
            response.raise_for_status()
            document = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise TokenError(f"oidc: discovery failed for {issuer_url!r}: {exc}") from exc
        issuer = document.get("issuer")
        if issuer != issuer_url:
            raise TokenError(f"oidc: issuer did not match the issuer returned by provider, expected {issuer_url!r} got {issuer!r}")
        jwks_uri = document.get("jwks_uri")
        if not jwks_uri:
            raise TokenError("oidc: discovery document has no jwks_uri")
        algorithms = tuple(document.get("id_token_signing_alg_values_supported") or _DEFAULT_ALGORITHMS)
        return cls(issuer, jwks_uri, algorithms)

    def verifier(self, config: VerifierConfig) -> IDTokenVerifier:
        """Build a verifier that fetches signing keys from the JWKS endpoint."""
        client = jwt.PyJWKClient(self.jwks_uri)
        return IDTokenVerifier(
            self.issuer,
            lambda raw: client.get_signing_key_from_jwt(raw).key,
            config,
            self.algorithms,
        )