"""Chainguard identities."""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass, field
from urllib.parse import urlsplit, urlunsplit

from .base import AuthenticationError, BaseIssuer, Certificate, Principal, _checked_url
from .config import Extensions, VerifierOption
from .token import IDToken, TokenError


class ChainguardIssuer(BaseIssuer):
    """Issuer of Chainguard identity tokens."""

    def authenticate(self, token: str, *options: VerifierOption) -> Principal:
        """Verify the token and build a principal from it."""
        try:
            idtoken = self._authorize(token, options)
        except (AuthenticationError, TokenError) as exc:
            raise AuthenticationError(f"authorizing chainguard issuer: {exc}") from exc
        return principal_from_id_token(idtoken)


@dataclass
class WorkflowPrincipal(Principal):
    """A Chainguard identity and the actor that assumed it."""

    issuer: str
    subject: str
    principal_name: str = ""
    actor: dict[str, str] = field(default_factory=dict)
    service_principal: str = ""

    def name(self) -> str:
        return self.principal_name

    def embed(self, cert: Certificate) -> None:
        parts = urlsplit(_checked_url(self.issuer))
        cert.uris = [urlunsplit(parts._replace(path=_join_path(parts.path, self.subject)))]
        cert.extra_extensions = Extensions(issuer=self.issuer).render()


def _join_path(base: str, element: str) -> str:
    joined = re.sub("/+", "/", f"/{base}/{element}")
    cleaned = posixpath.normpath(joined)
    if element.endswith("/") and not cleaned.endswith("/"):
        cleaned += "/"
    return cleaned


def subject_from_token(token: IDToken) -> str:
    """The proof-of-possession subject: a verified email, else the 'sub' claim."""
    claims = token.claims
    email = claims.get("email", "")
    if not isinstance(email, str):
        raise AuthenticationError("email claim must be a string")
    verified = claims.get("email_verified", False)
    if not isinstance(verified, bool):
        raise AuthenticationError("email_verified claim must be a boolean")
    if email:
        if not verified:
            raise AuthenticationError("not verified by identity provider")
        return email
    subject = claims.get("sub", "")
    if not isinstance(subject, str) or not subject:
        raise AuthenticationError("no subject found in claims")
    return subject


def principal_from_id_token(token: IDToken) -> WorkflowPrincipal:
    """Build a principal from the token's actor and internal claims."""
    claims = token.claims
    actor = claims.get("act") or {}
    if not isinstance(actor, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in actor.items()
    ):
        raise AuthenticationError("act claim must map strings to strings")
    internal = claims.get("internal") or {}
    if not isinstance(internal, dict):
        raise AuthenticationError("internal claim must be an object")
    service_principal = internal.get("service-principal", "")
    if not isinstance(service_principal, str):
        raise AuthenticationError("service-principal claim must be a string")
    return WorkflowPrincipal(
        issuer=token.issuer,
        subject=token.subject,
        principal_name=subject_from_token(token),
        actor=dict(actor),
        service_principal=service_principal,
    )