"""Buildkite job identities."""

from __future__ import annotations

from dataclasses import dataclass

from .base import AuthenticationError, BaseIssuer, Certificate, Principal, _checked_url
from .config import Extensions, VerifierOption
from .token import IDToken


class BuildkiteIssuer(BaseIssuer):
    """Issuer of Buildkite agent job tokens."""

    def authenticate(self, token: str, *options: VerifierOption) -> Principal:
        """Verify the token and build a job principal from it."""
        return job_principal_from_id_token(self._authorize(token, options))


@dataclass(frozen=True)
class JobPrincipal(Principal):
    """A Buildkite job: its token subject, issuer and pipeline URL."""

    subject: str
    issuer: str
    url: str

    def name(self) -> str:
        return self.subject

    def embed(self, cert: Certificate) -> None:
        cert.uris = [_checked_url(self.url)]
        cert.extra_extensions = Extensions(issuer=self.issuer).render()


def _string_claim(claims: dict, key: str) -> str:
    value = claims.get(key, "")
    if not isinstance(value, str):
        raise AuthenticationError(f"claim {key} must be a string")
    return value


def job_principal_from_id_token(token: IDToken) -> JobPrincipal:
    """Build a job principal; organization and pipeline slugs are required."""
    organization = _string_claim(token.claims, "organization_slug")
    pipeline = _string_claim(token.claims, "pipeline_slug")
    if not organization:
        raise AuthenticationError("missing organization_slug claim in ID token")
    if not pipeline:
        raise AuthenticationError("missing pipeline_slug claim in ID token")
    return JobPrincipal(
        subject=token.subject,
        issuer=token.issuer,
        url=f"https://buildkite.com/{organization}/{pipeline}",
    )