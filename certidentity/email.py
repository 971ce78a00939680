"""E-mail identities."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from .base import AuthenticationError, BaseIssuer, Certificate, Principal
from .config import Extensions, VerifierOption, current_config
from .token import IDToken


class EmailIssuer(BaseIssuer):
    """Issuer of tokens carrying a verified e-mail address."""

    def authenticate(self, token: str, *options: VerifierOption) -> Principal:
        """Verify the token and build an e-mail principal from it."""
        return principal_from_id_token(self._authorize(token, options))


_ATOM = r"[A-Za-z0-9!#$%&'*+/=?^_`{|}~\-\u00a0-\uffff]+"
_LABEL = r"[^\W_](?:[\w.\-~]*[^\W_])?"
_EMAIL_RE = re.compile(
    rf"^(?:{_ATOM}(?:\.{_ATOM})*|\"(?:[^\"\\]|\\.)+\")"
    rf"@(?:{_LABEL}\.)+{_LABEL}\.?$"
)

_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_WORDS = {"0", "f", "F", "FALSE", "false", "False"}


def is_email(address: str) -> bool:
    """True if the address looks like a valid e-mail address."""
    return bool(_EMAIL_RE.match(address))


def _parse_verified(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        if value in _TRUE_WORDS:
            return True
        if value in _FALSE_WORDS:
            return False
        raise AuthenticationError(f"email_verified claim {value!r} is not a boolean")
    raise AuthenticationError("email_verified claim is not a boolean")


def email_from_id_token(token: IDToken) -> tuple[str, bool]:
    """Return the e-mail address and whether the provider verified it."""
    address = token.claims.get("email", "")
    if not isinstance(address, str):
        raise AuthenticationError("email claim must be a string")
    if not address:
        raise AuthenticationError("token missing email claim")
    return address, _parse_verified(token.claims.get("email_verified"))


def issuer_from_id_token(token: IDToken, claim_path: str) -> str:
    """Return the token issuer, or the claim at a '$.a.b' path if one is given."""
    if not claim_path:
        return token.issuer
    if claim_path != "$" and not claim_path.startswith("$."):
        raise AuthenticationError(f"unsupported issuer claim path {claim_path!r}")
    value: Any = token.claims
    for key in filter(None, claim_path[2:].split(".")):
        if not isinstance(value, dict) or key not in value:
            raise AuthenticationError(f"unknown key {key} in issuer claim path {claim_path}")
        value = value[key]
    if not isinstance(value, str):
        raise AuthenticationError(f"issuer claim at {claim_path} is not a string")
    return value


@dataclass(frozen=True)
class EmailPrincipal(Principal):
    """A verified e-mail address and the issuer that vouched for it."""

    address: str
    issuer: str

    def name(self) -> str:
        return self.address

    def embed(self, cert: Certificate) -> None:
        cert.email_addresses = [self.address]
        cert.extra_extensions = Extensions(issuer=self.issuer).render()


def principal_from_id_token(token: IDToken) -> EmailPrincipal:
    """Build a principal from a token whose e-mail address is verified and valid."""
    address, verified = email_from_id_token(token)
    if not verified:
        raise AuthenticationError("email_verified claim was false")
    if not is_email(address):
        raise AuthenticationError("email address is not valid")
    config = current_config()
    issuer_cfg = config.get_issuer(token.issuer) if config is not None else None
    if issuer_cfg is None:
        raise AuthenticationError("invalid configuration for OIDC ID Token issuer")
    issuer = issuer_from_id_token(token, issuer_cfg.issuer_claim)
    return EmailPrincipal(address=address, issuer=issuer)