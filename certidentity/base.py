"""Shared pieces of identity issuers: token authorization, principals, certificates."""

from __future__ import annotations

import abc
import re
from dataclasses import dataclass, field
from typing import Callable, Optional

from .config import Extension, VerifierOption, current_config, meta_regex
from .token import IDToken, extract_issuer_url

Authorizer = Callable[..., IDToken]

_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")
_BAD_ESCAPE_RE = re.compile(r"%(?![0-9A-Fa-f]{2})")


class AuthenticationError(ValueError):
    """Raised when a token cannot be turned into a principal."""


def _checked_url(value: str) -> str:
    if _CONTROL_RE.search(value):
        raise AuthenticationError(f"parse {value!r}: invalid control character in URL")
    if _BAD_ESCAPE_RE.search(value):
        raise AuthenticationError(f"parse {value!r}: invalid URL escape")
    return value


@dataclass
class Certificate:
    """The identity-bearing parts of a certificate being issued."""

    uris: list[str] = field(default_factory=list)
    email_addresses: list[str] = field(default_factory=list)
    extra_extensions: list[Extension] = field(default_factory=list)


class Principal(abc.ABC):
    """An authenticated identity that can be embedded into a certificate."""

    @abc.abstractmethod
    def name(self) -> str:
        """The value signed as proof of possession."""

    @abc.abstractmethod
    def embed(self, cert: Certificate) -> None:
        """Write the identity into the certificate."""


def authorize(token: str, *options: VerifierOption) -> IDToken:
    """Verify a raw token against the issuer it names in the current configuration."""
    issuer = extract_issuer_url(token)
    config = current_config()
    if config is None:
        raise AuthenticationError("no configuration in effect")
    verifier = config.get_verifier(issuer, *options)
    if verifier is None:
        raise AuthenticationError(f"unsupported issuer: {issuer}")
    return verifier.verify(token)


class BaseIssuer:
    """An issuer identified by a URL, possibly with '*' wildcards."""

    def __init__(self, issuer_url: str, authorizer: Optional[Authorizer] = None) -> None:
        self.issuer_url = issuer_url
        self._authorizer = authorizer or authorize

    def authenticate(self, token: str, *options: VerifierOption) -> Principal:
        """Each kind of issuer authenticates differently; the base has none."""
        raise AuthenticationError("unimplemented")

    def match(self, url: str) -> bool:
        """True if the URL is this issuer or matches its wildcard pattern."""
        if url == self.issuer_url:
            return True
        try:
            pattern = meta_regex(self.issuer_url)
        except re.error:
            return False
        return pattern.search(url) is not None

    def _authorize(self, token: str, options: tuple) -> IDToken:
        return self._authorizer(token, *options)