"""Issuer configuration: parsing, validation, lookup and verifier caching."""

from __future__ import annotations

import contextvars
import dataclasses
import json
import logging
import os
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, Optional, Union
from urllib.parse import urlsplit

import yaml
from cachetools import LRUCache
from cryptography import x509

from .gotemplate import TemplateError, parse_template
from .token import IDTokenVerifier, OIDCProvider, TokenError, VerifierConfig

logger = logging.getLogger(__name__)

DEFAULT_OIDC_DISCOVERY_TIMEOUT = 10.0
# Hostnames must have at least a top-level and second-level domain.
MINIMUM_HOSTNAME_LENGTH = 2
_K8S_CA = "/var/run/fulcio/ca.crt"
_K8S_ISSUER = "https://kubernetes.default.svc"
_ORIGINAL_CA_BUNDLE = os.environ.get("REQUESTS_CA_BUNDLE")

VerifierOption = Callable[[VerifierConfig], VerifierConfig]


class ConfigError(ValueError):
    """Raised when a configuration cannot be parsed, validated or prepared."""


class IssuerType(str, Enum):
    """Known issuer types."""

    BUILDKITE_JOB = "buildkite-job"
    EMAIL = "email"
    GITHUB_WORKFLOW = "github-workflow"
    CODEFRESH_WORKFLOW = "codefresh-workflow"
    GITLAB_PIPELINE = "gitlab-pipeline"
    CHAINGUARD = "chainguard-identity"
    KUBERNETES = "kubernetes"
    SPIFFE = "spiffe"
    URI = "uri"
    USERNAME = "username"
    CI_PROVIDER = "ci-provider"

    def __str__(self) -> str:
        return self.value


def _type_value(issuer_type: Union[str, IssuerType]) -> str:
    return issuer_type.value if isinstance(issuer_type, IssuerType) else str(issuer_type)


_CHALLENGE_CLAIMS = {t.value: "sub" for t in IssuerType}
_CHALLENGE_CLAIMS[IssuerType.EMAIL.value] = "email"


_OID_PREFIX = "1.3.6.1.4.1.57264.1."


@dataclass(frozen=True)
class Extension:
    """A certificate extension: dotted OID and encoded value."""

    oid: str
    value: bytes


def _der_utf8_string(text: str) -> bytes:
    data = text.encode("utf-8")
    length = len(data)
    if length < 0x80:
        header = bytes([length])
    else:
        size = length.to_bytes((length.bit_length() + 7) // 8, "big")
        header = bytes([0x80 | len(size)]) + size
    return b"\x0c" + header + data


# attribute -> (OID suffix, DER-encoded?)
_EXTENSION_OIDS = {
    "github_workflow_trigger": (2, False),
    "github_workflow_sha": (3, False),
    "github_workflow_name": (4, False),
    "github_workflow_repository": (5, False),
    "github_workflow_ref": (6, False),
    "build_signer_uri": (9, True),
    "build_signer_digest": (10, True),
    "runner_environment": (11, True),
    "source_repository_uri": (12, True),
    "source_repository_digest": (13, True),
    "source_repository_ref": (14, True),
    "source_repository_identifier": (15, True),
    "source_repository_owner_uri": (16, True),
    "source_repository_owner_identifier": (17, True),
    "build_config_uri": (18, True),
    "build_config_digest": (19, True),
    "build_trigger": (20, True),
    "run_invocation_uri": (21, True),
    "source_repository_visibility_at_signing": (22, True),
}


@dataclass
class Extensions:
    """Values embedded into a certificate as custom extensions."""

    issuer: str = ""
    github_workflow_trigger: str = ""
    github_workflow_sha: str = ""
    github_workflow_name: str = ""
    github_workflow_repository: str = ""
    github_workflow_ref: str = ""
    build_signer_uri: str = ""
    build_signer_digest: str = ""
    runner_environment: str = ""
    source_repository_uri: str = ""
    source_repository_digest: str = ""
    source_repository_ref: str = ""
    source_repository_identifier: str = ""
    source_repository_owner_uri: str = ""
    source_repository_owner_identifier: str = ""
    build_config_uri: str = ""
    build_config_digest: str = ""
    build_trigger: str = ""
    run_invocation_uri: str = ""
    source_repository_visibility_at_signing: str = ""

    def render(self) -> list[Extension]:
        """Encode the non-empty values as extensions; the issuer is required."""
        if not self.issuer:
            raise ConfigError("extensions must have a non-empty issuer url")
        rendered = [
            Extension(_OID_PREFIX + "1", self.issuer.encode("utf-8")),
            Extension(_OID_PREFIX + "8", _der_utf8_string(self.issuer)),
        ]
        for name, (suffix, der) in _EXTENSION_OIDS.items():
            value = getattr(self, name)
            if value:
                encoded = _der_utf8_string(value) if der else value.encode("utf-8")
                rendered.append(Extension(_OID_PREFIX + str(suffix), encoded))
        rendered.sort(key=lambda ext: int(ext.oid.rsplit(".", 1)[1]))
        return rendered


@dataclass
class IssuerMetadata:
    """Templates mapping token claims of a CI provider to extensions."""

    default_template_values: dict[str, str] = field(default_factory=dict)
    extension_templates: Extensions = field(default_factory=Extensions)
    subject_alternative_name_template: str = ""


@dataclass
class OIDCIssuer:
    """Configuration of one trusted OIDC issuer."""

    issuer_url: str = ""
    client_id: str = ""
    type: str = ""
    ci_provider: str = ""
    issuer_claim: str = ""
    subject_domain: str = ""
    spiffe_trust_domain: str = ""
    challenge_claim: str = ""
    description: str = ""
    contact: str = ""


@dataclass
class ProtoIssuer:
    """Public description of a configured issuer."""

    issuer_url: Optional[str] = None
    wildcard_issuer_url: Optional[str] = None
    audience: str = ""
    spiffe_trust_domain: str = ""
    challenge_claim: str = ""
    issuer_type: str = ""
    subject_domain: str = ""


def meta_regex(issuer: str) -> "re.Pattern[str]":
    """Compile a wildcard issuer URL; '*' matches one name or path part."""
    return re.compile(re.escape(issuer).replace(re.escape("*"), "[-_a-zA-Z0-9]+"))


@dataclass
class FulcioConfig:
    """The set of trusted issuers and CI provider metadata."""

    oidc_issuers: dict[str, OIDCIssuer] = field(default_factory=dict)
    meta_issuers: dict[str, OIDCIssuer] = field(default_factory=dict)
    ci_issuer_metadata: dict[str, IssuerMetadata] = field(default_factory=dict)
    _verifiers: dict = field(default_factory=dict, init=False, repr=False, compare=False)
    _lru: LRUCache = field(default_factory=lambda: LRUCache(100), init=False, repr=False, compare=False)

    def get_issuer(self, issuer_url: str) -> Optional[OIDCIssuer]:
        """Return the issuer configuration matching a URL, or None."""
        found = self.oidc_issuers.get(issuer_url)
        if found is not None:
            return found
        for meta, iss in self.meta_issuers.items():
            if meta_regex(meta).search(issuer_url):
                return OIDCIssuer(
                    issuer_url=issuer_url,
                    client_id=iss.client_id,
                    type=iss.type,
                    issuer_claim=iss.issuer_claim,
                    subject_domain=iss.subject_domain,
                    ci_provider=iss.ci_provider,
                )
        return None

    def get_verifier(self, issuer_url: str, *options: VerifierOption) -> Optional[IDTokenVerifier]:
        """Return a token verifier for an issuer, creating one if needed."""
        iss = self.get_issuer(issuer_url)
        if iss is None:
            return None
        cfg = VerifierConfig(client_id=iss.client_id)
        for option in options:
            cfg = option(cfg)
        for known_cfg, verifier in self._verifiers.get(issuer_url, ()):
            if known_cfg == cfg:
                return verifier
        cached = self._lru.get(issuer_url)
        for known_cfg, verifier in cached or ():
            if known_cfg == cfg:
                return verifier
        try:
            provider = OIDCProvider.discover(issuer_url, DEFAULT_OIDC_DISCOVERY_TIMEOUT)
        except TokenError as exc:
            logger.warning("Failed to create provider for issuer URL %r: %s", issuer_url, exc)
            return None
        verifier = provider.verifier(cfg)
        self._lru[issuer_url] = [*(cached or ()), (cfg, verifier)]
        return verifier

    def to_issuers(self) -> list[ProtoIssuer]:
        """Describe every configured issuer, fixed ones before wildcards."""
        issuers = [
            ProtoIssuer(
                issuer_url=iss.issuer_url,
                audience=iss.client_id,
                spiffe_trust_domain=iss.spiffe_trust_domain,
                challenge_claim=issuer_to_challenge_claim(iss.type, iss.challenge_claim),
                issuer_type=_type_value(iss.type),
                subject_domain=iss.subject_domain,
            )
            for iss in self.oidc_issuers.values()
        ]
        issuers.extend(
            ProtoIssuer(
                wildcard_issuer_url=meta,
                audience=iss.client_id,
                spiffe_trust_domain=iss.spiffe_trust_domain,
                challenge_claim=issuer_to_challenge_claim(iss.type, iss.challenge_claim),
                issuer_type=_type_value(iss.type),
                subject_domain=iss.subject_domain,
            )
            for meta, iss in self.meta_issuers.items()
        )
        return issuers

    def _prepare(self) -> None:
        if self.get_issuer(_K8S_ISSUER) is not None:
            try:
                with open(_K8S_CA, "rb") as fh:
                    pem = fh.read()
            except OSError as exc:
                raise ConfigError(f"read file: {exc}") from exc
            try:
                x509.load_pem_x509_certificates(pem)
            except ValueError as exc:
                raise ConfigError("unable to append certs") from exc
            os.environ["REQUESTS_CA_BUNDLE"] = _K8S_CA
        elif _ORIGINAL_CA_BUNDLE is None:
            os.environ.pop("REQUESTS_CA_BUNDLE", None)
        else:
            os.environ["REQUESTS_CA_BUNDLE"] = _ORIGINAL_CA_BUNDLE

        self._verifiers = {}
        for iss in self.oidc_issuers.values():
            try:
                provider = OIDCProvider.discover(iss.issuer_url, DEFAULT_OIDC_DISCOVERY_TIMEOUT)
            except TokenError as exc:
                logger.error("error creating provider for issuer URL %r: %s", iss.issuer_url, exc)
                continue
            cfg = VerifierConfig(client_id=iss.client_id)
            self._verifiers[iss.issuer_url] = [(cfg, provider.verifier(cfg))]
        self._lru = LRUCache(100)


def with_skip_expiry_check() -> VerifierOption:
    """Option that disables the expiry check of a verifier."""
    return lambda cfg: dataclasses.replace(cfg, skip_expiry_check=True)


def issuer_to_challenge_claim(issuer_type: Union[str, IssuerType], challenge_claim: str) -> str:
    """Return the claim signed as proof of possession, or '' if unknown."""
    if challenge_claim:
        return challenge_claim
    return _CHALLENGE_CLAIMS.get(_type_value(issuer_type), "")


# ---- parsing -------------------------------------------------------------

def _pick(raw: dict, attr: str, json_mode: bool) -> Any:
    if json_mode:
        wanted = attr.replace("_", "").lower()
        for key, value in raw.items():
            if isinstance(key, str) and key.lower() == wanted:
                return value
        return None
    return raw.get(attr.replace("_", "-"))


def _as_str(value: Any, name: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigError(f"field {name} must be a string")
    return value


def _as_map(value: Any, name: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"field {name} must be a mapping")
    return value


def _string_fields(cls: type, raw: Any, json_mode: bool) -> Any:
    raw = _as_map(raw, cls.__name__)
    return cls(**{
        f.name: _as_str(_pick(raw, f.name, json_mode), f.name)
        for f in dataclasses.fields(cls)
    })


def _metadata(raw: Any, json_mode: bool) -> IssuerMetadata:
    raw = _as_map(raw, "IssuerMetadata")
    defaults = _as_map(_pick(raw, "default_template_values", json_mode), "DefaultTemplateValues")
    return IssuerMetadata(
        default_template_values={str(k): _as_str(v, str(k)) for k, v in defaults.items()},
        extension_templates=_string_fields(Extensions, _pick(raw, "extension_templates", json_mode), json_mode),
        subject_alternative_name_template=_as_str(
            _pick(raw, "subject_alternative_name_template", json_mode), "SubjectAlternativeNameTemplate"
        ),
    )


def _build(raw: Any, json_mode: bool) -> FulcioConfig:
    if raw is None:
        return FulcioConfig()
    raw = _as_map(raw, "config")

    def issuers(attr: str) -> dict[str, OIDCIssuer]:
        entries = _as_map(_pick(raw, attr, json_mode), attr)
        return {str(k): _string_fields(OIDCIssuer, v, json_mode) for k, v in entries.items()}

    metadata = _as_map(_pick(raw, "ci_issuer_metadata", json_mode), "CIIssuerMetadata")
    return FulcioConfig(
        oidc_issuers=issuers("oidc_issuers"),
        meta_issuers=issuers("meta_issuers"),
        ci_issuer_metadata={str(k): _metadata(v, json_mode) for k, v in metadata.items()},
    )


def parse_config(data: Union[bytes, str]) -> FulcioConfig:
    """Parse JSON, falling back to YAML."""
    try:
        return _build(json.loads(data), json_mode=True)
    except (ValueError, TypeError):
        pass
    try:
        return _build(yaml.safe_load(data), json_mode=False)
    except (yaml.YAMLError, ConfigError) as exc:
        raise ConfigError(f"unmarshal: {exc}") from exc


# ---- validation ----------------------------------------------------------

_TRUST_DOMAIN_RE = re.compile(r"^[a-z0-9._-]+$")


def _valid_trust_domain(value: str) -> bool:
    if value.startswith("spiffe://"):
        value = value[len("spiffe://"):].split("/", 1)[0]
    return bool(_TRUST_DOMAIN_RE.match(value))


def _hostname(netloc: str) -> str:
    host = netloc.rpartition("@")[2]
    if host.startswith("["):
        end = host.find("]")
        return host[1:end] if end >= 0 else host[1:]
    return host.split(":", 1)[0]


def _parse_url(value: str) -> tuple[str, str]:
    try:
        parts = urlsplit(value)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc
    return parts.scheme, _hostname(parts.netloc)


def validate_allowed_domain(subject_hostname: str, issuer_hostname: str) -> None:
    """Raise unless the two hostnames share top- and second-level domains."""
    if subject_hostname == issuer_hostname:
        return
    s_parts = subject_hostname.split(".")
    i_parts = issuer_hostname.split(".")
    if len(s_parts) < MINIMUM_HOSTNAME_LENGTH:
        raise ConfigError(f"URI hostname too short: {subject_hostname}")
    if len(i_parts) < MINIMUM_HOSTNAME_LENGTH:
        raise ConfigError(f"URI hostname too short: {issuer_hostname}")
    if s_parts[-2:] == i_parts[-2:]:
        return
    raise ConfigError(
        f"hostname top-level and second-level domains do not match: {subject_hostname}, {issuer_hostname}"
    )


def is_uri_subject_allowed(subject: str, issuer: str) -> None:
    """Raise unless the subject and issuer URLs share scheme and domain."""
    s_scheme, s_host = _parse_url(subject)
    i_scheme, i_host = _parse_url(issuer)
    if s_scheme != i_scheme:
        raise ConfigError(f"subject ({s_scheme}) and issuer ({i_scheme}) URI schemes do not match")
    validate_allowed_domain(s_host, i_host)


def validate_ci_issuer_metadata(config: FulcioConfig) -> None:
    """Check that every CI metadata template parses."""
    for metadata in config.ci_issuer_metadata.values():
        templates = [getattr(metadata.extension_templates, f.name)
                     for f in dataclasses.fields(Extensions)]
        templates.append(metadata.subject_alternative_name_template)
        for text in templates:
            try:
                parse_template(text)
            except TemplateError as exc:
                raise ConfigError(str(exc)) from exc


def validate_config(config: Optional[FulcioConfig]) -> None:
    """Raise ConfigError if the configuration is inconsistent."""
    if config is None:
        raise ConfigError("nil config")
    for issuer in config.oidc_issuers.values():
        itype = _type_value(issuer.type)
        if issuer.issuer_claim and itype != IssuerType.EMAIL.value:
            raise ConfigError("only email issuers can use issuer claim mapping")
        if itype == IssuerType.SPIFFE.value:
            if not issuer.spiffe_trust_domain:
                raise ConfigError("spiffe issuer must have SPIFFETrustDomain set")
            if not _valid_trust_domain(issuer.spiffe_trust_domain):
                raise ConfigError("spiffe trust domain is invalid")
        if itype == IssuerType.URI.value:
            if not issuer.subject_domain:
                raise ConfigError("uri issuer must have SubjectDomain set")
            if not _parse_url(issuer.subject_domain)[0]:
                raise ConfigError("SubjectDomain for uri must contain scheme")
            if not _parse_url(issuer.issuer_url)[0]:
                raise ConfigError("issuer for uri must contain scheme")
            is_uri_subject_allowed(issuer.subject_domain, issuer.issuer_url)
        if itype == IssuerType.USERNAME.value:
            if not issuer.subject_domain:
                raise ConfigError("username issuer must have SubjectDomain set")
            if _parse_url(issuer.subject_domain)[0]:
                raise ConfigError("SubjectDomain for username should not contain scheme")
            i_scheme, i_host = _parse_url(issuer.issuer_url)
            if not i_scheme:
                raise ConfigError("issuer for username must contain scheme")
            validate_allowed_domain(issuer.subject_domain, i_host)
        if not issuer_to_challenge_claim(issuer.type, issuer.challenge_claim):
            raise ConfigError("issuer missing challenge claim")
    for meta in config.meta_issuers.values():
        if _type_value(meta.type) == IssuerType.SPIFFE.value:
            raise ConfigError("SPIFFE meta issuers not supported")
        if not issuer_to_challenge_claim(meta.type, meta.challenge_claim):
            raise ConfigError("issuer missing challenge claim")
    validate_ci_issuer_metadata(config)


# ---- loading -------------------------------------------------------------

def default_config() -> FulcioConfig:
    """The configuration used when no file is present."""
    return FulcioConfig(oidc_issuers={
        "https://oauth2.sigstore.dev/auth": OIDCIssuer(
            issuer_url="https://oauth2.sigstore.dev/auth",
            client_id="sigstore",
            issuer_claim="$.federated_claims.connector_id",
            type=IssuerType.EMAIL.value,
        ),
        "https://accounts.google.com": OIDCIssuer(
            issuer_url="https://accounts.google.com",
            client_id="sigstore",
            type=IssuerType.EMAIL.value,
        ),
        "https://token.actions.githubusercontent.com": OIDCIssuer(
            issuer_url="https://token.actions.githubusercontent.com",
            client_id="sigstore",
            type=IssuerType.GITHUB_WORKFLOW.value,
        ),
    })


def read(data: Union[bytes, str]) -> FulcioConfig:
    """Parse, validate and prepare a configuration."""
    try:
        config = parse_config(data)
    except ConfigError as exc:
        raise ConfigError(f"parse: {exc}") from exc
    try:
        validate_config(config)
    except ConfigError as exc:
        raise ConfigError(f"validate: {exc}") from exc
    config._prepare()
    return config


def load(config_path: Union[str, os.PathLike]) -> FulcioConfig:
    """Load a configuration file, or the defaults if it does not exist."""
    if not os.path.exists(config_path):
        config = default_config()
        logger.info("No config at %s, using defaults: %s", config_path, config)
        config._prepare()
        return config
    try:
        with open(config_path, "rb") as fh:
            data = fh.read()
    except OSError as exc:
        raise ConfigError(f"read file: {exc}") from exc
    return read(data)


_CURRENT: contextvars.ContextVar[Optional[FulcioConfig]] = contextvars.ContextVar(
    "certidentity_config", default=None
)


@contextmanager
def use_config(config: FulcioConfig) -> Iterator[FulcioConfig]:
    """Make a configuration current for the enclosed block."""
    marker = _CURRENT.set(config)
    try:
        yield config
    finally:
        _CURRENT.reset(marker)


def current_config() -> Optional[FulcioConfig]:
    """Return the current configuration, or None."""
    return _CURRENT.get()