"""Generic CI provider identities driven by per-provider claim templates."""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass
from typing import Any, Mapping

from .base import AuthenticationError, BaseIssuer, Certificate, Principal, _checked_url
from .config import Extensions, IssuerMetadata, VerifierOption, current_config
from .gotemplate import TemplateError, parse_template
from .token import IDToken


class CIProviderIssuer(BaseIssuer):
    """Issuer whose tokens are mapped to extensions by configured templates."""

    def authenticate(self, token: str, *options: VerifierOption) -> Principal:
        """Verify the token and build a CI principal from it."""
        return workflow_principal_from_id_token(self._authorize(token, options))


def _claim_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def _token_claims(token: IDToken) -> dict[str, str]:
    return {str(key): _claim_string(value) for key, value in token.claims.items()}


def _go_field_name(attr: str) -> str:
    return "".join(part.capitalize() for part in attr.split("_"))


def apply_template_or_replace(
    template: str,
    token_claims: Mapping[str, str],
    issuer_metadata: Mapping[str, str],
    log_metadata: Mapping[str, str],
) -> str:
    """Render a template, or look the text up as a claim name.

    Token claims take priority over the issuer's default values.
    """
    merged = {**issuer_metadata, **token_claims}
    if "{{" in template:
        try:
            return parse_template(template).execute(merged)
        except TemplateError as exc:
            raise AuthenticationError(str(exc)) from exc
    try:
        return merged[template]
    except KeyError:
        details = json.dumps(dict(log_metadata), indent="\t", sort_keys=True)
        raise AuthenticationError(
            f"value <{template}> not present in either claims or defaults. {details}"
        ) from None


@dataclass
class CIPrincipal(Principal):
    """A CI workflow identity with the metadata of its provider."""

    token: IDToken
    claims_metadata: IssuerMetadata

    def name(self) -> str:
        return self.token.subject

    def embed(self, cert: Certificate) -> None:
        metadata = self.claims_metadata
        defaults = metadata.default_template_values
        claims = _token_claims(self.token)
        issuer = self.token.issuer
        if not metadata.subject_alternative_name_template.strip():
            raise AuthenticationError(
                f"SubjectAlternativeNameTemplate should not be empty. Issuer: {issuer}"
            )
        san = apply_template_or_replace(
            metadata.subject_alternative_name_template,
            claims,
            defaults,
            {"Issuer": issuer, "ExtensionName": "SubjectAlternativeName"},
        )
        cert.uris = [_checked_url(san)]

        values: dict[str, str] = {}
        for f in dataclasses.fields(Extensions):
            text = getattr(metadata.extension_templates, f.name)
            if f.name == "issuer" or not text.strip():
                values[f.name] = text
                continue
            values[f.name] = apply_template_or_replace(
                text,
                claims,
                defaults,
                {"Issuer": issuer, "ExtensionName": _go_field_name(f.name)},
            )
        # The issuer always comes from the token, whatever the template says.
        values["issuer"] = issuer
        cert.extra_extensions = Extensions(**values).render()


def workflow_principal_from_id_token(token: IDToken) -> CIPrincipal:
    """Pair the token with the metadata of its issuer's CI provider."""
    config = current_config()
    if config is None:
        raise AuthenticationError("no configuration in effect")
    issuer_cfg = config.get_issuer(token.issuer)
    if issuer_cfg is None:
        raise AuthenticationError(f"configuration can not be loaded for issuer {token.issuer}")
    metadata = config.ci_issuer_metadata.get(issuer_cfg.ci_provider)
    if metadata is None:
        raise AuthenticationError(
            f"metadata not found for ci provider {issuer_cfg.ci_provider}, issuer: {token.issuer}"
        )
    return CIPrincipal(token=token, claims_metadata=metadata)