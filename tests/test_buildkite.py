import pytest

from certidentity.base import AuthenticationError, Certificate
from certidentity.buildkite import BuildkiteIssuer, JobPrincipal, job_principal_from_id_token
from certidentity.token import IDToken

SUBJECT = (
    "organization:acme-inc:pipeline:bash-example:ref:refs/heads/main:"
    "commit:aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa:step:build"
)
ISSUER_OID = "1.3.6.1.4.1.57264.1.1"


def _token(claims):
    return IDToken(issuer=claims["iss"], subject=claims["sub"], claims=claims)


def _claims(**overrides):
    claims = {
        "aud": "sigstore",
        "exp": 0,
        "iss": "https://agent.buildkite.com",
        "organization_slug": "acme-inc",
        "pipeline_slug": "bash-example",
        "sub": SUBJECT,
    }
    claims.update(overrides)
    return {k: v for k, v in claims.items() if v is not None}


def test_issuer_match():
    issuer = BuildkiteIssuer("test-issuer-url")
    assert issuer.match("test-issuer-url") is True
    assert issuer.match("some-other-url") is False


def test_issuer_authenticate():
    token = IDToken(issuer="https://iss.example.com", subject=SUBJECT, claims=_claims())
    issuer = BuildkiteIssuer("test-issuer-url", authorizer=lambda raw, *opts: token)
    principal = issuer.authenticate("token")
    assert principal.name() == SUBJECT


def test_issuer_authenticate_propagates_errors():
    def failing(raw, *opts):
        raise AuthenticationError("unsupported issuer: x")

    with pytest.raises(AuthenticationError, match="unsupported issuer"):
        BuildkiteIssuer("test-issuer-url", authorizer=failing).authenticate("token")


def test_principal_from_valid_token():
    principal = job_principal_from_id_token(_token(_claims()))
    assert principal == JobPrincipal(
        issuer="https://agent.buildkite.com",
        subject=SUBJECT,
        url="https://buildkite.com/acme-inc/bash-example",
    )


@pytest.mark.parametrize(
    "missing, message",
    [("organization_slug", "organization_slug"), ("pipeline_slug", "pipeline_slug")],
)
def test_principal_missing_claim(missing, message):
    with pytest.raises(AuthenticationError, match=message):
        job_principal_from_id_token(_token(_claims(**{missing: None})))


def test_name_is_subject():
    assert job_principal_from_id_token(_token(_claims())).name() == SUBJECT


def test_embed_sets_uri_and_issuer():
    cert = Certificate()
    JobPrincipal(issuer="https://agent.buildkite.com", subject="doesntmatter",
                 url="https://buildkite.com/foo/bar").embed(cert)
    assert cert.uris == ["https://buildkite.com/foo/bar"]
    values = {ext.oid: ext.value for ext in cert.extra_extensions}
    assert values[ISSUER_OID] == b"https://agent.buildkite.com"


def test_embed_bad_url_fails():
    cert = Certificate()
    with pytest.raises(AuthenticationError):
        JobPrincipal(issuer="", subject="doesntmatter", url="\nbadurl").embed(cert)
    assert cert.uris == []