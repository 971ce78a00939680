import pytest

from certidentity.base import AuthenticationError, Certificate
from certidentity.chainguard import (
    ChainguardIssuer,
    WorkflowPrincipal,
    principal_from_id_token,
    subject_from_token,
)
from certidentity.token import IDToken, TokenError

GROUP = "0123456789abcdef0123456789abcdef01234567"
IDENT = GROUP + "/89abcdef01234567"
ISSUER = "https://issuer.enforce.dev"
ISSUER_V2_OID = "1.3.6.1.4.1.57264.1.8"

SERVICE_ACTOR = {"iss": "https://iss.example.com/", "sub": f"catalog-syncer:{GROUP}", "aud": "chainguard"}
HUMAN_ACTOR = {"iss": "https://auth.chainguard.dev/", "sub": "google-oauth2|1234567890", "aud": "fdsaldfkjhasldf"}


def _token(claims):
    return IDToken(issuer=claims["iss"], subject=claims["sub"], claims=claims)


def _utf8_value(cert, oid):
    value = {ext.oid: ext.value for ext in cert.extra_extensions}[oid]
    assert value[0] == 0x0C
    assert value[1] == len(value) - 2
    return value[2:].decode()


def test_issuer_match():
    issuer = ChainguardIssuer("test-issuer-url")
    assert issuer.match("test-issuer-url") is True
    assert issuer.match("some-other-url") is False


def test_issuer_authenticate():
    token = _token({
        "iss": "https://iss.example.com",
        "sub": IDENT,
        "act": SERVICE_ACTOR,
        "internal": {"service-principal": "CATALOG_SYNCER"},
    })
    issuer = ChainguardIssuer("test-issuer-url", authorizer=lambda raw, *opts: token)
    assert issuer.authenticate("token").name() == IDENT


def test_issuer_authenticate_wraps_errors():
    def failing(raw, *opts):
        raise TokenError("oidc: token is expired")

    with pytest.raises(AuthenticationError, match="authorizing chainguard issuer: oidc: token is expired"):
        ChainguardIssuer("test-issuer-url", authorizer=failing).authenticate("token")


@pytest.mark.parametrize(
    "claims, expected",
    [
        (
            {"iss": ISSUER, "sub": IDENT, "act": SERVICE_ACTOR,
             "internal": {"service-principal": "CATALOG_SYNCER"}},
            WorkflowPrincipal(issuer=ISSUER, subject=IDENT, principal_name=IDENT,
                              actor=SERVICE_ACTOR, service_principal="CATALOG_SYNCER"),
        ),
        (
            {"iss": ISSUER, "sub": GROUP, "act": HUMAN_ACTOR},
            WorkflowPrincipal(issuer=ISSUER, subject=GROUP, principal_name=GROUP, actor=HUMAN_ACTOR),
        ),
        (
            {"iss": ISSUER, "sub": GROUP, "email": "alice@example.com", "email_verified": True,
             "act": HUMAN_ACTOR},
            WorkflowPrincipal(issuer=ISSUER, subject=GROUP, principal_name="alice@example.com",
                              actor=HUMAN_ACTOR),
        ),
    ],
    ids=["service principal", "human sso", "human sso with email"],
)
def test_principal_from_id_token(claims, expected):
    assert principal_from_id_token(_token(claims)) == expected


def test_unverified_email_is_rejected():
    token = _token({"iss": ISSUER, "sub": GROUP, "email": "alice@example.com", "email_verified": False})
    with pytest.raises(AuthenticationError, match="not verified"):
        subject_from_token(token)


def test_missing_subject_is_rejected():
    token = IDToken(issuer=ISSUER, claims={"iss": ISSUER})
    with pytest.raises(AuthenticationError, match="no subject"):
        subject_from_token(token)


@pytest.mark.parametrize("subject, actor", [(IDENT, SERVICE_ACTOR), (GROUP, HUMAN_ACTOR)])
def test_embed(subject, actor):
    cert = Certificate()
    WorkflowPrincipal(issuer=ISSUER, subject=subject, actor=actor).embed(cert)
    assert cert.uris == [f"https://issuer.enforce.dev/{subject}"]
    assert _utf8_value(cert, ISSUER_V2_OID) == ISSUER


def test_embed_joins_onto_issuer_path():
    cert = Certificate()
    WorkflowPrincipal(issuer="https://issuer.example.com/base/", subject="child").embed(cert)
    assert cert.uris == ["https://issuer.example.com/base/child"]