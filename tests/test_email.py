import pytest

from certidentity.base import AuthenticationError, Certificate
from certidentity.config import FulcioConfig, IssuerType, OIDCIssuer, use_config
from certidentity.email import (
    EmailIssuer,
    EmailPrincipal,
    email_from_id_token,
    is_email,
    issuer_from_id_token,
    principal_from_id_token,
)
from certidentity.token import IDToken

ISSUER_OID = "1.3.6.1.4.1.57264.1.1"


def plain_config():
    return FulcioConfig(oidc_issuers={
        "https://iss.example.com": OIDCIssuer(
            issuer_url="https://iss.example.com",
            type=IssuerType.EMAIL.value,
            client_id="sigstore",
        ),
    })


def dex_config():
    return FulcioConfig(oidc_issuers={
        "https://dex.other.com": OIDCIssuer(
            issuer_url="https://dex.other.com",
            issuer_claim="$.federated.issuer",
            type=IssuerType.EMAIL.value,
            client_id="sigstore",
        ),
    })


def make_token(claims):
    return IDToken(issuer=claims["iss"], subject=claims["sub"], claims=dict(claims))


def test_issuer_match():
    issuer = EmailIssuer("test-issuer-url")
    assert issuer.match("test-issuer-url") is True
    assert issuer.match("some-other-url") is False


def test_issuer_authenticate():
    token = IDToken(
        issuer="https://iss.example.com",
        subject="subject",
        claims={
            "aud": "sigstore",
            "iss": "https://iss.example.com",
            "sub": "doesntmatter",
            "email": "alice@example.com",
            "email_verified": True,
        },
    )
    issuer = EmailIssuer("test-issuer-url", authorizer=lambda raw, *opts: token)
    with use_config(plain_config()):
        principal = issuer.authenticate("token")
    assert principal.name() == "alice@example.com"


@pytest.mark.parametrize(
    "claims, config, expected",
    [
        (
            {"aud": "sigstore", "iss": "https://iss.example.com", "sub": "doesntmatter",
             "email": "alice@example.com", "email_verified": True},
            plain_config,
            EmailPrincipal(address="alice@example.com", issuer="https://iss.example.com"),
        ),
        (
            {"aud": "sigstore", "iss": "https://dex.other.com", "sub": "doesntmatter",
             "email": "alice@example.com", "email_verified": True,
             "federated": {"issuer": "https://example.com"}},
            dex_config,
            EmailPrincipal(address="alice@example.com", issuer="https://example.com"),
        ),
        (
            {"aud": "sigstore", "iss": "https://dex.other.com", "sub": "doesntmatter",
             "email": "alice@example.com", "email_verified": "true",
             "federated": {"issuer": "https://example.com"}},
            dex_config,
            EmailPrincipal(address="alice@example.com", issuer="https://example.com"),
        ),
    ],
    ids=["well formed", "custom issuer claim", "string email verified"],
)
def test_principal_from_id_token(claims, config, expected):
    with use_config(config()):
        assert principal_from_id_token(make_token(claims)) == expected


@pytest.mark.parametrize(
    "claims, config",
    [
        ({"aud": "sigstore", "iss": "https://dex.other.com", "sub": "doesntmatter",
          "email": "alice@example.com", "email_verified": True}, dex_config),
        ({"aud": "sigstore", "iss": "https://iss.example.com", "sub": "doesntmatter",
          "email": "alice@example.com", "email_verified": False}, plain_config),
        ({"aud": "sigstore", "iss": "https://iss.example.com", "sub": "doesntmatter",
          "email_verified": True}, plain_config),
        ({"aud": "sigstore", "iss": "https://iss.example.com", "sub": "doesntmatter",
          "email": "foo.com", "email_verified": True}, plain_config),
        ({"aud": "sigstore", "iss": "https://nope.example.com", "sub": "doesntmatter",
          "email": "alice@example.com", "email_verified": True}, plain_config),
    ],
    ids=["issuer claim missing", "not verified", "missing email", "invalid email", "no issuer"],
)
def test_principal_from_id_token_errors(claims, config):
    with use_config(config()):
        with pytest.raises(AuthenticationError):
            principal_from_id_token(make_token(claims))


def test_unverified_email_message():
    claims = {"iss": "https://iss.example.com", "sub": "s",
              "email": "alice@example.com", "email_verified": False}
    with use_config(plain_config()):
        with pytest.raises(AuthenticationError, match="email_verified claim was false"):
            principal_from_id_token(make_token(claims))


def test_name():
    claims = {"aud": "sigstore", "iss": "https://iss.example.com", "sub": "doesntmatter",
              "email": "alice@example.com", "email_verified": True}
    with use_config(plain_config()):
        principal = principal_from_id_token(make_token(claims))
    assert principal.name() == "alice@example.com"


def test_embed():
    cert = Certificate()
    EmailPrincipal(address="alice@example.com", issuer="https://iss.example.com").embed(cert)
    assert cert.email_addresses == ["alice@example.com"]
    values = {ext.oid: ext.value for ext in cert.extra_extensions}
    assert values[ISSUER_OID] == b"https://iss.example.com"


@pytest.mark.parametrize(
    "address, valid",
    [
        ("alice@example.com", True),
        ("alice.smith+tag@mail.example.com", True),
        ("foo.com", False),
        ("alice@localhost", False),
        ("@example.com", False),
    ],
)
def test_is_email(address, valid):
    assert is_email(address) is valid


@pytest.mark.parametrize("verified, expected", [("1", True), ("F", False), (True, True)])
def test_email_from_id_token_verified_forms(verified, expected):
    token = IDToken(claims={"email": "alice@example.com", "email_verified": verified})
    assert email_from_id_token(token) == ("alice@example.com", expected)


def test_email_from_id_token_bad_verified():
    token = IDToken(claims={"email": "alice@example.com", "email_verified": "maybe"})
    with pytest.raises(AuthenticationError):
        email_from_id_token(token)


def test_issuer_from_id_token_paths():
    token = IDToken(issuer="https://iss.example.com",
                    claims={"federated": {"issuer": "https://example.com"}})
    assert issuer_from_id_token(token, "") == "https://iss.example.com"
    assert issuer_from_id_token(token, "$.federated.issuer") == "https://example.com"
    with pytest.raises(AuthenticationError):
        issuer_from_id_token(token, "$.federated.missing")
    with pytest.raises(AuthenticationError):
        issuer_from_id_token(token, "$.federated")