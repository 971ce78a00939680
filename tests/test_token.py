import time
from unittest import mock

import jwt
import pytest
import requests
from cryptography.hazmat.primitives.asymmetric import ec

from certidentity.token import (
    IDTokenVerifier,
    OIDCProvider,
    TokenError,
    VerifierConfig,
    extract_issuer_url,
)

ISSUER = "https://issuer.example.com"


@pytest.fixture(scope="module")
def key():
    return ec.generate_private_key(ec.SECP256R1())


def _sign(key, **claims):
    base = {"iss": ISSUER, "sub": "subject", "aud": "sigstore", "exp": int(time.time()) + 600}
    base.update(claims)
    return jwt.encode(base, key, algorithm="ES256")


def _verifier(key, **cfg):
    return IDTokenVerifier(ISSUER, lambda raw: key.public_key(), VerifierConfig(**cfg), ("ES256",))


def test_extract_issuer_url(key):
    assert extract_issuer_url(_sign(key)) == ISSUER


@pytest.mark.parametrize("raw", ["abc", "a.b", "a.!!!.c", "a.bm90anNvbg.c"])
def test_extract_issuer_url_malformed(raw):
    with pytest.raises(TokenError):
        extract_issuer_url(raw)


def test_verify_ok(key):
    tok = _verifier(key, client_id="sigstore").verify(_sign(key, email="alice@example.com"))
    assert tok.issuer == ISSUER
    assert tok.subject == "subject"
    assert tok.audience == ("sigstore",)
    assert tok.claims["email"] == "alice@example.com"


def test_wrong_audience(key):
    with pytest.raises(TokenError):
        _verifier(key, client_id="other").verify(_sign(key))


def test_expired_and_skip(key):
    raw = _sign(key, exp=int(time.time()) - 600)
    with pytest.raises(TokenError):
        _verifier(key, client_id="sigstore").verify(raw)
    assert _verifier(key, client_id="sigstore", skip_expiry_check=True).verify(raw).subject == "subject"


def test_wrong_issuer(key):
    with pytest.raises(TokenError):
        _verifier(key, client_id="sigstore").verify(_sign(key, iss="https://other.example.com"))


def test_bad_signature(key):
    other = ec.generate_private_key(ec.SECP256R1())
    with pytest.raises(TokenError):
        _verifier(key, client_id="sigstore").verify(_sign(other))


def test_config_equality():
    assert VerifierConfig("sigstore") == VerifierConfig("sigstore")
    assert VerifierConfig("sigstore") != VerifierConfig("sigstore", skip_expiry_check=True)


def _response(doc):
    resp = mock.Mock()
    resp.json.return_value = doc
    resp.raise_for_status.return_value = None
    return resp


def test_discover():
    doc = {"issuer": ISSUER, "jwks_uri": ISSUER + "/keys"}
    with mock.patch("requests.get", return_value=_response(doc)) as get:
        provider = OIDCProvider.discover(ISSUER, 10)
    assert provider.jwks_uri == ISSUER + "/keys"
    assert get.call_args[0][0] == ISSUER + "/.well-known/openid-configuration"


def test_discover_issuer_mismatch():
    doc = {"issuer": "https://other.example.com", "jwks_uri": "x"}
    with mock.patch("requests.get", return_value=_response(doc)):
        with pytest.raises(TokenError):
            OIDCProvider.discover(ISSUER, 10)


def test_discover_network_error():
    with mock.patch("requests.get", side_effect=requests.ConnectionError("down")):
        with pytest.raises(TokenError):
            OIDCProvider.discover(ISSUER, 10)