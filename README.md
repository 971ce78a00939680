# certidentity

The identity layer of a code-signing certificate authority: it decides which
OpenID Connect issuers are trusted, verifies their ID tokens, turns the claims
in those tokens into a *principal*, and records that principal's identity in a
certificate being prepared.

## Modules

| Module | Purpose |
| --- | --- |
| `certidentity.config` | Issuer configuration: loading, validation, wildcard ("meta") issuers, verifier caching, certificate extensions |
| `certidentity.token` | ID tokens, issuer discovery and token verification |
| `certidentity.gotemplate` | A small template engine for `{{ .claim }}`-style extension templates |
| `certidentity.base` | `Principal`, `Certificate`, `BaseIssuer` and `authorize` |
| `certidentity.email` | Issuers whose tokens carry a verified e-mail address |
| `certidentity.buildkite` | Buildkite job tokens |
| `certidentity.chainguard` | Chainguard identity tokens |
| `certidentity.ciprovider` | Generic CI providers driven by templates in the configuration |

## Installing

```
pip install certidentity
```

Python 3.10 or later is required.

## Configuration

A configuration lists exact issuers, wildcard issuers and, for generic CI
providers, the templates that map token claims to certificate extensions. It
may be JSON (keys such as `OIDCIssuers`, `ClientID`, matched without regard to
case) or YAML (keys such as `oidc-issuers`, `client-id`):

```yaml
oidc-issuers:
  https://accounts.google.com:
    issuer-url: https://accounts.google.com
    client-id: example-client
    type: email
meta-issuers:
  https://oidc.eks.*.amazonaws.com/id/*:
    client-id: example-client
    type: kubernetes
  https://oidc.foo.*.bar.com/id/*:
    client-id: example-client
    type: ci-provider
    ci-provider: github-workflow
ci-issuer-metadata:
  github-workflow:
    default-template-values:
      url: https://github.com
    extension-templates:
      build-trigger: event_name
      source-repository-uri: "{{ .url }}/{{ .repository }}"
    subject-alternative-name-template: "{{ .url }}/{{ .job_workflow_ref }}"
```

`load(config_path)` reads such a file and falls back to `default_config()` when
the file does not exist; `read(data)` parses bytes or text already in memory.
`parse_config(data)` only parses, and `validate_config(config)` only checks.
Problems are raised as `ConfigError`, for example:

- a `spiffe` issuer without a valid trust domain, or a `spiffe` meta issuer;
- a `uri` issuer whose subject domain lacks a scheme, uses a different scheme
  from the issuer, or lies under a different top- and second-level domain;
- a `username` issuer whose subject domain has a scheme, or whose issuer URL
  has none;
- an issuer claim on anything but an `email` issuer;
- an issuer type with no challenge claim (see `issuer_to_challenge_claim`);
- an extension or subject-alternative-name template that does not parse.

Loading or reading a configuration also fetches the discovery document of
every exact issuer to build its verifier; an issuer that cannot be reached is
logged and skipped. If `https://kubernetes.default.svc` is among the issuers,
its CA bundle is read from `/var/run/fulcio/ca.crt` and set as
`REQUESTS_CA_BUNDLE`.

```python
from certidentity.config import load

config = load("/etc/identity/config.yaml")
issuer = config.get_issuer("https://oidc.eks.us-west-2.amazonaws.com/id/CLUSTERIDENTIFIER")
# an OIDCIssuer for that URL, or None if nothing matches
```

A `*` in a meta issuer matches one run of letters, digits, `-` and `_`, so it
never spans a `.` or a `/`. `meta_regex(issuer)` gives the compiled pattern.

`get_verifier(issuer_url, *options)` returns an `IDTokenVerifier` for a
configured issuer, reusing one built at load time or kept in a small LRU
cache, and discovering the provider otherwise; it returns `None` for an
unknown issuer or a failed discovery. `with_skip_expiry_check()` is an option
that turns off the expiry check.

`to_issuers()` lists every configured issuer as a `ProtoIssuer` with its
audience, challenge claim and type, exact issuers before wildcard ones.

`use_config(config)` is a context manager that makes a configuration current
for the identity modules; `current_config()` returns it, or `None`.

The domain rules are available on their own:

```python
from certidentity.config import ConfigError, validate_allowed_domain

validate_allowed_domain("users.example.com", "accounts.example.com")  # accepted

try:
    validate_allowed_domain("example.com", "example.org")
except ConfigError as err:
    print(err)
```

## Tokens

`certidentity.token` provides `extract_issuer_url(token)`, which reads the
unverified `iss` claim of a raw JWT; `OIDCProvider.discover(issuer_url,
timeout)` and `OIDCProvider.verifier(config)`; and
`IDTokenVerifier.verify(raw_token)`, which checks signature, issuer, audience
and (unless `VerifierConfig.skip_expiry_check` is set) expiry, returning an
`IDToken`. Failures raise `TokenError`.

## Principals

Each issuer module offers an issuer class whose `authenticate(token, *options)`
verifies a raw token and returns a principal, and a function that builds the
principal from an already verified `IDToken`. By default issuers verify with
`certidentity.base.authorize`, which uses the current configuration; a
different callable can be passed as `BaseIssuer(issuer_url, authorizer=...)`.
`match(url)` tells whether a URL is the issuer's, wildcards included.

A principal has `name()` — the value the client must sign as proof of
possession — and `embed(cert)`, which fills the `uris` or `email_addresses`
and the `extra_extensions` of a `Certificate`.

- `EmailIssuer` / `EmailPrincipal`: needs an `email` claim and a true
  `email_verified` claim (a boolean or a string such as `"true"`); the
  certificate gets the address (for instance `alice@example.com`) and the
  issuer extension. An issuer claim path such as `$.federated.issuer` takes
  the issuer from inside the token instead.
- `BuildkiteIssuer` / `JobPrincipal`: needs `organization_slug` and
  `pipeline_slug`; the SAN is `https://buildkite.com/<organization>/<pipeline>`.
- `ChainguardIssuer` / `WorkflowPrincipal`: the name is the verified e-mail
  address if there is one, else the subject; the SAN is the issuer URL joined
  with the subject.
- `CIProviderIssuer` / `CIPrincipal`: the SAN and every extension come from
  the provider's templates in the configuration; the issuer extension always
  comes from the token.

Failures raise `AuthenticationError`.

```python
from certidentity.ciprovider import apply_template_or_replace

apply_template_or_replace(
    "{{ .url }}/{{ .repository }}",
    {"repository": "example/project"},
    {"url": "https://github.com"},
    {"Issuer": "https://token.actions.githubusercontent.com"},
)
# 'https://github.com/example/project'
```

A template containing `{{` is rendered against the token claims merged over
the defaults; any other value names a claim or default to copy. A missing key
is an error rather than an empty string.

## Templates

`certidentity.gotemplate.parse_template(text)` returns a `Template` whose
`execute(data)` renders it. It supports `{{ .field }}` lookups, literals,
`if`/`else`/`else if`/`end`, comments, `{{-`/`-}}` trimming and the functions
`eq`, `ne`, `not`, `and`, `or` and `len`. Output is HTML-escaped, and errors
raise `TemplateError`.

## What the package does not do

It does not sign or issue certificates: `Certificate` only holds the identity
fields a principal writes. It has no server and no command line, and it offers
no helpers for submitting certificates to a Certificate Transparency log.

## Running the tests

```
pip install "certidentity[test]"
pytest
```