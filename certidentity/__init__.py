"""OIDC issuer configuration, token verification and identity principals for certificate issuance."""

__version__ = "0.1.0"