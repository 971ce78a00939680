[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "certidentity"
version = "0.1.0"
description = "OIDC issuer configuration, token verification and identity principals for a code-signing certificate authority"
requires-python = ">=3.10"
keywords = [
    "oidc",
    "jwt",
    "x509",
    "certificate-authority",
    "code-signing",
    "identity",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Security :: Cryptography",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "pyyaml>=6.0",
    "cachetools>=5.3",
    "requests>=2.31",
    "pyjwt[crypto]>=2.8",
    "cryptography>=42.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
]

[tool.hatch.build.targets.wheel]
packages = ["certidentity"]

[tool.hatch.build.targets.sdist]
include = [
    "certidentity",
    "tests",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
