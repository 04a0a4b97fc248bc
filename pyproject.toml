[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "obsapi"
version = "0.1.0"
description = "Building blocks for a multi-tenant observability API gateway: RBAC, rate limiting, rule models, TLS settings and HTTP instrumentation for WSGI applications."
requires-python = ">=3.10"
keywords = ["observability", "rbac", "rate-limiting", "prometheus", "rules", "wsgi", "multi-tenant", "tls"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Middleware",
]
dependencies = [
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["obsapi"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
