"""RBAC, rate limiting, rule models, TLS settings and HTTP instrumentation for WSGI gateways."""

__version__ = "0.1.0"

__all__ = [
    "rbac",
    "ratelimit",
    "tlsconfig",
    "rules_models",
    "rules_client",
    "server",
]