"""Server-side TLS configuration."""

from __future__ import annotations

import logging
import ssl
from typing import Iterable

_log = logging.getLogger(__name__)


class TLSConfigError(Exception):
    """Raised when a TLS configuration cannot be built."""


_VERSIONS = {
    "VersionTLS10": ssl.TLSVersion.TLSv1,
    "VersionTLS11": ssl.TLSVersion.TLSv1_1,
    "VersionTLS12": ssl.TLSVersion.TLSv1_2,
    "VersionTLS13": ssl.TLSVersion.TLSv1_3,
}

DEFAULT_TLS_VERSION = ssl.TLSVersion.TLSv1_2

# IANA names mapped to OpenSSL names; TLS 1.3 suites are not configurable and map to None.
_CIPHER_SUITES: dict[str, str | None] = {
    "TLS_RSA_WITH_RC4_128_SHA": "RC4-SHA",
    "TLS_RSA_WITH_3DES_EDE_CBC_SHA": "DES-CBC3-SHA",
    "TLS_RSA_WITH_AES_128_CBC_SHA": "AES128-SHA",
    "TLS_RSA_WITH_AES_256_CBC_SHA": "AES256-SHA",
    "TLS_RSA_WITH_AES_128_CBC_SHA256": "AES128-SHA256",
    "TLS_RSA_WITH_AES_128_GCM_SHA256": "AES128-GCM-SHA256",
    "TLS_RSA_WITH_AES_256_GCM_SHA384": "AES256-GCM-SHA384",
    "TLS_ECDHE_ECDSA_WITH_RC4_128_SHA": "ECDHE-ECDSA-RC4-SHA",
    "TLS_ECDHE_ECDSA_WITH_AES_128_CBC_SHA": "ECDHE-ECDSA-AES128-SHA",
    "TLS_ECDHE_ECDSA_WITH_AES_256_CBC_SHA": "ECDHE-ECDSA-AES256-SHA",
    "TLS_ECDHE_RSA_WITH_RC4_128_SHA": "ECDHE-RSA-RC4-SHA",
    "TLS_ECDHE_RSA_WITH_3DES_EDE_CBC_SHA": "ECDHE-RSA-DES-CBC3-SHA",
    "TLS_ECDHE_RSA_WITH_AES_128_CBC_SHA": "ECDHE-RSA-AES128-SHA",
    "TLS_ECDHE_RSA_WITH_AES_256_CBC_SHA": "ECDHE-RSA-AES256-SHA",
    "TLS_ECDHE_ECDSA_WITH_AES_128_CBC_SHA256": "ECDHE-ECDSA-AES128-SHA256",
    "TLS_ECDHE_RSA_WITH_AES_128_CBC_SHA256": "ECDHE-RSA-AES128-SHA256",
    "TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256": "ECDHE-RSA-AES128-GCM-SHA256",
    "TLS_ECDHE_ECDSA_WITH_AES_128_GCM_SHA256": "ECDHE-ECDSA-AES128-GCM-SHA256",
    "TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384": "ECDHE-RSA-AES256-GCM-SHA384",
    "TLS_ECDHE_ECDSA_WITH_AES_256_GCM_SHA384": "ECDHE-ECDSA-AES256-GCM-SHA384",
    "TLS_ECDHE_RSA_WITH_CHACHA20_POLY1305": "ECDHE-RSA-CHACHA20-POLY1305",
    "TLS_ECDHE_ECDSA_WITH_CHACHA20_POLY1305": "ECDHE-ECDSA-CHACHA20-POLY1305",
    "TLS_ECDHE_RSA_WITH_CHACHA20_POLY1305_SHA256": "ECDHE-RSA-CHACHA20-POLY1305",
    "TLS_ECDHE_ECDSA_WITH_CHACHA20_POLY1305_SHA256": "ECDHE-ECDSA-CHACHA20-POLY1305",
    "TLS_AES_128_GCM_SHA256": None,
    "TLS_AES_256_GCM_SHA384": None,
    "TLS_CHACHA20_POLY1305_SHA256": None,
}


def tls_version(name: str) -> ssl.TLSVersion:
    """Map a version name such as VersionTLS12 to a TLS version; empty means the default."""
    if not name:
        return DEFAULT_TLS_VERSION
    try:
        return _VERSIONS[name]
    except KeyError:
        raise TLSConfigError(f"unknown tls version {name!r}") from None


def tls_cipher_suites(names: Iterable[str] | None) -> list[str] | None:
    """Map IANA cipher suite names to OpenSSL names; None when no names are given."""
    names = list(names or ())
    if not names:
        return None
    result: list[str] = []
    for name in names:
        if name not in _CIPHER_SUITES:
            raise TLSConfigError(f"Cipher suite {name} not supported or doesn't exist")
        openssl_name = _CIPHER_SUITES[name]
        if openssl_name is not None and openssl_name not in result:
            result.append(openssl_name)
    return result


def new_server_config(
    logger: logging.Logger | None,
    cert_file: str,
    key_file: str,
    min_version: str,
    cipher_suites: Iterable[str] | None,
) -> ssl.SSLContext | None:
    """Build a server SSL context, or return None when neither cert nor key is set."""
    logger = logger or _log
    if not cert_file and not key_file:
        logger.info("TLS disabled; key and cert must be set to enable")
        return None

    logger.info("enabling server side TLS")

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    try:
        context.load_cert_chain(cert_file, key_file)
    except (OSError, ValueError) as err:
        raise TLSConfigError(f"server credentials: {err}") from err

    try:
        context.minimum_version = tls_version(min_version)
    except TLSConfigError as err:
        raise TLSConfigError(f"TLS version invalid: {err}") from err

    try:
        ciphers = tls_cipher_suites(cipher_suites)
        if ciphers:
            context.set_ciphers(":".join(ciphers))
    except (TLSConfigError, ssl.SSLError) as err:
        raise TLSConfigError(f"TLS cipher suite name to ID conversion: {err}") from err

    context.verify_mode = ssl.CERT_OPTIONAL
    return context