# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/clusterbed/identity/authority.py

"""
Private certificate authority and per-node TLS identities.

The node processes read their identity as files, so every artifact is
persisted as PEM next to being returned in memory:

    <work_dir>/ca/ca.pem          CA certificate
    <work_dir>/ca/ca_key.pem      CA key (debugging only)
    <work_dir>/<node>/cert.pem    leaf certificate
    <work_dir>/<node>/key.pem     leaf key
"""

from __future__ import annotations

import ipaddress
import logging
import os
import ssl
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, List, Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from ..errors import CryptoFailure, IOFailure

log = logging.getLogger("clusterbed")

CLOCK_SKEW = timedelta(seconds=30)
VALIDITY = timedelta(hours=262980)

LOOPBACK_IPS = (ipaddress.ip_address("::1"), ipaddress.ip_address("127.0.0.1"))
HOST_BRIDGE_ALIAS = "host.docker.internal"

CA_CERT_FILE = "ca.pem"
CA_KEY_FILE = "ca_key.pem"
LEAF_CERT_FILE = "cert.pem"
LEAF_KEY_FILE = "key.pem"

_CRYPTO_ERRORS = (ValueError, TypeError, UnsupportedAlgorithm, InvalidSignature)


@dataclass(frozen=True)
class CertificateAuthority:
    cert: x509.Certificate
    key: ec.EllipticCurvePrivateKey
    cert_der: bytes
    cert_pem: bytes
    key_pem: bytes
    cert_file: Path
    key_file: Path
    pinned: bool = False


@dataclass(frozen=True)
class LeafIdentity:
    name: str
    cert: x509.Certificate
    key: ec.EllipticCurvePrivateKey
    cert_pem: bytes
    key_pem: bytes
    cert_file: Path
    key_file: Path


# ---------------------------------------------------------------------
# PEM helpers
# ---------------------------------------------------------------------
def _key_pem(key: ec.EllipticCurvePrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _load_cert(data: bytes) -> x509.Certificate:
    # Pinned certs arrive either PEM-armoured or as raw DER.
    if b"-----BEGIN" in data:
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def _load_key(data: bytes) -> ec.EllipticCurvePrivateKey:
    key = serialization.load_pem_private_key(data, password=None)
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise CryptoFailure(f"CA key must be an EC key, got {type(key).__name__}")
    return key


def _same_public_key(cert: x509.Certificate, key: ec.EllipticCurvePrivateKey) -> bool:
    fmt = (serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)
    return cert.public_key().public_bytes(*fmt) == key.public_key().public_bytes(*fmt)


def _write(path: Path, data: bytes, mode: int = 0o644) -> None:
    # Mode is set on the descriptor before any byte lands, including
    # when an earlier run left the file behind with wider permissions.
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "wb") as fh:
            os.fchmod(fh.fileno(), mode)
            fh.write(data)
    except OSError as exc:
        raise IOFailure(f"failed to write {path}: {exc}") from exc


def _validity() -> tuple[datetime, datetime]:
    now = datetime.now(timezone.utc)
    return now - CLOCK_SKEW, now + VALIDITY


def _general_names(names: Iterable[str]) -> List[x509.GeneralName]:
    # Deduplicated on the parsed value, so "::1" and "0::1" collapse.
    out: List[x509.GeneralName] = []
    for n in names:
        if not n:
            continue
        try:
            gn: x509.GeneralName = x509.IPAddress(ipaddress.ip_address(n))
        except ValueError:
            gn = x509.DNSName(n)
        if gn not in out:
            out.append(gn)
    return out


# ---------------------------------------------------------------------
# Authority
# ---------------------------------------------------------------------
def _self_signed_ca(key: ec.EllipticCurvePrivateKey) -> x509.Certificate:
    not_before, not_after = _validity()
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "localhost")])
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=False,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.SubjectAlternativeName(
                [x509.DNSName("localhost")] + [x509.IPAddress(ip) for ip in LOOPBACK_IPS]
            ),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )


def create_authority(
    ca_dir: Path,
    *,
    existing_key: Optional[bytes] = None,
    existing_cert: Optional[bytes] = None,
) -> CertificateAuthority:
    """
    Create (or adopt) the cluster's root CA and persist it under *ca_dir*.

    existing_key: PEM EC private key to reuse instead of generating one.
    existing_cert: PEM or DER CA certificate to reuse. Requires existing_key,
        and the two must belong together.

    Raises CryptoFailure on any generation/parse/sign error and IOFailure
    when the PEM files cannot be written.
    """
    if existing_cert is not None and existing_key is None:
        raise CryptoFailure("a pinned CA certificate needs its private key")

    try:
        if existing_key is not None:
            key = _load_key(existing_key)
        else:
            key = ec.generate_private_key(ec.SECP256R1())

        if existing_cert is not None:
            cert = _load_cert(existing_cert)
            if not _same_public_key(cert, key):
                raise CryptoFailure("pinned CA certificate does not match its private key")
        else:
            cert = _self_signed_ca(key)

        cert_der = cert.public_bytes(serialization.Encoding.DER)
        cert_pem = cert.public_bytes(serialization.Encoding.PEM)
        key_pem = _key_pem(key)
    except _CRYPTO_ERRORS as exc:
        raise CryptoFailure(f"failed to provision CA: {exc}") from exc

    ca_dir = Path(ca_dir)
    cert_file = ca_dir / CA_CERT_FILE
    key_file = ca_dir / CA_KEY_FILE
    _write(cert_file, cert_pem)
    # Not consumed by any node; kept for debugging.
    _write(key_file, key_pem, mode=0o600)

    pinned = existing_cert is not None
    log.debug("[ca] %s CA serial=%x -> %s", "pinned" if pinned else "generated", cert.serial_number, cert_file)
    return CertificateAuthority(
        cert=cert,
        key=key,
        cert_der=cert_der,
        cert_pem=cert_pem,
        key_pem=key_pem,
        cert_file=cert_file,
        key_file=key_file,
        pinned=pinned,
    )


def load_authority(ca_dir: Path) -> CertificateAuthority:
    """Re-open a CA previously persisted by create_authority."""
    ca_dir = Path(ca_dir)
    try:
        cert_pem = (ca_dir / CA_CERT_FILE).read_bytes()
        key_pem = (ca_dir / CA_KEY_FILE).read_bytes()
    except OSError as exc:
        raise IOFailure(f"failed to read CA from {ca_dir}: {exc}") from exc
    return create_authority(ca_dir, existing_key=key_pem, existing_cert=cert_pem)


# ---------------------------------------------------------------------
# Leaf identities
# ---------------------------------------------------------------------
def issue_leaf(
    authority: CertificateAuthority,
    subject_name: str,
    alt_names: Iterable[str] = (),
    *,
    out_dir: Path,
) -> LeafIdentity:
    """
    Issue a server+client identity for one node, signed by *authority*.

    A fresh key is generated on every call. SANs always cover loopback,
    the host-bridge alias and *subject_name*; *alt_names* may mix DNS
    names and IP literals.
    """
    not_before, not_after = _validity()
    names = ["localhost", HOST_BRIDGE_ALIAS, subject_name, *alt_names]
    sans = _general_names([*names, *map(str, LOOPBACK_IPS)])

    try:
        key = ec.generate_private_key(ec.SECP256R1())
        cert = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject_name)]))
            .issuer_name(authority.cert.subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(x509.SubjectAlternativeName(sans), critical=False)
            .add_extension(
                x509.ExtendedKeyUsage(
                    [ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]
                ),
                critical=False,
            )
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=True,
                    data_encipherment=False,
                    key_agreement=True,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .sign(authority.key, hashes.SHA256())
        )
        cert_pem = cert.public_bytes(serialization.Encoding.PEM)
        key_pem = _key_pem(key)
    except _CRYPTO_ERRORS as exc:
        raise CryptoFailure(f"failed to issue certificate for {subject_name}: {exc}") from exc

    out_dir = Path(out_dir)
    cert_file = out_dir / LEAF_CERT_FILE
    key_file = out_dir / LEAF_KEY_FILE
    _write(cert_file, cert_pem)
    _write(key_file, key_pem, mode=0o600)

    log.debug("[ca] issued %s serial=%x -> %s", subject_name, cert.serial_number, cert_file)
    return LeafIdentity(
        name=subject_name,
        cert=cert,
        key=key,
        cert_pem=cert_pem,
        key_pem=key_pem,
        cert_file=cert_file,
        key_file=key_file,
    )


def server_ssl_context(
    leaf: LeafIdentity,
    authority: CertificateAuthority,
    *,
    require_client_auth: bool = False,
) -> ssl.SSLContext:
    """
    TLS server configuration for a node, reloaded from the persisted files
    so that what the node process will read is exactly what we validate.
    """
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    try:
        ctx.load_cert_chain(str(leaf.cert_file), str(leaf.key_file))
        ctx.load_verify_locations(cadata=authority.cert_pem.decode("ascii"))
    except (ssl.SSLError, OSError) as exc:
        raise CryptoFailure(f"failed to reload TLS identity for {leaf.name}: {exc}") from exc
    ctx.verify_mode = ssl.CERT_REQUIRED if require_client_auth else ssl.CERT_OPTIONAL
    ctx.set_alpn_protocols(["h2", "http/1.1"])
    return ctx
