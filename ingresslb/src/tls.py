from __future__ import annotations

import base64
import binascii
import logging
import os
from hashlib import sha256
from typing import Any

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID

from ingresslb.src.events import object_key
from ingresslb.src.mirror import Store
from ingresslb.src.model import TLSCred, sort_and_dedup_creds

LOGGER = logging.getLogger(__name__)

TLS_CERT_KEY = "tls.crt"
TLS_PRIVATE_KEY_KEY = "tls.key"


class TLSCredError(ValueError):
    """Raised when a Secret cannot be turned into a usable certificate/key pair."""


def tls_cred_identity(namespace: str, name: str) -> str:
    """Return the stable identity for the Secret ``namespace/name``.

    Depends only on the Secret identity, never on its content, so file paths
    derived from it stay the same while a certificate is rotated.
    """
    return sha256(f"{namespace}/{name}".encode()).hexdigest()


def content_checksum(key: bytes, cert: bytes) -> str:
    digest = sha256()
    digest.update(key)
    digest.update(b"\0")
    digest.update(cert)
    return digest.hexdigest()


def certificate_names(cert_pem: bytes) -> list[str]:
    """Return subject common names and alternative names of the leaf certificate.

    Raises :class:`TLSCredError` when the PEM data holds no decodable
    certificate or the certificate names nothing.
    """
    try:
        certificates = x509.load_pem_x509_certificates(cert_pem)
    except ValueError as exc:
        raise TLSCredError(f"could not decode certificate: {exc}") from exc
    leaf = certificates[0]

    names = [
        str(attribute.value)
        for attribute in leaf.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    ]
    try:
        alternative = leaf.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        alternative = None
    if alternative is not None:
        names.extend(alternative.get_values_for_type(x509.DNSName))
        names.extend(str(ip) for ip in alternative.get_values_for_type(x509.IPAddress))

    if not names:
        raise TLSCredError("certificate has neither a common name nor a subject alternative name")
    return names


def check_private_key(key_pem: bytes) -> None:
    try:
        serialization.load_pem_private_key(key_pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise TLSCredError(f"could not decode private key: {exc}") from exc


def _secret_field(secret: Any, field_name: str) -> bytes:
    data = getattr(secret, "data", None) or {}
    value = data.get(field_name)
    if value is None:
        raise TLSCredError(f"Secret {object_key(secret)} has no {field_name}")
    if isinstance(value, bytes):
        return value
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise TLSCredError(f"Secret {object_key(secret)} has malformed {field_name}") from exc


class TLSCredResolver:
    """Turns TLS Secrets into validated :class:`TLSCred` values.

    Credential files live under ``tls_dir``; the resolver only computes
    their paths, writing them is up to the proxy sink.
    """

    def __init__(self, secrets: Store, tls_dir: str) -> None:
        self.secrets = secrets
        self.tls_dir = tls_dir

    def resolve(self, secret: Any) -> TLSCred:
        metadata = getattr(secret, "metadata", None)
        namespace = getattr(metadata, "namespace", None) or ""
        name = getattr(metadata, "name", None) or ""

        cert = _secret_field(secret, TLS_CERT_KEY)
        key = _secret_field(secret, TLS_PRIVATE_KEY_KEY)

        try:
            certificate_names(cert)
        except TLSCredError as exc:
            raise TLSCredError(
                f"No valid TLS certificate found in Secret {namespace}/{name}: {exc}"
            ) from exc
        try:
            check_private_key(key)
        except TLSCredError as exc:
            raise TLSCredError(
                f"No valid TLS private key found in Secret {namespace}/{name}: {exc}"
            ) from exc

        identity = tls_cred_identity(namespace, name)
        return TLSCred(
            identity=identity,
            key=key,
            cert=cert,
            checksum=content_checksum(key, cert),
            key_path=os.path.join(self.tls_dir, f"{identity}.key"),
            cert_path=os.path.join(self.tls_dir, f"{identity}.crt"),
        )

    def resolve_key(self, secret_key: str) -> TLSCred:
        """Resolve the Secret stored under ``namespace/name``."""
        secret = self.secrets.get_by_key(secret_key)
        if secret is None:
            raise TLSCredError(f"Secret {secret_key} has been deleted")
        return self.resolve(secret)

    def resolve_ingress(self, ingress: Any) -> list[TLSCred]:
        """Resolve every Secret named by an Ingress TLS section.

        Fails as a whole if any one Secret fails, so the caller can drop the
        Ingress rather than serve some of its hosts with the wrong certificate.
        """
        namespace = getattr(getattr(ingress, "metadata", None), "namespace", None) or ""
        spec = getattr(ingress, "spec", None)
        creds: list[TLSCred] = []
        for tls in getattr(spec, "tls", None) or []:
            secret_name = getattr(tls, "secret_name", None)
            if not secret_name:
                continue
            creds.append(self.resolve_key(f"{namespace}/{secret_name}"))
        return creds


def assemble_credentials(
    default_cred: TLSCred | None, creds: list[TLSCred]
) -> tuple[bool, TLSCred | None, tuple[TLSCred, ...]]:
    """Return ``(tls_enabled, default, sub_credentials)``.

    Sub-credentials are sorted and unique by identity and never include the
    default.  Without a configured default the first credential is promoted.
    """
    unique = sort_and_dedup_creds(creds)
    if default_cred is not None:
        subs = tuple(cred for cred in unique if cred.identity != default_cred.identity)
        return True, default_cred, subs
    if unique:
        return True, unique[0], tuple(unique[1:])
    return False, None, ()
