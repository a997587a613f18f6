"""Signing material: key generation, CSR, encryption at rest, PKCS#12 export.

Private keys only ever exist on disk encrypted with the signing store
passphrase; the PKCS#12 bundle handed to the keychain is built in memory
with a one-time password.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from ship.core.result import Err, Ok, Result
from ship.pipeline.errors import StageError

__all__ = [
    "SigningMaterial",
    "decode_b64",
    "export_pkcs12",
    "new_key_and_csr",
]


@dataclass(frozen=True, slots=True)
class SigningMaterial:
    certificate_der: bytes
    # PKCS#8 PEM, encrypted with the signing store passphrase.
    encrypted_key_pem: bytes
    profile_content: bytes


def new_key_and_csr(*, common_name: str, passphrase: str) -> tuple[bytes, str]:
    """Generate an RSA key and CSR.

    Returns:
        (encrypted PKCS#8 key PEM, CSR PEM text)
    """
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .sign(key, hashes.SHA256())
    )
    encrypted = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.BestAvailableEncryption(passphrase.encode("utf-8")),
    )
    return encrypted, csr.public_bytes(serialization.Encoding.PEM).decode("ascii")


def decode_b64(value: str, *, what: str) -> Result[bytes, StageError]:
    try:
        return Ok(base64.b64decode(value, validate=False))
    except (binascii.Error, ValueError) as e:
        return Err(StageError(kind="sync", message=f"failed to decode {what}: {e}"))


def export_pkcs12(
    material: SigningMaterial,
    *,
    passphrase: str,
    export_password: str,
    friendly_name: str,
) -> Result[bytes, StageError]:
    """Bundle certificate + decrypted key as PKCS#12 for keychain import."""
    try:
        key = serialization.load_pem_private_key(
            material.encrypted_key_pem, password=passphrase.encode("utf-8")
        )
    except (ValueError, TypeError):
        return Err(
            StageError(
                kind="build",
                message="cannot decrypt signing key",
                hint="signing store passphrase does not match the stored key",
            )
        )

    try:
        cert = x509.load_der_x509_certificate(material.certificate_der)
    except ValueError as e:
        return Err(StageError(kind="build", message=f"invalid signing certificate: {e}"))

    if not isinstance(key, rsa.RSAPrivateKey):
        return Err(StageError(kind="build", message="signing key is not an RSA key"))

    bundle = pkcs12.serialize_key_and_certificates(
        name=friendly_name.encode("utf-8"),
        key=key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(export_password.encode("utf-8")),
    )
    return Ok(bundle)
