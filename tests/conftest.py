from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest
from asn1crypto import keys
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa, utils
from cryptography.x509.oid import NameOID

from hsm_ca import AuthorityBootstrapper, AuthorityRequest, IssuerIdentity
from hsm_ca.models import KeyHandle, RemoteCertificate
from hsm_ca.x509_ops import create_self_signed_ca_certificate, parse_distinguished_name

FIXED_NOW = datetime(2026, 3, 15, 12, 30, 45, 123456, tzinfo=timezone.utc)

_PREHASHED = {
    "sha256": hashes.SHA256(),
    "sha384": hashes.SHA384(),
}


def public_key_info(private_key: Any) -> keys.PublicKeyInfo:
    return keys.PublicKeyInfo.load(
        private_key.public_key().public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    )


def software_sign_digest(private_key: Any, digest: bytes, algorithm: str) -> bytes:
    prehashed = utils.Prehashed(_PREHASHED[algorithm.rsplit("_", 1)[1]])
    if isinstance(private_key, rsa.RSAPrivateKey):
        return private_key.sign(digest, padding.PKCS1v15(), prehashed)
    return private_key.sign(digest, ec.ECDSA(prehashed))


class InMemoryKeyStore:
    """Software stand-in for the HSM that records every remote call."""

    def __init__(self) -> None:
        self._authorities: dict[str, tuple[Any, bytes]] = {}
        self.version_calls: list[str] = []
        self.create_calls: list[dict[str, Any]] = []
        self.fetch_calls: list[str] = []
        self.sign_calls: list[tuple[str, str]] = []
        self.create_error: Exception | None = None
        self.sign_error: Exception | None = None

    def __enter__(self) -> "InMemoryKeyStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        return None

    def install(self, name: str, private_key: Any, certificate: bytes) -> None:
        self._authorities[name] = (private_key, certificate)

    def version_count(self, identity: IssuerIdentity) -> int:
        self.version_calls.append(identity.name)
        return 1 if identity.name in self._authorities else 0

    def create_authority(
        self,
        identity: IssuerIdentity,
        *,
        subject: str,
        not_before: datetime,
        not_after: datetime,
        key_size_bits: int,
        hash_bits: int,
        path_length: int,
    ) -> None:
        self.create_calls.append(
            {
                "identity": identity.name,
                "subject": subject,
                "not_before": not_before,
                "not_after": not_after,
                "key_size_bits": key_size_bits,
                "hash_bits": hash_bits,
                "path_length": path_length,
            }
        )
        if self.create_error is not None:
            raise self.create_error
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size_bits)
        algorithm = f"rsa_pkcs1v15_sha{hash_bits}"
        certificate = create_self_signed_ca_certificate(
            subject=parse_distinguished_name(subject),
            subject_public_key_info=public_key_info(private_key),
            sign_digest=lambda digest: software_sign_digest(private_key, digest, algorithm),
            signing_algorithm=algorithm,
            not_before=not_before,
            not_after=not_after,
            path_length=path_length,
        )
        self.install(identity.name, private_key, certificate)

    def fetch_public_certificate(self, identity: IssuerIdentity) -> RemoteCertificate | None:
        self.fetch_calls.append(identity.name)
        entry = self._authorities.get(identity.name)
        if entry is None:
            return None
        private_key, certificate = entry
        key_type = "RSA" if isinstance(private_key, rsa.RSAPrivateKey) else "EC"
        return RemoteCertificate(
            certificate=certificate,
            key_handle=KeyHandle(
                identity=identity, label=f"{identity.name}-v0001", key_type=key_type
            ),
        )

    def sign_digest(self, key_handle: KeyHandle, digest: bytes, *, algorithm: str) -> bytes:
        self.sign_calls.append((key_handle.label, algorithm))
        if self.sign_error is not None:
            raise self.sign_error
        private_key, _certificate = self._authorities[key_handle.identity.name]
        return software_sign_digest(private_key, digest, algorithm)


def build_csr(
    common_name: str = "device-42",
    *,
    private_key: Any = None,
    claim_ca: bool = False,
    dns_names: list[str] | None = None,
    encoding: serialization.Encoding = serialization.Encoding.DER,
) -> bytes:
    key = private_key or ec.generate_private_key(ec.SECP256R1())
    builder = x509.CertificateSigningRequestBuilder().subject_name(
        x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    )
    if claim_ca:
        builder = builder.add_extension(
            x509.BasicConstraints(ca=True, path_length=None), critical=True
        )
    if dns_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in dns_names]),
            critical=False,
        )
    request = builder.sign(key, hashes.SHA256())
    return request.public_bytes(encoding)


def corrupt_signature(csr_der: bytes) -> bytes:
    # The signature BIT STRING is the last element of the DER encoding.
    return csr_der[:-1] + bytes([csr_der[-1] ^ 0x01])


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


@pytest.fixture
def store() -> InMemoryKeyStore:
    return InMemoryKeyStore()


@pytest.fixture
def root_store(store: InMemoryKeyStore, fixed_clock) -> InMemoryKeyStore:
    """Store with `root-ca` (CN=Root, path length 2) already bootstrapped."""
    request = AuthorityRequest.create(
        subject="CN=Root",
        path_length=2,
        validity_months=120,
        key_size_bits=2048,
    )
    AuthorityBootstrapper(store, clock=fixed_clock).ensure_authority("root-ca", request)
    store.version_calls.clear()
    store.create_calls.clear()
    return store
