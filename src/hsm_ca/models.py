from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Literal

from asn1crypto import pem

from .config import SUPPORTED_CA_KEY_SIZES, SUPPORTED_HASH_BITS, IssuerConfig
from .exceptions import InvalidRequestError, InvalidValidityPeriodError
from .x509_ops import parse_distinguished_name


class BootstrapOutcome(str, Enum):
    """Successful results of ensure_authority()."""

    CREATED = "created"
    ALREADY_EXISTS = "already_exists"


@dataclass(frozen=True)
class IssuerIdentity:
    """Logical name of a CA key/certificate pair on the token."""

    name: str

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise InvalidRequestError("Issuer identity name must be a non-empty string.")
        if self.name != self.name.strip():
            raise InvalidRequestError(
                f"Issuer identity name must not have surrounding whitespace: {self.name!r}"
            )

    @classmethod
    def of(cls, value: "IssuerIdentity | str") -> "IssuerIdentity":
        if isinstance(value, IssuerIdentity):
            return value
        return cls(value)

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class KeyHandle:
    """Opaque reference to a private key held by the key store."""

    identity: IssuerIdentity
    label: str
    key_type: Literal["RSA", "EC"]


@dataclass(frozen=True)
class RemoteCertificate:
    """Issuer certificate fetched from the key store, with its signing key handle."""

    certificate: bytes
    key_handle: KeyHandle


def _check_hash_bits(hash_bits: int) -> None:
    if hash_bits not in SUPPORTED_HASH_BITS:
        raise InvalidRequestError(
            f"hash_bits must be one of: {', '.join(str(b) for b in SUPPORTED_HASH_BITS)}."
        )


def _check_path_length(path_length: int) -> None:
    if isinstance(path_length, bool) or not isinstance(path_length, int):
        raise InvalidRequestError("path_length must be an integer.")
    if path_length < 0:
        raise InvalidRequestError("path_length must be >= 0.")


@dataclass(frozen=True)
class AuthorityRequest:
    """Intent to create a CA key and certificate. Use create() or from_config()."""

    subject: str
    path_length: int
    validity_months: int
    key_size_bits: int = 4096
    hash_bits: int = 256

    @classmethod
    def create(
        cls,
        *,
        subject: str | None,
        path_length: int,
        validity_months: int,
        key_size_bits: int = 4096,
        hash_bits: int = 256,
    ) -> "AuthorityRequest":
        if subject is None or not subject.strip():
            raise InvalidRequestError("Certificate subject is not provided.")
        try:
            parse_distinguished_name(subject)
        except ValueError as exc:
            raise InvalidRequestError(f"Invalid certificate subject: {exc}") from exc
        _check_path_length(path_length)
        if validity_months <= 0:
            raise InvalidValidityPeriodError(
                f"Authority validity must be at least one month, got {validity_months}."
            )
        if key_size_bits not in SUPPORTED_CA_KEY_SIZES:
            raise InvalidRequestError(
                "key_size_bits must be one of: "
                + ", ".join(str(size) for size in SUPPORTED_CA_KEY_SIZES)
            )
        _check_hash_bits(hash_bits)
        return cls(
            subject=subject.strip(),
            path_length=path_length,
            validity_months=validity_months,
            key_size_bits=key_size_bits,
            hash_bits=hash_bits,
        )

    @classmethod
    def from_config(
        cls,
        config: IssuerConfig,
        *,
        subject: str | None,
    ) -> "AuthorityRequest":
        return cls.create(
            subject=subject,
            path_length=config.cert_path_length,
            validity_months=config.validity_months,
            key_size_bits=config.key_size,
            hash_bits=config.hash_bits,
        )


@dataclass(frozen=True)
class SigningRequest:
    """
    Intent to sign a CSR under an issuer.

    `is_intermediate_ca` is the issuer-side grant of CA status; anything the
    CSR itself asserts about basic constraints is ignored. `path_length` is
    only used for intermediates; None grants one level below the issuer.
    """

    csr: bytes
    issuer: IssuerIdentity
    validity_days: int
    is_intermediate_ca: bool = False
    path_length: int | None = None
    hash_bits: int = 256

    @classmethod
    def create(
        cls,
        *,
        csr: bytes | str | None,
        issuer: IssuerIdentity | str,
        validity_days: int,
        is_intermediate_ca: bool = False,
        path_length: int | None = None,
        hash_bits: int = 256,
        max_validity_days: int | None = None,
    ) -> "SigningRequest":
        if csr is None or len(csr) == 0:
            raise InvalidRequestError("CSR content is not provided.")
        if isinstance(csr, str):
            csr = csr.encode("utf-8")
        if validity_days <= 0 or (
            max_validity_days is not None and validity_days > max_validity_days
        ):
            upper = max_validity_days if max_validity_days is not None else "unbounded"
            raise InvalidValidityPeriodError(
                "Number of days specified as the certificate validity period "
                f"should be between 1 and {upper}, got {validity_days}."
            )
        if path_length is not None:
            _check_path_length(path_length)
        _check_hash_bits(hash_bits)
        return cls(
            csr=bytes(csr),
            issuer=IssuerIdentity.of(issuer),
            validity_days=validity_days,
            is_intermediate_ca=bool(is_intermediate_ca),
            path_length=path_length,
            hash_bits=hash_bits,
        )

    @classmethod
    def from_config(
        cls,
        config: IssuerConfig,
        *,
        csr: bytes | str | None,
        is_intermediate_ca: bool = False,
        path_length: int | None = None,
    ) -> "SigningRequest":
        return cls.create(
            csr=csr,
            issuer=config.issuing_ca,
            validity_days=config.cert_validity_days,
            is_intermediate_ca=is_intermediate_ca,
            path_length=path_length,
            hash_bits=config.hash_bits,
            max_validity_days=config.max_cert_validity,
        )


@dataclass(frozen=True)
class IssuedCertificate:
    """DER certificate chained to `issuer`. Persisting it is up to the caller."""

    certificate: bytes
    issuer: IssuerIdentity
    serial_number: int
    not_before: datetime
    not_after: datetime
    is_ca: bool

    def to_pem(self) -> bytes:
        return pem.armor("CERTIFICATE", self.certificate)
