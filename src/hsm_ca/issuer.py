"""
Certificate issuance on top of a remote signing capability.

`AuthorityBootstrapper` makes sure a CA key and certificate exist under an
issuer identity. `RequestSigner` turns a verified CSR into a certificate
chained to that issuer. Neither ever handles private key material: the
issuer key is only reachable through `RemoteSigningCapability.sign_digest`,
bound to a single key handle per signing.
"""

from __future__ import annotations

import calendar
import functools
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Protocol

from asn1crypto import x509

from . import x509_ops
from .exceptions import (
    HsmOperationError,
    InvalidSignatureError,
    InvalidValidityPeriodError,
    PathLengthConstraintError,
    UnknownIssuerError,
)
from .models import (
    AuthorityRequest,
    BootstrapOutcome,
    IssuedCertificate,
    IssuerIdentity,
    KeyHandle,
    RemoteCertificate,
    SigningRequest,
)

_logger = logging.getLogger("hsm_ca.issuer")

CLOCK_SKEW_MARGIN = timedelta(days=1)

Clock = Callable[[], datetime]


class RemoteSigningCapability(Protocol):
    """Operations the issuer needs from the key store holding CA keys."""

    def version_count(self, identity: IssuerIdentity) -> int:
        ...

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
        ...

    def fetch_public_certificate(
        self, identity: IssuerIdentity
    ) -> RemoteCertificate | None:
        ...

    def sign_digest(
        self,
        key_handle: KeyHandle,
        digest: bytes,
        *,
        algorithm: str,
    ) -> bytes:
        ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the target month's end."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def validity_start(now: datetime) -> datetime:
    if now.tzinfo is None:
        raise ValueError("Clock must return timezone-aware datetimes.")
    # X.509 times carry whole seconds only.
    return (now.astimezone(timezone.utc) - CLOCK_SKEW_MARGIN).replace(microsecond=0)


class AuthorityBootstrapper:
    def __init__(
        self,
        store: RemoteSigningCapability,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._clock = clock

    def ensure_authority(
        self,
        identity: IssuerIdentity | str,
        request: AuthorityRequest,
    ) -> BootstrapOutcome:
        """
        Create the CA key and certificate for `identity` unless one exists.

        An existing authority is never replaced; repeated calls are safe.
        Failures from the key store propagate unchanged.
        """
        resolved = IssuerIdentity.of(identity)
        versions = self._store.version_count(resolved)
        if versions > 0:
            _logger.info(
                "A certificate with the specified issuer name %s already exists (versions=%d).",
                resolved,
                versions,
            )
            return BootstrapOutcome.ALREADY_EXISTS

        _logger.info(
            "No existing certificate found for issuer name %s, starting to create a new one.",
            resolved,
        )
        not_before = validity_start(self._clock())
        not_after = add_months(not_before, request.validity_months)
        self._store.create_authority(
            resolved,
            subject=request.subject,
            not_before=not_before,
            not_after=not_after,
            key_size_bits=request.key_size_bits,
            hash_bits=request.hash_bits,
            path_length=request.path_length,
        )
        _logger.info(
            "A new certificate with issuer name %s and path length %d was created successfully.",
            resolved,
            request.path_length,
        )
        return BootstrapOutcome.CREATED


class RequestSigner:
    def __init__(
        self,
        store: RemoteSigningCapability,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._clock = clock

    def _fetch_issuer(self, identity: IssuerIdentity) -> RemoteCertificate:
        remote = self._store.fetch_public_certificate(identity)
        if remote is None:
            raise UnknownIssuerError(
                f"No certificate exists for issuer '{identity}'. Bootstrap the authority first."
            )
        return remote

    @staticmethod
    def _load_issuer_certificate(
        identity: IssuerIdentity, remote: RemoteCertificate
    ) -> x509.Certificate:
        try:
            certificate = x509_ops.load_certificate(remote.certificate)
            certificate.native
        except ValueError as exc:
            raise HsmOperationError(
                f"Certificate stored for issuer '{identity}' could not be parsed: {exc}"
            ) from exc
        return certificate

    def get_certificate(self, identity: IssuerIdentity | str) -> x509.Certificate:
        resolved = IssuerIdentity.of(identity)
        return self._load_issuer_certificate(resolved, self._fetch_issuer(resolved))

    def get_public_certificates_by_name(
        self, names: Iterable[IssuerIdentity | str]
    ) -> list[bytes]:
        certificates: list[bytes] = []
        for name in names:
            identity = IssuerIdentity.of(name)
            _logger.debug("Fetching public certificate for name %s.", identity)
            remote = self._store.fetch_public_certificate(identity)
            if remote is None:
                _logger.debug("No certificate stored for name %s, skipping.", identity)
                continue
            certificates.append(remote.certificate)
        return certificates

    @staticmethod
    def _granted_path_length(
        identity: IssuerIdentity,
        issuer_certificate: x509.Certificate,
        request: SigningRequest,
    ) -> int | None:
        if not issuer_certificate.ca:
            raise PathLengthConstraintError(
                f"Issuer certificate '{identity}' is not a CA certificate."
            )
        if not request.is_intermediate_ca:
            return None
        issuer_limit = issuer_certificate.max_path_length
        if request.path_length is not None:
            granted = request.path_length
        elif issuer_limit:
            granted = issuer_limit - 1
        else:
            granted = 0
        if issuer_limit is not None and granted >= issuer_limit:
            raise PathLengthConstraintError(
                f"Issuer '{identity}' allows path length {issuer_limit}; "
                f"cannot grant path length {granted} to a subordinate CA."
            )
        return granted

    def sign(self, request: SigningRequest) -> IssuedCertificate:
        """
        Issue a certificate for a CSR under `request.issuer`.

        The CSR is parsed and its self-signature verified before the key
        store is contacted. Subject and public key are taken from the verified
        CSR; CA status comes only from `request.is_intermediate_ca`.
        """
        identity = request.issuer
        _logger.info(
            "Preparing certificate request with issuer name %s, %d days validity period "
            "and 'is a CA certificate' flag set to %s.",
            identity,
            request.validity_days,
            request.is_intermediate_ca,
        )

        parsed = x509_ops.parse_request(request.csr)
        if not x509_ops.verify_request_signature(parsed):
            _logger.error("CSR signature invalid for issuer name %s.", identity)
            raise InvalidSignatureError("CSR signature invalid.")
        if request.validity_days <= 0:
            raise InvalidValidityPeriodError(
                f"Certificate validity must be a positive number of days, got {request.validity_days}."
            )

        remote = self._fetch_issuer(identity)
        issuer_certificate = self._load_issuer_certificate(identity, remote)
        path_length = self._granted_path_length(identity, issuer_certificate, request)

        not_before = validity_start(self._clock())
        not_after = not_before + timedelta(days=request.validity_days)

        subject = x509_ops.request_subject(parsed)
        issuer_public_key_info = x509_ops.certificate_public_key_info(issuer_certificate)
        algorithm = x509_ops.signing_algorithm_for_key(
            issuer_public_key_info, request.hash_bits
        )
        sign_digest = functools.partial(
            self._store.sign_digest, remote.key_handle, algorithm=algorithm
        )
        serial_number = x509_ops.generate_serial_number()

        certificate = x509_ops.build_and_encode_certificate(
            subject=subject,
            issuer_subject=x509_ops.certificate_subject(issuer_certificate),
            not_before=not_before,
            not_after=not_after,
            public_key_info=x509_ops.request_public_key_info(parsed),
            is_ca=request.is_intermediate_ca,
            path_length=path_length,
            sign_digest=sign_digest,
            signing_algorithm=algorithm,
            issuer_public_key_info=issuer_public_key_info,
            serial_number=serial_number,
            subject_alt_name=x509_ops.requested_subject_alt_name(parsed),
        )
        _logger.info(
            "Certificate issued subject=%s issuer=%s serial=%x algorithm=%s is_ca=%s",
            x509_ops.request_subject_text(parsed),
            identity,
            serial_number,
            algorithm,
            request.is_intermediate_ca,
        )
        return IssuedCertificate(
            certificate=certificate,
            issuer=identity,
            serial_number=serial_number,
            not_before=not_before,
            not_after=not_after,
            is_ca=request.is_intermediate_ca,
        )
