from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

import pkcs11
from asn1crypto import algos, core
from pkcs11 import Attribute, KeyType, Mechanism, ObjectClass
from pkcs11.util.x509 import decode_x509_certificate

from .config import SUPPORTED_CA_KEY_SIZES, HsmConfig
from .exceptions import (
    AuthorityConflictError,
    HsmCaError,
    HsmOperationError,
    HsmPermissionDeniedError,
    HsmUnavailableError,
)
from .models import IssuerIdentity, KeyHandle, RemoteCertificate
from .x509_ops import (
    create_self_signed_ca_certificate,
    load_certificate,
    parse_distinguished_name,
    rsa_public_key_info,
)

_logger = logging.getLogger("hsm_ca.keystore")

_PERMISSION_DENIED_EXCEPTIONS = (
    pkcs11.exceptions.PinIncorrect,
    pkcs11.exceptions.PinExpired,
    pkcs11.exceptions.PinLocked,
    pkcs11.exceptions.UserNotLoggedIn,
    pkcs11.exceptions.UserPinNotInitialized,
    pkcs11.exceptions.SessionReadOnly,
    pkcs11.exceptions.TokenWriteProtected,
)

_UNAVAILABLE_EXCEPTIONS = (
    pkcs11.exceptions.DeviceError,
    pkcs11.exceptions.DeviceMemory,
    pkcs11.exceptions.DeviceRemoved,
    pkcs11.exceptions.HostMemory,
    pkcs11.exceptions.GeneralError,
    pkcs11.exceptions.FunctionFailed,
    pkcs11.exceptions.SessionClosed,
    pkcs11.exceptions.SessionHandleInvalid,
    pkcs11.exceptions.TokenNotPresent,
    pkcs11.exceptions.TokenNotRecognised,
)

_DIGEST_SIZES = {"sha256": 32, "sha384": 48}
_KEY_TYPE_NAMES = {KeyType.RSA: "RSA", KeyType.EC: "EC"}


def _describe(exc: Exception) -> str:
    text = str(exc).strip() or ", ".join(str(arg) for arg in exc.args if arg)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


def _classified_error(message: str, exc: Exception) -> HsmOperationError:
    """Map a python-pkcs11 failure onto the issuer's remote error classes."""
    detail = f"{message}: {_describe(exc)}"
    if isinstance(exc, _PERMISSION_DENIED_EXCEPTIONS):
        return HsmPermissionDeniedError(detail)
    if isinstance(exc, _UNAVAILABLE_EXCEPTIONS):
        return HsmUnavailableError(detail)
    return HsmOperationError(detail)


@dataclass(frozen=True)
class KeyVersion:
    """A versioned CA key label on the token."""

    identity: IssuerIdentity
    version: int
    label: str


@dataclass(frozen=True)
class DigestSigningMechanism:
    """How the token signs a precomputed digest for one X.509 algorithm."""

    algorithm: str
    key_type: KeyType
    mechanism: Mechanism
    hash_name: str

    def payload(self, digest: bytes) -> bytes:
        expected = _DIGEST_SIZES[self.hash_name]
        if len(digest) != expected:
            raise ValueError(
                f"Digest length mismatch for {self.hash_name}: "
                f"expected {expected} bytes, got {len(digest)}."
            )
        if self.mechanism != Mechanism.RSA_PKCS:
            return digest
        # Raw RSA_PKCS only pads; PKCS#1 v1.5 signatures cover a DigestInfo.
        return algos.DigestInfo(
            {
                "digest_algorithm": {"algorithm": self.hash_name, "parameters": core.Null()},
                "digest": digest,
            }
        ).dump()


def resolve_digest_signing_mechanism(algorithm: str) -> DigestSigningMechanism:
    normalized = algorithm.strip().lower().replace("-", "_")
    family, _sep, hash_name = normalized.rpartition("_")
    if hash_name in _DIGEST_SIZES:
        if family == "rsa_pkcs1v15":
            return DigestSigningMechanism(normalized, KeyType.RSA, Mechanism.RSA_PKCS, hash_name)
        if family == "ecdsa":
            return DigestSigningMechanism(normalized, KeyType.EC, Mechanism.ECDSA, hash_name)
    raise ValueError(
        f"Unsupported digest signing algorithm '{algorithm}'. Use one of: "
        "rsa_pkcs1v15_sha256, rsa_pkcs1v15_sha384, ecdsa_sha256, ecdsa_sha384."
    )


class Pkcs11KeyStore:
    """
    Remote signing capability backed by a PKCS#11 token.

    CA keys live on the token under versioned labels `<identity>-vNNNN`
    (public key `<label>.pub`, certificate object `<label>`). The store works
    with key handles only; private keys are generated non-extractable.
    """

    def __init__(self, config: HsmConfig) -> None:
        self._config = config
        self._lib = pkcs11.lib(config.module_path)
        self._session: pkcs11.Session | None = None

    def __enter__(self) -> "Pkcs11KeyStore":
        self.open()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    @property
    def session(self) -> pkcs11.Session:
        if self._session is None:
            raise HsmOperationError("Session is not open.")
        return self._session

    def open(self) -> None:
        if self._session is not None:
            return

        if self._config.slot_no is not None:
            token_query: dict[str, Any] = {"slot": self._config.slot_no}
        else:
            token_query = {"token_label": self._config.token_label}
        pin = self._config.user_pin()

        _logger.info("Opening CA key store session %s", token_query)
        try:
            token = self._lib.get_token(**token_query)
            self._session = token.open(user_pin=pin, rw=True)
        except Exception as exc:
            _logger.exception("Failed to open CA key store session.")
            raise _classified_error("Failed to open HSM session", exc) from exc
        _logger.info("CA key store session opened.")

    def close(self) -> None:
        if self._session is None:
            return
        self._session.close()
        self._session = None
        _logger.info("CA key store session closed.")

    @staticmethod
    def format_versioned_label(base_label: str, version: int, width: int = 4) -> str:
        """Format `<base>-vNNNN` versioned label."""
        if version < 1:
            raise ValueError("Key version must be >= 1.")
        return f"{base_label}-v{version:0{width}d}"

    def list_key_versions(self, identity: IssuerIdentity | str) -> list[KeyVersion]:
        """List private keys labelled `<identity>-vNNNN`, oldest first."""
        resolved = IssuerIdentity.of(identity)
        pattern = re.compile(rf"{re.escape(resolved.name)}-v(?P<version>\d+)")
        versions: list[KeyVersion] = []

        try:
            for obj in self.session.get_objects({Attribute.CLASS: ObjectClass.PRIVATE_KEY}):
                label = obj[Attribute.LABEL]
                match = pattern.fullmatch(label) if isinstance(label, str) else None
                if match:
                    versions.append(KeyVersion(resolved, int(match.group("version")), label))
        except HsmCaError:
            raise
        except Exception as exc:
            _logger.exception("Failed listing key versions identity=%s", resolved)
            raise _classified_error(
                f"Failed to list key versions for '{resolved}'", exc
            ) from exc

        versions.sort(key=lambda item: item.version)
        _logger.debug("Found %d key versions for identity=%s", len(versions), resolved)
        return versions

    def version_count(self, identity: IssuerIdentity | str) -> int:
        return len(self.list_key_versions(identity))

    def _private_key(self, key_handle: KeyHandle, key_type: KeyType) -> pkcs11.PrivateKey:
        try:
            return self.session.get_key(
                label=key_handle.label,
                object_class=ObjectClass.PRIVATE_KEY,
                key_type=key_type,
            )
        except pkcs11.exceptions.NoSuchKey as exc:
            raise HsmOperationError(
                f"Private key '{key_handle.label}' was not found on the token."
            ) from exc
        except Exception as exc:
            _logger.exception("Failed to load private key label=%s", key_handle.label)
            raise _classified_error(f"Failed to get key '{key_handle.label}'", exc) from exc

    def _find_certificate(self, label: str) -> bytes | None:
        try:
            for obj in self.session.get_objects(
                {Attribute.CLASS: ObjectClass.CERTIFICATE, Attribute.LABEL: label}
            ):
                return bytes(obj[Attribute.VALUE])
        except Exception as exc:
            _logger.exception("Failed to load certificate label=%s", label)
            raise _classified_error(f"Failed to get certificate '{label}'", exc) from exc
        return None

    def _generate_ca_keypair(
        self, label: str, bits: int, key_id: bytes
    ) -> tuple[pkcs11.PublicKey, pkcs11.PrivateKey]:
        try:
            public_key, private_key = self.session.generate_keypair(
                KeyType.RSA,
                bits,
                id=key_id,
                store=True,
                public_template={
                    Attribute.LABEL: f"{label}.pub",
                    Attribute.TOKEN: True,
                    Attribute.VERIFY: True,
                    Attribute.ENCRYPT: False,
                },
                private_template={
                    Attribute.LABEL: label,
                    Attribute.TOKEN: True,
                    Attribute.SENSITIVE: True,
                    Attribute.EXTRACTABLE: False,
                    Attribute.SIGN: True,
                    Attribute.DECRYPT: False,
                },
            )
        except Exception as exc:
            _logger.exception("Failed to generate CA keypair label=%s", label)
            raise _classified_error(f"Failed to generate CA keypair '{label}'", exc) from exc
        _logger.info("Generated CA keypair label=%s bits=%d", label, bits)
        return public_key, private_key

    def _store_certificate(self, *, label: str, key_id: bytes, certificate: bytes) -> None:
        attributes = decode_x509_certificate(certificate)
        attributes.update(
            {
                Attribute.LABEL: label,
                Attribute.ID: key_id,
                Attribute.TOKEN: True,
            }
        )
        try:
            self.session.create_object(attributes)
        except Exception as exc:
            _logger.exception("Failed to store certificate label=%s", label)
            raise _classified_error(f"Failed to store certificate '{label}'", exc) from exc
        _logger.info("Stored certificate object label=%s", label)

    @staticmethod
    def _destroy_objects(label: str, objects: Iterable[pkcs11.Object]) -> None:
        for obj in objects:
            try:
                obj.destroy()
            except Exception:
                # The original failure is re-raised by the caller.
                _logger.exception("Failed to roll back token object for label=%s", label)

    def create_authority(
        self,
        identity: IssuerIdentity | str,
        *,
        subject: str,
        not_before: datetime,
        not_after: datetime,
        key_size_bits: int,
        hash_bits: int,
        path_length: int,
    ) -> None:
        """
        Generate the first CA key version for `identity` and store its
        self-signed certificate next to it. Raises AuthorityConflictError if
        any version already exists; rolls the keypair back if certificate
        creation fails.
        """
        resolved = IssuerIdentity.of(identity)
        if key_size_bits not in SUPPORTED_CA_KEY_SIZES:
            raise ValueError(
                "RSA key size must be one of: "
                + ", ".join(str(size) for size in SUPPORTED_CA_KEY_SIZES)
            )
        mechanism = resolve_digest_signing_mechanism(f"rsa_pkcs1v15_sha{hash_bits}")
        subject_name = parse_distinguished_name(subject)

        if self.list_key_versions(resolved):
            raise AuthorityConflictError(
                f"Issuer identity '{resolved}' already has key versions on the token."
            )

        label = self.format_versioned_label(resolved.name, 1)
        key_id = os.urandom(16)
        public_key, private_key = self._generate_ca_keypair(label, key_size_bits, key_id)
        try:
            certificate = create_self_signed_ca_certificate(
                subject=subject_name,
                subject_public_key_info=rsa_public_key_info(public_key),
                sign_digest=lambda digest: self._sign(private_key, mechanism, digest),
                signing_algorithm=mechanism.algorithm,
                not_before=not_before,
                not_after=not_after,
                path_length=path_length,
            )
            self._store_certificate(label=label, key_id=key_id, certificate=certificate)
        except HsmCaError:
            self._destroy_objects(label, (private_key, public_key))
            raise
        except Exception as exc:
            _logger.exception("Failed to create CA certificate identity=%s", resolved)
            self._destroy_objects(label, (private_key, public_key))
            raise _classified_error(
                f"Failed to create CA certificate for '{resolved}'", exc
            ) from exc

        _logger.info(
            "CA certificate created identity=%s label=%s algorithm=%s path_length=%d",
            resolved,
            label,
            mechanism.algorithm,
            path_length,
        )

    def fetch_public_certificate(
        self, identity: IssuerIdentity | str
    ) -> RemoteCertificate | None:
        """Return the latest certificate for `identity` with its key handle, or None."""
        resolved = IssuerIdentity.of(identity)
        versions = self.list_key_versions(resolved)
        if not versions:
            _logger.debug("No key versions exist for identity=%s", resolved)
            return None

        latest = versions[-1]
        certificate = self._find_certificate(latest.label)
        if certificate is None:
            _logger.warning(
                "Key version label=%s has no certificate object; treating issuer as absent.",
                latest.label,
            )
            return None

        key_algorithm = load_certificate(certificate).public_key.algorithm
        return RemoteCertificate(
            certificate=certificate,
            key_handle=KeyHandle(
                identity=resolved,
                label=latest.label,
                key_type="EC" if key_algorithm == "ec" else "RSA",
            ),
        )

    @staticmethod
    def _sign(
        private_key: pkcs11.PrivateKey,
        mechanism: DigestSigningMechanism,
        digest: bytes,
    ) -> bytes:
        payload = mechanism.payload(digest)
        try:
            signature = private_key.sign(payload, mechanism=mechanism.mechanism)
        except Exception as exc:
            _logger.exception("Digest signing failed algorithm=%s", mechanism.algorithm)
            raise _classified_error(
                f"Digest signing failed for algorithm '{mechanism.algorithm}'", exc
            ) from exc
        _logger.debug(
            "Digest signed algorithm=%s signature_size=%d",
            mechanism.algorithm,
            len(signature),
        )
        return signature

    def sign_digest(
        self,
        key_handle: KeyHandle,
        digest: bytes,
        *,
        algorithm: str,
    ) -> bytes:
        mechanism = resolve_digest_signing_mechanism(algorithm)
        required = _KEY_TYPE_NAMES[mechanism.key_type]
        if required != key_handle.key_type:
            raise ValueError(
                f"Algorithm '{algorithm}' requires a {required} key, "
                f"but key handle '{key_handle.label}' is {key_handle.key_type}."
            )
        private_key = self._private_key(key_handle, mechanism.key_type)
        return self._sign(private_key, mechanism, digest)
