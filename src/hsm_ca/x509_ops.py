from __future__ import annotations

import hashlib
import logging
import os
from datetime import datetime
from typing import Callable

import pkcs11
from asn1crypto import algos, core, csr, keys, pem, x509
from cryptography import x509 as crypto_x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.x509.oid import NameOID
from pkcs11 import KeyType
from pkcs11.util.rsa import encode_rsa_public_key

from .exceptions import MalformedRequestError

_logger = logging.getLogger("hsm_ca.x509")

SignDigest = Callable[[bytes], bytes]

# Attribute names outside cryptography's RFC 4514 table that operators use.
_DN_NAME_OVERRIDES = {
    "E": NameOID.EMAIL_ADDRESS,
    "EMAILADDRESS": NameOID.EMAIL_ADDRESS,
    "SERIALNUMBER": NameOID.SERIAL_NUMBER,
}
_DN_SEPARATORS = {",", "+"}


def _tidy_distinguished_name(text: str) -> str:
    """Drop unescaped blanks around ``,`` and ``+`` so ``CN=a, O=b`` is accepted."""
    out: list[str] = []
    protected = 0
    after_separator = True
    chars = iter(text)
    for char in chars:
        if char == " " and after_separator:
            continue
        after_separator = char in _DN_SEPARATORS
        if char == "\\":
            out.extend((char, next(chars, "")))
            protected = len(out)
            continue
        if after_separator:
            while len(out) > protected and out[-1] == " ":
                out.pop()
            protected = len(out) + 1
        out.append(char)
    while len(out) > protected and out[-1] == " ":
        out.pop()
    return "".join(out)


def parse_distinguished_name(text: str) -> x509.Name:
    """
    Build an X.509 Name from an RFC 4514 string such as
    ``CN=Device, O=Example, C=US``.

    Multi-valued RDNs (``CN=a+O=b``) and ``\\XX`` hex escapes are supported.
    The string lists the most specific RDN first; the encoded sequence is in
    the reverse order.
    """
    if not text or not text.strip():
        raise ValueError("Distinguished name must not be empty.")
    try:
        parsed = crypto_x509.Name.from_rfc4514_string(
            _tidy_distinguished_name(text), attr_name_overrides=_DN_NAME_OVERRIDES
        )
    except ValueError as exc:
        raise ValueError(f"Invalid distinguished name: '{text}'") from exc

    rdns: list[crypto_x509.RelativeDistinguishedName] = []
    for rdn in parsed.rdns:
        attributes: list[crypto_x509.NameAttribute] = []
        for attribute in rdn:
            if not attribute.value:
                raise ValueError(
                    f"Distinguished name attribute '{attribute.rfc4514_attribute_name}' is empty."
                )
            if attribute.oid == NameOID.COUNTRY_NAME:
                attribute = crypto_x509.NameAttribute(
                    NameOID.COUNTRY_NAME, attribute.value.upper()
                )
            attributes.append(attribute)
        rdns.append(crypto_x509.RelativeDistinguishedName(attributes))
    return x509.Name.load(crypto_x509.Name(rdns).public_bytes())


def request_subject_text(request: csr.CertificationRequest) -> str:
    """RFC 4514 rendering of the CSR subject, e.g. ``CN=Device,O=Example``."""
    return crypto_x509.load_der_x509_csr(request.dump()).subject.rfc4514_string()


def _normalize_algorithm_name(algorithm: str) -> str:
    return algorithm.strip().lower().replace("-", "_")


_SIGNED_DIGEST_ALGORITHMS = {
    "rsa_pkcs1v15_sha256": "sha256_rsa",
    "rsa_pkcs1v15_sha384": "sha384_rsa",
    "ecdsa_sha256": "sha256_ecdsa",
    "ecdsa_sha384": "sha384_ecdsa",
}


def hash_name_for_algorithm(algorithm: str) -> str:
    normalized = _normalize_algorithm_name(algorithm)
    _prefix, _sep, hash_name = normalized.rpartition("_")
    if hash_name not in {"sha256", "sha384"}:
        raise ValueError(f"Cannot derive hash algorithm from '{algorithm}'.")
    return hash_name


def signature_algorithm_identifier(algorithm: str) -> algos.SignedDigestAlgorithm:
    asn1_name = _SIGNED_DIGEST_ALGORITHMS.get(_normalize_algorithm_name(algorithm))
    if asn1_name is None:
        raise ValueError(
            f"Unsupported X.509 signing algorithm '{algorithm}'. "
            f"Use one of: {', '.join(_SIGNED_DIGEST_ALGORITHMS)}."
        )
    return algos.SignedDigestAlgorithm({"algorithm": asn1_name})


def signing_algorithm_for_key(
    public_key_info: keys.PublicKeyInfo,
    hash_bits: int = 256,
) -> str:
    """Pick the X.509 signing algorithm matching an issuer key and hash size."""
    if hash_bits not in {256, 384}:
        raise ValueError(f"Unsupported hash size: {hash_bits}. Use 256 or 384.")
    key_algorithm = public_key_info.algorithm
    if key_algorithm == "rsa":
        return f"rsa_pkcs1v15_sha{hash_bits}"
    if key_algorithm == "ec":
        return f"ecdsa_sha{hash_bits}"
    raise ValueError(f"Unsupported issuer key algorithm for X.509 signing: {key_algorithm}")


def normalize_signature_for_algorithm(algorithm: str, signature: bytes) -> bytes:
    """
    X.509 carries ECDSA signatures as a DER sequence, while PKCS#11 tokens
    return the raw r||s concatenation. RSA signatures pass through.
    """
    if not _normalize_algorithm_name(algorithm).startswith("ecdsa_"):
        return signature
    try:
        algos.DSASignature.load(signature, strict=True)
    except ValueError:
        if len(signature) % 2:
            raise ValueError("Invalid raw ECDSA signature length.")
        return algos.DSASignature.from_p1363(signature).dump()
    return signature


def _der_payload(data: bytes | str, pem_type: str) -> bytes:
    payload = data.encode("utf-8") if isinstance(data, str) else data
    if not pem.detect(payload):
        return payload
    found_type, _headers, der_bytes = pem.unarmor(payload)
    if found_type != pem_type:
        raise ValueError(f"Expected PEM type '{pem_type}', received '{found_type}'.")
    return der_bytes


def load_certificate(data: bytes | str) -> x509.Certificate:
    return x509.Certificate.load(_der_payload(data, "CERTIFICATE"))


def dump_certificate_pem(certificate: bytes | x509.Certificate) -> bytes:
    der = certificate if isinstance(certificate, bytes) else certificate.dump()
    return pem.armor("CERTIFICATE", der)


def parse_request(data: bytes | str) -> csr.CertificationRequest:
    """
    Load a PEM or DER CSR and force a full parse of the fields the issuer
    relies on, so malformed input fails here rather than mid-issuance.
    """
    try:
        der_bytes = _der_payload(data, "CERTIFICATE REQUEST")
        if not der_bytes:
            raise ValueError("CSR is empty.")
        request = csr.CertificationRequest.load(der_bytes, strict=True)
        # asn1crypto parses lazily
        request.native
    except (ValueError, TypeError, KeyError) as exc:
        raise MalformedRequestError(f"CSR could not be parsed: {exc}") from exc
    return request


def verify_request_signature(request: csr.CertificationRequest) -> bool:
    """Check the CSR self-signature against the public key it carries."""
    try:
        loaded = crypto_x509.load_der_x509_csr(request.dump())
        return bool(loaded.is_signature_valid)
    except (ValueError, UnsupportedAlgorithm) as exc:
        _logger.warning("CSR signature could not be checked: %s", exc)
        return False


def request_subject(request: csr.CertificationRequest) -> x509.Name:
    return request["certification_request_info"]["subject"]


def request_public_key_info(request: csr.CertificationRequest) -> keys.PublicKeyInfo:
    return request["certification_request_info"]["subject_pk_info"]


def get_requested_extensions(
    request: csr.CertificationRequest,
) -> x509.Extensions:
    attributes = request["certification_request_info"]["attributes"]
    for attribute in attributes:
        if attribute["type"].native != "extension_request":
            continue
        values = attribute["values"]
        if len(values) > 0:
            return values[0]
    return x509.Extensions([])


def requested_subject_alt_name(
    request: csr.CertificationRequest,
) -> x509.Extension | None:
    for extension in get_requested_extensions(request):
        if extension["extn_id"].native == "subject_alt_name":
            return extension
    return None


def certificate_subject(certificate: x509.Certificate) -> x509.Name:
    return certificate["tbs_certificate"]["subject"]


def certificate_public_key_info(certificate: x509.Certificate) -> keys.PublicKeyInfo:
    return certificate["tbs_certificate"]["subject_public_key_info"]


def generate_serial_number() -> int:
    # Positive 159-bit serial to satisfy common X.509 constraints.
    return int.from_bytes(os.urandom(20), byteorder="big") >> 1


def _x509_time(value: datetime) -> x509.Time:
    # RFC 5280: UTCTime through 2049, GeneralizedTime from 2050 on.
    if value.year < 2050:
        return x509.Time({"utc_time": value})
    return x509.Time({"general_time": value})


def rsa_public_key_info(public_key: pkcs11.PublicKey) -> keys.PublicKeyInfo:
    """SubjectPublicKeyInfo for an RSA public key object held on the token."""
    if public_key.key_type != KeyType.RSA:
        raise ValueError(f"CA keys must be RSA, got {public_key.key_type}.")
    return keys.PublicKeyInfo(
        {
            "algorithm": {"algorithm": "rsa"},
            "public_key": keys.RSAPublicKey.load(encode_rsa_public_key(public_key)),
        }
    )


def _key_identifier_extensions(
    subject_public_key_info: keys.PublicKeyInfo,
    issuer_public_key_info: keys.PublicKeyInfo,
) -> list[x509.Extension]:
    return [
        x509.Extension(
            {
                "extn_id": "key_identifier",
                "critical": False,
                "extn_value": subject_public_key_info.sha1,
            }
        ),
        x509.Extension(
            {
                "extn_id": "authority_key_identifier",
                "critical": False,
                "extn_value": x509.AuthorityKeyIdentifier(
                    {"key_identifier": issuer_public_key_info.sha1}
                ),
            }
        ),
    ]


def build_ca_extensions(
    *,
    subject_public_key_info: keys.PublicKeyInfo,
    issuer_public_key_info: keys.PublicKeyInfo,
    path_length: int | None = None,
) -> x509.Extensions:
    basic_constraints_value: dict[str, bool | int] = {"ca": True}
    if path_length is not None:
        if path_length < 0:
            raise ValueError("path_length must be >= 0 when provided.")
        basic_constraints_value["path_len_constraint"] = path_length

    return x509.Extensions(
        [
            x509.Extension(
                {
                    "extn_id": "basic_constraints",
                    "critical": True,
                    "extn_value": x509.BasicConstraints(basic_constraints_value),
                }
            ),
            x509.Extension(
                {
                    "extn_id": "key_usage",
                    "critical": True,
                    "extn_value": x509.KeyUsage({"key_cert_sign", "crl_sign"}),
                }
            ),
            *_key_identifier_extensions(subject_public_key_info, issuer_public_key_info),
        ]
    )


# RFC 5280 4.2.1.3: key transport only for RSA, key agreement only for EC.
_LEAF_KEY_USAGES = {
    "rsa": {"digital_signature", "key_encipherment"},
    "ec": {"digital_signature", "key_agreement"},
}


def build_leaf_extensions(
    *,
    subject_public_key_info: keys.PublicKeyInfo,
    issuer_public_key_info: keys.PublicKeyInfo,
    subject_alt_name: x509.Extension | None = None,
) -> x509.Extensions:
    extensions: list[x509.Extension] = [
        x509.Extension(
            {
                "extn_id": "basic_constraints",
                "critical": True,
                "extn_value": x509.BasicConstraints({"ca": False}),
            }
        ),
        x509.Extension(
            {
                "extn_id": "key_usage",
                "critical": True,
                "extn_value": x509.KeyUsage(
                    _LEAF_KEY_USAGES.get(
                        subject_public_key_info.algorithm, {"digital_signature"}
                    )
                ),
            }
        ),
        x509.Extension(
            {
                "extn_id": "extended_key_usage",
                "critical": False,
                "extn_value": x509.ExtKeyUsageSyntax(["server_auth", "client_auth"]),
            }
        ),
        *_key_identifier_extensions(subject_public_key_info, issuer_public_key_info),
    ]
    if subject_alt_name is not None:
        extensions.append(subject_alt_name)
    return x509.Extensions(extensions)


def build_and_encode_certificate(
    *,
    subject: x509.Name,
    issuer_subject: x509.Name,
    not_before: datetime,
    not_after: datetime,
    public_key_info: keys.PublicKeyInfo,
    is_ca: bool,
    path_length: int | None,
    sign_digest: SignDigest,
    signing_algorithm: str,
    issuer_public_key_info: keys.PublicKeyInfo,
    serial_number: int | None = None,
    subject_alt_name: x509.Extension | None = None,
) -> bytes:
    """
    Assemble a TBS certificate, hash it and have `sign_digest` produce the
    signature. Returns the DER encoded certificate.
    """
    if not_after <= not_before:
        raise ValueError("not_after must be later than not_before.")
    resolved_serial = serial_number or generate_serial_number()

    if is_ca:
        extensions = build_ca_extensions(
            subject_public_key_info=public_key_info,
            issuer_public_key_info=issuer_public_key_info,
            path_length=path_length,
        )
    else:
        extensions = build_leaf_extensions(
            subject_public_key_info=public_key_info,
            issuer_public_key_info=issuer_public_key_info,
            subject_alt_name=subject_alt_name,
        )

    signature_id = signature_algorithm_identifier(signing_algorithm)
    tbs_certificate = x509.TbsCertificate(
        {
            "version": "v3",
            "serial_number": resolved_serial,
            "signature": signature_id,
            "issuer": issuer_subject,
            "validity": x509.Validity(
                {
                    "not_before": _x509_time(not_before),
                    "not_after": _x509_time(not_after),
                }
            ),
            "subject": subject,
            "subject_public_key_info": public_key_info,
            "extensions": extensions,
        }
    )

    digest = hashlib.new(
        hash_name_for_algorithm(signing_algorithm), tbs_certificate.dump()
    ).digest()
    signature = normalize_signature_for_algorithm(
        signing_algorithm,
        sign_digest(digest),
    )
    certificate = x509.Certificate(
        {
            "tbs_certificate": tbs_certificate,
            "signature_algorithm": signature_id,
            "signature_value": signature,
        }
    )
    return certificate.dump()


def create_self_signed_ca_certificate(
    *,
    subject: x509.Name,
    subject_public_key_info: keys.PublicKeyInfo,
    sign_digest: SignDigest,
    signing_algorithm: str,
    not_before: datetime,
    not_after: datetime,
    path_length: int | None = 1,
    serial_number: int | None = None,
) -> bytes:
    return build_and_encode_certificate(
        subject=subject,
        issuer_subject=subject,
        not_before=not_before,
        not_after=not_after,
        public_key_info=subject_public_key_info,
        is_ca=True,
        path_length=path_length,
        sign_digest=sign_digest,
        signing_algorithm=signing_algorithm,
        issuer_public_key_info=subject_public_key_info,
        serial_number=serial_number,
    )
