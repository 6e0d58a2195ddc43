from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from asn1crypto import algos
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from conftest import build_csr, corrupt_signature, public_key_info, software_sign_digest
from hsm_ca.exceptions import MalformedRequestError
from hsm_ca.x509_ops import (
    build_and_encode_certificate,
    create_self_signed_ca_certificate,
    dump_certificate_pem,
    load_certificate,
    normalize_signature_for_algorithm,
    parse_distinguished_name,
    parse_request,
    request_public_key_info,
    request_subject,
    request_subject_text,
    requested_subject_alt_name,
    signing_algorithm_for_key,
    verify_request_signature,
)

NOT_BEFORE = datetime(2026, 3, 14, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="module")
def issuer_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _self_signed(issuer_key, **overrides) -> bytes:
    algorithm = overrides.pop("signing_algorithm", "rsa_pkcs1v15_sha256")
    values = {
        "subject": parse_distinguished_name("CN=Test Root, O=Example, C=us"),
        "subject_public_key_info": public_key_info(issuer_key),
        "sign_digest": lambda digest: software_sign_digest(issuer_key, digest, algorithm),
        "signing_algorithm": algorithm,
        "not_before": NOT_BEFORE,
        "not_after": NOT_BEFORE + timedelta(days=3650),
    }
    values.update(overrides)
    return create_self_signed_ca_certificate(**values)


def test_distinguished_name_order_and_country_case() -> None:
    name = parse_distinguished_name("CN=Test Root, O=Example, C=us")

    assert name.native == {
        "country_name": "US",
        "organization_name": "Example",
        "common_name": "Test Root",
    }
    # RDN sequence is stored most general first.
    assert [rdn[0]["type"].native for rdn in name.chosen] == [
        "country_name",
        "organization_name",
        "common_name",
    ]
    assert name.chosen[0][0]["value"].name == "printable_string"


def test_distinguished_name_escaped_comma() -> None:
    name = parse_distinguished_name(r"CN=Acme\, Inc., OU=Devices")

    assert name.native["common_name"] == "Acme, Inc."
    assert name.native["organizational_unit_name"] == "Devices"


def test_distinguished_name_multi_valued_rdn() -> None:
    name = parse_distinguished_name("CN=a+O=b, C=US")

    assert len(name.chosen) == 2
    multi_valued = name.chosen[1]
    assert {item["type"].native: item["value"].native for item in multi_valued} == {
        "common_name": "a",
        "organization_name": "b",
    }


def test_distinguished_name_hex_escape_and_escaped_plus() -> None:
    name = parse_distinguished_name(r"CN=Acme\2C Inc \+ Co, E=ops@example.test")

    assert name.native["common_name"] == "Acme, Inc + Co"
    assert name.native["email_address"] == "ops@example.test"
    assert len(name.chosen) == 2


@pytest.mark.parametrize(
    "text",
    ["", "Root", "CN=", "XX=value", "C=USA", "CN=Root\\", "CN=a,,O=b"],
)
def test_distinguished_name_rejects_invalid_input(text: str) -> None:
    with pytest.raises(ValueError):
        parse_distinguished_name(text)


def test_request_subject_text_escapes_special_characters() -> None:
    request = parse_request(build_csr("a+b, c"))

    assert request_subject_text(request) == r"CN=a\+b\, c"


def test_self_signed_certificate_matches_openssl_view(issuer_key) -> None:
    der = _self_signed(issuer_key, path_length=0)

    certificate = x509.load_der_x509_certificate(der)
    assert certificate.subject.rfc4514_string() == "CN=Test Root,O=Example,C=US"
    assert certificate.issuer == certificate.subject
    assert certificate.not_valid_before_utc == NOT_BEFORE
    assert certificate.not_valid_after_utc == NOT_BEFORE + timedelta(days=3650)
    constraints = certificate.extensions.get_extension_for_class(x509.BasicConstraints)
    assert constraints.value.ca is True
    assert constraints.value.path_length == 0
    ski = certificate.extensions.get_extension_for_class(x509.SubjectKeyIdentifier)
    aki = certificate.extensions.get_extension_for_class(x509.AuthorityKeyIdentifier)
    assert ski.value.digest == aki.value.key_identifier
    certificate.verify_directly_issued_by(certificate)


def test_leaf_certificate_fields_round_trip(issuer_key) -> None:
    issuer_der = _self_signed(issuer_key)
    issuer = load_certificate(issuer_der)
    leaf_key = ec.generate_private_key(ec.SECP256R1())
    subject = parse_distinguished_name("CN=device-7")

    der = build_and_encode_certificate(
        subject=subject,
        issuer_subject=issuer.subject,
        not_before=NOT_BEFORE,
        not_after=NOT_BEFORE + timedelta(days=30),
        public_key_info=public_key_info(leaf_key),
        is_ca=False,
        path_length=None,
        sign_digest=lambda digest: software_sign_digest(issuer_key, digest, "rsa_pkcs1v15_sha256"),
        signing_algorithm="rsa_pkcs1v15_sha256",
        issuer_public_key_info=public_key_info(issuer_key),
        serial_number=4242,
    )

    parsed = load_certificate(der)
    assert parsed.serial_number == 4242
    assert parsed.subject.native == {"common_name": "device-7"}
    assert parsed.issuer.native == issuer.subject.native
    assert parsed.not_valid_before == NOT_BEFORE
    assert parsed.not_valid_after == NOT_BEFORE + timedelta(days=30)
    assert parsed.public_key.dump() == public_key_info(leaf_key).dump()
    assert not parsed.ca
    assert parsed.extended_key_usage_value.native == ["server_auth", "client_auth"]

    certificate = x509.load_der_x509_certificate(der)
    certificate.verify_directly_issued_by(x509.load_der_x509_certificate(issuer_der))


def test_far_future_expiry_uses_generalized_time(issuer_key) -> None:
    not_after = datetime(2051, 1, 1, tzinfo=timezone.utc)

    der = _self_signed(issuer_key, not_after=not_after)

    parsed = load_certificate(der)
    assert parsed["tbs_certificate"]["validity"]["not_after"].name == "general_time"
    assert parsed["tbs_certificate"]["validity"]["not_before"].name == "utc_time"
    assert x509.load_der_x509_certificate(der).not_valid_after_utc == not_after


def test_build_rejects_inverted_validity(issuer_key) -> None:
    with pytest.raises(ValueError):
        _self_signed(issuer_key, not_after=NOT_BEFORE)


def test_ecdsa_issuer_signature(issuer_key) -> None:
    ec_key = ec.generate_private_key(ec.SECP384R1())

    der = _self_signed(
        issuer_key,
        subject_public_key_info=public_key_info(ec_key),
        sign_digest=lambda digest: software_sign_digest(ec_key, digest, "ecdsa_sha384"),
        signing_algorithm="ecdsa_sha384",
    )

    certificate = x509.load_der_x509_certificate(der)
    assert isinstance(certificate.signature_hash_algorithm, hashes.SHA384)
    certificate.verify_directly_issued_by(certificate)


def test_normalize_raw_ecdsa_signature() -> None:
    raw = (7).to_bytes(32, "big") + (9).to_bytes(32, "big")

    der = normalize_signature_for_algorithm("ecdsa_sha256", raw)

    assert decode_dss_signature(der) == (7, 9)
    assert normalize_signature_for_algorithm("ecdsa_sha256", der) == der
    assert normalize_signature_for_algorithm("rsa_pkcs1v15_sha256", raw) == raw


def test_normalize_rejects_odd_raw_ecdsa_signature() -> None:
    with pytest.raises(ValueError):
        normalize_signature_for_algorithm("ecdsa_sha256", b"\x01\x02\x03")


def test_signing_algorithm_for_key(issuer_key) -> None:
    ec_info = public_key_info(ec.generate_private_key(ec.SECP256R1()))

    assert signing_algorithm_for_key(public_key_info(issuer_key)) == "rsa_pkcs1v15_sha256"
    assert signing_algorithm_for_key(public_key_info(issuer_key), 384) == "rsa_pkcs1v15_sha384"
    assert signing_algorithm_for_key(ec_info, 384) == "ecdsa_sha384"
    with pytest.raises(ValueError):
        signing_algorithm_for_key(ec_info, 512)


def test_parse_request_pem_and_der() -> None:
    key = ec.generate_private_key(ec.SECP256R1())
    der = build_csr("device-1", private_key=key, dns_names=["device-1.example.test"])
    pem_bytes = x509.load_der_x509_csr(der).public_bytes(serialization.Encoding.PEM)

    for payload in (der, pem_bytes, pem_bytes.decode("ascii")):
        request = parse_request(payload)
        assert request_subject(request).native == {"common_name": "device-1"}
        assert request_public_key_info(request).dump() == public_key_info(key).dump()
        assert verify_request_signature(request) is True
        san = requested_subject_alt_name(request)
        assert san is not None
        assert san["extn_value"].native == ["device-1.example.test"]


def test_request_without_extensions_has_no_alt_name() -> None:
    assert requested_subject_alt_name(parse_request(build_csr())) is None


def test_parse_request_rejects_trailing_garbage() -> None:
    with pytest.raises(MalformedRequestError):
        parse_request(build_csr() + b"\x00\x00")


def test_parse_request_rejects_wrong_pem_type(issuer_key) -> None:
    with pytest.raises(MalformedRequestError):
        parse_request(dump_certificate_pem(_self_signed(issuer_key)))


def test_verify_request_signature_detects_tampering() -> None:
    request = parse_request(corrupt_signature(build_csr()))

    assert verify_request_signature(request) is False


def test_dump_certificate_pem(issuer_key) -> None:
    der = _self_signed(issuer_key)

    pem_bytes = dump_certificate_pem(der)

    assert pem_bytes.startswith(b"-----BEGIN CERTIFICATE-----")
    assert dump_certificate_pem(load_certificate(der)) == pem_bytes
    assert load_certificate(pem_bytes).dump() == der


def test_signed_digest_algorithm_identifiers(issuer_key) -> None:
    der = _self_signed(issuer_key, signing_algorithm="rsa_pkcs1v15_sha384")

    parsed = load_certificate(der)
    assert parsed["signature_algorithm"]["algorithm"].native == "sha384_rsa"
    assert isinstance(parsed["signature_algorithm"], algos.SignedDigestAlgorithm)
