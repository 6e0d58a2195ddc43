from __future__ import annotations

import argparse
import json
import os
import sys
from contextlib import AbstractContextManager
from pathlib import Path
from typing import Callable

from .config import HsmConfig, IssuerConfig
from .exceptions import HsmCaError
from .issuer import AuthorityBootstrapper, RemoteSigningCapability, RequestSigner
from .keystore import Pkcs11KeyStore
from .logging_utils import configure_logging
from .models import AuthorityRequest, SigningRequest
from .x509_ops import dump_certificate_pem

StoreFactory = Callable[[], AbstractContextManager[RemoteSigningCapability]]

# sysexits.h EX_TEMPFAIL: the same invocation may succeed when retried.
EXIT_RETRYABLE = 75


class _HelpFormatter(
    argparse.RawTextHelpFormatter,
    argparse.ArgumentDefaultsHelpFormatter,
):
    """Keep multiline examples readable and include defaults."""


CLI_HELP_EPILOG = """Environment:
  Required:
    HSM_PKCS11_MODULE
    HSM_USER_PIN
    HSM_TOKEN_LABEL or HSM_SLOT
    HSM_CA_ISSUING_CA           # issuer identity on the token

  Optional:
    HSM_CA_CERT_VALIDITY_DAYS=365
    HSM_CA_MAX_CERT_VALIDITY=730
    HSM_CA_CERT_PATH_LENGTH=0   # root CA pathLen set by bootstrap
    HSM_CA_KEY_SIZE=4096
    HSM_CA_HASH_BITS=256

Examples:
  # Create the root CA once; re-running is a no-op
  hsm-ca bootstrap --subject "CN=Example Root, O=Example" --path-length 2 --validity-months 120

  # Issue a device certificate
  hsm-ca sign --csr-file device.csr --out device.der --validity-days 30

  # Issue a subordinate CA certificate
  hsm-ca sign --csr-file intermediate.csr --out intermediate.pem --format pem --intermediate

  # Export issuer certificates
  hsm-ca fetch --name root-ca --out root-ca.pem
"""


def _write_text_output(payload: str, out_path: str | None, label: str) -> None:
    if out_path is None:
        print(payload)
        return
    target = Path(out_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(payload, encoding="utf-8")
    print(f"Wrote {label} to: {target}")


def _write_json_output(payload: dict[str, object], out_path: str | None, label: str) -> None:
    _write_text_output(json.dumps(payload, indent=2, sort_keys=True), out_path, label)


def _write_binary_output(payload: bytes, out_path: str, label: str) -> None:
    target = Path(out_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(payload)
    print(f"Wrote {label} to: {target}")


def _read_binary_file(path: str) -> bytes:
    source = Path(path)
    if not source.exists():
        raise ValueError(f"File does not exist: {source}")
    if not source.is_file():
        raise ValueError(f"Path is not a file: {source}")
    return source.read_bytes()


def _add_issuer_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--issuing-ca",
        default=None,
        help="Issuer identity on the token (default: $HSM_CA_ISSUING_CA).",
    )
    parser.add_argument(
        "--hash-bits",
        type=int,
        choices=[256, 384],
        default=None,
        help="Signature hash size (default: $HSM_CA_HASH_BITS).",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hsm-ca",
        description=(
            "Certificate authority whose signing keys stay on a PKCS#11 HSM: "
            "bootstrap the CA once, then sign CSRs into device or intermediate certificates."
        ),
        formatter_class=_HelpFormatter,
        epilog=CLI_HELP_EPILOG,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    bootstrap = subparsers.add_parser(
        "bootstrap",
        help="Create the CA key and certificate if they do not exist yet.",
        formatter_class=_HelpFormatter,
    )
    bootstrap.add_argument(
        "--subject",
        default=None,
        help='CA subject distinguished name, for example "CN=Example Root, O=Example".',
    )
    _add_issuer_args(bootstrap)
    bootstrap.add_argument(
        "--path-length",
        type=int,
        default=None,
        help="Root CA pathLen constraint (default: $HSM_CA_CERT_PATH_LENGTH).",
    )
    bootstrap.add_argument(
        "--validity-months",
        type=int,
        default=None,
        help="CA validity in months (default: HSM_CA_CERT_VALIDITY_DAYS / 30).",
    )
    bootstrap.add_argument(
        "--key-size",
        type=int,
        choices=[2048, 3072, 4096],
        default=None,
        help="CA RSA key size (default: $HSM_CA_KEY_SIZE).",
    )

    sign = subparsers.add_parser(
        "sign",
        help="Sign a CSR into a certificate chained to the issuing CA.",
        formatter_class=_HelpFormatter,
    )
    sign.add_argument("--csr-file", default=None, help="Path to the CSR (PEM or DER).")
    sign.add_argument("--out", default=None, help="Output path for the issued certificate.")
    sign.add_argument(
        "--format",
        choices=["der", "pem"],
        default="der",
        help="Encoding of the issued certificate file.",
    )
    sign.add_argument(
        "--intermediate",
        action="store_true",
        help="Issue a subordinate CA certificate instead of a device certificate.",
    )
    sign.add_argument(
        "--validity-days",
        type=int,
        default=None,
        help="Certificate validity in days (default: $HSM_CA_CERT_VALIDITY_DAYS).",
    )
    sign.add_argument(
        "--path-length",
        type=int,
        default=None,
        help=(
            "pathLen constraint granted with --intermediate "
            "(default: one below the issuer's, or 0 if the issuer has none)."
        ),
    )
    _add_issuer_args(sign)

    fetch = subparsers.add_parser(
        "fetch",
        help="Export public issuer certificates by name as PEM.",
        formatter_class=_HelpFormatter,
    )
    fetch.add_argument(
        "--name",
        action="append",
        default=None,
        help="Issuer identity to export. Repeatable (default: $HSM_CA_ISSUING_CA).",
    )
    fetch.add_argument("--out", default=None, help="Output path for PEM bundle (default: stdout).")

    return parser


def _default_store_factory() -> Pkcs11KeyStore:
    return Pkcs11KeyStore(HsmConfig.from_env())


def _issuer_config(args: argparse.Namespace, **extra: object) -> IssuerConfig:
    environ = dict(os.environ)
    if args.issuing_ca is not None:
        environ["HSM_CA_ISSUING_CA"] = args.issuing_ca
    return IssuerConfig.from_env(environ).with_overrides(hash_bits=args.hash_bits, **extra)


def _run_bootstrap(args: argparse.Namespace, store_factory: StoreFactory) -> None:
    config = _issuer_config(
        args, key_size=args.key_size, cert_path_length=args.path_length
    )
    validity_months = (
        args.validity_months if args.validity_months is not None else config.validity_months
    )
    request = AuthorityRequest.create(
        subject=args.subject,
        path_length=config.cert_path_length,
        validity_months=validity_months,
        key_size_bits=config.key_size,
        hash_bits=config.hash_bits,
    )
    with store_factory() as store:
        outcome = AuthorityBootstrapper(store).ensure_authority(config.issuing_ca, request)

    _write_json_output(
        {
            "operation": "bootstrap",
            "issuer": config.issuing_ca,
            "outcome": outcome.value,
        },
        out_path=None,
        label="bootstrap result",
    )


def _run_sign(args: argparse.Namespace, store_factory: StoreFactory) -> None:
    if not args.csr_file or not args.out:
        raise ValueError("Path to CSR or the Output Filename is not provided.")

    config = _issuer_config(args, cert_validity_days=args.validity_days)
    request = SigningRequest.from_config(
        config,
        csr=_read_binary_file(args.csr_file),
        is_intermediate_ca=args.intermediate,
        path_length=args.path_length,
    )
    with store_factory() as store:
        issued = RequestSigner(store).sign(request)

    payload = issued.to_pem() if args.format == "pem" else issued.certificate
    label = "intermediate certificate" if issued.is_ca else "device certificate"
    _write_binary_output(payload, out_path=args.out, label=label)
    _write_json_output(
        {
            "operation": "sign",
            "issuer": str(issued.issuer),
            "serial_number": format(issued.serial_number, "x"),
            "not_before": issued.not_before.isoformat(),
            "not_after": issued.not_after.isoformat(),
            "is_ca": issued.is_ca,
        },
        out_path=None,
        label="issuance metadata",
    )


def _run_fetch(args: argparse.Namespace, store_factory: StoreFactory) -> None:
    names = args.name or [IssuerConfig.from_env().issuing_ca]
    with store_factory() as store:
        certificates = RequestSigner(store).get_public_certificates_by_name(names)
    if not certificates:
        raise ValueError(f"No certificates found for: {', '.join(names)}")
    bundle = "".join(dump_certificate_pem(cert).decode("ascii") for cert in certificates)
    _write_text_output(bundle.rstrip("\n"), out_path=args.out, label="certificate bundle")


def main(argv: list[str] | None = None, store_factory: StoreFactory | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    factory = store_factory or _default_store_factory
    try:
        configure_logging()

        if args.command == "bootstrap":
            _run_bootstrap(args, factory)
            return 0

        if args.command == "sign":
            _run_sign(args, factory)
            return 0

        if args.command == "fetch":
            _run_fetch(args, factory)
            return 0

        raise ValueError("Unsupported command.")
    except (HsmCaError, ValueError) as exc:
        print(f"CA CLI error: {exc}", file=sys.stderr)
        if getattr(exc, "retryable", False):
            return EXIT_RETRYABLE
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
