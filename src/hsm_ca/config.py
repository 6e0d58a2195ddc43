from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping

from .exceptions import HsmConfigurationError

DEFAULT_CERT_VALIDITY_DAYS = 365
DEFAULT_MAX_CERT_VALIDITY = 730
DEFAULT_CA_KEY_SIZE = 4096
DEFAULT_HASH_BITS = 256

SUPPORTED_CA_KEY_SIZES = (2048, 3072, 4096)
SUPPORTED_HASH_BITS = (256, 384)


def _env_int(
    environ: Mapping[str, str],
    name: str,
    default: int | None = None,
) -> int | None:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise HsmConfigurationError(f"{name} must be an integer, got: {raw}") from exc


@dataclass(frozen=True)
class HsmConfig:
    """Runtime configuration for PKCS#11 HSM access."""

    module_path: str
    token_label: str | None = None
    slot_no: int | None = None
    user_pin_env: str = "HSM_USER_PIN"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "HsmConfig":
        env = os.environ if environ is None else environ
        module_path = env.get("HSM_PKCS11_MODULE")
        token_label = env.get("HSM_TOKEN_LABEL")
        user_pin_env = env.get("HSM_USER_PIN_ENV", "HSM_USER_PIN")

        if not module_path:
            raise HsmConfigurationError("HSM_PKCS11_MODULE is required.")
        if not Path(module_path).exists():
            raise HsmConfigurationError(
                f"PKCS#11 module path does not exist: {module_path}"
            )

        slot_no = _env_int(env, "HSM_SLOT")
        if not token_label and slot_no is None:
            raise HsmConfigurationError(
                "Set either HSM_TOKEN_LABEL or HSM_SLOT to locate the token."
            )

        return cls(
            module_path=module_path,
            token_label=token_label,
            slot_no=slot_no,
            user_pin_env=user_pin_env,
        )

    def user_pin(self) -> str:
        pin = os.environ.get(self.user_pin_env)
        if not pin:
            raise HsmConfigurationError(f"{self.user_pin_env} is required.")
        return pin


@dataclass(frozen=True)
class IssuerConfig:
    """
    Issuing-CA settings shared by the bootstrap and signing commands.

    `issuing_ca` names the CA key/certificate pair on the token. Validity
    for bootstrapped authorities is expressed in months and derived from
    `cert_validity_days` the same way as for the signing path.
    """

    issuing_ca: str
    cert_validity_days: int = DEFAULT_CERT_VALIDITY_DAYS
    max_cert_validity: int = DEFAULT_MAX_CERT_VALIDITY
    cert_path_length: int = 0
    key_size: int = DEFAULT_CA_KEY_SIZE
    hash_bits: int = DEFAULT_HASH_BITS

    def __post_init__(self) -> None:
        if not self.issuing_ca or not self.issuing_ca.strip():
            raise HsmConfigurationError("HSM_CA_ISSUING_CA is required.")
        if self.max_cert_validity <= 0:
            raise HsmConfigurationError("HSM_CA_MAX_CERT_VALIDITY must be > 0.")
        if self.cert_path_length < 0:
            raise HsmConfigurationError("HSM_CA_CERT_PATH_LENGTH must be >= 0.")
        if self.key_size not in SUPPORTED_CA_KEY_SIZES:
            raise HsmConfigurationError(
                "HSM_CA_KEY_SIZE must be one of: "
                + ", ".join(str(size) for size in SUPPORTED_CA_KEY_SIZES)
            )
        if self.hash_bits not in SUPPORTED_HASH_BITS:
            raise HsmConfigurationError(
                "HSM_CA_HASH_BITS must be one of: "
                + ", ".join(str(bits) for bits in SUPPORTED_HASH_BITS)
            )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "IssuerConfig":
        env = os.environ if environ is None else environ
        return cls(
            issuing_ca=env.get("HSM_CA_ISSUING_CA", ""),
            cert_validity_days=_env_int(
                env, "HSM_CA_CERT_VALIDITY_DAYS", DEFAULT_CERT_VALIDITY_DAYS
            ),
            max_cert_validity=_env_int(
                env, "HSM_CA_MAX_CERT_VALIDITY", DEFAULT_MAX_CERT_VALIDITY
            ),
            cert_path_length=_env_int(env, "HSM_CA_CERT_PATH_LENGTH", 0),
            key_size=_env_int(env, "HSM_CA_KEY_SIZE", DEFAULT_CA_KEY_SIZE),
            hash_bits=_env_int(env, "HSM_CA_HASH_BITS", DEFAULT_HASH_BITS),
        )

    @property
    def validity_months(self) -> int:
        return self.cert_validity_days // 30

    def with_overrides(self, **overrides: object) -> "IssuerConfig":
        """Return a copy with every non-None override applied."""
        applied = {name: value for name, value in overrides.items() if value is not None}
        if not applied:
            return self
        return replace(self, **applied)
