"""Certificate authority issuing X.509 certificates with keys held on a PKCS#11 HSM."""

from .config import HsmConfig, IssuerConfig
from .exceptions import (
    AuthorityConflictError,
    HsmCaError,
    HsmConfigurationError,
    HsmOperationError,
    HsmPermissionDeniedError,
    HsmUnavailableError,
    InvalidRequestError,
    InvalidSignatureError,
    InvalidValidityPeriodError,
    MalformedRequestError,
    PathLengthConstraintError,
    UnknownIssuerError,
)
from .issuer import AuthorityBootstrapper, RemoteSigningCapability, RequestSigner
from .keystore import KeyVersion, Pkcs11KeyStore
from .logging_utils import configure_logging
from .models import (
    AuthorityRequest,
    BootstrapOutcome,
    IssuedCertificate,
    IssuerIdentity,
    KeyHandle,
    RemoteCertificate,
    SigningRequest,
)

__all__ = [
    "AuthorityBootstrapper",
    "AuthorityConflictError",
    "AuthorityRequest",
    "BootstrapOutcome",
    "HsmCaError",
    "HsmConfig",
    "HsmConfigurationError",
    "HsmOperationError",
    "HsmPermissionDeniedError",
    "HsmUnavailableError",
    "InvalidRequestError",
    "InvalidSignatureError",
    "InvalidValidityPeriodError",
    "IssuedCertificate",
    "IssuerConfig",
    "IssuerIdentity",
    "KeyHandle",
    "KeyVersion",
    "MalformedRequestError",
    "PathLengthConstraintError",
    "Pkcs11KeyStore",
    "RemoteCertificate",
    "RemoteSigningCapability",
    "RequestSigner",
    "SigningRequest",
    "UnknownIssuerError",
    "configure_logging",
]
