class HsmCaError(RuntimeError):
    """Base issuer error."""

    retryable = False


class HsmConfigurationError(HsmCaError):
    """Configuration is invalid or incomplete."""


class InvalidRequestError(HsmCaError, ValueError):
    """Caller input was rejected locally; fix the input, do not retry."""


class MalformedRequestError(InvalidRequestError):
    """CSR bytes could not be parsed."""


class InvalidSignatureError(InvalidRequestError):
    """CSR self-signature does not verify against its own public key."""


class InvalidValidityPeriodError(InvalidRequestError):
    """Requested validity period is not positive or exceeds the configured maximum."""


class PathLengthConstraintError(InvalidRequestError):
    """Issuer path length constraint does not allow the requested certificate."""


class UnknownIssuerError(HsmCaError):
    """No certificate exists for the issuer identity; bootstrap it first."""


class HsmOperationError(HsmCaError):
    """An HSM operation failed."""


class HsmUnavailableError(HsmOperationError):
    """The HSM could not be reached or the session/device failed."""

    retryable = True


class HsmPermissionDeniedError(HsmOperationError):
    """The configured credentials lack rights for the operation."""


class AuthorityConflictError(HsmOperationError):
    """The issuer identity is already occupied on the token."""
