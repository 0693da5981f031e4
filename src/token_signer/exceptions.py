from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Typed failure kinds surfaced to callers."""

    NO_PROVIDER_FOUND = "NoProviderFound"
    PROVIDER_LOAD_FAILED = "ProviderLoadFailed"
    TOKEN_ABSENT = "TokenAbsent"
    PIN_INCORRECT = "PinIncorrect"
    MECHANISM_UNSUPPORTED = "MechanismUnsupported"
    SIGNATURE_VALIDATION_FAILED = "SignatureValidationFailed"
    TIMEOUT = "Timeout"
    TOKEN_BUSY = "TokenBusy"
    KEY_NOT_FOUND = "KeyNotFound"
    INVALID_REQUEST = "InvalidRequest"
    CONFIGURATION = "ConfigurationError"
    PROVIDER_ERROR = "ProviderError"


class TokenSignerError(RuntimeError):
    """Base error."""

    kind: ErrorKind = ErrorKind.PROVIDER_ERROR
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind.value)

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
        }


class TokenConfigurationError(TokenSignerError):
    """Configuration is invalid or incomplete."""

    kind = ErrorKind.CONFIGURATION


class TokenOperationError(TokenSignerError):
    """A token operation failed."""


class NoProviderFound(TokenOperationError):
    kind = ErrorKind.NO_PROVIDER_FOUND
    status_code = 503


class ProviderLoadFailed(TokenOperationError):
    """The module exists but cannot be loaded (architecture or dependencies)."""

    kind = ErrorKind.PROVIDER_LOAD_FAILED
    status_code = 503


class TokenAbsent(TokenOperationError):
    kind = ErrorKind.TOKEN_ABSENT
    status_code = 404


class PinIncorrect(TokenOperationError):
    kind = ErrorKind.PIN_INCORRECT
    status_code = 401


class MechanismUnsupported(TokenOperationError):
    kind = ErrorKind.MECHANISM_UNSUPPORTED
    status_code = 500


class SignatureValidationFailed(TokenOperationError):
    kind = ErrorKind.SIGNATURE_VALIDATION_FAILED
    status_code = 500


class OperationTimeout(TokenOperationError):
    kind = ErrorKind.TIMEOUT
    status_code = 504
    retryable = True


class TokenBusy(TokenOperationError):
    """The token refused a new session or operation while another is active."""

    kind = ErrorKind.TOKEN_BUSY
    status_code = 409
    retryable = True


class KeyNotFound(TokenOperationError):
    kind = ErrorKind.KEY_NOT_FOUND
    status_code = 404


class InvalidRequest(TokenOperationError):
    kind = ErrorKind.INVALID_REQUEST
    status_code = 400


class ProviderError(TokenOperationError):
    """Provider failure that matched no known kind."""

    kind = ErrorKind.PROVIDER_ERROR
    status_code = 500
