"""USB token signing service backed by PKCS#11."""

from .artifacts import ArtifactScope, ArtifactStore, TemporaryArtifact
from .certificates import CertificateRecord, list_certificates, record_from_der
from .config import RoleKeyPolicy, TokenSignerConfig
from .diagnostics import DeviceStatus, detect
from .exceptions import (
    ErrorKind,
    InvalidRequest,
    KeyNotFound,
    MechanismUnsupported,
    NoProviderFound,
    OperationTimeout,
    PinIncorrect,
    ProviderError,
    ProviderLoadFailed,
    SignatureValidationFailed,
    TokenAbsent,
    TokenBusy,
    TokenConfigurationError,
    TokenOperationError,
    TokenSignerError,
)
from .logging_utils import configure_logging
from .provider import ProbeResult, ProviderHandle, ProviderLocator, probe_module
from .service import TokenService
from .session import SessionState, TokenSession, classify_provider_error, with_session
from .signer import (
    SIGNING_MECHANISMS,
    SignatureResult,
    SigningMechanismSpec,
    sign,
    sign_submission,
)

__all__ = [
    "SIGNING_MECHANISMS",
    "ArtifactScope",
    "ArtifactStore",
    "CertificateRecord",
    "DeviceStatus",
    "ErrorKind",
    "InvalidRequest",
    "KeyNotFound",
    "MechanismUnsupported",
    "NoProviderFound",
    "OperationTimeout",
    "PinIncorrect",
    "ProbeResult",
    "ProviderError",
    "ProviderHandle",
    "ProviderLoadFailed",
    "ProviderLocator",
    "RoleKeyPolicy",
    "SessionState",
    "SignatureResult",
    "SignatureValidationFailed",
    "SigningMechanismSpec",
    "TemporaryArtifact",
    "TokenAbsent",
    "TokenBusy",
    "TokenConfigurationError",
    "TokenOperationError",
    "TokenService",
    "TokenSession",
    "TokenSignerConfig",
    "TokenSignerError",
    "classify_provider_error",
    "configure_logging",
    "detect",
    "list_certificates",
    "probe_module",
    "record_from_der",
    "sign",
    "sign_submission",
    "with_session",
]
