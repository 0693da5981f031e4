from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from pkcs11 import Attribute, KeyType, Mechanism, MGF, ObjectClass
from pkcs11.exceptions import MultipleObjectsReturned, NoSuchKey, PKCS11Error

from .artifacts import ArtifactStore
from .config import (
    DEFAULT_INTERMEDIARY_MECHANISM,
    DEFAULT_TAXPAYER_MECHANISM,
    RoleKeyPolicy,
)
from .exceptions import (
    InvalidRequest,
    KeyNotFound,
    MechanismUnsupported,
    SignatureValidationFailed,
)
from .session import TokenSession

_logger = logging.getLogger("token_signer.signer")

ROLES = ("taxpayer", "intermediary")
SUBMISSION_TYPES = ROLES
DIGEST_ALGORITHM = "sha256"

_SHA256_DIGEST_INFO_PREFIX = bytes.fromhex("3031300d060960864801650304020105000420")


@dataclass(frozen=True)
class SigningMechanismSpec:
    """PKCS#11 mechanism used to sign a SHA-256 payload digest."""

    name: str
    key_type: KeyType
    mechanism: Mechanism
    digest_info_prefix: bytes | None = None
    mechanism_param: tuple[Mechanism, MGF, int] | None = None

    def prepare(self, digest: bytes) -> bytes:
        if self.digest_info_prefix is not None:
            return self.digest_info_prefix + digest
        return digest


SIGNING_MECHANISMS: dict[str, SigningMechanismSpec] = {
    # Token hashes the digest again; the CAdES-BES signer of record.
    "SHA256-RSA-PKCS": SigningMechanismSpec(
        name="SHA256-RSA-PKCS",
        key_type=KeyType.RSA,
        mechanism=Mechanism.SHA256_RSA_PKCS,
    ),
    # Raw PKCS#1 v1.5 over DigestInfo || digest.
    "RSA-PKCS": SigningMechanismSpec(
        name="RSA-PKCS",
        key_type=KeyType.RSA,
        mechanism=Mechanism.RSA_PKCS,
        digest_info_prefix=_SHA256_DIGEST_INFO_PREFIX,
    ),
    "RSA-PKCS-PSS": SigningMechanismSpec(
        name="RSA-PKCS-PSS",
        key_type=KeyType.RSA,
        mechanism=Mechanism.RSA_PKCS_PSS,
        mechanism_param=(Mechanism.SHA256, MGF.SHA256, 32),
    ),
    "ECDSA": SigningMechanismSpec(
        name="ECDSA",
        key_type=KeyType.EC,
        mechanism=Mechanism.ECDSA,
    ),
}

_MECHANISM_ALIASES = {
    "SHA256WITHRSA": "SHA256-RSA-PKCS",
    "SHA256-WITH-RSA": "SHA256-RSA-PKCS",
    "RSA-PKCS1": "RSA-PKCS",
    "RSA-PSS": "RSA-PKCS-PSS",
}

ROLE_DEFAULT_MECHANISMS = {
    "taxpayer": DEFAULT_TAXPAYER_MECHANISM,
    "intermediary": DEFAULT_INTERMEDIARY_MECHANISM,
}


def list_mechanisms() -> tuple[str, ...]:
    return tuple(sorted(SIGNING_MECHANISMS.keys()))


def resolve_mechanism(name: str) -> SigningMechanismSpec:
    normalized = name.strip().upper().replace("_", "-")
    normalized = _MECHANISM_ALIASES.get(normalized, normalized)
    spec = SIGNING_MECHANISMS.get(normalized)
    if spec is None:
        available = ", ".join(list_mechanisms())
        raise MechanismUnsupported(
            f"Unsupported signing mechanism '{name}'. Available: {available}"
        )
    return spec


@dataclass(frozen=True)
class SignatureResult:
    """One role's signature over the request payload."""

    type: str
    mechanism: str
    signature: bytes
    timestamp: str
    digest_algorithm: str = DIGEST_ALGORITHM
    key_label: str | None = None
    key_id: str | None = None

    @property
    def signature_b64(self) -> str:
        return base64.b64encode(self.signature).decode("ascii")

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.type,
            "mechanism": self.mechanism,
            "algorithm": self.mechanism,
            "digest_algorithm": self.digest_algorithm,
            "signature": self.signature_b64,
            "signature_size": len(self.signature),
            "timestamp": self.timestamp,
        }
        if self.key_label is not None:
            payload["key_label"] = self.key_label
        if self.key_id is not None:
            payload["key_id"] = self.key_id
        return payload


def serialize_payload(payload: Any) -> bytes:
    """Deterministic JSON encoding: sorted keys, compact separators, UTF-8."""
    try:
        text = json.dumps(
            payload,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except (TypeError, ValueError) as exc:
        raise InvalidRequest(f"Payload is not JSON serialisable: {exc}") from exc
    return text.encode("utf-8")


def encode_signature(raw: bytes, *, expected_size: int | None = None) -> str:
    """
    Base64-encode a token signature after validating it.

    Raises SignatureValidationFailed for empty output, an RSA signature whose
    length differs from the modulus size, or an encoding that does not decode
    back to the same bytes.
    """
    if not raw:
        raise SignatureValidationFailed("The token returned an empty signature.")
    if expected_size is not None and len(raw) != expected_size:
        raise SignatureValidationFailed(
            f"Signature length {len(raw)} does not match the key size {expected_size}."
        )
    encoded = base64.b64encode(raw).decode("ascii")
    try:
        decoded = base64.b64decode(encoded.encode("ascii"), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise SignatureValidationFailed("Signature failed base64 validation.") from exc
    if decoded != raw:
        raise SignatureValidationFailed("Signature changed during base64 round trip.")
    return encoded


def _read(key: Any, attribute: Attribute) -> Any:
    try:
        return key[attribute]
    except (PKCS11Error, KeyError, NotImplementedError):
        return None


def _key_type(key: Any) -> Any:
    value = _read(key, Attribute.KEY_TYPE)
    if value is None:
        value = getattr(key, "key_type", None)
    return value


def _expected_signature_size(key: Any, spec: SigningMechanismSpec) -> int | None:
    if spec.key_type != KeyType.RSA:
        return None
    modulus = _read(key, Attribute.MODULUS)
    if not modulus:
        return None
    return (int.from_bytes(modulus, byteorder="big").bit_length() + 7) // 8


def select_signing_key(
    session: TokenSession,
    spec: SigningMechanismSpec,
    *,
    key_label: str | None = None,
    key_id: bytes | None = None,
) -> Any:
    handle = session.handle
    if key_label is not None or key_id is not None:
        try:
            key = handle.get_key(
                object_class=ObjectClass.PRIVATE_KEY,
                label=key_label,
                id=key_id,
            )
        except NoSuchKey as exc:
            raise KeyNotFound(f"Private key label={key_label!r} was not found.") from exc
        except MultipleObjectsReturned as exc:
            raise KeyNotFound(
                f"Private key label={key_label!r} is ambiguous; configure a key id."
            ) from exc
        actual = _key_type(key)
        if actual is not None and actual != spec.key_type:
            raise MechanismUnsupported(
                f"Mechanism {spec.name} requires a {spec.key_type.name} key."
            )
        return key

    other_types = False
    for key in handle.get_objects({Attribute.CLASS: ObjectClass.PRIVATE_KEY}):
        actual = _key_type(key)
        if actual is None or actual == spec.key_type:
            return key
        other_types = True
    if other_types:
        raise MechanismUnsupported(
            f"Mechanism {spec.name} requires a {spec.key_type.name} key; the token holds none."
        )
    raise KeyNotFound("The token holds no private key.")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def sign(
    session: TokenSession,
    payload: Any,
    mechanism: str | None = None,
    role: str = "taxpayer",
    *,
    artifacts: ArtifactStore,
    policy: RoleKeyPolicy | None = None,
    clock: Callable[[], str] = utc_now,
) -> SignatureResult:
    if role not in ROLES:
        raise InvalidRequest(f"Unknown signature role '{role}'. Use one of: {', '.join(ROLES)}.")
    mechanism_name = mechanism or (policy.mechanism if policy else ROLE_DEFAULT_MECHANISMS[role])
    spec = resolve_mechanism(mechanism_name)

    serialized = serialize_payload(payload)
    digest = hashlib.sha256(serialized).digest()

    with artifacts.scope() as scope:
        digest_artifact = scope.write(digest, suffix=".digest")
        key = select_signing_key(
            session,
            spec,
            key_label=policy.key_label if policy else None,
            key_id=policy.key_id if policy else None,
        )
        raw = key.sign(
            spec.prepare(digest_artifact.read_bytes()),
            mechanism=spec.mechanism,
            mechanism_param=spec.mechanism_param,
        )
        signature_artifact = scope.write(bytes(raw or b""), suffix=".sig")
        signature = signature_artifact.read_bytes()
        encode_signature(signature, expected_size=_expected_signature_size(key, spec))

    label = _read(key, Attribute.LABEL)
    raw_id = _read(key, Attribute.ID)
    result = SignatureResult(
        type=role,
        mechanism=spec.name,
        signature=signature,
        timestamp=clock(),
        key_label=label if isinstance(label, str) else None,
        key_id=raw_id.hex() if isinstance(raw_id, bytes) else None,
    )
    _logger.info(
        "Signed payload role=%s mechanism=%s key_label=%s signature_size=%d",
        role,
        spec.name,
        result.key_label,
        len(signature),
    )
    return result


def sign_submission(
    session: TokenSession,
    data: Any,
    submission_type: str = "taxpayer",
    *,
    artifacts: ArtifactStore,
    policies: Mapping[str, RoleKeyPolicy] | None = None,
    mechanism: str | None = None,
) -> list[SignatureResult]:
    """
    Produce the taxpayer signature and, for intermediary submissions, a second
    independent intermediary signature.
    """
    if submission_type not in SUBMISSION_TYPES:
        raise InvalidRequest(
            f"Unknown submission_type '{submission_type}'. Use one of: {', '.join(SUBMISSION_TYPES)}."
        )
    roles = ["taxpayer"]
    if submission_type == "intermediary":
        roles.append("intermediary")

    policies = policies or {}
    return [
        sign(
            session,
            data,
            mechanism=mechanism if role == "taxpayer" else None,
            role=role,
            artifacts=artifacts,
            policy=policies.get(role),
        )
        for role in roles
    ]
