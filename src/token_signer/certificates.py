from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable

from asn1crypto import pem, x509
from pkcs11 import Attribute, ObjectClass
from pkcs11.exceptions import PKCS11Error

from .session import TokenSession

_logger = logging.getLogger("token_signer.certificates")

_UNREADABLE = (PKCS11Error, KeyError, NotImplementedError)


@dataclass(frozen=True)
class CertificateRecord:
    """Normalised view of a certificate visible on a token or host store."""

    label: str | None = None
    subject: str | None = None
    issuer: str | None = None
    id: str | None = None
    serial_number: str | None = None
    not_before: str | None = None
    not_after: str | None = None
    source: str = "pkcs11"
    lower_fidelity: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


def _load_pem_or_der(data: bytes | str) -> bytes:
    payload = data.encode("utf-8") if isinstance(data, str) else data
    if pem.detect(payload):
        pem_type, _headers, der_bytes = pem.unarmor(payload)
        if pem_type != "CERTIFICATE":
            raise ValueError(f"Expected PEM type 'CERTIFICATE', received '{pem_type}'.")
        return der_bytes
    return payload


def load_certificate(data: bytes | str) -> x509.Certificate:
    return x509.Certificate.load(_load_pem_or_der(data))


def _optional(read: Callable[[], Any]) -> Any:
    try:
        return read()
    except (ValueError, TypeError, AttributeError):
        return None


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def format_serial(serial: int) -> str:
    return format(serial, "X")


def record_from_der(
    der: bytes | str,
    *,
    label: str | None = None,
    id: str | None = None,
    source: str = "pkcs11",
) -> CertificateRecord:
    certificate = _optional(lambda: load_certificate(der))
    if certificate is None:
        return CertificateRecord(label=label, id=id, source=source)
    return CertificateRecord(
        label=label,
        subject=_optional(lambda: certificate.subject.human_friendly),
        issuer=_optional(lambda: certificate.issuer.human_friendly),
        id=id,
        serial_number=_optional(lambda: format_serial(certificate.serial_number)),
        not_before=_optional(lambda: _isoformat(certificate.not_valid_before)),
        not_after=_optional(lambda: _isoformat(certificate.not_valid_after)),
        source=source,
    )


def _read_attribute(obj: Any, attribute: Attribute) -> Any:
    try:
        value = obj[attribute]
    except _UNREADABLE:
        return None
    if value in (None, b"", ""):
        return None
    return value


def _record_from_object(obj: Any) -> CertificateRecord:
    label = _read_attribute(obj, Attribute.LABEL)
    if isinstance(label, bytes):
        label = label.decode("utf-8", "ignore")
    raw_id = _read_attribute(obj, Attribute.ID)
    key_id = raw_id.hex() if isinstance(raw_id, bytes) else raw_id

    value = _read_attribute(obj, Attribute.VALUE)
    if value is not None:
        record = record_from_der(value, label=label, id=key_id)
        if record.subject is not None:
            return record

    subject_der = _read_attribute(obj, Attribute.SUBJECT)
    subject = None
    if subject_der is not None:
        subject = _optional(lambda: x509.Name.load(subject_der).human_friendly)
    return CertificateRecord(label=label, subject=subject, id=key_id)


def list_certificates(session: TokenSession) -> list[CertificateRecord]:
    """Return every certificate object in the session, in provider order."""
    records = [
        _record_from_object(obj)
        for obj in session.handle.get_objects({Attribute.CLASS: ObjectClass.CERTIFICATE})
    ]
    _logger.info("Listed token certificates count=%d", len(records))
    return records
