from __future__ import annotations

import struct
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import pkcs11
import pytest
from asn1crypto import keys, x509
from pkcs11 import Attribute, KeyType, ObjectClass
from pkcs11.constants import SlotFlag, TokenFlag

from token_signer import ArtifactStore, ProviderHandle

USER_PIN = "123456"


def build_certificate_der(
    common_name: str = "Taxpayer Signing",
    *,
    issuer_name: str = "Test Issuing CA",
    serial_number: int = 0x1A2B3C,
) -> bytes:
    """Structurally valid X.509 certificate with a placeholder signature."""
    public_key_info = keys.PublicKeyInfo(
        {
            "algorithm": {"algorithm": "rsa"},
            "public_key": keys.RSAPublicKey(
                {"modulus": int("C3" * 128, 16), "public_exponent": 65537}
            ),
        }
    )
    tbs_certificate = x509.TbsCertificate(
        {
            "version": "v3",
            "serial_number": serial_number,
            "signature": {"algorithm": "sha256_rsa"},
            "issuer": x509.Name.build({"common_name": issuer_name}),
            "validity": x509.Validity(
                {
                    "not_before": x509.Time(
                        {"utc_time": datetime(2025, 1, 1, tzinfo=timezone.utc)}
                    ),
                    "not_after": x509.Time(
                        {"utc_time": datetime(2027, 1, 1, tzinfo=timezone.utc)}
                    ),
                }
            ),
            "subject": x509.Name.build({"common_name": common_name}),
            "subject_public_key_info": public_key_info,
        }
    )
    return x509.Certificate(
        {
            "tbs_certificate": tbs_certificate,
            "signature_algorithm": {"algorithm": "sha256_rsa"},
            "signature_value": b"\x00" * 256,
        }
    ).dump()


def write_elf_stub(path: Path, bits: int | None = None) -> Path:
    bits = bits or struct.calcsize("P") * 8
    ei_class = 2 if bits == 64 else 1
    path.write_bytes(b"\x7fELF" + bytes([ei_class, 1, 1]) + b"\x00" * 57)
    return path


class FakeObject:
    def __init__(self, attributes: dict[Any, Any]) -> None:
        self.attributes = dict(attributes)

    def __getitem__(self, attribute: Any) -> Any:
        if attribute not in self.attributes:
            raise pkcs11.exceptions.AttributeTypeInvalid()
        return self.attributes[attribute]

    def matches(self, template: dict[Any, Any]) -> bool:
        return all(self.attributes.get(key) == value for key, value in template.items())


class FakePrivateKey(FakeObject):
    def __init__(
        self,
        label: str = "taxpayer-key",
        *,
        key_id: bytes = b"\x01",
        key_type: KeyType = KeyType.RSA,
        modulus_bytes: int = 256,
        signer: Callable[[bytes], bytes] | None = None,
    ) -> None:
        attributes: dict[Any, Any] = {
            Attribute.CLASS: ObjectClass.PRIVATE_KEY,
            Attribute.KEY_TYPE: key_type,
            Attribute.LABEL: label,
            Attribute.ID: key_id,
        }
        if key_type == KeyType.RSA:
            attributes[Attribute.MODULUS] = b"\xc3" * modulus_bytes
        super().__init__(attributes)
        self.modulus_bytes = modulus_bytes
        self.signer = signer
        self.sign_calls: list[dict[str, Any]] = []

    def sign(self, data: bytes, mechanism: Any = None, mechanism_param: Any = None) -> bytes:
        self.sign_calls.append(
            {"data": data, "mechanism": mechanism, "mechanism_param": mechanism_param}
        )
        if self.signer is not None:
            return self.signer(data)
        return (data * self.modulus_bytes)[: self.modulus_bytes]


def certificate_object(
    label: str = "taxpayer-cert",
    *,
    key_id: bytes = b"\x01",
    common_name: str = "Taxpayer Signing",
    value: bytes | None = None,
) -> FakeObject:
    return FakeObject(
        {
            Attribute.CLASS: ObjectClass.CERTIFICATE,
            Attribute.LABEL: label,
            Attribute.ID: key_id,
            Attribute.VALUE: value if value is not None else build_certificate_der(common_name),
        }
    )


class FakeSession:
    def __init__(self, objects: list[FakeObject]) -> None:
        self.objects = objects
        self.closed = False

    def get_objects(self, template: dict[Any, Any] | None = None):
        return iter([obj for obj in self.objects if obj.matches(template or {})])

    def get_key(self, object_class=None, key_type=None, label=None, id=None):
        template: dict[Any, Any] = {}
        if object_class is not None:
            template[Attribute.CLASS] = object_class
        if key_type is not None:
            template[Attribute.KEY_TYPE] = key_type
        if label is not None:
            template[Attribute.LABEL] = label
        if id is not None:
            template[Attribute.ID] = id
        found = [obj for obj in self.objects if obj.matches(template)]
        if not found:
            raise pkcs11.exceptions.NoSuchKey("No key matching template")
        if len(found) > 1:
            raise pkcs11.exceptions.MultipleObjectsReturned("More than 1 key matches")
        return found[0]

    def close(self) -> None:
        self.closed = True


class FakeToken:
    def __init__(
        self,
        objects: list[FakeObject] | None = None,
        *,
        pin: str = USER_PIN,
        label: str = "ePass2003",
        open_error: Exception | None = None,
    ) -> None:
        self.objects = objects if objects is not None else []
        self.pin = pin
        self.label = label
        self.serial = b"2B8A0A1C11000F0E"
        self.manufacturer_id = "EnterSafe"
        self.model = "PKCS#15"
        self.flags = TokenFlag.LOGIN_REQUIRED | TokenFlag.TOKEN_INITIALIZED
        self.open_error = open_error
        self.sessions: list[FakeSession] = []

    def open(self, user_pin: str | None = None, rw: bool = False) -> FakeSession:
        if self.open_error is not None:
            raise self.open_error
        if user_pin != self.pin:
            raise pkcs11.exceptions.PinIncorrect()
        session = FakeSession(self.objects)
        self.sessions.append(session)
        return session


class FakeSlot:
    def __init__(self, slot_id: int, token: FakeToken | None) -> None:
        self.slot_id = slot_id
        self.slot_description = f"Feitian ePass2003 0{slot_id}"
        self.manufacturer_id = "Feitian"
        self.flags = SlotFlag.REMOVABLE_DEVICE | SlotFlag.HW_SLOT
        if token is not None:
            self.flags |= SlotFlag.TOKEN_PRESENT
        self.token = token

    def get_token(self) -> FakeToken:
        if self.token is None:
            raise pkcs11.exceptions.TokenNotPresent()
        return self.token


class FakeLib:
    library_description = "Fake PKCS#11 module"
    manufacturer_id = "Test"
    cryptoki_version = (2, 40)
    library_version = (1, 0)

    def __init__(self, slots: list[FakeSlot]) -> None:
        self.slots = slots

    def get_slots(self, token_present: bool = False) -> list[FakeSlot]:
        if token_present:
            return [slot for slot in self.slots if slot.token is not None]
        return list(self.slots)


def make_provider(*tokens: FakeToken | None, path: str = "/usr/lib/opensc-pkcs11.so") -> ProviderHandle:
    slots = [FakeSlot(index, token) for index, token in enumerate(tokens)]
    return ProviderHandle(path=path, architecture=64, verified=True, lib=FakeLib(slots))


@pytest.fixture
def signing_key() -> FakePrivateKey:
    return FakePrivateKey()


@pytest.fixture
def token(signing_key: FakePrivateKey) -> FakeToken:
    return FakeToken([certificate_object(), signing_key])


@pytest.fixture
def provider(token: FakeToken) -> ProviderHandle:
    return make_provider(token)


@pytest.fixture
def artifacts(tmp_path: Path) -> ArtifactStore:
    store = ArtifactStore(tmp_path / "artifacts")
    store.ensure()
    return store
