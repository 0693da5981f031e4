from __future__ import annotations

import base64
import hashlib

import pytest
from pkcs11 import KeyType, Mechanism

from conftest import USER_PIN, FakePrivateKey, FakeToken, certificate_object, make_provider
from token_signer import (
    InvalidRequest,
    KeyNotFound,
    MechanismUnsupported,
    RoleKeyPolicy,
    SignatureValidationFailed,
    TokenAbsent,
    sign,
    sign_submission,
    with_session,
)
from token_signer.signer import (
    SIGNING_MECHANISMS,
    encode_signature,
    resolve_mechanism,
    serialize_payload,
)

PAYLOAD = {"invoice": "INV-001", "total": 125.5, "lines": [{"sku": "A1", "qty": 2}]}
DIGEST = hashlib.sha256(serialize_payload(PAYLOAD)).digest()
SHA256_DIGEST_INFO = bytes.fromhex("3031300d060960864801650304020105000420")


def test_serialize_payload_is_canonical() -> None:
    assert serialize_payload({"b": 1, "a": {"d": 2, "c": 3}}) == b'{"a":{"c":3,"d":2},"b":1}'
    assert serialize_payload({"b": 1, "a": 2}) == serialize_payload({"a": 2, "b": 1})
    assert serialize_payload("texto ñ") == '"texto ñ"'.encode("utf-8")


def test_serialize_payload_rejects_non_json_values() -> None:
    with pytest.raises(InvalidRequest):
        serialize_payload({"when": object()})
    with pytest.raises(InvalidRequest):
        serialize_payload({"value": float("nan")})


def test_resolve_mechanism_accepts_aliases() -> None:
    assert resolve_mechanism("sha256_rsa_pkcs") is SIGNING_MECHANISMS["SHA256-RSA-PKCS"]
    assert resolve_mechanism("RSA-PSS") is SIGNING_MECHANISMS["RSA-PKCS-PSS"]


def test_unknown_mechanism_is_unsupported() -> None:
    with pytest.raises(MechanismUnsupported) as excinfo:
        resolve_mechanism("MD5-RSA")
    assert "SHA256-RSA-PKCS" in str(excinfo.value)


def test_raw_rsa_mechanism_prepends_digest_info() -> None:
    prepared = SIGNING_MECHANISMS["RSA-PKCS"].prepare(DIGEST)
    assert prepared == SHA256_DIGEST_INFO + DIGEST
    assert SIGNING_MECHANISMS["SHA256-RSA-PKCS"].prepare(DIGEST) == DIGEST


def test_encode_signature_validates_output() -> None:
    assert encode_signature(b"\x01\x02", expected_size=2) == base64.b64encode(b"\x01\x02").decode()
    with pytest.raises(SignatureValidationFailed):
        encode_signature(b"")
    with pytest.raises(SignatureValidationFailed):
        encode_signature(b"\x01" * 255, expected_size=256)


def test_taxpayer_signature_uses_digest_and_default_mechanism(
    provider, signing_key: FakePrivateKey, artifacts
) -> None:
    result = with_session(
        provider,
        USER_PIN,
        lambda session: sign(session, PAYLOAD, artifacts=artifacts, clock=lambda: "2026-01-01T00:00:00+00:00"),
    )

    call = signing_key.sign_calls[0]
    assert call["data"] == DIGEST
    assert call["mechanism"] == Mechanism.SHA256_RSA_PKCS
    assert result.type == "taxpayer"
    assert result.mechanism == "SHA256-RSA-PKCS"
    assert len(result.signature) == 256
    assert result.key_label == "taxpayer-key"
    assert result.key_id == "01"

    payload = result.to_dict()
    assert base64.b64decode(payload["signature"]) == result.signature
    assert payload["signature_size"] == 256
    assert payload["timestamp"] == "2026-01-01T00:00:00+00:00"
    assert artifacts.leftovers() == []


def test_explicit_raw_rsa_mechanism(provider, signing_key: FakePrivateKey, artifacts) -> None:
    with_session(
        provider,
        USER_PIN,
        lambda session: sign(session, PAYLOAD, "RSA-PKCS", artifacts=artifacts),
    )
    call = signing_key.sign_calls[0]
    assert call["mechanism"] == Mechanism.RSA_PKCS
    assert call["data"] == SHA256_DIGEST_INFO + DIGEST


def test_pss_mechanism_passes_parameters(provider, signing_key: FakePrivateKey, artifacts) -> None:
    with_session(
        provider,
        USER_PIN,
        lambda session: sign(session, PAYLOAD, "RSA-PKCS-PSS", artifacts=artifacts),
    )
    call = signing_key.sign_calls[0]
    assert call["mechanism"] == Mechanism.RSA_PKCS_PSS
    assert call["mechanism_param"] == SIGNING_MECHANISMS["RSA-PKCS-PSS"].mechanism_param


def test_empty_signature_fails_validation_and_cleans_up(artifacts) -> None:
    token = FakeToken([FakePrivateKey(signer=lambda data: b"")])
    with pytest.raises(SignatureValidationFailed):
        with_session(
            make_provider(token),
            USER_PIN,
            lambda session: sign(session, PAYLOAD, artifacts=artifacts),
        )
    assert artifacts.leftovers() == []
    assert token.sessions[0].closed


def test_short_signature_fails_validation(artifacts) -> None:
    token = FakeToken([FakePrivateKey(signer=lambda data: b"\x01" * 128)])
    with pytest.raises(SignatureValidationFailed):
        with_session(
            make_provider(token),
            USER_PIN,
            lambda session: sign(session, PAYLOAD, artifacts=artifacts),
        )
    assert artifacts.leftovers() == []


def test_artifacts_are_removed_when_token_fails_mid_operation(artifacts) -> None:
    def explode(data: bytes) -> bytes:
        assert len(artifacts.leftovers()) == 1
        raise RuntimeError("CKR_DEVICE_REMOVED")

    token = FakeToken([FakePrivateKey(signer=explode)])
    with pytest.raises(TokenAbsent):
        with_session(
            make_provider(token),
            USER_PIN,
            lambda session: sign(session, PAYLOAD, artifacts=artifacts),
        )
    assert artifacts.leftovers() == []


def test_rsa_mechanism_on_ec_only_token_is_unsupported(artifacts) -> None:
    token = FakeToken([FakePrivateKey("ec-key", key_type=KeyType.EC)])
    with pytest.raises(MechanismUnsupported):
        with_session(
            make_provider(token),
            USER_PIN,
            lambda session: sign(session, PAYLOAD, artifacts=artifacts),
        )


def test_ecdsa_signs_raw_digest(artifacts) -> None:
    key = FakePrivateKey("ec-key", key_type=KeyType.EC, signer=lambda data: b"\x30" * 64)
    token = FakeToken([key])
    result = with_session(
        make_provider(token),
        USER_PIN,
        lambda session: sign(session, PAYLOAD, "ECDSA", artifacts=artifacts),
    )
    assert key.sign_calls[0]["data"] == DIGEST
    assert len(result.signature) == 64


def test_token_without_keys_raises_key_not_found(artifacts) -> None:
    token = FakeToken([certificate_object()])
    with pytest.raises(KeyNotFound):
        with_session(
            make_provider(token),
            USER_PIN,
            lambda session: sign(session, PAYLOAD, artifacts=artifacts),
        )


def test_policy_selects_key_by_label(artifacts) -> None:
    taxpayer = FakePrivateKey("taxpayer-key", key_id=b"\x01")
    intermediary = FakePrivateKey("intermediary-key", key_id=b"\x02")
    token = FakeToken([taxpayer, intermediary])
    policy = RoleKeyPolicy(mechanism="RSA-PKCS", key_label="intermediary-key")

    result = with_session(
        make_provider(token),
        USER_PIN,
        lambda session: sign(session, PAYLOAD, role="intermediary", artifacts=artifacts, policy=policy),
    )

    assert taxpayer.sign_calls == []
    assert len(intermediary.sign_calls) == 1
    assert result.key_label == "intermediary-key"
    assert result.mechanism == "RSA-PKCS"


def test_policy_with_missing_label_raises_key_not_found(provider, artifacts) -> None:
    policy = RoleKeyPolicy(mechanism="SHA256-RSA-PKCS", key_label="absent")
    with pytest.raises(KeyNotFound):
        with_session(
            provider,
            USER_PIN,
            lambda session: sign(session, PAYLOAD, artifacts=artifacts, policy=policy),
        )


def test_taxpayer_submission_returns_one_signature(provider, artifacts) -> None:
    results = with_session(
        provider,
        USER_PIN,
        lambda session: sign_submission(session, PAYLOAD, artifacts=artifacts),
    )
    assert [result.type for result in results] == ["taxpayer"]


def test_intermediary_submission_returns_two_independent_signatures(
    provider, signing_key: FakePrivateKey, artifacts
) -> None:
    results = with_session(
        provider,
        USER_PIN,
        lambda session: sign_submission(session, PAYLOAD, "intermediary", artifacts=artifacts),
    )

    assert [result.type for result in results] == ["taxpayer", "intermediary"]
    assert [result.mechanism for result in results] == ["SHA256-RSA-PKCS", "RSA-PKCS"]
    assert [call["mechanism"] for call in signing_key.sign_calls] == [
        Mechanism.SHA256_RSA_PKCS,
        Mechanism.RSA_PKCS,
    ]
    assert artifacts.leftovers() == []


def test_mechanism_override_applies_to_taxpayer_only(
    provider, signing_key: FakePrivateKey, artifacts
) -> None:
    results = with_session(
        provider,
        USER_PIN,
        lambda session: sign_submission(
            session, PAYLOAD, "intermediary", artifacts=artifacts, mechanism="RSA-PKCS-PSS"
        ),
    )
    assert [result.mechanism for result in results] == ["RSA-PKCS-PSS", "RSA-PKCS"]


def test_unknown_submission_type_is_rejected(provider, artifacts) -> None:
    with pytest.raises(InvalidRequest):
        with_session(
            provider,
            USER_PIN,
            lambda session: sign_submission(session, PAYLOAD, "notary", artifacts=artifacts),
        )
