from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, TypeVar

from pkcs11.constants import SlotFlag, TokenFlag

from .exceptions import (
    InvalidRequest,
    KeyNotFound,
    MechanismUnsupported,
    PinIncorrect,
    ProviderError,
    ProviderLoadFailed,
    TokenAbsent,
    TokenBusy,
    TokenSignerError,
)
from .provider import ProviderHandle

_logger = logging.getLogger("token_signer.session")

T = TypeVar("T")

_PIN_REJECTED = "The token rejected the PIN."
_PIN_LOCKED = "The token PIN is locked or expired."
_TOKEN_ABSENT = "No token is present in any slot."
_MECHANISM = "The token does not support the requested mechanism."
_BUSY = "The token is busy with another session; retry the request."
_KEY_MISSING = "No matching key was found on the token."
_LOAD_FAILED = "The PKCS#11 module could not be loaded."

_ERRORS_BY_EXCEPTION_NAME: dict[str, tuple[type[TokenSignerError], str]] = {
    "PinIncorrect": (PinIncorrect, _PIN_REJECTED),
    "PinInvalid": (PinIncorrect, _PIN_REJECTED),
    "PinLenRange": (PinIncorrect, _PIN_REJECTED),
    "PinLocked": (PinIncorrect, _PIN_LOCKED),
    "PinExpired": (PinIncorrect, _PIN_LOCKED),
    "NoSuchToken": (TokenAbsent, _TOKEN_ABSENT),
    "TokenNotPresent": (TokenAbsent, _TOKEN_ABSENT),
    "TokenNotRecognised": (TokenAbsent, _TOKEN_ABSENT),
    "DeviceRemoved": (TokenAbsent, _TOKEN_ABSENT),
    "SlotIDInvalid": (TokenAbsent, _TOKEN_ABSENT),
    "MechanismInvalid": (MechanismUnsupported, _MECHANISM),
    "MechanismParamInvalid": (MechanismUnsupported, _MECHANISM),
    "FunctionNotSupported": (MechanismUnsupported, _MECHANISM),
    "KeyFunctionNotPermitted": (MechanismUnsupported, _MECHANISM),
    "KeyTypeInconsistent": (MechanismUnsupported, _MECHANISM),
    "SessionCount": (TokenBusy, _BUSY),
    "SessionExists": (TokenBusy, _BUSY),
    "SessionReadWriteSOExists": (TokenBusy, _BUSY),
    "OperationActive": (TokenBusy, _BUSY),
    "AnotherUserAlreadyLoggedIn": (TokenBusy, _BUSY),
    "UserAlreadyLoggedIn": (TokenBusy, _BUSY),
    "UserNotLoggedIn": (TokenBusy, _BUSY),
    "NoSuchKey": (KeyNotFound, _KEY_MISSING),
}

# Fallback heuristics over the provider message, checked in order.
_ERRORS_BY_MESSAGE: tuple[tuple[tuple[str, ...], type[TokenSignerError], str], ...] = (
    (("PIN_LOCKED", "PIN_EXPIRED"), PinIncorrect, _PIN_LOCKED),
    (("PIN_INCORRECT", "PIN_INVALID", "PIN_LEN_RANGE", "WRONG_PIN"), PinIncorrect, _PIN_REJECTED),
    (
        ("TOKEN_NOT_PRESENT", "NO_TOKEN", "DEVICE_REMOVED", "TOKEN_NOT_RECOGNIZED", "SLOT_ID_INVALID"),
        TokenAbsent,
        _TOKEN_ABSENT,
    ),
    (
        ("MECHANISM_INVALID", "MECHANISM_PARAM_INVALID", "FUNCTION_NOT_SUPPORTED"),
        MechanismUnsupported,
        _MECHANISM,
    ),
    (
        (
            "SESSION_COUNT",
            "SESSION_EXISTS",
            "OPERATION_ACTIVE",
            "DEVICE_BUSY",
            "TOKEN_BUSY",
            "USER_ALREADY_LOGGED_IN",
            "USER_NOT_LOGGED_IN",
        ),
        TokenBusy,
        _BUSY,
    ),
    (
        ("WRONG_ELF_CLASS", "INVALID_ELF_HEADER", "CANNOT_OPEN_SHARED_OBJECT", "NOT_A_VALID_WIN32"),
        ProviderLoadFailed,
        _LOAD_FAILED,
    ),
)


def _normalize_message(text: str) -> str:
    return re.sub(r"[\s\-]+", "_", text.upper())


def classify_provider_error(exc: BaseException) -> TokenSignerError:
    """Map a raw provider exception onto a typed error kind."""
    if isinstance(exc, TokenSignerError):
        return exc

    for klass in type(exc).__mro__:
        mapped = _ERRORS_BY_EXCEPTION_NAME.get(klass.__name__)
        if mapped is not None:
            error_type, message = mapped
            return error_type(message)

    normalized = _normalize_message(f"{type(exc).__name__} {exc}")
    for markers, error_type, message in _ERRORS_BY_MESSAGE:
        if any(marker in normalized for marker in markers):
            return error_type(message)

    return ProviderError(f"Token operation failed ({type(exc).__name__}).")


class SessionState(str, Enum):
    CLOSED = "closed"
    OPENED = "opened"
    LOGGED_IN = "logged_in"
    LOGGED_OUT = "logged_out"


@dataclass
class TokenSession:
    """One authenticated interaction with a token, owned by a single request."""

    provider: ProviderHandle
    slot: Any = None
    token: Any = None
    handle: Any = None
    state: SessionState = SessionState.CLOSED
    transitions: list[SessionState] = field(default_factory=lambda: [SessionState.CLOSED])

    def _advance(self, state: SessionState) -> None:
        self.state = state
        self.transitions.append(state)

    def close(self) -> None:
        handle, self.handle = self.handle, None
        if handle is not None:
            try:
                handle.close()
            except Exception:
                _logger.exception("Closing token session failed")
            if self.state is SessionState.LOGGED_IN:
                self._advance(SessionState.LOGGED_OUT)
        if self.state is not SessionState.CLOSED:
            self._advance(SessionState.CLOSED)


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", "ignore").strip()
    return str(value).strip()


def _select_token(
    provider: ProviderHandle,
    *,
    token_label: str | None,
    slot_id: int | None,
) -> tuple[Any, Any]:
    for slot in provider.lib.get_slots(token_present=True):
        if slot_id is not None and slot.slot_id != slot_id:
            continue
        token = slot.get_token()
        if token_label is not None and _text(token.label) != token_label:
            continue
        return slot, token
    if token_label is not None or slot_id is not None:
        raise TokenAbsent(
            f"No token matching label={token_label!r} slot={slot_id!r} is present."
        )
    raise TokenAbsent(_TOKEN_ABSENT)


# PKCS#11 login state is shared by every session of the process on one token,
# so one logged-in session per token at a time.
_TOKEN_LOCKS: dict[tuple[str, Any], threading.Lock] = {}
_TOKEN_LOCKS_GUARD = threading.Lock()


def _token_lock(provider: ProviderHandle, slot: Any) -> threading.Lock:
    key = (provider.path, getattr(slot, "slot_id", None))
    with _TOKEN_LOCKS_GUARD:
        lock = _TOKEN_LOCKS.get(key)
        if lock is None:
            lock = _TOKEN_LOCKS[key] = threading.Lock()
        return lock


def _open(session: TokenSession, pin: str) -> None:
    try:
        session.handle = session.token.open(user_pin=pin)
    except Exception:
        # Token.open has no handle to return once C_OpenSession succeeded and
        # C_Login failed; that provider session stays open until finalize.
        _logger.debug(
            "Login failed before a session handle was returned; provider session left open module=%s slot=%s",
            session.provider.path,
            getattr(session.slot, "slot_id", None),
        )
        raise
    session._advance(SessionState.OPENED)
    session._advance(SessionState.LOGGED_IN)


def with_session(
    provider: ProviderHandle,
    pin: str | None,
    operation: Callable[[TokenSession], T],
    *,
    token_label: str | None = None,
    slot_id: int | None = None,
) -> T:
    """
    Open a logged-in session, run ``operation`` on it, always log out and close.

    Provider exceptions are re-raised as typed ``TokenSignerError`` kinds. A
    fresh session is opened for every call and calls on the same token are
    serialized, since login state is shared across sessions of one token.
    """
    if not pin:
        raise InvalidRequest("PIN is required.")

    session = TokenSession(provider=provider)
    try:
        slot, token = _select_token(provider, token_label=token_label, slot_id=slot_id)
        session.slot = slot
        session.token = token
        with _token_lock(provider, slot):
            try:
                _open(session, pin)
                _logger.info(
                    "Token session opened module=%s slot=%s token=%s",
                    provider.path,
                    getattr(slot, "slot_id", None),
                    _text(getattr(token, "label", None)),
                )
                return operation(session)
            finally:
                session.close()
    except TokenSignerError as exc:
        _logger.warning("Token operation failed kind=%s message=%s", exc.kind.value, exc)
        raise
    except Exception as exc:
        error = classify_provider_error(exc)
        _logger.warning(
            "Provider error classified kind=%s raw=%s: %s",
            error.kind.value,
            type(exc).__name__,
            exc,
        )
        raise error from exc
    finally:
        _logger.debug("Token session finished transitions=%s", [s.value for s in session.transitions])


def _flag_names(flags: Any, flag_type: Any) -> list[str]:
    if flags is None:
        return []
    return [member.name for member in flag_type if member.value and member in flags]


def list_slots(provider: ProviderHandle) -> list[dict[str, Any]]:
    try:
        slots = provider.lib.get_slots(token_present=False)
    except Exception as exc:
        raise classify_provider_error(exc) from exc
    listed: list[dict[str, Any]] = []
    for slot in slots:
        flags = getattr(slot, "flags", None)
        listed.append(
            {
                "slot_id": slot.slot_id,
                "description": _text(getattr(slot, "slot_description", None)),
                "manufacturer_id": _text(getattr(slot, "manufacturer_id", None)),
                "token_present": bool(flags is not None and SlotFlag.TOKEN_PRESENT in flags),
                "flags": _flag_names(flags, SlotFlag),
            }
        )
    return listed


def describe_token(session: TokenSession) -> dict[str, Any]:
    token = session.token
    return {
        "slot_id": getattr(session.slot, "slot_id", None),
        "label": _text(getattr(token, "label", None)),
        "serial": _text(getattr(token, "serial", None)),
        "manufacturer_id": _text(getattr(token, "manufacturer_id", None)),
        "model": _text(getattr(token, "model", None)),
        "flags": _flag_names(getattr(token, "flags", None), TokenFlag),
    }


def describe_module(provider: ProviderHandle) -> dict[str, Any]:
    lib = provider.lib
    described = provider.to_dict()
    described.update(
        {
            "library_description": _text(getattr(lib, "library_description", None)),
            "manufacturer_id": _text(getattr(lib, "manufacturer_id", None)),
            "cryptoki_version": _version(getattr(lib, "cryptoki_version", None)),
            "library_version": _version(getattr(lib, "library_version", None)),
        }
    )
    return described


def _version(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, tuple):
        return ".".join(str(part) for part in value)
    return str(value)
