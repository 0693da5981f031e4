from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from .exceptions import TokenConfigurationError

DEFAULT_TEMP_DIR = str(Path(tempfile.gettempdir()) / "token-signer")
DEFAULT_OPERATION_TIMEOUT = 30.0
DEFAULT_WORKERS = 4
DEFAULT_TAXPAYER_MECHANISM = "SHA256-RSA-PKCS"
DEFAULT_INTERMEDIARY_MECHANISM = "RSA-PKCS"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3000


def _parse_int(value: str, name: str, *, minimum: int = 0) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise TokenConfigurationError(
            f"{name} must be an integer, got: {value}"
        ) from exc
    if parsed < minimum:
        raise TokenConfigurationError(f"{name} must be >= {minimum}, got: {value}")
    return parsed


def _parse_float(value: str, name: str) -> float:
    try:
        parsed = float(value)
    except ValueError as exc:
        raise TokenConfigurationError(f"{name} must be a number, got: {value}") from exc
    if parsed <= 0:
        raise TokenConfigurationError(f"{name} must be > 0, got: {value}")
    return parsed


def _split_paths(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(os.pathsep) if part.strip())


@dataclass(frozen=True)
class RoleKeyPolicy:
    """Mechanism and key selection for one signature role."""

    mechanism: str
    key_label: str | None = None
    key_id: bytes | None = None


@dataclass(frozen=True)
class TokenSignerConfig:
    """Runtime configuration for the token signing service."""

    module_path: str | None = None
    extra_candidates: tuple[str, ...] = ()
    token_label: str | None = None
    slot_id: int | None = None
    user_pin_env: str = "TOKEN_USER_PIN"
    temp_dir: str = DEFAULT_TEMP_DIR
    operation_timeout: float = DEFAULT_OPERATION_TIMEOUT
    workers: int = DEFAULT_WORKERS
    taxpayer: RoleKeyPolicy = field(
        default_factory=lambda: RoleKeyPolicy(mechanism=DEFAULT_TAXPAYER_MECHANISM)
    )
    intermediary: RoleKeyPolicy = field(
        default_factory=lambda: RoleKeyPolicy(mechanism=DEFAULT_INTERMEDIARY_MECHANISM)
    )
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "TokenSignerConfig":
        env = os.environ if env is None else env

        module_path = env.get("TOKEN_PKCS11_MODULE") or None
        slot_raw = env.get("TOKEN_SLOT")
        slot_id: int | None = None
        if slot_raw:
            slot_id = _parse_int(slot_raw, "TOKEN_SLOT")

        timeout_raw = env.get("TOKEN_SIGNER_TIMEOUT")
        operation_timeout = (
            _parse_float(timeout_raw, "TOKEN_SIGNER_TIMEOUT")
            if timeout_raw
            else DEFAULT_OPERATION_TIMEOUT
        )
        workers = _parse_int(
            env.get("TOKEN_SIGNER_WORKERS", str(DEFAULT_WORKERS)),
            "TOKEN_SIGNER_WORKERS",
            minimum=1,
        )
        port = _parse_int(env.get("PORT", str(DEFAULT_PORT)), "PORT", minimum=1)

        return cls(
            module_path=module_path,
            extra_candidates=_split_paths(env.get("TOKEN_PKCS11_CANDIDATES")),
            token_label=env.get("TOKEN_LABEL") or None,
            slot_id=slot_id,
            user_pin_env=env.get("TOKEN_USER_PIN_ENV", "TOKEN_USER_PIN"),
            temp_dir=env.get("TOKEN_SIGNER_TEMP_DIR") or DEFAULT_TEMP_DIR,
            operation_timeout=operation_timeout,
            workers=workers,
            taxpayer=RoleKeyPolicy(
                mechanism=env.get("TOKEN_TAXPAYER_MECHANISM")
                or DEFAULT_TAXPAYER_MECHANISM,
                key_label=env.get("TOKEN_TAXPAYER_KEY_LABEL") or None,
            ),
            intermediary=RoleKeyPolicy(
                mechanism=env.get("TOKEN_INTERMEDIARY_MECHANISM")
                or DEFAULT_INTERMEDIARY_MECHANISM,
                key_label=env.get("TOKEN_INTERMEDIARY_KEY_LABEL") or None,
            ),
            host=env.get("HOST", DEFAULT_HOST),
            port=port,
        )

    def default_pin(self) -> str | None:
        pin = os.environ.get(self.user_pin_env)
        return pin or None

    def role_policy(self, role: str) -> RoleKeyPolicy:
        if role == "taxpayer":
            return self.taxpayer
        if role == "intermediary":
            return self.intermediary
        raise ValueError(f"Unknown signature role: {role}")
