from __future__ import annotations

import logging
from typing import Any, Callable, TypeVar

from . import diagnostics
from .artifacts import ArtifactStore
from .certificates import list_certificates
from .config import TokenSignerConfig
from .diagnostics import DeviceStatus
from .exceptions import InvalidRequest, NoProviderFound, ProviderLoadFailed
from .provider import ProviderHandle, ProviderLocator
from .session import TokenSession, describe_module, describe_token, list_slots, with_session
from .signer import SUBMISSION_TYPES, sign_submission, utc_now

_logger = logging.getLogger("token_signer.service")

SERVER_NAME = "USB Token Server"
SERVER_VERSION = "1.0.0"

T = TypeVar("T")


class TokenService:
    """
    Entry point used by the HTTP layer.

    Each call locates the (cached) provider, runs one operation inside a fresh
    token session and returns a JSON-ready dict. When no provider can be found
    the read-only calls degrade to the host diagnostic fallback.
    """

    def __init__(
        self,
        config: TokenSignerConfig,
        *,
        locator: ProviderLocator | None = None,
        artifacts: ArtifactStore | None = None,
        detector: Callable[[], DeviceStatus] | None = None,
    ) -> None:
        self._config = config
        self._locator = locator or ProviderLocator.from_config(config)
        self._artifacts = artifacts or ArtifactStore(config.temp_dir)
        self._detector = detector or diagnostics.detect
        self._started = False

    @property
    def config(self) -> TokenSignerConfig:
        return self._config

    @property
    def locator(self) -> ProviderLocator:
        return self._locator

    @property
    def artifacts(self) -> ArtifactStore:
        return self._artifacts

    def startup(self) -> None:
        self._artifacts.ensure()
        self._artifacts.purge(older_than=self._config.operation_timeout)
        try:
            handle = self._locator.locate()
            _logger.info("PKCS#11 initialised module=%s", handle.path)
        except (NoProviderFound, ProviderLoadFailed) as exc:
            _logger.warning("PKCS#11 initialisation failed, using diagnostic fallback: %s", exc)
        self._started = True

    def shutdown(self) -> None:
        self._artifacts.purge(older_than=self._config.operation_timeout)
        self._locator.reset()
        self._started = False
        _logger.info("Token service stopped")

    def provider_status(self) -> str:
        if self._locator.cached is not None:
            return "active"
        if self._started:
            return "fallback"
        return "not_initialized"

    def health(self) -> dict[str, Any]:
        return {
            "status": "healthy",
            "timestamp": utc_now(),
            "server": SERVER_NAME,
            "version": SERVER_VERSION,
            "provider": self.provider_status(),
        }

    def _resolve_pin(self, pin: str | None) -> str:
        resolved = pin or self._config.default_pin()
        if not resolved:
            raise InvalidRequest("PIN is required.")
        return resolved

    def _provider_or_none(self, module: str | None) -> ProviderHandle | None:
        try:
            return self._locator.locate(override=module)
        except NoProviderFound:
            return None

    def _in_session(
        self,
        provider: ProviderHandle,
        pin: str | None,
        operation: Callable[[TokenSession], T],
    ) -> T:
        return with_session(
            provider,
            self._resolve_pin(pin),
            operation,
            token_label=self._config.token_label,
            slot_id=self._config.slot_id,
        )

    def _degraded(self) -> DeviceStatus:
        _logger.info("No PKCS#11 provider available, running diagnostic fallback")
        return self._detector()

    def test_token(self, pin: str | None, module: str | None = None) -> dict[str, Any]:
        provider = self._provider_or_none(module)
        if provider is None:
            status = self._degraded()
            return {
                **status.to_dict(),
                "token_present": status.cards_present,
                "pin_verified": False,
                "timestamp": utc_now(),
            }

        self._in_session(provider, pin, lambda session: None)
        _logger.info("Token test successful module=%s", provider.path)
        return {
            "token_present": True,
            "pin_verified": True,
            "method": "pkcs11",
            "module": provider.path,
            "timestamp": utc_now(),
        }

    def certificates(self, pin: str | None, module: str | None = None) -> dict[str, Any]:
        provider = self._provider_or_none(module)
        if provider is None:
            status = self._degraded()
            return {
                "certificates": [record.to_dict() for record in status.certificates],
                "count": len(status.certificates),
                "method": status.method,
                "degraded": True,
            }

        records = self._in_session(provider, pin, list_certificates)
        return {
            "certificates": [record.to_dict() for record in records],
            "count": len(records),
            "method": "pkcs11",
        }

    def sign(
        self,
        data: Any,
        pin: str | None,
        submission_type: str = "taxpayer",
        module: str | None = None,
        mechanism: str | None = None,
    ) -> dict[str, Any]:
        if data is None:
            raise InvalidRequest("Data is required.")
        if submission_type not in SUBMISSION_TYPES:
            raise InvalidRequest(
                f"Unknown submission_type '{submission_type}'. Use one of: {', '.join(SUBMISSION_TYPES)}."
            )
        provider = self._locator.locate(override=module)
        policies = {
            "taxpayer": self._config.taxpayer,
            "intermediary": self._config.intermediary,
        }
        results = self._in_session(
            provider,
            pin,
            lambda session: sign_submission(
                session,
                data,
                submission_type,
                artifacts=self._artifacts,
                policies=policies,
                mechanism=mechanism,
            ),
        )
        _logger.info(
            "Generated signatures count=%d submission_type=%s", len(results), submission_type
        )
        return {
            "signatures": [result.to_dict() for result in results],
            "submission_type": submission_type,
            "count": len(results),
            "timestamp": utc_now(),
        }

    def info(self, pin: str | None, module: str | None = None) -> dict[str, Any]:
        provider = self._provider_or_none(module)
        if provider is None:
            status = self._degraded()
            return {
                **status.to_dict(),
                "slots": [],
                "token_info": None,
                "module": None,
                "provider": self.provider_status(),
            }

        slots = list_slots(provider)
        token_info = self._in_session(provider, pin, describe_token)
        return {
            "slots": slots,
            "token_info": token_info,
            "module": describe_module(provider),
            "timestamp": utc_now(),
        }
