"""Discovery of a working PKCS#11 provider module.

Candidates are probed in priority order. A probe never raises: missing files,
architecture mismatches and modules without a PKCS#11 function table are
reported as failed ``ProbeResult`` values and the next candidate is tried.
The first module that passes is loaded through python-pkcs11 and cached for
the lifetime of the process.
"""

from __future__ import annotations

import ctypes
import logging
import os
import struct
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

import pkcs11

from .exceptions import NoProviderFound, ProviderLoadFailed

_logger = logging.getLogger("token_signer.provider")

FUNCTION_LIST_SYMBOL = "C_GetFunctionList"

WINDOWS_CANDIDATES: tuple[str, ...] = (
    r"C:\Windows\System32\eps2003csp11v2.dll",
    r"C:\Windows\System32\eps2003csp11.dll",
    r"C:\Program Files\ePass2003\eps2003csp11.dll",
    r"C:\Windows\SysWOW64\eps2003csp11.dll",
    r"C:\Windows\System32\eTPKCS11.dll",
    r"C:\Windows\System32\wdpkcs11.dll",
    r"C:\Program Files (x86)\CryptoID\CryptoIDA_pkcs11.dll",
    r"C:\Program Files\OpenSC Project\OpenSC\pkcs11\opensc-pkcs11.dll",
    r"C:\Program Files (x86)\OpenSC Project\OpenSC\pkcs11\opensc-pkcs11.dll",
    r"C:\Program Files\OpenSC Project\OpenSC\pkcs11\onepin-opensc-pkcs11.dll",
    r"C:\Windows\System32\opensc-pkcs11.dll",
    r"C:\Windows\SysWOW64\opensc-pkcs11.dll",
)

LINUX_CANDIDATES: tuple[str, ...] = (
    "/usr/lib/libcastle.so.1.0.0",
    "/usr/local/lib/libcastle.so.1.0.0",
    "/usr/lib/libeTPkcs11.so",
    "/usr/lib/x86_64-linux-gnu/opensc-pkcs11.so",
    "/usr/lib/aarch64-linux-gnu/opensc-pkcs11.so",
    "/usr/lib/x86_64-linux-gnu/pkcs11/opensc-pkcs11.so",
    "/usr/lib64/opensc-pkcs11.so",
    "/usr/lib/opensc-pkcs11.so",
    "/usr/local/lib/opensc-pkcs11.so",
)

MACOS_CANDIDATES: tuple[str, ...] = (
    "/usr/local/lib/libcastle.dylib",
    "/Library/OpenSC/lib/opensc-pkcs11.so",
    "/opt/homebrew/lib/opensc-pkcs11.so",
    "/usr/local/lib/opensc-pkcs11.so",
)

_PE_MACHINES = {
    0x014C: 32,  # i386
    0x01C4: 32,  # ARMv7
    0x8664: 64,  # x86-64
    0xAA64: 64,  # ARM64
}
_MACHO_32 = {b"\xce\xfa\xed\xfe", b"\xfe\xed\xfa\xce"}
_MACHO_64 = {b"\xcf\xfa\xed\xfe", b"\xfe\xed\xfa\xcf"}


@dataclass(frozen=True)
class ProviderHandle:
    """A loaded PKCS#11 module, shared read-only between requests."""

    path: str
    architecture: int | None
    verified: bool
    lib: Any = field(default=None, compare=False, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "architecture": self.architecture,
            "verified": self.verified,
        }


@dataclass(frozen=True)
class ProbeResult:
    path: str
    ok: bool
    reason: str = ""
    architecture: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "ok": self.ok,
            "reason": self.reason,
            "architecture": self.architecture,
        }


def host_architecture() -> int:
    return struct.calcsize("P") * 8


def detect_architecture(path: str | Path) -> int | None:
    """Return 32 or 64 from the ELF, PE or Mach-O header, None if unknown."""
    try:
        with open(path, "rb") as fh:
            header = fh.read(64)
            if header[:4] == b"\x7fELF" and len(header) > 4:
                return {1: 32, 2: 64}.get(header[4])
            if header[:2] == b"MZ" and len(header) >= 0x40:
                pe_offset = int.from_bytes(header[0x3C:0x40], "little")
                fh.seek(pe_offset)
                if fh.read(4) != b"PE\x00\x00":
                    return None
                machine = int.from_bytes(fh.read(2), "little")
                return _PE_MACHINES.get(machine)
            if header[:4] in _MACHO_32:
                return 32
            if header[:4] in _MACHO_64:
                return 64
    except OSError:
        return None
    return None


def _unload(handle: ctypes.CDLL) -> None:
    import _ctypes

    try:
        if sys.platform == "win32":
            _ctypes.FreeLibrary(handle._handle)
        else:
            _ctypes.dlclose(handle._handle)
    except OSError:
        _logger.debug("Unloading probed module failed", exc_info=True)


def exports_function_list(path: str) -> bool:
    """Load the module, look up the PKCS#11 entry point, unload it again."""
    handle = ctypes.CDLL(path)
    try:
        return hasattr(handle, FUNCTION_LIST_SYMBOL)
    finally:
        _unload(handle)


def _is_architecture_error(exc: OSError) -> bool:
    text = str(exc).lower()
    return any(
        marker in text
        for marker in (
            "wrong elf class",
            "invalid elf header",
            "not a valid win32 application",
            "winerror 193",
            "incompatible architecture",
            "mach-o, but wrong architecture",
        )
    )


def probe_module(
    path: str,
    *,
    exports: Callable[[str], bool] = exports_function_list,
) -> ProbeResult:
    if not os.path.isfile(path):
        return ProbeResult(path=path, ok=False, reason="not found")

    architecture = detect_architecture(path)
    host = host_architecture()
    if architecture is not None and architecture != host:
        return ProbeResult(
            path=path,
            ok=False,
            reason=f"architecture mismatch: module is {architecture}-bit, host is {host}-bit",
            architecture=architecture,
        )

    try:
        exported = exports(path)
    except OSError as exc:
        reason = "architecture mismatch" if _is_architecture_error(exc) else "load failed"
        return ProbeResult(
            path=path,
            ok=False,
            reason=f"{reason}: {exc}",
            architecture=architecture,
        )
    if not exported:
        return ProbeResult(
            path=path,
            ok=False,
            reason=f"module does not export {FUNCTION_LIST_SYMBOL}",
            architecture=architecture,
        )
    return ProbeResult(path=path, ok=True, reason="ok", architecture=architecture)


def default_candidates(
    platform: str | None = None,
    env: Mapping[str, str] | None = None,
) -> tuple[str, ...]:
    platform = sys.platform if platform is None else platform
    env = os.environ if env is None else env

    candidates: list[str] = []
    explicit = env.get("TOKEN_PKCS11_MODULE")
    if explicit:
        candidates.append(explicit)
    extra = env.get("TOKEN_PKCS11_CANDIDATES")
    if extra:
        candidates.extend(p.strip() for p in extra.split(os.pathsep) if p.strip())

    if platform.startswith("win"):
        candidates.extend(WINDOWS_CANDIDATES)
    elif platform == "darwin":
        candidates.extend(MACOS_CANDIDATES)
    else:
        candidates.extend(LINUX_CANDIDATES)
    return tuple(dict.fromkeys(candidates))


class ProviderLocator:
    """
    Selects and caches the PKCS#11 provider for the process.

    ``locate()`` computes the handle once and freezes it; concurrent callers
    either read the cached value or wait on the single initialisation lock.
    Failed lookups are not cached.
    """

    def __init__(
        self,
        candidates: Sequence[str],
        *,
        probe: Callable[[str], ProbeResult] = probe_module,
        loader: Callable[[str], Any] | None = None,
    ) -> None:
        self._candidates = tuple(dict.fromkeys(candidates))
        self._probe = probe
        self._loader = loader or pkcs11.lib
        self._lock = threading.Lock()
        self._handle: ProviderHandle | None = None
        self._overrides: dict[str, ProviderHandle] = {}

    @classmethod
    def from_config(cls, config: Any, **kwargs: Any) -> "ProviderLocator":
        candidates: list[str] = []
        if config.module_path:
            candidates.append(config.module_path)
        candidates.extend(config.extra_candidates)
        candidates.extend(default_candidates())
        return cls(candidates, **kwargs)

    @property
    def candidates(self) -> tuple[str, ...]:
        return self._candidates

    @property
    def cached(self) -> ProviderHandle | None:
        return self._handle

    def locate(self, override: str | None = None) -> ProviderHandle:
        if override:
            return self._locate_override(override)
        handle = self._handle
        if handle is not None:
            return handle
        with self._lock:
            if self._handle is None:
                self._handle = self._select()
            return self._handle

    def probe_all(self) -> list[ProbeResult]:
        return [self._probe(path) for path in self._candidates]

    def reset(self) -> None:
        with self._lock:
            self._handle = None
            self._overrides.clear()
        _logger.info("Provider cache cleared")

    def _select(self) -> ProviderHandle:
        failures: list[str] = []
        for path in self._candidates:
            result = self._probe(path)
            if not result.ok:
                _logger.debug("Provider candidate skipped path=%s reason=%s", path, result.reason)
                if result.reason != "not found":
                    failures.append(f"{path}: {result.reason}")
                continue
            try:
                handle = self._load(result)
            except ProviderLoadFailed as exc:
                failures.append(f"{path}: {exc}")
                continue
            _logger.info(
                "Provider selected path=%s architecture=%s", handle.path, handle.architecture
            )
            return handle

        _logger.warning(
            "No working PKCS#11 provider found candidates=%d failures=%d",
            len(self._candidates),
            len(failures),
        )
        detail = "; ".join(failures) if failures else "no candidate module exists on disk"
        raise NoProviderFound(f"No working PKCS#11 provider found ({detail}).")

    def _locate_override(self, path: str) -> ProviderHandle:
        cached = self._handle
        if cached is not None and cached.path == path:
            return cached
        with self._lock:
            existing = self._overrides.get(path)
            if existing is not None:
                return existing
            result = self._probe(path)
            if not result.ok:
                _logger.warning("Module override rejected path=%s reason=%s", path, result.reason)
                raise ProviderLoadFailed(f"PKCS#11 module '{path}' is unusable: {result.reason}.")
            handle = self._load(result)
            self._overrides[path] = handle
            return handle

    def _load(self, result: ProbeResult) -> ProviderHandle:
        try:
            lib = self._loader(result.path)
        except Exception as exc:
            _logger.exception("Loading PKCS#11 module failed path=%s", result.path)
            raise ProviderLoadFailed(
                f"PKCS#11 module '{result.path}' failed to initialise: {type(exc).__name__}."
            ) from exc
        return ProviderHandle(
            path=result.path,
            architecture=result.architecture,
            verified=True,
            lib=lib,
        )
