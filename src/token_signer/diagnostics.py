"""Degraded device detection used when no PKCS#11 provider can be loaded.

The host's smart-card tooling is queried and its text output parsed into the
same record shapes as the token path. Nothing here can prove possession of a
key or sign, so every payload is flagged as degraded.
"""

from __future__ import annotations

import logging
import re
import subprocess
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from .certificates import CertificateRecord

_logger = logging.getLogger("token_signer.diagnostics")

DEFAULT_TIMEOUT = 10.0

WINDOWS_READER_COMMAND = ("certutil", "-scinfo")
WINDOWS_STORE_COMMAND = ("certutil", "-store", "-user", "My")
OPENSC_READER_COMMAND = ("opensc-tool", "--list-readers")
OPENSC_CERTIFICATE_COMMAND = ("pkcs15-tool", "--list-certificates")


@dataclass(frozen=True)
class DeviceStatus:
    available: bool
    cards_present: bool
    readers: tuple[str, ...] = ()
    cards: tuple[dict[str, Any], ...] = ()
    certificates: tuple[CertificateRecord, ...] = ()
    method: str = ""
    raw_output: str = ""
    errors: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "degraded": True,
            "signing_available": False,
            "method": self.method,
            "available": self.available,
            "cards_present": self.cards_present,
            "readers": list(self.readers),
            "cards": [dict(card) for card in self.cards],
            "certificates": [record.to_dict() for record in self.certificates],
            "raw_output": self.raw_output,
            "errors": list(self.errors),
        }


def _after(line: str, marker: str) -> str:
    return line.split(marker, 1)[1].strip()


def parse_certutil_scinfo(text: str) -> list[dict[str, Any]]:
    cards: list[dict[str, Any]] = []
    current: dict[str, Any] | None = None
    for line in text.splitlines():
        stripped = line.strip().lstrip("-").strip()
        if stripped.startswith(("Smart Card Reader:", "Reader:")):
            if current is not None:
                cards.append(current)
            marker = "Smart Card Reader:" if stripped.startswith("Smart") else "Reader:"
            current = {"reader": _after(stripped, marker), "status": "unknown", "certificates": []}
        elif current is None:
            continue
        elif stripped.startswith(("Card Status:", "Status:")):
            marker = "Card Status:" if stripped.startswith("Card") else "Status:"
            current["status"] = _after(stripped, marker)
        elif stripped.startswith("Card:"):
            current["card"] = _after(stripped, "Card:")
        elif "Certificate" in stripped:
            current["certificates"].append(stripped)
    if current is not None:
        cards.append(current)
    return cards


def _card_is_present(card: dict[str, Any]) -> bool:
    status = str(card.get("status", "")).upper()
    if "EMPTY" in status or "ABSENT" in status:
        return False
    return "PRESENT" in status or bool(card.get("card")) or bool(card.get("certificates"))


_STORE_FIELDS = {
    "Subject:": "subject",
    "Issuer:": "issuer",
    "NotBefore:": "not_before",
    "NotAfter:": "not_after",
}


def parse_certutil_store(text: str) -> list[CertificateRecord]:
    records: list[dict[str, str]] = []
    current: dict[str, str] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("Serial Number:"):
            if current:
                records.append(current)
            current = {"serial_number": _after(stripped, "Serial Number:")}
            continue
        if not current:
            continue
        for marker, name in _STORE_FIELDS.items():
            if stripped.startswith(marker):
                current[name] = _after(stripped, marker)
                break
        else:
            if stripped.startswith("Key Container ="):
                current["label"] = _after(stripped, "=")
    if current:
        records.append(current)
    return [
        CertificateRecord(source="host_store", lower_fidelity=True, **record)
        for record in records
    ]


_READER_ROW = re.compile(r"^(?P<nr>\d+)\s+(?P<card>Yes|No)\s+(?:(?P<features>[\w ,]+?)\s{2,})?(?P<name>.+)$")


def parse_opensc_readers(text: str) -> list[dict[str, Any]]:
    cards: list[dict[str, Any]] = []
    for line in text.splitlines():
        match = _READER_ROW.match(line.strip())
        if not match:
            continue
        present = match.group("card") == "Yes"
        cards.append(
            {
                "reader": match.group("name").strip(),
                "status": "present" if present else "empty",
                "certificates": [],
            }
        )
    return cards


def parse_pkcs15_certificates(text: str) -> list[CertificateRecord]:
    records: list[dict[str, str]] = []
    current: dict[str, str] | None = None
    for line in text.splitlines():
        stripped = line.strip()
        header = re.match(r"^X\.509 Certificate \[(?P<label>.*)\]$", stripped)
        if header:
            if current is not None:
                records.append(current)
            current = {"label": header.group("label")}
            continue
        if current is None or ":" not in stripped:
            continue
        name, value = (part.strip() for part in stripped.split(":", 1))
        if name == "ID":
            current["id"] = value
        elif name == "Encoded serial":
            current["serial_number"] = value.replace(" ", "").upper()
    if current is not None:
        records.append(current)
    return [
        CertificateRecord(source="host_store", lower_fidelity=True, **record)
        for record in records
    ]


Runner = Callable[..., "subprocess.CompletedProcess[str]"]


def _run(command: Sequence[str], runner: Runner, timeout: float) -> tuple[str | None, str | None]:
    try:
        proc = runner(
            list(command),
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError:
        return None, f"{command[0]}: not installed"
    except subprocess.TimeoutExpired:
        return None, f"{command[0]}: timed out after {timeout:g}s"
    except OSError as exc:
        return None, f"{command[0]}: {exc}"
    if proc.returncode != 0:
        return proc.stdout or None, f"{command[0]}: exited with status {proc.returncode}"
    return proc.stdout or "", None


def detect(
    platform: str | None = None,
    *,
    runner: Runner = subprocess.run,
    timeout: float = DEFAULT_TIMEOUT,
) -> DeviceStatus:
    """Inspect the host smart-card subsystem. Never raises."""
    platform = sys.platform if platform is None else platform
    if platform.startswith("win"):
        reader_command, store_command = WINDOWS_READER_COMMAND, WINDOWS_STORE_COMMAND
        parse_cards, parse_store = parse_certutil_scinfo, parse_certutil_store
        method = "windows_native"
    else:
        reader_command, store_command = OPENSC_READER_COMMAND, OPENSC_CERTIFICATE_COMMAND
        parse_cards, parse_store = parse_opensc_readers, parse_pkcs15_certificates
        method = "opensc_tools"

    errors: list[str] = []
    reader_output, reader_error = _run(reader_command, runner, timeout)
    if reader_error:
        errors.append(reader_error)
    cards = parse_cards(reader_output or "")

    certificates: list[CertificateRecord] = []
    store_output, store_error = _run(store_command, runner, timeout)
    if store_error:
        errors.append(store_error)
    if store_output:
        certificates = parse_store(store_output)

    status = DeviceStatus(
        available=reader_output is not None,
        cards_present=any(_card_is_present(card) for card in cards),
        readers=tuple(card["reader"] for card in cards),
        cards=tuple(cards),
        certificates=tuple(certificates),
        method=method,
        raw_output=reader_output or "",
        errors=tuple(errors),
    )
    if errors:
        _logger.warning("Diagnostic detection incomplete method=%s errors=%s", method, errors)
    _logger.info(
        "Diagnostic detection method=%s readers=%d cards_present=%s certificates=%d",
        method,
        len(status.readers),
        status.cards_present,
        len(certificates),
    )
    return status
