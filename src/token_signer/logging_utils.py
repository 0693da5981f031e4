from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

DEFAULT_LOG_FILE = "logs/token-signer.log"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_LOG_BACKUP_COUNT = 5
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _parse_int(value: str, name: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {value}") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be >= 0, got: {value}")
    return parsed


def _resolve_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    normalized = level.strip().upper()
    if normalized.isdigit():
        return int(normalized)
    numeric = getattr(logging, normalized, None)
    if not isinstance(numeric, int):
        raise ValueError(f"Invalid log level: {level}")
    return numeric


def configure_logging(
    *,
    log_file: str | Path | None = None,
    level: str | int | None = None,
    max_bytes: int | None = None,
    backup_count: int | None = None,
    console: bool = False,
) -> logging.Logger:
    """
    Configure rotating file logging for the token_signer logger namespace.

    Environment variable overrides:
    - TOKEN_SIGNER_LOG_FILE
    - TOKEN_SIGNER_LOG_LEVEL
    - TOKEN_SIGNER_LOG_MAX_BYTES
    - TOKEN_SIGNER_LOG_BACKUP_COUNT

    ``console=True`` additionally mirrors records to stderr (used by ``serve``).
    """

    resolved_log_file = Path(
        str(log_file or os.environ.get("TOKEN_SIGNER_LOG_FILE", DEFAULT_LOG_FILE))
    )
    numeric_level = _resolve_level(
        level or os.environ.get("TOKEN_SIGNER_LOG_LEVEL", DEFAULT_LOG_LEVEL)
    )

    if max_bytes is None:
        max_bytes = _parse_int(
            os.environ.get("TOKEN_SIGNER_LOG_MAX_BYTES", str(DEFAULT_LOG_MAX_BYTES)),
            "TOKEN_SIGNER_LOG_MAX_BYTES",
        )
    if backup_count is None:
        backup_count = _parse_int(
            os.environ.get(
                "TOKEN_SIGNER_LOG_BACKUP_COUNT", str(DEFAULT_LOG_BACKUP_COUNT)
            ),
            "TOKEN_SIGNER_LOG_BACKUP_COUNT",
        )
    if max_bytes < 0:
        raise ValueError("max_bytes must be >= 0.")
    if backup_count < 0:
        raise ValueError("backup_count must be >= 0.")

    resolved_log_file.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("token_signer")
    logger.setLevel(numeric_level)
    logger.propagate = False

    if console and not any(
        type(existing) is logging.StreamHandler for existing in logger.handlers
    ):
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setLevel(numeric_level)
        stream_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(stream_handler)

    resolved_path = resolved_log_file.resolve()
    for existing in logger.handlers:
        if (
            isinstance(existing, RotatingFileHandler)
            and Path(existing.baseFilename).resolve() == resolved_path
        ):
            existing.setLevel(numeric_level)
            return logger

    handler = RotatingFileHandler(
        resolved_log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setLevel(numeric_level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)

    logger.info(
        "Configured rotating file logging (path=%s, level=%s, max_bytes=%d, backup_count=%d)",
        resolved_log_file,
        logging.getLevelName(numeric_level),
        max_bytes,
        backup_count,
    )
    return logger
