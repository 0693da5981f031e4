from __future__ import annotations

import argparse
import json
import sys
from dataclasses import replace
from typing import Any

from .config import TokenSignerConfig
from .diagnostics import detect
from .exceptions import TokenSignerError
from .logging_utils import configure_logging
from .provider import ProviderLocator, host_architecture

HELP_EPILOG = """Examples:
  # Run the HTTP service on the configured host/port
  token-signer serve --port 3000

  # Show which PKCS#11 candidates exist and pass the capability probe
  token-signer probe

  # Inspect the host smart-card subsystem without a PKCS#11 module
  token-signer diagnose
"""


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Local HTTP service for signing with a USB token over PKCS#11.",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog=HELP_EPILOG,
    )
    parser.add_argument(
        "--module",
        default=None,
        help="PKCS#11 module path tried before the built-in candidates.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP service.")
    serve.add_argument("--host", default=None, help="Bind address (default: HOST or 127.0.0.1).")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: PORT or 3000).")
    serve.add_argument("--log-level", default=None, help="Log level for the service logger.")

    subparsers.add_parser("probe", help="Probe every PKCS#11 candidate module.")
    subparsers.add_parser("diagnose", help="Run the host diagnostic fallback.")
    return parser


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _config_with_module(config: TokenSignerConfig, module: str | None) -> TokenSignerConfig:
    if not module:
        return config
    return replace(config, module_path=module)


def _run_serve(args: argparse.Namespace, config: TokenSignerConfig) -> int:
    import uvicorn

    from .server import create_app

    configure_logging(level=args.log_level, console=True)
    host = args.host or config.host
    port = args.port or config.port
    uvicorn.run(create_app(config), host=host, port=port, log_level="info")
    return 0


def _run_probe(config: TokenSignerConfig) -> int:
    locator = ProviderLocator.from_config(config)
    results = locator.probe_all()
    _print_json(
        {
            "host_architecture": host_architecture(),
            "candidates": [result.to_dict() for result in results],
            "selected": next((result.path for result in results if result.ok), None),
        }
    )
    return 0 if any(result.ok for result in results) else 1


def _run_diagnose() -> int:
    status = detect()
    _print_json(status.to_dict())
    return 0 if status.available else 1


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        config = _config_with_module(TokenSignerConfig.from_env(), args.module)
        if args.command == "serve":
            return _run_serve(args, config)
        configure_logging()
        if args.command == "probe":
            return _run_probe(config)
        if args.command == "diagnose":
            return _run_diagnose()
        raise ValueError(f"Unsupported command: {args.command}")
    except (TokenSignerError, ValueError) as exc:
        print(f"token-signer error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
