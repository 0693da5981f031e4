"""FastAPI transport for the token service."""

from __future__ import annotations

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Literal

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import TokenSignerConfig
from .exceptions import InvalidRequest, OperationTimeout, TokenSignerError
from .service import SERVER_NAME, SERVER_VERSION, TokenService

_logger = logging.getLogger("token_signer.server")

API_PREFIXES = ("/api/token", "/api/usb-token")


class PinRequest(BaseModel):
    pin: str | None = None
    module: str | None = None


class SignRequest(PinRequest):
    data: Any = None
    submission_type: Literal["taxpayer", "intermediary"] = "taxpayer"
    mechanism: str | None = None


def _error_response(error: TokenSignerError) -> JSONResponse:
    return JSONResponse(
        status_code=error.status_code,
        content={"success": False, "error": error.to_dict()},
    )


async def _run_blocking(request: Request, func: Callable[..., Any], *args: Any) -> Any:
    """Run one service call in a worker thread, bounded by the operation timeout."""
    service: TokenService = request.app.state.service
    timeout = service.config.operation_timeout
    loop = asyncio.get_running_loop()
    executor = getattr(request.app.state, "executor", None)
    future = loop.run_in_executor(executor, functools.partial(func, *args))
    try:
        return await asyncio.wait_for(future, timeout=timeout)
    except asyncio.TimeoutError as exc:
        _logger.error("Token operation timed out operation=%s timeout=%s", func.__name__, timeout)
        raise OperationTimeout(f"Token operation exceeded {timeout:g} seconds.") from exc


def _build_router() -> APIRouter:
    router = APIRouter()

    @router.post("/test")
    async def test_token(request: Request, body: PinRequest | None = None) -> dict[str, Any]:
        body = body or PinRequest()
        service: TokenService = request.app.state.service
        result = await _run_blocking(request, service.test_token, body.pin, body.module)
        return {"success": True, **result}

    @router.post("/certificates")
    async def certificates(request: Request, body: PinRequest | None = None) -> dict[str, Any]:
        body = body or PinRequest()
        service: TokenService = request.app.state.service
        result = await _run_blocking(request, service.certificates, body.pin, body.module)
        return {"success": True, "message": f"Found {result['count']} certificates", **result}

    @router.post("/sign")
    async def sign(request: Request, body: SignRequest) -> dict[str, Any]:
        service: TokenService = request.app.state.service
        result = await _run_blocking(
            request,
            service.sign,
            body.data,
            body.pin,
            body.submission_type,
            body.module,
            body.mechanism,
        )
        return {"success": True, "message": f"Generated {result['count']} signatures", **result}

    @router.post("/info")
    async def info(request: Request, body: PinRequest | None = None) -> dict[str, Any]:
        body = body or PinRequest()
        service: TokenService = request.app.state.service
        result = await _run_blocking(request, service.info, body.pin, body.module)
        return {"success": True, **result}

    return router


def create_app(
    config: TokenSignerConfig | None = None,
    service: TokenService | None = None,
) -> FastAPI:
    if service is None:
        service = TokenService(config or TokenSignerConfig.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        executor = ThreadPoolExecutor(
            max_workers=service.config.workers,
            thread_name_prefix="token-op",
        )
        app.state.executor = executor
        service.startup()
        _logger.info(
            "%s started temp_dir=%s provider=%s",
            SERVER_NAME,
            service.artifacts.directory,
            service.provider_status(),
        )
        try:
            yield
        finally:
            service.shutdown()
            executor.shutdown(wait=False)

    app = FastAPI(title=SERVER_NAME, version=SERVER_VERSION, lifespan=lifespan)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(TokenSignerError)
    async def _token_error(request: Request, exc: TokenSignerError) -> JSONResponse:
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg', '')}"
            for error in exc.errors()
        )
        return _error_response(InvalidRequest(f"Invalid request body ({details})."))

    @app.exception_handler(Exception)
    async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        _logger.exception("Unhandled error path=%s", request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": {
                    "kind": "InternalError",
                    "message": "Internal server error.",
                    "retryable": False,
                },
            },
        )

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return service.health()

    router = _build_router()
    for prefix in API_PREFIXES:
        app.include_router(router, prefix=prefix)

    return app
