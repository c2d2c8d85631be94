from __future__ import annotations

import json
import logging
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from browser_api.schema import ApiError, ContextOverrides, ErrorResponse, SuccessResponse
from browser_api.settings import RunnerSettings
from browser_sandbox.context import ContextOptions
from browser_sandbox.errors import InputError, LaunchError, PayloadTooLargeError, RunnerError
from browser_sandbox.executor import ExecutionResult, ScriptExecutor
from browser_sandbox.session import SessionProvider


LOGGER = logging.getLogger("script-runner")

SERVICE_NAME = "Headless Browser API with Stealth"
BROWSER_DESCRIPTION = "Playwright (Chromium) + stealth init script"

SCRIPT_SUFFIX = ".py"
_SCRIPT_CONTENT_TYPES = {"text/x-python", "text/x-script.python", "application/x-python-code"}

SCRIPT_REQUIRED_MESSAGE = 'Le champ "script" est requis'
FILE_REQUIRED_MESSAGE = 'Aucun fichier reçu. Utilisez le champ "file" pour envoyer un .py'
FILE_TYPE_MESSAGE = "Seuls les fichiers .py sont acceptés"
INTERNAL_ERROR_MESSAGE = "Erreur interne du serveur"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _error_payload(message: str, stack: str | None = None) -> dict[str, Any]:
    return ErrorResponse(error=ApiError(message=message, stack=stack)).model_dump(exclude_none=True)


def _jsonable(value: Any) -> Any:
    # Script results are arbitrary Python objects; anything JSON can't carry is sent as repr().
    try:
        encoded = jsonable_encoder(value)
        json.dumps(encoded, allow_nan=False)
        return encoded
    except (TypeError, ValueError, RecursionError):
        return repr(value)


def _result_response(result: ExecutionResult) -> JSONResponse:
    if result.ok:
        return JSONResponse(status_code=200, content=SuccessResponse(data=_jsonable(result.data)).model_dump())
    return JSONResponse(
        status_code=result.status_code,
        content=_error_payload(result.error_message or INTERNAL_ERROR_MESSAGE, result.stack),
    )


def _is_script_upload(filename: str | None, content_type: str | None) -> bool:
    if Path(str(filename or "")).name.lower().endswith(SCRIPT_SUFFIX):
        return True
    return str(content_type or "").split(";", 1)[0].strip().lower() in _SCRIPT_CONTENT_TYPES


def _coerce_json_timeout(value: Any, default: int) -> int:
    if value is None:
        return int(default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise InputError('Le champ "timeout" doit être un entier (millisecondes)')
    if int(value) <= 0:
        raise InputError('Le champ "timeout" doit être positif')
    return int(value)


def _coerce_form_timeout(value: str | None, default: int) -> int:
    try:
        parsed = int(str(value or "").strip())
    except ValueError:
        return int(default)
    return parsed if parsed > 0 else int(default)


def _context_options(base: ContextOptions, raw: Any) -> ContextOptions:
    if raw is None:
        return base
    if not isinstance(raw, dict):
        raise InputError('Le champ "options" doit être un objet')
    try:
        overrides = ContextOverrides.model_validate(raw)
    except ValidationError as exc:
        raise InputError(f"Options invalides: {exc.errors()[0].get('msg', 'invalid')}") from exc
    return base.with_overrides(
        locale=overrides.locale,
        user_agent=overrides.user_agent,
        viewport_width=overrides.viewport.width if overrides.viewport else None,
        viewport_height=overrides.viewport.height if overrides.viewport else None,
        extra_http_headers=overrides.extra_http_headers,
        stealth=overrides.stealth,
        block_resource_types=overrides.block_resource_types,
        block_url_patterns=overrides.block_url_patterns,
    )


async def _read_json_object(req: Request, max_bytes: int) -> dict[str, Any]:
    declared = req.headers.get("content-length")
    if declared and declared.isdigit() and max_bytes > 0 and int(declared) > max_bytes:
        raise PayloadTooLargeError("Corps de requête trop volumineux")
    raw = await req.body()
    if max_bytes > 0 and len(raw) > max_bytes:
        raise PayloadTooLargeError("Corps de requête trop volumineux")
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise InputError("Corps JSON invalide") from exc
    if not isinstance(data, dict):
        raise InputError("Le corps de la requête doit être un objet JSON")
    return data


def create_app(settings: RunnerSettings | None = None, *, provider: SessionProvider | None = None) -> FastAPI:
    app = FastAPI(title="Headless Script Runner", version="0.1.0")
    app.state.settings = settings or RunnerSettings()
    app.state.provider = provider or SessionProvider(
        app.state.settings.launch_options(),
        mode=app.state.settings.browser_mode,
    )
    app.state.executor = ScriptExecutor(
        app.state.provider,
        context_options=app.state.settings.context_options(),
        include_stack=app.state.settings.development,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(app.state.settings.cors_allow_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        try:
            await app.state.provider.close()
        except Exception:
            LOGGER.warning("Browser session close failed during shutdown", exc_info=True)

    @app.exception_handler(RunnerError)
    async def _runner_error(_req: Request, exc: RunnerError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=_error_payload(exc.message))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(_req: Request, exc: RequestValidationError) -> JSONResponse:
        LOGGER.info("Rejected malformed request: %s", exc.errors())
        return JSONResponse(status_code=400, content=_error_payload("Requête invalide"))

    @app.exception_handler(Exception)
    async def _unhandled(_req: Request, exc: Exception) -> JSONResponse:
        LOGGER.exception("Unhandled error", exc_info=exc)
        return JSONResponse(status_code=500, content=_error_payload(INTERNAL_ERROR_MESSAGE))

    @app.get("/")
    async def root() -> dict[str, Any]:
        return {
            "status": "online",
            "service": SERVICE_NAME,
            "browser": BROWSER_DESCRIPTION,
            "browser_mode": app.state.provider.mode,
            "endpoints": [
                {"path": "/run", "method": "POST", "description": "Exécuter un script (JSON)"},
                {"path": "/run-file", "method": "POST", "description": "Exécuter un fichier .py"},
                {"path": "/health", "method": "GET", "description": "Vérifier le statut"},
            ],
        }

    @app.get("/health")
    async def health() -> JSONResponse:
        body: dict[str, Any] = {"status": "ok", "timestamp": _utc_now_iso()}
        try:
            body.update(await app.state.provider.check_health())
        except LaunchError as exc:
            LOGGER.warning("Health check could not launch browser: %s", exc)
            body.update(_error_payload(exc.message))
            return JSONResponse(status_code=503, content=body)
        return JSONResponse(status_code=200, content=body)

    @app.post("/run")
    async def run_script(req: Request) -> JSONResponse:
        settings2: RunnerSettings = app.state.settings
        payload = await _read_json_object(req, int(settings2.max_body_bytes))
        script = payload.get("script")
        if not isinstance(script, str) or not script.strip():
            raise InputError(SCRIPT_REQUIRED_MESSAGE)
        timeout_ms = _coerce_json_timeout(payload.get("timeout"), settings2.default_timeout_ms)
        options = _context_options(app.state.executor.context_options, payload.get("options"))

        result = await app.state.executor.execute(script, timeout_ms, options)
        return _result_response(result)

    @app.post("/run-file")
    async def run_script_file(
        file: UploadFile | None = File(None),
        timeout: str | None = Form(None),
    ) -> JSONResponse:
        settings2: RunnerSettings = app.state.settings
        if file is None:
            raise InputError(FILE_REQUIRED_MESSAGE)
        if not _is_script_upload(file.filename, file.content_type):
            raise InputError(FILE_TYPE_MESSAGE)

        max_bytes = int(settings2.max_upload_bytes)
        raw = await file.read(max_bytes + 1) if max_bytes > 0 else await file.read()
        if max_bytes > 0 and len(raw) > max_bytes:
            raise PayloadTooLargeError(f"Fichier trop volumineux (max {max_bytes} octets)")

        script = raw.decode("utf-8", errors="replace")
        timeout_ms = _coerce_form_timeout(timeout, settings2.default_timeout_ms)
        result = await app.state.executor.execute(script, timeout_ms)
        return _result_response(result)

    return app
