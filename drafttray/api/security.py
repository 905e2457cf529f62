from __future__ import annotations

import os
import secrets

from fastapi import FastAPI, HTTPException, Request
from fastapi.openapi.utils import get_openapi

API_KEY_HEADER = "X-API-Key"
PUBLIC_PATHS = {"/health"}


def api_key_configured() -> str | None:
    return os.getenv("DRAFTTRAY_API_KEY")


def read_auth_required() -> bool:
    return os.getenv("DRAFTTRAY_REQUIRE_AUTH_FOR_READS", "false").strip().lower() == "true"


def require_api_key_if_configured(request: Request, *, for_read: bool = False) -> None:
    expected = api_key_configured()
    if not expected or (for_read and not read_auth_required()):
        return
    provided = request.headers.get(API_KEY_HEADER) or ""
    if not secrets.compare_digest(provided, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


def bearer_credential(request: Request) -> str | None:
    """Operator token forwarded untouched to the record store."""
    header = (request.headers.get("authorization") or "").strip()
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


def install_openapi_api_key_security(app: FastAPI) -> None:
    # Every route except PUBLIC_PATHS checks the key when one is configured.
    def custom_openapi():
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title=app.title, version=app.version, description=app.description, routes=app.routes)
        schemes = schema.setdefault("components", {}).setdefault("securitySchemes", {})
        schemes["ApiKeyAuth"] = {"type": "apiKey", "in": "header", "name": API_KEY_HEADER}
        for path, operations in (schema.get("paths") or {}).items():
            if path in PUBLIC_PATHS:
                continue
            for operation in operations.values():
                if isinstance(operation, dict):
                    operation["security"] = [{"ApiKeyAuth": []}]
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi
