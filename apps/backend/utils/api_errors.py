"""Unified API error envelope (compatible with legacy clients)."""
from __future__ import annotations

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from apps.backend.middleware.trace_id import HEADER, ensure_trace_id


def error_envelope(
    *,
    code: str,
    message: str,
    trace_id: str,
    detail: str | None = None,
    legacy_error: bool = True,
) -> dict:
    out = {
        "code": code,
        "message": message,
        "trace_id": trace_id,
    }
    if detail:
        out["detail"] = detail
    # Clients that predate `code` read `error`.
    if legacy_error:
        out["error"] = code
    return out


def error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
    **extra,
) -> JSONResponse:
    trace_id = ensure_trace_id(request.scope)
    payload = error_envelope(code=code, message=message, trace_id=trace_id, detail=detail)
    payload.update(extra)
    resp = JSONResponse(content=jsonable_encoder(payload), status_code=status_code)
    resp.headers[HEADER] = trace_id
    return resp
