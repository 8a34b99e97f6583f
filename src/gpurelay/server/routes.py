"""All HTTP endpoints for the gpurelay inference server."""

from __future__ import annotations

import json
import logging
import time
from typing import Any

import psutil
from fastapi import APIRouter, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from gpurelay.protocol import EP_DEVICE, EP_HEALTH
from gpurelay.server.ops import OPERATIONS, Handler

log = logging.getLogger(__name__)

router = APIRouter()


class PayloadTooLarge(Exception):
    pass


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


async def read_json_body(request: Request, limit: int) -> Any:
    """Buffer the request body (at most *limit* bytes) and parse it as JSON."""
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > limit:
        raise PayloadTooLarge
    buf = bytearray()
    async for chunk in request.stream():
        buf.extend(chunk)
        if len(buf) > limit:
            raise PayloadTooLarge
    return json.loads(buf)


# --- Routes ------------------------------------------------------------------

@router.get(EP_HEALTH)
async def health():
    uptime = time.time() - psutil.Process().create_time()
    return {"status": "ok", "uptime": uptime}


@router.get(EP_DEVICE)
async def device(request: Request):
    try:
        info = await request.app.state.engine.device_info()
        return JSONResponse(jsonable_encoder(info))
    except Exception as exc:
        log.exception("error handling %s", EP_DEVICE)
        return error_response(500, str(exc) or "Internal server error")


async def parse_body(request: Request) -> tuple[Any, JSONResponse | None]:
    """Return ``(body, None)``, or ``(None, error)`` for 413 / 400."""
    try:
        return await read_json_body(request, request.app.state.max_body_bytes), None
    except PayloadTooLarge:
        return None, error_response(413, "Request body too large")
    except ValueError:
        return None, error_response(400, "Invalid JSON body")


async def dispatch(request: Request, op: Handler) -> JSONResponse:
    """Parse the body, run *op* against the engine, encode the result."""
    path = request.url.path
    body, error = await parse_body(request)
    if error is not None:
        return error

    t0 = time.perf_counter()
    try:
        result = await op(request.app.state.engine, body)
        # rendering rejects NaN/inf, so it belongs to the failure boundary too
        response = JSONResponse(jsonable_encoder(result))
    except Exception as exc:
        log.exception("error handling %s", path)
        return error_response(500, str(exc) or "Internal server error")
    log.debug("%s done in %.3fs", path, time.perf_counter() - t0)
    return response


def _endpoint(op: Handler):
    async def endpoint(request: Request) -> JSONResponse:
        return await dispatch(request, op)
    return endpoint


for _path, _op in OPERATIONS.items():
    router.add_api_route(
        _path,
        _endpoint(_op),
        methods=["POST"],
        name=_path.strip("/").replace("-", "_"),
    )
