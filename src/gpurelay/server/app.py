"""FastAPI app factory + lifespan for the gpurelay inference server."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import secrets
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from starlette.exceptions import HTTPException as StarletteHTTPException

from gpurelay.auth import get_current_token
from gpurelay.engine import InferenceEngine
from gpurelay.protocol import DEFAULT_MAX_BODY_BYTES, ENV_MAX_BODY_BYTES, IDLE_CHECK_INTERVAL
from gpurelay.server.routes import error_response, parse_body, router
from gpurelay.types import GenerateOptions, RerankDocument

log = logging.getLogger(__name__)

_BEARER = re.compile(r"^Bearer\s+(.*)$", re.IGNORECASE)


async def warm_up(engine: InferenceEngine) -> None:
    """Force lazy model loads now so the first client request isn't slow."""
    log.info("loading models …")
    t_start = time.perf_counter()
    try:
        t0 = time.perf_counter()
        await engine.embed("warmup")
        log.info("  embed model ready (%.1fs)", time.perf_counter() - t0)

        t0 = time.perf_counter()
        await engine.generate("warmup", GenerateOptions(max_tokens=1))
        log.info("  generate model ready (%.1fs)", time.perf_counter() - t0)

        t0 = time.perf_counter()
        await engine.rerank("warmup", [RerankDocument(file="warmup", text="warmup text")])
        log.info("  rerank model ready (%.1fs)", time.perf_counter() - t0)
    except Exception as exc:
        log.warning("model pre-warming failed: %s", exc)
    log.info("models ready in %.1fs", time.perf_counter() - t_start)


async def sweep_idle(engine: InferenceEngine, interval: float) -> None:
    """Periodically let the engine release models it has not used lately."""
    while True:
        await asyncio.sleep(interval)
        try:
            await engine.unload_idle_resources()
        except Exception:
            log.exception("idle unload failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("gpurelay inference server starting up")
    engine = app.state.engine
    if app.state.warmup:
        await warm_up(engine)
    engine.touch_activity()
    sweeper = asyncio.create_task(sweep_idle(engine, app.state.idle_check_interval))
    try:
        yield
    finally:
        log.info("gpurelay inference server shutting down")
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        await engine.dispose()


async def require_bearer_token(request: Request, call_next):
    """Reject requests without the configured token, before any routing."""
    token = request.app.state.auth_token
    if token:
        m = _BEARER.match(request.headers.get("authorization", ""))
        if m is None or not secrets.compare_digest(m.group(1).encode(), token.encode()):
            return error_response(401, "Unauthorized")
    return await call_next(request)


async def http_error(request: Request, exc: StarletteHTTPException):
    """Unrouted requests: method check, then body parse, then unknown route.

    Only ``GET /health`` and ``GET /device`` accept a method other than
    POST, so ``POST /health`` falls through to the 404 like any other path.
    """
    if exc.status_code not in (404, 405):
        return error_response(exc.status_code, str(exc.detail))
    if request.method != "POST":
        return error_response(405, "Method not allowed")
    _, error = await parse_body(request)
    if error is not None:
        return error
    return error_response(404, f"Unknown route: {request.url.path}")


def create_app(
    engine: InferenceEngine,
    *,
    auth_token: str | None = None,
    warmup: bool = True,
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
    idle_check_interval: float = IDLE_CHECK_INTERVAL,
) -> FastAPI:
    """Build one server instance around *engine*.

    The server owns *engine* from here on: it is warmed up on startup and
    disposed exactly once on shutdown. ``auth_token=None`` disables auth.
    """
    app = FastAPI(
        title="gpurelay",
        description="Remote inference server for embedding, generation, reranking and tokenization",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.engine = engine
    app.state.auth_token = auth_token
    app.state.warmup = warmup
    app.state.max_body_bytes = max_body_bytes
    app.state.idle_check_interval = idle_check_interval

    app.middleware("http")(require_bearer_token)
    app.add_exception_handler(StarletteHTTPException, http_error)
    app.include_router(router)
    return app


def build_app() -> FastAPI:
    """uvicorn factory: resolve the token, construct the local engine, wire the app."""
    from gpurelay.server.inference import LocalEngine

    auth_token = get_current_token()
    engine = LocalEngine.from_env()
    if auth_token:
        log.info("auth enabled: clients must send the shared token")
    else:
        log.warning("auth disabled: no token configured")
    return create_app(
        engine,
        auth_token=auth_token,
        max_body_bytes=int(os.environ.get(ENV_MAX_BODY_BYTES, DEFAULT_MAX_BODY_BYTES)),
    )
