from __future__ import annotations

import logging
from dataclasses import asdict

from aiohttp import web

from askhuman.errors import (
    ArtifactIOError,
    ArtifactTooLargeError,
    AskHumanError,
    InputValidationError,
    LockContentionError,
    QuestionTimeoutError,
    ShutdownError,
    TooManyPendingError,
)
from askhuman.rendezvous import RendezvousCoordinator

log = logging.getLogger("http")

COORDINATOR_KEY = web.AppKey("coordinator", RendezvousCoordinator)

# Most specific first: ArtifactTooLargeError is an ArtifactIOError.
_STATUS_BY_ERROR: tuple[tuple[type[AskHumanError], int], ...] = (
    (InputValidationError, 400),
    (TooManyPendingError, 429),
    (LockContentionError, 409),
    (ArtifactTooLargeError, 413),
    (ArtifactIOError, 500),
    (QuestionTimeoutError, 504),
    (ShutdownError, 503),
)


def _status_for(exc: AskHumanError) -> int:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return status
    return 500


def _error_response(exc: AskHumanError) -> web.Response:
    return web.json_response(
        {"error": type(exc).__name__, "message": str(exc)}, status=_status_for(exc)
    )


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "service": "ask-human"})


async def handle_ask(request: web.Request) -> web.Response:
    coordinator = request.app[COORDINATOR_KEY]
    try:
        payload = await request.json()
    except ValueError:
        raise web.HTTPBadRequest(text="request body must be JSON")
    if not isinstance(payload, dict):
        raise web.HTTPBadRequest(text="request body must be a JSON object")

    question = payload.get("question")
    if not isinstance(question, str) or not question.strip():
        raise web.HTTPBadRequest(
            text="question parameter is required and must be a string"
        )
    context = payload.get("context") or ""
    if not isinstance(context, str):
        raise web.HTTPBadRequest(text="context must be a string")

    try:
        answer = await coordinator.ask(question, context)
    except AskHumanError as exc:
        log.info(f"ask failed: {exc}")
        return _error_response(exc)
    return web.json_response({"answer": answer})


async def handle_pending(request: web.Request) -> web.Response:
    coordinator = request.app[COORDINATOR_KEY]
    try:
        pending = coordinator.list_pending()
    except AskHumanError as exc:
        return _error_response(exc)
    return web.json_response({"pending": [asdict(p) for p in pending]})


async def handle_stats(request: web.Request) -> web.Response:
    coordinator = request.app[COORDINATOR_KEY]
    return web.json_response(coordinator.stats().to_dict())


def build_app(coordinator: RendezvousCoordinator) -> web.Application:
    app = web.Application()
    app[COORDINATOR_KEY] = coordinator
    app.router.add_get("/health", handle_health)
    app.router.add_post("/ask", handle_ask)
    app.router.add_get("/pending", handle_pending)
    app.router.add_get("/stats", handle_stats)
    return app


async def start_http_server(
    coordinator: RendezvousCoordinator,
    *,
    host: str = "localhost",
    port: int = 3000,
) -> tuple[web.AppRunner, str, int]:
    """Start the HTTP front-end.

    Exposes: /health, /ask, /pending, /stats
    """
    runner = web.AppRunner(build_app(coordinator))
    await runner.setup()
    site = web.TCPSite(runner, host=host, port=port)
    await site.start()
    return runner, host, port
